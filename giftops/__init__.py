"""Bulk, resumable gift code redemption for Whiteout Survival alliances."""
