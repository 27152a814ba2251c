import asyncio
import logging
import time
import unicodedata
from datetime import datetime

import pytz

from .config import API_CONFIG, PROCESS_PRIORITIES
from .database import utc_now
from .errors import InvalidRedeemDataError, ProcessNotFoundError
from .gift_status import (
    ABORT_STATUSES,
    RedeemStatus,
    SUCCESS_STATUSES,
    VIP_RESTRICTION_STATUSES,
)
from .progress import (
    STATE_ABORTED,
    STATE_COMPLETED,
    STATE_FAILED,
    STATE_PREEMPTED,
    STATE_STARTED,
    ProgressReporter,
    compute_redeem_stats,
)

logger = logging.getLogger('gift_ops')

REDEEM_ACTION = 'redeem_giftcode'

SYSTEM_API_SYNC = 'SYSTEM_API_SYNC'
SYSTEM_24H_VALIDATION = 'SYSTEM_24H_VALIDATION'
SYSTEM_AUTO_REDEEM = 'SYSTEM_AUTO_REDEEM'
SYSTEM_MANUAL_ADD = 'SYSTEM_MANUAL_ADD'

VIP_RESET_THRESHOLD = 5


def clean_gift_code(giftcode):
    """Remove invisible Unicode characters (like RLM) that can contaminate gift codes"""
    cleaned = ''.join(char for char in giftcode if unicodedata.category(char)[0] != 'C')
    return cleaned.strip()


def is_vip_eligible(player):
    if not player:
        return False
    vip_count = player.get("vip_count") or 0
    return bool(player.get("is_rich")) or vip_count == 0 or vip_count >= VIP_RESET_THRESHOLD


def partition_vip_eligible(remaining, rule):
    """Split remaining work items into (eligible, ineligible), keeping order."""
    eligible = []
    ineligible = []
    for item in remaining:
        if rule(item):
            eligible.append(item)
        else:
            ineligible.append(item)
    return eligible, ineligible


def get_abort_reason_message(status, gift_code):
    if status == RedeemStatus.USED.value:
        return f"Gift code `{gift_code}` reached its usage limit. Remaining members were skipped."
    if status == RedeemStatus.TIME_ERROR.value:
        return f"Gift code `{gift_code}` expired. Remaining members were skipped."
    if status == RedeemStatus.CDK_NOT_FOUND.value:
        return f"Gift code `{gift_code}` is invalid. Remaining members were skipped."
    return f"Redeem process stopped due to status: {status}."


def item_identifier(item):
    return item.get("id") or f"validation_{item['index']}"


class RedeemProgress:
    """In-memory view of a process progress document.

    Moves identifiers between the pending/done/failed/existing buckets and
    renders the document written back at every checkpoint.
    """

    def __init__(self, document):
        self.document = dict(document or {})
        self.pending = list(self.document.get("pending") or [])
        self.done = list(self.document.get("done") or [])
        self.failed = list(self.document.get("failed") or [])
        self.existing = list(self.document.get("existing") or [])
        self.results = list(self.document.get("redeemResults") or [])
        self.last_processed_id = self.document.get("lastProcessedId")

    @property
    def redeem_data(self):
        return self.document.get("redeemData") or {}

    def settle(self, identifier, success):
        if identifier in self.pending:
            self.pending.remove(identifier)
        bucket = self.done if success else self.failed
        if identifier not in bucket:
            bucket.append(identifier)
        self.last_processed_id = identifier

    def to_document(self, embed_state=None):
        document = dict(self.document)
        document.update({
            "pending": self.pending,
            "done": self.done,
            "failed": self.failed,
            "existing": self.existing,
            "redeemResults": self.results,
            "lastProcessedId": self.last_processed_id,
            "lastProcessedAt": utc_now(),
        })
        if embed_state is not None:
            document["embedState"] = embed_state
        return document

    def stats(self):
        return compute_redeem_stats(self.redeem_data, self.results, self.pending)


class RedeemExecutor:
    """Creates redeem processes and runs them one item at a time."""

    def __init__(self, db, queue, engine, solver, progress_sink=None, sleep=asyncio.sleep, clock=time.monotonic):
        self.db = db
        self.queue = queue
        self.engine = engine
        self.solver = solver
        self.progress_sink = progress_sink
        self.sleep = sleep
        self.clock = clock
        self._completion_waiters = {}
        queue.register_runner(REDEEM_ACTION, self.execute_redeem_operation)

    def register_completion(self, process_id):
        future = asyncio.get_running_loop().create_future()
        self._completion_waiters[process_id] = future
        return future

    def resolve_completion(self, process_id, payload):
        future = self._completion_waiters.pop(process_id, None)
        if future is not None and not future.done():
            future.set_result(payload)

    def pre_filter_already_redeemed(self, redeem_items, gift_code):
        """Split redeem items into those still to run and results for already-redeemed players."""
        if not redeem_items:
            return [], []

        try:
            usage = self.db.codes.get_usage_statuses(gift_code)
        except Exception as e:
            logger.exception(f"GiftOps: Usage lookup failed for '{gift_code}', skipping pre-filter: {e}")
            return list(redeem_items), []

        items_to_process = []
        pre_filtered = []
        for item in redeem_items:
            fid = str(item["id"])
            if fid in usage:
                previous_status = usage[fid] or RedeemStatus.RECEIVED.value
                pre_filtered.append({
                    "success": True,
                    "status": previous_status,
                    "message": f"Already redeemed (Previous: {previous_status})",
                    "playerId": fid,
                    "identifier": fid,
                    "giftCode": gift_code,
                    "operation": 'redeem',
                    "preFiltered": True,
                })
            else:
                items_to_process.append(item)
        return items_to_process, pre_filtered

    async def create_redeem_process(self, redeem_data, admin_id=None, alliance_context=None):
        """Queue a batch of validation/redeem items for one gift code.

        Validation-only batches block until the executor finishes and report
        whether the code is usable; other batches return once queued.
        """
        if not isinstance(redeem_data, (list, tuple)) or not redeem_data:
            raise InvalidRedeemDataError('Invalid redeem data: must be non-empty list')

        normalised = []
        for index, item in enumerate(redeem_data):
            operation = (item.get("operation") or item.get("status") or 'redeem').lower()
            if operation not in ('validation', 'redeem'):
                raise InvalidRedeemDataError(f"Unknown operation '{operation}' at index {index}")
            if not item.get("giftCode"):
                raise InvalidRedeemDataError(f"Missing gift code at index {index}")
            normalised.append({
                "id": str(item["id"]) if item.get("id") is not None else None,
                "giftCode": item["giftCode"],
                "operation": operation,
                "index": index,
            })

        gift_code = normalised[0]["giftCode"]
        redeem_items = [item for item in normalised if item["operation"] == 'redeem' and item["id"]]
        filtered_redeem_items, pre_filtered = self.pre_filter_already_redeemed(redeem_items, gift_code)

        # Validation runs first so a dead code does not burn the captcha budget
        validation_items = [item for item in normalised if item["operation"] == 'validation']
        items_to_process = validation_items + filtered_redeem_items
        for item in normalised:
            item["identifier"] = item_identifier(item)

        to_process_ids = [item["identifier"] for item in items_to_process]
        existing_ids = [r["identifier"] for r in pre_filtered]

        alliance = None
        if alliance_context:
            alliance = {
                "id": alliance_context.get("id"),
                "name": alliance_context.get("name"),
                "priority": alliance_context.get("priority") or 0,
                "channelId": alliance_context.get("channel_id") or alliance_context.get("channelId"),
            }
        target = int(alliance["id"]) if alliance and alliance["id"] is not None else 0
        validation_only = all(item["operation"] == 'validation' for item in normalised)
        if validation_only:
            priority = PROCESS_PRIORITIES["VALIDATE_GIFTCODE"]
        else:
            priority = PROCESS_PRIORITIES["REDEEM_GIFTCODE"] + (alliance["priority"] if alliance else 0)

        progress = {
            "pending": to_process_ids,
            "done": [],
            "failed": [],
            "existing": existing_ids,
            "redeemData": {
                "items": items_to_process,
                "allItems": normalised,
                "giftCode": gift_code,
                "alliance": alliance,
            },
            "redeemResults": pre_filtered,
            "lastProcessedId": None,
            "lastProcessedAt": None,
            "embedState": {"lastUpdateCount": 0, "initialized": False, "disabled": False},
        }

        details = {
            "giftCode": gift_code,
            "operation": 'validation' if validation_only else 'redeem',
            "itemCount": len(normalised),
            "preFiltered": len(pre_filtered),
        }
        admin_id = admin_id or SYSTEM_AUTO_REDEEM
        process_id = await self.queue.store.create_process(
            REDEEM_ACTION, target, priority, admin_id, details=details, progress=progress
        )

        completion = self.register_completion(process_id) if validation_only else None
        decision = await self.queue.manage_queue(process_id)

        if completion is not None:
            summary = await completion
            results = summary.get("results") or []
            if results:
                validation = results[0]
                is_valid = validation.get("giftCodeActive") is True
                return {
                    "success": is_valid,
                    "processId": process_id,
                    "message": 'Gift code is valid' if is_valid else (validation.get("message") or 'Gift code is not valid'),
                    "status": validation.get("status"),
                    "is_vip": bool(validation.get("is_vip")),
                    "results": results,
                }
            return {**summary, "processId": process_id}

        return {
            "success": True,
            "processId": process_id,
            "message": 'Redeem process queued',
            "queued": decision["action"] == 'queued',
            "position": decision.get("position", 0),
            "preFiltered": len(pre_filtered),
        }

    async def handle_vip_tracking(self, fid, gift_code, outcome):
        try:
            code = self.db.codes.get_gift_code(gift_code)
            if not code or not code.get("is_vip"):
                return

            player = self.db.players.get_player(fid)
            if not player:
                return

            status = outcome.get("status")
            if status in SUCCESS_STATUSES:
                if not player.get("is_rich"):
                    self.db.players.update_rich_status(fid, True)
            elif status in VIP_RESTRICTION_STATUSES and not player.get("is_rich"):
                vip_count = player.get("vip_count") or 0
                # Count restarts so the player is retried once every few VIP codes
                self.db.players.update_vip_count(fid, 1 if vip_count >= VIP_RESET_THRESHOLD else vip_count + 1)
        except Exception as e:
            logger.exception(f"GiftOps: VIP tracking failed for {fid} / '{gift_code}': {e}")

    async def handle_post_redemption(self, fid, gift_code, outcome):
        await self.handle_vip_tracking(fid, gift_code, outcome)
        # Only claimed codes are remembered; failed players get another try on the next batch
        if outcome.get("status") not in SUCCESS_STATUSES:
            return
        try:
            self.db.codes.add_usage(fid, gift_code, outcome["status"])
        except Exception as e:
            logger.exception(f"GiftOps: Error tracking usage for player {fid}: {e}")

    def skip_remaining_redeems(self, state, items, abort_status):
        """Record every still-pending item as skipped with the abort reason."""
        gift_code = state.redeem_data.get("giftCode")
        reason = get_abort_reason_message(abort_status, gift_code)
        by_identifier = {item["identifier"]: item for item in items}

        for identifier in list(state.pending):
            item = by_identifier.get(identifier) or {}
            state.results.append({
                "success": False,
                "status": f"SKIPPED_{'_'.join(abort_status.split())}",
                "message": reason,
                "playerId": item.get("id"),
                "identifier": identifier,
                "giftCode": gift_code,
                "operation": item.get("operation", 'redeem'),
                "aborted": True,
                "abortReason": abort_status,
                "attempts": 0,
            })
            state.settle(identifier, False)
        return reason

    def skip_non_vip_eligible(self, state, items):
        gift_code = state.redeem_data.get("giftCode")
        for item in items:
            state.results.append({
                "success": False,
                "status": RedeemStatus.SKIPPED_NON_VIP_ELIGIBLE.value,
                "message": 'Skipped: Code detected as VIP, player not VIP-eligible',
                "playerId": item["id"],
                "identifier": item["identifier"],
                "giftCode": gift_code,
                "operation": 'redeem',
                "vipSkipped": True,
            })
            state.settle(item["identifier"], False)

    def _vip_rule(self, item):
        if item["operation"] != 'redeem' or not item.get("id"):
            return True
        player = self.db.players.get_player(item["id"])
        # Unknown players keep their turn
        return player is None or is_vip_eligible(player)

    async def _checkpoint(self, process_id, state, reporter):
        await self.queue.store.update_progress(process_id, state.to_document(reporter.embed_state))

    async def execute_redeem_operation(self, process_id, run_id=None):
        state = None
        reporter = None
        try:
            process = await self.queue.store.get_process(process_id)
            if process is None:
                raise ProcessNotFoundError(process_id)

            state = RedeemProgress(process["progress"])
            redeem_data = state.redeem_data
            if not isinstance(redeem_data.get("items"), list):
                raise InvalidRedeemDataError(f"No redeem data found in process {process_id}")

            gift_code = redeem_data.get("giftCode")
            reporter = ProgressReporter(process_id, self.progress_sink, state.document.get("embedState"))

            if not state.pending:
                # Everyone was pre-filtered, or a previous run already finished the work
                message = 'All players already redeemed this code' if state.existing else 'Nothing left to redeem'
                await reporter.update(state.stats(), STATE_COMPLETED, message, force=True)
                summary = {"success": True, "results": state.results}
                self.resolve_completion(process_id, summary)
                return summary

            await reporter.update(state.stats(), STATE_STARTED, 'Redeem process started')

            pending = set(state.pending)
            remaining = [item for item in redeem_data["items"] if item_identifier(item) in pending]
            for item in remaining:
                item.setdefault("identifier", item_identifier(item))

            code_row = self.db.codes.get_gift_code(gift_code)
            vip_detected = bool(code_row and code_row.get("is_vip"))
            abort_status = None
            abort_message = None
            previous = None
            i = 0

            while i < len(remaining):
                item = remaining[i]
                identifier = item["identifier"]

                if previous is not None and previous["operation"] == 'validation' and item["operation"] == 'redeem':
                    await self.sleep(API_CONFIG["VALIDATION_TO_REDEEM_COOLDOWN"])

                step_started = self.clock()

                check = await self.queue.check_for_preemption(process_id, run_id)
                if check["should_stop"]:
                    logger.info(f"GiftOps: Process {process_id} stopping before {identifier}: {check['reason']}")
                    if check["reason"] == 'PREEMPTED':
                        await reporter.update(state.stats(), STATE_PREEMPTED,
                                              'Process was preempted by higher priority process', force=True)
                    return {
                        "success": False,
                        "results": state.results,
                        "preempted": True,
                        "reason": check["reason"],
                        "message": 'Process was preempted by higher priority process',
                    }

                outcome = await self.engine.process_item(item)
                status = outcome.get("status")
                state.results.append({
                    **outcome,
                    "playerId": item.get("id"),
                    "identifier": identifier,
                    "giftCode": item["giftCode"],
                    "operation": item["operation"],
                })

                if item["operation"] == 'redeem' and not vip_detected and status in VIP_RESTRICTION_STATUSES:
                    vip_detected = True
                    logger.warning(f"GiftOps: VIP code detected during redemption: {gift_code} (player {item['id']} got {status})")
                    self.db.codes.update_vip_status(gift_code, True)

                    eligible, ineligible = partition_vip_eligible(remaining[i + 1:], self._vip_rule)
                    if ineligible:
                        logger.info(f"GiftOps: Skipping {len(ineligible)} non VIP-eligible player(s) for {gift_code}")
                        self.skip_non_vip_eligible(state, ineligible)
                        remaining = remaining[:i + 1] + eligible

                if item["operation"] == 'redeem' and item.get("id"):
                    await self.handle_post_redemption(item["id"], gift_code, outcome)

                state.settle(identifier, bool(outcome.get("success")))

                if status in ABORT_STATUSES:
                    abort_status = status
                    state.results[-1]["abortReason"] = status
                    logger.warning(f"GiftOps: Stopping redeem process {process_id} due to status '{status}'")
                    self.db.codes.update_status(gift_code, 'invalid')
                    abort_message = self.skip_remaining_redeems(state, remaining, status)

                if item["operation"] == 'redeem':
                    await reporter.update(state.stats(), STATE_STARTED, 'Redeeming in progress...')
                await self._checkpoint(process_id, state, reporter)

                if abort_status:
                    break

                is_last = i == len(remaining) - 1
                if item["operation"] == 'redeem' and not is_last:
                    remaining_delay = API_CONFIG["BETWEEN_REDEMPTIONS_DELAY"] - (self.clock() - step_started)
                    if remaining_delay > 0:
                        await self.sleep(remaining_delay)

                previous = item
                i += 1

            success = abort_status is None and all(entry.get("success") for entry in state.results)
            summary = {"success": success, "results": state.results}
            if abort_status:
                summary["aborted"] = True
                summary["abortReason"] = abort_status
                summary["message"] = abort_message

            if abort_status:
                final_state = STATE_ABORTED
                final_message = abort_message
            elif success:
                final_state = STATE_COMPLETED
                final_message = 'Redeem process completed successfully'
            else:
                final_state = STATE_FAILED
                final_message = 'Redeem process completed with errors'
            await reporter.update(state.stats(), final_state, final_message, force=True)
            await self._checkpoint(process_id, state, reporter)

            self.solver.unload()
            self.resolve_completion(process_id, summary)
            return summary

        except Exception as e:
            logger.exception(f"GiftOps: Redeem process {process_id} failed: {e}")
            self.solver.unload()
            results = state.results if state is not None else []
            if reporter is not None:
                await reporter.update(state.stats(), STATE_FAILED, str(e), force=True)
            self.resolve_completion(process_id, {"success": False, "error": str(e), "results": results})
            raise

    async def create_auto_redeem_process(self, gift_code, alliance, admin_id=SYSTEM_AUTO_REDEEM):
        """Queue a redeem batch for every player of one alliance; None when nobody is left to target."""
        players = self.db.players.get_players_by_alliance(alliance["id"])
        if not players:
            logger.info(f"GiftOps: Alliance {alliance['id']} has no players, skipping auto-redeem of {gift_code}")
            return None

        code = self.db.codes.get_gift_code(gift_code)
        if code and code.get("is_vip"):
            players = [player for player in players if is_vip_eligible(player)]
            if not players:
                logger.info(f"GiftOps: No VIP-eligible players in alliance {alliance['id']} for {gift_code}")
                return None

        redeem_data = [{"id": player["fid"], "giftCode": gift_code, "operation": 'redeem'} for player in players]
        return await self.create_redeem_process(redeem_data, admin_id, alliance)

    async def auto_redeem_for_all_alliances(self, gift_code, admin_id=SYSTEM_AUTO_REDEEM):
        """Start auto-redeem for every opted-in alliance; one failing alliance does not stop the others."""
        alliances = self.db.alliances.get_auto_redeem_alliances()
        outcomes = await asyncio.gather(
            *[self.create_auto_redeem_process(gift_code, alliance, admin_id) for alliance in alliances],
            return_exceptions=True,
        )
        for alliance, outcome in zip(alliances, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"GiftOps: Auto-redeem of {gift_code} for alliance {alliance['id']} failed: {outcome}")
        return outcomes

    async def add_gift_code(self, gift_code, added_by=SYSTEM_MANUAL_ADD):
        """Validate and store a manually entered code, then auto-redeem it."""
        gift_code = clean_gift_code(gift_code)
        if not gift_code:
            return {"success": False, "message": 'Gift code is empty'}
        if self.db.codes.get_gift_code(gift_code):
            return {"success": False, "message": f"Gift code `{gift_code}` already exists"}

        validation = await self.create_redeem_process(
            [{"id": None, "giftCode": gift_code, "operation": 'validation'}], admin_id=added_by
        )
        if not validation.get("success"):
            logger.info(f"GiftOps: Gift code '{gift_code}' rejected: {validation.get('message')}")
            return validation

        self.db.codes.add_gift_code(
            gift_code,
            status='active',
            added_by=str(added_by),
            source='manual',
            api_pushed=False,
            is_vip=validation.get("is_vip", False),
            date=datetime.now(pytz.UTC).strftime("%Y-%m-%d"),
        )
        self.db.codes.update_last_validated(gift_code)
        logger.info(f"GiftOps: Gift code '{gift_code}' added by {added_by}")

        await self.auto_redeem_for_all_alliances(gift_code)
        return {**validation, "message": f"Gift code `{gift_code}` added"}
