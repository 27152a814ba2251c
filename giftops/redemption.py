import asyncio
import logging
import random
import time

from .config import API_CONFIG, PLAYER_NOT_EXIST_LIMIT
from .gift_status import (
    AUTH_ERROR_STATUSES,
    RedeemStatus,
    RetryKind,
    VIP_RESTRICTION_STATUSES,
    classify_response,
    error_result,
    get_status_rule,
    normalize_message,
    retry_delay_for,
)
from .wos_api import wire_ok

logger = logging.getLogger('gift_ops')


class CaptchaThrottle:
    """Minimum spacing between captcha fetches, shared by every caller holding the same instance."""

    def __init__(self, min_interval=None, clock=time.monotonic, sleep=asyncio.sleep):
        self.min_interval = API_CONFIG["BETWEEN_REDEMPTIONS_DELAY"] if min_interval is None else min_interval
        self.clock = clock
        self.sleep = sleep
        self._last = None

    def last_acquired(self):
        return self._last

    async def acquire(self):
        if self._last is not None:
            elapsed = self.clock() - self._last
            if elapsed < self.min_interval:
                await self.sleep(self.min_interval - elapsed)
        # Stamp before the fetch so a second caller waits for this one
        self._last = self.clock()
        return self._last


class RedemptionEngine:
    """Drives one identity through auth -> captcha -> solve -> submit -> classify."""

    def __init__(self, api, solver, db, throttle=None, sleep=asyncio.sleep, jitter=random.uniform):
        self.api = api
        self.solver = solver
        self.db = db
        self.sleep = sleep
        self.jitter = jitter
        self.throttle = throttle or CaptchaThrottle(sleep=sleep)

    async def authenticate_player(self, fid):
        last_error = None
        max_retries = API_CONFIG["MAX_RETRIES"]

        for attempt in range(1, max_retries + 1):
            try:
                response = await self.api.post_player(fid)
                data = response.data if isinstance(response.data, dict) else {}
                msg_lower = str(data.get("msg") or '').lower()

                if wire_ok(response) and msg_lower == 'success' and data.get("data"):
                    player = data["data"]
                    return {
                        "stoveLv": player.get("stove_lv") or 1,
                        "nickname": player.get("nickname") or 'Unknown',
                    }

                if response.status == 429 or 'too frequent' in msg_lower or 'timeout' in msg_lower:
                    last_error = f"Rate limited (attempt {attempt}/{max_retries})"
                    logger.warning(f"GiftOps: Player auth rate limited for ID {fid}, waiting {API_CONFIG['RATE_LIMIT_DELAY']}s")
                    await self.sleep(API_CONFIG["RATE_LIMIT_DELAY"])
                    continue

                # No point retrying for an ID the game does not know
                if 'not exist' in msg_lower or 'invalid' in msg_lower:
                    return {"playerNotExist": True, "message": data.get("msg") or 'Player not found'}

                last_error = f"Auth failed: {data.get('msg') or 'Unknown error'} (HTTP {response.status})"
            except Exception as e:
                logger.exception(f"GiftOps: Player auth exception for ID {fid} (attempt {attempt}/{max_retries}): {e}")
                last_error = str(e)

            if attempt < max_retries:
                await self.sleep(API_CONFIG["RETRY_DELAY"])

        logger.error(f"GiftOps: Player authentication failed for ID {fid} after {max_retries} attempts. Last error: {last_error}")
        return {"authFailed": True, "message": last_error}

    @staticmethod
    def _auth_failure_result(auth_info, fid, status):
        if auth_info.get("playerNotExist"):
            return {
                "success": False,
                "status": RedeemStatus.ROLE_NOT_EXIST.value,
                "message": auth_info.get("message") or 'Player does not exist',
                "giftCodeActive": True,
                "playerNotExist": True,
            }
        return error_result(status, f"Player authentication failed for ID {fid}", False)

    def _rate_limit_backoff(self, base_delay, consecutive):
        delay = min(base_delay * (1.5 ** (consecutive - 1)), API_CONFIG["RATE_LIMIT_BACKOFF_CAP"])
        return delay * self.jitter(0.9, 1.1)

    async def _reauthenticate(self, fid, reason, retries):
        """Refresh the session for ``fid``; returns a failure outcome, or None when the retry can go on."""
        if retries > API_CONFIG["MAX_AUTH_RETRIES"]:
            logger.error(f"GiftOps: Session for ID {fid} rejected {retries} times in a row")
            return error_result(RedeemStatus.REAUTH_FAILED, f"Re-authentication failed for ID {fid}", False)

        logger.info(f"GiftOps: Session expired for ID {fid} ({reason}), re-authenticating")
        auth_info = await self.authenticate_player(fid)
        if auth_info.get("authFailed") or auth_info.get("playerNotExist"):
            return self._auth_failure_result(auth_info, fid, RedeemStatus.REAUTH_FAILED)
        return None

    async def _rate_limited(self, fid, stage, consecutive, base_delay, gift_code_active, final):
        """Back off after a rate limit; returns the give-up outcome once the limit streak is too long."""
        limit = API_CONFIG["MAX_CONSECUTIVE_RATE_LIMITS"]
        if consecutive >= limit:
            logger.error(f"GiftOps: Giving up on ID {fid} after {consecutive} consecutive rate limits")
            return error_result(
                RedeemStatus.RATE_LIMIT_EXCEEDED,
                f"Too many consecutive rate limits ({consecutive})",
                gift_code_active,
            )
        if final:
            return None

        delay = self._rate_limit_backoff(base_delay, consecutive)
        logger.warning(f"GiftOps: {stage} rate limited for ID {fid} ({consecutive}/{limit}), waiting {delay:.1f}s")
        await self.sleep(delay)
        return None

    async def make_gift_code_request(self, fid, gift_code, operation):
        """Run the captcha/submit cycle for one identity and return the classified outcome."""
        # Authenticate once per item, not per captcha attempt
        auth_info = await self.authenticate_player(fid)
        if auth_info.get("authFailed") or auth_info.get("playerNotExist"):
            if not auth_info.get("playerNotExist"):
                logger.error(f"GiftOps: Player authentication failed for ID {fid} - cannot proceed with {operation}")
            return self._auth_failure_result(auth_info, fid, RedeemStatus.PLAYER_AUTH_FAILED)

        max_attempts = API_CONFIG["MAX_CAPTCHA_ATTEMPTS"]
        attempt = 0
        last_result = None
        # Rate limits count across the captcha and submit stages
        consecutive_rate_limits = 0
        auth_retry_count = 0

        while attempt < max_attempts:
            attempt += 1
            final = attempt >= max_attempts

            await self.throttle.acquire()
            captcha = await self.api.fetch_captcha_image(fid)

            if not captcha.get("image"):
                if captcha.get("auth_error"):
                    auth_retry_count += 1
                    failure = await self._reauthenticate(fid, captcha.get("error"), auth_retry_count)
                    if failure is not None:
                        return failure
                    # Re-auth does not use up a captcha attempt
                    attempt -= 1
                    continue

                error_msg = captcha.get("error") or 'UNKNOWN_ERROR'
                rule = get_status_rule(error_msg)

                if rule is not None and rule.retry == RetryKind.RATE:
                    consecutive_rate_limits += 1
                    last_result = {
                        "success": False,
                        "status": normalize_message(error_msg),
                        "message": error_msg,
                        "giftCodeActive": rule.gift_code_active,
                        "retry": {"type": rule.retry.value, "delay": retry_delay_for(rule)},
                    }
                    give_up = await self._rate_limited(fid, 'Captcha', consecutive_rate_limits,
                                                       retry_delay_for(rule), rule.gift_code_active, final)
                    if give_up is not None:
                        return give_up
                    continue

                consecutive_rate_limits = 0
                logger.warning(f"GiftOps: Captcha fetch error for ID {fid}: {error_msg}")
                last_result = error_result(RedeemStatus.CAPTCHA_FETCH_FAILED, 'Unable to fetch captcha image', False)
                if not final:
                    await self.sleep(API_CONFIG["RETRY_DELAY"])
                continue

            try:
                solved = await self.solver.solve(captcha["image"])
            except Exception as e:
                logger.exception(f"GiftOps: Captcha solving failed for ID {fid}: {e}")
                consecutive_rate_limits = 0
                last_result = error_result(RedeemStatus.CAPTCHA_SOLVE_FAILED, str(e), False)
                if not final:
                    await self.sleep(API_CONFIG["RETRY_DELAY"])
                continue

            logger.info(
                f"GiftOps: OCR solved for {fid}: {solved['text']} "
                f"(conf:{solved['confidence']:.2f}, attempt:{attempt}/{max_attempts})"
            )

            response = await self.api.post_gift_code(fid, gift_code, solved["text"])
            if not wire_ok(response) or not response.data:
                last_result = error_result(RedeemStatus.HTTP_ERROR, f"HTTP {response.status}", False)
                if response.status == 429:
                    consecutive_rate_limits += 1
                    give_up = await self._rate_limited(fid, 'Submit', consecutive_rate_limits,
                                                       API_CONFIG["RATE_LIMIT_DELAY"], False, final)
                    if give_up is not None:
                        return give_up
                    continue
                consecutive_rate_limits = 0
                if not final:
                    await self.sleep(API_CONFIG["RETRY_DELAY"])
                continue

            analysis = classify_response(response.data, operation)
            result = {
                **analysis,
                "captchaText": solved["text"],
                "captchaConfidence": solved["confidence"],
                "attempts": attempt,
            }

            if analysis.get("status") in AUTH_ERROR_STATUSES:
                last_result = result
                auth_retry_count += 1
                failure = await self._reauthenticate(fid, analysis["status"], auth_retry_count)
                if failure is not None:
                    return failure
                attempt -= 1
                continue
            auth_retry_count = 0

            retry = analysis.get("retry")
            if retry and retry["type"] == RetryKind.RATE.value:
                consecutive_rate_limits += 1
                last_result = result
                give_up = await self._rate_limited(fid, 'Submit', consecutive_rate_limits,
                                                   retry.get("delay") or API_CONFIG["RATE_LIMIT_DELAY"],
                                                   analysis.get("giftCodeActive", False), final)
                if give_up is not None:
                    return give_up
                continue
            consecutive_rate_limits = 0

            if retry and retry["type"] == RetryKind.CAPTCHA.value:
                logger.info(f"GiftOps: {analysis['status']} for ID {fid} on attempt {attempt}. Retrying...")
                last_result = result
                if not final:
                    await self.sleep(API_CONFIG["RETRY_DELAY"])
                continue

            return result

        # Free the model early on a stuck item
        self.solver.unload()
        return last_result or error_result(RedeemStatus.MAX_ATTEMPTS_EXCEEDED, 'Maximum captcha attempts exceeded', False)

    async def validate_gift_code(self, gift_code):
        """Check a code against the test ID. Adds ``is_vip`` to the outcome."""
        try:
            test_id = self.db.settings.get_test_id()
            if not test_id:
                return {"success": False, "message": 'No test ID available for validation', "is_vip": False}

            result = await self.make_gift_code_request(test_id, gift_code, 'validation')
            is_vip = result.get("status") in VIP_RESTRICTION_STATUSES

            # The test ID now counts as redeemed, so auto-redeem skips it
            if result.get("status") and result["status"] not in (RedeemStatus.UNHANDLED_ERROR.value, RedeemStatus.ANALYSIS_ERROR.value):
                self.db.codes.add_usage(test_id, gift_code, result["status"])

            return {**result, "is_vip": is_vip}

        except Exception as e:
            logger.exception(f"GiftOps: Validation error for code '{gift_code}': {e}")
            return {"success": False, "message": f"Validation error: {e}", "is_vip": False}

    async def redeem_for_player(self, fid, gift_code):
        result = await self.make_gift_code_request(fid, gift_code, 'redeem')

        players = self.db.players
        if result.get("success"):
            player = players.get_player(fid)
            if player and player.get("exist", 0) > 0:
                players.reset_exist(fid)

        if result.get("playerNotExist"):
            players.increment_exist(fid)
            player = players.get_player(fid)
            if player and player["exist"] >= PLAYER_NOT_EXIST_LIMIT and self.db.settings.get_auto_delete():
                players.delete_player(fid)

        return result

    async def process_item(self, item):
        """Run one work item; any exception becomes an UNHANDLED_ERROR outcome."""
        try:
            if item["operation"] == 'validation':
                return await self.validate_gift_code(item["giftCode"])
            if item["operation"] == 'redeem':
                if not item.get("id"):
                    raise ValueError('Missing player ID for redeem operation')
                return await self.redeem_for_player(item["id"], item["giftCode"])
            raise ValueError(f"Unknown operation: {item['operation']}")
        except Exception as e:
            logger.exception(f"GiftOps: Unhandled error processing item {item.get('id')} / {item.get('giftCode')}: {e}")
            return error_result(RedeemStatus.UNHANDLED_ERROR, str(e), False)
