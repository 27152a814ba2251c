import asyncio
import logging
import random
import re
import time
from datetime import datetime

import pytz
import requests

from .config import GIFT_CODE_API_CONFIG
from .gift_status import ABORT_STATUSES
from .redeem_executor import SYSTEM_24H_VALIDATION, SYSTEM_API_SYNC, SYSTEM_AUTO_REDEEM

logger = logging.getLogger('gift_ops')

CODE_PATTERN = re.compile(r'^[a-zA-Z0-9]+$')
DATE_PATTERN = re.compile(r'^(\d{2})\.(\d{2})\.(\d{4})$')


def parse_feed_line(line):
    """'CODE DD.MM.YYYY' -> (code, 'YYYY-MM-DD'), or None when malformed."""
    parts = str(line).strip().split()
    if len(parts) != 2:
        return None
    code, date_str = parts
    if not CODE_PATTERN.match(code):
        return None
    match = DATE_PATTERN.match(date_str)
    if not match:
        return None
    day, month, year = match.groups()
    return code, f"{year}-{month}-{day}"


def to_feed_date(date_str):
    """'YYYY-MM-DD' -> 'DD.MM.YYYY'."""
    year, month, day = str(date_str)[:10].split('-')
    return f"{day}.{month}.{year}"


class BackoffPolicy:
    """Escalating delay for the shared feed; one successful sync puts it back at the floor."""

    def __init__(self, floor=None, ceiling=None, rate_limit_floor=None, jitter=random.uniform):
        self.floor = GIFT_CODE_API_CONFIG["ERROR_BACKOFF"] if floor is None else floor
        self.ceiling = GIFT_CODE_API_CONFIG["MAX_BACKOFF"] if ceiling is None else ceiling
        self.rate_limit_floor = GIFT_CODE_API_CONFIG["CLOUDFLARE_BACKOFF"] if rate_limit_floor is None else rate_limit_floor
        self.jitter = jitter
        self.current = self.floor

    def _escalate(self):
        self.current = min(self.current * 2, self.ceiling)

    def on_rate_limited(self):
        delay = max(self.rate_limit_floor, self.current) * self.jitter(1.0, 1.5)
        self._escalate()
        return delay

    def on_server_error(self):
        delay = self.current * self.jitter(0.75, 1.25)
        self._escalate()
        return delay

    def on_failure(self):
        delay = min(self.current * self.jitter(0.75, 1.25), self.ceiling)
        self._escalate()
        return delay

    def reset(self):
        self.current = self.floor


class GiftCodeAPI:
    """Keeps the local gift code table in step with the shared gift code feed.

    New feed codes are validated before they are stored and auto-redeemed;
    manual codes are pushed back to the feed once.
    """

    def __init__(self, db, executor, session=None, sleep=asyncio.sleep, clock=time.monotonic, jitter=random.uniform):
        self.db = db
        self.executor = executor
        self.session = session or requests.Session()
        self.api_url = GIFT_CODE_API_CONFIG["API_URL"]
        self.api_key = GIFT_CODE_API_CONFIG["API_KEY"]
        self.sleep = sleep
        self.clock = clock
        self.jitter = jitter
        self.backoff = BackoffPolicy(jitter=jitter)
        self.min_api_call_interval = GIFT_CODE_API_CONFIG["MIN_API_CALL_INTERVAL"]
        self.last_api_call = None
        self.retry_after = None

    @property
    def headers(self):
        return {'X-API-Key': self.api_key, 'Content-Type': 'application/json'}

    def next_check_interval(self):
        return self.jitter(GIFT_CODE_API_CONFIG["MIN_CHECK_INTERVAL"], GIFT_CODE_API_CONFIG["MAX_CHECK_INTERVAL"])

    async def wait_for_rate_limit(self):
        if self.last_api_call is not None:
            since_last = self.clock() - self.last_api_call
            if since_last < self.min_api_call_interval:
                await self.sleep(self.min_api_call_interval - since_last + self.jitter(0, 0.5))
        self.last_api_call = self.clock()

    def handle_api_error(self, status, text=''):
        if status == 429:
            logger.warning(f"GiftOps: Gift code API rate limit triggered ({status})")
            return self.backoff.on_rate_limited()
        if status in (502, 503, 504):
            logger.warning(f"GiftOps: Gift code API server error: {status}")
            return self.backoff.on_server_error()
        logger.error(f"GiftOps: Gift code API error: {status}, {(text or '')[:200]}")
        return self.backoff.on_failure()

    async def _request(self, method, **kwargs):
        """Rate-limited feed call; None when the request itself failed."""
        await self.wait_for_rate_limit()
        try:
            return await asyncio.to_thread(
                self.session.request, method, self.api_url,
                headers=self.headers, timeout=GIFT_CODE_API_CONFIG["REQUEST_TIMEOUT"], **kwargs
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"GiftOps: Gift code API {method} failed: {type(e).__name__}: {e}")
            return None

    @staticmethod
    def _json(response):
        try:
            return response.json()
        except ValueError:
            return None

    async def check_giftcode(self, giftcode):
        response = await self._request('GET', params={'action': 'check', 'giftcode': giftcode})
        if response is None:
            return False
        if response.status_code != 200:
            logger.warning(f"GiftOps: Failed to check code {giftcode}: {response.status_code}")
            await self.sleep(self.handle_api_error(response.status_code, response.text))
            return False
        result = self._json(response)
        if not isinstance(result, dict):
            logger.warning(f"GiftOps: Invalid JSON response when checking code {giftcode}")
            return False
        return bool(result.get('exists', False))

    async def add_giftcode(self, giftcode, date=None):
        """Push a code to the feed. True when the feed has it afterwards."""
        existing = self.db.codes.get_gift_code(giftcode)
        if existing and existing.get('status') == 'invalid':
            return False

        if await self.check_giftcode(giftcode):
            return True

        feed_date = to_feed_date(date) if date else datetime.now(pytz.UTC).strftime("%d.%m.%Y")
        response = await self._request('POST', json={'code': giftcode, 'date': feed_date})
        if response is None:
            return False

        if response.status_code == 409:
            return True
        if response.status_code == 200:
            result = self._json(response)
            if isinstance(result, dict) and result.get('success') is True:
                logger.info(f"GiftOps: Pushed gift code {giftcode} to the gift code API")
                return True
            logger.warning(f"GiftOps: API didn't confirm success for code {giftcode}: {response.text[:200]}")
            return False

        logger.warning(f"GiftOps: Failed to add code {giftcode} to API: {response.status_code}, {response.text[:200]}")
        if 'invalid' in (response.text or '').lower():
            self.db.codes.update_status(giftcode, 'invalid')
        await self.sleep(self.handle_api_error(response.status_code, response.text))
        return False

    async def remove_giftcode(self, giftcode, from_validation=False):
        """Remove a code from the feed; only allowed after a failed validation."""
        if not from_validation:
            logger.warning(f"GiftOps: Attempted to remove code {giftcode} without validation flag")
            return False

        if not await self.check_giftcode(giftcode):
            self.db.codes.update_status(giftcode, 'invalid')
            return True

        response = await self._request('DELETE', json={'code': giftcode})
        if response is None:
            return False
        if response.status_code == 200:
            result = self._json(response)
            if isinstance(result, dict) and result.get('success') is True:
                self.db.codes.update_status(giftcode, 'invalid')
                return True
            logger.warning(f"GiftOps: API didn't confirm removal of code {giftcode}: {response.text[:200]}")
            return False

        logger.warning(f"GiftOps: Failed to remove code {giftcode} from API: {response.status_code}, {response.text[:200]}")
        await self.sleep(self.handle_api_error(response.status_code, response.text))
        return False

    async def _delete_malformed(self, lines):
        logger.warning(f"GiftOps: Found {len(lines)} invalid code formats from API")
        for line in lines:
            parts = str(line).split()
            code = parts[0] if parts else str(line).strip()
            response = await self._request('DELETE', json={'code': code})
            if response is not None and response.status_code != 200:
                await self.sleep(self.handle_api_error(response.status_code, response.text))

    async def _validate(self, giftcode, admin_id):
        return await self.executor.create_redeem_process(
            [{"id": None, "giftCode": giftcode, "operation": 'validation'}], admin_id=admin_id
        )

    async def sync_with_api(self):
        """One reconciliation pass. False means the feed could not be read."""
        local_codes = {row['gift_code']: row for row in self.db.codes.get_all_gift_codes()}

        response = await self._request('GET')
        if response is None:
            return False
        if response.status_code != 200:
            self.retry_after = self.handle_api_error(response.status_code, response.text)
            logger.warning(f"GiftOps: API request failed, backing off for {self.retry_after:.1f} seconds")
            return False

        result = self._json(response)
        if not isinstance(result, dict):
            logger.error("GiftOps: Gift code API returned a non-JSON body")
            return False
        if result.get('error') or result.get('detail'):
            logger.error(f"GiftOps: API returned error: {result.get('error') or result.get('detail')}")
            return False

        valid_codes = []
        malformed = []
        for line in result.get('codes') or []:
            parsed = parse_feed_line(line)
            if parsed is None:
                malformed.append(line)
            else:
                valid_codes.append(parsed)

        if malformed:
            await self._delete_malformed(malformed)

        new_codes = [(code, date) for code, date in valid_codes if code not in local_codes]
        redeemable = []
        for code, date in new_codes:
            try:
                validation = await self._validate(code, SYSTEM_API_SYNC)
            except Exception as e:
                logger.exception(f"GiftOps: Validation of API code {code} failed: {e}")
                continue

            first = (validation.get('results') or [{}])[0]
            if validation.get('success') and first.get('giftCodeActive') is True:
                is_vip = bool(first.get('is_vip'))
                self.db.codes.add_gift_code(code, 'active', 'system', 'api', True, is_vip, date)
                self.db.codes.update_last_validated(code)
                redeemable.append(code)
                logger.info(f"GiftOps: Added API gift code {code} (date {date}, vip {is_vip})")
            else:
                logger.info(
                    f"GiftOps: Inactive code from API not stored: {code} "
                    f"(status {first.get('status', 'UNKNOWN')}: {validation.get('message')})"
                )
                await self.remove_giftcode(code, from_validation=True)

        if redeemable:
            await self._auto_redeem(redeemable)

        await self._push_manual_codes(local_codes, {code for code, _ in valid_codes})

        self.backoff.reset()
        return True

    async def _auto_redeem(self, codes):
        alliances = self.db.alliances.get_auto_redeem_alliances()
        pairs = [(code, alliance) for code in codes for alliance in alliances]
        outcomes = await asyncio.gather(
            *[self.create_auto_redeem_process_for_code_and_alliance(code, alliance) for code, alliance in pairs],
            return_exceptions=True,
        )
        for (code, alliance), outcome in zip(pairs, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"GiftOps: Auto-redeem process for {code} / alliance {alliance['id']} failed: {outcome}")
        return outcomes

    async def create_auto_redeem_process_for_code_and_alliance(self, giftcode, alliance):
        return await self.executor.create_auto_redeem_process(giftcode, alliance, SYSTEM_AUTO_REDEEM)

    async def _push_manual_codes(self, local_codes, feed_codes):
        for code, row in local_codes.items():
            if row.get('status') == 'invalid' or (row.get('source') or 'manual') != 'manual':
                continue
            if row.get('api_pushed') or code in feed_codes:
                continue
            try:
                if await self.add_giftcode(code, row.get('date')):
                    self.db.codes.update_api_pushed(code, True)
            except Exception as e:
                logger.exception(f"GiftOps: Pushing code {code} to API failed: {e}")
                await self.sleep(GIFT_CODE_API_CONFIG["ERROR_BACKOFF"])

    async def validate_existing_codes(self):
        """Re-check stored codes that have not been validated in the last 24 hours."""
        for row in self.db.codes.get_codes_needing_validation():
            code = row['gift_code']
            try:
                validation = await self._validate(code, SYSTEM_24H_VALIDATION)
            except Exception as e:
                logger.exception(f"GiftOps: Revalidation of {code} failed: {e}")
                continue

            first = (validation.get('results') or [{}])[0]
            if validation.get('success') and first.get('giftCodeActive') is True:
                self.db.codes.update_last_validated(code)
            elif first.get('status') in ABORT_STATUSES:
                logger.info(f"GiftOps: Gift code {code} became invalid after 24h check ({first['status']})")
                self.db.codes.update_status(code, 'invalid')
                await self.remove_giftcode(code, from_validation=True)
            else:
                # Transient failure; the next sweep tries again
                logger.warning(f"GiftOps: Revalidation of {code} inconclusive: {first.get('status')} {validation.get('message')}")

    async def run_cycle(self):
        """Sync once and return how long to sleep before the next cycle."""
        try:
            if await self.sync_with_api():
                try:
                    await self.validate_existing_codes()
                except Exception as e:
                    logger.exception(f"GiftOps: Error validating existing codes: {e}")
                self.backoff.reset()
                return self.next_check_interval()

            if self.retry_after is not None:
                delay, self.retry_after = self.retry_after, None
            else:
                delay = self.backoff.on_failure()
            logger.warning(f"GiftOps: API sync failed, backing off for {delay:.1f} seconds")
            return delay
        except Exception as e:
            logger.exception(f"GiftOps: Error in API check loop: {e}")
            return self.backoff.on_failure()
