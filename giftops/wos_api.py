import asyncio
import base64
import binascii
import hashlib
import json
import logging
import time
from collections import namedtuple
from datetime import datetime

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import API_CONFIG
from .gift_status import AUTH_ERROR_STATUSES, normalize_message

logger = logging.getLogger('gift_ops')
giftlog = logging.getLogger('giftlog')

# status 0 means the request never produced an HTTP response
WireResponse = namedtuple('WireResponse', ['status', 'data', 'text'])


def wire_ok(response):
    return 200 <= response.status < 300


def encode_data(data, secret=None):
    """Sign a form payload: md5 over sorted key=value pairs followed by the shared secret."""
    secret = API_CONFIG["SECRET"] if secret is None else secret
    sorted_keys = sorted(data.keys())
    encoded_data = "&".join(
        [
            f"{key}={json.dumps(data[key]) if isinstance(data[key], dict) else data[key]}"
            for key in sorted_keys
        ]
    )
    sign = hashlib.md5(f"{encoded_data}{secret}".encode()).hexdigest()
    return {"sign": sign, **data}


def build_session():
    session = requests.Session()
    # 429 is left to the caller, which has its own rate-limit policy
    retry_config = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["POST", "GET"],
        raise_on_status=False,
    )
    session.mount("https://", HTTPAdapter(max_retries=retry_config))
    session.mount("http://", HTTPAdapter(max_retries=retry_config))
    return session


class WosApiClient:
    """Signed form posts against the WOS gift code endpoints.

    Calls are blocking ``requests`` calls pushed to a worker thread so the event
    loop keeps running while a request is in flight.
    """

    def __init__(self, session=None, secret=None):
        self.session = session or build_session()
        self.secret = secret
        self.headers = {
            "accept": "application/json, text/plain, */*",
            "content-type": "application/x-www-form-urlencoded",
            "origin": API_CONFIG["ORIGIN"],
        }

    def _post_form(self, url, payload, label):
        data = encode_data(payload, self.secret)
        try:
            response = self.session.post(url, headers=self.headers, data=data, timeout=API_CONFIG["REQUEST_TIMEOUT"])
        except requests.exceptions.ConnectionError as e:
            logger.warning(f"GiftOps: Connection error reaching WOS API ({label}) for ID {payload.get('fid')}: {type(e).__name__}")
            return WireResponse(0, None, str(e))
        except requests.exceptions.Timeout:
            logger.warning(f"GiftOps: Timeout reaching WOS API ({label}) for ID {payload.get('fid')}")
            return WireResponse(0, None, 'timeout')
        except requests.exceptions.RequestException as e:
            logger.warning(f"GiftOps: Request error reaching WOS API ({label}) for ID {payload.get('fid')}: {type(e).__name__}")
            return WireResponse(0, None, str(e))

        log_entry = f"\n{datetime.now()} API REQ - {label}\nID:{payload.get('fid')}"
        if 'cdk' in payload:
            log_entry += f", Code:{payload['cdk']}, Captcha:{payload.get('captcha_code')}"
        log_entry += "\n"
        try:
            response_json = response.json()
            log_entry += f"Resp Code: {response.status_code}\nResponse JSON:\n{json.dumps(response_json, indent=2)}\n"
        except ValueError:
            response_json = None
            log_entry += f"Resp Code: {response.status_code}\nResponse Text (Not JSON): {response.text[:500]}...\n"
        log_entry += "-" * 50 + "\n"
        giftlog.info(log_entry.strip())

        return WireResponse(response.status_code, response_json, response.text)

    async def post_player(self, fid):
        payload = {
            "fid": f"{fid}",
            "time": f"{int(time.time())}",
        }
        return await asyncio.to_thread(self._post_form, API_CONFIG["PLAYER_URL"], payload, "Player Info")

    async def post_captcha(self, fid):
        payload = {
            "fid": f"{fid}",
            "time": f"{int(time.time() * 1000)}",
            "init": "0",
        }
        return await asyncio.to_thread(self._post_form, API_CONFIG["CAPTCHA_URL"], payload, "Captcha Fetch")

    async def post_gift_code(self, fid, gift_code, captcha_code):
        payload = {
            "fid": f"{fid}",
            "cdk": gift_code,
            "captcha_code": captcha_code,
            "time": f"{int(time.time() * 1000)}",
        }
        return await asyncio.to_thread(self._post_form, API_CONFIG["GIFT_CODE_URL"], payload, "Gift Code Redeem")

    async def fetch_captcha_image(self, fid):
        """Fetch and decode a captcha image.

        Returns a dict with either ``image`` (bytes) or ``error`` (raw message),
        plus ``auth_error`` when the session was rejected (NOT LOGIN / SIGN ERROR).
        """
        response = await self.post_captcha(fid)

        if response.status == 429:
            return {"image": None, "error": "CAPTCHA GET TOO FREQUENT", "auth_error": False}

        if not wire_ok(response) or not isinstance(response.data, dict):
            return {"image": None, "error": "INVALID_RESPONSE", "auth_error": False}

        data = response.data
        payload = data.get("data")
        if normalize_message(data.get("msg")) == "SUCCESS" and isinstance(payload, dict) and isinstance(payload.get("img"), str):
            captcha_image_base64 = payload["img"]
            if captcha_image_base64.startswith("data:"):
                img_b64_data = captcha_image_base64.split(",", 1)[1]
            else:
                img_b64_data = captcha_image_base64
            try:
                return {"image": base64.b64decode(img_b64_data), "error": None, "auth_error": False}
            except (binascii.Error, ValueError) as decode_err:
                logger.error(f"Failed to decode base64 image for ID {fid}: {decode_err}")
                return {"image": None, "error": "DECODE_ERROR", "auth_error": False}

        message = data.get("msg") or "UNKNOWN_ERROR"
        return {
            "image": None,
            "error": str(message),
            "auth_error": normalize_message(message) in AUTH_ERROR_STATUSES,
        }
