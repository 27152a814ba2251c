"""Closed set of gift code API statuses and the table-driven response classifier.

The game API reports outcomes either as a message string (``"RECEIVED."``), as a
numeric code in ``msg``, or with both a message and ``err_code``. Every known
status has one row in ``STATUS_RULES``; retry and abort policy is read from the
table rather than from string comparisons scattered through the redeem loop.
"""
import logging
from collections import namedtuple
from enum import Enum

from .config import API_CONFIG

logger = logging.getLogger('gift_ops')


class RedeemStatus(str, Enum):
    # Wire statuses
    CAPTCHA_CHECK_ERROR = "CAPTCHA CHECK ERROR"
    CAPTCHA_EXPIRED = "CAPTCHA EXPIRED"
    CAPTCHA_GET_TOO_FREQUENT = "CAPTCHA GET TOO FREQUENT"
    CAPTCHA_CHECK_TOO_FREQUENT = "CAPTCHA CHECK TOO FREQUENT"
    TIMEOUT_RETRY = "TIMEOUT RETRY"
    ROLE_NOT_EXIST = "ROLE NOT EXIST"
    SUCCESS = "SUCCESS"
    RECEIVED = "RECEIVED"
    SAME_TYPE_EXCHANGE = "SAME TYPE EXCHANGE"
    USED = "USED"
    TIME_ERROR = "TIME ERROR"
    CDK_NOT_FOUND = "CDK NOT FOUND"
    STOVE_LV_ERROR = "STOVE_LV ERROR"
    RECHARGE_MONEY_ERROR = "RECHARGE_MONEY ERROR"
    RECHARGE_MONEY_VIP_ERROR = "RECHARGE_MONEY_VIP ERROR"
    NOT_LOGIN = "NOT LOGIN"
    SIGN_ERROR = "SIGN ERROR"

    # Local outcomes
    PLAYER_AUTH_FAILED = "PLAYER_AUTH_FAILED"
    REAUTH_FAILED = "REAUTH_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CAPTCHA_FETCH_FAILED = "CAPTCHA_FETCH_FAILED"
    CAPTCHA_SOLVE_FAILED = "CAPTCHA_SOLVE_FAILED"
    HTTP_ERROR = "HTTP_ERROR"
    MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    ANALYSIS_ERROR = "ANALYSIS_ERROR"
    UNHANDLED_ERROR = "UNHANDLED_ERROR"
    UNKNOWN_API_RESPONSE = "UNKNOWN_API_RESPONSE"
    SKIPPED_NON_VIP_ELIGIBLE = "SKIPPED_NON_VIP_ELIGIBLE"


class RetryKind(str, Enum):
    CAPTCHA = "captcha"
    RATE = "rate"


# success / giftCodeActive / retry / err_code / playerNotExist
StatusRule = namedtuple('StatusRule', ['success', 'gift_code_active', 'retry', 'err_code', 'player_not_exist'])

STATUS_RULES = {
    RedeemStatus.CAPTCHA_CHECK_ERROR: StatusRule(False, None, RetryKind.CAPTCHA, 40103, False),
    RedeemStatus.CAPTCHA_EXPIRED: StatusRule(False, None, RetryKind.CAPTCHA, 40102, False),
    RedeemStatus.CAPTCHA_GET_TOO_FREQUENT: StatusRule(False, True, RetryKind.RATE, 40100, False),
    RedeemStatus.CAPTCHA_CHECK_TOO_FREQUENT: StatusRule(False, True, RetryKind.RATE, 40101, False),
    RedeemStatus.TIMEOUT_RETRY: StatusRule(False, True, RetryKind.RATE, 40004, False),
    RedeemStatus.ROLE_NOT_EXIST: StatusRule(False, True, None, 40001, True),
    RedeemStatus.SUCCESS: StatusRule(True, True, None, None, False),
    RedeemStatus.RECEIVED: StatusRule(True, True, None, 40008, False),
    RedeemStatus.SAME_TYPE_EXCHANGE: StatusRule(True, True, None, 40011, False),
    RedeemStatus.USED: StatusRule(False, False, None, 40005, False),
    RedeemStatus.TIME_ERROR: StatusRule(False, False, None, 40007, False),
    RedeemStatus.CDK_NOT_FOUND: StatusRule(False, False, None, 40014, False),
    RedeemStatus.STOVE_LV_ERROR: StatusRule(False, True, None, 40006, False),
    RedeemStatus.RECHARGE_MONEY_ERROR: StatusRule(False, True, None, 40017, False),
    RedeemStatus.RECHARGE_MONEY_VIP_ERROR: StatusRule(False, True, None, 40018, False),
    RedeemStatus.NOT_LOGIN: StatusRule(False, None, RetryKind.CAPTCHA, None, False),
    RedeemStatus.SIGN_ERROR: StatusRule(False, None, RetryKind.CAPTCHA, None, False),
}

ERROR_CODE_TO_STATUS = {rule.err_code: status for status, rule in STATUS_RULES.items() if rule.err_code is not None}

ALREADY_REDEEMED_STATUSES = frozenset({RedeemStatus.RECEIVED.value, RedeemStatus.SAME_TYPE_EXCHANGE.value})
SUCCESS_STATUSES = frozenset({RedeemStatus.SUCCESS.value}) | ALREADY_REDEEMED_STATUSES
VIP_RESTRICTION_STATUSES = frozenset({
    RedeemStatus.RECHARGE_MONEY_ERROR.value,
    RedeemStatus.RECHARGE_MONEY_VIP_ERROR.value,
})
LEVEL_RESTRICTION_STATUSES = frozenset({RedeemStatus.STOVE_LV_ERROR.value})
ABORT_STATUSES = frozenset({
    RedeemStatus.USED.value,
    RedeemStatus.TIME_ERROR.value,
    RedeemStatus.CDK_NOT_FOUND.value,
})
AUTH_ERROR_STATUSES = frozenset({RedeemStatus.NOT_LOGIN.value, RedeemStatus.SIGN_ERROR.value})


def normalize_message(message):
    """Upper-case and drop trailing dots/whitespace: 'Received.' -> 'RECEIVED'."""
    if message is None:
        return ''
    return str(message).upper().rstrip('. \t\r\n')


def lookup_status(message):
    try:
        return RedeemStatus(normalize_message(message))
    except ValueError:
        return None


def get_status_rule(message):
    status = lookup_status(message)
    if status is None:
        return None
    return STATUS_RULES.get(status)


def retry_delay_for(rule):
    if rule is None or rule.retry is None:
        return None
    if rule.retry == RetryKind.RATE:
        return API_CONFIG["RATE_LIMIT_DELAY"]
    return None


def error_result(status, message, gift_code_active=False):
    return {
        "success": False,
        "status": status.value if isinstance(status, RedeemStatus) else status,
        "message": message,
        "giftCodeActive": gift_code_active,
    }


def _from_rule(status, rule, message, err_code, details):
    return {
        "success": rule.success,
        "status": status.value,
        "message": message,
        "giftCodeActive": rule.gift_code_active,
        "playerNotExist": rule.player_not_exist,
        "retry": {"type": rule.retry.value, "delay": retry_delay_for(rule)} if rule.retry else None,
        "errCode": err_code,
        "details": details,
    }


def _is_numeric(value):
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and value.strip().isdigit()


def classify_response(data, operation='redeem'):
    """Map a gift code API body to a structured outcome dict.

    Args:
        data: decoded JSON body ({"msg": ..., "err_code": ...}).
        operation: 'validation' or 'redeem', only used for mismatch logging.

    Returns:
        dict with success, status, message, giftCodeActive, playerNotExist, retry, errCode.
    """
    try:
        if not data or not isinstance(data, dict):
            return error_result(RedeemStatus.EMPTY_RESPONSE, 'Empty API response', False)

        raw_code = data.get('err_code', data.get('errCode'))
        try:
            err_code = int(raw_code) if raw_code not in (None, '') else 0
        except (TypeError, ValueError):
            err_code = 0

        msg = data.get('msg')
        if _is_numeric(msg):
            numeric_code = int(msg)
            mapped = ERROR_CODE_TO_STATUS.get(numeric_code)
            if mapped is not None:
                raw_message = mapped.value
                status_key = mapped.value
            else:
                raw_message = f"Error {numeric_code}"
                status_key = f"ERROR_{numeric_code}"
        elif isinstance(msg, str):
            raw_message = msg
            status_key = normalize_message(msg)
        else:
            raw_message = ''
            status_key = ''

        message = raw_message or 'Unknown response'

        status = lookup_status(status_key)
        if status is not None:
            rule = STATUS_RULES[status]
            if rule.err_code is not None and err_code != 0 and err_code != rule.err_code:
                # Message wins; the code is only cross-checked
                logger.warning(
                    f"GiftOps: Error code mismatch for '{status.value}' during {operation}: "
                    f"expected {rule.err_code}, got {err_code}"
                )
            return _from_rule(status, rule, message, err_code, data)

        # Fallback: look up by err_code when the message is unknown
        if err_code != 0 and err_code in ERROR_CODE_TO_STATUS:
            fallback = ERROR_CODE_TO_STATUS[err_code]
            return _from_rule(fallback, STATUS_RULES[fallback], fallback.value, err_code, data)

        logger.info(f"GiftOps: Unknown API response during {operation}: msg='{msg}', err_code={err_code}")
        return {
            "success": False,
            "status": status_key or RedeemStatus.UNKNOWN_API_RESPONSE.value,
            "message": message,
            "giftCodeActive": False,
            "playerNotExist": False,
            "retry": None,
            "errCode": err_code,
            "details": data,
        }

    except Exception as e:
        logger.exception(f"GiftOps: Error analyzing API response: {e}")
        return error_result(RedeemStatus.ANALYSIS_ERROR, str(e), False)
