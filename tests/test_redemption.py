import pytest

from conftest import FakeSolver
from giftops.config import API_CONFIG
from giftops.redemption import CaptchaThrottle, RedemptionEngine
from giftops.wos_api import WireResponse

CAPTCHA_CHECK_ERROR = {"code": 1, "msg": "CAPTCHA CHECK ERROR.", "err_code": 40103}
TOO_FREQUENT = {"image": None, "error": "CAPTCHA GET TOO FREQUENT", "auth_error": False}
NOT_LOGIN = {"image": None, "error": "NOT LOGIN", "auth_error": True}
CHECK_TOO_FREQUENT = {"code": 1, "msg": "CAPTCHA CHECK TOO FREQUENT.", "err_code": 40101}
TIMEOUT_RETRY = {"code": 1, "msg": "TIMEOUT RETRY.", "err_code": 40004}
SUBMIT_NOT_LOGIN = {"code": 1, "msg": "NOT LOGIN."}


class TestCaptchaThrottle:
    @pytest.mark.asyncio
    async def test_spaces_fetches(self, clock, fake_sleep):
        throttle = CaptchaThrottle(min_interval=2.05, clock=clock, sleep=fake_sleep)
        first = await throttle.acquire()
        second = await throttle.acquire()
        assert fake_sleep.calls == [pytest.approx(2.05)]
        assert second - first == pytest.approx(2.05)
        assert throttle.last_acquired() == second

    @pytest.mark.asyncio
    async def test_no_wait_when_interval_already_passed(self, clock, fake_sleep):
        throttle = CaptchaThrottle(min_interval=2.05, clock=clock, sleep=fake_sleep)
        await throttle.acquire()
        clock.now += 5
        await throttle.acquire()
        assert fake_sleep.calls == []


class TestMakeGiftCodeRequest:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, engine, wos_api):
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["success"] is True
        assert result["status"] == "SUCCESS"
        assert result["attempts"] == 1
        assert result["captchaText"] == "AB12"
        assert wos_api.player_calls == ["1"]

    @pytest.mark.asyncio
    async def test_wrong_captcha_is_retried(self, engine, wos_api, fake_sleep):
        wos_api.gift_responses["1"] = [CAPTCHA_CHECK_ERROR, {"msg": "SUCCESS"}]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "SUCCESS"
        assert result["attempts"] == 2
        assert 3.0 in fake_sleep.calls
        # Authentication is not repeated per captcha attempt
        assert wos_api.player_calls == ["1"]

    @pytest.mark.asyncio
    async def test_consecutive_rate_limits_give_up(self, engine, wos_api, fake_sleep):
        wos_api.captcha_responses = [dict(TOO_FREQUENT), dict(TOO_FREQUENT)]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "RATE_LIMIT_EXCEEDED"
        assert result["success"] is False
        assert fake_sleep.calls == [pytest.approx(60.0)]
        assert wos_api.gift_calls == []

    @pytest.mark.asyncio
    async def test_rate_limit_then_recovery(self, engine, wos_api):
        wos_api.captcha_responses = [dict(TOO_FREQUENT)]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "SUCCESS"
        assert result["attempts"] == 2

    @pytest.mark.asyncio
    async def test_expired_session_reauthenticates_without_using_an_attempt(self, engine, wos_api):
        wos_api.captcha_responses = [dict(NOT_LOGIN)]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "SUCCESS"
        assert result["attempts"] == 1
        assert wos_api.player_calls == ["1", "1"]

    @pytest.mark.asyncio
    async def test_repeated_session_rejection_fails(self, engine, wos_api):
        wos_api.captcha_responses = [dict(NOT_LOGIN) for _ in range(3)]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "REAUTH_FAILED"
        assert len(wos_api.player_calls) == 3

    @pytest.mark.asyncio
    async def test_attempt_budget_exhausted_returns_last_result(self, engine, wos_api, solver):
        wos_api.default_gift_body = CAPTCHA_CHECK_ERROR
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "CAPTCHA CHECK ERROR"
        assert result["attempts"] == 5
        assert len(wos_api.gift_calls) == 5
        assert solver.unload_calls == 1

    @pytest.mark.asyncio
    async def test_http_error_is_retried(self, engine, wos_api):
        wos_api.gift_responses["1"] = [WireResponse(500, None, 'oops'), {"msg": "SUCCESS"}]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "SUCCESS"
        assert result["attempts"] == 2

    @pytest.mark.asyncio
    async def test_solver_failure_is_retried(self, db, wos_api, clock, fake_sleep):
        class FlakySolver(FakeSolver):
            async def solve(self, image_bytes):
                self.solve_calls += 1
                if self.solve_calls == 1:
                    raise RuntimeError("bad tensor")
                return await super().solve(image_bytes)

        engine = RedemptionEngine(
            wos_api, FlakySolver(), db,
            throttle=CaptchaThrottle(clock=clock, sleep=fake_sleep), sleep=fake_sleep, jitter=lambda a, b: 1.0,
        )
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "SUCCESS"
        assert result["attempts"] == 2

    @pytest.mark.asyncio
    async def test_auth_failure_is_terminal(self, engine, wos_api):
        wos_api.player_responses["1"] = [WireResponse(200, {"code": 1, "msg": "params error"}, "")]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "PLAYER_AUTH_FAILED"
        assert len(wos_api.player_calls) == 3
        assert wos_api.captcha_calls == []

    @pytest.mark.asyncio
    async def test_submit_rate_limits_give_up(self, engine, wos_api, fake_sleep):
        wos_api.default_gift_body = CHECK_TOO_FREQUENT
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "RATE_LIMIT_EXCEEDED"
        assert result["giftCodeActive"] is True
        assert len(wos_api.gift_calls) == 2
        assert fake_sleep.calls == [pytest.approx(60.0)]

    @pytest.mark.asyncio
    async def test_captcha_and_submit_rate_limits_count_together(self, engine, wos_api, fake_sleep):
        wos_api.captcha_responses = [dict(TOO_FREQUENT)]
        wos_api.default_gift_body = CHECK_TOO_FREQUENT
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "RATE_LIMIT_EXCEEDED"
        assert len(wos_api.gift_calls) == 1
        assert fake_sleep.calls == [pytest.approx(60.0)]

    @pytest.mark.asyncio
    async def test_submit_http_429_counts_as_rate_limit(self, engine, wos_api, fake_sleep):
        wos_api.gift_responses["1"] = [WireResponse(429, None, 'slow down')]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "RATE_LIMIT_EXCEEDED"
        assert len(wos_api.gift_calls) == 2
        assert fake_sleep.calls == [pytest.approx(60.0)]

    @pytest.mark.asyncio
    async def test_submit_rate_limit_backoff_grows_and_skips_last_wait(self, engine, wos_api, fake_sleep, monkeypatch):
        monkeypatch.setitem(API_CONFIG, "MAX_CONSECUTIVE_RATE_LIMITS", 10)
        wos_api.default_gift_body = TIMEOUT_RETRY
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "TIMEOUT RETRY"
        assert result["attempts"] == 5
        assert len(wos_api.gift_calls) == 5
        assert fake_sleep.calls == [pytest.approx(60.0), pytest.approx(90.0), pytest.approx(120.0), pytest.approx(120.0)]

    @pytest.mark.asyncio
    async def test_wrong_captcha_resets_rate_limit_streak(self, engine, wos_api):
        wos_api.gift_responses["1"] = [CHECK_TOO_FREQUENT, CAPTCHA_CHECK_ERROR, CHECK_TOO_FREQUENT, {"msg": "SUCCESS"}]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "SUCCESS"
        assert result["attempts"] == 4

    @pytest.mark.asyncio
    async def test_session_rejected_at_submit_reauthenticates(self, engine, wos_api):
        wos_api.gift_responses["1"] = [SUBMIT_NOT_LOGIN, {"msg": "SUCCESS"}]
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "SUCCESS"
        assert result["attempts"] == 1
        assert wos_api.player_calls == ["1", "1"]
        assert len(wos_api.gift_calls) == 2

    @pytest.mark.asyncio
    async def test_repeated_submit_session_rejection_fails(self, engine, wos_api):
        wos_api.default_gift_body = SUBMIT_NOT_LOGIN
        result = await engine.make_gift_code_request("1", "CODE", 'redeem')
        assert result["status"] == "REAUTH_FAILED"
        assert len(wos_api.player_calls) == 3
        assert len(wos_api.gift_calls) == 3


class TestRedeemForPlayer:
    @pytest.mark.asyncio
    async def test_missing_player_is_deleted_after_three_strikes(self, engine, wos_api, db):
        db.players.upsert_player("9", nickname="gone")
        db.players.increment_exist("9")
        db.players.increment_exist("9")
        wos_api.player_responses["9"] = [WireResponse(200, {"code": 1, "msg": "role not exist.", "data": []}, "")]

        result = await engine.redeem_for_player("9", "CODE")

        assert result["playerNotExist"] is True
        assert result["status"] == "ROLE NOT EXIST"
        assert db.players.get_player("9") is None

    @pytest.mark.asyncio
    async def test_missing_player_kept_when_auto_delete_off(self, engine, wos_api, db):
        db.settings.set_auto_delete(False)
        db.players.upsert_player("9", nickname="gone")
        for _ in range(3):
            db.players.increment_exist("9")
        wos_api.player_responses["9"] = [WireResponse(200, {"code": 1, "msg": "role not exist.", "data": []}, "")]

        await engine.redeem_for_player("9", "CODE")

        assert db.players.get_player("9")["exist"] == 4

    @pytest.mark.asyncio
    async def test_success_resets_not_found_counter(self, engine, db):
        db.players.upsert_player("5", nickname="back")
        db.players.increment_exist("5")
        await engine.redeem_for_player("5", "CODE")
        assert db.players.get_player("5")["exist"] == 0


class TestValidateGiftCode:
    @pytest.mark.asyncio
    async def test_vip_code_detected_and_usage_recorded(self, engine, wos_api, db):
        test_id = db.settings.get_test_id()
        wos_api.gift_responses[test_id] = [{"msg": "RECHARGE_MONEY_VIP ERROR.", "err_code": 40018}]

        result = await engine.validate_gift_code("VIPCODE")

        assert result["is_vip"] is True
        assert result["giftCodeActive"] is True
        assert db.codes.get_usage(test_id, "VIPCODE")["status"] == "RECHARGE_MONEY_VIP ERROR"

    @pytest.mark.asyncio
    async def test_item_exception_becomes_unhandled_error(self, engine, wos_api):
        wos_api.raise_for.add("3")
        result = await engine.process_item({"id": "3", "giftCode": "CODE", "operation": 'redeem'})
        assert result["status"] == "UNHANDLED_ERROR"
        assert result["success"] is False
