import asyncio

import pytest

from giftops.database import GiftDatabase
from giftops.queue_manager import QueueManager
from giftops.redeem_executor import RedeemExecutor
from giftops.redemption import CaptchaThrottle, RedemptionEngine
from giftops.wos_api import WireResponse

SUCCESS_BODY = {"code": 0, "msg": "SUCCESS", "err_code": 20000}


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


class FakeSleep:
    """Records requested delays and advances the fake clock instead of waiting."""

    def __init__(self, clock):
        self.clock = clock
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)
        self.clock.now += delay
        await asyncio.sleep(0)


class FakeSolver:
    def __init__(self, text="AB12", confidence=0.97):
        self.text = text
        self.confidence = confidence
        self.solve_calls = 0
        self.unload_calls = 0

    async def solve(self, image_bytes):
        self.solve_calls += 1
        return {"text": self.text, "confidence": self.confidence}

    def unload(self):
        self.unload_calls += 1


class FakeWosApi:
    """Scripted stand-in for WosApiClient.

    ``gift_responses`` maps a player ID to the list of bodies returned by
    successive submits; the last body repeats. ``captcha_responses`` is a queue
    of fetch results consumed before falling back to a good image.
    ``holds`` maps a player ID to an (entered, release) pair of events that
    parks its submit until the test releases it.
    """

    def __init__(self):
        self.gift_responses = {}
        self.default_gift_body = SUCCESS_BODY
        self.captcha_responses = []
        self.player_responses = {}
        self.player_calls = []
        self.captcha_calls = []
        self.gift_calls = []
        self.raise_for = set()
        self.holds = {}

    async def post_player(self, fid):
        self.player_calls.append(str(fid))
        queued = self.player_responses.get(str(fid))
        if queued:
            return queued.pop(0) if len(queued) > 1 else queued[0]
        return WireResponse(200, {"code": 0, "msg": "success", "data": {"fid": fid, "nickname": "p", "stove_lv": 30}}, "")

    async def fetch_captcha_image(self, fid):
        self.captcha_calls.append(str(fid))
        if self.captcha_responses:
            return self.captcha_responses.pop(0)
        return {"image": b"png-bytes", "error": None, "auth_error": False}

    async def post_gift_code(self, fid, gift_code, captcha_code):
        self.gift_calls.append((str(fid), gift_code))
        hold = self.holds.get(str(fid))
        if hold:
            entered, release = hold
            entered.set()
            await release.wait()
        if str(fid) in self.raise_for:
            raise RuntimeError("socket closed")
        bodies = self.gift_responses.get(str(fid))
        if bodies:
            body = bodies.pop(0) if len(bodies) > 1 else bodies[0]
        else:
            body = self.default_gift_body
        if isinstance(body, WireResponse):
            return body
        return WireResponse(200, body, "")

    def redeemed_fids(self):
        return [fid for fid, _ in self.gift_calls]


class RecordingSink:
    def __init__(self):
        self.events = []

    def __call__(self, process_id, stats, state, message):
        self.events.append((process_id, dict(stats), state, message))

    @property
    def states(self):
        return [event[2] for event in self.events]


@pytest.fixture
def db(tmp_path):
    database = GiftDatabase(db_path=str(tmp_path / "giftcode.sqlite"))
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def solver():
    return FakeSolver()


@pytest.fixture
def wos_api():
    return FakeWosApi()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(db, wos_api, solver, clock, fake_sleep):
    throttle = CaptchaThrottle(clock=clock, sleep=fake_sleep)
    return RedemptionEngine(wos_api, solver, db, throttle=throttle, sleep=fake_sleep, jitter=lambda a, b: 1.0)


@pytest.fixture
async def queue(db):
    manager = QueueManager(db.processes)
    yield manager
    await manager.shutdown()


@pytest.fixture
def executor(db, queue, engine, solver, sink, fake_sleep, clock):
    return RedeemExecutor(db, queue, engine, solver, progress_sink=sink, sleep=fake_sleep, clock=clock)


def redeem_items(gift_code, *fids):
    return [{"id": fid, "giftCode": gift_code, "operation": 'redeem'} for fid in fids]
