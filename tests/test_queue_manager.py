import asyncio

import pytest

from giftops.errors import ProcessNotFoundError


class GatedRunner:
    """Runner that parks until released, then honours a preemption check."""

    def __init__(self, queue):
        self.queue = queue
        self.gate = asyncio.Event()
        self.started = []
        self.fail_for = set()

    async def __call__(self, process_id, run_id):
        self.started.append(process_id)
        await self.gate.wait()
        if process_id in self.fail_for:
            raise RuntimeError("runner exploded")
        check = await self.queue.check_for_preemption(process_id, run_id)
        if check["should_stop"]:
            return {"success": False, "preempted": True, "reason": check["reason"]}
        return {"success": True}


@pytest.fixture
def runner(queue):
    gated = GatedRunner(queue)
    queue.register_runner('test_action', gated)
    return gated


async def _create(db, priority):
    return await db.processes.create_process('test_action', 0, priority, 'tester')


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestManageQueue:
    @pytest.mark.asyncio
    async def test_starts_when_idle(self, db, queue, runner):
        pid = await _create(db, 200000)
        decision = await queue.manage_queue(pid)
        assert decision["action"] == "started"
        assert (await db.processes.get_process(pid))["status"] == 'active'

        runner.gate.set()
        await queue.wait_until_idle()
        assert (await db.processes.get_process(pid))["status"] == 'completed'

    @pytest.mark.asyncio
    async def test_equal_or_lower_priority_is_queued(self, db, queue, runner):
        first = await _create(db, 200000)
        second = await _create(db, 200000)
        third = await _create(db, 200010)
        await queue.manage_queue(first)

        assert (await queue.manage_queue(second)) == {"action": "queued", "processId": second, "position": 1}
        assert (await queue.manage_queue(third))["position"] == 2

        runner.gate.set()
        await queue.wait_until_idle()
        assert runner.started == [first, second, third]
        for pid in (first, second, third):
            assert (await db.processes.get_process(pid))["status"] == 'completed'

    @pytest.mark.asyncio
    async def test_higher_priority_preempts_and_preempted_resumes(self, db, queue, runner):
        bulk = await _create(db, 200005)
        urgent = await _create(db, 200000)
        await queue.manage_queue(bulk)
        await _settle()

        decision = await queue.manage_queue(urgent)
        assert decision["action"] == "preempted"
        assert decision["preempted"] == [bulk]
        bulk_record = await db.processes.get_process(bulk)
        assert bulk_record["status"] == 'preempted'
        assert bulk_record["preempted_by"] == urgent

        runner.gate.set()
        await queue.wait_until_idle()

        assert runner.started == [bulk, urgent, bulk]
        assert (await db.processes.get_process(urgent))["status"] == 'completed'
        assert (await db.processes.get_process(bulk))["status"] == 'completed'

    @pytest.mark.asyncio
    async def test_preempted_run_stops_before_it_is_restarted(self, db, queue):
        release = asyncio.Event()
        held = set()
        started = []
        in_flight = {}
        peak = {}

        async def runner(process_id, run_id):
            started.append(process_id)
            in_flight[process_id] = in_flight.get(process_id, 0) + 1
            peak[process_id] = max(peak.get(process_id, 0), in_flight[process_id])
            try:
                if process_id in held:
                    held.discard(process_id)
                    await release.wait()
                check = await queue.check_for_preemption(process_id, run_id)
                if check["should_stop"]:
                    return {"success": False, "preempted": True, "reason": check["reason"]}
                return {"success": True}
            finally:
                in_flight[process_id] -= 1

        queue.register_runner('test_action', runner)
        bulk = await _create(db, 200005)
        urgent = await _create(db, 150000)
        held.add(bulk)
        await queue.manage_queue(bulk)
        await _settle()
        await queue.manage_queue(urgent)

        async def urgent_done():
            while (await db.processes.get_process(urgent))["status"] != 'completed':
                await asyncio.sleep(0)

        await asyncio.wait_for(urgent_done(), timeout=5)
        await _settle()
        assert started == [bulk, urgent]
        assert (await db.processes.get_process(bulk))["status"] == 'preempted'

        release.set()
        await queue.wait_until_idle()

        assert started == [bulk, urgent, bulk]
        assert peak[bulk] == 1
        assert (await db.processes.get_process(bulk))["status"] == 'completed'

    @pytest.mark.asyncio
    async def test_unknown_process(self, queue):
        with pytest.raises(ProcessNotFoundError):
            await queue.manage_queue(999)

    @pytest.mark.asyncio
    async def test_failure_starts_next(self, db, queue, runner):
        broken = await _create(db, 200000)
        waiting = await _create(db, 200000)
        runner.fail_for.add(broken)
        await queue.manage_queue(broken)
        await queue.manage_queue(waiting)

        runner.gate.set()
        await queue.wait_until_idle()

        assert (await db.processes.get_process(broken))["status"] == 'failed'
        assert (await db.processes.get_process(waiting))["status"] == 'completed'


class TestCheckForPreemption:
    @pytest.mark.asyncio
    async def test_reasons(self, db, queue):
        assert (await queue.check_for_preemption(12345))["reason"] == 'PROCESS_NOT_FOUND'

        pid = await _create(db, 200000)
        await db.processes.update_status(pid, 'active')
        assert (await queue.check_for_preemption(pid)) == {"should_stop": False}

        await db.processes.set_preempted(pid, 77)
        check = await queue.check_for_preemption(pid)
        assert check["reason"] == 'PREEMPTED'
        assert check["preempted_by"] == 77

        await db.processes.update_status(pid, 'completed')
        assert (await queue.check_for_preemption(pid))["reason"] == 'STATUS_CHANGED'


class TestRecovery:
    @pytest.mark.asyncio
    async def test_interrupted_process_is_requeued_and_run(self, db, queue, runner):
        pid = await _create(db, 200000)
        await db.processes.update_status(pid, 'active')

        runner.gate.set()
        recovered = await queue.recover_processes()
        await queue.wait_until_idle()

        assert recovered == [pid]
        assert runner.started == [pid]
        assert (await db.processes.get_process(pid))["status"] == 'completed'
