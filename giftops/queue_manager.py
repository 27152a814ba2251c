import asyncio
import itertools
import logging

from .database import (
    PROCESS_STATUS_ACTIVE,
    PROCESS_STATUS_COMPLETED,
    PROCESS_STATUS_FAILED,
    PROCESS_STATUS_PREEMPTED,
    PROCESS_STATUS_QUEUED,
)
from .errors import ProcessNotFoundError

logger = logging.getLogger('gift_ops')

REASON_PROCESS_NOT_FOUND = 'PROCESS_NOT_FOUND'
REASON_PREEMPTED = 'PREEMPTED'
REASON_STATUS_CHANGED = 'STATUS_CHANGED'


class QueueManager:
    """Runs at most one priority level of processes at a time.

    Lower priority numbers win. Runners are registered per process action and
    are called as ``runner(process_id, run_id)``; they return a summary dict and
    are expected to poll ``check_for_preemption`` between items.
    """

    def __init__(self, store, runners=None):
        self.store = store
        self.runners = dict(runners or {})
        self._tasks = {}
        self._run_ids = {}
        self._run_counter = itertools.count(1)

    def register_runner(self, action, runner):
        self.runners[action] = runner

    async def manage_queue(self, process_id):
        process = await self.store.get_process(process_id)
        if process is None:
            raise ProcessNotFoundError(process_id)

        active = await self.store.get_processes_by_status(PROCESS_STATUS_ACTIVE)
        if not active:
            await self._start(process)
            return {"action": "started", "processId": process_id}

        min_active_priority = min(p["priority"] for p in active)
        if process["priority"] < min_active_priority:
            preempted = []
            for running in active:
                await self.store.set_preempted(running["id"], process_id)
                preempted.append(running["id"])
                logger.info(
                    f"GiftOps: Process {running['id']} (priority {running['priority']}) preempted by "
                    f"process {process_id} (priority {process['priority']})"
                )
            await self._start(process)
            return {"action": "preempted", "processId": process_id, "preempted": preempted}

        position = await self.get_queue_position(process_id)
        logger.info(f"GiftOps: Process {process_id} queued at position {position}")
        return {"action": "queued", "processId": process_id, "position": position}

    async def get_queue_position(self, process_id):
        waiting = await self.store.get_processes_by_status(PROCESS_STATUS_QUEUED, PROCESS_STATUS_PREEMPTED)
        for index, process in enumerate(waiting):
            if process["id"] == process_id:
                return index + 1
        return 0

    async def _start(self, process):
        process_id = process["id"]
        run_id = next(self._run_counter)
        self._run_ids[process_id] = run_id
        await self.store.update_status(process_id, PROCESS_STATUS_ACTIVE)

        task = asyncio.create_task(self.execute_process(process_id, run_id))
        self._tasks[process_id] = task
        task.add_done_callback(lambda t, pid=process_id: self._forget_task(pid, t))
        logger.info(f"GiftOps: Process {process_id} ({process['action']}) started")
        return task

    def _forget_task(self, process_id, task):
        if self._tasks.get(process_id) is task:
            del self._tasks[process_id]

    def _is_current_run(self, process_id, run_id):
        return run_id is None or self._run_ids.get(process_id) == run_id

    async def start_next_process(self):
        while True:
            active = await self.store.get_processes_by_status(PROCESS_STATUS_ACTIVE)
            if active:
                return None
            next_process = await self.store.get_next_runnable()
            if next_process is None:
                return None

            # A preempted run may still be inside an item; let it settle before resuming
            previous = self._tasks.get(next_process["id"])
            if previous is not None and not previous.done() and previous is not asyncio.current_task():
                logger.info(f"GiftOps: Waiting for the previous run of process {next_process['id']} to stop")
                await asyncio.wait({previous})
                continue
            return await self._start(next_process)

    async def complete_process(self, process_id):
        await self.store.update_status(process_id, PROCESS_STATUS_COMPLETED)
        self._run_ids.pop(process_id, None)
        logger.info(f"GiftOps: Process {process_id} completed")
        await self.start_next_process()

    async def fail_process(self, process_id, error=None):
        await self.store.update_status(process_id, PROCESS_STATUS_FAILED)
        self._run_ids.pop(process_id, None)
        logger.error(f"GiftOps: Process {process_id} failed: {error}")
        await self.start_next_process()

    async def check_for_preemption(self, process_id, run_id=None):
        process = await self.store.get_process(process_id)
        if process is None:
            return {"should_stop": True, "reason": REASON_PROCESS_NOT_FOUND}
        if process["status"] == PROCESS_STATUS_PREEMPTED:
            return {"should_stop": True, "reason": REASON_PREEMPTED, "preempted_by": process.get("preempted_by")}
        if process["status"] != PROCESS_STATUS_ACTIVE:
            return {"should_stop": True, "reason": REASON_STATUS_CHANGED}
        if not self._is_current_run(process_id, run_id):
            # A newer run of the same process owns it now
            return {"should_stop": True, "reason": REASON_STATUS_CHANGED}
        return {"should_stop": False}

    async def execute_process(self, process_id, run_id=None):
        process = await self.store.get_process(process_id)
        if process is None:
            logger.error(f"GiftOps: Process {process_id} vanished before execution")
            return None

        runner = self.runners.get(process["action"])
        if runner is None:
            await self.fail_process(process_id, f"No runner for action '{process['action']}'")
            return None

        try:
            summary = await runner(process_id, run_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"GiftOps: Process {process_id} raised: {e}")
            if self._is_current_run(process_id, run_id):
                await self.fail_process(process_id, str(e))
            return {"success": False, "error": str(e)}

        if not self._is_current_run(process_id, run_id) or (summary or {}).get("preempted"):
            return summary

        process = await self.store.get_process(process_id)
        if process is not None and process["status"] == PROCESS_STATUS_ACTIVE:
            await self.complete_process(process_id)
        return summary

    async def recover_processes(self):
        """Requeue processes that were active when the bot stopped, then restart the queue."""
        process_ids = await self.store.reset_active_to_queued()
        if process_ids:
            logger.info(f"GiftOps: Recovered {len(process_ids)} interrupted process(es): {process_ids}")
        await self.start_next_process()
        return process_ids

    async def wait_until_idle(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
