import inspect
import logging

from .config import API_CONFIG
from .gift_status import (
    ALREADY_REDEEMED_STATUSES,
    LEVEL_RESTRICTION_STATUSES,
    RedeemStatus,
    VIP_RESTRICTION_STATUSES,
)

logger = logging.getLogger('gift_ops')

STATE_STARTED = 'in_progress'
STATE_COMPLETED = 'completed'
STATE_ABORTED = 'aborted'
STATE_FAILED = 'failed'
STATE_PREEMPTED = 'preempted'


def compute_redeem_stats(redeem_data, results, pending):
    """Counters for the redeem part of a batch; validation items are not counted.

    ``total`` covers every redeem item including pre-filtered ones. Restricted
    players (VIP or furnace level) are counted apart from ``failed``.
    """
    all_items = redeem_data.get("allItems") or redeem_data.get("items") or []
    total = len([item for item in all_items if item.get("operation") == 'redeem'])
    processed_results = [entry for entry in results if entry.get("operation") == 'redeem']
    processed = len(processed_results)

    success = 0
    already_redeemed = 0
    restricted = 0
    failed = 0
    for entry in processed_results:
        status = entry.get("status")
        if entry.get("preFiltered") or status in ALREADY_REDEEMED_STATUSES:
            already_redeemed += 1
        elif status == RedeemStatus.SUCCESS.value:
            success += 1
        elif status in VIP_RESTRICTION_STATUSES or status in LEVEL_RESTRICTION_STATUSES:
            restricted += 1
        elif not entry.get("success") or entry.get("vipSkipped"):
            failed += 1

    percent = min(100, round(processed / total * 100)) if total > 0 else 0

    return {
        "total": total,
        "processed": processed,
        "totalPending": len(pending),
        "success": success,
        "alreadyRedeemed": already_redeemed,
        "restricted": restricted,
        "failed": failed,
        "percent": percent,
    }


class ProgressReporter:
    """Forwards throttled snapshots of one process to a sink.

    The sink is called as ``sink(process_id, stats, state, message)`` and may be
    a plain function or a coroutine function. ``embed_state`` is the small dict
    persisted with the process so throttling survives a restart.
    """

    def __init__(self, process_id, sink=None, embed_state=None, interval=None):
        self.process_id = process_id
        self.sink = sink
        self.embed_state = dict(embed_state or {})
        self.interval = API_CONFIG["UPDATE_INTERVAL"] if interval is None else interval

    def _due(self, stats):
        last = self.embed_state.get("lastUpdateCount") or 0
        return (
            not self.embed_state.get("initialized")
            or stats["total"] == 0
            or stats["processed"] == stats["total"]
            or stats["processed"] - last >= self.interval
        )

    async def update(self, stats, state, message=None, force=False):
        if self.sink is None or self.embed_state.get("disabled"):
            return self.embed_state
        if not force and not self._due(stats):
            return self.embed_state

        try:
            outcome = self.sink(self.process_id, stats, state, message)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            # A broken sink must not stop the batch
            logger.exception(f"GiftOps: Progress sink failed for process {self.process_id}: {e}")
            self.embed_state["disabled"] = True
            return self.embed_state

        self.embed_state["initialized"] = True
        self.embed_state["lastUpdateCount"] = stats["processed"]
        self.embed_state["lastState"] = state
        return self.embed_state
