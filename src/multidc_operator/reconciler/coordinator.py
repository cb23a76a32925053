"""Pass coordinator: at most one pass per cluster at a time.

Triggers for a cluster that arrive while its pass is running do not start
a second, concurrent pass.  They are coalesced: the running caller
performs exactly one follow-up pass with the most recent trigger, and the
coalesced callers wait for and share that follow-up's result.  Passes for
different clusters run in parallel.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from multidc_operator.reconciler.result import ReconcileResult

logger = logging.getLogger(__name__)

PassFn = Callable[[], ReconcileResult]


@dataclass
class _Slot:
    running: bool = False
    pending: PassFn | None = None
    requested: int = 0
    finished: int = 0
    result: ReconcileResult | None = None


class PassCoordinator:
    """Serializes and coalesces passes per cluster key. Thread-safe."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._slots: dict[str, _Slot] = {}

    def run(self, key: str, pass_fn: PassFn) -> ReconcileResult:
        """Run *pass_fn* for *key*, or coalesce it into the pass already running.

        Exceptions from a pass propagate to the caller that ran it; the
        callers coalesced into it get a retry result.
        """
        with self._cond:
            slot = self._slots.setdefault(key, _Slot())
            slot.requested += 1
            ticket = slot.requested
            slot.pending = pass_fn
            if slot.running:
                logger.debug("Coalescing trigger %d for %s", ticket, key)
                while slot.finished < ticket:
                    self._cond.wait()
                result = slot.result or ReconcileResult.retry(0.0, "coalesced pass failed")
                return result.model_copy(update={"coalesced": True})
            slot.running = True

        result: ReconcileResult | None = None
        try:
            while True:
                with self._cond:
                    fn = slot.pending
                    slot.pending = None
                    covered = slot.requested
                    if fn is None:
                        # Release under the lock so no trigger lands in between
                        self._release(key, slot)
                        break
                result = fn()
                with self._cond:
                    slot.finished = covered
                    slot.result = result
                    self._cond.notify_all()
        except BaseException as exc:
            if isinstance(exc, Exception):
                logger.exception("Pass for %s failed", key)
            with self._cond:
                # Let anyone coalesced into the failed pass go
                slot.finished = slot.requested
                slot.result = None
                slot.pending = None
                self._release(key, slot)
            raise

        assert result is not None
        return result

    def _release(self, key: str, slot: _Slot) -> None:
        """Mark *slot* idle. Caller holds the lock."""
        slot.running = False
        if self._slots.get(key) is slot:
            del self._slots[key]
        self._cond.notify_all()

    def busy(self, key: str) -> bool:
        with self._cond:
            slot = self._slots.get(key)
            return slot is not None and slot.running
