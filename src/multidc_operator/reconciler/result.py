"""Outcome of one reconcile pass and the retry delay policy."""

from __future__ import annotations

from pydantic import BaseModel

from multidc_operator.models import ClusterStatus


class ReconcileResult(BaseModel):
    """What the caller should do after a pass.

    - done: the cluster converged; nothing to do until the next trigger
    - requeue_after: run another pass after this many seconds
    - error: terminal configuration error; no requeue until the
      definition changes
    """

    done: bool = False
    requeue_after: float | None = None
    reason: str = ""
    error: str | None = None
    coalesced: bool = False
    status: ClusterStatus | None = None

    @classmethod
    def converged(cls, status: ClusterStatus | None = None) -> ReconcileResult:
        return cls(done=True, reason="converged", status=status)

    @classmethod
    def retry(
        cls,
        delay: float,
        reason: str,
        status: ClusterStatus | None = None,
    ) -> ReconcileResult:
        return cls(requeue_after=delay, reason=reason, status=status)

    @classmethod
    def failed(cls, error: str, status: ClusterStatus | None = None) -> ReconcileResult:
        return cls(error=error, reason="configuration error", status=status)

    @property
    def terminal(self) -> bool:
        return self.error is not None


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base * 2**attempt, never more than *cap*."""
    if attempt < 0:
        attempt = 0
    # Cap the exponent so huge retry counts can't overflow
    return min(cap, base * (2 ** min(attempt, 32)))
