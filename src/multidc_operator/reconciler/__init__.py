"""Reconcile passes for multi-datacenter clusters.

Entry points: Reconciler (one pass or deletion cascade) and
PassCoordinator (single writer per cluster).
"""

from multidc_operator.reconciler.coordinator import PassCoordinator
from multidc_operator.reconciler.reconciler import (
    ConfigurationError,
    ReconcileError,
    Reconciler,
    validate_cluster,
)
from multidc_operator.reconciler.result import ReconcileResult, backoff_delay

__all__ = [
    "ConfigurationError",
    "PassCoordinator",
    "ReconcileError",
    "ReconcileResult",
    "Reconciler",
    "backoff_delay",
    "validate_cluster",
]
