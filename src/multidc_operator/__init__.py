"""multidc-operator: cross-context sequencing for multi-datacenter Cassandra clusters."""

__version__ = "0.4.0"

# Optional client imports (don't crash if optional deps are missing)
import contextlib

from multidc_operator.backup.injector import BackupInjector, inject
from multidc_operator.client.base import (
    NotFoundError,
    RemoteApiError,
    RemoteClient,
    RemoteError,
    TransientError,
)
from multidc_operator.client.memory import InMemoryClient
from multidc_operator.config import OperatorConfig, find_config, load_config
from multidc_operator.loader import ClusterLoadError, cluster_from_resource, load_cluster
from multidc_operator.models import (
    BackupPolicy,
    Cluster,
    ClusterStatus,
    Condition,
    ConditionStatus,
    DatacenterSpec,
    DatacenterStatus,
    ObjectKey,
    ObservedState,
    RebuildState,
    RebuildStatus,
    ResourceKind,
)
from multidc_operator.rebuild.orchestrator import PreconditionNotMet, RebuildOrchestrator
from multidc_operator.reconciler import (
    ConfigurationError,
    PassCoordinator,
    ReconcileError,
    ReconcileResult,
    Reconciler,
)
from multidc_operator.secrets.replicator import ReplicationResult, SecretReplicator
from multidc_operator.sequencer.sequencer import SequencingDecision, decide
from multidc_operator.status.aggregator import aggregate
from multidc_operator.status.store import FileStatusStore, RemoteStatusStore, StatusStore

with contextlib.suppress(ImportError):
    from multidc_operator.client.k8s_client import KubernetesClient

__all__ = [
    "BackupInjector",
    "BackupPolicy",
    "Cluster",
    "ClusterLoadError",
    "ClusterStatus",
    "Condition",
    "ConditionStatus",
    "ConfigurationError",
    "DatacenterSpec",
    "DatacenterStatus",
    "FileStatusStore",
    "InMemoryClient",
    "KubernetesClient",
    "NotFoundError",
    "ObjectKey",
    "ObservedState",
    "OperatorConfig",
    "PassCoordinator",
    "PreconditionNotMet",
    "RebuildOrchestrator",
    "RebuildState",
    "RebuildStatus",
    "ReconcileError",
    "ReconcileResult",
    "Reconciler",
    "RemoteApiError",
    "RemoteClient",
    "RemoteError",
    "RemoteStatusStore",
    "ReplicationResult",
    "ResourceKind",
    "SecretReplicator",
    "SequencingDecision",
    "StatusStore",
    "TransientError",
    "aggregate",
    "cluster_from_resource",
    "decide",
    "find_config",
    "inject",
    "load_cluster",
    "load_config",
    "__version__",
]
