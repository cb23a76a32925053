"""Core data models for multidc-operator.

Defines the schemas for:
- Cluster definitions (desired topology and backup policy)
- Remote object addressing (context + namespace + name)
- Observed datacenter state mirrored from remote contexts
- Cluster status (the only state the operator persists)
- Rebuild task bookkeeping
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# --- Enums ---


class ConditionStatus(enum.StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ResourceKind(enum.StrEnum):
    CLUSTER = "cluster"
    DATACENTER = "datacenter"
    DEPLOYMENT = "deployment"
    SERVICE = "service"
    SECRET = "secret"
    CONFIG_MAP = "configmap"
    REBUILD_TASK = "rebuildtask"


class RebuildState(enum.StrEnum):
    NOT_NEEDED = "NotNeeded"
    PENDING = "Pending"
    CREATED = "Created"
    COMPLETED = "Completed"
    FAILED = "Failed"


READY = "Ready"


# --- Addressing ---


@dataclass(frozen=True)
class ObjectKey:
    """Address of a remote object: which context, which namespace, which name."""

    context: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.context}/{self.namespace}/{self.name}"


# --- Cluster definition ---


class ContainerImage(BaseModel):
    """A container image reference split into its parts."""

    registry: str = "docker.io"
    repository: str = "k8ssandra"
    name: str = "medusa"
    tag: str = "latest"

    def ref(self) -> str:
        return f"{self.registry}/{self.repository}/{self.name}:{self.tag}"


class ProbeSettings(BaseModel):
    initial_delay_seconds: int = Field(10, ge=0)
    timeout_seconds: int = Field(1, ge=1)
    period_seconds: int = Field(10, ge=1)
    success_threshold: int = Field(1, ge=1)
    failure_threshold: int = Field(10, ge=1)


class ResourceSettings(BaseModel):
    requests: dict[str, str] = Field(default_factory=dict)
    limits: dict[str, str] = Field(default_factory=dict)


class StorageProperties(BaseModel):
    """Where backups are written. Rendered into the Medusa config map."""

    storage_provider: str = "s3"
    bucket_name: str = ""
    prefix: str = ""
    region: str = ""
    storage_secret: str = ""


class BackupPolicy(BaseModel):
    """Backup (Medusa) settings shared by every datacenter of a cluster."""

    image: ContainerImage = Field(default_factory=ContainerImage)
    storage: StorageProperties = Field(default_factory=StorageProperties)
    credential_secret: str = ""
    readiness_probe: ProbeSettings = Field(default_factory=ProbeSettings)
    liveness_probe: ProbeSettings = Field(default_factory=ProbeSettings)
    resources: ResourceSettings = Field(default_factory=ResourceSettings)
    resolve_ip_addresses: bool = False
    standalone_replicas: int = Field(1, ge=0)

    def secret_refs(self) -> list[str]:
        """Secrets that must exist in every datacenter context, deduplicated."""
        refs: list[str] = []
        for name in (self.storage.storage_secret, self.credential_secret):
            if name and name not in refs:
                refs.append(name)
        return refs


class DatacenterSpec(BaseModel):
    """One regional datacenter of the cluster."""

    name: str = Field(..., pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    context: str = Field(..., min_length=1)
    size: int = Field(..., ge=1)
    server_version: str | None = None
    storage_config: dict[str, Any] = Field(default_factory=dict)
    overrides: dict[str, Any] = Field(default_factory=dict)
    rebuild_request: str | None = None


class Cluster(BaseModel):
    """Top-level desired state of a multi-datacenter cluster."""

    name: str = Field(..., min_length=1)
    namespace: str = Field(..., min_length=1)
    server_version: str = "4.0.10"
    datacenters: list[DatacenterSpec] = Field(default_factory=list)
    backup: BackupPolicy | None = None
    deletion_requested: bool = False

    @model_validator(mode="after")
    def _unique_datacenter_names(self) -> Cluster:
        seen: set[str] = set()
        for dc in self.datacenters:
            if dc.name in seen:
                msg = f"Duplicate datacenter name: {dc.name}"
                raise ValueError(msg)
            seen.add(dc.name)
        return self

    @property
    def sanitized_name(self) -> str:
        """Lowercase DNS-1035 friendly form used for derived object names."""
        return self.name.lower().replace("_", "-").replace(".", "-")

    def datacenter(self, name: str) -> DatacenterSpec | None:
        for dc in self.datacenters:
            if dc.name == name:
                return dc
        return None

    def contexts(self) -> list[str]:
        """Distinct datacenter contexts in sequencing order."""
        seen: list[str] = []
        for dc in self.datacenters:
            if dc.context not in seen:
                seen.append(dc.context)
        return seen


# --- Observed remote state ---


class Condition(BaseModel):
    """A named tri-state signal copied from a remote object."""

    model_config = ConfigDict(frozen=True)

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    last_transition_time: datetime | None = None
    reason: str = ""
    message: str = ""


class ObservedState(BaseModel):
    """Snapshot of a remote datacenter object as read this pass."""

    model_config = ConfigDict(frozen=True)

    conditions: list[Condition] = Field(default_factory=list)
    generation: int = 0
    observed_generation: int = 0
    applied_hash: str | None = None
    rebuild_marked: bool = False
    rebuild_completed: bool = False

    def condition(self, condition_type: str) -> ConditionStatus:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond.status
        return ConditionStatus.UNKNOWN

    @property
    def generation_observed(self) -> bool:
        return self.observed_generation >= self.generation

    def is_ready(self) -> bool:
        """Ready=True and the remote side has caught up with the last change."""
        return self.condition(READY) == ConditionStatus.TRUE and self.generation_observed


# --- Status ---


class RebuildStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: RebuildState = RebuildState.NOT_NEEDED
    source: str | None = None
    task_name: str | None = None
    message: str = ""
    request: str | None = None


class DatacenterStatus(BaseModel):
    """Per-datacenter entry of the cluster status."""

    model_config = ConfigDict(frozen=True)

    conditions: list[Condition] = Field(default_factory=list)
    generation: int = 0
    observed_generation: int = 0
    ever_ready: bool = False
    sidecar_injected: bool = False
    standalone_ready: ConditionStatus = ConditionStatus.UNKNOWN
    standalone_error: str | None = None
    rebuild: RebuildStatus = Field(default_factory=RebuildStatus)

    def condition(self, condition_type: str) -> ConditionStatus:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond.status
        return ConditionStatus.UNKNOWN


class ClusterStatus(BaseModel):
    """Status owned by the reconciler; re-derivable from remote reads."""

    model_config = ConfigDict(frozen=True)

    datacenters: dict[str, DatacenterStatus] = Field(default_factory=dict)
    ready: bool = False
    error: str | None = None
    observed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# --- Pass-local facts ---


class DatacenterFacts(BaseModel):
    """What this pass learned locally about one datacenter."""

    created: bool = False
    sidecar_injected: bool = False
    standalone_ready: ConditionStatus = ConditionStatus.UNKNOWN
    standalone_error: str | None = None
    rebuild: RebuildStatus | None = None
