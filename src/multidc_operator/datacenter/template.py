"""Datacenter object templating and observation.

Builds the remote datacenter object handed to the per-datacenter operator
and parses the observed state it reports back.  Templating is kept to what
the sequencing logic needs: identity, size, version, storage and the pod
template the backup injector decorates.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from multidc_operator.constants import (
    CLUSTER_LABEL,
    CLUSTER_NAMESPACE_LABEL,
    REBUILD_ANNOTATION,
    REBUILD_COMPLETED,
    REBUILD_MARKED,
    RESOURCE_HASH_ANNOTATION,
)
from multidc_operator.models import (
    Cluster,
    Condition,
    ConditionStatus,
    DatacenterSpec,
    ObjectKey,
    ObservedState,
)

DATACENTER_API_VERSION = "cassandra.datastax.com/v1beta1"
DATACENTER_KIND = "CassandraDatacenter"


def resource_hash(obj: Any) -> str:
    """SHA-256 of the canonical JSON form of *obj*."""
    canonical = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def datacenter_key(cluster: Cluster, dc: DatacenterSpec) -> ObjectKey:
    return ObjectKey(context=dc.context, namespace=cluster.namespace, name=dc.name)


def cluster_labels(cluster: Cluster) -> dict[str, str]:
    return {
        CLUSTER_LABEL: cluster.sanitized_name,
        CLUSTER_NAMESPACE_LABEL: cluster.namespace,
    }


def build_datacenter(cluster: Cluster, dc: DatacenterSpec) -> dict[str, Any]:
    """Return the desired datacenter object, without backup injection."""
    spec: dict[str, Any] = {
        "clusterName": cluster.name,
        "serverType": "cassandra",
        "serverVersion": dc.server_version or cluster.server_version,
        "size": dc.size,
        "podTemplateSpec": {
            "metadata": {"annotations": {}},
            "spec": {"initContainers": [], "containers": [], "volumes": []},
        },
    }
    if dc.storage_config:
        spec["storageConfig"] = dc.storage_config
    spec.update(dc.overrides)

    return {
        "apiVersion": DATACENTER_API_VERSION,
        "kind": DATACENTER_KIND,
        "metadata": {
            "name": dc.name,
            "namespace": cluster.namespace,
            "labels": cluster_labels(cluster),
            "annotations": {},
        },
        "spec": spec,
    }


def mark_for_rebuild(body: dict[str, Any]) -> None:
    """Flag a joining datacenter so its rebuild need survives a status wipe."""
    body.setdefault("metadata", {}).setdefault("annotations", {})[REBUILD_ANNOTATION] = REBUILD_MARKED


def rebuild_completed_patch() -> dict[str, Any]:
    """Merge patch that retires the rebuild marker once streaming finished."""
    return {"metadata": {"annotations": {REBUILD_ANNOTATION: REBUILD_COMPLETED}}}


def observe(obj: dict[str, Any]) -> ObservedState:
    """Parse a remote datacenter object into an ObservedState snapshot."""
    meta = obj.get("metadata") or {}
    status = obj.get("status") or {}
    annotations = meta.get("annotations") or {}

    conditions: list[Condition] = []
    for raw in status.get("conditions") or []:
        condition = _parse_condition(raw)
        if condition is not None:
            conditions.append(condition)

    return ObservedState(
        conditions=conditions,
        generation=int(meta.get("generation") or 0),
        observed_generation=int(status.get("observedGeneration") or 0),
        applied_hash=annotations.get(RESOURCE_HASH_ANNOTATION),
        rebuild_marked=annotations.get(REBUILD_ANNOTATION) == REBUILD_MARKED,
        rebuild_completed=annotations.get(REBUILD_ANNOTATION) == REBUILD_COMPLETED,
    )


def _parse_condition(raw: dict[str, Any]) -> Condition | None:
    if not isinstance(raw, dict) or not raw.get("type"):
        return None
    status = raw.get("status")
    if status not in (ConditionStatus.TRUE, ConditionStatus.FALSE):
        status = ConditionStatus.UNKNOWN
    transition = raw.get("lastTransitionTime")
    try:
        return Condition(
            type=raw["type"],
            status=status,
            last_transition_time=_parse_time(transition),
            reason=raw.get("reason") or "",
            message=raw.get("message") or "",
        )
    except ValidationError:
        return None


def _parse_time(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
