"""Cluster definition loader.

Reads a cluster definition either from a YAML file or from the object
delivered by the watch API, and converts it into a validated
:class:`~multidc_operator.models.Cluster`.  The document layout follows
the K8ssandraCluster resource::

    metadata:
      name: demo
      namespace: cass
    spec:
      cassandra:
        serverVersion: 4.0.10
        datacenters:
          - metadata: {name: dc1}
            k8sContext: cluster-1
            size: 3
      medusa:
        storageProperties:
          storageProvider: s3
          bucketName: backups
          storageSecretRef: {name: medusa-bucket-key}
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from multidc_operator.models import Cluster


class ClusterLoadError(Exception):
    """Raised when a cluster definition is invalid or cannot be loaded."""


def load_cluster(path: str | Path) -> Cluster:
    """Load and validate a cluster definition from a YAML file.

    Raises:
        ClusterLoadError: If the file cannot be read, parsed, or validated.
    """
    path = Path(path)
    if not path.exists():
        raise ClusterLoadError(f"Cluster file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ClusterLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ClusterLoadError(f"Cluster file must contain a mapping: {path}")

    try:
        return cluster_from_resource(raw)
    except ClusterLoadError as e:
        raise ClusterLoadError(f"{path}: {e}") from e


def cluster_from_resource(resource: Mapping[str, Any]) -> Cluster:
    """Convert a cluster resource (wire form) into a Cluster."""
    metadata = resource.get("metadata") or {}
    spec = resource.get("spec") or {}
    if not isinstance(metadata, Mapping) or not isinstance(spec, Mapping):
        raise ClusterLoadError("'metadata' and 'spec' must be mappings")

    cassandra = spec.get("cassandra") or {}
    raw_dcs = cassandra.get("datacenters") or []
    if not isinstance(raw_dcs, list):
        raise ClusterLoadError("'spec.cassandra.datacenters' must be a list")

    data: dict[str, Any] = {
        "name": metadata.get("name"),
        "namespace": metadata.get("namespace") or "default",
        "datacenters": [_datacenter(entry, i) for i, entry in enumerate(raw_dcs)],
        "deletion_requested": bool(metadata.get("deletionTimestamp")),
    }
    if cassandra.get("serverVersion"):
        data["server_version"] = cassandra["serverVersion"]
    if spec.get("medusa") is not None:
        data["backup"] = _backup(spec["medusa"])

    try:
        return Cluster(**data)
    except ValidationError as e:
        raise ClusterLoadError(f"Invalid cluster definition: {e}") from e


def _datacenter(entry: Any, index: int) -> dict[str, Any]:
    if not isinstance(entry, Mapping):
        raise ClusterLoadError(f"Datacenter at index {index} must be a mapping")
    meta = entry.get("metadata") or {}
    dc: dict[str, Any] = {
        "name": meta.get("name") or entry.get("name"),
        "context": entry.get("k8sContext"),
        "size": entry.get("size"),
        "server_version": entry.get("serverVersion"),
        "storage_config": entry.get("storageConfig") or {},
        "overrides": entry.get("overrides") or {},
        "rebuild_request": entry.get("rebuildRequest"),
    }
    return dc


def _backup(medusa: Any) -> dict[str, Any]:
    if not isinstance(medusa, Mapping):
        raise ClusterLoadError("'spec.medusa' must be a mapping")
    storage = medusa.get("storageProperties") or {}
    backup: dict[str, Any] = {
        "storage": {
            "storage_provider": storage.get("storageProvider", "s3"),
            "bucket_name": storage.get("bucketName", ""),
            "prefix": storage.get("prefix", ""),
            "region": storage.get("region", ""),
            "storage_secret": (storage.get("storageSecretRef") or {}).get("name", ""),
        },
        "credential_secret": (medusa.get("cassandraUserSecretRef") or {}).get("name", ""),
        "resolve_ip_addresses": bool(medusa.get("resolveIpAddresses", False)),
    }
    if medusa.get("containerImage"):
        backup["image"] = dict(medusa["containerImage"])
    if medusa.get("containerResources"):
        backup["resources"] = dict(medusa["containerResources"])
    for key, field in (("readinessProbe", "readiness_probe"), ("livenessProbe", "liveness_probe")):
        if medusa.get(key):
            backup[field] = _probe(medusa[key])
    if medusa.get("standaloneReplicas") is not None:
        backup["standalone_replicas"] = medusa["standaloneReplicas"]
    return backup


def _probe(raw: Mapping[str, Any]) -> dict[str, Any]:
    names = {
        "initialDelaySeconds": "initial_delay_seconds",
        "timeoutSeconds": "timeout_seconds",
        "periodSeconds": "period_seconds",
        "successThreshold": "success_threshold",
        "failureThreshold": "failure_threshold",
    }
    return {names[k]: v for k, v in raw.items() if k in names}
