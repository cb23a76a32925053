"""Backup sidecar injector.

Decorates each datacenter's pod template with the Medusa restore init
container and the Medusa gRPC sidecar, and reconciles the standalone
Medusa deployment, service and config map that live next to the
datacenter in its own context.

Injection is a pure transformation of the desired datacenter body and is
recomputed every pass.  Standalone objects are applied through
:func:`multidc_operator.client.apply.ensure`, so an unchanged policy
issues no writes.  Standalone failures are reported back as facts and
never stop injection.
"""

from __future__ import annotations

import configparser
import io
import logging
from typing import Any

from pydantic import BaseModel

from multidc_operator.client.apply import ensure
from multidc_operator.client.base import RemoteClient, RemoteError, delete_and_confirm
from multidc_operator.constants import MEDUSA_GRPC_PORT, SECRET_HASH_ANNOTATION_PREFIX
from multidc_operator.datacenter.template import cluster_labels
from multidc_operator.models import (
    BackupPolicy,
    Cluster,
    ConditionStatus,
    DatacenterSpec,
    ObjectKey,
    ProbeSettings,
    ResourceKind,
)

logger = logging.getLogger(__name__)

RESTORE_CONTAINER = "medusa-restore"
SIDECAR_CONTAINER = "medusa"
SERVER_CONFIG_INIT = "server-config-init"

MODE_RESTORE = "RESTORE"
MODE_GRPC = "GRPC"

SERVER_CONFIG_VOLUME = "server-config"
SERVER_DATA_VOLUME = "server-data"
PODINFO_VOLUME = "podinfo"

SERVER_CONFIG_PATH = "/etc/cassandra"
SERVER_DATA_PATH = "/var/lib/cassandra"
PODINFO_PATH = "/etc/podinfo"
SECRETS_PATH = "/etc/medusa-secrets"
CONFIG_PATH = "/etc/medusa"


# --- Deterministic names ---


def standalone_deployment_name(cluster_name: str, dc_name: str) -> str:
    return f"{cluster_name}-{dc_name}-medusa-standalone"


def standalone_service_name(cluster_name: str, dc_name: str) -> str:
    return f"{cluster_name}-{dc_name}-medusa-service"


def config_map_name(cluster_name: str) -> str:
    return f"{cluster_name}-medusa"


def standalone_keys(cluster: Cluster, dc: DatacenterSpec) -> dict[ResourceKind, ObjectKey]:
    """Keys of every standalone backup object owned by *dc*, in its context."""
    name = cluster.sanitized_name

    def key(obj_name: str) -> ObjectKey:
        return ObjectKey(context=dc.context, namespace=cluster.namespace, name=obj_name)

    return {
        ResourceKind.DEPLOYMENT: key(standalone_deployment_name(name, dc.name)),
        ResourceKind.SERVICE: key(standalone_service_name(name, dc.name)),
        ResourceKind.CONFIG_MAP: key(config_map_name(name)),
    }


# --- Container building ---


def medusa_env(policy: BackupPolicy, mode: str) -> list[dict[str, Any]]:
    env: list[dict[str, Any]] = [
        {"name": "MEDUSA_MODE", "value": mode},
        {"name": "MEDUSA_TMP_DIR", "value": SERVER_DATA_PATH},
        {
            "name": "MEDUSA_RESOLVE_IP_ADDRESSES",
            "value": "True" if policy.resolve_ip_addresses else "False",
        },
        {
            "name": "POD_NAME",
            "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}},
        },
    ]
    if policy.credential_secret:
        for env_name, secret_key in (("CQL_USERNAME", "username"), ("CQL_PASSWORD", "password")):
            env.append({
                "name": env_name,
                "valueFrom": {
                    "secretKeyRef": {"name": policy.credential_secret, "key": secret_key},
                },
            })
    return env


def medusa_volume_mounts(cluster: Cluster, policy: BackupPolicy) -> list[dict[str, str]]:
    return [
        {"name": SERVER_CONFIG_VOLUME, "mountPath": SERVER_CONFIG_PATH},
        {"name": SERVER_DATA_VOLUME, "mountPath": SERVER_DATA_PATH},
        {"name": PODINFO_VOLUME, "mountPath": PODINFO_PATH},
        {"name": policy.storage.storage_secret, "mountPath": SECRETS_PATH},
        {"name": config_map_name(cluster.sanitized_name), "mountPath": CONFIG_PATH},
    ]


def medusa_volumes(cluster: Cluster, policy: BackupPolicy) -> list[dict[str, Any]]:
    """Pod volumes the Medusa containers need beyond the server volumes."""
    volumes: list[dict[str, Any]] = [
        {
            "name": PODINFO_VOLUME,
            "downwardAPI": {
                "items": [{"path": "labels", "fieldRef": {"fieldPath": "metadata.labels"}}],
            },
        },
        {
            "name": config_map_name(cluster.sanitized_name),
            "configMap": {"name": config_map_name(cluster.sanitized_name)},
        },
        {
            "name": policy.storage.storage_secret,
            "secret": {"secretName": policy.storage.storage_secret},
        },
    ]
    return volumes


def _probe(settings: ProbeSettings) -> dict[str, Any]:
    return {
        "grpc": {"port": MEDUSA_GRPC_PORT},
        "initialDelaySeconds": settings.initial_delay_seconds,
        "timeoutSeconds": settings.timeout_seconds,
        "periodSeconds": settings.period_seconds,
        "successThreshold": settings.success_threshold,
        "failureThreshold": settings.failure_threshold,
    }


def _resources(policy: BackupPolicy) -> dict[str, Any]:
    resources: dict[str, Any] = {}
    if policy.resources.requests:
        resources["requests"] = dict(policy.resources.requests)
    if policy.resources.limits:
        resources["limits"] = dict(policy.resources.limits)
    return resources


def build_restore_container(cluster: Cluster, policy: BackupPolicy) -> dict[str, Any]:
    container: dict[str, Any] = {
        "name": RESTORE_CONTAINER,
        "image": policy.image.ref(),
        "env": medusa_env(policy, MODE_RESTORE),
        "volumeMounts": medusa_volume_mounts(cluster, policy),
    }
    resources = _resources(policy)
    if resources:
        container["resources"] = resources
    return container


def build_sidecar_container(cluster: Cluster, policy: BackupPolicy) -> dict[str, Any]:
    container = build_restore_container(cluster, policy)
    container.update(
        name=SIDECAR_CONTAINER,
        env=medusa_env(policy, MODE_GRPC),
        ports=[{"name": "grpc", "containerPort": MEDUSA_GRPC_PORT, "protocol": "TCP"}],
        readinessProbe=_probe(policy.readiness_probe),
        livenessProbe=_probe(policy.liveness_probe),
    )
    return container


def _upsert(items: list[dict[str, Any]], item: dict[str, Any]) -> None:
    """Replace the entry with the same name, or append it."""
    for i, existing in enumerate(items):
        if existing.get("name") == item["name"]:
            items[i] = item
            return
    items.append(item)


def inject(
    body: dict[str, Any],
    cluster: Cluster,
    secret_hashes: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Inject the Medusa containers and volumes into a datacenter body.

    Idempotent: applying it twice yields the same body.  The generic
    ``server-config-init`` container is left as it is; the restore init
    container is placed after it so that it sees the rendered config.
    """
    policy = cluster.backup
    template = body.setdefault("spec", {}).setdefault("podTemplateSpec", {})
    pod_spec = template.setdefault("spec", {})
    if policy is None:
        return body

    init_containers: list[dict[str, Any]] = pod_spec.setdefault("initContainers", [])
    restore = build_restore_container(cluster, policy)
    names = [c.get("name") for c in init_containers]
    if RESTORE_CONTAINER in names:
        init_containers[names.index(RESTORE_CONTAINER)] = restore
    elif SERVER_CONFIG_INIT in names:
        init_containers.insert(names.index(SERVER_CONFIG_INIT) + 1, restore)
    else:
        init_containers.append(restore)

    _upsert(pod_spec.setdefault("containers", []), build_sidecar_container(cluster, policy))
    for volume in medusa_volumes(cluster, policy):
        _upsert(pod_spec.setdefault("volumes", []), volume)

    annotations = template.setdefault("metadata", {}).setdefault("annotations", {})
    for secret, digest in sorted((secret_hashes or {}).items()):
        annotations[f"{SECRET_HASH_ANNOTATION_PREFIX}{secret}"] = digest

    return body


def is_injected(body: dict[str, Any]) -> bool:
    """True if both Medusa containers are present in the pod template."""
    pod_spec = ((body.get("spec") or {}).get("podTemplateSpec") or {}).get("spec") or {}
    init_names = {c.get("name") for c in pod_spec.get("initContainers") or []}
    names = {c.get("name") for c in pod_spec.get("containers") or []}
    return RESTORE_CONTAINER in init_names and SIDECAR_CONTAINER in names


# --- Standalone objects ---


def build_config_map(cluster: Cluster, policy: BackupPolicy) -> dict[str, Any]:
    """Render medusa.ini for the cluster."""
    storage = policy.storage
    ini = configparser.ConfigParser()
    ini["cassandra"] = {"use_sudo": "False"}
    ini["storage"] = {
        "storage_provider": storage.storage_provider,
        "bucket_name": storage.bucket_name,
        "prefix": storage.prefix or cluster.sanitized_name,
        "fqdn": "127.0.0.1",
    }
    if storage.region:
        ini["storage"]["region"] = storage.region
    ini["storage"]["key_file"] = f"{SECRETS_PATH}/credentials"
    ini["grpc"] = {"enabled": "1"}
    ini["logging"] = {"level": "INFO"}

    buf = io.StringIO()
    ini.write(buf)
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": config_map_name(cluster.sanitized_name),
            "namespace": cluster.namespace,
            "labels": cluster_labels(cluster),
        },
        "data": {"medusa.ini": buf.getvalue()},
    }


def build_standalone_deployment(
    cluster: Cluster, dc: DatacenterSpec, policy: BackupPolicy,
) -> dict[str, Any]:
    name = standalone_deployment_name(cluster.sanitized_name, dc.name)
    labels = {**cluster_labels(cluster), "app": name}
    container = {
        "name": SIDECAR_CONTAINER,
        "image": policy.image.ref(),
        "env": medusa_env(policy, MODE_GRPC),
        "ports": [{"name": "grpc", "containerPort": MEDUSA_GRPC_PORT, "protocol": "TCP"}],
        "volumeMounts": [
            m for m in medusa_volume_mounts(cluster, policy)
            if m["name"] not in (SERVER_CONFIG_VOLUME, SERVER_DATA_VOLUME)
        ],
        "readinessProbe": _probe(policy.readiness_probe),
        "livenessProbe": _probe(policy.liveness_probe),
    }
    resources = _resources(policy)
    if resources:
        container["resources"] = resources

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": cluster.namespace, "labels": labels},
        "spec": {
            "replicas": policy.standalone_replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [container],
                    "volumes": medusa_volumes(cluster, policy),
                },
            },
        },
    }


def build_standalone_service(cluster: Cluster, dc: DatacenterSpec) -> dict[str, Any]:
    name = standalone_service_name(cluster.sanitized_name, dc.name)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": cluster.namespace,
            "labels": cluster_labels(cluster),
        },
        "spec": {
            "selector": {"app": standalone_deployment_name(cluster.sanitized_name, dc.name)},
            "ports": [{"name": "grpc", "port": MEDUSA_GRPC_PORT, "protocol": "TCP"}],
        },
    }


def deployment_ready(obj: dict[str, Any]) -> ConditionStatus:
    """Ready when every desired replica reports ready."""
    desired = (obj.get("spec") or {}).get("replicas", 1)
    ready = (obj.get("status") or {}).get("readyReplicas") or 0
    return ConditionStatus.TRUE if ready >= desired else ConditionStatus.FALSE


class StandaloneResult(BaseModel):
    """Outcome of reconciling one datacenter's standalone backup objects."""

    ready: ConditionStatus = ConditionStatus.UNKNOWN
    error: str | None = None


class BackupInjector:
    """Reconciles standalone backup objects in each datacenter's context.

    Stateless: every call re-reads what it needs through the client.
    """

    def __init__(self, client: RemoteClient) -> None:
        self._client = client

    def ensure_standalone(self, cluster: Cluster, dc: DatacenterSpec) -> StandaloneResult:
        """Create or update the config map, deployment and service for *dc*.

        Never raises for remote errors; they are returned in the result so
        that the caller can record them against this datacenter only.
        """
        policy = cluster.backup
        if policy is None:
            return StandaloneResult()

        keys = standalone_keys(cluster, dc)
        desired = {
            ResourceKind.CONFIG_MAP: build_config_map(cluster, policy),
            ResourceKind.DEPLOYMENT: build_standalone_deployment(cluster, dc, policy),
            ResourceKind.SERVICE: build_standalone_service(cluster, dc),
        }

        errors: list[str] = []
        deployment: dict[str, Any] | None = None
        for kind, body in desired.items():
            try:
                _, obj = ensure(self._client, keys[kind], kind, body)
            except RemoteError as exc:
                logger.warning("Standalone backup %s for %s failed: %s", kind, dc.name, exc)
                errors.append(f"{kind}: {exc}")
                continue
            if kind == ResourceKind.DEPLOYMENT:
                deployment = obj

        if errors:
            return StandaloneResult(ready=ConditionStatus.UNKNOWN, error="; ".join(errors))
        assert deployment is not None
        return StandaloneResult(ready=deployment_ready(deployment))

    def remove_standalone(self, cluster: Cluster, dc: DatacenterSpec) -> bool:
        """Delete the standalone deployment and service of *dc*. True once both are gone."""
        keys = standalone_keys(cluster, dc)
        gone = True
        for kind in (ResourceKind.SERVICE, ResourceKind.DEPLOYMENT):
            gone = delete_and_confirm(self._client, keys[kind], kind) and gone
        return gone

    def remove_config_maps(self, cluster: Cluster) -> bool:
        """Delete the per-cluster config map from every datacenter context.

        The config map is shared by the datacenters of a context, so it goes
        only after all of them.
        """
        name = config_map_name(cluster.sanitized_name)
        gone = True
        for context in cluster.contexts():
            key = ObjectKey(context=context, namespace=cluster.namespace, name=name)
            gone = delete_and_confirm(self._client, key, ResourceKind.CONFIG_MAP) and gone
        return gone
