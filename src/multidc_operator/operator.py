"""Event-driven operator entry point (kopf).

Handlers stay thin: they turn the watched cluster resource into a Cluster,
hand it to the Reconciler through the PassCoordinator and translate the
ReconcileResult back into kopf's retry vocabulary:

- requeue   -> ``kopf.TemporaryError(delay=...)``
- terminal  -> ``kopf.PermanentError``
- done      -> normal return

Requires: ``pip install multidc-operator[operator]``
"""

from __future__ import annotations

import logging
import os
from typing import Any

import kopf

from multidc_operator.client.base import NotFoundError, RemoteClient, RemoteError
from multidc_operator.config import OperatorConfig, load_config
from multidc_operator.constants import API_GROUP, API_VERSION, CLUSTER_PLURAL, FINALIZER
from multidc_operator.loader import ClusterLoadError, cluster_from_resource
from multidc_operator.models import Cluster, ObjectKey, ResourceKind
from multidc_operator.reconciler.coordinator import PassCoordinator
from multidc_operator.reconciler.reconciler import Reconciler
from multidc_operator.reconciler.result import ReconcileResult
from multidc_operator.status.store import RemoteStatusStore

logger = logging.getLogger(__name__)

CONFIG_ENV = "MULTIDC_OPERATOR_CONFIG"
DEFAULT_TIMER_INTERVAL = 60.0


class OperatorRuntime:
    """Holds the client, reconciler and coordinator shared by all handlers."""

    def __init__(self) -> None:
        self.config: OperatorConfig | None = None
        self.client: RemoteClient | None = None
        self.reconciler: Reconciler | None = None
        self.coordinator = PassCoordinator()

    @property
    def configured(self) -> bool:
        return self.reconciler is not None

    def configure(self, config: OperatorConfig, client: RemoteClient | None = None) -> None:
        """Wire the runtime. Builds a KubernetesClient unless *client* is given."""
        if not config.control_plane_context:
            raise kopf.PermanentError("control_plane_context must be configured")
        if client is None:
            from multidc_operator.client.k8s_client import KubernetesClient

            client = KubernetesClient(
                kubeconfig=config.kubeconfig,
                control_plane_context=config.control_plane_context,
                in_cluster=config.in_cluster,
            )
        self.config = config
        self.client = client
        self.reconciler = Reconciler(
            client,
            RemoteStatusStore(client, config.control_plane_context),
            control_plane_context=config.control_plane_context,
            requeue_delay=config.requeue_delay,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            max_workers=config.max_workers,
        )

    def reset(self) -> None:
        self.config = None
        self.client = None
        self.reconciler = None
        self.coordinator = PassCoordinator()

    def deletion_pending(self, cluster: Cluster) -> bool:
        """Re-read the cluster object to see whether deletion started mid-pass."""
        assert self.client is not None and self.config is not None
        key = ObjectKey(
            context=self.config.control_plane_context or "",
            namespace=cluster.namespace,
            name=cluster.name,
        )
        try:
            obj = self.client.get(key, ResourceKind.CLUSTER)
        except NotFoundError:
            return True
        except RemoteError:
            return False
        return bool((obj.get("metadata") or {}).get("deletionTimestamp"))

    def run_pass(
        self,
        body: Any,
        retry: int = 0,
        deleting: bool = False,
        patch: Any = None,
    ) -> ReconcileResult:
        if not self.configured:
            raise kopf.TemporaryError("operator is not configured yet", delay=5)
        assert self.reconciler is not None
        reconciler = self.reconciler

        try:
            cluster = cluster_from_resource(dict(body))
        except ClusterLoadError as exc:
            logger.error("Invalid cluster resource: %s", exc)
            if deleting:
                # Nothing valid was ever created from it
                return ReconcileResult(done=True, reason="invalid definition, nothing to delete")
            if patch is not None:
                patch.setdefault("status", {})["error"] = str(exc)
            raise kopf.PermanentError(str(exc)) from exc

        if deleting:
            cluster = cluster.model_copy(update={"deletion_requested": True})

        key = f"{cluster.namespace}/{cluster.name}"
        return self.coordinator.run(
            key,
            lambda: reconciler.reconcile(
                cluster,
                attempt=retry,
                should_abort=lambda: self.deletion_pending(cluster),
            ),
        )


runtime = OperatorRuntime()


def _raise_for(result: ReconcileResult) -> None:
    if result.terminal:
        raise kopf.PermanentError(result.error)
    if result.requeue_after is not None:
        raise kopf.TemporaryError(result.reason, delay=result.requeue_after)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator from multidc-operator.yaml (or $MULTIDC_OPERATOR_CONFIG)."""
    settings.persistence.finalizer = FINALIZER
    settings.posting.enabled = False
    if runtime.configured:
        return
    config = load_config(os.environ.get(CONFIG_ENV))
    settings.execution.max_workers = config.max_workers
    runtime.configure(config)
    logger.info("Operator configured (control plane context: %s)", config.control_plane_context)


@kopf.on.create(API_GROUP, API_VERSION, CLUSTER_PLURAL)
@kopf.on.update(API_GROUP, API_VERSION, CLUSTER_PLURAL)
@kopf.on.resume(API_GROUP, API_VERSION, CLUSTER_PLURAL)
def reconcile_cluster(body: Any, patch: Any = None, retry: int = 0, **_: Any) -> None:
    """Run a pass for the cluster; retries are driven by the pass result."""
    _raise_for(runtime.run_pass(body, retry=retry, patch=patch))


@kopf.timer(API_GROUP, API_VERSION, CLUSTER_PLURAL, interval=DEFAULT_TIMER_INTERVAL, idle=DEFAULT_TIMER_INTERVAL)
def reevaluate_cluster(body: Any, **_: Any) -> None:
    """Periodic re-evaluation so remote changes are picked up without an event."""
    result = runtime.run_pass(body)
    if result.terminal:
        logger.warning("Cluster %s: %s", (body.get("metadata") or {}).get("name"), result.error)
    elif not result.done:
        logger.debug("Re-evaluation pending: %s", result.reason)


@kopf.on.delete(API_GROUP, API_VERSION, CLUSTER_PLURAL)
def delete_cluster(body: Any, retry: int = 0, **_: Any) -> None:
    """Run the deletion cascade; the finalizer is released once it is done."""
    _raise_for(runtime.run_pass(body, retry=retry, deleting=True))
