"""Rebuild task orchestrator.

Per joining datacenter, walks an explicit state machine stored in the
cluster status::

    NotNeeded -> Pending -> Created -> Completed
                               \\-> Failed -(new rebuild request)-> Pending

- Pending: the datacenter was created for the first time and is not the
  first one; the marker annotation on the remote object keeps this
  re-derivable if the status is lost.
- Pending -> Created: the target has been Ready at least once and some
  preceding datacenter is Ready right now; that nearest Ready predecessor is
  the streaming source.  Exactly one task, keyed by the target, is created.
- Created -> Completed: the task reports completion.  Idempotent.  The
  marker is then switched to "completed" so a lost status re-derives
  Completed rather than streaming the data a second time.
- Failed tasks are never retried here.  Changing the datacenter's
  ``rebuild_request`` removes the failed task and starts a new cycle.

At most one non-completed task exists per target datacenter.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from multidc_operator.client.base import (
    NotFoundError,
    RemoteClient,
    RemoteError,
    delete_and_confirm,
)
from multidc_operator.datacenter.template import cluster_labels
from multidc_operator.models import (
    Cluster,
    DatacenterSpec,
    ObjectKey,
    ObservedState,
    RebuildState,
    RebuildStatus,
    ResourceKind,
)
from multidc_operator.sequencer.sequencer import ready_predecessor

logger = logging.getLogger(__name__)

TASK_API_VERSION = "control.k8ssandra.io/v1alpha1"
TASK_KIND = "CassandraTask"


class PreconditionNotMet(Exception):
    """Raised when a transition is attempted before its precondition holds."""


def rebuild_task_name(dc_name: str) -> str:
    return f"{dc_name}-rebuild"


def rebuild_task_key(cluster: Cluster, dc: DatacenterSpec) -> ObjectKey:
    return ObjectKey(context=dc.context, namespace=cluster.namespace, name=rebuild_task_name(dc.name))


def build_rebuild_task(cluster: Cluster, dc: DatacenterSpec, source: str) -> dict[str, Any]:
    name = rebuild_task_name(dc.name)
    return {
        "apiVersion": TASK_API_VERSION,
        "kind": TASK_KIND,
        "metadata": {
            "name": name,
            "namespace": cluster.namespace,
            "labels": cluster_labels(cluster),
        },
        "spec": {
            "datacenter": {"name": dc.name, "namespace": cluster.namespace},
            "jobs": [
                {
                    "name": name,
                    "command": "rebuild",
                    "args": {"source_datacenter": source},
                },
            ],
        },
    }


def task_outcome(task: dict[str, Any]) -> RebuildState:
    """CREATED while running, COMPLETED on success, FAILED on any failure."""
    status = task.get("status") or {}
    if (status.get("failed") or 0) > 0:
        return RebuildState.FAILED
    if status.get("completionTime"):
        return RebuildState.COMPLETED
    return RebuildState.CREATED


def initial_state(
    index: int,
    first_creation: bool,
    observed: ObservedState | None,
) -> RebuildStatus:
    """Rebuild state for a datacenter with no recorded status."""
    if index > 0 and observed is not None and observed.rebuild_completed:
        return RebuildStatus(state=RebuildState.COMPLETED)
    if index > 0 and (first_creation or (observed is not None and observed.rebuild_marked)):
        return RebuildStatus(state=RebuildState.PENDING)
    return RebuildStatus(state=RebuildState.NOT_NEEDED)


class RebuildOrchestrator:
    """Advances the rebuild state machine of each joining datacenter."""

    def __init__(self, client: RemoteClient) -> None:
        self._client = client

    def advance(
        self,
        cluster: Cluster,
        dc: DatacenterSpec,
        current: RebuildStatus,
        observed: Mapping[str, ObservedState | None],
        ever_ready: bool,
        specs: Sequence[DatacenterSpec] | None = None,
    ) -> RebuildStatus:
        """Return the next rebuild status for *dc*.

        Remote errors propagate; PreconditionNotMet is handled here by
        staying in Pending with an explanatory message.
        """
        specs = specs if specs is not None else cluster.datacenters
        state = current.state

        if state == RebuildState.NOT_NEEDED or state == RebuildState.COMPLETED:
            return current

        if state == RebuildState.FAILED:
            if dc.rebuild_request and dc.rebuild_request != current.request:
                return self._restart(cluster, dc, current)
            return current

        if state == RebuildState.PENDING:
            try:
                return self._create(cluster, dc, current, observed, ever_ready, specs)
            except PreconditionNotMet as exc:
                logger.info("Rebuild of %s deferred: %s", dc.name, exc)
                return current.model_copy(update={"message": str(exc)})

        return self._observe(cluster, dc, current)

    def remove(self, cluster: Cluster, dc: DatacenterSpec) -> bool:
        """Delete the rebuild task of *dc*. True once it is gone."""
        return delete_and_confirm(self._client, rebuild_task_key(cluster, dc), ResourceKind.REBUILD_TASK)

    def _create(
        self,
        cluster: Cluster,
        dc: DatacenterSpec,
        current: RebuildStatus,
        observed: Mapping[str, ObservedState | None],
        ever_ready: bool,
        specs: Sequence[DatacenterSpec],
    ) -> RebuildStatus:
        target = observed.get(dc.name)
        if target is None:
            raise PreconditionNotMet(f"datacenter {dc.name} does not exist yet")
        if not ever_ready:
            raise PreconditionNotMet(f"datacenter {dc.name} has not been ready yet")

        source = ready_predecessor(specs, observed, dc.name)
        if source is None:
            raise PreconditionNotMet(f"no ready datacenter precedes {dc.name}")

        key = rebuild_task_key(cluster, dc)
        try:
            existing = self._client.get(key, ResourceKind.REBUILD_TASK)
        except NotFoundError:
            existing = None

        if existing is None:
            logger.info("Creating rebuild task %s (source=%s)", key, source)
            self._client.create(key, ResourceKind.REBUILD_TASK, build_rebuild_task(cluster, dc, source))
            outcome = RebuildState.CREATED
        else:
            # A task from an earlier pass whose status write was lost
            outcome = task_outcome(existing)
            source = _task_source(existing) or source

        return RebuildStatus(
            state=outcome,
            source=source,
            task_name=key.name,
            request=current.request,
        )

    def _observe(self, cluster: Cluster, dc: DatacenterSpec, current: RebuildStatus) -> RebuildStatus:
        key = rebuild_task_key(cluster, dc)
        try:
            task = self._client.get(key, ResourceKind.REBUILD_TASK)
        except NotFoundError:
            # Removed out of band before finishing: surface it, don't recreate
            return current.model_copy(update={
                "state": RebuildState.FAILED,
                "message": f"rebuild task {key.name} disappeared before completing",
            })

        outcome = task_outcome(task)
        if outcome == current.state:
            return current
        if outcome == RebuildState.COMPLETED:
            logger.info("Rebuild of %s completed", dc.name)
            return current.model_copy(update={"state": outcome, "message": ""})
        logger.warning("Rebuild of %s failed", dc.name)
        return current.model_copy(update={
            "state": outcome,
            "message": f"rebuild task {key.name} failed",
        })

    def _restart(self, cluster: Cluster, dc: DatacenterSpec, current: RebuildStatus) -> RebuildStatus:
        """Drop the failed task and re-enter Pending for the new request."""
        try:
            gone = self.remove(cluster, dc)
        except RemoteError as exc:
            logger.warning("Could not remove failed rebuild task for %s: %s", dc.name, exc)
            return current
        if not gone:
            return current
        logger.info("Restarting rebuild of %s for request %s", dc.name, dc.rebuild_request)
        return RebuildStatus(state=RebuildState.PENDING, request=dc.rebuild_request)


def _task_source(task: dict[str, Any]) -> str | None:
    for job in (task.get("spec") or {}).get("jobs") or []:
        source = (job.get("args") or {}).get("source_datacenter")
        if source:
            return source
    return None
