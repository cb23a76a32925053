"""Reconciler: drives one multi-datacenter cluster toward its definition.

A pass never blocks waiting for a remote condition.  It reads what is
there, takes every step that is allowed right now, persists the status
and tells the caller whether (and when) to come back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from multidc_operator.backup.injector import BackupInjector, inject, is_injected
from multidc_operator.client.apply import desired_hash, ensure
from multidc_operator.client.base import (
    NotFoundError,
    RemoteClient,
    RemoteError,
    delete_and_confirm,
)
from multidc_operator.datacenter.template import (
    build_datacenter,
    datacenter_key,
    mark_for_rebuild,
    observe,
    rebuild_completed_patch,
)
from multidc_operator.models import (
    Cluster,
    ClusterStatus,
    DatacenterFacts,
    DatacenterSpec,
    ObservedState,
    RebuildState,
    RebuildStatus,
    ResourceKind,
)
from multidc_operator.rebuild.orchestrator import RebuildOrchestrator, initial_state
from multidc_operator.reconciler.result import ReconcileResult, backoff_delay
from multidc_operator.secrets.replicator import SecretReplicator
from multidc_operator.sequencer.sequencer import decide
from multidc_operator.status.aggregator import aggregate
from multidc_operator.status.store import StatusStore, StatusStoreError

logger = logging.getLogger(__name__)

SETTLED_REBUILD_STATES = frozenset({
    RebuildState.NOT_NEEDED,
    RebuildState.COMPLETED,
    RebuildState.FAILED,
})


class ReconcileError(Exception):
    """Raised for reconciler construction or lifecycle errors."""


class ConfigurationError(Exception):
    """The cluster definition can never converge as written.

    Terminal until the definition is edited; recorded in the status.
    """


def validate_cluster(cluster: Cluster) -> None:
    """Semantic checks beyond what the model schema enforces."""
    if not cluster.datacenters:
        raise ConfigurationError(f"Cluster {cluster.name} declares no datacenters")
    backup = cluster.backup
    if backup is not None and not backup.storage.bucket_name:
        raise ConfigurationError(
            f"Cluster {cluster.name}: backup storage requires a bucket name"
        )
    if backup is not None and not backup.storage.storage_secret:
        raise ConfigurationError(
            f"Cluster {cluster.name}: backup storage requires a storage secret reference"
        )


class _Pass:
    """Mutable bookkeeping for a single forward pass."""

    def __init__(self, previous: ClusterStatus | None) -> None:
        self.previous = previous
        self.observed: dict[str, ObservedState | None] = {}
        self.unreachable: set[str] = set()
        self.facts: dict[str, DatacenterFacts] = {}
        self.errors: list[str] = []
        self.waiting: list[str] = []

    def previous_rebuild(self, name: str) -> RebuildStatus | None:
        if self.previous is None:
            return None
        entry = self.previous.datacenters.get(name)
        return entry.rebuild if entry is not None else None

    def previously_ready(self, name: str) -> bool:
        if self.previous is None:
            return False
        entry = self.previous.datacenters.get(name)
        return entry is not None and entry.ever_ready


class Reconciler:
    """Runs reconcile passes and deletion cascades for clusters.

    Lifecycle of a forward pass:
      1. Validate the definition (configuration errors are terminal)
      2. Replicate prerequisite secrets to every datacenter context
      3. Observe every datacenter, concurrently across contexts
      4. Ask the sequencer which datacenters may progress
      5. Create or patch each eligible datacenter with backup injected,
         then reconcile its standalone backup objects
      6. Advance each joining datacenter's rebuild
      7. Aggregate and persist the cluster status

    Remote errors are caught at each step, recorded against the
    datacenter they concern and turned into a requeue.
    """

    def __init__(
        self,
        client: RemoteClient,
        status_store: StatusStore,
        control_plane_context: str,
        requeue_delay: float = 15.0,
        backoff_base: float = 5.0,
        backoff_max: float = 300.0,
        max_workers: int = 4,
    ) -> None:
        if max_workers < 1:
            raise ReconcileError(f"max_workers must be at least 1, got {max_workers}")
        self._client = client
        self._store = status_store
        self._requeue_delay = requeue_delay
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._max_workers = max_workers
        self._replicator = SecretReplicator(client, control_plane_context)
        self._injector = BackupInjector(client)
        self._rebuild = RebuildOrchestrator(client)

    # --- Public API ---

    def reconcile(
        self,
        cluster: Cluster,
        attempt: int = 0,
        should_abort: Callable[[], bool] | None = None,
    ) -> ReconcileResult:
        """Run one pass for *cluster*.

        *attempt* counts consecutive retries and scales the backoff after
        remote errors.  *should_abort* is polled between steps; when it
        returns True the pass stops and the caller should run the
        deletion cascade.
        """
        if cluster.deletion_requested:
            return self.delete(cluster, attempt=attempt)

        try:
            previous = self._store.load(cluster)
        except (RemoteError, StatusStoreError) as exc:
            logger.warning("Cannot load status of %s: %s", cluster.name, exc)
            return ReconcileResult.retry(self._backoff(attempt), f"status unavailable: {exc}")

        try:
            validate_cluster(cluster)
        except ConfigurationError as exc:
            logger.error("Invalid cluster definition %s: %s", cluster.name, exc)
            status = aggregate(cluster, {}, {}, previous, error=str(exc))
            self._save(cluster, status)
            return ReconcileResult.failed(str(exc), status=status)

        state = _Pass(previous)
        abort = should_abort or (lambda: False)

        # Step 2: secrets
        secret_names = cluster.backup.secret_refs() if cluster.backup else []
        replication = self._replicator.ensure_replicated(
            secret_names, cluster.namespace, cluster.contexts(), owner=cluster.sanitized_name,
        )
        if not replication.done:
            state.waiting.extend(replication.pending)
        if abort():
            return self._aborted()

        # Step 3: observe
        self._observe_all(cluster, state)
        if abort():
            return self._aborted()

        # Step 4: sequence
        desired = {
            dc.name: inject(build_datacenter(cluster, dc), cluster, replication.hashes)
            for dc in cluster.datacenters
        }
        pending_changes = {
            name for name, obs in state.observed.items()
            if obs is not None and obs.applied_hash != desired_hash(desired[name])
        }
        decision = decide(
            cluster.datacenters,
            state.observed,
            secrets_ready=replication.done,
            unreachable=state.unreachable,
            pending_changes=pending_changes,
        )
        if decision.deferred:
            logger.info(
                "Cluster %s: deferring %s (%s)",
                cluster.name, ", ".join(decision.deferred), decision.reason,
            )
            state.waiting.append(decision.reason)

        # Step 5: datacenters and standalone backup objects
        for index, dc in enumerate(cluster.datacenters):
            if dc.name not in decision.eligible:
                continue
            if abort():
                return self._aborted()
            first = decision.is_first_creation(dc.name)
            self._apply_datacenter(cluster, dc, desired[dc.name], first and index > 0, state)

        # Step 6: rebuilds
        for index, dc in enumerate(cluster.datacenters):
            if dc.name not in decision.eligible or dc.name not in state.facts:
                continue
            if abort():
                return self._aborted()
            self._advance_rebuild(cluster, dc, index, decision.is_first_creation(dc.name), state)

        # Step 7: status
        status = aggregate(cluster, state.observed, state.facts, previous)
        if not self._save(cluster, status):
            state.errors.append("status write failed")

        return self._result(cluster, status, state, attempt)

    def delete(self, cluster: Cluster, attempt: int = 0) -> ReconcileResult:
        """Run the deletion cascade for *cluster*.

        Per datacenter: rebuild task and standalone backup objects, then the
        datacenter itself.  After every datacenter is gone: config maps and
        replicated secrets.  Done once nothing owned remains.
        """
        remaining: list[str] = []

        for dc in reversed(cluster.datacenters):
            try:
                owned_gone = self._rebuild.remove(cluster, dc)
                owned_gone = self._injector.remove_standalone(cluster, dc) and owned_gone
                if not owned_gone:
                    remaining.append(f"backup objects of {dc.name}")
                    continue
                if not delete_and_confirm(
                    self._client, datacenter_key(cluster, dc), ResourceKind.DATACENTER,
                ):
                    remaining.append(f"datacenter {dc.name}")
            except RemoteError as exc:
                logger.warning("Deleting %s of %s failed: %s", dc.name, cluster.name, exc)
                remaining.append(f"{dc.name}: {exc}")

        if not remaining:
            try:
                if not self._injector.remove_config_maps(cluster):
                    remaining.append("backup config maps")
            except RemoteError as exc:
                remaining.append(f"config maps: {exc}")

        if not remaining and cluster.backup is not None:
            if not self._replicator.remove_replicas(
                cluster.backup.secret_refs(), cluster.namespace, cluster.contexts(),
            ):
                remaining.append("replicated secrets")

        if remaining:
            logger.info("Cluster %s deletion in progress: %s", cluster.name, "; ".join(remaining))
            return ReconcileResult.retry(
                self._backoff(attempt), "waiting for deletion: " + "; ".join(remaining),
            )

        try:
            self._store.clear(cluster)
        except (RemoteError, StatusStoreError) as exc:
            logger.warning("Could not clear status of %s: %s", cluster.name, exc)
        logger.info("Cluster %s deleted", cluster.name)
        return ReconcileResult(done=True, reason="deleted")

    # --- Private: steps ---

    def _observe_one(self, cluster: Cluster, dc: DatacenterSpec) -> ObservedState | None:
        try:
            obj = self._client.get(datacenter_key(cluster, dc), ResourceKind.DATACENTER)
        except NotFoundError:
            return None
        return observe(obj)

    def _observe_all(self, cluster: Cluster, state: _Pass) -> None:
        """Read every datacenter; reads in different contexts overlap."""
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = {
                dc.name: pool.submit(self._observe_one, cluster, dc)
                for dc in cluster.datacenters
            }
        for name, future in futures.items():
            try:
                state.observed[name] = future.result()
            except RemoteError as exc:
                logger.warning("Cannot observe datacenter %s: %s", name, exc)
                state.observed[name] = None
                state.unreachable.add(name)
                state.errors.append(f"{name}: {exc}")

    def _apply_datacenter(
        self,
        cluster: Cluster,
        dc: DatacenterSpec,
        body: dict[str, Any],
        joining: bool,
        state: _Pass,
    ) -> None:
        if joining:
            mark_for_rebuild(body)
        try:
            outcome, _ = ensure(self._client, datacenter_key(cluster, dc), ResourceKind.DATACENTER, body)
        except RemoteError as exc:
            logger.warning("Applying datacenter %s failed: %s", dc.name, exc)
            state.errors.append(f"{dc.name}: {exc}")
            return
        logger.debug("Datacenter %s: %s", dc.name, outcome)

        standalone = self._injector.ensure_standalone(cluster, dc)
        if standalone.error:
            state.errors.append(f"{dc.name} standalone backup: {standalone.error}")

        state.facts[dc.name] = DatacenterFacts(
            created=True,
            sidecar_injected=cluster.backup is not None and is_injected(body),
            standalone_ready=standalone.ready,
            standalone_error=standalone.error,
        )

    def _advance_rebuild(
        self,
        cluster: Cluster,
        dc: DatacenterSpec,
        index: int,
        first_creation: bool,
        state: _Pass,
    ) -> None:
        observed = state.observed.get(dc.name)
        current = state.previous_rebuild(dc.name) or initial_state(index, first_creation, observed)
        ever_ready = state.previously_ready(dc.name) or (observed is not None and observed.is_ready())
        try:
            rebuild = self._rebuild.advance(
                cluster, dc, current, state.observed, ever_ready, cluster.datacenters,
            )
        except RemoteError as exc:
            logger.warning("Advancing rebuild of %s failed: %s", dc.name, exc)
            state.errors.append(f"{dc.name} rebuild: {exc}")
            rebuild = current
        if rebuild.state == RebuildState.COMPLETED and observed is not None and observed.rebuild_marked:
            self._retire_rebuild_marker(cluster, dc, state)
        if rebuild.state not in SETTLED_REBUILD_STATES:
            state.waiting.append(f"rebuild of {dc.name} is {rebuild.state}")
        state.facts[dc.name] = state.facts[dc.name].model_copy(update={"rebuild": rebuild})

    def _retire_rebuild_marker(self, cluster: Cluster, dc: DatacenterSpec, state: _Pass) -> None:
        try:
            self._client.patch(datacenter_key(cluster, dc), ResourceKind.DATACENTER, rebuild_completed_patch())
        except RemoteError as exc:
            logger.warning("Cannot retire rebuild marker of %s: %s", dc.name, exc)
            state.errors.append(f"{dc.name} rebuild marker: {exc}")

    # --- Private: helpers ---

    def _save(self, cluster: Cluster, status: ClusterStatus) -> bool:
        try:
            self._store.save(cluster, status)
        except (RemoteError, StatusStoreError) as exc:
            logger.warning("Cannot save status of %s: %s", cluster.name, exc)
            return False
        return True

    def _result(
        self,
        cluster: Cluster,
        status: ClusterStatus,
        state: _Pass,
        attempt: int,
    ) -> ReconcileResult:
        if state.errors:
            reason = "; ".join(state.errors)
            logger.info("Cluster %s requeued after errors: %s", cluster.name, reason)
            return ReconcileResult.retry(self._backoff(attempt), reason, status=status)
        if state.waiting or not status.ready:
            reason = "; ".join(state.waiting) or "waiting for datacenters to become ready"
            return ReconcileResult.retry(self._requeue_delay, reason, status=status)
        logger.info("Cluster %s converged", cluster.name)
        return ReconcileResult.converged(status)

    def _aborted(self) -> ReconcileResult:
        logger.info("Pass abandoned: deletion requested")
        return ReconcileResult.retry(0.0, "deletion requested")

    def _backoff(self, attempt: int) -> float:
        return backoff_delay(attempt, self._backoff_base, self._backoff_max)
