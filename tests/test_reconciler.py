"""End-to-end reconciler passes against the in-memory multi-context world."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import CONTROL_PLANE, NAMESPACE, STORAGE_SECRET, World, build_cluster
from multidc_operator.constants import REBUILD_ANNOTATION
from multidc_operator.models import (
    BackupPolicy,
    Cluster,
    ConditionStatus,
    ObjectKey,
    RebuildState,
    ResourceKind,
    StorageProperties,
)
from multidc_operator.reconciler import ReconcileError, Reconciler, validate_cluster
from multidc_operator.reconciler.reconciler import ConfigurationError
from multidc_operator.status.store import FileStatusStore


@pytest.fixture
def store(tmp_path: Path) -> FileStatusStore:
    return FileStatusStore(tmp_path / "status.json")


@pytest.fixture
def reconciler(world: World, store: FileStatusStore) -> Reconciler:
    return Reconciler(world.client, store, CONTROL_PLANE, requeue_delay=15, backoff_base=5, backoff_max=300)


def _converge(world: World, reconciler: Reconciler, cluster: Cluster) -> None:
    """Drive the two-datacenter rollout to completion."""
    reconciler.reconcile(cluster)
    world.set_ready("cluster-1", "dc1")
    reconciler.reconcile(cluster)
    world.set_ready("cluster-2", "dc2")
    reconciler.reconcile(cluster)
    world.finish_task("cluster-2", "dc2-rebuild")
    result = reconciler.reconcile(cluster)
    assert result.done


class TestValidation:
    def test_no_datacenters(self):
        with pytest.raises(ConfigurationError, match="no datacenters"):
            validate_cluster(Cluster(name="demo", namespace=NAMESPACE))

    def test_backup_without_bucket(self):
        cluster = build_cluster(backup=False).model_copy(update={"backup": BackupPolicy()})
        with pytest.raises(ConfigurationError, match="bucket"):
            validate_cluster(cluster)

    def test_backup_without_storage_secret(self):
        cluster = build_cluster(backup=False).model_copy(update={
            "backup": BackupPolicy(storage=StorageProperties(bucket_name="b")),
        })
        with pytest.raises(ConfigurationError, match="storage secret"):
            validate_cluster(cluster)

    def test_valid(self, cluster: Cluster):
        validate_cluster(cluster)

    def test_max_workers_rejected(self, world: World, store: FileStatusStore):
        with pytest.raises(ReconcileError):
            Reconciler(world.client, store, CONTROL_PLANE, max_workers=0)


class TestRollout:
    def test_first_pass_creates_only_first_datacenter(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        result = reconciler.reconcile(cluster)
        assert world.datacenter("cluster-1", "dc1") is not None
        assert world.datacenter("cluster-2", "dc2") is None
        assert not result.done
        assert result.requeue_after == 15
        assert "dc1" in result.reason
        assert list(result.status.datacenters) == ["dc1"]

    def test_first_pass_replicates_secrets_and_injects(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        result = reconciler.reconcile(cluster)
        for context in ("cluster-1", "cluster-2"):
            key = ObjectKey(context, NAMESPACE, STORAGE_SECRET)
            assert world.client.peek(key, ResourceKind.SECRET) is not None
        containers = world.datacenter("cluster-1", "dc1")["spec"]["podTemplateSpec"]["spec"]["containers"]
        assert [c["name"] for c in containers] == ["medusa"]
        assert result.status.datacenters["dc1"].sidecar_injected is True
        assert world.client.peek(
            ObjectKey("cluster-1", NAMESPACE, "demo-dc1-medusa-standalone"), ResourceKind.DEPLOYMENT,
        ) is not None

    def test_first_datacenter_not_marked_for_rebuild(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        reconciler.reconcile(cluster)
        annotations = world.datacenter("cluster-1", "dc1")["metadata"]["annotations"]
        assert REBUILD_ANNOTATION not in annotations

    def test_second_created_after_first_ready(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        reconciler.reconcile(cluster)
        world.set_ready("cluster-1", "dc1")
        result = reconciler.reconcile(cluster)

        dc2 = world.datacenter("cluster-2", "dc2")
        assert dc2 is not None
        assert dc2["metadata"]["annotations"][REBUILD_ANNOTATION] == "true"
        rebuild = result.status.datacenters["dc2"].rebuild
        assert rebuild.state == RebuildState.PENDING
        assert world.task("cluster-2", "dc2-rebuild") is None
        assert not result.done

    def test_rebuild_task_created_once_target_ready(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        reconciler.reconcile(cluster)
        world.set_ready("cluster-1", "dc1")
        reconciler.reconcile(cluster)
        world.set_ready("cluster-2", "dc2")
        result = reconciler.reconcile(cluster)

        task = world.task("cluster-2", "dc2-rebuild")
        assert task["spec"]["jobs"][0]["args"]["source_datacenter"] == "dc1"
        assert result.status.ready is True
        assert result.status.datacenters["dc2"].rebuild.state == RebuildState.CREATED
        # Waiting on the task keeps the pass requeued
        assert not result.done
        assert result.requeue_after == 15

    def test_converges_after_rebuild_completes(
        self, world: World, reconciler: Reconciler, cluster: Cluster, store: FileStatusStore,
    ):
        _converge(world, reconciler, cluster)
        status = store.load(cluster)
        assert status.ready is True
        assert status.datacenters["dc1"].rebuild.state == RebuildState.NOT_NEEDED
        assert status.datacenters["dc2"].rebuild.state == RebuildState.COMPLETED
        assert status.datacenters["dc2"].rebuild.source == "dc1"

    def test_completed_rebuild_retires_marker(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        _converge(world, reconciler, cluster)
        annotations = world.datacenter("cluster-2", "dc2")["metadata"]["annotations"]
        assert annotations[REBUILD_ANNOTATION] == "completed"

    def test_status_loss_after_rebuild_does_not_stream_again(
        self, world: World, reconciler: Reconciler, cluster: Cluster, store: FileStatusStore,
    ):
        _converge(world, reconciler, cluster)
        world.client.delete(ObjectKey("cluster-2", NAMESPACE, "dc2-rebuild"), ResourceKind.REBUILD_TASK)
        store.clear(cluster)
        world.client.calls.clear()

        result = reconciler.reconcile(cluster)

        assert world.task("cluster-2", "dc2-rebuild") is None
        assert not [c for c in world.client.writes() if c.kind == ResourceKind.REBUILD_TASK]
        assert result.status.datacenters["dc2"].rebuild.state == RebuildState.COMPLETED
        assert result.done

    def test_converged_pass_issues_no_writes(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        _converge(world, reconciler, cluster)
        world.client.calls.clear()
        result = reconciler.reconcile(cluster)
        assert result.done
        assert world.client.writes() == []

    def test_rebuild_not_needed_for_single_datacenter(self, world: World, reconciler: Reconciler):
        cluster = build_cluster(dcs=(("dc1", "cluster-1"),))
        reconciler.reconcile(cluster)
        world.set_ready("cluster-1", "dc1")
        result = reconciler.reconcile(cluster)
        assert result.done
        assert world.client.keys(ResourceKind.REBUILD_TASK) == []

    def test_without_backup(self, world: World, reconciler: Reconciler):
        cluster = build_cluster(backup=False)
        result = reconciler.reconcile(cluster)
        assert world.client.keys(ResourceKind.DEPLOYMENT) == []
        assert result.status.datacenters["dc1"].sidecar_injected is False
        assert result.status.datacenters["dc1"].standalone_ready == ConditionStatus.UNKNOWN


class TestSpecChanges:
    def test_secret_rotation_rolls_every_datacenter(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        _converge(world, reconciler, cluster)
        world.client.put(
            ObjectKey(CONTROL_PLANE, NAMESPACE, STORAGE_SECRET),
            ResourceKind.SECRET,
            {"type": "Opaque", "data": {"key": "rotated"}},
        )
        world.client.calls.clear()
        result = reconciler.reconcile(cluster)

        patched = {c.key.name for c in world.client.writes() if c.kind == ResourceKind.DATACENTER}
        assert patched == {"dc1", "dc2"}
        assert world.datacenter("cluster-1", "dc1")["metadata"]["generation"] == 2
        assert not result.done

    def test_failed_rebuild_restarts_on_new_request(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        reconciler.reconcile(cluster)
        world.set_ready("cluster-1", "dc1")
        reconciler.reconcile(cluster)
        world.set_ready("cluster-2", "dc2")
        reconciler.reconcile(cluster)
        world.finish_task("cluster-2", "dc2-rebuild", failed=1)

        result = reconciler.reconcile(cluster)
        assert result.status.datacenters["dc2"].rebuild.state == RebuildState.FAILED
        # A failed rebuild is surfaced, not retried
        assert reconciler.reconcile(cluster).status.datacenters["dc2"].rebuild.state == RebuildState.FAILED

        dcs = [cluster.datacenters[0], cluster.datacenters[1].model_copy(update={"rebuild_request": "retry-1"})]
        retried = cluster.model_copy(update={"datacenters": dcs})
        result = reconciler.reconcile(retried)
        assert result.status.datacenters["dc2"].rebuild.state == RebuildState.PENDING
        assert world.task("cluster-2", "dc2-rebuild") is None

        result = reconciler.reconcile(retried)
        assert result.status.datacenters["dc2"].rebuild.state == RebuildState.CREATED
        assert world.task("cluster-2", "dc2-rebuild") is not None


class TestErrors:
    def test_configuration_error_is_terminal_and_recorded(
        self, world: World, reconciler: Reconciler, store: FileStatusStore,
    ):
        cluster = Cluster(name="demo", namespace=NAMESPACE)
        result = reconciler.reconcile(cluster)
        assert result.terminal
        assert result.requeue_after is None
        assert "no datacenters" in store.load(cluster).error
        assert world.client.writes() == []

    def test_unreachable_context_isolated(self, world: World, reconciler: Reconciler):
        cluster = build_cluster(backup=False)
        reconciler.reconcile(cluster)
        world.set_ready("cluster-1", "dc1")
        reconciler.reconcile(cluster)
        world.client.unreachable.add("cluster-2")

        world.client.calls.clear()
        result = reconciler.reconcile(cluster, attempt=1)
        assert not result.done
        assert result.requeue_after == 10
        assert "dc2" in result.reason
        assert result.status.datacenters["dc1"].condition("Ready") == ConditionStatus.TRUE
        assert result.status.ready is False

    def test_standalone_failure_scoped_to_datacenter(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        reconciler.reconcile(cluster)
        world.set_ready("cluster-1", "dc1")
        world.client.fail(ResourceKind.DEPLOYMENT, "create", name="demo-dc2-medusa-standalone")
        result = reconciler.reconcile(cluster)

        assert world.datacenter("cluster-2", "dc2") is not None
        dc2 = result.status.datacenters["dc2"]
        assert dc2.sidecar_injected is True
        assert "deployment" in dc2.standalone_error
        assert result.status.datacenters["dc1"].standalone_error is None
        assert result.requeue_after == 5

    def test_missing_source_secret_defers_everything(self, store: FileStatusStore, cluster: Cluster):
        world = World()
        result = Reconciler(world.client, store, CONTROL_PLANE).reconcile(cluster)
        assert world.client.keys(ResourceKind.DATACENTER) == []
        assert "not found" in result.reason
        assert not result.done

    def test_abort_between_steps(self, world: World, reconciler: Reconciler, cluster: Cluster):
        result = reconciler.reconcile(cluster, should_abort=lambda: True)
        assert result.requeue_after == 0.0
        assert "deletion" in result.reason
        assert world.client.keys(ResourceKind.DATACENTER) == []


class TestDeletion:
    def test_cascade_removes_everything_owned(
        self, world: World, reconciler: Reconciler, cluster: Cluster, store: FileStatusStore,
    ):
        _converge(world, reconciler, cluster)
        result = reconciler.reconcile(cluster.model_copy(update={"deletion_requested": True}))

        assert result.done
        assert result.reason == "deleted"
        for kind in ResourceKind:
            if kind == ResourceKind.SECRET:
                continue
            assert world.client.keys(kind) == [], kind
        assert {k.context for k in world.client.keys(ResourceKind.SECRET)} == {CONTROL_PLANE}
        assert store.load(cluster) is None

    def test_datacenter_deleted_after_its_backup_objects(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        _converge(world, reconciler, cluster)
        world.client.calls.clear()
        reconciler.delete(cluster)
        order = [(c.kind, c.key.name) for c in world.client.writes()]
        assert order.index((ResourceKind.REBUILD_TASK, "dc2-rebuild")) < order.index((ResourceKind.DATACENTER, "dc2"))
        assert order.index((ResourceKind.DEPLOYMENT, "demo-dc2-medusa-standalone")) < order.index(
            (ResourceKind.DATACENTER, "dc2"),
        )
        assert order.index((ResourceKind.DATACENTER, "dc1")) < order.index((ResourceKind.CONFIG_MAP, "demo-medusa"))

    def test_blocked_delete_keeps_shared_objects(
        self, world: World, reconciler: Reconciler, cluster: Cluster,
    ):
        _converge(world, reconciler, cluster)
        world.client.fail(ResourceKind.DATACENTER, "delete", name="dc1")
        result = reconciler.delete(cluster)

        assert not result.done
        assert "dc1" in result.reason
        assert world.datacenter("cluster-2", "dc2") is None
        assert world.client.peek(
            ObjectKey("cluster-1", NAMESPACE, "demo-medusa"), ResourceKind.CONFIG_MAP,
        ) is not None

        assert reconciler.delete(cluster).done

    def test_delete_of_never_created_cluster(self, reconciler: Reconciler, cluster: Cluster):
        assert reconciler.delete(cluster).done
