"""Tests for the kopf handlers, called directly against the in-memory world."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

kopf = pytest.importorskip("kopf")

from conftest import CONTROL_PLANE, CQL_SECRET, NAMESPACE, STORAGE_SECRET, World  # noqa: E402
from multidc_operator import operator as op  # noqa: E402
from multidc_operator.client import k8s_client  # noqa: E402
from multidc_operator.config import OperatorConfig  # noqa: E402
from multidc_operator.constants import FINALIZER  # noqa: E402
from multidc_operator.loader import cluster_from_resource  # noqa: E402
from multidc_operator.models import ObjectKey, ResourceKind  # noqa: E402


def _body(**metadata: Any) -> dict[str, Any]:
    return {
        "metadata": {"name": "demo", "namespace": NAMESPACE, **metadata},
        "spec": {
            "cassandra": {
                "datacenters": [
                    {"metadata": {"name": "dc1"}, "k8sContext": "cluster-1", "size": 3},
                    {"metadata": {"name": "dc2"}, "k8sContext": "cluster-2", "size": 3},
                ],
            },
            "medusa": {
                "storageProperties": {"bucketName": "backups", "storageSecretRef": {"name": STORAGE_SECRET}},
                "cassandraUserSecretRef": {"name": CQL_SECRET},
            },
        },
    }


@pytest.fixture
def runtime(world: World):
    world.seed_cluster_object()
    op.runtime.reset()
    op.runtime.configure(OperatorConfig(control_plane_context=CONTROL_PLANE), client=world.client)
    yield op.runtime
    op.runtime.reset()


class TestRuntime:
    def test_not_configured(self):
        op.runtime.reset()
        with pytest.raises(kopf.TemporaryError):
            op.reconcile_cluster(body=_body())

    def test_control_plane_context_required(self, world: World):
        rt = op.OperatorRuntime()
        with pytest.raises(kopf.PermanentError):
            rt.configure(OperatorConfig(), client=world.client)
        assert not rt.configured

    def test_deletion_pending(self, world: World, runtime):
        demo = cluster_from_resource(_body())
        assert runtime.deletion_pending(demo) is False
        world.client.delete(ObjectKey(CONTROL_PLANE, NAMESPACE, "demo"), ResourceKind.CLUSTER)
        assert runtime.deletion_pending(demo) is True


class TestReconcileHandler:
    def test_first_pass_requeues(self, world: World, runtime):
        with pytest.raises(kopf.TemporaryError) as exc_info:
            op.reconcile_cluster(body=_body(), patch={}, retry=0)
        assert exc_info.value.delay == 15
        assert world.datacenter("cluster-1", "dc1") is not None
        stored = world.client.peek(ObjectKey(CONTROL_PLANE, NAMESPACE, "demo"), ResourceKind.CLUSTER)
        assert "dc1" in stored["status"]["datacenters"]

    def test_converges(self, world: World, runtime):
        steps = [
            lambda: world.set_ready("cluster-1", "dc1"),
            lambda: world.set_ready("cluster-2", "dc2"),
            lambda: world.finish_task("cluster-2", "dc2-rebuild"),
        ]
        for step in steps:
            with pytest.raises(kopf.TemporaryError):
                op.reconcile_cluster(body=_body())
            step()
        assert op.reconcile_cluster(body=_body()) is None

    def test_invalid_resource_is_permanent(self, runtime):
        body = _body()
        body["spec"]["cassandra"]["datacenters"][0]["size"] = 0
        patch: dict[str, Any] = {}
        with pytest.raises(kopf.PermanentError):
            op.reconcile_cluster(body=body, patch=patch)
        assert "Invalid cluster definition" in patch["status"]["error"]

    def test_configuration_error_is_permanent(self, runtime):
        body = _body()
        body["spec"]["medusa"]["storageProperties"]["bucketName"] = ""
        with pytest.raises(kopf.PermanentError, match="bucket"):
            op.reconcile_cluster(body=body)

    def test_pass_abandoned_when_cluster_object_gone(self, world: World, runtime):
        world.client.delete(ObjectKey(CONTROL_PLANE, NAMESPACE, "demo"), ResourceKind.CLUSTER)
        with pytest.raises(kopf.TemporaryError) as exc_info:
            op.reconcile_cluster(body=_body())
        assert exc_info.value.delay == 0
        assert world.datacenter("cluster-1", "dc1") is None

    def test_timer_never_raises_for_requeue(self, world: World, runtime):
        op.reevaluate_cluster(body=_body())
        assert world.datacenter("cluster-1", "dc1") is not None


class TestDeleteHandler:
    def test_cascade(self, world: World, runtime):
        with pytest.raises(kopf.TemporaryError):
            op.reconcile_cluster(body=_body())
        assert op.delete_cluster(body=_body(deletionTimestamp="2024-05-01T10:00:00Z")) is None
        assert world.client.keys(ResourceKind.DATACENTER) == []
        assert world.client.keys(ResourceKind.CONFIG_MAP) == []

    def test_invalid_resource_releases_finalizer(self, runtime):
        body = _body()
        body["spec"]["cassandra"]["datacenters"] = "broken"
        assert op.delete_cluster(body=body) is None

    def test_blocked_cascade_retries(self, world: World, runtime):
        with pytest.raises(kopf.TemporaryError):
            op.reconcile_cluster(body=_body())
        world.client.fail(ResourceKind.DATACENTER, "delete", name="dc1")
        with pytest.raises(kopf.TemporaryError) as exc_info:
            op.delete_cluster(body=_body(), retry=2)
        assert exc_info.value.delay == 20
        assert "dc1" in str(exc_info.value)


class TestStartup:
    def test_sets_finalizer_and_configures(self, world: World, tmp_path: Path, monkeypatch):
        cfg = tmp_path / "multidc-operator.yaml"
        cfg.write_text(f"control_plane_context: {CONTROL_PLANE}\nmax_workers: 2\n", encoding="utf-8")
        monkeypatch.setenv(op.CONFIG_ENV, str(cfg))
        monkeypatch.setattr(k8s_client, "KubernetesClient", lambda **_: world.client)
        op.runtime.reset()

        settings = kopf.OperatorSettings()
        try:
            op.configure(settings=settings)
            assert settings.persistence.finalizer == FINALIZER
            assert settings.posting.enabled is False
            assert settings.execution.max_workers == 2
            assert op.runtime.configured
            assert op.runtime.client is world.client
        finally:
            op.runtime.reset()
