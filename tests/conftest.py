"""Shared fixtures: a two-datacenter cluster and an in-memory multi-context world."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from multidc_operator.client.memory import InMemoryClient
from multidc_operator.models import (
    BackupPolicy,
    Cluster,
    DatacenterSpec,
    ObjectKey,
    ResourceKind,
    StorageProperties,
)

CONTROL_PLANE = "control-plane"
NAMESPACE = "cass"
STORAGE_SECRET = "medusa-bucket-key"
CQL_SECRET = "demo-superuser"


def build_cluster(
    dcs: tuple[tuple[str, str], ...] = (("dc1", "cluster-1"), ("dc2", "cluster-2")),
    backup: bool = True,
    **overrides: Any,
) -> Cluster:
    policy = None
    if backup:
        policy = BackupPolicy(
            storage=StorageProperties(
                storage_provider="s3",
                bucket_name="backups",
                storage_secret=STORAGE_SECRET,
            ),
            credential_secret=CQL_SECRET,
        )
    data: dict[str, Any] = {
        "name": "demo",
        "namespace": NAMESPACE,
        "datacenters": [DatacenterSpec(name=n, context=c, size=3) for n, c in dcs],
        "backup": policy,
    }
    data.update(overrides)
    return Cluster(**data)


class World:
    """An InMemoryClient plus helpers that play the per-datacenter operator's part."""

    def __init__(self) -> None:
        self.client = InMemoryClient()

    def seed_secrets(self, *names: str, context: str = CONTROL_PLANE) -> None:
        for name in names or (STORAGE_SECRET, CQL_SECRET):
            self.client.put(
                ObjectKey(context, NAMESPACE, name),
                ResourceKind.SECRET,
                {"type": "Opaque", "data": {"key": f"{name}-data"}},
            )

    def seed_cluster_object(self, name: str = "demo") -> None:
        self.client.put(
            ObjectKey(CONTROL_PLANE, NAMESPACE, name),
            ResourceKind.CLUSTER,
            {"metadata": {"name": name, "namespace": NAMESPACE}},
        )

    def datacenter(self, context: str, name: str) -> dict[str, Any] | None:
        return self.client.peek(ObjectKey(context, NAMESPACE, name), ResourceKind.DATACENTER)

    def set_ready(self, context: str, name: str, ready: bool = True) -> None:
        """Report Ready (and catch up observedGeneration) on a datacenter object."""
        key = ObjectKey(context, NAMESPACE, name)
        obj = self.client.peek(key, ResourceKind.DATACENTER)
        assert obj is not None, f"datacenter {key} does not exist"
        obj["status"] = {
            "observedGeneration": obj["metadata"]["generation"],
            "conditions": [
                {
                    "type": "Ready",
                    "status": "True" if ready else "False",
                    "lastTransitionTime": "2024-05-01T10:00:00Z",
                },
            ],
        }
        self.client.put(key, ResourceKind.DATACENTER, obj)

    def task(self, context: str, name: str) -> dict[str, Any] | None:
        return self.client.peek(ObjectKey(context, NAMESPACE, name), ResourceKind.REBUILD_TASK)

    def finish_task(self, context: str, name: str, failed: int = 0) -> None:
        key = ObjectKey(context, NAMESPACE, name)
        obj = self.client.peek(key, ResourceKind.REBUILD_TASK)
        assert obj is not None, f"task {key} does not exist"
        obj["status"] = {"completionTime": "2024-05-01T11:00:00Z", "failed": failed}
        self.client.put(key, ResourceKind.REBUILD_TASK, obj)


@pytest.fixture
def world() -> World:
    w = World()
    w.seed_secrets()
    return w


@pytest.fixture
def cluster() -> Cluster:
    return build_cluster()


@pytest.fixture
def make_cluster() -> Callable[..., Cluster]:
    return build_cluster
