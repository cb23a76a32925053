"""Cluster status persistence.

The status is the only state kept between passes.  Two backends:

- RemoteStatusStore: the status subresource of the cluster object in the
  control-plane context (used by the operator)
- FileStatusStore: a JSON file keyed by ``namespace/name`` (used by the
  CLI and dry runs)
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from multidc_operator.client.base import NotFoundError, RemoteClient
from multidc_operator.models import Cluster, ClusterStatus, ObjectKey, ResourceKind

logger = logging.getLogger(__name__)


class StatusStoreError(Exception):
    """Raised when a stored status cannot be read or written."""


@runtime_checkable
class StatusStore(Protocol):
    """Protocol for cluster status backends."""

    def load(self, cluster: Cluster) -> ClusterStatus | None: ...

    def save(self, cluster: Cluster, status: ClusterStatus) -> None: ...

    def clear(self, cluster: Cluster) -> None: ...


class RemoteStatusStore:
    """Stores the status on the cluster object itself."""

    def __init__(self, client: RemoteClient, context: str) -> None:
        self._client = client
        self._context = context

    def _key(self, cluster: Cluster) -> ObjectKey:
        return ObjectKey(context=self._context, namespace=cluster.namespace, name=cluster.name)

    def load(self, cluster: Cluster) -> ClusterStatus | None:
        try:
            obj = self._client.get(self._key(cluster), ResourceKind.CLUSTER)
        except NotFoundError:
            return None
        return _parse_status(obj.get("status"), str(self._key(cluster)))

    def save(self, cluster: Cluster, status: ClusterStatus) -> None:
        self._client.patch_status(
            self._key(cluster), ResourceKind.CLUSTER, {"status": status.to_dict()},
        )

    def clear(self, cluster: Cluster) -> None:
        # The status goes away with the cluster object
        return None


class FileStatusStore:
    """JSON-file status store. Thread-safe via a lock; writes are atomic."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, cluster: Cluster) -> ClusterStatus | None:
        with self._lock:
            data = self._read_all()
        key = _file_key(cluster)
        return _parse_status(data.get(key), key)

    def save(self, cluster: Cluster, status: ClusterStatus) -> None:
        with self._lock:
            data = self._read_all()
            data[_file_key(cluster)] = status.to_dict()
            self._write_all(data)

    def clear(self, cluster: Cluster) -> None:
        with self._lock:
            data = self._read_all()
            if data.pop(_file_key(cluster), None) is not None:
                self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise StatusStoreError(f"Corrupt status file {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StatusStoreError(f"Expected a JSON object in {self._path}")
        return data

    def _write_all(self, data: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)


def _file_key(cluster: Cluster) -> str:
    return f"{cluster.namespace}/{cluster.name}"


def _parse_status(raw: object, where: str) -> ClusterStatus | None:
    if not raw:
        return None
    try:
        return ClusterStatus.model_validate(raw)
    except ValidationError:
        # An unreadable status is re-derived from remote state on the next pass
        logger.warning("Discarding unreadable status for %s", where)
        return None
