"""InMemoryClient: a RemoteClient that keeps objects in process memory.

Useful for dry-runs, planning and tests.  Objects are stored per
(kind, context, namespace, name); patches follow JSON merge-patch rules;
``metadata.generation`` advances whenever ``spec`` changes, the way an
API server does it.  Contexts can be marked unreachable and individual
calls can be made to fail to exercise error handling.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Any

from multidc_operator.client.base import NotFoundError, RemoteApiError, TransientError
from multidc_operator.models import ObjectKey, ResourceKind


def merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Apply an RFC 7386 merge patch to *target* and return the result."""
    result = copy.deepcopy(target)
    for k, v in patch.items():
        if v is None:
            result.pop(k, None)
        elif isinstance(v, dict) and isinstance(result.get(k), dict):
            result[k] = merge_patch(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result


@dataclass
class Failure:
    """A scripted failure for the next *times* matching calls."""

    kind: ResourceKind
    verb: str
    name: str | None = None
    times: int = 1
    transient: bool = True


@dataclass
class Call:
    verb: str
    kind: ResourceKind
    key: ObjectKey
    body: dict[str, Any] | None = field(default=None, repr=False)


class InMemoryClient:
    """RemoteClient backed by a dict. Thread-safe via a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[tuple[ResourceKind, ObjectKey], dict[str, Any]] = {}
        self._failures: list[Failure] = []
        self._resource_version = 0
        self.unreachable: set[str] = set()
        self.calls: list[Call] = []

    # --- RemoteClient protocol ---

    def get(self, key: ObjectKey, kind: ResourceKind) -> dict[str, Any]:
        with self._lock:
            self._record("get", kind, key)
            obj = self._objects.get((kind, key))
            if obj is None:
                raise NotFoundError(key, kind)
            return copy.deepcopy(obj)

    def create(self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._record("create", kind, key, body)
            if (kind, key) in self._objects:
                raise TransientError(key, kind, f"{kind} {key} already exists")
            obj = copy.deepcopy(body)
            meta = obj.setdefault("metadata", {})
            meta["name"] = key.name
            meta["namespace"] = key.namespace
            meta["generation"] = 1
            meta["resourceVersion"] = self._next_version()
            self._objects[(kind, key)] = obj
            return copy.deepcopy(obj)

    def patch(self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._record("patch", kind, key, body)
            current = self._objects.get((kind, key))
            if current is None:
                raise NotFoundError(key, kind)
            body = {k: v for k, v in body.items() if k != "status"}
            updated = merge_patch(current, body)
            if updated.get("spec") != current.get("spec"):
                updated["metadata"]["generation"] = current["metadata"].get("generation", 1) + 1
            updated["metadata"]["resourceVersion"] = self._next_version()
            self._objects[(kind, key)] = updated
            return copy.deepcopy(updated)

    def patch_status(
        self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any],
    ) -> dict[str, Any]:
        with self._lock:
            self._record("patch_status", kind, key, body)
            current = self._objects.get((kind, key))
            if current is None:
                raise NotFoundError(key, kind)
            updated = merge_patch(current, {"status": body.get("status", {})})
            updated["metadata"]["resourceVersion"] = self._next_version()
            self._objects[(kind, key)] = updated
            return copy.deepcopy(updated)

    def delete(self, key: ObjectKey, kind: ResourceKind) -> None:
        with self._lock:
            self._record("delete", kind, key)
            if self._objects.pop((kind, key), None) is None:
                raise NotFoundError(key, kind)

    # --- Test and dry-run helpers ---

    def put(self, key: ObjectKey, kind: ResourceKind, obj: dict[str, Any]) -> None:
        """Store *obj* as-is, bypassing failure injection and call recording."""
        with self._lock:
            stored = copy.deepcopy(obj)
            meta = stored.setdefault("metadata", {})
            meta.setdefault("name", key.name)
            meta.setdefault("namespace", key.namespace)
            meta.setdefault("generation", 1)
            self._objects[(kind, key)] = stored

    def peek(self, key: ObjectKey, kind: ResourceKind) -> dict[str, Any] | None:
        """Return a copy of the stored object without recording a call."""
        with self._lock:
            obj = self._objects.get((kind, key))
            return copy.deepcopy(obj) if obj is not None else None

    def keys(self, kind: ResourceKind) -> list[ObjectKey]:
        with self._lock:
            return [k for (knd, k) in self._objects if knd == kind]

    def fail(
        self,
        kind: ResourceKind,
        verb: str,
        name: str | None = None,
        times: int = 1,
        transient: bool = True,
    ) -> None:
        """Make the next *times* matching calls raise."""
        with self._lock:
            self._failures.append(Failure(kind, verb, name, times, transient))

    def writes(self) -> list[Call]:
        """All recorded calls that mutate state."""
        return [c for c in self.calls if c.verb != "get"]

    # --- Private ---

    def _record(
        self,
        verb: str,
        kind: ResourceKind,
        key: ObjectKey,
        body: dict[str, Any] | None = None,
    ) -> None:
        """Record the call, then raise if the context is down or a failure is scripted."""
        self.calls.append(Call(verb, kind, key, copy.deepcopy(body)))
        if key.context in self.unreachable:
            raise TransientError(key, kind, f"context {key.context} is unreachable")
        for failure in self._failures:
            if failure.times <= 0:
                continue
            if failure.kind != kind or failure.verb != verb:
                continue
            if failure.name is not None and failure.name != key.name:
                continue
            failure.times -= 1
            if failure.transient:
                raise TransientError(key, kind, f"injected {verb} failure")
            raise RemoteApiError(key, kind, f"injected {verb} failure", status=422)

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)
