"""Multi-context client protocol and its error taxonomy.

The RemoteClient protocol defines the interface the reconciler uses to
address objects living on separate cluster API endpoints.  Every call
names its target explicitly through an :class:`ObjectKey`. There is no
ambient "current context".  Any object with ``get()``, ``create()``,
``patch()``, ``patch_status()`` and ``delete()`` satisfies the protocol.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from multidc_operator.models import ObjectKey, ResourceKind


class RemoteError(Exception):
    """Base class for errors raised by a remote client."""

    def __init__(self, key: ObjectKey, kind: ResourceKind, message: str = "") -> None:
        self.key = key
        self.kind = kind
        super().__init__(message or f"{kind} {key}")


class NotFoundError(RemoteError):
    """The object does not exist (yet). Expected during rollout."""


class TransientError(RemoteError):
    """The endpoint is unreachable, overloaded or the write conflicted.

    Always converted into a requeue by the caller, never a terminal failure.
    """


class RemoteApiError(RemoteError):
    """The endpoint rejected the request for a non-transient reason."""

    def __init__(
        self,
        key: ObjectKey,
        kind: ResourceKind,
        message: str = "",
        status: int | None = None,
    ) -> None:
        self.status = status
        super().__init__(key, kind, message)


@runtime_checkable
class RemoteClient(Protocol):
    """Protocol for multi-context object access.

    Objects are exchanged as plain dicts in their wire (camelCase) form.
    """

    def get(self, key: ObjectKey, kind: ResourceKind) -> dict[str, Any]:
        """Return the object or raise NotFoundError / TransientError."""
        ...

    def create(self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        """Create the object at *key*."""
        ...

    def patch(self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        """Merge-patch the object at *key*."""
        ...

    def patch_status(
        self, key: ObjectKey, kind: ResourceKind, body: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge-patch the status subresource of the object at *key*."""
        ...

    def delete(self, key: ObjectKey, kind: ResourceKind) -> None:
        """Delete the object at *key*. Raises NotFoundError if already gone."""
        ...


def exists(client: RemoteClient, key: ObjectKey, kind: ResourceKind) -> bool:
    """True if the object is present. Transient errors propagate."""
    try:
        client.get(key, kind)
    except NotFoundError:
        return False
    return True


def delete_and_confirm(client: RemoteClient, key: ObjectKey, kind: ResourceKind) -> bool:
    """Issue a delete and report whether the object is gone now.

    Finalizers may keep an object around after the delete is accepted, so
    the caller requeues until this returns True.
    """
    try:
        client.delete(key, kind)
    except NotFoundError:
        return True
    return not exists(client, key, kind)
