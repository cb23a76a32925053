"""Secret replicator: copies referenced secrets to every datacenter context.

The replicator:
1. Reads each source secret from the control-plane context
2. Creates or patches a copy in every target context that lacks it or
   holds stale data
3. Returns a ReplicationResult: DONE with the data hash of each secret,
   or PENDING with the reasons replication is not complete

The replicator never raises for remote errors: a missing source or an
unreachable target simply leaves replication pending, which defers all
sequencing until a later pass.
"""

from __future__ import annotations

import enum
import logging
import warnings
from collections.abc import Iterable

from pydantic import BaseModel, Field

from multidc_operator.client.base import NotFoundError, RemoteClient, RemoteError
from multidc_operator.constants import REPLICATED_BY_LABEL
from multidc_operator.datacenter.template import resource_hash
from multidc_operator.models import ObjectKey, ResourceKind

logger = logging.getLogger(__name__)


class ReplicationStatus(enum.StrEnum):
    DONE = "done"
    PENDING = "pending"


class ReplicationResult(BaseModel):
    status: ReplicationStatus
    hashes: dict[str, str] = Field(default_factory=dict)
    pending: list[str] = Field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.status == ReplicationStatus.DONE


class ReplicatorWarning(UserWarning):
    """Emitted when removing a replicated secret fails (non-fatal)."""


def secret_data_hash(secret: dict) -> str:
    return resource_hash({"data": secret.get("data") or {}, "type": secret.get("type")})


class SecretReplicator:
    """Fans secrets out from the control-plane context to target contexts.

    Stateless: every call re-reads sources and targets.
    """

    def __init__(self, client: RemoteClient, source_context: str) -> None:
        self._client = client
        self._source_context = source_context

    def ensure_replicated(
        self,
        secret_names: Iterable[str],
        namespace: str,
        target_contexts: Iterable[str],
        owner: str,
    ) -> ReplicationResult:
        """Make sure every secret exists with identical data in every target."""
        targets = [c for c in target_contexts if c != self._source_context]
        hashes: dict[str, str] = {}
        pending: list[str] = []

        for name in secret_names:
            source_key = ObjectKey(self._source_context, namespace, name)
            try:
                source = self._client.get(source_key, ResourceKind.SECRET)
            except NotFoundError:
                pending.append(f"source secret {source_key} not found")
                continue
            except RemoteError as exc:
                pending.append(f"source secret {source_key}: {exc}")
                continue

            digest = secret_data_hash(source)
            hashes[name] = digest
            for context in targets:
                reason = self._replicate(source, digest, ObjectKey(context, namespace, name), owner)
                if reason is not None:
                    pending.append(reason)

        if pending:
            for reason in pending:
                logger.info("Secret replication pending: %s", reason)
            return ReplicationResult(
                status=ReplicationStatus.PENDING, hashes=hashes, pending=pending,
            )
        return ReplicationResult(status=ReplicationStatus.DONE, hashes=hashes)

    def remove_replicas(
        self,
        secret_names: Iterable[str],
        namespace: str,
        target_contexts: Iterable[str],
    ) -> bool:
        """Delete replicated copies (never the source). True once all are gone."""
        gone = True
        for name in secret_names:
            for context in target_contexts:
                if context == self._source_context:
                    continue
                key = ObjectKey(context, namespace, name)
                try:
                    self._client.delete(key, ResourceKind.SECRET)
                except NotFoundError:
                    continue
                except RemoteError as exc:
                    warnings.warn(
                        f"Failed to remove replicated secret {key}: {exc}",
                        ReplicatorWarning,
                        stacklevel=2,
                    )
                    gone = False
        return gone

    def _replicate(
        self, source: dict, digest: str, key: ObjectKey, owner: str,
    ) -> str | None:
        """Copy *source* to *key*. Returns a pending reason, or None when in sync."""
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": key.name,
                "namespace": key.namespace,
                "labels": {REPLICATED_BY_LABEL: owner},
            },
            "type": source.get("type") or "Opaque",
            "data": source.get("data") or {},
        }
        try:
            try:
                current = self._client.get(key, ResourceKind.SECRET)
            except NotFoundError:
                logger.info("Replicating secret %s", key)
                self._client.create(key, ResourceKind.SECRET, body)
                return None
            if secret_data_hash(current) != digest:
                logger.info("Refreshing replicated secret %s", key)
                self._client.patch(key, ResourceKind.SECRET, {"data": body["data"]})
        except RemoteError as exc:
            return f"replica {key}: {exc}"
        return None
