"""Idempotent create-or-patch of desired objects.

Desired bodies are stamped with a resource-hash annotation.  An object is
created when missing, patched when the stamped hash differs from the one
stored remotely, and left alone otherwise, so re-running a pass with no
change issues no writes.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from multidc_operator.client.base import NotFoundError, RemoteClient
from multidc_operator.constants import RESOURCE_HASH_ANNOTATION
from multidc_operator.datacenter.template import resource_hash
from multidc_operator.models import ObjectKey, ResourceKind

logger = logging.getLogger(__name__)


class ApplyOutcome(enum.StrEnum):
    CREATED = "created"
    PATCHED = "patched"
    UNCHANGED = "unchanged"


def desired_hash(body: dict[str, Any]) -> str:
    """Hash of everything but metadata, so status and bookkeeping don't count."""
    return resource_hash({k: v for k, v in body.items() if k not in ("metadata", "status")})


def ensure(
    client: RemoteClient,
    key: ObjectKey,
    kind: ResourceKind,
    body: dict[str, Any],
) -> tuple[ApplyOutcome, dict[str, Any]]:
    """Create or patch *key* so that it matches *body*.

    Returns the outcome and the remote object as last seen.  Remote errors
    propagate to the caller.
    """
    digest = desired_hash(body)
    body.setdefault("metadata", {}).setdefault("annotations", {})[RESOURCE_HASH_ANNOTATION] = digest

    try:
        current = client.get(key, kind)
    except NotFoundError:
        logger.info("Creating %s %s", kind, key)
        return ApplyOutcome.CREATED, client.create(key, kind, body)

    annotations = (current.get("metadata") or {}).get("annotations") or {}
    if annotations.get(RESOURCE_HASH_ANNOTATION) == digest:
        return ApplyOutcome.UNCHANGED, current

    logger.info("Patching %s %s", kind, key)
    return ApplyOutcome.PATCHED, client.patch(key, kind, body)
