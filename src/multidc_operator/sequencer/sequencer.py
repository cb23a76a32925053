"""Datacenter sequencer: decides which datacenters may progress this pass.

A pure function of the ordered datacenter specs and what was observed for
each of them.  No remote I/O happens here, so the decision is testable by
handing in fabricated observations.

Rules:
- nothing progresses until prerequisite secrets are replicated
- a datacenter that already exists is always eligible for update
- a missing datacenter is created only when every datacenter before it
  exists, is Ready and has observed its latest generation with no desired
  change pending
- an unreadable datacenter counts as not ready and requests a requeue
- nothing is ever deleted here
"""

from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence

from pydantic import BaseModel, Field

from multidc_operator.models import DatacenterSpec, ObservedState


class SequencingDecision(BaseModel):
    """Which datacenters to create, which to update, and what is held back."""

    create: list[str] = Field(default_factory=list)
    update: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)
    blocked_by: str | None = None
    requeue: bool = False
    reason: str = ""

    @property
    def eligible(self) -> list[str]:
        return self.create + self.update

    def is_first_creation(self, name: str) -> bool:
        return name in self.create


def decide(
    specs: Sequence[DatacenterSpec],
    observed: Mapping[str, ObservedState | None],
    secrets_ready: bool = True,
    unreachable: Collection[str] = (),
    pending_changes: Collection[str] = (),
) -> SequencingDecision:
    """Return the sequencing decision for one pass.

    Args:
        specs: Datacenter specs in sequencing order.
        observed: Observation per datacenter name; ``None`` (or absent)
            means the object does not exist.
        secrets_ready: Whether prerequisite secrets are replicated.
        unreachable: Datacenters whose observation could not be read.
        pending_changes: Existing datacenters whose desired spec differs
            from what was last applied to them.
    """
    if not secrets_ready:
        return SequencingDecision(
            deferred=[dc.name for dc in specs],
            requeue=True,
            reason="prerequisite secrets are not replicated yet",
        )

    decision = SequencingDecision()
    gate_open = True

    for dc in specs:
        if dc.name in unreachable:
            decision.deferred.append(dc.name)
            decision.requeue = True
            if gate_open:
                gate_open = False
                decision.blocked_by = dc.name
                decision.reason = f"datacenter {dc.name} could not be observed"
            continue

        state = observed.get(dc.name)
        if state is not None:
            decision.update.append(dc.name)
            if gate_open and (not state.is_ready() or dc.name in pending_changes):
                gate_open = False
                decision.blocked_by = dc.name
                decision.reason = f"datacenter {dc.name} is not ready"
            continue

        if gate_open:
            decision.create.append(dc.name)
            # A datacenter created this pass cannot be ready yet
            gate_open = False
            decision.blocked_by = dc.name
            decision.reason = f"datacenter {dc.name} is being created"
        else:
            decision.deferred.append(dc.name)

    return decision


def ready_predecessor(
    specs: Sequence[DatacenterSpec],
    observed: Mapping[str, ObservedState | None],
    target: str,
) -> str | None:
    """Nearest datacenter before *target* (in sequencing order) that is Ready."""
    names = [dc.name for dc in specs]
    if target not in names:
        return None
    for name in reversed(names[: names.index(target)]):
        state = observed.get(name)
        if state is not None and state.is_ready():
            return name
    return None
