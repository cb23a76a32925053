"""Status aggregator: merges remote observations and pass facts into a ClusterStatus.

Pure: the same inputs always yield the same status, and nothing is read
or written remotely.  Entry rules:

- a datacenter gets an entry once a create for it was issued (a pass fact,
  an earlier entry, or simply the object being observed)
- entries are never dropped here, only by the deletion cascade
- conditions are copied as observed; a missing condition reads as Unknown
- a tracked datacenter that could not be observed this pass keeps its last
  known conditions but does not count as Ready
- the cluster is ready when every tracked datacenter is Ready, and not
  ready when no datacenter is tracked
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime

from multidc_operator.models import (
    READY,
    Cluster,
    ClusterStatus,
    ConditionStatus,
    DatacenterFacts,
    DatacenterStatus,
    ObservedState,
)


def aggregate(
    cluster: Cluster,
    observations: Mapping[str, ObservedState | None],
    facts: Mapping[str, DatacenterFacts],
    previous: ClusterStatus | None = None,
    error: str | None = None,
    now: datetime | None = None,
) -> ClusterStatus:
    """Build the next ClusterStatus for *cluster*."""
    previous = previous or ClusterStatus()
    entries: dict[str, DatacenterStatus] = dict(previous.datacenters)
    ready_flags: list[bool] = []

    for dc in cluster.datacenters:
        observed = observations.get(dc.name)
        fact = facts.get(dc.name)
        prior = entries.get(dc.name)

        tracked = prior is not None or observed is not None or (fact is not None and fact.created)
        if not tracked:
            continue

        entry = _merge_entry(prior or DatacenterStatus(), observed, fact)
        entries[dc.name] = entry
        ready_flags.append(observed is not None and entry.condition(READY) == ConditionStatus.TRUE)

    return ClusterStatus(
        datacenters=entries,
        ready=bool(ready_flags) and all(ready_flags),
        error=error,
        observed_at=now or datetime.now(tz=UTC),
    )


def _merge_entry(
    prior: DatacenterStatus,
    observed: ObservedState | None,
    fact: DatacenterFacts | None,
) -> DatacenterStatus:
    update: dict = {}

    if observed is not None:
        update.update(
            conditions=list(observed.conditions),
            generation=observed.generation,
            observed_generation=observed.observed_generation,
            ever_ready=prior.ever_ready or observed.is_ready(),
        )

    if fact is not None:
        update.update(
            sidecar_injected=fact.sidecar_injected,
            standalone_ready=fact.standalone_ready,
            standalone_error=fact.standalone_error,
        )
        if fact.rebuild is not None:
            update["rebuild"] = fact.rebuild

    return prior.model_copy(update=update)


def datacenter_ready(status: ClusterStatus, name: str) -> ConditionStatus:
    """Ready condition recorded for *name*, Unknown when untracked."""
    entry = status.datacenters.get(name)
    if entry is None:
        return ConditionStatus.UNKNOWN
    return entry.condition(READY)
