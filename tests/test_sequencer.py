"""Tests for the datacenter sequencer (pure decision logic)."""

from __future__ import annotations

from conftest import build_cluster
from multidc_operator.models import Condition, ConditionStatus, ObservedState
from multidc_operator.sequencer.sequencer import decide, ready_predecessor

THREE = (("dc1", "cluster-1"), ("dc2", "cluster-2"), ("dc3", "cluster-3"))


def _ready(generation: int = 1, observed: int = 1) -> ObservedState:
    return ObservedState(
        conditions=[Condition(type="Ready", status=ConditionStatus.TRUE)],
        generation=generation,
        observed_generation=observed,
    )


def _not_ready() -> ObservedState:
    return ObservedState(
        conditions=[Condition(type="Ready", status=ConditionStatus.FALSE)],
        generation=1,
        observed_generation=1,
    )


class TestInitialRollout:
    def test_nothing_exists_creates_first_only(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {})
        assert decision.create == ["dc1"]
        assert decision.update == []
        assert decision.deferred == ["dc2", "dc3"]
        assert decision.blocked_by == "dc1"

    def test_first_ready_allows_second(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {"dc1": _ready()})
        assert decision.update == ["dc1"]
        assert decision.create == ["dc2"]
        assert decision.deferred == ["dc3"]

    def test_first_not_ready_blocks_later_creation(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {"dc1": _not_ready()})
        assert decision.create == []
        assert decision.update == ["dc1"]
        assert decision.deferred == ["dc2", "dc3"]
        assert "dc1" in decision.reason

    def test_unobserved_generation_blocks(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {"dc1": _ready(generation=2, observed=1)})
        assert decision.create == []
        assert decision.blocked_by == "dc1"

    def test_pending_change_blocks(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {"dc1": _ready()}, pending_changes={"dc1"})
        assert decision.update == ["dc1"]
        assert decision.create == []

    def test_all_ready_no_creation(self):
        specs = build_cluster(dcs=THREE).datacenters
        observed = {"dc1": _ready(), "dc2": _ready(), "dc3": _ready()}
        decision = decide(specs, observed)
        assert decision.update == ["dc1", "dc2", "dc3"]
        assert decision.create == []
        assert decision.deferred == []
        assert decision.requeue is False

    def test_is_first_creation(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {"dc1": _ready()})
        assert decision.is_first_creation("dc2")
        assert not decision.is_first_creation("dc1")
        assert decision.eligible == ["dc2", "dc1"]


class TestExistingDatacenters:
    def test_existing_later_dc_updated_even_when_earlier_not_ready(self):
        specs = build_cluster(dcs=THREE).datacenters
        observed = {"dc1": _not_ready(), "dc2": _ready(), "dc3": None}
        decision = decide(specs, observed)
        assert decision.update == ["dc1", "dc2"]
        assert decision.create == []
        assert decision.deferred == ["dc3"]

    def test_never_deletes(self):
        specs = build_cluster(dcs=THREE).datacenters[:1]
        decision = decide(specs, {"dc1": _ready(), "dc2": _ready()})
        assert decision.update == ["dc1"]
        assert "dc2" not in decision.eligible


class TestBlockingConditions:
    def test_secrets_pending_nothing_eligible(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {"dc1": _ready()}, secrets_ready=False)
        assert decision.eligible == []
        assert decision.deferred == ["dc1", "dc2", "dc3"]
        assert decision.requeue is True

    def test_unreachable_defers_and_requeues(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {"dc1": _ready()}, unreachable={"dc2"})
        assert decision.update == ["dc1"]
        assert decision.create == []
        assert decision.deferred == ["dc2", "dc3"]
        assert decision.requeue is True
        assert decision.blocked_by == "dc2"

    def test_unreachable_first_blocks_everything_new(self):
        specs = build_cluster(dcs=THREE).datacenters
        decision = decide(specs, {}, unreachable={"dc1"})
        assert decision.create == []
        assert decision.deferred == ["dc1", "dc2", "dc3"]


class TestReadyPredecessor:
    def test_nearest_ready(self):
        specs = build_cluster(dcs=THREE).datacenters
        observed = {"dc1": _ready(), "dc2": _ready(), "dc3": _not_ready()}
        assert ready_predecessor(specs, observed, "dc3") == "dc2"

    def test_skips_not_ready(self):
        specs = build_cluster(dcs=THREE).datacenters
        observed = {"dc1": _ready(), "dc2": _not_ready()}
        assert ready_predecessor(specs, observed, "dc3") == "dc1"

    def test_none_for_first(self):
        specs = build_cluster(dcs=THREE).datacenters
        assert ready_predecessor(specs, {"dc1": _ready()}, "dc1") is None

    def test_none_for_unknown_target(self):
        specs = build_cluster(dcs=THREE).datacenters
        assert ready_predecessor(specs, {}, "dc9") is None
