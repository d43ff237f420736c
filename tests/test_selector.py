"""
tests/test_selector.py
──────────────────────
Test suite for autoscaler/control_plane/selector.py

What we are testing
────────────────────
Stage 1 drops every candidate that violates a hard constraint: labels,
taints, NodePool requirements, size against the largest single workload,
pool limit headroom. Stage 2 orders the survivors by the estimated cost
to serve the whole batch, then spot, price, pool weight.

Test groups
────────────
Group 1: candidate generation — labels, pool requirements
Group 2: hard constraints     — selectors, taints, size, headroom
Group 3: ranking              — serve cost and tie-breaks
Group 4: unsatisfiable reasons
"""

from __future__ import annotations

import pytest

from autoscaler.catalog.pricing import InstanceCatalog
from autoscaler.control_plane.selector import InstanceTypeSelector
from autoscaler.shared.models import (
    LABEL_ARCH,
    LABEL_INSTANCE_TYPE,
    LABEL_NODEPOOL,
    Architecture,
    CapacityType,
    Candidate,
    NodePool,
    NodeRequirement,
    ProvisioningRequest,
    RequirementOperator,
    Resources,
    Taint,
    Toleration,
)

from conftest import make_policies, make_shape, make_workload


def _make_selector(*pools: NodePool):
    catalog = InstanceCatalog()
    catalog.load([
        make_shape("small", 4, 8, 1.0),
        make_shape("large", 8, 16, 2.0),
        make_shape("arm", 4, 8, 0.8, arch=Architecture.ARM64),
    ])
    policies = make_policies(*pools)
    return InstanceTypeSelector(catalog, policies), policies


def _request(*workloads) -> ProvisioningRequest:
    return ProvisioningRequest(workloads=list(workloads))


def _candidate(price: float, spot: bool = False, weight: int = 0, shape: str = "s",
               cpu: float = 4, mem: float = 8) -> Candidate:
    return Candidate(
        shape=shape, architecture=Architecture.AMD64, node_class="default",
        node_pool="general", zone="z1",
        capacity_type=CapacityType.SPOT if spot else CapacityType.ON_DEMAND,
        price_per_hour=price, allocatable=Resources(cpu=cpu, memory_gib=mem, pods=110),
        pool_weight=weight,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: candidate generation
# ─────────────────────────────────────────────────────────────────────────────

class TestCandidateGeneration:

    def test_candidates_carry_shape_and_pool_labels(self):
        pool = NodePool(name="general", node_class="default", labels={"team": "web"})
        selector, _ = _make_selector(pool)
        candidates = selector.candidates_for_pool(pool)
        assert {c.shape for c in candidates} == {"small", "large", "arm"}
        small = next(c for c in candidates if c.shape == "small")
        assert small.labels[LABEL_INSTANCE_TYPE] == "small"
        assert small.labels[LABEL_NODEPOOL] == "general"
        assert small.labels["team"] == "web"

    def test_pool_requirements_narrow_offerings(self):
        pool = NodePool(
            name="amd-only", node_class="default",
            requirements=[NodeRequirement(key=LABEL_ARCH, values=["amd64"])],
        )
        selector, _ = _make_selector(pool)
        assert {c.shape for c in selector.candidates_for_pool(pool)} == {"small", "large"}

    def test_missing_node_class_yields_nothing(self):
        selector, _ = _make_selector()
        orphan = NodePool(name="orphan", node_class="gone")
        assert selector.candidates_for_pool(orphan) == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: hard constraints
# ─────────────────────────────────────────────────────────────────────────────

class TestHardConstraints:

    def test_node_selector_picks_architecture(self):
        selector, policies = _make_selector()
        w = make_workload("ns/a", node_selector={LABEL_ARCH: "arm64"})
        ranked = selector.select(_request(w), policies.node_pools)
        assert [c.shape for c in ranked] == ["arm"]

    def test_not_in_requirement_excludes(self):
        selector, policies = _make_selector()
        w = make_workload("ns/a", requirements=[
            NodeRequirement(key=LABEL_INSTANCE_TYPE, operator=RequirementOperator.NOT_IN,
                            values=["arm", "small"]),
        ])
        assert [c.shape for c in selector.select(_request(w), policies.node_pools)] == ["large"]

    def test_pool_taint_needs_toleration(self):
        tainted = NodePool(name="gpu", node_class="default",
                           taints=[Taint(key="dedicated", value="gpu")])
        selector, policies = _make_selector(tainted)
        plain = make_workload("ns/a")
        tolerant = make_workload("ns/b", tolerations=[Toleration(key="dedicated", value="gpu")])
        assert selector.select(_request(plain), policies.node_pools) == []
        assert selector.select(_request(tolerant), policies.node_pools)

    def test_largest_single_workload_must_fit(self):
        selector, policies = _make_selector()
        big = make_workload("ns/big", cpu=6, memory_gib=4)
        assert {c.shape for c in selector.select(_request(big), policies.node_pools)} == {"large"}

    def test_batch_larger_than_any_shape_still_selects(self):
        """Total demand may exceed a node: the planner packs several."""
        selector, policies = _make_selector()
        batch = _request(*[make_workload(f"ns/{i}", cpu=3) for i in range(10)])
        assert len(selector.select(batch, policies.node_pools)) == 3

    def test_headroom_drops_candidates_over_the_limit(self):
        pool = NodePool(name="general", node_class="default",
                        limits=Resources(cpu=16, memory_gib=64))
        selector, policies = _make_selector(pool)
        ranked = selector.select(
            _request(make_workload("ns/a")), policies.node_pools,
            pool_headroom={"general": Resources(cpu=5, memory_gib=64)},
        )
        assert {c.shape for c in ranked} == {"small", "arm"}

    def test_undeclared_limit_dimensions_are_unlimited(self):
        pool = NodePool(name="general", node_class="default", limits=Resources(cpu=16))
        selector, policies = _make_selector(pool)
        ranked = selector.select(
            _request(make_workload("ns/a")), policies.node_pools,
            pool_headroom={"general": Resources(cpu=16)},
        )
        assert len(ranked) == 3


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: ranking
# ─────────────────────────────────────────────────────────────────────────────

class TestRanking:

    def test_cheapest_per_batch_first(self):
        selector, policies = _make_selector()
        ranked = selector.select(_request(make_workload("ns/a")), policies.node_pools)
        assert [c.shape for c in ranked] == ["arm", "small", "large"]

    def test_serve_cost_scales_with_fraction_absorbed(self):
        total = Resources(cpu=12, memory_gib=24)
        whole = InstanceTypeSelector.rank_key(_candidate(2.0, cpu=16, mem=32), total)
        third = InstanceTypeSelector.rank_key(_candidate(1.0, cpu=4, mem=8), total)
        assert whole[0] == pytest.approx(2.0)
        assert third[0] == pytest.approx(3.0)
        assert whole < third

    def test_spot_before_on_demand_at_equal_cost(self):
        demand = Resources(cpu=1, memory_gib=1)
        spot = InstanceTypeSelector.rank_key(_candidate(1.0, spot=True), demand)
        on_demand = InstanceTypeSelector.rank_key(_candidate(1.0), demand)
        assert spot < on_demand

    def test_heavier_pool_wins_at_equal_price(self):
        demand = Resources(cpu=1, memory_gib=1)
        heavy = InstanceTypeSelector.rank_key(_candidate(1.0, weight=50, shape="z"), demand)
        light = InstanceTypeSelector.rank_key(_candidate(1.0, weight=10, shape="a"), demand)
        assert heavy < light


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: unsatisfiable reasons
# ─────────────────────────────────────────────────────────────────────────────

class TestUnsatisfiableReason:

    def test_satisfiable_workload_has_no_reason(self):
        selector, policies = _make_selector()
        assert selector.unsatisfiable_reason(make_workload("ns/a"), policies.node_pools) is None

    def test_label_mismatch_is_reported(self):
        selector, policies = _make_selector()
        w = make_workload("ns/a", node_selector={"disk": "nvme"})
        assert "node selector" in selector.unsatisfiable_reason(w, policies.node_pools)

    def test_taint_mismatch_is_reported(self):
        tainted = NodePool(name="gpu", node_class="default", taints=[Taint(key="gpu")])
        selector, policies = _make_selector(tainted)
        reason = selector.unsatisfiable_reason(make_workload("ns/a"), policies.node_pools)
        assert "taints" in reason

    def test_oversized_workload_names_the_short_dimension(self):
        selector, policies = _make_selector()
        w = make_workload("ns/a", cpu=2, memory_gib=64)
        reason = selector.unsatisfiable_reason(w, policies.node_pools)
        assert "memory_gib" in reason and "large" in reason

    def test_no_pools_is_reported(self):
        selector, _ = _make_selector()
        assert "no launchable offerings" in selector.unsatisfiable_reason(make_workload("ns/a"), [])
