"""
tests/test_fleet.py
───────────────────
Test suite for autoscaler/fleet (launcher, registrar, inventory).

What we are testing
────────────────────
FleetLauncher
  • one instance per request token, however many times launch is called
  • TransientError retried up to the budget, then RetryExhaustedError
  • CapacityUnavailableError marks the offering unavailable and propagates
NodeRegistrar
  • a node that joins becomes READY with its orchestrator name
  • a node that never joins is marked SUSPECT and terminated
NodeInventory
  • at most one live drain per node; higher priority upgrades in place
  • pending drains served highest priority first

Test groups
────────────
Group 1: launch
Group 2: registration
Group 3: inventory and drain queue
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from autoscaler.catalog.pricing import InstanceCatalog
from autoscaler.fleet.inventory import NodeInventory
from autoscaler.fleet.launcher import (
    TAG_REQUEST_TOKEN,
    ExponentialBackoff,
    FleetLauncher,
    RetryContext,
)
from autoscaler.fleet.registrar import NodeRegistrar, RegistrationOutcome
from autoscaler.providers.simulated import SimulatedCloudProvider, SimulatedCluster
from autoscaler.shared.errors import (
    CapacityUnavailableError,
    PolicyViolationError,
    QuotaExceededError,
    RetryExhaustedError,
    TransientError,
)
from autoscaler.shared.events import DecisionKind, EventRecorder
from autoscaler.shared.models import (
    Architecture,
    CapacityType,
    Candidate,
    DrainReason,
    DrainState,
    DrainTask,
    ManagedNode,
    NodePhase,
    Resources,
    utcnow,
)

from conftest import make_policies, make_settings, small_large


def _make_candidate(shape: str = "small", node_class: str = "default") -> Candidate:
    return Candidate(
        shape=shape, architecture=Architecture.AMD64, node_class=node_class,
        node_pool="general", zone="z1", capacity_type=CapacityType.ON_DEMAND,
        price_per_hour=1.0, allocatable=Resources(cpu=4, memory_gib=8, pods=110),
    )


def _make_node(provider_id: str, pool: str = "general") -> ManagedNode:
    return ManagedNode(
        provider_id=provider_id, request_token=f"tok-{provider_id}", shape="small",
        node_class="default", node_pool=pool, zone="z1",
        capacity_type=CapacityType.ON_DEMAND, phase=NodePhase.READY,
        allocatable=Resources(cpu=4, memory_gib=8),
    )


def _drain(node_id: str, reason: DrainReason, seconds: float = 60.0) -> DrainTask:
    return DrainTask(node_id=node_id, reason=reason,
                     deadline=utcnow() + timedelta(seconds=seconds))


class _Fleet:
    """Launcher + registrar over simulated backends."""

    def __init__(self, auto_register: bool = True, **overrides) -> None:
        self.settings = make_settings(**overrides)
        self.cluster = SimulatedCluster()
        self.provider = SimulatedCloudProvider(
            catalog=small_large(), cluster=self.cluster, auto_register=auto_register,
        )
        self.catalog = InstanceCatalog(self.provider, self.settings)
        self.catalog.load(small_large())
        self.inventory = NodeInventory()
        self.recorder = EventRecorder()
        self.launcher = FleetLauncher(
            self.provider, self.inventory, make_policies(), self.catalog,
            self.settings, self.recorder,
        )
        self.registrar = NodeRegistrar(
            self.cluster, self.inventory, self.launcher, self.settings, self.recorder,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: launch
# ─────────────────────────────────────────────────────────────────────────────

class TestLaunch:

    def test_launch_adds_registering_node_with_tags(self):
        fleet = _Fleet()
        node = asyncio.run(fleet.launcher.launch(_make_candidate(), "tok-1"))
        assert node.phase == NodePhase.REGISTERING
        assert fleet.inventory.by_token("tok-1") is node
        assert fleet.provider.launch_calls[0].tags[TAG_REQUEST_TOKEN] == "tok-1"
        assert fleet.recorder.records(DecisionKind.LAUNCHED)

    def test_same_token_never_launches_twice(self):
        fleet = _Fleet()

        async def scenario():
            first = await fleet.launcher.launch(_make_candidate(), "tok-1")
            second = await fleet.launcher.launch(_make_candidate(), "tok-1")
            return first, second

        first, second = asyncio.run(scenario())
        assert first.provider_id == second.provider_id
        assert len(fleet.provider.instances) == 1
        assert len(fleet.inventory) == 1

    def test_transient_error_is_retried(self):
        fleet = _Fleet(launch_retry_attempts=3)
        fleet.provider.inject_failure("small", TransientError, times=2)
        node = asyncio.run(fleet.launcher.launch(_make_candidate(), "tok-1"))
        assert node.provider_id in fleet.provider.instances
        assert len(fleet.provider.launch_calls) == 3
        [launched] = fleet.recorder.records(DecisionKind.LAUNCHED)
        assert launched.details["attempts"] == 3
        assert launched.details["retry_delay_s"] == 0.0

    def test_retry_budget_exhausted(self):
        fleet = _Fleet(launch_retry_attempts=3)
        fleet.provider.inject_failure("small", TransientError, times=5)
        with pytest.raises(RetryExhaustedError) as info:
            asyncio.run(fleet.launcher.launch(_make_candidate(), "tok-1"))
        assert info.value.attempts == 3
        assert len(fleet.provider.launch_calls) == 3
        assert len(fleet.inventory) == 0

    def test_capacity_unavailable_marks_offering(self):
        fleet = _Fleet()
        fleet.provider.inject_failure("small", CapacityUnavailableError)
        with pytest.raises(CapacityUnavailableError):
            asyncio.run(fleet.launcher.launch(_make_candidate(), "tok-1"))
        assert fleet.catalog.unavailable.is_unavailable(("small", "z1", "on-demand"))
        assert len(fleet.provider.launch_calls) == 1

    def test_quota_propagates_without_retry(self):
        fleet = _Fleet()
        fleet.provider.set_quota(0)
        with pytest.raises(QuotaExceededError):
            asyncio.run(fleet.launcher.launch(_make_candidate(), "tok-1"))
        assert len(fleet.provider.launch_calls) == 1

    def test_missing_node_class_is_a_policy_violation(self):
        fleet = _Fleet()
        with pytest.raises(PolicyViolationError):
            asyncio.run(fleet.launcher.launch(_make_candidate(node_class="gone"), "tok-1"))
        assert fleet.provider.launch_calls == []

    def test_terminate_removes_node(self):
        fleet = _Fleet()

        async def scenario():
            node = await fleet.launcher.launch(_make_candidate(), "tok-1")
            await fleet.launcher.terminate(node, "test")
            return node

        node = asyncio.run(scenario())
        assert node.phase == NodePhase.TERMINATED
        assert node.provider_id not in fleet.inventory
        assert fleet.provider.terminated == [node.provider_id]

    def test_cancelled_launch_is_reaped(self):
        fleet = _Fleet()
        fleet.provider.launch_delay = 0.05

        async def scenario():
            launch = asyncio.create_task(fleet.launcher.launch(_make_candidate(), "tok-1"))
            await asyncio.sleep(0.01)
            launch.cancel()
            with pytest.raises(asyncio.CancelledError):
                await launch
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        assert len(fleet.provider.terminated) == 1
        assert fleet.provider.instances == {}
        assert len(fleet.inventory) == 0

    def test_backoff_delay_is_capped(self):
        backoff = ExponentialBackoff(max_attempts=5, base_delay=1.0, max_delay=3.0)
        ctx = RetryContext(operation="launch")
        for _ in range(4):
            ctx.attempt += 1
            assert 0.0 <= backoff.get_delay(ctx) <= 3.0
        assert backoff.should_retry(ctx)
        ctx.attempt += 1
        assert not backoff.should_retry(ctx)


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: registration
# ─────────────────────────────────────────────────────────────────────────────

class TestRegistration:

    def test_registered_node_becomes_ready(self):
        fleet = _Fleet()

        async def scenario():
            node = await fleet.launcher.launch(_make_candidate(), "tok-1")
            return node, await fleet.registrar.await_registration(node)

        node, outcome = asyncio.run(scenario())
        assert outcome == RegistrationOutcome.REGISTERED
        assert node.phase == NodePhase.READY
        assert node.is_schedulable
        assert fleet.inventory.by_node_name(node.node_name) is node

    def test_registration_timeout_terminates_suspect_node(self):
        fleet = _Fleet(auto_register=False, registration_timeout=0.05)

        async def scenario():
            node = await fleet.launcher.launch(_make_candidate(), "tok-1")
            return node, await fleet.registrar.await_registration(node)

        node, outcome = asyncio.run(scenario())
        assert outcome == RegistrationOutcome.TIMED_OUT
        assert "did not register" in node.failure_reason
        assert fleet.provider.terminated == [node.provider_id]
        assert node.provider_id not in fleet.inventory
        assert fleet.recorder.records(DecisionKind.REGISTRATION_TIMEOUT)
        suspect = fleet.inventory.suspects()[node.provider_id]
        assert "did not register" in suspect["reason"]
        assert suspect["shape"] == "small"
        assert suspect["node_pool"] == "general"


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: inventory and drain queue
# ─────────────────────────────────────────────────────────────────────────────

class TestInventory:

    def test_add_is_idempotent_per_token(self):
        inventory = NodeInventory()
        first = inventory.add(_make_node("i-1"))
        duplicate = _make_node("i-2")
        duplicate.request_token = first.request_token
        assert inventory.add(duplicate) is first
        assert len(inventory) == 1

    def test_pool_usage_ignores_terminal_nodes(self):
        inventory = NodeInventory()
        inventory.add(_make_node("i-1"))
        inventory.add(_make_node("i-2"))
        inventory.set_phase("i-2", NodePhase.TERMINATING)
        assert inventory.pool_usage("general").cpu == pytest.approx(4.0)

    def test_nominations_released_by_token(self):
        inventory = NodeInventory()
        inventory.nominate("tok-a", ["ns/a", "ns/b"])
        assert inventory.is_nominated("ns/a")
        inventory.release("tok-a")
        assert not inventory.is_nominated("ns/b")

    def test_submit_drain_for_unknown_node_raises(self):
        with pytest.raises(KeyError):
            NodeInventory().submit_drain(_drain("i-x", DrainReason.MANUAL))

    def test_one_live_drain_per_node(self):
        inventory = NodeInventory()
        inventory.add(_make_node("i-1"))
        first = inventory.submit_drain(_drain("i-1", DrainReason.CONSOLIDATION, 600))
        live = inventory.submit_drain(_drain("i-1", DrainReason.INTERRUPTION, 120))
        assert live is first
        assert live.reason == DrainReason.INTERRUPTION
        assert inventory.live_drains() == [first]
        assert inventory.pop_drain() is first
        assert inventory.pop_drain() is None

    def test_pending_drains_served_by_priority(self):
        inventory = NodeInventory()
        for pid in ("i-1", "i-2", "i-3"):
            inventory.add(_make_node(pid))
        inventory.submit_drain(_drain("i-1", DrainReason.CONSOLIDATION))
        inventory.submit_drain(_drain("i-2", DrainReason.INTERRUPTION))
        inventory.submit_drain(_drain("i-3", DrainReason.MANUAL))
        order = [inventory.pop_drain().node_id for _ in range(3)]
        assert order == ["i-2", "i-3", "i-1"]

    def test_upgraded_drain_jumps_the_queue(self):
        inventory = NodeInventory()
        for pid in ("i-1", "i-2"):
            inventory.add(_make_node(pid))
        inventory.submit_drain(_drain("i-1", DrainReason.MANUAL))
        inventory.submit_drain(_drain("i-2", DrainReason.CONSOLIDATION))
        inventory.submit_drain(_drain("i-2", DrainReason.INTERRUPTION))
        assert inventory.pop_drain().node_id == "i-2"
        assert inventory.pop_drain().node_id == "i-1"
        assert inventory.pop_drain() is None

    def test_upgrade_sets_the_node_signal(self):
        inventory = NodeInventory()
        inventory.add(_make_node("i-1"))
        inventory.submit_drain(_drain("i-1", DrainReason.CONSOLIDATION, 600))
        signal = inventory.upgrade_signal("i-1")
        assert not signal.is_set()
        inventory.submit_drain(_drain("i-1", DrainReason.CONSOLIDATION, 300))
        assert not signal.is_set()
        inventory.submit_drain(_drain("i-1", DrainReason.INTERRUPTION, 120))
        assert signal.is_set()

    def test_suspect_ledger_outlives_the_node(self):
        inventory = NodeInventory()
        node = inventory.add(_make_node("i-1"))
        inventory.mark_suspect(node, "never joined")
        assert node.phase == NodePhase.SUSPECT
        inventory.remove("i-1")
        assert inventory.suspects() == {
            "i-1": {"reason": "never joined", "shape": "small", "node_pool": "general"},
        }

    def test_disrupting_count_only_counts_consolidation(self):
        inventory = NodeInventory()
        for pid in ("i-1", "i-2"):
            inventory.add(_make_node(pid))
        inventory.submit_drain(_drain("i-1", DrainReason.CONSOLIDATION))
        inventory.submit_drain(_drain("i-2", DrainReason.MANUAL))
        assert inventory.disrupting_count("general") == 1

    def test_finished_drain_is_not_live(self):
        inventory = NodeInventory()
        inventory.add(_make_node("i-1"))
        task = inventory.submit_drain(_drain("i-1", DrainReason.MANUAL))
        task.state = DrainState.ABORTED
        assert inventory.drain_for("i-1") is None
        again = inventory.submit_drain(_drain("i-1", DrainReason.MANUAL))
        assert again is not task

    def test_next_drain_times_out_empty(self):
        inventory = NodeInventory()
        assert asyncio.run(inventory.next_drain(timeout=0.01)) is None
