"""
autoscaler/control_plane/planner.py
───────────────────────────────────
ProvisioningPlanner: one ProvisioningRequest → launched, registered nodes.

Request state machine
──────────────────────
    observed → candidates-ranked → launch-issued → awaiting-registration
             → bound | failed

`bound` means at least one workload got capacity; workloads that did not
carry their reason in `request.failures`. Partial success is the normal
case. `failed` means nothing was bound.

Planning (pure, synchronous)
─────────────────────────────
  1. Group workloads by scheduling key (identical hard constraints).
  2. Reject workloads no shape in any eligible pool can host on its own:
     ConstraintUnsatisfiableError, with the most specific reason. They are
     simply observed again next tick.
  3. Per group, rank candidates with the InstanceTypeSelector and pack the
     group with packing_core into as many new nodes as needed. Each
     NodePool with limits is a budget group; budgets are shared across
     groups within the pass.
  4. Every planned node gets an ordered fallback list: the other
     candidates that can host all of its workloads.

Every binding is decided before the first launch is issued.

Execution (async)
──────────────────
Planned nodes launch concurrently (the launcher bounds concurrency).
For each planned node:

    for option in [candidate] + fallbacks:
        cancelled?            → skip (every workload scheduled elsewhere)
        launch
          CapacityUnavailable → next option
          QuotaExceeded       → stop, workloads fail
          RetryExhausted      → stop, workloads fail
        cancelled?            → terminate the fresh instance
        await registration
          TIMED_OUT           → workloads fail (observed again next tick)
        record bound workloads

One planning pass runs at a time (planning lock).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from autoscaler.control_plane.policies import PolicyStore
from autoscaler.control_plane.selector import InstanceTypeSelector
from autoscaler.fleet.inventory import NodeInventory
from autoscaler.fleet.launcher import FleetLauncher
from autoscaler.fleet.registrar import NodeRegistrar, RegistrationOutcome
from autoscaler.providers.base import ClusterClient
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.errors import (
    CapacityUnavailableError,
    ConstraintUnsatisfiableError,
    LaunchCancelledError,
    QuotaExceededError,
    RetryExhaustedError,
)
from autoscaler.shared.events import DecisionKind, EventRecorder
from autoscaler.shared.models import (
    Candidate,
    ManagedNode,
    NodePool,
    ProvisioningRequest,
    RequestPhase,
    Resources,
    Workload,
)
from packing_core import pack

logger = logging.getLogger(__name__)

MAX_FALLBACKS: int = 8
"""Alternative offerings carried per planned node."""


# ─────────────────────────────────────────────────────────────────────────────
# Matrix helpers (shared with consolidation)
# ─────────────────────────────────────────────────────────────────────────────

def resource_dimensions(bundles: Sequence[Resources]) -> List[str]:
    """Union of dimensions across bundles, base dimensions first."""
    extended = set()
    for bundle in bundles:
        extended.update(bundle.extended)
    return ["cpu", "memory_gib", "gpu", "pods"] + sorted(extended)


def resource_matrix(bundles: Sequence[Resources], dims: List[str]) -> NDArray[np.float64]:
    matrix = np.zeros((len(bundles), len(dims)), dtype=np.float64)
    for i, bundle in enumerate(bundles):
        for j, dim in enumerate(dims):
            matrix[i, j] = bundle.get(dim)
    return matrix


def tie_break_rank(candidates: Sequence[Candidate]) -> NDArray[np.int64]:
    """Rank used when price efficiency and packed size tie: spot, price, pool weight."""
    order = sorted(
        range(len(candidates)),
        key=lambda i: (
            0 if candidates[i].is_spot else 1,
            candidates[i].price_per_hour,
            -candidates[i].pool_weight,
            i,
        ),
    )
    rank = np.empty(len(candidates), dtype=np.int64)
    for position, idx in enumerate(order):
        rank[idx] = position
    return rank


# ─────────────────────────────────────────────────────────────────────────────
# Plan / result
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class PlannedNode:
    """One node the plan intends to launch, with the workloads riding on it."""
    token: str
    candidate: Candidate
    workloads: List[Workload]
    fallbacks: List[Candidate] = field(default_factory=list)

    @property
    def demand(self) -> Resources:
        return Resources.total([w.requests for w in self.workloads])

    @property
    def options(self) -> List[Candidate]:
        return [self.candidate] + self.fallbacks


@dataclass
class ProvisioningResult:
    request: ProvisioningRequest
    planned: List[PlannedNode] = field(default_factory=list)
    nodes: List[ManagedNode] = field(default_factory=list)
    bound: Dict[str, str] = field(default_factory=dict)

    @property
    def failures(self) -> Dict[str, str]:
        return self.request.failures

    @property
    def offered(self) -> Resources:
        return Resources.total([n.allocatable for n in self.nodes])


class ProvisioningPlanner:

    def __init__(
        self,
        selector: InstanceTypeSelector,
        policies: PolicyStore,
        inventory: NodeInventory,
        launcher: FleetLauncher,
        registrar: NodeRegistrar,
        cluster: ClusterClient,
        settings: Optional[ControllerSettings] = None,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self._selector = selector
        self._policies = policies
        self._inventory = inventory
        self._launcher = launcher
        self._registrar = registrar
        self._cluster = cluster
        self._settings = settings or ControllerSettings()
        self._recorder = recorder if recorder is not None else EventRecorder()
        self._lock = asyncio.Lock()

    # ── Entry point ───────────────────────────────────────────────────────────

    async def provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        async with self._lock:
            result = ProvisioningResult(request=request)
            result.planned = self.plan(request)
            if result.planned:
                await self.execute(result)
            self._finish(request, result)
            return result

    # ── Planning ──────────────────────────────────────────────────────────────

    def plan(self, request: ProvisioningRequest) -> List[PlannedNode]:
        pools = self._policies.node_pools
        remaining = self._headroom(pools)

        groups: Dict[Tuple, List[Workload]] = {}
        for workload in request.workloads:
            reason = self._selector.unsatisfiable_reason(workload, pools)
            if reason is not None:
                error = ConstraintUnsatisfiableError(workload.workload_id, reason)
                self._fail(request, [workload], error.reason, kind=DecisionKind.UNSCHEDULABLE)
                continue
            groups.setdefault(workload.scheduling_key, []).append(workload)
        self._advance(request, RequestPhase.CANDIDATES_RANKED)

        planned: List[PlannedNode] = []
        for workloads in groups.values():
            planned.extend(self._plan_group(request, workloads, pools, remaining))

        if planned:
            self._recorder.record(
                DecisionKind.PLAN_COMPUTED, request.request_id,
                f"{len(planned)} node(s) for {sum(len(p.workloads) for p in planned)} "
                f"workload(s): " + ", ".join(p.candidate.describe() for p in planned),
                hourly_cost=round(sum(p.candidate.price_per_hour for p in planned), 6),
            )
        return planned

    def _plan_group(
        self,
        request: ProvisioningRequest,
        workloads: List[Workload],
        pools: List[NodePool],
        remaining: Dict[str, Resources],
    ) -> List[PlannedNode]:
        candidates = self._candidates_for(workloads, pools, remaining)
        if not candidates:
            self._fail(request, workloads, "no candidate fits within NodePool limits",
                       kind=DecisionKind.UNSCHEDULABLE)
            return []

        dims = resource_dimensions(
            [w.requests for w in workloads] + [c.allocatable for c in candidates]
        )
        demands = resource_matrix([w.requests for w in workloads], dims)
        capacities = resource_matrix([c.allocatable for c in candidates], dims)
        prices = np.array([c.price_per_hour for c in candidates], dtype=np.float64)

        pool_names = sorted(remaining)
        type_groups = np.array(
            [pool_names.index(c.node_pool) if c.node_pool in remaining else -1 for c in candidates],
            dtype=np.int64,
        )
        budgets = None
        if pool_names:
            budgets = resource_matrix([remaining[name] for name in pool_names], dims)
            for row, name in enumerate(pool_names):
                limited = self._policies.node_pool(name).limited_dimensions
                for j, dim in enumerate(dims):
                    if dim not in limited:
                        budgets[row, j] = np.inf

        result = pack(
            demands, capacities, prices,
            type_rank=tie_break_rank(candidates),
            type_groups=type_groups if budgets is not None else None,
            group_budgets=budgets,
        )

        planned: List[PlannedNode] = []
        for b in result.new_bins:
            chosen = candidates[b.type_index]
            riders = [workloads[i] for i in b.items]
            if chosen.node_pool in remaining:
                remaining[chosen.node_pool] = remaining[chosen.node_pool] - chosen.allocatable
            node = PlannedNode(
                token=f"{request.request_id}-{uuid.uuid4().hex[:8]}",
                candidate=chosen,
                workloads=riders,
            )
            node.fallbacks = self._fallbacks(node, candidates, remaining)
            planned.append(node)

        unplaced = [workloads[i] for i in result.unplaced]
        if unplaced:
            self._fail(request, unplaced, "no capacity left within NodePool limits",
                       kind=DecisionKind.UNSCHEDULABLE)
        return planned

    def _candidates_for(
        self,
        workloads: List[Workload],
        pools: List[NodePool],
        remaining: Dict[str, Resources],
    ) -> List[Candidate]:
        group = ProvisioningRequest(workloads=workloads)
        candidates = self._selector.select(group, pools, pool_headroom=remaining)
        if candidates:
            return candidates
        # Mixed shapes (one CPU-heavy, one memory-heavy) can leave no single
        # shape above the per-dimension maximum; fall back to the union of
        # per-workload selections and let the packer size-check each item.
        seen: Dict[Tuple, Candidate] = {}
        for workload in workloads:
            single = ProvisioningRequest(workloads=[workload])
            for candidate in self._selector.select(single, pools, pool_headroom=remaining):
                seen.setdefault((candidate.node_pool,) + candidate.offering_key, candidate)
        total = group.total_demand
        return sorted(seen.values(), key=lambda c: self._selector.rank_key(c, total))

    def _fallbacks(
        self,
        node: PlannedNode,
        candidates: List[Candidate],
        remaining: Dict[str, Resources],
    ) -> List[Candidate]:
        demand = node.demand
        result: List[Candidate] = []
        for candidate in sorted(candidates, key=lambda c: self._selector.rank_key(c, demand)):
            if candidate is node.candidate or not demand.fits_within(candidate.allocatable):
                continue
            headroom = remaining.get(candidate.node_pool)
            pool = self._policies.node_pool(candidate.node_pool)
            if headroom is not None and pool is not None:
                if candidate.node_pool == node.candidate.node_pool:
                    # a fallback takes over the primary's share of the budget
                    headroom = headroom + node.candidate.allocatable
                if not pool.within_headroom(candidate.allocatable, headroom):
                    continue
            result.append(candidate)
            if len(result) >= MAX_FALLBACKS:
                break
        return result

    def _headroom(self, pools: List[NodePool]) -> Dict[str, Resources]:
        """Remaining limit per pool that has limits."""
        return {
            pool.name: pool.limits - self._inventory.pool_usage(pool.name)
            for pool in pools if pool.limits is not None
        }

    # ── Execution ─────────────────────────────────────────────────────────────

    async def execute(self, result: ProvisioningResult) -> None:
        request = result.request
        self._advance(request, RequestPhase.LAUNCH_ISSUED)
        for node in result.planned:
            self._inventory.nominate(node.token, [w.workload_id for w in node.workloads])

        outcomes = await asyncio.gather(
            *(self._realise(request, node) for node in result.planned)
        )
        for planned, managed in zip(result.planned, outcomes):
            if managed is None:
                continue
            result.nodes.append(managed)
            for workload in planned.workloads:
                result.bound[workload.workload_id] = managed.provider_id

    async def _realise(self, request: ProvisioningRequest, planned: PlannedNode) -> Optional[ManagedNode]:
        try:
            return await self._launch_with_fallback(request, planned)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("planned node %s failed", planned.token)
            self._fail(request, planned.workloads, f"launch failed: {exc}")
            return None
        finally:
            self._inventory.release(planned.token)

    async def _launch_with_fallback(
        self,
        request: ProvisioningRequest,
        planned: PlannedNode,
    ) -> Optional[ManagedNode]:
        options = planned.options
        try:
            for attempt, candidate in enumerate(options):
                await self._raise_if_scheduled_elsewhere(planned, "before launch")

                try:
                    node = await self._launcher.launch(candidate, f"{planned.token}-{attempt}")
                except CapacityUnavailableError as exc:
                    self._recorder.record(
                        DecisionKind.LAUNCH_FALLBACK, planned.token,
                        f"{candidate.describe()} unavailable ({exc.reason})",
                        level=logging.WARNING, remaining_options=len(options) - attempt - 1,
                    )
                    continue
                except (QuotaExceededError, RetryExhaustedError) as exc:
                    self._fail(request, planned.workloads, exc.reason)
                    self._recorder.record(
                        DecisionKind.LAUNCH_FAILED, planned.token, exc.reason,
                        level=logging.WARNING, offering="/".join(candidate.offering_key),
                    )
                    return None

                if request.phase == RequestPhase.LAUNCH_ISSUED:
                    self._advance(request, RequestPhase.AWAITING_REGISTRATION)

                try:
                    await self._raise_if_scheduled_elsewhere(planned, "during launch")
                except LaunchCancelledError:
                    async with self._inventory.lock(node.provider_id):
                        await self._launcher.terminate(node, "launch cancelled")
                    raise

                return await self._register_and_bind(request, planned, node)
        except LaunchCancelledError as exc:
            self._recorder.record(DecisionKind.LAUNCH_CANCELLED, planned.token, exc.reason)
            return None

        self._fail(
            request, planned.workloads,
            f"capacity unavailable for all {len(options)} offering(s)",
        )
        self._recorder.record(
            DecisionKind.LAUNCH_FAILED, planned.token,
            "every fallback offering was unavailable", level=logging.WARNING,
        )
        return None

    async def _register_and_bind(
        self,
        request: ProvisioningRequest,
        planned: PlannedNode,
        node: ManagedNode,
    ) -> Optional[ManagedNode]:
        outcome = await self._registrar.await_registration(node)
        if outcome != RegistrationOutcome.REGISTERED:
            self._fail(request, planned.workloads, node.failure_reason or "registration timed out")
            return None

        node.bound_workloads = [w.workload_id for w in planned.workloads]
        self._recorder.record(
            DecisionKind.BOUND, node.provider_id,
            f"{len(node.bound_workloads)} workload(s) bound to {node.node_name}",
            workloads=node.bound_workloads,
        )
        return node

    async def _raise_if_scheduled_elsewhere(self, planned: PlannedNode, stage: str) -> None:
        for workload in planned.workloads:
            if await self._cluster.is_pending(workload.workload_id):
                return
        raise LaunchCancelledError(f"every workload was scheduled elsewhere {stage}")

    # ── Bookkeeping ───────────────────────────────────────────────────────────

    def _advance(self, request: ProvisioningRequest, phase: RequestPhase) -> None:
        logger.debug("%s: %s → %s", request.request_id, request.phase.value, phase.value)
        request.phase = phase

    def _fail(
        self,
        request: ProvisioningRequest,
        workloads: List[Workload],
        reason: str,
        kind: Optional[DecisionKind] = None,
    ) -> None:
        for workload in workloads:
            request.failures[workload.workload_id] = reason
            if kind is not None:
                self._recorder.record(kind, workload.workload_id, reason, level=logging.WARNING)

    def _finish(self, request: ProvisioningRequest, result: ProvisioningResult) -> None:
        self._advance(request, RequestPhase.BOUND if result.bound else RequestPhase.FAILED)
        logger.info(
            "%s: %d bound, %d failed, %d node(s), $%.4f/h",
            request.request_id, len(result.bound), len(request.failures),
            len(result.nodes), sum(n.price_per_hour for n in result.nodes),
        )
