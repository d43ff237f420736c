"""
autoscaler/control_plane/consolidation.py
─────────────────────────────────────────
ConsolidationEngine: find underused nodes and propose cheaper layouts.

Runs on a bounded cadence (`consolidation_interval`), never per workload
event. One pass:

  1. Snapshot every ready, undrained node and the workloads on it.
  2. Keep the nodes worth touching:
       • pool exists, consolidation enabled, voluntary disruption budget
         (max_disrupting_nodes) not used up
       • utilisation (dominant share) below the pool's threshold, or the
         controller-wide `consolidation_utilization_threshold`
       • registered longer ago than `consolidation_cooldown`
       • every workload evictable (not do-not-disrupt, budget left)
  3. Emptiest first, try in order:
       delete   — every workload repacks into the spare capacity of the
                  other nodes (packing_core with existing bins only)
       replace  — one strictly cheaper candidate from the same pool hosts
                  all of the node's workloads
  4. Each accepted proposal updates the simulated cluster before the next
     node is examined: moved workloads consume the receivers' spare
     capacity, deleted nodes stop being receivers. Proposals within one
     pass therefore never double-book capacity and never strand a workload.

Proposals become CONSOLIDATION DrainTasks with a deadline of
now + `consolidation_grace_period` and the node's current workload ids, so
the drain aborts if anything new lands before it runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from autoscaler.control_plane.planner import resource_dimensions, resource_matrix
from autoscaler.control_plane.policies import PolicyStore
from autoscaler.control_plane.selector import InstanceTypeSelector
from autoscaler.fleet.inventory import NodeInventory
from autoscaler.providers.base import ClusterClient
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.events import DecisionKind, EventRecorder
from autoscaler.shared.models import (
    Candidate,
    DrainReason,
    DrainTask,
    ManagedNode,
    ProvisioningRequest,
    Resources,
    Workload,
    utcnow,
)
from packing_core import pack

logger = logging.getLogger(__name__)


@dataclass
class NodeSnapshot:
    node: ManagedNode
    workloads: List[Workload] = field(default_factory=list)

    @property
    def used(self) -> Resources:
        return Resources.total([w.requests for w in self.workloads])

    @property
    def residual(self) -> Resources:
        return self.node.allocatable - self.used

    @property
    def utilization(self) -> float:
        return self.used.dominant_share(self.node.allocatable)

    def accepts(self, workload: Workload) -> bool:
        return (
            workload.accepts_labels(self.node.labels)
            and workload.tolerates_all(self.node.taints)
        )


class ConsolidationEngine:

    def __init__(
        self,
        selector: InstanceTypeSelector,
        policies: PolicyStore,
        inventory: NodeInventory,
        cluster: ClusterClient,
        settings: Optional[ControllerSettings] = None,
        recorder: Optional[EventRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._selector = selector
        self._policies = policies
        self._inventory = inventory
        self._cluster = cluster
        self._settings = settings or ControllerSettings()
        self._recorder = recorder if recorder is not None else EventRecorder()
        self._clock = clock

    async def evaluate(self, now: Optional[datetime] = None) -> List[DrainTask]:
        """One consolidation pass. Returns the drain tasks submitted."""
        now = now or self._clock()
        snapshots: Dict[str, NodeSnapshot] = {}
        for node in self._inventory.ready_nodes():
            if self._inventory.drain_for(node.provider_id) is not None or not node.node_name:
                continue
            workloads = await self._cluster.list_workloads_on(node.node_name)
            snapshots[node.provider_id] = NodeSnapshot(node=node, workloads=list(workloads))

        tasks = self.propose(snapshots, now)
        submitted = [self._inventory.submit_drain(task) for task in tasks]
        if submitted:
            logger.info("consolidation: %d drain(s) proposed", len(submitted))
        return submitted

    def propose(self, snapshots: Dict[str, NodeSnapshot], now: datetime) -> List[DrainTask]:
        """Pure decision over a snapshot. Mutates the snapshots as it simulates."""
        removed: Set[str] = set()
        received: Set[str] = set()
        disrupting: Dict[str, int] = {}
        tasks: List[DrainTask] = []

        ordered = sorted(
            (s for s in snapshots.values() if self._eligible(s, now)),
            key=lambda s: (s.utilization, -s.node.price_per_hour, s.node.provider_id),
        )
        for snapshot in ordered:
            node = snapshot.node
            if node.provider_id in received:
                continue
            pool = self._policies.node_pool(node.node_pool)
            if pool is None:
                continue
            budget = pool.max_disrupting_nodes
            in_use = self._inventory.disrupting_count(pool.name) + disrupting.get(pool.name, 0)
            if budget is not None and in_use >= budget:
                continue

            receivers = [
                s for pid, s in snapshots.items()
                if pid != node.provider_id and pid not in removed
            ]
            replacement: Optional[Candidate] = None
            placement = self._repack(snapshot, receivers)
            if placement is None:
                replacement = self._cheaper_replacement(snapshot)
                if replacement is None:
                    continue
            else:
                for receiver, moved in placement:
                    receiver.workloads.extend(moved)
                    received.add(receiver.node.provider_id)

            removed.add(node.provider_id)
            disrupting[pool.name] = disrupting.get(pool.name, 0) + 1
            tasks.append(DrainTask(
                node_id=node.provider_id,
                reason=DrainReason.CONSOLIDATION,
                deadline=now + timedelta(seconds=self._settings.consolidation_grace_period),
                replacement=replacement,
                expected_workloads=[w.workload_id for w in snapshot.workloads],
            ))
            action = f"replace with {replacement.describe()}" if replacement else "delete"
            self._recorder.record(
                DecisionKind.CONSOLIDATION_PROPOSED, node.provider_id,
                f"{action} (utilisation {snapshot.utilization:.0%}, "
                f"{len(snapshot.workloads)} workload(s))",
                saving_per_hour=round(
                    node.price_per_hour - (replacement.price_per_hour if replacement else 0.0), 6
                ),
            )
        return tasks

    # ── Filters ───────────────────────────────────────────────────────────────

    def _eligible(self, snapshot: NodeSnapshot, now: datetime) -> bool:
        node = snapshot.node
        pool = self._policies.node_pool(node.node_pool)
        if pool is None or not pool.consolidation.enabled:
            return False
        threshold = (
            pool.consolidation.utilization_threshold
            or self._settings.consolidation_utilization_threshold
        )
        if snapshot.utilization >= threshold:
            return False
        since = node.registered_at or node.launched_at
        if (now - since).total_seconds() < self._settings.consolidation_cooldown:
            return False
        return all(w.evictable for w in snapshot.workloads)

    # ── Delete ────────────────────────────────────────────────────────────────

    def _repack(
        self,
        snapshot: NodeSnapshot,
        receivers: List[NodeSnapshot],
    ) -> Optional[List[Tuple[NodeSnapshot, List[Workload]]]]:
        """
        Placement of the node's workloads onto receivers' spare capacity,
        as (receiver, moved workloads) pairs, or None if any workload is
        left over.
        """
        workloads = snapshot.workloads
        if not workloads:
            return []
        if not receivers:
            return None

        residuals = [r.residual for r in receivers]
        dims = resource_dimensions([w.requests for w in workloads] + residuals)
        result = pack(
            resource_matrix([w.requests for w in workloads], dims),
            existing=resource_matrix(residuals, dims),
            existing_compat=[[r.accepts(w) for r in receivers] for w in workloads],
        )
        if result.unplaced:
            return None

        moved: Dict[int, List[Workload]] = {}
        for item, bin_pos in result.assignments.items():
            k = result.bins[bin_pos].existing_index
            moved.setdefault(k, []).append(workloads[item])
        return [(receivers[k], moved[k]) for k in sorted(moved)]

    # ── Replace ───────────────────────────────────────────────────────────────

    def _cheaper_replacement(self, snapshot: NodeSnapshot) -> Optional[Candidate]:
        node = snapshot.node
        pool = self._policies.node_pool(node.node_pool)
        if pool is None or not snapshot.workloads:
            return None

        headroom = None
        if pool.limits is not None:
            # the replaced node's capacity is released once the drain completes
            headroom = {
                pool.name: pool.limits - self._inventory.pool_usage(pool.name) + node.allocatable
            }
        request = ProvisioningRequest(workloads=snapshot.workloads)
        demand = request.total_demand
        options = [
            c for c in self._selector.select(request, [pool], pool_headroom=headroom)
            if c.price_per_hour < node.price_per_hour and demand.fits_within(c.allocatable)
        ]
        if not options:
            return None
        return min(options, key=lambda c: (c.price_per_hour, 0 if c.is_spot else 1, c.shape))
