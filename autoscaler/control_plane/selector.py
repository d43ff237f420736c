"""
autoscaler/control_plane/selector.py
────────────────────────────────────
InstanceTypeSelector: (ProvisioningRequest, eligible NodePools) → ranked
Candidates.

What this is
─────────────
The selector is pure: it reads the catalog and the policies and never
calls the provider. It runs in two stages.

  Stage 1 — hard constraints (a candidate failing any is dropped)
    • NodeClass allows the shape, the capacity type and the zone
    • offering not marked unavailable
    • NodePool requirements match the offering labels (arch, zone,
      capacity type, instance type)
    • every workload's node selector and requirements match the labels the
      node would carry
    • every workload tolerates the NodePool taints
    • allocatable is not strictly smaller than the largest single workload
      on any dimension
    • fits the NodePool's remaining limit headroom, when one is given

  Stage 2 — ranking (lower key first)
    1. estimated cost to serve the batch:
           price / min(1, min_d allocatable_d / total_demand_d)
       A node that absorbs the whole batch costs its price; a node that
       absorbs a third of it costs three times its price.
    2. spot before on-demand
    3. lowest absolute price
    4. heavier NodePool weight
    5. shape name, zone (determinism)

Standalone use:
    selector = InstanceTypeSelector(catalog, policies)
    ranked = selector.select(request, policies.node_pools)
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from autoscaler.catalog.pricing import InstanceCatalog
from autoscaler.control_plane.policies import PolicyStore
from autoscaler.shared.models import (
    LABEL_NODEPOOL,
    Candidate,
    NodePool,
    ProvisioningRequest,
    Resources,
    Workload,
)

logger = logging.getLogger(__name__)


class InstanceTypeSelector:
    """
    Stateless apart from its read-only references to catalog and policies.
    One instance is shared by the planner and the consolidation engine.
    """

    def __init__(self, catalog: InstanceCatalog, policies: PolicyStore) -> None:
        self._catalog = catalog
        self._policies = policies

    # ── Candidate generation ──────────────────────────────────────────────────

    def candidates_for_pool(self, pool: NodePool) -> List[Candidate]:
        """Every launchable (shape, offering) of a pool, before workload filtering."""
        node_class = self._policies.node_class(pool.node_class)
        if node_class is None:
            logger.warning("NodePool %s references missing NodeClass %s",
                           pool.name, pool.node_class)
            return []

        result: List[Candidate] = []
        for shape in self._catalog.shapes_for(node_class):
            allocatable = self._catalog.allocatable(shape, node_class)
            if allocatable.cpu <= 0 or allocatable.memory_gib <= 0:
                continue
            for offering in self._catalog.offerings_for(shape, node_class):
                labels = shape.labels_for(offering)
                if not all(req.matches(labels) for req in pool.requirements):
                    continue
                labels.update(pool.labels)
                labels[LABEL_NODEPOOL] = pool.name
                result.append(Candidate(
                    shape=shape.name,
                    architecture=shape.architecture,
                    node_class=node_class.name,
                    node_pool=pool.name,
                    zone=offering.zone,
                    capacity_type=offering.capacity_type,
                    price_per_hour=offering.price_per_hour,
                    allocatable=allocatable,
                    labels=labels,
                    taints=list(pool.taints),
                    pool_weight=pool.weight,
                ))
        return result

    # ── Hard constraints ──────────────────────────────────────────────────────

    @staticmethod
    def compatible(workload: Workload, candidate: Candidate) -> bool:
        """Labels and taints only; size is checked separately."""
        return (
            workload.accepts_labels(candidate.labels)
            and workload.tolerates_all(candidate.taints)
        )

    @staticmethod
    def large_enough(demand: Resources, candidate: Candidate) -> bool:
        return demand.fits_within(candidate.allocatable)

    def unsatisfiable_reason(
        self,
        workload: Workload,
        node_pools: List[NodePool],
    ) -> Optional[str]:
        """
        None if at least one candidate of the given pools can host the
        workload on its own; otherwise the most specific reason why not.
        """
        candidates = [c for pool in node_pools for c in self.candidates_for_pool(pool)]
        if not candidates:
            return "no launchable offerings in any eligible NodePool"

        label_ok = [c for c in candidates if workload.accepts_labels(c.labels)]
        if not label_ok:
            return (
                "no NodePool offers nodes matching node selector "
                f"{workload.node_selector} / requirements "
                f"{[r.model_dump(mode='json') for r in workload.requirements]}"
            )
        taint_ok = [c for c in label_ok if workload.tolerates_all(c.taints)]
        if not taint_ok:
            return "workload does not tolerate the taints of any matching NodePool"
        if not any(self.large_enough(workload.requests, c) for c in taint_ok):
            largest = max(taint_ok, key=lambda c: (c.allocatable.cpu, c.allocatable.memory_gib))
            over = workload.requests.exceeds_any(largest.allocatable)
            return (
                f"requests exceed every eligible shape (largest {largest.shape} "
                f"short on {', '.join(over) or 'capacity'})"
            )
        return None

    # ── Selection ─────────────────────────────────────────────────────────────

    def select(
        self,
        request: ProvisioningRequest,
        node_pools: List[NodePool],
        pool_headroom: Optional[Dict[str, Resources]] = None,
    ) -> List[Candidate]:
        """
        Rank every candidate that can host any single workload of the batch
        and is compatible with all of them.

        Args:
            request:       The batch. All workloads are assumed to share
                           hard constraints (the planner groups them first).
            node_pools:    Eligible pools.
            pool_headroom: Remaining limit per pool name. A candidate whose
                           allocatable exceeds its pool's headroom is dropped.

        Returns:
            Candidates, best first. Empty list = nothing satisfies the batch.
        """
        if not request.workloads:
            return []
        largest = request.largest_demand
        total = request.total_demand

        eligible: List[Candidate] = []
        for pool in node_pools:
            headroom = (pool_headroom or {}).get(pool.name)
            for candidate in self.candidates_for_pool(pool):
                if not all(self.compatible(w, candidate) for w in request.workloads):
                    continue
                if not self.large_enough(largest, candidate):
                    continue
                if headroom is not None and not pool.within_headroom(candidate.allocatable, headroom):
                    continue
                eligible.append(candidate)

        eligible.sort(key=lambda c: self.rank_key(c, total))
        logger.debug("select: %d candidate(s) for %s", len(eligible), request.request_id)
        return eligible

    @staticmethod
    def rank_key(candidate: Candidate, total_demand: Resources) -> Tuple:
        fraction = 1.0
        for dim in total_demand.dimensions():
            want = total_demand.get(dim)
            if want > 0:
                fraction = min(fraction, candidate.allocatable.get(dim) / want)
        serve_cost = candidate.price_per_hour / fraction if fraction > 0 else float("inf")
        return (
            round(serve_cost, 9),
            0 if candidate.is_spot else 1,
            candidate.price_per_hour,
            -candidate.pool_weight,
            candidate.shape,
            candidate.zone,
        )
