"""
autoscaler/control_plane/controller.py
──────────────────────────────────────
AutoscalerController: wires every component together and runs the loops.

Loops (one asyncio task each)
──────────────────────────────
  provisioning   WorkloadObserver.batches() → ProvisioningPlanner.provision()
  consolidation  ConsolidationEngine.evaluate() every consolidation_interval
  interruption   InterruptionHandler.run()
  catalog        InstanceCatalog.refresh_if_stale() every catalog_refresh_interval
  drain × N      DrainCoordinator.run_worker(), N = drain_workers

Every unit of work is isolated: an exception while handling one batch, one
consolidation pass or one drain is logged with logger.exception and the
loop carries on. The controller never crashes on a single workload or node.

Each loop body is also exposed as a *_once() coroutine so callers (and
tests) can step the controller deterministically without starting tasks.

Operator surface
─────────────────
    drain_node(provider_id)  → {"status": "QUEUED"|"REJECTED", ...}
    unschedulable            → workload id → last failure reason
    get_status()             → counts for dashboards
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from autoscaler.catalog.pricing import InstanceCatalog
from autoscaler.control_plane.consolidation import ConsolidationEngine
from autoscaler.control_plane.planner import ProvisioningPlanner, ProvisioningResult
from autoscaler.control_plane.policies import PolicyStore
from autoscaler.control_plane.selector import InstanceTypeSelector
from autoscaler.fleet.drain import DrainCoordinator
from autoscaler.fleet.inventory import NodeInventory
from autoscaler.fleet.launcher import FleetLauncher
from autoscaler.fleet.registrar import NodeRegistrar
from autoscaler.providers.base import CloudProvider, ClusterClient, InterruptionSource
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.events import EventRecorder
from autoscaler.shared.models import (
    DrainReason,
    DrainTask,
    NodePhase,
    ProvisioningRequest,
    utcnow,
)
from autoscaler.watchers.interruption import InterruptionHandler
from autoscaler.watchers.observer import WorkloadObserver

logger = logging.getLogger(__name__)


class AutoscalerController:
    """
    Central control loop of the node lifecycle autoscaler.

    Attributes:
        inventory     : NodeInventory      — owned nodes and drain queue
        catalog       : InstanceCatalog    — shapes, offerings, unavailable cache
        policies      : PolicyStore        — NodeClasses and NodePools
        recorder      : EventRecorder      — decision records
        unschedulable : Dict[str, str]     — workload id → last failure reason
    """

    def __init__(
        self,
        provider: CloudProvider,
        cluster: ClusterClient,
        interruptions: Optional[InterruptionSource] = None,
        policies: Optional[PolicyStore] = None,
        settings: Optional[ControllerSettings] = None,
        catalog: Optional[InstanceCatalog] = None,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self.settings = settings or ControllerSettings()
        self.policies = policies or PolicyStore()
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.catalog = catalog or InstanceCatalog(provider, self.settings)
        self.inventory = NodeInventory()
        self.unschedulable: Dict[str, str] = {}

        self._cluster = cluster
        self.selector = InstanceTypeSelector(self.catalog, self.policies)
        self.launcher = FleetLauncher(
            provider, self.inventory, self.policies, self.catalog, self.settings, self.recorder,
        )
        self.registrar = NodeRegistrar(
            cluster, self.inventory, self.launcher, self.settings, self.recorder,
        )
        self.planner = ProvisioningPlanner(
            self.selector, self.policies, self.inventory, self.launcher,
            self.registrar, cluster, self.settings, self.recorder,
        )
        self.consolidation = ConsolidationEngine(
            self.selector, self.policies, self.inventory, cluster,
            self.settings, self.recorder,
        )
        self.drains = DrainCoordinator(
            cluster, self.inventory, self.launcher, self.registrar,
            self.settings, self.recorder,
        )
        self.observer = WorkloadObserver(cluster, self.inventory, self.settings)
        self.interruptions = (
            InterruptionHandler(interruptions, self.inventory, self.catalog,
                                self.settings, self.recorder)
            if interruptions is not None else None
        )

        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    # ── Single steps ──────────────────────────────────────────────────────────

    async def reconcile_once(self) -> Optional[ProvisioningResult]:
        """Observe once and provision for whatever is unschedulable."""
        await self.catalog.refresh_if_stale()
        await self._forget_resolved()
        request = await self.observer.observe_once()
        if request is None:
            return None
        return await self._provision(request)

    async def _provision(self, request: ProvisioningRequest) -> Optional[ProvisioningResult]:
        try:
            result = await self.planner.provision(request)
        except Exception:
            logger.exception("provisioning pass %s failed", request.request_id)
            return None
        for workload_id in result.bound:
            self.unschedulable.pop(workload_id, None)
        self.unschedulable.update(result.failures)
        return result

    async def _forget_resolved(self) -> None:
        """Drop reasons for workloads that are no longer waiting (placed or deleted)."""
        if not self.unschedulable:
            return
        try:
            waiting = {w.workload_id for w in await self._cluster.list_unschedulable()}
        except Exception:
            logger.exception("listing unschedulable workloads failed")
            return
        for workload_id in [w for w in self.unschedulable if w not in waiting]:
            del self.unschedulable[workload_id]

    async def consolidate_once(self) -> List[DrainTask]:
        try:
            return await self.consolidation.evaluate()
        except Exception:
            logger.exception("consolidation pass failed")
            return []

    async def handle_interruptions_once(self) -> List[DrainTask]:
        if self.interruptions is None:
            return []
        return await self.interruptions.poll_once()

    async def drain_pending(self, max_tasks: Optional[int] = None) -> List[DrainTask]:
        """Execute queued drain tasks inline, highest priority first."""
        done: List[DrainTask] = []
        while max_tasks is None or len(done) < max_tasks:
            task = self.inventory.pop_drain()
            if task is None:
                break
            try:
                await self.drains.execute(task)
            except Exception:
                logger.exception("drain %s failed", task.task_id)
            done.append(task)
        return done

    # ── Operator commands ─────────────────────────────────────────────────────

    def drain_node(self, provider_id: str, deadline_s: Optional[float] = None) -> Dict[str, str]:
        """
        Manual drain. Terminates the node once evacuated, or at the deadline
        (default: consolidation_grace_period) regardless.
        """
        node = self.inventory.get(provider_id)
        if node is None or node.is_terminal:
            return {
                "status": "REJECTED",
                "node_id": provider_id,
                "message": f"node {provider_id} is not managed",
            }
        window = self.settings.consolidation_grace_period if deadline_s is None else deadline_s
        task = self.inventory.submit_drain(DrainTask(
            node_id=provider_id,
            reason=DrainReason.MANUAL,
            deadline=utcnow() + timedelta(seconds=window),
        ))
        return {
            "status": "QUEUED",
            "node_id": provider_id,
            "task_id": task.task_id,
            "message": f"{task.reason.value} drain queued (priority {task.priority})",
        }

    def get_status(self) -> Dict[str, object]:
        suspects = self.inventory.suspects()
        phases = {phase.value: 0 for phase in NodePhase}
        for node in self.inventory.nodes():
            if node.phase != NodePhase.SUSPECT:
                phases[node.phase.value] += 1
        # suspect nodes are torn down; the ledger keeps them visible
        phases[NodePhase.SUSPECT.value] = len(suspects)
        return {
            "nodes": phases,
            "hourly_cost": round(sum(
                n.price_per_hour for n in self.inventory.nodes() if not n.is_terminal
            ), 6),
            "live_drains": len(self.inventory.live_drains()),
            "unschedulable": len(self.unschedulable),
            "unavailable_offerings": len(self.catalog.unavailable),
            "suspect_nodes": suspects,
        }

    # ── Loops ─────────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Run every loop until stop() is called."""
        self._stop.clear()
        await self.catalog.refresh_if_stale()
        self._tasks = [
            asyncio.create_task(self._provisioning_loop(), name="provisioning"),
            asyncio.create_task(self._consolidation_loop(), name="consolidation"),
            asyncio.create_task(self._catalog_loop(), name="catalog"),
        ]
        if self.interruptions is not None:
            self._tasks.append(
                asyncio.create_task(self.interruptions.run(self._stop), name="interruption")
            )
        for i in range(self.settings.drain_workers):
            self._tasks.append(asyncio.create_task(
                self.drains.run_worker(self._stop),
                name=f"drain-{i}",
            ))
        logger.info("controller started with %d loop(s)", len(self._tasks))
        try:
            await self._stop.wait()
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
            logger.info("controller stopped")

    def stop(self) -> None:
        self._stop.set()

    async def _provisioning_loop(self) -> None:
        async for request in self.observer.batches(self._stop):
            await self._forget_resolved()
            await self._provision(request)

    async def _consolidation_loop(self) -> None:
        while not self._stop.is_set():
            await self._sleep(self.settings.consolidation_interval)
            await self._forget_resolved()
            await self.consolidate_once()

    async def _catalog_loop(self) -> None:
        while not self._stop.is_set():
            await self._sleep(self.settings.catalog_refresh_interval)
            try:
                await self.catalog.refresh_if_stale()
            except Exception:
                logger.exception("catalog refresh failed")

    async def _sleep(self, seconds: float) -> None:
        """Sleep, but wake early on stop()."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
