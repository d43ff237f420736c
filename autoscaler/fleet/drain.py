"""
autoscaler/fleet/drain.py
─────────────────────────
DrainCoordinator: the teardown path for consolidation, interruption and
manual drains.

Per task, holding the node's inventory lock:

    1. cordon                       (no new workloads land)
    2. launch + register replacement (consolidation "replace" only; an
       upgrade to interruption stops waiting for it)
    3. evict, repeatedly, until the node is empty
    4. terminate

The task is re-read before every eviction. An interruption notice arriving
mid-drain upgrades the task in place (NodeInventory.submit_drain), so the
running worker switches to interruption semantics on its next step:

  consolidation → evict lowest priority first. Abort and uncordon when a
                  workload the proposal did not account for lands on the
                  node, when a workload is do-not-disrupt, or when the
                  deadline passes. Voluntary drains never force.
  manual        → same order, no invalidation. At the deadline the node is
                  terminated anyway and the task marked degraded.
  interruption  → workloads with remaining disruption budget first,
                  exhausted budgets last. At the deadline the node is
                  terminated anyway and the task marked degraded
                  (DrainDeadlineExceededError).
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set

from autoscaler.fleet.inventory import NodeInventory
from autoscaler.fleet.launcher import FleetLauncher
from autoscaler.fleet.registrar import NodeRegistrar, RegistrationOutcome
from autoscaler.providers.base import ClusterClient
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.errors import AutoscalerError, DrainDeadlineExceededError
from autoscaler.shared.events import DecisionKind, EventRecorder
from autoscaler.shared.models import (
    Candidate,
    DrainReason,
    DrainState,
    DrainTask,
    ManagedNode,
    NodePhase,
    Workload,
    utcnow,
)

logger = logging.getLogger(__name__)


def eviction_order(reason: DrainReason, workloads: List[Workload]) -> List[Workload]:
    """Order in which a drain of `reason` evicts `workloads`."""
    if reason == DrainReason.INTERRUPTION:
        # exhausted budgets would be refused anyway; try them last
        return sorted(
            workloads,
            key=lambda w: (w.disruption_budget == 0, w.priority, w.workload_id),
        )
    return sorted(workloads, key=lambda w: (w.priority, w.workload_id))


class DrainCoordinator:

    def __init__(
        self,
        cluster: ClusterClient,
        inventory: NodeInventory,
        launcher: FleetLauncher,
        registrar: NodeRegistrar,
        settings: Optional[ControllerSettings] = None,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self._cluster = cluster
        self._inventory = inventory
        self._launcher = launcher
        self._registrar = registrar
        self._settings = settings or ControllerSettings()
        self._recorder = recorder if recorder is not None else EventRecorder()
        self._detached: Set[asyncio.Future] = set()

    # ── Worker loop ───────────────────────────────────────────────────────────

    async def run_worker(self, stop: asyncio.Event, poll: float = 1.0) -> None:
        """Serve pending drain tasks, highest priority first, until `stop` is set."""
        while not stop.is_set():
            task = await self._inventory.next_drain(timeout=poll)
            if task is None:
                continue
            try:
                await self.execute(task)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("drain %s on %s failed", task.task_id, task.node_id)
                task.state = DrainState.ABORTED
                task.failure_reason = str(exc)

    # ── One task ──────────────────────────────────────────────────────────────

    async def execute(self, task: DrainTask) -> DrainTask:
        node = self._inventory.get(task.node_id)
        if node is None:
            task.state = DrainState.ABORTED
            task.failure_reason = "node no longer managed"
            return task

        async with self._inventory.lock(node.provider_id):
            if not task.is_live:
                return task
            task.state = DrainState.DRAINING
            previous_phase = node.phase
            self._inventory.set_phase(node.provider_id, NodePhase.DRAINING)
            self._recorder.record(
                DecisionKind.DRAIN_STARTED, node.provider_id,
                f"{task.reason.value} drain started (deadline {task.deadline.isoformat()})",
                task=task.task_id, priority=task.priority,
            )
            if node.node_name:
                await self._cluster.cordon(node.node_name)

            if task.replacement is not None and task.reason == DrainReason.CONSOLIDATION:
                problem = await self._bring_up_replacement(task)
                if problem is not None and task.reason == DrainReason.CONSOLIDATION:
                    await self._abort(task, node, previous_phase, problem)
                    return task

            if not await self._evict_all(task, node, previous_phase):
                return task

            await self._launcher.terminate(node, f"{task.reason.value} drain")
            task.state = DrainState.TERMINATED
            return task

    async def _bring_up_replacement(self, task: DrainTask) -> Optional[str]:
        """
        Launch and register the replacement. Returns a failure reason or None.

        An interruption upgrade stops the wait: the drain goes straight to
        eviction and the replacement finishes registering on its own.
        """
        bring_up = asyncio.ensure_future(self._launch_replacement(task, task.replacement))
        upgraded = asyncio.ensure_future(self._inventory.upgrade_signal(task.node_id).wait())
        try:
            await asyncio.wait({bring_up, upgraded}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            bring_up.cancel()
            raise
        finally:
            upgraded.cancel()

        if bring_up.done():
            return bring_up.result()
        logger.info("drain %s upgraded to %s while its replacement was starting; "
                    "evicting now", task.task_id, task.reason.value)
        self._detached.add(bring_up)
        bring_up.add_done_callback(self._replacement_settled)
        return None

    async def _launch_replacement(self, task: DrainTask, candidate: Candidate) -> Optional[str]:
        try:
            replacement = await self._launcher.launch(
                candidate, request_token=f"{task.task_id}-replacement",
            )
        except AutoscalerError as exc:
            return f"replacement launch failed: {exc.reason}"
        outcome = await self._registrar.await_registration(replacement)
        if outcome != RegistrationOutcome.REGISTERED:
            return "replacement did not register"
        return None

    def _replacement_settled(self, bring_up: "asyncio.Future[Optional[str]]") -> None:
        self._detached.discard(bring_up)
        if bring_up.cancelled():
            return
        if bring_up.exception() is not None:
            logger.error("detached replacement failed", exc_info=bring_up.exception())
        elif bring_up.result() is not None:
            logger.warning("detached replacement: %s", bring_up.result())

    async def _evict_all(self, task: DrainTask, node: ManagedNode, previous_phase: NodePhase) -> bool:
        """
        Evict until the node is empty. Returns False if the task was aborted.
        """
        while True:
            workloads = (
                await self._cluster.list_workloads_on(node.node_name)
                if node.node_name else []
            )
            if not workloads:
                return True

            problem = self._invalidated(task, workloads)
            if problem is not None:
                await self._abort(task, node, previous_phase, problem)
                return False

            if self._seconds_left(task) <= 0:
                if task.reason == DrainReason.CONSOLIDATION:
                    await self._abort(task, node, previous_phase, "deadline passed")
                    return False
                error = DrainDeadlineExceededError(node.provider_id, len(workloads))
                task.degraded = True
                task.failure_reason = error.reason
                self._recorder.record(
                    DecisionKind.DRAIN_DEGRADED, node.provider_id, error.reason,
                    level=logging.WARNING,
                    remaining=[w.workload_id for w in workloads],
                )
                return True

            for workload in eviction_order(task.reason, workloads):
                # the task may have been upgraded while the last eviction ran
                if self._seconds_left(task) <= 0:
                    break
                if await self._cluster.evict(workload.workload_id):
                    task.evicted.append(workload.workload_id)
                    logger.info("drain %s: evicted %s", task.task_id, workload.workload_id)
                else:
                    logger.debug("drain %s: eviction of %s refused",
                                 task.task_id, workload.workload_id)

            remaining = (
                await self._cluster.list_workloads_on(node.node_name)
                if node.node_name else []
            )
            if remaining:
                pause = min(self._settings.eviction_retry_interval,
                            max(self._seconds_left(task), 0.0))
                await asyncio.sleep(pause)

    @staticmethod
    def _invalidated(task: DrainTask, workloads: List[Workload]) -> Optional[str]:
        if task.reason != DrainReason.CONSOLIDATION:
            return None
        if any(w.do_not_disrupt for w in workloads):
            return "a do-not-disrupt workload is on the node"
        if task.expected_workloads is not None:
            expected = set(task.expected_workloads)
            arrived = [w.workload_id for w in workloads if w.workload_id not in expected]
            if arrived:
                return f"new workloads landed: {', '.join(sorted(arrived))}"
        return None

    @staticmethod
    def _seconds_left(task: DrainTask) -> float:
        return (task.deadline - utcnow()).total_seconds()

    async def _abort(
        self,
        task: DrainTask,
        node: ManagedNode,
        previous_phase: NodePhase,
        reason: str,
    ) -> None:
        if node.node_name:
            await self._cluster.uncordon(node.node_name)
        if node.provider_id in self._inventory:
            self._inventory.set_phase(node.provider_id, previous_phase)
        task.state = DrainState.ABORTED
        task.failure_reason = reason
        self._recorder.record(
            DecisionKind.DRAIN_ABORTED, node.provider_id,
            f"{task.reason.value} drain aborted: {reason}",
            task=task.task_id,
        )
