"""
autoscaler/fleet/inventory.py
─────────────────────────────
NodeInventory: the single source of truth for owned capacity.

Every ManagedNode is keyed by its provider id. Secondary indexes:

  request token → provider id   (launch idempotence)
  node name     → provider id   (orchestrator lookups)
  workload id   → request token (nominations to in-flight launches)

Writers take the per-node asyncio.Lock from `lock(provider_id)` around
multi-step mutations (registration, drain, termination).

Nodes marked SUSPECT are remembered in a bounded ledger (`suspects()`)
after they are torn down, so their cause stays visible.

Drain tasks
────────────
A node holds at most one live DrainTask. `submit_drain` is synchronous: it
runs to completion without yielding to the event loop, so an interruption
notice overrides a consolidation drain immediately instead of queueing
behind the drain worker that holds the node lock. The live task is
upgraded in place (see DrainTask.preempt_with) and the worker re-reads it
before every eviction.
A priority upgrade also sets the node's `upgrade_signal`, which wakes a
worker that is blocked waiting for a replacement node.

Pending tasks are served highest priority first:
    interruption (100) > manual (50) > consolidation (10)
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from autoscaler.shared.models import (
    DrainReason,
    DrainState,
    DrainTask,
    ManagedNode,
    NodePhase,
    Resources,
)

logger = logging.getLogger(__name__)

# Phases that count as in-flight capacity (launched, not yet usable)
IN_FLIGHT_PHASES = (NodePhase.LAUNCHING, NodePhase.REGISTERING)

# Suspect causes kept after teardown, oldest dropped first
MAX_SUSPECTS = 256


class NodeInventory:

    def __init__(self) -> None:
        self._nodes: Dict[str, ManagedNode] = {}
        self._by_token: Dict[str, str] = {}
        self._by_name: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._nominations: Dict[str, str] = {}

        self._drains: Dict[str, DrainTask] = {}
        self._drain_heap: List[Tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._drain_ready = asyncio.Event()
        self._upgraded: Dict[str, asyncio.Event] = {}
        self._suspects: Dict[str, Dict[str, str]] = {}

    # ── Nodes ─────────────────────────────────────────────────────────────────

    def add(self, node: ManagedNode) -> ManagedNode:
        """Insert a node. A node already indexed under the same token wins."""
        existing = self.by_token(node.request_token)
        if existing is not None:
            return existing
        self._nodes[node.provider_id] = node
        self._by_token[node.request_token] = node.provider_id
        if node.node_name:
            self._by_name[node.node_name] = node.provider_id
        logger.debug("inventory: added %s (%s, pool=%s)",
                     node.provider_id, node.shape, node.node_pool)
        return node

    def get(self, provider_id: str) -> Optional[ManagedNode]:
        return self._nodes.get(provider_id)

    def by_token(self, token: str) -> Optional[ManagedNode]:
        provider_id = self._by_token.get(token)
        return self._nodes.get(provider_id) if provider_id else None

    def by_node_name(self, node_name: str) -> Optional[ManagedNode]:
        provider_id = self._by_name.get(node_name)
        return self._nodes.get(provider_id) if provider_id else None

    def set_node_name(self, provider_id: str, node_name: str) -> None:
        node = self._nodes[provider_id]
        node.node_name = node_name
        self._by_name[node_name] = provider_id

    def remove(self, provider_id: str) -> Optional[ManagedNode]:
        node = self._nodes.pop(provider_id, None)
        if node is None:
            return None
        self._by_token.pop(node.request_token, None)
        if node.node_name:
            self._by_name.pop(node.node_name, None)
        self._locks.pop(provider_id, None)
        self._drains.pop(provider_id, None)
        self._upgraded.pop(provider_id, None)
        return node

    def lock(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    def nodes(self, phases: Optional[Iterable[NodePhase]] = None) -> List[ManagedNode]:
        if phases is None:
            return list(self._nodes.values())
        wanted = set(phases)
        return [n for n in self._nodes.values() if n.phase in wanted]

    def ready_nodes(self) -> List[ManagedNode]:
        return [n for n in self._nodes.values() if n.is_schedulable]

    def in_flight(self) -> List[ManagedNode]:
        return self.nodes(IN_FLIGHT_PHASES)

    def set_phase(self, provider_id: str, phase: NodePhase, reason: Optional[str] = None) -> None:
        node = self._nodes[provider_id]
        if node.phase != phase:
            logger.info("node %s: %s → %s%s", provider_id, node.phase.value, phase.value,
                        f" ({reason})" if reason else "")
        node.phase = phase
        if reason is not None:
            node.failure_reason = reason

    def pool_usage(self, pool_name: str) -> Resources:
        """Allocatable capacity held by a pool's non-terminal nodes."""
        return Resources.total([
            n.allocatable for n in self._nodes.values()
            if n.node_pool == pool_name and not n.is_terminal
        ])

    def mark_suspect(self, node: ManagedNode, reason: str) -> None:
        """
        Flag `node` SUSPECT and remember why. The cause outlives the node,
        which is usually terminated right after.
        """
        if node.provider_id in self._nodes:
            self.set_phase(node.provider_id, NodePhase.SUSPECT, reason)
        else:
            node.failure_reason = reason
        self._suspects[node.provider_id] = {
            "reason": reason,
            "shape": node.shape,
            "node_pool": node.node_pool,
        }
        while len(self._suspects) > MAX_SUSPECTS:
            del self._suspects[next(iter(self._suspects))]

    def suspects(self) -> Dict[str, Dict[str, str]]:
        """Provider id → cause, shape and pool of every node marked suspect."""
        return dict(self._suspects)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._nodes

    # ── Nominations ───────────────────────────────────────────────────────────

    def nominate(self, token: str, workload_ids: Iterable[str]) -> None:
        """Mark workloads as waiting on the launch issued under `token`."""
        for workload_id in workload_ids:
            self._nominations[workload_id] = token

    def release(self, token: str) -> None:
        for workload_id in [w for w, t in self._nominations.items() if t == token]:
            del self._nominations[workload_id]

    def is_nominated(self, workload_id: str) -> bool:
        return workload_id in self._nominations

    # ── Drain tasks ───────────────────────────────────────────────────────────

    def submit_drain(self, task: DrainTask) -> DrainTask:
        """
        Register a drain for a node, or fold it into the node's live task.

        Returns the task that is now live for the node. Raises KeyError for
        a node the inventory does not own.
        """
        if task.node_id not in self._nodes:
            raise KeyError(f"unknown node {task.node_id}")

        live = self._drains.get(task.node_id)
        if live is not None and live.is_live:
            previous = live.reason
            previous_priority = live.priority
            if live.preempt_with(task):
                logger.info("drain %s on %s upgraded: %s → %s (priority %d)",
                            live.task_id, live.node_id, previous.value,
                            live.reason.value, live.priority)
                self._push(live)
                if live.priority > previous_priority:
                    self.upgrade_signal(live.node_id).set()
            return live

        self._drains[task.node_id] = task
        self._upgraded[task.node_id] = asyncio.Event()
        self._push(task)
        logger.info("drain %s queued for %s (%s, priority %d)",
                    task.task_id, task.node_id, task.reason.value, task.priority)
        return task

    def upgrade_signal(self, node_id: str) -> asyncio.Event:
        """Set when the live drain of `node_id` is upgraded to a higher priority."""
        event = self._upgraded.get(node_id)
        if event is None:
            event = self._upgraded[node_id] = asyncio.Event()
        return event

    def drain_for(self, node_id: str) -> Optional[DrainTask]:
        task = self._drains.get(node_id)
        return task if task is not None and task.is_live else None

    def live_drains(self, reason: Optional[DrainReason] = None) -> List[DrainTask]:
        return [
            t for t in self._drains.values()
            if t.is_live and (reason is None or t.reason == reason)
        ]

    def disrupting_count(self, pool_name: str) -> int:
        """Live voluntary drains against nodes of a pool."""
        count = 0
        for task in self.live_drains(DrainReason.CONSOLIDATION):
            node = self._nodes.get(task.node_id)
            if node is not None and node.node_pool == pool_name:
                count += 1
        return count

    def pop_drain(self) -> Optional[DrainTask]:
        """Highest-priority PENDING task, or None."""
        while self._drain_heap:
            neg_priority, _, node_id = heapq.heappop(self._drain_heap)
            task = self._drains.get(node_id)
            if task is None or task.state != DrainState.PENDING:
                continue
            if -neg_priority != task.priority:
                # stale entry left behind by an upgrade
                continue
            return task
        self._drain_ready.clear()
        return None

    async def next_drain(self, timeout: Optional[float] = None) -> Optional[DrainTask]:
        """Wait up to `timeout` seconds for a pending drain task."""
        task = self.pop_drain()
        if task is not None:
            return task
        try:
            await asyncio.wait_for(self._drain_ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self.pop_drain()

    def _push(self, task: DrainTask) -> None:
        heapq.heappush(self._drain_heap, (-task.priority, next(self._seq), task.node_id))
        self._drain_ready.set()
