"""
autoscaler/providers/simulated.py
─────────────────────────────────
In-memory backends for every capability set in base.py.

What this is
─────────────
A small, deterministic stand-in for a cloud account and an orchestrator,
good enough to drive the whole controller end to end:

  SimulatedCloudProvider    → catalog, idempotent launch, terminate,
                              failure injection per offering, quotas
  SimulatedCluster          → pending workloads, nodes, a first-fit
                              stand-in for the orchestrator scheduler,
                              eviction honouring disruption budgets
  SimulatedInterruptionQueue→ queue semantics: receive, then acknowledge;
                              unacknowledged messages are redelivered

Nothing here talks to the network. Failures are injected explicitly:

    provider.inject_failure("c.xlarge", CapacityUnavailableError, times=1)
    provider.set_quota(2)
    cluster.refuse_eviction("default/web-1")
    cluster.complete("default/web-1")      # workload finishes or is deleted

Wiring
───────
    cluster = SimulatedCluster()
    provider = SimulatedCloudProvider(cluster=cluster)   # instances self-register
    provider = SimulatedCloudProvider(cluster=cluster, auto_register=False)
                                                         # instances never join
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional, Set, Tuple, Type

from autoscaler.providers.base import (
    ClusterNode,
    InstanceDescription,
    InterruptionMessage,
    LaunchRequest,
)
from autoscaler.shared.errors import (
    LaunchError,
    QuotaExceededError,
)
from autoscaler.shared.models import (
    Architecture,
    CapacityType,
    InstanceShape,
    Offering,
    Resources,
    Workload,
)

logger = logging.getLogger(__name__)

DEFAULT_ZONES: List[str] = ["us-east-1a", "us-east-1b"]
SPOT_DISCOUNT: float = 0.3
"""Spot price as a fraction of on-demand in the default catalog."""


def _shape(
    name: str,
    cpu: float,
    memory_gib: float,
    on_demand_price: float,
    arch: Architecture = Architecture.AMD64,
    gpu: int = 0,
    pods: int = 110,
    zones: Optional[List[str]] = None,
) -> InstanceShape:
    offerings: List[Offering] = []
    for zone in zones or DEFAULT_ZONES:
        offerings.append(Offering(
            zone=zone, capacity_type=CapacityType.ON_DEMAND,
            price_per_hour=on_demand_price,
        ))
        offerings.append(Offering(
            zone=zone, capacity_type=CapacityType.SPOT,
            price_per_hour=round(on_demand_price * SPOT_DISCOUNT, 4),
        ))
    return InstanceShape(
        name=name,
        architecture=arch,
        capacity=Resources(cpu=cpu, memory_gib=memory_gib, gpu=gpu, pods=pods),
        offerings=offerings,
    )


def default_catalog() -> List[InstanceShape]:
    """
    A representative catalog: general purpose, compute optimised, ARM and GPU.

    Prices are illustrative, not real provider prices.
    """
    return [
        _shape("m.large", 2, 8, 0.096),
        _shape("m.xlarge", 4, 16, 0.192),
        _shape("m.2xlarge", 8, 32, 0.384),
        _shape("c.xlarge", 4, 8, 0.17),
        _shape("c.2xlarge", 8, 16, 0.34),
        _shape("c.4xlarge", 16, 32, 0.68),
        _shape("mg.xlarge", 4, 16, 0.154, arch=Architecture.ARM64),
        _shape("mg.2xlarge", 8, 32, 0.308, arch=Architecture.ARM64),
        _shape("g.xlarge", 4, 16, 0.526, gpu=1),
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Cluster
# ─────────────────────────────────────────────────────────────────────────────

class SimulatedCluster:
    """
    The orchestrator, reduced to what the controller observes and touches.

    Attributes:
        workloads:  every known workload by id
        pending:    ids waiting for a node, in arrival order
        nodes:      ClusterNode by node name
        placements: workload id → node name
    """

    def __init__(self) -> None:
        self.workloads: Dict[str, Workload] = {}
        self.pending: List[str] = []
        self.nodes: Dict[str, ClusterNode] = {}
        self.placements: Dict[str, str] = {}
        self.evictions: List[str] = []
        self._refused: Set[str] = set()
        self._changed = asyncio.Event()

    # ── Test / simulation controls ────────────────────────────────────────────

    def submit(self, workload: Workload) -> None:
        """A new workload arrives and waits for a node."""
        self.workloads[workload.workload_id] = workload
        if workload.workload_id not in self.pending:
            self.pending.append(workload.workload_id)
        self._changed.set()

    def complete(self, workload_id: str) -> None:
        """A workload finishes and leaves the cluster."""
        self.workloads.pop(workload_id, None)
        self.placements.pop(workload_id, None)
        if workload_id in self.pending:
            self.pending.remove(workload_id)
        self._changed.set()

    def add_node(self, node: ClusterNode) -> None:
        self.nodes[node.name] = node
        self._changed.set()

    def remove_node_by_provider_id(self, provider_id: str) -> None:
        for name, node in list(self.nodes.items()):
            if node.provider_id == provider_id:
                del self.nodes[name]
                # anything still placed there goes back to pending
                for wid, placed in list(self.placements.items()):
                    if placed == name:
                        del self.placements[wid]
                        self.workloads[wid].node_name = None
                        self.pending.append(wid)
                self._changed.set()

    def bind(self, workload_id: str, node_name: str) -> None:
        """Place a workload on a node, as the orchestrator scheduler would."""
        self.placements[workload_id] = node_name
        self.workloads[workload_id].node_name = node_name
        if workload_id in self.pending:
            self.pending.remove(workload_id)
        self._changed.set()

    def refuse_eviction(self, workload_id: str) -> None:
        self._refused.add(workload_id)

    def used_on(self, node_name: str) -> Resources:
        return Resources.total([
            self.workloads[wid].requests
            for wid, placed in self.placements.items()
            if placed == node_name
        ])

    def fits_on(self, workload: Workload, node: ClusterNode) -> bool:
        if not node.ready or node.unschedulable:
            return False
        if not workload.accepts_labels(node.labels):
            return False
        if not workload.tolerates_all(node.taints):
            return False
        free = node.allocatable - self.used_on(node.name)
        return workload.requests.fits_within(free)

    def schedule_pending(self) -> List[str]:
        """First-fit every pending workload onto ready nodes. Returns bound ids."""
        bound: List[str] = []
        for wid in list(self.pending):
            workload = self.workloads[wid]
            for node in self.nodes.values():
                if self.fits_on(workload, node):
                    self.bind(wid, node.name)
                    bound.append(wid)
                    break
        return bound

    # ── ClusterClient ─────────────────────────────────────────────────────────

    async def list_unschedulable(self) -> List[Workload]:
        return [self.workloads[wid] for wid in self.pending]

    async def is_schedulable_on_existing(self, workload: Workload) -> bool:
        return any(self.fits_on(workload, node) for node in self.nodes.values())

    async def is_pending(self, workload_id: str) -> bool:
        return workload_id in self.pending

    async def get_node(self, provider_id: str) -> Optional[ClusterNode]:
        for node in self.nodes.values():
            if node.provider_id == provider_id:
                return node
        return None

    async def list_workloads_on(self, node_name: str) -> List[Workload]:
        return [
            self.workloads[wid]
            for wid, placed in self.placements.items()
            if placed == node_name
        ]

    async def cordon(self, node_name: str) -> None:
        if node_name in self.nodes:
            self.nodes[node_name].unschedulable = True

    async def uncordon(self, node_name: str) -> None:
        if node_name in self.nodes:
            self.nodes[node_name].unschedulable = False

    async def evict(self, workload_id: str) -> bool:
        workload = self.workloads.get(workload_id)
        if workload is None or workload_id not in self.placements:
            return True
        if workload_id in self._refused or workload.disruption_budget == 0:
            return False
        if workload.disruption_budget is not None:
            workload.disruption_budget -= 1
        del self.placements[workload_id]
        workload.node_name = None
        self.pending.append(workload_id)
        self.evictions.append(workload_id)
        self._changed.set()
        return True

    async def wait_for_change(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._changed.clear()
        return True


# ─────────────────────────────────────────────────────────────────────────────
# Cloud provider
# ─────────────────────────────────────────────────────────────────────────────

class SimulatedCloudProvider:
    """
    Idempotent, failure-injectable compute provider.

    Attributes:
        instances:    live instances by provider id
        launch_calls: every LaunchRequest received, including retries
        terminated:   provider ids terminated, in order
    """

    def __init__(
        self,
        catalog: Optional[List[InstanceShape]] = None,
        cluster: Optional[SimulatedCluster] = None,
        auto_register: bool = True,
        registration_delay: float = 0.0,
        launch_delay: float = 0.0,
    ) -> None:
        self.catalog = catalog if catalog is not None else default_catalog()
        self.cluster = cluster
        self.auto_register = auto_register
        self.registration_delay = registration_delay
        self.launch_delay = launch_delay

        self.instances: Dict[str, InstanceDescription] = {}
        self.launch_calls: List[LaunchRequest] = []
        self.terminated: List[str] = []
        self._by_token: Dict[str, str] = {}
        self._failures: Dict[Tuple[str, Optional[str], Optional[str]], Deque[Type[LaunchError]]] = {}
        self._quota: Optional[int] = None

    # ── Failure injection ─────────────────────────────────────────────────────

    def inject_failure(
        self,
        shape: str,
        error: Type[LaunchError],
        times: int = 1,
        zone: Optional[str] = None,
        capacity_type: Optional[CapacityType] = None,
    ) -> None:
        """Make the next `times` launches matching the offering raise `error`."""
        key = (shape, zone, capacity_type.value if capacity_type else None)
        queue = self._failures.setdefault(key, deque())
        queue.extend([error] * times)

    def set_quota(self, max_instances: Optional[int]) -> None:
        self._quota = max_instances

    def _next_failure(self, request: LaunchRequest) -> Optional[Type[LaunchError]]:
        keys = [
            (request.shape, request.zone, request.capacity_type.value),
            (request.shape, request.zone, None),
            (request.shape, None, request.capacity_type.value),
            (request.shape, None, None),
        ]
        for key in keys:
            queue = self._failures.get(key)
            if queue:
                return queue.popleft()
        return None

    # ── CloudProvider ─────────────────────────────────────────────────────────

    async def describe_catalog(self) -> List[InstanceShape]:
        return [shape.model_copy(deep=True) for shape in self.catalog]

    async def launch(self, request: LaunchRequest) -> InstanceDescription:
        self.launch_calls.append(request)
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)

        existing = self._by_token.get(request.client_token)
        if existing is not None and existing in self.instances:
            return self.instances[existing]

        offering = (request.shape, request.zone, request.capacity_type.value)
        failure = self._next_failure(request)
        if failure is not None:
            raise failure(f"simulated {failure.__name__} for {request.shape}", offering)

        if self._quota is not None and len(self.instances) >= self._quota:
            raise QuotaExceededError(
                f"instance quota of {self._quota} reached", offering
            )

        provider_id = f"i-{uuid.uuid4().hex[:12]}"
        desc = InstanceDescription(
            provider_id=provider_id,
            shape=request.shape,
            zone=request.zone,
            capacity_type=request.capacity_type,
        )
        self.instances[provider_id] = desc
        self._by_token[request.client_token] = provider_id
        logger.debug("simulated launch %s → %s", request.shape, provider_id)

        if self.cluster is not None and self.auto_register:
            node = ClusterNode(
                name=f"node-{provider_id[2:]}",
                provider_id=provider_id,
                ready=True,
                allocatable=self._capacity_of(request.shape),
                labels=dict(request.labels),
                taints=list(request.taints),
            )
            if self.registration_delay:
                asyncio.get_running_loop().call_later(
                    self.registration_delay, self._register, provider_id, node
                )
            else:
                self.cluster.add_node(node)
        return desc

    async def terminate(self, provider_id: str) -> None:
        if self.instances.pop(provider_id, None) is None:
            return
        self.terminated.append(provider_id)
        if self.cluster is not None:
            self.cluster.remove_node_by_provider_id(provider_id)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _register(self, provider_id: str, node: ClusterNode) -> None:
        if provider_id in self.instances and self.cluster is not None:
            self.cluster.add_node(node)

    def _capacity_of(self, shape_name: str) -> Resources:
        for shape in self.catalog:
            if shape.name == shape_name:
                return shape.capacity.model_copy(deep=True)
        return Resources()


# ─────────────────────────────────────────────────────────────────────────────
# Interruption feed
# ─────────────────────────────────────────────────────────────────────────────

class SimulatedInterruptionQueue:
    """
    A message queue the provider populates with reclaim notices.

    Received messages stay in-flight until acknowledged. An in-flight
    message becomes receivable again once `visibility_timeout` seconds
    pass without an acknowledgement, or immediately on redeliver().
    """

    def __init__(self, visibility_timeout: Optional[float] = None) -> None:
        self.visibility_timeout = visibility_timeout
        self._queue: Deque[InterruptionMessage] = deque()
        self._in_flight: Dict[str, Tuple[InterruptionMessage, float]] = {}
        self.acknowledged: List[str] = []
        self.deliveries: Dict[str, int] = {}

    def publish(self, message: InterruptionMessage) -> None:
        self._queue.append(message)

    def redeliver(self) -> int:
        """Make every unacknowledged message receivable again."""
        count = len(self._in_flight)
        for msg, _ in self._in_flight.values():
            self._queue.append(msg)
        self._in_flight.clear()
        return count

    async def receive(self, max_messages: int = 10) -> List[InterruptionMessage]:
        now = asyncio.get_running_loop().time()
        if self.visibility_timeout is not None:
            expired = [
                mid for mid, (_, received_at) in self._in_flight.items()
                if now - received_at >= self.visibility_timeout
            ]
            for mid in expired:
                self._queue.append(self._in_flight.pop(mid)[0])

        batch: List[InterruptionMessage] = []
        while self._queue and len(batch) < max_messages:
            msg = self._queue.popleft()
            self._in_flight[msg.message_id] = (msg, now)
            self.deliveries[msg.message_id] = self.deliveries.get(msg.message_id, 0) + 1
            batch.append(msg)
        return batch

    async def acknowledge(self, message_id: str) -> None:
        if self._in_flight.pop(message_id, None) is not None:
            self.acknowledged.append(message_id)

    @property
    def in_flight(self) -> List[str]:
        return list(self._in_flight)
