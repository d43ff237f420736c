"""
tests/conftest.py
─────────────────
Shared builders for the test suite.

Every test that needs a running controller builds it on the in-memory
backends from autoscaler/providers/simulated.py with FAST settings: no
retry sleeps, sub-second registration timeouts, no batching window.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

import pytest

from autoscaler.control_plane.controller import AutoscalerController
from autoscaler.control_plane.policies import PolicyStore
from autoscaler.providers.simulated import (
    SimulatedCloudProvider,
    SimulatedCluster,
    SimulatedInterruptionQueue,
)
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.models import (
    Architecture,
    CapacityType,
    InstanceShape,
    NodeClass,
    NodePool,
    Offering,
    Resources,
    Workload,
)

FAST = dict(
    launch_retry_base_delay=0.0,
    launch_retry_max_delay=0.0,
    registration_timeout=0.2,
    registration_poll_interval=0.01,
    eviction_retry_interval=0.01,
    batch_idle_duration=0.0,
    batch_max_duration=0.0,
    observation_interval=0.05,
    consolidation_cooldown=0.0,
    interruption_poll_interval=0.01,
)


def make_settings(**overrides) -> ControllerSettings:
    return ControllerSettings(**{**FAST, **overrides})


def make_shape(
    name: str,
    cpu: float,
    memory_gib: float,
    price: float,
    zones: Iterable[str] = ("z1",),
    capacity_types: Iterable[CapacityType] = (CapacityType.ON_DEMAND,),
    arch: Architecture = Architecture.AMD64,
    gpu: int = 0,
) -> InstanceShape:
    """One shape with an offering per (zone, capacity type), all at `price`."""
    return InstanceShape(
        name=name,
        architecture=arch,
        capacity=Resources(cpu=cpu, memory_gib=memory_gib, gpu=gpu, pods=110),
        offerings=[
            Offering(zone=zone, capacity_type=ct, price_per_hour=price)
            for zone in zones for ct in capacity_types
        ],
    )


def small_large() -> List[InstanceShape]:
    """{4 cores / 8 GiB @ $1, 8 cores / 16 GiB @ $2}, on-demand, one zone."""
    return [
        make_shape("small", 4, 8, 1.0),
        make_shape("large", 8, 16, 2.0),
    ]


def make_workload(workload_id: str, cpu: float = 2.0, memory_gib: float = 4.0, **kwargs) -> Workload:
    return Workload(
        workload_id=workload_id,
        requests=Resources(cpu=cpu, memory_gib=memory_gib),
        **kwargs,
    )


def make_policies(*pools: NodePool, node_class: Optional[NodeClass] = None) -> PolicyStore:
    node_class = node_class or NodeClass(name="default")
    return PolicyStore(
        node_classes=[node_class],
        node_pools=list(pools) or [NodePool(name="general", node_class=node_class.name)],
    )


class Harness:
    """A controller wired to simulated backends, catalog preloaded."""

    def __init__(
        self,
        shapes: Optional[List[InstanceShape]] = None,
        policies: Optional[PolicyStore] = None,
        auto_register: bool = True,
        **settings_overrides,
    ) -> None:
        shapes = shapes if shapes is not None else small_large()
        self.cluster = SimulatedCluster()
        self.provider = SimulatedCloudProvider(
            catalog=shapes, cluster=self.cluster, auto_register=auto_register,
        )
        self.queue = SimulatedInterruptionQueue()
        self.controller = AutoscalerController(
            provider=self.provider,
            cluster=self.cluster,
            interruptions=self.queue,
            policies=policies or make_policies(),
            settings=make_settings(**settings_overrides),
        )
        self.controller.catalog.load(shapes)

    @property
    def inventory(self):
        return self.controller.inventory

    @property
    def recorder(self):
        return self.controller.recorder

    def submit(self, *workloads: Workload) -> None:
        for workload in workloads:
            self.cluster.submit(workload)


@pytest.fixture
def settings() -> ControllerSettings:
    return make_settings()


@pytest.fixture
def policies() -> PolicyStore:
    return make_policies()
