"""
autoscaler/providers/base.py
────────────────────────────
Capability sets the controller consumes from the outside world.

The controller never inherits from a provider class. Each backend is any
object that structurally matches one of these Protocols, so a cloud SDK
wrapper, a cluster API client and the in-memory simulation in
simulated.py are interchangeable variants.

  CloudProvider       → launch, terminate, describe_catalog
  ClusterClient       → watch-unschedulable, read node inventory, evict
  InterruptionSource  → involuntary-reclaim notification feed

Every method is a coroutine: provider calls and orchestrator round-trips
are high-latency and must not block the event loop.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from autoscaler.shared.models import (
    CapacityType,
    InstanceShape,
    Resources,
    Taint,
    Workload,
    utcnow,
)


# ─────────────────────────────────────────────────────────────────────────────
# Wire models
# ─────────────────────────────────────────────────────────────────────────────

class LaunchRequest(BaseModel):
    """
    Everything the provider needs to create one instance.

    client_token makes the call idempotent: the provider returns the
    instance created by an earlier call with the same token instead of
    creating a second one.
    """
    client_token: str
    shape: str
    zone: str
    capacity_type: CapacityType
    image_id: str
    instance_profile: Optional[str] = None
    user_data: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)


class InstanceDescription(BaseModel):
    provider_id: str
    shape: str
    zone: str
    capacity_type: CapacityType
    launched_at: datetime = Field(default_factory=utcnow)


class ClusterNode(BaseModel):
    """The orchestrator's view of a node."""
    name: str
    provider_id: str
    ready: bool = False
    unschedulable: bool = False
    allocatable: Resources = Field(default_factory=Resources)
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)


class InterruptionKind(str, Enum):
    """
    SPOT_INTERRUPTION        → spot capacity reclaimed after the notice window.
    SCHEDULED_CHANGE         → provider maintenance will retire the instance.
    STATE_CHANGE             → instance is stopping / shutting down / gone.
    REBALANCE_RECOMMENDATION → elevated reclaim risk; informational only.
    """
    SPOT_INTERRUPTION = "spot-interruption"
    SCHEDULED_CHANGE = "scheduled-change"
    STATE_CHANGE = "state-change"
    REBALANCE_RECOMMENDATION = "rebalance-recommendation"


class InterruptionMessage(BaseModel):
    message_id: str
    kind: InterruptionKind
    instance_id: str
    event_time: datetime = Field(default_factory=utcnow)
    notice_seconds: Optional[float] = Field(
        None, ge=0,
        description="Advertised notice window. None = use the controller default.",
    )
    state: Optional[str] = Field(None, description="New instance state for STATE_CHANGE")


# ─────────────────────────────────────────────────────────────────────────────
# Capability sets
# ─────────────────────────────────────────────────────────────────────────────

@runtime_checkable
class CloudProvider(Protocol):

    async def launch(self, request: LaunchRequest) -> InstanceDescription:
        """
        Create one instance.

        Raises:
            CapacityUnavailableError: shape/zone/capacity type exhausted.
            QuotaExceededError:       account limit hit.
            TransientError:           retryable API or network error.
        """
        ...

    async def terminate(self, provider_id: str) -> None:
        """Terminate an instance. Terminating a gone instance is not an error."""
        ...

    async def describe_catalog(self) -> List[InstanceShape]:
        ...


@runtime_checkable
class ClusterClient(Protocol):

    async def list_unschedulable(self) -> List[Workload]:
        ...

    async def is_schedulable_on_existing(self, workload: Workload) -> bool:
        """The orchestrator's own feasibility check against existing nodes."""
        ...

    async def is_pending(self, workload_id: str) -> bool:
        """True while the workload is still waiting for a node."""
        ...

    async def get_node(self, provider_id: str) -> Optional[ClusterNode]:
        ...

    async def list_workloads_on(self, node_name: str) -> List[Workload]:
        ...

    async def cordon(self, node_name: str) -> None:
        ...

    async def uncordon(self, node_name: str) -> None:
        ...

    async def evict(self, workload_id: str) -> bool:
        """Evict one workload. False when refused (disruption budget)."""
        ...

    async def wait_for_change(self, timeout: float) -> bool:
        """Block until workloads change or timeout. True on change."""
        ...


@runtime_checkable
class InterruptionSource(Protocol):

    async def receive(self, max_messages: int = 10) -> List[InterruptionMessage]:
        ...

    async def acknowledge(self, message_id: str) -> None:
        ...
