"""
autoscaler/shared/models.py
───────────────────────────
The single source of truth for every data structure in the autoscaler.

Design philosophy
-----------------
Every model answers one question: "What does the controller *need to know*
about this thing in order to decide how much capacity should exist?"

The controller never decides which workload runs on which existing node.
That is the orchestrator's job. These models describe demand (Workload,
ProvisioningRequest), policy (NodeClass, NodePool), supply (InstanceShape,
Offering, Candidate) and the capacity the controller owns (ManagedNode,
DrainTask).

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware UTC now. Every timestamp in the controller uses this."""
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class CapacityType(str, Enum):
    """
    Billing model of a launched node.

    ON_DEMAND → Reserved capacity. Predictable. Expensive.
    SPOT      → Spare capacity. Much cheaper. Can be reclaimed by the
                provider with a short notice (two minutes on AWS).
    """
    ON_DEMAND = "on-demand"
    SPOT = "spot"


class Architecture(str, Enum):
    """CPU architecture of an instance shape."""
    AMD64 = "amd64"
    ARM64 = "arm64"


class TaintEffect(str, Enum):
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


class RequirementOperator(str, Enum):
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


class NodePhase(str, Enum):
    """
    Lifecycle of a ManagedNode.

    LAUNCHING   → Capacity request issued, provider has not answered yet.
    REGISTERING → Instance exists; waiting for the orchestrator to list it.
    READY       → Registered and schedulable. Only READY nodes count as
                  capacity for consolidation.
    DRAINING    → A DrainTask is evicting its workloads. No new placements.
    TERMINATING → Terminate call issued.
    TERMINATED  → Gone. Removed from the inventory right after.
    SUSPECT     → Never registered before its timeout. Torn down and kept
                  visible with its cause until removal.
    """
    LAUNCHING = "launching"
    REGISTERING = "registering"
    READY = "ready"
    DRAINING = "draining"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    SUSPECT = "suspect"


class RequestPhase(str, Enum):
    """
    State machine of one ProvisioningRequest.

    observed → candidates-ranked → launch-issued → awaiting-registration
             → bound | failed
    """
    OBSERVED = "observed"
    CANDIDATES_RANKED = "candidates-ranked"
    LAUNCH_ISSUED = "launch-issued"
    AWAITING_REGISTRATION = "awaiting-registration"
    BOUND = "bound"
    FAILED = "failed"


class DrainReason(str, Enum):
    CONSOLIDATION = "consolidation"
    INTERRUPTION = "interruption"
    MANUAL = "manual"


class DrainState(str, Enum):
    """
    PENDING    → Queued on the inventory, not picked up by a drain worker.
    DRAINING   → Node cordoned, evictions in progress.
    TERMINATED → Terminal. Node terminated (possibly degraded, see
                 DrainTask.degraded).
    ABORTED    → Terminal. Reason invalidated before termination; the
                 node was uncordoned and stays in service.
    """
    PENDING = "pending"
    DRAINING = "draining"
    TERMINATED = "terminated"
    ABORTED = "aborted"


# Drain priorities: interruption always outranks everything else.
DRAIN_PRIORITY: Dict[DrainReason, int] = {
    DrainReason.CONSOLIDATION: 10,
    DrainReason.MANUAL: 50,
    DrainReason.INTERRUPTION: 100,
}


# Well-known node label keys written on every launched node.
LABEL_ARCH = "kubernetes.io/arch"
LABEL_ZONE = "topology.kubernetes.io/zone"
LABEL_INSTANCE_TYPE = "node.kubernetes.io/instance-type"
LABEL_CAPACITY_TYPE = "autoscaler.sh/capacity-type"
LABEL_NODEPOOL = "autoscaler.sh/nodepool"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: RESOURCES
# ─────────────────────────────────────────────────────────────────────────────

class Resources(BaseModel):
    """
    A bundle of schedulable resources: what a workload asks for, what a
    shape offers, what a pool is limited to.

    Fields:
        cpu        → CPU cores (fractional ok, e.g. 0.5).
        memory_gib → Memory in GiB.
        gpu        → Accelerator count.
        pods       → Pod slots. Every workload consumes one; shapes expose
                     their max-pods value here.
        extended   → Any other countable resource, e.g. {"hugepages-2Mi": 4}.
    """
    cpu: float = Field(0.0, ge=0, description="CPU cores")
    memory_gib: float = Field(0.0, ge=0, description="Memory in GiB")
    gpu: int = Field(0, ge=0, description="Accelerator count")
    pods: int = Field(0, ge=0, description="Pod slots")
    extended: Dict[str, float] = Field(
        default_factory=dict,
        description="Extended resources by name",
    )

    # ── Arithmetic ──────────────────────────────────────────────────────────

    def __add__(self, other: "Resources") -> "Resources":
        extended = dict(self.extended)
        for name, qty in other.extended.items():
            extended[name] = extended.get(name, 0.0) + qty
        return Resources(
            cpu=self.cpu + other.cpu,
            memory_gib=self.memory_gib + other.memory_gib,
            gpu=self.gpu + other.gpu,
            pods=self.pods + other.pods,
            extended=extended,
        )

    def __sub__(self, other: "Resources") -> "Resources":
        """Saturating subtraction: no dimension drops below zero."""
        extended = dict(self.extended)
        for name, qty in other.extended.items():
            extended[name] = max(0.0, extended.get(name, 0.0) - qty)
        return Resources(
            cpu=max(0.0, self.cpu - other.cpu),
            memory_gib=max(0.0, self.memory_gib - other.memory_gib),
            gpu=max(0, self.gpu - other.gpu),
            pods=max(0, self.pods - other.pods),
            extended=extended,
        )

    @classmethod
    def total(cls, items: List["Resources"]) -> "Resources":
        acc = cls()
        for item in items:
            acc = acc + item
        return acc

    # ── Comparison helpers ──────────────────────────────────────────────────

    def dimensions(self) -> List[str]:
        """Names of every dimension this bundle carries, extended ones sorted."""
        return ["cpu", "memory_gib", "gpu", "pods"] + sorted(self.extended)

    def get(self, dimension: str) -> float:
        if dimension in ("cpu", "memory_gib", "gpu", "pods"):
            return float(getattr(self, dimension))
        return float(self.extended.get(dimension, 0.0))

    def fits_within(self, capacity: "Resources") -> bool:
        """True if every dimension of self is <= the same dimension of capacity."""
        for dim in self.dimensions():
            if self.get(dim) > capacity.get(dim) + 1e-9:
                return False
        return True

    def exceeds_any(self, capacity: "Resources") -> List[str]:
        """Dimensions on which self is strictly larger than capacity."""
        return [
            dim for dim in self.dimensions()
            if self.get(dim) > capacity.get(dim) + 1e-9
        ]

    def dominant_share(self, capacity: "Resources") -> float:
        """
        Largest fraction of capacity consumed on any dimension.

        Used as the utilisation figure of a node: a node with 90% of its
        memory allocated but 10% of its CPU is 90% utilised, because no
        more memory-bound work fits.
        """
        share = 0.0
        for dim in capacity.dimensions():
            cap = capacity.get(dim)
            if cap > 0:
                share = max(share, self.get(dim) / cap)
        return share

    @classmethod
    def elementwise_max(cls, items: List["Resources"]) -> "Resources":
        """Per-dimension maximum: the largest single demand in a batch."""
        result = cls()
        for item in items:
            extended = dict(result.extended)
            for name, qty in item.extended.items():
                extended[name] = max(extended.get(name, 0.0), qty)
            result = cls(
                cpu=max(result.cpu, item.cpu),
                memory_gib=max(result.memory_gib, item.memory_gib),
                gpu=max(result.gpu, item.gpu),
                pods=max(result.pods, item.pods),
                extended=extended,
            )
        return result


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: CONSTRAINT VOCABULARY
# Labels, requirements, taints and tolerations.
# ─────────────────────────────────────────────────────────────────────────────

class NodeRequirement(BaseModel):
    """
    A label requirement, as used by node affinity and NodePool requirements.

    Examples:
        NodeRequirement(key="kubernetes.io/arch", operator="In", values=["arm64"])
        NodeRequirement(key="gpu", operator="DoesNotExist")
    """
    key: str
    operator: RequirementOperator = RequirementOperator.IN
    values: List[str] = Field(default_factory=list)

    def matches(self, labels: Dict[str, str]) -> bool:
        present = self.key in labels
        if self.operator == RequirementOperator.EXISTS:
            return present
        if self.operator == RequirementOperator.DOES_NOT_EXIST:
            return not present
        if self.operator == RequirementOperator.IN:
            return present and labels[self.key] in self.values
        # NOT_IN: an absent label satisfies NotIn
        return not present or labels[self.key] not in self.values


class Taint(BaseModel):
    key: str
    value: Optional[str] = None
    effect: TaintEffect = TaintEffect.NO_SCHEDULE


class Toleration(BaseModel):
    """
    A workload's permission to land on a tainted node.

    operator "Exists" with no key tolerates every taint.
    effect None tolerates every effect.
    """
    key: Optional[str] = None
    operator: str = Field("Equal", pattern="^(Equal|Exists)$")
    value: Optional[str] = None
    effect: Optional[TaintEffect] = None

    def tolerates(self, taint: Taint) -> bool:
        if self.effect is not None and self.effect != taint.effect:
            return False
        if self.key is None:
            return self.operator == "Exists"
        if self.key != taint.key:
            return False
        if self.operator == "Exists":
            return True
        return self.value == taint.value


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: WORKLOADS AND DEMAND
# ─────────────────────────────────────────────────────────────────────────────

class Workload(BaseModel):
    """
    A unit of work (a pod) as the controller sees it.

    Fields:
        workload_id       → "namespace/name"; unique across the cluster.
        requests          → Resources the workload asks for. pods is forced
                            to 1 when left at 0.
        node_selector     → Exact-match labels the node must carry.
        requirements      → Node-affinity style requirements.
        tolerations       → Which taints this workload accepts.
        priority          → Eviction order hint. Lower priority goes first.
        opt_out           → Never provision capacity for this workload.
        do_not_disrupt    → Never voluntarily evict (blocks consolidation).
        disruption_budget → Remaining allowed voluntary disruptions from
                            the workload's disruption budget. None means the
                            workload has no budget (unconstrained). 0 means
                            the budget is exhausted.
        node_name         → Node the orchestrator bound it to, if any.
    """
    workload_id: str = Field(..., description="namespace/name")
    requests: Resources = Field(default_factory=Resources)
    node_selector: Dict[str, str] = Field(default_factory=dict)
    requirements: List[NodeRequirement] = Field(default_factory=list)
    tolerations: List[Toleration] = Field(default_factory=list)
    priority: int = Field(0, description="Higher = more important")
    opt_out: bool = Field(False, description="Do not provision for this workload")
    do_not_disrupt: bool = Field(False, description="Block voluntary eviction")
    disruption_budget: Optional[int] = Field(
        None, ge=0,
        description="Remaining allowed disruptions; None = unconstrained",
    )
    node_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def model_post_init(self, __context) -> None:
        if self.requests.pods == 0:
            self.requests = self.requests.model_copy(update={"pods": 1})

    @property
    def evictable(self) -> bool:
        """True if a voluntary (consolidation) eviction is allowed."""
        if self.do_not_disrupt:
            return False
        return self.disruption_budget is None or self.disruption_budget > 0

    @property
    def scheduling_key(self) -> Tuple:
        """
        Hashable summary of every hard constraint. Workloads with equal keys
        can share a node as far as constraints are concerned.
        """
        return (
            tuple(sorted(self.node_selector.items())),
            tuple(sorted(
                (r.key, r.operator.value, tuple(sorted(r.values)))
                for r in self.requirements
            )),
            tuple(sorted(
                (t.key or "", t.operator, t.value or "",
                 t.effect.value if t.effect else "")
                for t in self.tolerations
            )),
        )

    def tolerates_all(self, taints: List[Taint]) -> bool:
        """PreferNoSchedule taints never block; everything else needs a toleration."""
        for taint in taints:
            if taint.effect == TaintEffect.PREFER_NO_SCHEDULE:
                continue
            if not any(tol.tolerates(taint) for tol in self.tolerations):
                return False
        return True

    def accepts_labels(self, labels: Dict[str, str]) -> bool:
        for key, value in self.node_selector.items():
            if labels.get(key) != value:
                return False
        return all(req.matches(labels) for req in self.requirements)


class ProvisioningRequest(BaseModel):
    """
    One batch of currently-unschedulable workloads.

    Created per observation cycle by the WorkloadObserver, consumed by one
    planning pass, then discarded. failures collects a reason string per
    workload that could not be bound in this pass.
    """
    request_id: str = Field(default_factory=lambda: f"req-{uuid.uuid4().hex[:8]}")
    workloads: List[Workload] = Field(default_factory=list)
    observed_at: datetime = Field(default_factory=utcnow)
    phase: RequestPhase = RequestPhase.OBSERVED
    failures: Dict[str, str] = Field(default_factory=dict)

    @property
    def total_demand(self) -> Resources:
        return Resources.total([w.requests for w in self.workloads])

    @property
    def largest_demand(self) -> Resources:
        return Resources.elementwise_max([w.requests for w in self.workloads])

    @property
    def workload_ids(self) -> List[str]:
        return [w.workload_id for w in self.workloads]


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: POLICY (operator declarations)
# ─────────────────────────────────────────────────────────────────────────────

class NodeClass(BaseModel):
    """
    Template describing an allowed family of launchable nodes.

    Fields:
        name                      → Unique name referenced by NodePools.
        allowed_instance_types    → Shape names this class may launch.
                                    Empty list = every shape in the catalog.
        allowed_capacity_types    → Spot and/or on-demand.
        zones                     → Network placement (one subnet per zone).
                                    Empty = every zone the catalog offers.
        image_id                  → Boot image.
        instance_profile          → Identity attached to the instance.
        user_data                 → Startup configuration.
        tags                      → Provider tags added to every instance.
        kube_reserved             → Per-node overhead subtracted from shape
                                    capacity to get allocatable.
    """
    name: str
    allowed_instance_types: List[str] = Field(default_factory=list)
    allowed_capacity_types: List[CapacityType] = Field(
        default_factory=lambda: [CapacityType.SPOT, CapacityType.ON_DEMAND]
    )
    zones: List[str] = Field(default_factory=list)
    image_id: str = "image-default"
    instance_profile: Optional[str] = None
    user_data: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    kube_reserved: Resources = Field(default_factory=Resources)


class ConsolidationPolicy(BaseModel):
    enabled: bool = True
    utilization_threshold: Optional[float] = Field(
        None, gt=0.0, le=1.0,
        description="Override of the controller-wide threshold for this pool",
    )


class NodePool(BaseModel):
    """
    A policy grouping over one NodeClass.

    Fields:
        name                 → Unique name. Written as a label on every node.
        node_class           → Name of the NodeClass this pool launches from.
        labels               → Labels applied to every node of the pool.
        taints               → Taints applied to every node of the pool.
        requirements         → Narrow the shapes/zones/capacity types the
                               pool may use (matched against offering labels).
        limits               → Max total capacity across the pool's nodes.
                               None = unlimited.
        weight               → Priority among competing pools (higher wins
                               ties at equal price).
        consolidation        → Whether and how aggressively to consolidate.
        max_disrupting_nodes → Voluntary disruption budget: how many of the
                               pool's nodes may drain at once for
                               consolidation. None = unlimited.
    """
    name: str
    node_class: str
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)
    requirements: List[NodeRequirement] = Field(default_factory=list)
    limits: Optional[Resources] = None
    weight: int = Field(0, ge=0, le=100)
    consolidation: ConsolidationPolicy = Field(default_factory=ConsolidationPolicy)
    max_disrupting_nodes: Optional[int] = Field(None, ge=0)

    @property
    def limited_dimensions(self) -> List[str]:
        """Dimensions the limits declare. A dimension left at zero is unlimited."""
        if self.limits is None:
            return []
        return [dim for dim in self.limits.dimensions() if self.limits.get(dim) > 0]

    def within_headroom(self, capacity: Resources, headroom: Resources) -> bool:
        return all(
            capacity.get(dim) <= headroom.get(dim) + 1e-9
            for dim in self.limited_dimensions
        )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: SUPPLY (catalog and candidates)
# ─────────────────────────────────────────────────────────────────────────────

class Offering(BaseModel):
    """One purchasable variant of a shape: a zone and a capacity type at a price."""
    zone: str
    capacity_type: CapacityType
    price_per_hour: float = Field(..., ge=0.0)
    available: bool = True


class InstanceShape(BaseModel):
    """An instance type from the provider catalog."""
    name: str
    architecture: Architecture = Architecture.AMD64
    capacity: Resources
    offerings: List[Offering] = Field(default_factory=list)

    def labels_for(self, offering: Offering) -> Dict[str, str]:
        return {
            LABEL_INSTANCE_TYPE: self.name,
            LABEL_ARCH: self.architecture.value,
            LABEL_ZONE: offering.zone,
            LABEL_CAPACITY_TYPE: offering.capacity_type.value,
        }


class Candidate(BaseModel):
    """
    A (shape, NodeClass) pairing ready to launch, with its computed
    allocatable capacity and price. Lives for one planning cycle.
    """
    shape: str
    architecture: Architecture
    node_class: str
    node_pool: str
    zone: str
    capacity_type: CapacityType
    price_per_hour: float
    allocatable: Resources
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)
    pool_weight: int = 0

    @property
    def offering_key(self) -> Tuple[str, str, str]:
        return (self.shape, self.zone, self.capacity_type.value)

    @property
    def is_spot(self) -> bool:
        return self.capacity_type == CapacityType.SPOT

    def describe(self) -> str:
        return (
            f"{self.shape}/{self.zone}/{self.capacity_type.value} "
            f"(${self.price_per_hour:.4f}/h, pool={self.node_pool})"
        )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 7: OWNED CAPACITY
# ─────────────────────────────────────────────────────────────────────────────

class ManagedNode(BaseModel):
    """
    One launched instance the controller owns for its whole lifetime.

    provider_id is the cloud identifier and the inventory key. node_name is
    only known once the orchestrator lists the node (registration).
    request_token is the client token the launch was issued with; the
    inventory indexes it so a retried launch never yields a second node.
    """
    provider_id: str
    request_token: str
    shape: str
    architecture: Architecture = Architecture.AMD64
    node_class: str
    node_pool: str
    zone: str
    capacity_type: CapacityType
    price_per_hour: float = 0.0
    allocatable: Resources = Field(default_factory=Resources)
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)

    phase: NodePhase = NodePhase.LAUNCHING
    node_name: Optional[str] = None
    launched_at: datetime = Field(default_factory=utcnow)
    registered_at: Optional[datetime] = None
    bound_workloads: List[str] = Field(default_factory=list)
    failure_reason: Optional[str] = None

    @property
    def is_schedulable(self) -> bool:
        """Only a registered, non-draining node counts as usable capacity."""
        return self.phase == NodePhase.READY and self.registered_at is not None

    @property
    def is_terminal(self) -> bool:
        return self.phase in (NodePhase.TERMINATING, NodePhase.TERMINATED)


class DrainTask(BaseModel):
    """
    A request to evacuate and terminate one ManagedNode.

    A node holds at most one live DrainTask. A higher-priority submission
    upgrades the live task in place (reason, priority, shorter deadline)
    instead of queueing a second one.
    """
    task_id: str = Field(default_factory=lambda: f"drain-{uuid.uuid4().hex[:8]}")
    node_id: str = Field(..., description="provider_id of the node to drain")
    reason: DrainReason
    priority: int = 0
    deadline: datetime
    created_at: datetime = Field(default_factory=utcnow)
    state: DrainState = DrainState.PENDING
    replacement: Optional[Candidate] = None
    expected_workloads: Optional[List[str]] = Field(
        None,
        description="Workload ids on the node when a consolidation drain was "
                    "proposed. Any other workload landing there invalidates it.",
    )
    evicted: List[str] = Field(default_factory=list)
    degraded: bool = False
    failure_reason: Optional[str] = None

    def model_post_init(self, __context) -> None:
        if self.priority == 0:
            self.priority = DRAIN_PRIORITY[self.reason]

    @property
    def is_live(self) -> bool:
        return self.state in (DrainState.PENDING, DrainState.DRAINING)

    def preempt_with(self, other: "DrainTask") -> bool:
        """
        Fold a competing submission into this task.

        Returns True if this task changed. A strictly higher priority takes
        over reason and priority and drops the replacement plan (an
        interruption drain never waits for replacement capacity). The
        deadline only ever shrinks.
        """
        changed = False
        if other.priority > self.priority:
            self.reason = other.reason
            self.priority = other.priority
            self.replacement = None
            changed = True
        if other.priority >= self.priority and other.deadline < self.deadline:
            self.deadline = other.deadline
            changed = True
        return changed


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 8: CONVENIENCE TYPE ALIASES
# ─────────────────────────────────────────────────────────────────────────────

# A binding plan maps workload_id → index of the planned node it rides on
BindingPlan = Dict[str, int]

# Offering identity used by the unavailable-offerings cache
OfferingKey = Tuple[str, str, str]
