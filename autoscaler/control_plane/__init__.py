"""
autoscaler/control_plane — the decision engine.

Public API:
    PolicyStore            — NodeClass / NodePool declarations and invariants
    InstanceTypeSelector   — hard constraints + cost ranking → Candidates
    ProvisioningPlanner    — ProvisioningRequest → launched, registered nodes
    ProvisioningResult     — bound workloads, nodes, per-workload failures
    ConsolidationEngine    — underused nodes → CONSOLIDATION DrainTasks
    AutoscalerController   — loops, worker pool, operator commands
"""

from autoscaler.control_plane.policies import PolicyStore
from autoscaler.control_plane.selector import InstanceTypeSelector
from autoscaler.control_plane.planner import (
    PlannedNode,
    ProvisioningPlanner,
    ProvisioningResult,
)
from autoscaler.control_plane.consolidation import ConsolidationEngine
from autoscaler.control_plane.controller import AutoscalerController

__all__ = [
    "PolicyStore",
    "InstanceTypeSelector",
    "PlannedNode",
    "ProvisioningPlanner",
    "ProvisioningResult",
    "ConsolidationEngine",
    "AutoscalerController",
]
