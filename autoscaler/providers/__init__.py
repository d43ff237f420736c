"""
autoscaler/providers — backends the controller consumes.

Public API:
    CloudProvider, ClusterClient, InterruptionSource — capability Protocols
    LaunchRequest, InstanceDescription, ClusterNode,
    InterruptionMessage, InterruptionKind            — wire models
    SimulatedCloudProvider, SimulatedCluster,
    SimulatedInterruptionQueue, default_catalog      — in-memory backends
"""

from autoscaler.providers.base import (
    CloudProvider,
    ClusterClient,
    ClusterNode,
    InstanceDescription,
    InterruptionKind,
    InterruptionMessage,
    InterruptionSource,
    LaunchRequest,
)
from autoscaler.providers.simulated import (
    SimulatedCloudProvider,
    SimulatedCluster,
    SimulatedInterruptionQueue,
    default_catalog,
)

__all__ = [
    "CloudProvider",
    "ClusterClient",
    "ClusterNode",
    "InstanceDescription",
    "InterruptionKind",
    "InterruptionMessage",
    "InterruptionSource",
    "LaunchRequest",
    "SimulatedCloudProvider",
    "SimulatedCluster",
    "SimulatedInterruptionQueue",
    "default_catalog",
]
