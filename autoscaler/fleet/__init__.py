"""
autoscaler/fleet — owned capacity: inventory, launch, registration, drain.

Public API:
    NodeInventory        — single-writer ManagedNode table + drain queue
    FleetLauncher        — idempotent launch with backoff, terminate
    NodeRegistrar        — await_registration → RegistrationOutcome
    DrainCoordinator     — cordon / replace / evict / terminate
"""

from autoscaler.fleet.inventory import NodeInventory
from autoscaler.fleet.launcher import ExponentialBackoff, FleetLauncher, RetryContext
from autoscaler.fleet.registrar import NodeRegistrar, RegistrationOutcome
from autoscaler.fleet.drain import DrainCoordinator, eviction_order

__all__ = [
    "NodeInventory",
    "FleetLauncher",
    "ExponentialBackoff",
    "RetryContext",
    "NodeRegistrar",
    "RegistrationOutcome",
    "DrainCoordinator",
    "eviction_order",
]
