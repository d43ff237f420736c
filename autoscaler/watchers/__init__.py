"""
autoscaler/watchers — inputs from the outside world.

Public API:
    WorkloadObserver     — unschedulable workloads → ProvisioningRequest batches
    InterruptionHandler  — reclaim notices → INTERRUPTION DrainTasks
"""

from autoscaler.watchers.observer import WorkloadObserver
from autoscaler.watchers.interruption import InterruptionHandler

__all__ = ["WorkloadObserver", "InterruptionHandler"]
