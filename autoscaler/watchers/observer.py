"""
autoscaler/watchers/observer.py
───────────────────────────────
WorkloadObserver: unschedulable workloads → ProvisioningRequest batches.

Read-only. A workload enters a batch only if it is still unschedulable and:
  • has not opted out of provisioning,
  • does not fit on existing capacity (asked of the orchestrator itself,
    which owns scheduling),
  • is not nominated to a launch already in flight.

Batching window
────────────────
Pods tend to arrive in bursts (a deployment scaling from 0 to 50). The
observer wakes on the first change, or every `observation_interval`
seconds, and then keeps collecting while changes keep arriving less than
`batch_idle_duration` apart, up to `batch_max_duration` in total. One
burst becomes one request and one packing decision.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from autoscaler.fleet.inventory import NodeInventory
from autoscaler.providers.base import ClusterClient
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.models import ProvisioningRequest, Workload

logger = logging.getLogger(__name__)


class WorkloadObserver:

    def __init__(
        self,
        cluster: ClusterClient,
        inventory: NodeInventory,
        settings: Optional[ControllerSettings] = None,
    ) -> None:
        self._cluster = cluster
        self._inventory = inventory
        self._settings = settings or ControllerSettings()

    async def observe_once(self) -> Optional[ProvisioningRequest]:
        """One snapshot. None when nothing needs new capacity."""
        selected: List[Workload] = []
        for workload in await self._cluster.list_unschedulable():
            if workload.opt_out:
                logger.debug("observer: %s opted out", workload.workload_id)
                continue
            if self._inventory.is_nominated(workload.workload_id):
                continue
            if await self._cluster.is_schedulable_on_existing(workload):
                continue
            selected.append(workload)
        if not selected:
            return None
        request = ProvisioningRequest(workloads=selected)
        logger.info("observer: %s with %d workload(s)", request.request_id, len(selected))
        return request

    async def batches(self, stop: Optional[asyncio.Event] = None) -> AsyncIterator[ProvisioningRequest]:
        """
        Yield batches until `stop` is set. Each call starts a fresh,
        independent iteration, so a restarted loop loses nothing: pending
        workloads are simply observed again.
        """
        loop = asyncio.get_running_loop()
        idle = self._settings.batch_idle_duration
        while stop is None or not stop.is_set():
            await self._cluster.wait_for_change(self._settings.observation_interval)
            started = loop.time()
            while idle > 0:
                remaining = self._settings.batch_max_duration - (loop.time() - started)
                if remaining <= 0:
                    break
                if not await self._cluster.wait_for_change(min(idle, remaining)):
                    break
            request = await self.observe_once()
            if request is not None:
                yield request
