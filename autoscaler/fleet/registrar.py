"""
autoscaler/fleet/registrar.py
─────────────────────────────
NodeRegistrar: waits for a launched instance to join the cluster.

A launched node is not capacity until the orchestrator lists it as ready.
The registrar polls `ClusterClient.get_node(provider_id)` every
`registration_poll_interval` seconds. If the node does not appear within
`registration_timeout` it is marked SUSPECT with a RegistrationTimeoutError
reason and terminated. Suspect nodes are never retried: the planner will
see the workloads still pending and plan again from scratch.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from autoscaler.fleet.inventory import NodeInventory
from autoscaler.fleet.launcher import FleetLauncher
from autoscaler.providers.base import ClusterClient
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.errors import RegistrationTimeoutError
from autoscaler.shared.events import DecisionKind, EventRecorder
from autoscaler.shared.models import ManagedNode, NodePhase, utcnow

logger = logging.getLogger(__name__)


class RegistrationOutcome(str, Enum):
    REGISTERED = "registered"
    TIMED_OUT = "timed-out"


class NodeRegistrar:

    def __init__(
        self,
        cluster: ClusterClient,
        inventory: NodeInventory,
        launcher: FleetLauncher,
        settings: Optional[ControllerSettings] = None,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self._cluster = cluster
        self._inventory = inventory
        self._launcher = launcher
        self._settings = settings or ControllerSettings()
        self._recorder = recorder if recorder is not None else EventRecorder()

    async def await_registration(
        self,
        node: ManagedNode,
        timeout: Optional[float] = None,
    ) -> RegistrationOutcome:
        timeout = self._settings.registration_timeout if timeout is None else timeout
        poll = self._settings.registration_poll_interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            seen = await self._cluster.get_node(node.provider_id)
            if seen is not None and seen.ready:
                async with self._inventory.lock(node.provider_id):
                    self._inventory.set_node_name(node.provider_id, seen.name)
                    node.registered_at = utcnow()
                    if node.phase in (NodePhase.LAUNCHING, NodePhase.REGISTERING):
                        self._inventory.set_phase(node.provider_id, NodePhase.READY)
                self._recorder.record(
                    DecisionKind.REGISTERED, node.provider_id,
                    f"registered as {seen.name}",
                    waited_s=round(timeout - (deadline - loop.time()), 3),
                )
                return RegistrationOutcome.REGISTERED

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll, remaining))

        error = RegistrationTimeoutError(node.provider_id, timeout)
        async with self._inventory.lock(node.provider_id):
            self._inventory.mark_suspect(node, error.reason)
            self._recorder.record(
                DecisionKind.REGISTRATION_TIMEOUT, node.provider_id, error.reason,
                level=logging.WARNING, shape=node.shape, pool=node.node_pool,
            )
            await self._launcher.terminate(node, error.reason)
        return RegistrationOutcome.TIMED_OUT
