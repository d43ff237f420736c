"""
autoscaler/watchers/interruption.py
───────────────────────────────────
InterruptionHandler: provider reclaim notices → INTERRUPTION drain tasks.

Message handling
─────────────────
  SPOT_INTERRUPTION         drain, deadline = event time + notice window;
                            the offering is also marked unavailable
  SCHEDULED_CHANGE          drain, deadline = event time + notice window
  STATE_CHANGE              drain only for stopping / stopped /
                            shutting-down / terminated; the instance is
                            already going, so the deadline is the event time
  REBALANCE_RECOMMENDATION  recorded, no drain

Submission goes through NodeInventory.submit_drain, which is synchronous,
so an interruption preempts any consolidation drain on the same node the
moment the message is handled.

A message is acknowledged once handled, including messages for instances
the controller does not own. A message whose handling raises is left
unacknowledged so the source redelivers it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from autoscaler.catalog.pricing import InstanceCatalog
from autoscaler.fleet.inventory import NodeInventory
from autoscaler.providers.base import InterruptionKind, InterruptionMessage, InterruptionSource
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.events import DecisionKind, EventRecorder
from autoscaler.shared.models import DrainReason, DrainTask

logger = logging.getLogger(__name__)

# Instance states that mean the instance is leaving
TERMINAL_STATES = frozenset({"stopping", "stopped", "shutting-down", "terminated"})


class InterruptionHandler:

    def __init__(
        self,
        source: InterruptionSource,
        inventory: NodeInventory,
        catalog: Optional[InstanceCatalog] = None,
        settings: Optional[ControllerSettings] = None,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self._source = source
        self._inventory = inventory
        self._catalog = catalog
        self._settings = settings or ControllerSettings()
        self._recorder = recorder if recorder is not None else EventRecorder()

    async def poll_once(self, max_messages: int = 10) -> List[DrainTask]:
        tasks: List[DrainTask] = []
        for message in await self._source.receive(max_messages):
            try:
                task = await self.handle(message)
            except Exception:
                logger.exception("interruption message %s failed; left for redelivery",
                                 message.message_id)
                continue
            if task is not None:
                tasks.append(task)
        return tasks

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            if not await self.poll_once():
                await asyncio.sleep(self._settings.interruption_poll_interval)

    async def handle(self, message: InterruptionMessage) -> Optional[DrainTask]:
        task = self._submit(message)
        await self._source.acknowledge(message.message_id)
        return task

    def _submit(self, message: InterruptionMessage) -> Optional[DrainTask]:
        node = self._inventory.get(message.instance_id)
        if node is None:
            self._recorder.record(
                DecisionKind.INTERRUPTION, message.instance_id,
                f"{message.kind.value} for unmanaged instance ignored",
            )
            return None

        if message.kind == InterruptionKind.REBALANCE_RECOMMENDATION:
            self._recorder.record(
                DecisionKind.INTERRUPTION, node.provider_id,
                "rebalance recommendation: elevated reclaim risk",
            )
            return None

        if message.kind == InterruptionKind.STATE_CHANGE:
            if (message.state or "").lower() not in TERMINAL_STATES:
                return None
            notice = 0.0
        elif message.notice_seconds is not None:
            notice = message.notice_seconds
        else:
            notice = self._settings.interruption_notice_window

        if message.kind == InterruptionKind.SPOT_INTERRUPTION and self._catalog is not None:
            self._catalog.unavailable.mark(
                (node.shape, node.zone, node.capacity_type.value),
                "spot capacity reclaimed",
            )

        submitted = DrainTask(
            node_id=node.provider_id,
            reason=DrainReason.INTERRUPTION,
            deadline=message.event_time + timedelta(seconds=notice),
        )
        live_before = self._inventory.drain_for(node.provider_id)
        previous_reason = live_before.reason if live_before is not None else None
        task = self._inventory.submit_drain(submitted)
        if previous_reason is not None and previous_reason != DrainReason.INTERRUPTION:
            self._recorder.record(
                DecisionKind.DRAIN_PREEMPTED, node.provider_id,
                f"interruption preempted {previous_reason.value} drain {task.task_id}",
                deadline=task.deadline.isoformat(),
            )
        self._recorder.record(
            DecisionKind.INTERRUPTION, node.provider_id,
            f"{message.kind.value}: drain by {task.deadline.isoformat()}",
            level=logging.WARNING, message_id=message.message_id,
        )
        return task
