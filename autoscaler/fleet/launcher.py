"""
autoscaler/fleet/launcher.py
────────────────────────────
FleetLauncher: turns a Candidate into a running instance, and back.

Launch
───────
    launch(candidate, request_token) → ManagedNode (phase REGISTERING)

  • Idempotent. The token is sent to the provider as its client token and
    indexed in the inventory; a token the inventory already knows returns
    the existing node without a provider call.
  • TransientError is retried with exponential backoff and full jitter:
        delay_n = uniform(0, min(max_delay, base_delay × 2ⁿ))
    After `launch_retry_attempts` calls it raises RetryExhaustedError.
  • CapacityUnavailableError marks the offering unavailable in the catalog
    cache, then propagates so the planner can move to the next fallback.
  • QuotaExceededError propagates untouched.
  • If the awaiting task is cancelled while the provider call is in
    flight, the call is left to finish and the instance it produced is
    terminated, so a cancelled launch never leaks capacity.

Every provider call (launch and terminate) takes a slot of a semaphore
sized `max_concurrent_launches`.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Set

from autoscaler.catalog.pricing import InstanceCatalog
from autoscaler.fleet.inventory import NodeInventory
from autoscaler.providers.base import CloudProvider, InstanceDescription, LaunchRequest
from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.errors import (
    CapacityUnavailableError,
    PolicyViolationError,
    RetryExhaustedError,
    TransientError,
)
from autoscaler.shared.events import DecisionKind, EventRecorder
from autoscaler.shared.models import (
    LABEL_NODEPOOL,
    Candidate,
    ManagedNode,
    NodePhase,
)

if TYPE_CHECKING:
    from autoscaler.control_plane.policies import PolicyStore

logger = logging.getLogger(__name__)

# Provider tags written on every instance the controller launches
TAG_MANAGED_BY = "autoscaler.sh/managed-by"
TAG_REQUEST_TOKEN = "autoscaler.sh/request-token"


@dataclass
class RetryContext:
    """Retry state for one launch."""
    operation: str
    attempt: int = 0
    total_delay: float = 0.0
    start_time: float = field(default_factory=time.monotonic)

    @property
    def elapsed_time(self) -> float:
        return time.monotonic() - self.start_time


class ExponentialBackoff:
    """Capped exponential backoff with full jitter."""

    def __init__(
        self,
        max_attempts: int,
        base_delay: float,
        max_delay: float,
        multiplier: float = 2.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier

    def should_retry(self, ctx: RetryContext) -> bool:
        return ctx.attempt < self.max_attempts

    def get_delay(self, ctx: RetryContext) -> float:
        ceiling = min(self.max_delay, self.base_delay * (self.multiplier ** (ctx.attempt - 1)))
        return random.uniform(0.0, ceiling) if ceiling > 0 else 0.0


class FleetLauncher:

    def __init__(
        self,
        provider: CloudProvider,
        inventory: NodeInventory,
        policies: PolicyStore,
        catalog: Optional[InstanceCatalog] = None,
        settings: Optional[ControllerSettings] = None,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self._provider = provider
        self._inventory = inventory
        self._policies = policies
        self._catalog = catalog
        self._settings = settings or ControllerSettings()
        self._recorder = recorder if recorder is not None else EventRecorder()
        self._slots = asyncio.Semaphore(self._settings.max_concurrent_launches)
        self._backoff = ExponentialBackoff(
            max_attempts=self._settings.launch_retry_attempts,
            base_delay=self._settings.launch_retry_base_delay,
            max_delay=self._settings.launch_retry_max_delay,
        )
        self._reapers: Set[asyncio.Task] = set()

    # ── Launch ────────────────────────────────────────────────────────────────

    async def launch(self, candidate: Candidate, request_token: str) -> ManagedNode:
        """
        Launch one instance for `candidate`.

        Raises:
            CapacityUnavailableError, QuotaExceededError, RetryExhaustedError
            PolicyViolationError if the candidate's NodeClass disappeared.
        """
        existing = self._inventory.by_token(request_token)
        if existing is not None:
            logger.info("launch %s already issued → %s", request_token, existing.provider_id)
            return existing

        request = self._build_request(candidate, request_token)
        ctx = RetryContext(operation=f"launch {candidate.describe()}")
        while True:
            try:
                desc = await self._call_launch(request)
                break
            except TransientError as exc:
                ctx.attempt += 1
                if not self._backoff.should_retry(ctx):
                    logger.warning("%s: giving up after %d attempt(s) in %.2fs",
                                   ctx.operation, ctx.attempt, ctx.elapsed_time)
                    raise RetryExhaustedError(
                        exc.reason, ctx.attempt, candidate.offering_key
                    ) from exc
                delay = self._backoff.get_delay(ctx)
                ctx.total_delay += delay
                logger.warning("%s: transient error (%s), retry %d/%d in %.2fs",
                               ctx.operation, exc.reason, ctx.attempt,
                               self._backoff.max_attempts, delay)
                await asyncio.sleep(delay)
            except CapacityUnavailableError as exc:
                if self._catalog is not None:
                    self._catalog.unavailable.mark(candidate.offering_key, exc.reason)
                raise

        node = self._inventory.add(ManagedNode(
            provider_id=desc.provider_id,
            request_token=request_token,
            shape=candidate.shape,
            architecture=candidate.architecture,
            node_class=candidate.node_class,
            node_pool=candidate.node_pool,
            zone=candidate.zone,
            capacity_type=candidate.capacity_type,
            price_per_hour=candidate.price_per_hour,
            allocatable=candidate.allocatable,
            labels=dict(candidate.labels),
            taints=list(candidate.taints),
            phase=NodePhase.REGISTERING,
            launched_at=desc.launched_at,
        ))
        self._recorder.record(
            DecisionKind.LAUNCHED, node.provider_id,
            f"launched {candidate.describe()}",
            token=request_token, attempts=ctx.attempt + 1,
            retry_delay_s=round(ctx.total_delay, 3),
        )
        return node

    def _build_request(self, candidate: Candidate, request_token: str) -> LaunchRequest:
        node_class = self._policies.node_class(candidate.node_class)
        if node_class is None:
            raise PolicyViolationError(f"NodeClass {candidate.node_class!r} no longer exists")
        tags = dict(node_class.tags)
        tags.update({
            TAG_MANAGED_BY: "autoscaler",
            TAG_REQUEST_TOKEN: request_token,
            LABEL_NODEPOOL: candidate.node_pool,
        })
        return LaunchRequest(
            client_token=request_token,
            shape=candidate.shape,
            zone=candidate.zone,
            capacity_type=candidate.capacity_type,
            image_id=node_class.image_id,
            instance_profile=node_class.instance_profile,
            user_data=node_class.user_data,
            tags=tags,
            labels=dict(candidate.labels),
            taints=list(candidate.taints),
        )

    async def _call_launch(self, request: LaunchRequest) -> InstanceDescription:
        async with self._slots:
            call = asyncio.ensure_future(self._provider.launch(request))
            try:
                return await asyncio.shield(call)
            except asyncio.CancelledError:
                logger.warning("launch %s cancelled in flight; instance will be reaped",
                               request.client_token)
                call.add_done_callback(self._reap_cancelled)
                raise

    def _reap_cancelled(self, call: "asyncio.Future[InstanceDescription]") -> None:
        if call.cancelled() or call.exception() is not None:
            return
        reaper = asyncio.ensure_future(self._provider.terminate(call.result().provider_id))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    # ── Teardown ──────────────────────────────────────────────────────────────

    async def terminate(self, node: ManagedNode, reason: str) -> None:
        """
        Terminate `node` and drop it from the inventory.

        Callers that mutate the node in several steps hold its inventory
        lock; this method does not take it.
        """
        if node.provider_id in self._inventory:
            self._inventory.set_phase(node.provider_id, NodePhase.TERMINATING)
        async with self._slots:
            await self._provider.terminate(node.provider_id)
        node.phase = NodePhase.TERMINATED
        self._inventory.remove(node.provider_id)
        self._recorder.record(
            DecisionKind.TERMINATED, node.provider_id,
            f"terminated {node.shape} ({reason})",
            pool=node.node_pool,
        )
