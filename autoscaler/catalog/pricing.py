"""
autoscaler/catalog/pricing.py
─────────────────────────────
What capacity can be bought, what it offers, and what it costs.

Two pieces
───────────
InstanceCatalog
    Cached copy of the provider's instance shapes and offerings, refreshed
    when older than `catalog_refresh_interval`. Translates raw shape
    capacity into allocatable capacity for a NodeClass:

        allocatable = capacity − kube_reserved − memory × vm_overhead

UnavailableOfferings
    Short-lived memory of offerings that just failed. When the provider
    answers CapacityUnavailable for (shape, zone, capacity type), or reclaims
    spot capacity of that offering, the offering is hidden for
    `unavailable_offering_ttl` seconds so the next planning pass does not pick
    it again straight away.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from autoscaler.shared.config import ControllerSettings
from autoscaler.shared.models import (
    InstanceShape,
    NodeClass,
    Offering,
    OfferingKey,
    Resources,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class UnavailableOfferings:
    """
    TTL cache of exhausted offerings.

    Usage:
        cache = UnavailableOfferings(ttl=180.0)
        cache.mark(("c.xlarge", "us-east-1a", "spot"), "capacity unavailable")
        cache.is_unavailable(("c.xlarge", "us-east-1a", "spot"))   # True
    """

    def __init__(self, ttl: float, clock: Clock = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[OfferingKey, Tuple[float, str]] = {}

    def mark(self, key: OfferingKey, reason: str, ttl: Optional[float] = None) -> None:
        expires = self._clock() + (self._ttl if ttl is None else ttl)
        self._entries[key] = (expires, reason)
        logger.info("offering %s marked unavailable for %.0fs: %s", "/".join(key),
                    self._ttl if ttl is None else ttl, reason)

    def is_unavailable(self, key: OfferingKey) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry[0] <= self._clock():
            del self._entries[key]
            return False
        return True

    def reason(self, key: OfferingKey) -> Optional[str]:
        if not self.is_unavailable(key):
            return None
        return self._entries[key][1]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return sum(1 for key in list(self._entries) if self.is_unavailable(key))


class InstanceCatalog:
    """
    Cached, refreshable catalog of instance shapes.

    The catalog can be seeded directly with `load()` (tests, static
    pricing files) or fetched from a CloudProvider with `refresh()`.
    """

    def __init__(
        self,
        provider=None,
        settings: Optional[ControllerSettings] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._provider = provider
        self._settings = settings or ControllerSettings()
        self._clock = clock
        self._shapes: Dict[str, InstanceShape] = {}
        self._fetched_at: Optional[float] = None
        self.unavailable = UnavailableOfferings(
            ttl=self._settings.unavailable_offering_ttl, clock=clock,
        )

    # ── Loading ──────────────────────────────────────────────────────────────

    def load(self, shapes: List[InstanceShape]) -> None:
        self._shapes = {shape.name: shape for shape in shapes}
        self._fetched_at = self._clock()
        logger.info("catalog loaded with %d shape(s)", len(self._shapes))

    async def refresh(self) -> None:
        if self._provider is None:
            return
        shapes = await self._provider.describe_catalog()
        self.load(shapes)

    @property
    def is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return self._clock() - self._fetched_at >= self._settings.catalog_refresh_interval

    async def refresh_if_stale(self) -> bool:
        """Refresh when stale. Returns True if a refresh happened."""
        if not self.is_stale or self._provider is None:
            return False
        await self.refresh()
        return True

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def shapes(self) -> List[InstanceShape]:
        return list(self._shapes.values())

    def get(self, name: str) -> Optional[InstanceShape]:
        return self._shapes.get(name)

    def shapes_for(self, node_class: NodeClass) -> List[InstanceShape]:
        """Shapes a NodeClass is allowed to launch."""
        if not node_class.allowed_instance_types:
            return self.shapes
        allowed = set(node_class.allowed_instance_types)
        return [s for s in self._shapes.values() if s.name in allowed]

    def allocatable(self, shape: InstanceShape, node_class: NodeClass) -> Resources:
        capacity = shape.capacity
        overhead = Resources(
            memory_gib=capacity.memory_gib * self._settings.vm_memory_overhead_percent
        )
        return capacity - overhead - node_class.kube_reserved

    def offerings_for(self, shape: InstanceShape, node_class: NodeClass) -> List[Offering]:
        """
        Offerings of `shape` the NodeClass may use right now.

        Filters: capacity type allowed by the class, zone in the class's
        network placement, provider reports it available, and not in the
        unavailable-offerings cache.
        """
        result: List[Offering] = []
        zones = set(node_class.zones)
        for offering in shape.offerings:
            if not offering.available:
                continue
            if offering.capacity_type not in node_class.allowed_capacity_types:
                continue
            if zones and offering.zone not in zones:
                continue
            key = (shape.name, offering.zone, offering.capacity_type.value)
            if self.unavailable.is_unavailable(key):
                continue
            result.append(offering)
        return result

    def price_of(self, shape_name: str, zone: str, capacity_type: str) -> Optional[float]:
        shape = self._shapes.get(shape_name)
        if shape is None:
            return None
        for offering in shape.offerings:
            if offering.zone == zone and offering.capacity_type.value == capacity_type:
                return offering.price_per_hour
        return None

    def __repr__(self) -> str:
        return (
            f"InstanceCatalog(shapes={len(self._shapes)}, "
            f"unavailable={len(self.unavailable)})"
        )
