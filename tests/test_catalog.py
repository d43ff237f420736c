"""
tests/test_catalog.py
─────────────────────
Test suite for autoscaler/catalog/pricing.py

Test groups
────────────
Group 1: allocatable and offerings — reservations, NodeClass filters
Group 2: UnavailableOfferings      — TTL expiry with a fake clock
Group 3: refresh                   — staleness, provider fetch
"""

from __future__ import annotations

import asyncio

import pytest

from autoscaler.catalog.pricing import InstanceCatalog, UnavailableOfferings
from autoscaler.providers.simulated import SimulatedCloudProvider
from autoscaler.shared.models import CapacityType, NodeClass, Offering, Resources

from conftest import make_settings, make_shape


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _two_zone_shape():
    shape = make_shape(
        "m.large", 4, 8, 0.1,
        zones=("z1", "z2"),
        capacity_types=(CapacityType.SPOT, CapacityType.ON_DEMAND),
    )
    shape.offerings.append(
        Offering(zone="z3", capacity_type=CapacityType.SPOT, price_per_hour=0.01, available=False)
    )
    return shape


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: allocatable and offerings
# ─────────────────────────────────────────────────────────────────────────────

class TestAllocatableAndOfferings:

    def test_allocatable_subtracts_reservations_and_vm_overhead(self):
        catalog = InstanceCatalog(settings=make_settings(vm_memory_overhead_percent=0.1))
        node_class = NodeClass(
            name="default", kube_reserved=Resources(cpu=0.1, memory_gib=0.5),
        )
        alloc = catalog.allocatable(make_shape("m.large", 4, 8, 0.1), node_class)
        assert alloc.cpu == pytest.approx(3.9)
        assert alloc.memory_gib == pytest.approx(8 - 0.8 - 0.5)
        assert alloc.pods == 110

    def test_offerings_filtered_by_class_capacity_type_and_zone(self):
        catalog = InstanceCatalog()
        shape = _two_zone_shape()
        node_class = NodeClass(
            name="spot-z1", allowed_capacity_types=[CapacityType.SPOT], zones=["z1", "z3"],
        )
        offerings = catalog.offerings_for(shape, node_class)
        assert [(o.zone, o.capacity_type) for o in offerings] == [("z1", CapacityType.SPOT)]

    def test_unavailable_offering_is_hidden(self):
        catalog = InstanceCatalog()
        shape = _two_zone_shape()
        catalog.unavailable.mark(("m.large", "z1", "spot"), "insufficient capacity")
        zones = {
            (o.zone, o.capacity_type.value)
            for o in catalog.offerings_for(shape, NodeClass(name="default"))
        }
        assert ("z1", "spot") not in zones
        assert ("z1", "on-demand") in zones

    def test_shapes_for_respects_allowed_instance_types(self):
        catalog = InstanceCatalog()
        catalog.load([make_shape("a", 2, 4, 0.1), make_shape("b", 4, 8, 0.2)])
        assert [s.name for s in catalog.shapes_for(NodeClass(name="x"))] == ["a", "b"]
        only_b = NodeClass(name="y", allowed_instance_types=["b"])
        assert [s.name for s in catalog.shapes_for(only_b)] == ["b"]

    def test_price_lookup(self):
        catalog = InstanceCatalog()
        catalog.load([_two_zone_shape()])
        assert catalog.price_of("m.large", "z2", "on-demand") == pytest.approx(0.1)
        assert catalog.price_of("m.large", "z9", "spot") is None
        assert catalog.price_of("nope", "z1", "spot") is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: UnavailableOfferings
# ─────────────────────────────────────────────────────────────────────────────

class TestUnavailableOfferings:

    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = UnavailableOfferings(ttl=180.0, clock=clock)
        key = ("c.xlarge", "z1", "spot")
        cache.mark(key, "reclaimed")
        assert cache.is_unavailable(key)
        assert cache.reason(key) == "reclaimed"

        clock.now = 179.0
        assert len(cache) == 1
        clock.now = 180.0
        assert not cache.is_unavailable(key)
        assert len(cache) == 0

    def test_per_entry_ttl_override(self):
        clock = FakeClock()
        cache = UnavailableOfferings(ttl=180.0, clock=clock)
        cache.mark(("a", "z1", "spot"), "short", ttl=5.0)
        clock.now = 6.0
        assert cache.reason(("a", "z1", "spot")) is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: refresh
# ─────────────────────────────────────────────────────────────────────────────

class TestRefresh:

    def test_refresh_only_when_stale(self):
        clock = FakeClock()
        provider = SimulatedCloudProvider(catalog=[make_shape("a", 2, 4, 0.1)])
        catalog = InstanceCatalog(
            provider, make_settings(catalog_refresh_interval=60.0), clock=clock,
        )

        async def scenario():
            assert catalog.is_stale
            assert await catalog.refresh_if_stale()
            assert [s.name for s in catalog.shapes] == ["a"]
            clock.now = 59.0
            assert not await catalog.refresh_if_stale()
            provider.catalog.append(make_shape("b", 4, 8, 0.2))
            clock.now = 60.0
            assert await catalog.refresh_if_stale()

        asyncio.run(scenario())
        assert catalog.get("b") is not None

    def test_catalog_without_provider_never_refreshes(self):
        catalog = InstanceCatalog()
        assert asyncio.run(catalog.refresh_if_stale()) is False
