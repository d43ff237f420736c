"""
autoscaler/catalog — instance shapes, offerings and prices.

Public API:
    InstanceCatalog       — cached provider catalog + allocatable maths
    UnavailableOfferings  — TTL cache of exhausted offerings
"""

from autoscaler.catalog.pricing import InstanceCatalog, UnavailableOfferings

__all__ = ["InstanceCatalog", "UnavailableOfferings"]
