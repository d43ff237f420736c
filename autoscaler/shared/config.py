"""
autoscaler/shared/config.py
───────────────────────────
Controller settings and operator declarations.

Two layers
──────────
1. Module-level constants — the defaults. Module-level so tests can import
   and assert against them directly.
2. ControllerSettings — a pydantic model built from those constants. One
   instance is handed to the controller and to every component that needs a
   knob. Individual calls still accept keyword overrides where a component
   exposes one.

Operator declarations (NodeClass / NodePool) and settings are read from
YAML documents:

    settings:
      consolidation_interval: 30
    nodeClasses:
      - name: default
        zones: [us-east-1a, us-east-1b]
    nodePools:
      - name: general
        node_class: default
        weight: 10
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import yaml
from pydantic import BaseModel, Field

from autoscaler.shared.models import NodeClass, NodePool

logger = logging.getLogger(__name__)

# ── Observation ───────────────────────────────────────────────────────────────

OBSERVATION_INTERVAL_S: float = 10.0
"""Evaluation tick when no change event arrives."""

BATCH_IDLE_DURATION_S: float = 1.0
"""Close the batch once no new unschedulable workload appeared for this long."""

BATCH_MAX_DURATION_S: float = 10.0
"""Hard cap on how long a batch may keep growing."""

# ── Launch ────────────────────────────────────────────────────────────────────

MAX_CONCURRENT_LAUNCHES: int = 10
"""Size of the launch/terminate worker pool."""

LAUNCH_RETRY_ATTEMPTS: int = 3
"""Total attempts for a launch that keeps failing with TransientError."""

LAUNCH_RETRY_BASE_DELAY_S: float = 0.5
LAUNCH_RETRY_MAX_DELAY_S: float = 8.0

UNAVAILABLE_OFFERING_TTL_S: float = 180.0
"""How long an exhausted (shape, zone, capacity type) stays hidden."""

# ── Registration ──────────────────────────────────────────────────────────────

REGISTRATION_TIMEOUT_S: float = 900.0
"""Hard timeout for a launched instance to appear as a ready node."""

REGISTRATION_POLL_INTERVAL_S: float = 5.0

# ── Consolidation ─────────────────────────────────────────────────────────────

CONSOLIDATION_INTERVAL_S: float = 60.0
"""Bounded cadence: consolidation never runs on individual workload events."""

CONSOLIDATION_UTILIZATION_THRESHOLD: float = 0.5
"""Nodes at or above this dominant-share utilisation are never candidates."""

CONSOLIDATION_COOLDOWN_S: float = 300.0
"""A node younger than this is exempt from consolidation (anti-thrash)."""

CONSOLIDATION_GRACE_PERIOD_S: float = 600.0
"""Deadline granted to a consolidation or manual drain."""

# ── Interruption ──────────────────────────────────────────────────────────────

INTERRUPTION_NOTICE_WINDOW_S: float = 120.0
"""Notice the provider gives before reclaiming spot capacity."""

INTERRUPTION_POLL_INTERVAL_S: float = 1.0

# ── Drain ─────────────────────────────────────────────────────────────────────

DRAIN_WORKERS: int = 2
EVICTION_RETRY_INTERVAL_S: float = 1.0
"""Pause before retrying an eviction the orchestrator refused."""

# ── Catalog ───────────────────────────────────────────────────────────────────

CATALOG_REFRESH_INTERVAL_S: float = 3600.0
VM_MEMORY_OVERHEAD_PERCENT: float = 0.0
"""Fraction of shape memory the hypervisor keeps (AWS is typically 0.075)."""


class ControllerSettings(BaseModel):
    """Every controller knob, defaulting to the module constants above."""

    observation_interval: float = Field(OBSERVATION_INTERVAL_S, gt=0)
    batch_idle_duration: float = Field(BATCH_IDLE_DURATION_S, ge=0)
    batch_max_duration: float = Field(BATCH_MAX_DURATION_S, ge=0)

    max_concurrent_launches: int = Field(MAX_CONCURRENT_LAUNCHES, ge=1)
    launch_retry_attempts: int = Field(LAUNCH_RETRY_ATTEMPTS, ge=1)
    launch_retry_base_delay: float = Field(LAUNCH_RETRY_BASE_DELAY_S, ge=0)
    launch_retry_max_delay: float = Field(LAUNCH_RETRY_MAX_DELAY_S, ge=0)
    unavailable_offering_ttl: float = Field(UNAVAILABLE_OFFERING_TTL_S, ge=0)

    registration_timeout: float = Field(REGISTRATION_TIMEOUT_S, gt=0)
    registration_poll_interval: float = Field(REGISTRATION_POLL_INTERVAL_S, gt=0)

    consolidation_interval: float = Field(CONSOLIDATION_INTERVAL_S, gt=0)
    consolidation_utilization_threshold: float = Field(
        CONSOLIDATION_UTILIZATION_THRESHOLD, gt=0.0, le=1.0
    )
    consolidation_cooldown: float = Field(CONSOLIDATION_COOLDOWN_S, ge=0)
    consolidation_grace_period: float = Field(CONSOLIDATION_GRACE_PERIOD_S, gt=0)

    interruption_notice_window: float = Field(INTERRUPTION_NOTICE_WINDOW_S, gt=0)
    interruption_poll_interval: float = Field(INTERRUPTION_POLL_INTERVAL_S, gt=0)

    drain_workers: int = Field(DRAIN_WORKERS, ge=1)
    eviction_retry_interval: float = Field(EVICTION_RETRY_INTERVAL_S, ge=0)

    catalog_refresh_interval: float = Field(CATALOG_REFRESH_INTERVAL_S, gt=0)
    vm_memory_overhead_percent: float = Field(VM_MEMORY_OVERHEAD_PERCENT, ge=0.0, lt=1.0)


# ── YAML loading ──────────────────────────────────────────────────────────────

PathLike = Union[str, Path]


def _read_yaml(source: Union[PathLike, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(source, dict):
        return source
    with open(source, "r", encoding="utf-8") as fh:
        doc = yaml.safe_load(fh) or {}
    if not isinstance(doc, dict):
        raise ValueError(f"{source}: expected a mapping at the top level")
    return doc


def load_settings(source: Union[PathLike, Dict[str, Any]]) -> ControllerSettings:
    """Read the ``settings`` section of a YAML document. Missing keys keep defaults."""
    doc = _read_yaml(source)
    settings = ControllerSettings(**(doc.get("settings") or {}))
    logger.debug("Loaded controller settings: %s", settings.model_dump())
    return settings


def load_declarations(
    source: Union[PathLike, Dict[str, Any]],
) -> Tuple[List[NodeClass], List[NodePool]]:
    """
    Read NodeClass and NodePool declarations from a YAML document.

    Accepts both ``nodeClasses``/``nodePools`` and snake_case keys. Schema
    errors surface as pydantic ValidationError naming the offending field.
    """
    doc = _read_yaml(source)
    raw_classes = doc.get("nodeClasses", doc.get("node_classes")) or []
    raw_pools = doc.get("nodePools", doc.get("node_pools")) or []

    node_classes = [NodeClass(**item) for item in raw_classes]
    node_pools = [NodePool(**item) for item in raw_pools]

    logger.info(
        "Loaded %d NodeClass and %d NodePool declaration(s)",
        len(node_classes), len(node_pools),
    )
    return node_classes, node_pools
