"""
autoscaler/shared/events.py
───────────────────────────
Structured decision records.

Every planning decision, launch outcome, registration timeout, drain and
interruption produces one DecisionRecord. Records are logged and kept in a
bounded history so operators (and tests) can see why capacity changed.
Shipping them to a metrics or events backend is outside this package.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from autoscaler.shared.models import utcnow

logger = logging.getLogger(__name__)


class DecisionKind(str, Enum):
    UNSCHEDULABLE = "unschedulable"
    PLAN_COMPUTED = "plan-computed"
    LAUNCHED = "launched"
    LAUNCH_FALLBACK = "launch-fallback"
    LAUNCH_FAILED = "launch-failed"
    LAUNCH_CANCELLED = "launch-cancelled"
    REGISTERED = "registered"
    REGISTRATION_TIMEOUT = "registration-timeout"
    BOUND = "bound"
    CONSOLIDATION_PROPOSED = "consolidation-proposed"
    DRAIN_STARTED = "drain-started"
    DRAIN_PREEMPTED = "drain-preempted"
    DRAIN_ABORTED = "drain-aborted"
    DRAIN_DEGRADED = "drain-degraded"
    TERMINATED = "terminated"
    INTERRUPTION = "interruption"


class DecisionRecord(BaseModel):
    """
    One structured event.

    subject is the id of the object the decision concerns: a request id,
    a workload id, or a node provider id.
    """
    kind: DecisionKind
    subject: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class EventRecorder:
    """
    Bounded in-memory sink for DecisionRecords.

    Usage:
        recorder = EventRecorder()
        recorder.record(DecisionKind.LAUNCHED, "i-0abc", "launched m5.large")
        recorder.for_subject("i-0abc")
    """

    def __init__(self, max_records: int = 1000) -> None:
        self._records: Deque[DecisionRecord] = deque(maxlen=max_records)

    def record(
        self,
        kind: DecisionKind,
        subject: str,
        message: str,
        level: int = logging.INFO,
        **details: Any,
    ) -> DecisionRecord:
        entry = DecisionRecord(kind=kind, subject=subject, message=message, details=details)
        self._records.append(entry)
        logger.log(level, "[%s] %s: %s", kind.value, subject, message)
        return entry

    def records(self, kind: Optional[DecisionKind] = None) -> List[DecisionRecord]:
        if kind is None:
            return list(self._records)
        return [r for r in self._records if r.kind == kind]

    def for_subject(self, subject: str) -> List[DecisionRecord]:
        return [r for r in self._records if r.subject == subject]

    def __len__(self) -> int:
        return len(self._records)
