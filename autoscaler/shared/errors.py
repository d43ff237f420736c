"""
autoscaler/shared/errors.py
───────────────────────────
The controller's failure taxonomy.

Every error carries a human-readable ``reason``. Callers catch the specific
class, attach the reason to the ProvisioningRequest, ManagedNode or
DrainTask it concerns and emit a decision record. No single workload's or
node's failure is allowed to escape the loop that handles it.

  ConstraintUnsatisfiableError → no Candidate fits. Reported, not retried
                                 until the next observation tick.
  CapacityUnavailableError     → that shape/zone is exhausted right now.
                                 Recovered by the next-ranked Candidate.
  QuotaExceededError           → account-level limit. Reported; no further
                                 fallback within this cycle.
  TransientError               → network/API hiccup. Retried with bounded
                                 backoff, then RetryExhaustedError.
  LaunchCancelledError         → every workload of a planned node was
                                 scheduled elsewhere. Launch skipped or
                                 the fresh instance torn down.
  RegistrationTimeoutError     → node never joined. Torn down, reported.
  DrainDeadlineExceededError   → partial eviction accepted, reported as
                                 degraded.
"""

from __future__ import annotations

from typing import Optional


class AutoscalerError(Exception):
    """
    Base class for every controller failure.

    Attributes:
        reason: Human-readable explanation, surfaced on the affected object.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ConstraintUnsatisfiableError(AutoscalerError):
    """No Candidate satisfies the workload's hard constraints and size."""

    def __init__(self, workload_id: str, reason: str) -> None:
        self.workload_id = workload_id
        super().__init__(f"{workload_id}: {reason}")


class LaunchError(AutoscalerError):
    """Base for failures returned by the compute provider on launch."""

    def __init__(self, reason: str, offering: Optional[tuple] = None) -> None:
        self.offering = offering
        super().__init__(reason)


class CapacityUnavailableError(LaunchError):
    """The requested shape/zone/capacity type is temporarily exhausted."""


class QuotaExceededError(LaunchError):
    """Account-level limit hit. Operator-actionable."""


class TransientError(LaunchError):
    """Retryable provider or network error."""


class RetryExhaustedError(LaunchError):
    """A TransientError persisted past the retry budget."""

    def __init__(self, reason: str, attempts: int, offering: Optional[tuple] = None) -> None:
        self.attempts = attempts
        super().__init__(f"{reason} (after {attempts} attempts)", offering)


class LaunchCancelledError(AutoscalerError):
    """The workloads behind a launch were scheduled elsewhere first."""


class RegistrationTimeoutError(AutoscalerError):
    """A launched instance did not register with the orchestrator in time."""

    def __init__(self, provider_id: str, timeout_s: float) -> None:
        self.provider_id = provider_id
        self.timeout_s = timeout_s
        super().__init__(
            f"node {provider_id} did not register within {timeout_s:.1f}s"
        )


class DrainDeadlineExceededError(AutoscalerError):
    """Drain deadline passed with workloads still on the node."""

    def __init__(self, node_id: str, remaining: int) -> None:
        self.node_id = node_id
        self.remaining = remaining
        super().__init__(
            f"drain deadline exceeded on {node_id} with {remaining} workload(s) "
            f"not evicted"
        )


class PolicyViolationError(AutoscalerError):
    """An operator declaration change would break a NodeClass/NodePool invariant."""
