"""
Error taxonomy for the RMRI engine.

Every error carries a short ``label`` that is safe to show to users and a
``retryable`` flag the job dispatcher consults before scheduling another
attempt. Raw provider text stays in the logs; ``describe_error`` produces the
user-visible pair.
"""

import asyncio
from typing import Tuple


class RMRIError(Exception):
    """Base class for all engine errors."""

    label = "internal_error"
    retryable = False

    def __init__(self, message: str = "", reason: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.reason = reason or message


class TransientProviderError(RMRIError):
    """The text-generation collaborator failed in a way worth retrying."""

    label = "provider_error"
    retryable = True


class ProviderUnavailable(TransientProviderError):
    label = "provider_unavailable"


class SafetyBlocked(TransientProviderError):
    label = "safety_blocked"


class ProviderTimeout(TransientProviderError):
    label = "provider_timeout"


class SizeLimitExceeded(RMRIError):
    """A context payload is larger than the per-artifact limit."""

    label = "size_limit_exceeded"

    def __init__(self, size_bytes: int, limit_bytes: int):
        super().__init__(
            f"Context size {size_bytes} exceeds limit {limit_bytes}",
            reason="context payload too large",
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class InsufficientData(RMRIError):
    """Too many Micro agents failed to continue the iteration."""

    label = "insufficient_data"


class ConvergenceUndefined(RMRIError):
    """There is no previous iteration to compare against (iteration 1)."""

    label = "convergence_undefined"


class VersionConflict(RMRIError):
    """Context versions are inconsistent. Indicates a store bug."""

    label = "version_conflict"


class InvalidTransition(RMRIError):
    """An agent or run status change that its state machine does not allow."""

    label = "invalid_transition"


class RunNotFound(RMRIError):
    label = "run_not_found"


class ResultsNotReady(RMRIError):
    label = "results_not_ready"


class InvalidWeights(RMRIError, ValueError):
    label = "invalid_weights"


def is_retryable(error: BaseException) -> bool:
    """Whether the dispatcher may schedule another attempt after ``error``."""
    if isinstance(error, RMRIError):
        return error.retryable
    # Timeouts and unexpected exceptions count as ordinary failed attempts.
    return True


def describe_error(error: BaseException) -> Tuple[str, str]:
    """Return the ``(label, reason)`` pair shown in run and agent status."""
    if isinstance(error, RMRIError):
        return error.label, error.reason
    if isinstance(error, asyncio.TimeoutError):
        return "timeout", "operation timed out"
    return "internal_error", type(error).__name__
