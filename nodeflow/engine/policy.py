"""
Failure and retry policies.

Everything here is opt-in. By default every handler error is retried up to
the node's `retries`, and a failed node's successors follow the executor's
DownstreamPolicy.
"""

from typing import Any, Optional
from enum import Enum
import threading
import logging


logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    """Per-node override of what a failure of this node means for the run."""
    FAIL_FAST = "fail_fast"                    # Stop scheduling further waves
    CONTINUE = "continue"                      # Successors run anyway
    SKIP_DOWNSTREAM = "skip_downstream"        # Successors are skipped
    USE_FALLBACK_VALUE = "use_fallback_value"  # Output config.fallbackValue and succeed


RETRYABLE_STATUS_CODES = frozenset({408, 429})

_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "429",
    "rate limit",
    "internal server error",
    "bad gateway",
    "service unavailable",
)


def is_retryable_error(error: BaseException) -> bool:
    """
    Whether an error looks transient: timeouts, dropped connections,
    rate limiting or a 5xx from an upstream service.

    An integer `status_code` / `status` attribute on the error (as HTTP client
    errors usually carry) is checked before the message text.
    """
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status, int):
        return status in RETRYABLE_STATUS_CODES or 500 <= status < 600

    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def failure_policy_of(value: Any) -> Optional[FailurePolicy]:
    """Parse a node's failurePolicy config value; None when unset."""
    if value is None:
        return None
    return FailurePolicy(value)


class RunCircuitBreaker:
    """
    Counts failed attempts across one run and stops retries once the count
    reaches the threshold. A threshold of 0 disables the breaker.
    """

    def __init__(self, threshold: int = 0):
        self.threshold = threshold
        self.failure_count = 0
        self._lock = threading.Lock()

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            if self.threshold and self.failure_count == self.threshold:
                logger.warning(
                    f"Circuit breaker opened after {self.failure_count} failed attempts"
                )

    def is_open(self) -> bool:
        return self.threshold > 0 and self.failure_count >= self.threshold
