"""
Bounded exponential backoff for provisioning calls.

The driver is an explicit loop: sleep, clock and error classification are
all injected so tests can run it without waiting.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Generic, TypeVar

from vpnpool.common import settings
from vpnpool.common.errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    ABORTED = "aborted"


@dataclass
class RetryPolicy:
    max_attempts: int = field(default_factory=lambda: settings.PROVISION_MAX_ATTEMPTS)
    base_delay: float = field(default_factory=lambda: settings.PROVISION_BASE_DELAY)
    max_delay: float = field(default_factory=lambda: settings.PROVISION_MAX_DELAY)
    jitter: bool = field(default_factory=lambda: settings.PROVISION_RETRY_JITTER)

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        delay = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


@dataclass
class RetryResult(Generic[T]):
    outcome: Outcome
    attempts: int
    value: T | None = None
    error: Exception | None = None
    delays: list[float] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    @property
    def last_error(self) -> str:
        return str(self.error) if self.error else "unknown error"


def is_transient(error: Exception) -> bool:
    return isinstance(error, (TransientProviderError, TimeoutError, ConnectionError))


def run_with_retry(
    operation: Callable[[int], T],
    policy: RetryPolicy | None = None,
    classifier: Callable[[Exception], bool] = is_transient,
    before_attempt: Callable[[int], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryResult[T]:
    """Call `operation(attempt)` until it succeeds or the policy gives up.

    `before_attempt(attempt)` runs ahead of every call; returning False
    stops the loop with an ABORTED outcome and no further calls.
    `classifier(error)` returns True for errors worth retrying. Anything
    else ends the loop with a FATAL outcome.
    """
    policy = policy or RetryPolicy()
    delays: list[float] = []
    error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if before_attempt is not None and not before_attempt(attempt):
            logger.info(f"Retry loop aborted before attempt {attempt}")
            return RetryResult(Outcome.ABORTED, attempt - 1, error=error, delays=delays)

        try:
            value = operation(attempt)
        except Exception as e:
            error = e
            if not classifier(e):
                logger.error(f"Attempt {attempt} failed with a fatal error: {e}")
                return RetryResult(Outcome.FATAL, attempt, error=e, delays=delays)
            logger.warning(f"Attempt {attempt}/{policy.max_attempts} failed: {e}")
        else:
            return RetryResult(Outcome.SUCCEEDED, attempt, value=value, delays=delays)

        if attempt < policy.max_attempts:
            delay = policy.delay_after(attempt)
            delays.append(delay)
            logger.info(f"Retrying in {delay:.2f}s (attempt {attempt + 1})")
            sleep(delay)

    return RetryResult(Outcome.EXHAUSTED, policy.max_attempts, error=error, delays=delays)
