"""
Bounded exponential-backoff retry for one logical sync.

The executor knows nothing about circuit breaking: every attempt it makes
for one call counts as a single outcome for the breaker, which wraps it.

Backoff before retrying after attempt k:

    delay_ms(k) = min(backoff_base_ms * 2 ** (k - 1), backoff_max_ms)

Rate-limited failures use the same capped formula so total sync latency
stays bounded.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .error_classifier import ErrorKind, classify
from .exceptions import SyncAttemptFailed, SyncCancelled
from .models import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def backoff_delay_ms(attempt: int, policy: RetryPolicy) -> int:
    """
    Delay in milliseconds before the retry that follows `attempt`.

    Args:
        attempt: 1-based number of the attempt that just failed
        policy: Retry configuration

    Returns:
        min(base * 2^(attempt-1), max)
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    # Cap the exponent before multiplying so large attempts don't build huge ints
    exponent = min(attempt - 1, 62)
    return min(policy.backoff_base_ms * (2 ** exponent), policy.backoff_max_ms)


def should_retry(kind: ErrorKind, attempt: int, policy: RetryPolicy) -> bool:
    """Whether a failure of `kind` on `attempt` gets another attempt."""
    return policy.retry_enabled and kind.retryable and attempt < policy.max_attempts


class RetryExecutor:
    """
    Runs an async operation under a RetryPolicy.

    Each attempt is bounded by call_timeout_seconds; a timeout classifies
    as transient. A cancellation check and the optional before_attempt hook
    run at every retry boundary.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        call_timeout_seconds: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
        is_cancelled: Optional[Callable[[], bool]] = None,
        classifier: Callable[[BaseException], ErrorKind] = classify,
        label: str = "",
        before_attempt: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.policy = policy
        self.call_timeout_seconds = call_timeout_seconds
        self._sleep = sleep
        self._is_cancelled = is_cancelled or (lambda: False)
        self._before_attempt = before_attempt
        self._classify = classifier
        self.label = label
        self.attempts = 0
        self.total_delay_ms = 0

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.call_timeout_seconds is None:
            return await operation()
        return await asyncio.wait_for(operation(), timeout=self.call_timeout_seconds)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` until it succeeds or retrying stops.

        Returns:
            The operation's result

        Raises:
            SyncAttemptFailed: Terminal failure, annotated with kind and attempt count
            SyncCancelled: Cancellation observed at a retry boundary
        """
        self.attempts = 0
        self.total_delay_ms = 0

        while True:
            if self._is_cancelled():
                raise SyncCancelled(f"Cancelled before attempt {self.attempts + 1}")
            if self._before_attempt is not None:
                await self._before_attempt()

            self.attempts += 1
            try:
                return await self._attempt(operation)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = self._classify(e)

                if not should_retry(kind, self.attempts, self.policy):
                    logger.warning(
                        f"Sync attempt failed, giving up: {self.label} "
                        f"attempt={self.attempts}/{self.policy.max_attempts} kind={kind.value} "
                        f"error={type(e).__name__}"
                    )
                    raise SyncAttemptFailed(kind, self.attempts, e) from e

                delay_ms = backoff_delay_ms(self.attempts, self.policy)
                self.total_delay_ms += delay_ms
                logger.info(
                    f"Sync attempt failed, retrying: {self.label} "
                    f"attempt={self.attempts}/{self.policy.max_attempts} kind={kind.value} "
                    f"delay_ms={delay_ms}"
                )
                await self._sleep(delay_ms / 1000.0)
