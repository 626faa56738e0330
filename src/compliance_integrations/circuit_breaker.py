"""
Per-integration circuit breaker.

Prevents:
- Hammering a provider that is persistently failing
- Burning retry budgets on calls that cannot succeed
- Cascading overload while a provider recovers

States:
- CLOSED: Normal operation, syncs pass through
- OPEN: Too many consecutive failed syncs, syncs rejected without a provider call
- HALF_OPEN: Reset period elapsed, one trial sync permitted

Transition rules:
- CLOSED → OPEN: consecutive failed sync outcomes reach the threshold
- OPEN → HALF_OPEN: reset period elapsed since opening
- HALF_OPEN → CLOSED: trial sync succeeded (counter cleared)
- HALF_OPEN → OPEN: trial sync failed (reset timer restarts)
- Any success while CLOSED clears the counter

Failures are counted per sync outcome, after the retry executor has finished,
never per retry attempt. State is persisted through the store with an atomic
read-modify-write so it survives restarts and is shared across instances.
The per-integration sync lock guarantees only one half-open trial runs.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .exceptions import CircuitOpen
from .models import CircuitBreakerState, CircuitState, utc_now
from .storage import IntegrationStore

logger = logging.getLogger(__name__)


DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_SECONDS = 600


# =============================================================================
# TRANSITIONS (pure)
# =============================================================================

def reopen_at(state: CircuitBreakerState, reset_seconds: int) -> Optional[datetime]:
    """When an open breaker becomes eligible for a half-open trial."""
    if state.state != CircuitState.OPEN or state.opened_at is None:
        return None
    return state.opened_at + timedelta(seconds=reset_seconds)


def admit(state: CircuitBreakerState, now: datetime,
          reset_seconds: int) -> CircuitBreakerState:
    """
    Apply the time-based OPEN → HALF_OPEN transition.

    Returns the (possibly updated) state; callers check `.state` to see
    whether the call is admitted.
    """
    if state.state == CircuitState.OPEN:
        retry_at = reopen_at(state, reset_seconds)
        if retry_at is None or now >= retry_at:
            return replace(state, state=CircuitState.HALF_OPEN, updated_at=now)
    return state


def on_success(state: CircuitBreakerState, now: datetime) -> CircuitBreakerState:
    return replace(
        state,
        state=CircuitState.CLOSED,
        consecutive_failures=0,
        opened_at=None,
        updated_at=now,
    )


def on_failure(state: CircuitBreakerState, now: datetime,
               threshold: int) -> CircuitBreakerState:
    failures = state.consecutive_failures + 1

    if state.state == CircuitState.HALF_OPEN:
        return replace(state, state=CircuitState.OPEN, consecutive_failures=failures,
                       opened_at=now, updated_at=now)

    if state.state == CircuitState.OPEN:
        # Outcome arrived while open (should not happen under the sync lock);
        # keep the breaker open without moving the timer
        return replace(state, consecutive_failures=failures, updated_at=now)

    if failures >= threshold:
        return replace(state, state=CircuitState.OPEN, consecutive_failures=failures,
                       opened_at=now, updated_at=now)

    return replace(state, consecutive_failures=failures, updated_at=now)


# =============================================================================
# BREAKER
# =============================================================================

class CircuitBreaker:
    """
    Store-backed circuit breaker.

    Thresholds are process defaults; callers pass per-integration overrides.
    """

    def __init__(
        self,
        store: IntegrationStore,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_seconds: int = DEFAULT_RESET_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self._clock = clock

    async def before_call(
        self,
        integration_id: str,
        reset_seconds: Optional[int] = None
    ) -> CircuitBreakerState:
        """
        Admit or reject a sync.

        Returns:
            The breaker state the sync runs under (CLOSED or HALF_OPEN)

        Raises:
            CircuitOpen: Breaker open and reset period not yet elapsed
        """
        reset = reset_seconds or self.reset_seconds
        now = self._clock()

        def mutate(state: CircuitBreakerState) -> CircuitBreakerState:
            return admit(state, now, reset)

        state = await self.store.update_circuit_state(integration_id, mutate)

        if state.state == CircuitState.OPEN:
            raise CircuitOpen(integration_id, retry_after=reopen_at(state, reset))

        if state.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit half-open, admitting trial sync: integration={integration_id}")

        return state

    async def record_success(self, integration_id: str) -> CircuitBreakerState:
        now = self._clock()
        state = await self.store.update_circuit_state(
            integration_id, lambda s: on_success(s, now)
        )
        return state

    async def record_failure(
        self,
        integration_id: str,
        threshold: Optional[int] = None
    ) -> CircuitBreakerState:
        limit = threshold or self.failure_threshold
        now = self._clock()
        previous = {}

        def mutate(state: CircuitBreakerState) -> CircuitBreakerState:
            previous["state"] = state.state
            return on_failure(state, now, limit)

        state = await self.store.update_circuit_state(integration_id, mutate)

        if state.state == CircuitState.OPEN and previous.get("state") != CircuitState.OPEN:
            logger.warning(
                f"Circuit opened: integration={integration_id} "
                f"consecutive_failures={state.consecutive_failures} threshold={limit}"
            )
        return state

    async def get_state(self, integration_id: str) -> CircuitBreakerState:
        return await self.store.get_circuit_state(integration_id)

    async def snapshot(
        self,
        integration_id: str,
        reset_seconds: Optional[int] = None
    ) -> Dict[str, Any]:
        """Breaker state for dashboards, including when an open breaker re-admits."""
        state = await self.get_state(integration_id)
        retry_at = reopen_at(state, reset_seconds or self.reset_seconds)
        data = state.to_dict()
        data["retry_after"] = retry_at.isoformat() if retry_at else None
        return data

    async def reset(self, integration_id: str) -> CircuitBreakerState:
        """Manually close the breaker (operator action)."""
        now = self._clock()
        state = await self.store.update_circuit_state(
            integration_id, lambda s: on_success(s, now)
        )
        logger.info(f"Circuit manually reset: integration={integration_id}")
        return state
