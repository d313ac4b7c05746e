"""
Retry and circuit-breaker policy for external calls (STT, LLM, TTS, rooms).

Each external dependency gets a declarative CallPolicy and its own
CircuitBreaker. After `failure_threshold` consecutive failures the breaker
opens and calls are short-circuited with CircuitOpenError until
`cooldown_s` has passed; the caller then takes its fallback path.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ExternalCallError(Exception):
    """An external call failed after exhausting its retry budget."""

    def __init__(self, name: str, cause: Optional[BaseException] = None):
        message = f"{name} call failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.name = name
        self.cause = cause


class CircuitOpenError(ExternalCallError):
    """The breaker for this dependency is open; no call was made."""

    def __init__(self, name: str, retry_in_s: float):
        super().__init__(name)
        self.args = (f"{name} circuit open, retry in {retry_in_s:.1f}s",)
        self.retry_in_s = retry_in_s


@dataclass(frozen=True)
class CallPolicy:
    name: str
    max_attempts: int = 2
    base_delay_s: float = 0.1
    backoff_factor: float = 2.0
    max_delay_s: float = 2.0
    failure_threshold: int = 3
    cooldown_s: float = 30.0
    timeout_s: Optional[float] = None

    @classmethod
    def from_config(cls, name: str, config, timeout_s: Optional[float] = None) -> "CallPolicy":
        return cls(
            name=name,
            max_attempts=config.external_max_attempts,
            base_delay_s=config.external_backoff_base_ms / 1000.0,
            failure_threshold=config.external_failure_threshold,
            cooldown_s=config.external_cooldown_s,
            timeout_s=timeout_s,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based)."""
        return min(self.base_delay_s * (self.backoff_factor ** attempt), self.max_delay_s)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure breaker with a cooldown window."""

    def __init__(self, policy: CallPolicy, clock: Callable[[], float] = time.monotonic):
        self.policy = policy
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if self._clock() - self._opened_at >= self.policy.cooldown_s:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def retry_in(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.policy.cooldown_s - (self._clock() - self._opened_at))

    def allow(self) -> bool:
        return self.state != BreakerState.OPEN

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit closed", dependency=self.policy.name)
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failures += 1
        if self.state == BreakerState.HALF_OPEN:
            # Trial call failed; start a fresh cooldown.
            self._opened_at = self._clock()
            logger.warning("Circuit re-opened", dependency=self.policy.name)
        elif self._opened_at is None and self._failures >= self.policy.failure_threshold:
            self._opened_at = self._clock()
            logger.warning(
                "Circuit opened",
                dependency=self.policy.name,
                failures=self._failures,
                cooldown_s=self.policy.cooldown_s,
            )


class ResilientCaller:
    """Runs an async operation under a CallPolicy and its breaker."""

    def __init__(
        self,
        policy: CallPolicy,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy
        self.breaker = breaker or CircuitBreaker(policy)
        self._sleep = sleep

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Await `operation()` with retries.

        Raises:
            CircuitOpenError: breaker open, operation not attempted
            ExternalCallError: every attempt failed
        """
        if not self.breaker.allow():
            raise CircuitOpenError(self.policy.name, self.breaker.retry_in())

        last_error: Optional[BaseException] = None
        for attempt in range(self.policy.max_attempts):
            try:
                if self.policy.timeout_s:
                    result = await asyncio.wait_for(operation(), timeout=self.policy.timeout_s)
                else:
                    result = await operation()
                self.breaker.record_success()
                return result
            except Exception as e:
                last_error = e
                logger.warning(
                    "External call attempt failed",
                    dependency=self.policy.name,
                    attempt=attempt + 1,
                    max_attempts=self.policy.max_attempts,
                    error=str(e) or type(e).__name__,
                )
                if attempt < self.policy.max_attempts - 1:
                    await self._sleep(self.policy.delay_for(attempt))

        self.breaker.record_failure()
        raise ExternalCallError(self.policy.name, last_error)
