from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sspgen.core.config import get_settings
from sspgen.core.errors import IntegrationUnavailableError
from sspgen.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.generation_timeout_ms,
        max_attempts=settings.generation_retry_max_attempts,
        backoff_ms=settings.generation_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.info("retry_scheduled attempt=%s sleep_s=%.3f error=%s", attempt, sleep_s, exc)
            await asyncio.sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    """In-process breaker: closed -> open after N failures, half_open after a cool-down."""

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._time = time_source or time.monotonic
        self._state = CircuitBreakerState("closed", 0, None, 0)
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> str:
        return self._state.state

    def _transition(self, target: str) -> None:
        if self._state.state != target:
            logger.warning(
                "circuit_breaker_transition name=%s from=%s to=%s",
                self._name,
                self._state.state,
                target,
            )
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
        self._state = CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def before_call(self) -> None:
        async with self._lock:
            state = self._state
            if state.state == "open":
                if state.opened_at is not None and (self._time() - state.opened_at) >= self._config.open_seconds:
                    self._transition("half_open")
                else:
                    raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            if self._state.state == "half_open":
                if self._state.half_open_trials >= self._config.half_open_trials:
                    raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
                self._state.half_open_trials += 1

    async def record_success(self) -> None:
        async with self._lock:
            if self._state.state != "closed":
                self._transition("closed")
            else:
                self._state.failures = 0

    async def record_failure(self) -> None:
        async with self._lock:
            if self._state.state == "half_open":
                self._transition("open")
                return
            self._state.failures += 1
            if self._state.failures >= self._config.failure_threshold:
                self._transition("open")

    async def release_trial(self) -> None:
        """Return a half-open trial whose call ended without a health signal."""
        async with self._lock:
            if self._state.state == "half_open" and self._state.half_open_trials > 0:
                self._state.half_open_trials -= 1


_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    # Share one breaker per integration across requests in this process.
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker(name)
        _breakers[name] = breaker
    return breaker


def reset_circuit_breakers() -> None:
    # Allow tests to reset breaker state after tweaking settings.
    _breakers.clear()


def circuit_breaker_states() -> dict[str, str]:
    return {name: breaker.state for name, breaker in sorted(_breakers.items())}
