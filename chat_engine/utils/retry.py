"""
Retry with exponential backoff.

Only failures that classify as retryable are retried; the delay is the
larger of the jittered backoff and any server-provided Retry-After.
"""
import asyncio
import inspect
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

from chat_engine.core.exceptions import ApiError
from chat_engine.utils.api_errors import classify_error
from chat_engine.utils.logger import get_logger

logger = get_logger("chat_engine.retry")


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0


DEFAULT_RETRY_CONFIG = RetryConfig()


def calculate_backoff_delay(attempt: int, config: RetryConfig = DEFAULT_RETRY_CONFIG) -> float:
    """initial * multiplier^attempt, jittered by +/-10% and clamped to max_delay."""
    delay = config.initial_delay * (config.backoff_multiplier ** attempt)
    jitter = delay * 0.1 * (random.random() * 2 - 1)
    return max(0.0, min(delay + jitter, config.max_delay))


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


async def with_retry(
    fn: Callable[[], Awaitable[Any]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Await fn() until it succeeds, retrying retryable failures up to
    config.max_retries times. The last error is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            api_error = classify_error(exc)
            if attempt >= config.max_retries or not api_error.retryable:
                raise

            delay = calculate_backoff_delay(attempt, config)
            if api_error.retry_after:
                delay = max(delay, api_error.retry_after)

            attempt += 1
            logger.warning(
                "Retrying after failure",
                extra={"attempt": attempt, "delay": round(delay, 3), "error_type": api_error.type},
            )
            if on_retry is not None:
                await _maybe_await(on_retry(attempt, exc, delay))
            await sleep(delay)


@dataclass
class RetryState:
    attempt: int = 0
    last_error: Optional[ApiError] = None
    next_delay: float = 0.0


class RetryManager:
    """Tracks retry progress for callers that drive their own loop."""

    def __init__(self, config: RetryConfig = DEFAULT_RETRY_CONFIG):
        self.config = config
        self._state = RetryState()
        self._on_state_change: Optional[Callable[[RetryState], None]] = None

    def set_on_state_change(self, callback: Callable[[RetryState], None]) -> None:
        self._on_state_change = callback

    def get_state(self) -> RetryState:
        return replace(self._state)

    def _notify(self) -> None:
        if self._on_state_change is not None:
            self._on_state_change(self.get_state())

    def reset(self) -> None:
        self._state = RetryState()
        self._notify()

    def record_failure(self, error: ApiError) -> bool:
        """Record a failure; returns True when another attempt is allowed."""
        self._state.attempt += 1
        self._state.last_error = error
        can_retry = self._state.attempt <= self.config.max_retries and error.retryable
        if can_retry:
            delay = calculate_backoff_delay(self._state.attempt - 1, self.config)
            if error.retry_after:
                delay = max(delay, error.retry_after)
            self._state.next_delay = delay
        else:
            self._state.next_delay = 0.0
        self._notify()
        return can_retry

    def record_success(self) -> None:
        self.reset()

    @property
    def can_retry(self) -> bool:
        last = self._state.last_error
        return self._state.attempt <= self.config.max_retries and (last is None or last.retryable)
