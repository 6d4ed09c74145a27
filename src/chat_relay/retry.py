from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    retry_never,
    stop_after_attempt,
    wait_fixed,
    wait_incrementing,
)
from tenacity.wait import wait_base

T = TypeVar("T")


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException | None = None):
        super().__init__(f"Gave up after {attempts} attempts")
        self.attempts = attempts
        self.last_error = last_error


def linear_backoff(base_ms: int = 50, step_ms: int = 25) -> wait_base:
    """Wait ``base + step * n`` milliseconds before retry ``n`` (1-based)."""
    return wait_incrementing(start=(base_ms + step_ms) / 1000, increment=step_ms / 1000)


def fixed_backoff(delay_ms: int) -> wait_base:
    return wait_fixed(delay_ms / 1000)


def _log_retry(label: str, max_attempts: int) -> Callable[[Any], None]:
    def _before_sleep(retry_state) -> None:
        attempt = retry_state.attempt_number
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        reason = type(exc).__name__ if exc else "empty result"
        logger.debug(f"[{label}] {reason}. Retrying in {wait * 1000:.0f}ms (attempt {attempt}/{max_attempts})")

    return _before_sleep


async def bounded_retry(
    attempt: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int,
    wait: wait_base | None = None,
    retry_on: tuple[type[BaseException], ...] = (),
    retry_if: Callable[[T], bool] | None = None,
    label: str = "Retry",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``attempt(n)`` until it succeeds or ``max_attempts`` is reached.

    An attempt is repeated when it raises one of ``retry_on`` or when
    ``retry_if`` returns True for its result. Exhaustion raises
    :class:`RetryExhausted`; any other exception propagates immediately.
    """
    condition = retry_if_exception_type(retry_on) if retry_on else retry_never
    if retry_if is not None:
        condition = condition | retry_if_result(retry_if)

    attempt_number = 0

    async def _run() -> T:
        nonlocal attempt_number
        attempt_number += 1
        return await attempt(attempt_number)

    retrying = AsyncRetrying(
        retry=condition,
        wait=wait or linear_backoff(),
        stop=stop_after_attempt(max(1, max_attempts)),
        before_sleep=_log_retry(label, max_attempts),
        sleep=sleep,
        reraise=False,
    )
    try:
        return await retrying(_run)
    except RetryError as ex:
        last = ex.last_attempt
        last_error = last.exception() if last.failed else None
        raise RetryExhausted(attempt_number, last_error) from last_error
