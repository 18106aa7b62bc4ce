"""Bounded fixed-interval polling.

Every "wait until" in the driver (boot sentinel, channel handshake, guest
conditions) goes through retry(): call a cheap check, sleep, call again, give
up after a fixed number of attempts.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

from tenacity import AsyncRetrying, RetryError, before_sleep_log, retry_if_result, stop_after_attempt, wait_fixed

from vm_test_driver import constants
from vm_test_driver._logging import get_logger
from vm_test_driver.exceptions import RetryTimeoutError

logger = get_logger(__name__)

Check = Callable[[], bool | Awaitable[bool]]


def _not_yet(result: bool) -> bool:
    return not result


async def retry(
    check: Check,
    *,
    max_attempts: int = constants.DEFAULT_RETRY_ATTEMPTS,
    interval: float = constants.DEFAULT_RETRY_INTERVAL_SECONDS,
    description: str = "",
) -> None:
    """Call check until it returns true, at most max_attempts times.

    The first call happens immediately; each falsy result is followed by an
    `interval` second sleep. Exceptions raised by check are not retried: they
    propagate on the spot and abort the wait.

    Args:
        check: Zero-argument callable returning a bool, or an awaitable bool.
            Called repeatedly, so it must be idempotent.
        max_attempts: Total number of calls before giving up.
        interval: Seconds to sleep between calls.
        description: What is being waited for (error message / log context).

    Raises:
        RetryTimeoutError: check never returned true within max_attempts calls.
    """

    async def attempt() -> bool:
        result = check()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(_not_yet),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
    )
    try:
        await retrying(attempt)
    except RetryError as e:
        attempts = e.last_attempt.attempt_number
        what = description or getattr(check, "__name__", "condition")
        raise RetryTimeoutError(
            f"action timed out after {attempts} attempts: {what}",
            attempts=attempts,
            context={"interval": interval, "description": what},
        ) from None
