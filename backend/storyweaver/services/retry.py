import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from storyweaver.core.logging import logger

T = TypeVar("T")

RetryHook = Callable[[BaseException, int, float], Awaitable[None]]
Sleep = Callable[[float], Awaitable[Any]]


def is_rate_limited(exc: Optional[BaseException]) -> bool:
    if exc is None:
        return False
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return True
    status = getattr(exc, "status", None)
    code = getattr(exc, "code", None)
    if status == 429 or code == 429:
        return True
    if "RESOURCE_EXHAUSTED" in str(code or status or ""):
        return True
    return "429" in str(exc)


def backoff_delay(attempt: int, base_delay: float = 1.0) -> float:
    return (2**attempt) * base_delay


async def generate_with_retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = 3,
    base_delay: float = 1.0,
    on_retry: Optional[RetryHook] = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Call ``fn`` and retry rate-limited failures with exponential backoff.

    ``retries`` is the total number of attempts. Errors that are not
    rate-limits, and the error of the last attempt, propagate unchanged.
    ``on_retry`` runs before each backoff with the error, the 0-based attempt
    that failed and the delay about to be slept.
    """
    attempts = max(1, retries)
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not is_rate_limited(exc) or attempt >= attempts - 1:
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "rate limited, retrying in %.1fs (attempt %d/%d): %s",
                delay,
                attempt + 1,
                attempts,
                exc,
            )
            if on_retry is not None:
                await on_retry(exc, attempt, delay)
            await sleep(delay)
            attempt += 1
