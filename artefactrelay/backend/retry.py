"""Fixed-backoff retry executor for at-least-once upstream calls."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog

from artefactrelay.backend.errors import UpstreamError

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_RETRY_ON: tuple[type[BaseException], ...] = (UpstreamError, httpx.HTTPError)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    """Call `operation` until it succeeds or `max_attempts` is reached.

    The wait between attempts is constant. On exhaustion the error from the
    final attempt is re-raised unchanged so the caller sees the real cause.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            result = await operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                logger.error(
                    "Retries exhausted",
                    operation=operation_name,
                    attempts=attempt,
                    error=str(exc),
                )
                raise
            logger.warning(
                "Retrying after failed attempt",
                operation=operation_name,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=backoff_seconds,
                error=str(exc),
            )
            await sleep(backoff_seconds)
            continue

        if attempt > 1:
            logger.info("Operation succeeded after retry", operation=operation_name, attempts=attempt)
        return result
