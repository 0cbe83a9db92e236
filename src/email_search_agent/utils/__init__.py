"""Utility functions for Email Search Agent."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from email_search_agent.exceptions import EmailSearchError, EmbeddingTransientError, ErrorKind

logger = structlog.get_logger()

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """Whether an error is worth retrying."""
    if isinstance(exc, EmailSearchError):
        return exc.kind is ErrorKind.TRANSIENT
    return isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError))


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    timeout: float | None = None,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    timeout_error: type[EmailSearchError] = EmbeddingTransientError,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func()`` with a per-attempt timeout and transient-only retries.

    A timeout is raised as ``timeout_error`` (transient by default) and is
    retried like any other transient failure.
    """
    current_delay = delay
    for attempt in range(max_retries + 1):
        try:
            if timeout is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err: BaseException = e
            if isinstance(e, asyncio.TimeoutError):
                err = timeout_error(f"{operation} timed out after {timeout}s")
            if not is_transient(err):
                raise
            if attempt >= max_retries:
                logger.error(
                    "operation_retry_exhausted",
                    operation=operation,
                    attempts=max_retries + 1,
                    error=str(err),
                )
                if err is e:
                    raise
                raise err from e
            logger.warning(
                "operation_retry",
                operation=operation,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=current_delay,
                error=str(err),
            )
            await sleep(current_delay)
            current_delay *= backoff

    raise AssertionError("unreachable")
