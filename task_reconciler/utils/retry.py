"""Retry with exponential backoff for provider calls.

Only transient failures should be retried. Provider clients decorate their
raw HTTP calls with the transport-level exceptions (connection resets,
timeouts); authentication and snapshot errors propagate immediately.

Example:
    >>> @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.TransportError,))
    ... async def fetch_page(client, token):
    ...     return await client.post("/rest/api/3/search/jql", json={"nextPageToken": token})

Backoff Formula:
    delay = backoff_factor ** attempt_number
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of calls before giving up
        backoff_factor: Base of the exponential delay between attempts;
            0 disables waiting (useful in tests)
        exceptions: Exception types that trigger a retry. Anything else
            propagates on the first occurrence.

    Raises:
        The last caught exception once every attempt has failed.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_factor**attempt if backoff_factor else 0
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
