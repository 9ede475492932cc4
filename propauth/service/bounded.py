from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from propauth.logging import get_logger
from propauth.service.errors import AuthenticationUnavailable
from propauth.storage.errors import DirectoryUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_directory(func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """Run a blocking directory call off the event loop under a deadline.

    Timeouts and connectivity failures surface as AuthenticationUnavailable,
    which callers must never count as a failed credential check.
    """
    operation = getattr(func, "__name__", "directory_call")
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError:
        logger.warning("directory_deadline_exceeded", operation=operation, timeout=timeout)
        raise AuthenticationUnavailable(detail={"operation": operation})
    except DirectoryUnavailable as exc:
        logger.warning("directory_unavailable", operation=operation, error=exc.message)
        raise AuthenticationUnavailable(detail={"operation": operation})


async def dispatch(awaitable: Awaitable[T], *, timeout: float, channel: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        logger.warning("notification_deadline_exceeded", channel=channel, timeout=timeout)
        raise AuthenticationUnavailable(
            "notification delivery timed out", detail={"channel": channel}
        )
