"""Bounded readiness polling shared by instance, volume, image and SSH waits."""

import asyncio
import logging
import time

from stackvm.errors import ActionTimeoutError, ProviderError

logger = logging.getLogger(__name__)


async def poll_until(fetch, is_ready, *, timeout, interval=5, is_failed=None, description="resource"):
    """Poll *fetch* until *is_ready* holds for its result or *timeout* elapses.

    Only "not yet ready" is retried; an exception raised by *fetch* propagates
    immediately.

    Args:
        fetch: coroutine function returning the current status.
        is_ready: predicate on the status.
        is_failed: optional predicate; a match raises ProviderError at once.
        description: used in log and error messages.

    Returns:
        The status that satisfied *is_ready*.
    """
    deadline = time.monotonic() + timeout
    status = None
    while True:
        status = await fetch()
        if is_failed is not None and is_failed(status):
            logger.error(f"{description} reached fail status '{status}'")
            raise ProviderError(f"{description} reached fail status '{status}'", stage="poll")
        if is_ready(status):
            return status
        if time.monotonic() >= deadline:
            break
        await asyncio.sleep(max(0, min(interval, deadline - time.monotonic())))

    logger.error(f"Timeout after {timeout}s waiting for {description} (last: '{status}')")
    raise ActionTimeoutError(description, timeout, status)


def status_in(*statuses):
    """Predicate matching any of *statuses*."""
    wanted = set(statuses)
    return lambda status: status in wanted
