"""Status polling for orders, authorizations and challenges."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from acmekit._logging import get_identifier_extra, get_logger
from acmekit.exceptions import InvalidStatusError, PollingTimeoutError, parse_retry_after
from acmekit.models import TERMINAL_STATUSES

logger = get_logger(__name__)

ResourceT = TypeVar("ResourceT")

# A getter returns the fresh snapshot, optionally with the Retry-After delay
Getter = Callable[[], Awaitable[ResourceT | tuple[ResourceT, float | None]]]


async def wait_for_valid_status(
    getter: Getter[ResourceT],
    *,
    target: str = "valid",
    interval: float = 2.0,
    max_attempts: int = 10,
    backoff: float = 1.0,
    max_interval: float = 30.0,
    deadline: float | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ResourceT:
    """Re-fetch a resource until it reaches ``target`` or another terminal status.

    Args:
        getter: Async callable returning the current snapshot, or a
            ``(snapshot, retry_after_seconds)`` tuple.
        target: Status to wait for. ``ready`` is accepted for orders; an
            order that is already ``valid`` also satisfies it.
        interval: Initial delay between attempts, in seconds.
        max_attempts: Maximum number of fetches.
        backoff: Multiplier applied to the delay after each attempt
            (1.0 keeps it fixed).
        max_interval: Upper bound for the computed delay.
        deadline: Absolute ``time.monotonic()`` value after which polling stops.
        cancel_event: Setting this event stops polling promptly.

    Returns:
        The snapshot that reached ``target``.

    Raises:
        InvalidStatusError: The resource reached a different terminal status.
        PollingTimeoutError: Attempts, deadline or cancel event ran out first.
        asyncio.CancelledError: The polling task itself was cancelled.
        ValueError: ``max_attempts`` is less than 1.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay = interval
    resource: ResourceT | None = None
    status: str | None = None

    for attempt in range(1, max_attempts + 1):
        result = await getter()
        retry_after: float | None = None
        if isinstance(result, tuple):
            resource, retry_after = result
        else:
            resource = result

        status = str(getattr(resource, "status", None))
        logger.debug(
            "Polled resource status",
            extra={
                "url": getattr(resource, "url", None),
                "status": status,
                "attempt": attempt,
                **get_identifier_extra(),
            },
        )

        if status == target or (target == "ready" and status == "valid"):
            return resource
        if status in TERMINAL_STATUSES:
            raise InvalidStatusError(status, resource)
        if attempt == max_attempts:
            break

        wait = min(retry_after, max_interval) if retry_after is not None else delay
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            wait = min(wait, remaining)

        if await _sleep(wait, cancel_event):
            break
        delay = min(delay * backoff, max_interval)

    raise PollingTimeoutError(status, attempt, resource)


async def _sleep(seconds: float, cancel_event: asyncio.Event | None) -> bool:
    """Sleep, returning True early if the cancel event is set."""
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return False
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except TimeoutError:
        return False
    return True


def retry_after_seconds(headers: Any) -> float | None:
    """Parse a Retry-After header from a response header mapping."""
    seconds = parse_retry_after(headers.get("Retry-After"))
    return float(seconds) if seconds is not None else None
