"""Logging helpers shared by the acmekit modules.

Records go to loggers under the ``acmekit`` namespace, which carries a
NullHandler until the application configures logging. Structured fields
travel in ``extra``; the identifiers of the order a task is working on are
attached from task-local context so concurrent orders stay distinguishable.
"""

import logging
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar

LOGGER_NAME = "acmekit"

logging.getLogger(LOGGER_NAME).addHandler(logging.NullHandler())

# Identifier values of the order the current task is working on
_identifiers: ContextVar[tuple[str, ...]] = ContextVar("acmekit_identifiers", default=())


@contextmanager
def identifier_context(identifiers: Iterable[str] | None) -> Iterator[None]:
    """Attach order identifiers to records logged inside the block.

    Blocks nest, and leaving one restores the enclosing identifiers. Each
    asyncio task sees only the identifiers set in its own context.

    Args:
        identifiers: Identifier values (usually DNS names), or None to clear.
    """
    token = _identifiers.set(tuple(identifiers or ()))
    try:
        yield
    finally:
        _identifiers.reset(token)


def get_identifier_extra() -> dict[str, list[str] | str]:
    """Log ``extra`` fields for the current identifiers.

    Returns:
        ``{"identifier": value}`` for one identifier, ``{"identifiers": [...]}``
        for several, or an empty dict outside any identifier context.
    """
    identifiers = _identifiers.get()
    if not identifiers:
        return {}
    if len(identifiers) == 1:
        return {"identifier": identifiers[0]}
    return {"identifiers": list(identifiers)}


def get_logger(name: str) -> logging.Logger:
    """Logger for a module, nested under the ``acmekit`` namespace."""
    if name != LOGGER_NAME and not name.startswith(f"{LOGGER_NAME}."):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)


class Timer:
    """Wall-clock duration of a block in milliseconds.

    ``elapsed_ms`` reads 0 before the block starts, runs while inside it and
    is frozen on exit.

    Usage:
        with Timer() as t:
            response = await http.get(url)
        logger.debug("Fetched", extra={"elapsed_ms": t.elapsed_ms})
    """

    def __init__(self) -> None:
        self._start: float | None = None
        self._end: float | None = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, *args: object) -> None:
        self._end = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        if self._start is None:
            return 0.0
        end = time.perf_counter() if self._end is None else self._end
        return (end - self._start) * 1000
