"""Shared utilities for mailmirror."""

import time
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import structlog


@asynccontextmanager
async def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager that measures elapsed time for an async operation.

    Usage::

        async with timed_operation("gmail_sync", log=log) as timing:
            await engine.incremental_sync()
        print(timing["elapsed_ms"])

    Args:
        name: A label for the operation (used in log messages).
        log: Optional structlog logger; if provided, an info-level message
             is emitted on exit.
        **extra: Additional key-value pairs forwarded to the log call.

    Yields:
        A mutable dict that will contain ``elapsed_ms`` after the block exits.
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log:
            log.info(name, duration_ms=result["elapsed_ms"], **extra)


def parse_history_id(value: str | int | None) -> int | None:
    """Convert a Gmail history id into an integer, or ``None`` if unusable.

    History ids are unbounded decimal strings, so they are compared as
    Python ints rather than fixed-width numbers.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text.isdigit():
        return None
    return int(text)


def max_history_id(values: Iterable[str | int | None]) -> str | None:
    """Return the numerically largest history id as a string."""
    best: int | None = None
    for value in values:
        parsed = parse_history_id(value)
        if parsed is not None and (best is None or parsed > best):
            best = parsed
    return None if best is None else str(best)


def is_newer_history_id(candidate: str | int | None, current: str | int | None) -> bool:
    """True when ``candidate`` should replace ``current`` as the cursor."""
    new = parse_history_id(candidate)
    if new is None:
        return False
    old = parse_history_id(current)
    return old is None or new > old
