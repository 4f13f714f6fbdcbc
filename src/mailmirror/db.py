"""PostgreSQL connection pool lifecycle.

The pool is created once by the process entry point and handed to the
stores that need it; nothing in the package keeps a module-level pool.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import asyncpg  # type: ignore[import-not-found]

from mailmirror.logging import get_logger

log = get_logger("mailmirror.db")


class PersistenceError(Exception):
    """Raised when a storage operation fails."""


async def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """Create the asyncpg pool, logging the host but never the credentials."""
    try:
        pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
    except (asyncpg.PostgresError, OSError) as exc:
        log.error("postgres_pool_creation_failed", error=str(exc))
        raise PersistenceError(f"Could not connect to PostgreSQL: {exc}") from exc
    log.info("postgres_pool_created", dsn=dsn.split("@")[-1])
    return pool


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Re-raise asyncpg failures as :class:`PersistenceError`."""
    try:
        yield
    except asyncpg.PostgresError as exc:
        log.error("persistence_operation_failed", operation=operation, error=str(exc))
        raise PersistenceError(f"{operation} failed: {exc}") from exc
