from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from erasure.core.config import settings
from erasure.db.session import engine

logger = logging.getLogger(__name__)

_MIN_RETRY_SECONDS = 5
_DEFAULT_RETRY_SECONDS = 15
_lock_engine: AsyncEngine | None = None

Work = Callable[[asyncio.Event], Awaitable[None]]


def _is_postgres() -> bool:
    return (engine.url.get_backend_name() or "").lower() == "postgresql"


def lock_key(name: str) -> int:
    """Stable signed 63-bit advisory lock key for ``name``."""
    digest = hashlib.blake2b((name or "").encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=False) % (2**63 - 1)


def _get_lock_engine() -> AsyncEngine:
    # Advisory locks are held per connection, so the leader keeps one checked out for as long
    # as it leads. A one-connection pool keeps that off the request pool.
    global _lock_engine
    if _lock_engine is None:
        _lock_engine = create_async_engine(
            settings.database_url,
            future=True,
            echo=False,
            pool_size=1,
            max_overflow=0,
            pool_pre_ping=True,
        )
    return _lock_engine


async def _try_acquire(conn: AsyncConnection, key: int) -> bool:
    result = await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})
    return bool(result.scalar())


async def _release(conn: AsyncConnection, key: int) -> None:
    with suppress(Exception):
        await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})


async def _wait(stop: asyncio.Event, seconds: int) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def run_as_leader(
    *,
    name: str,
    stop: asyncio.Event,
    work: Work,
    retry_seconds: int = _DEFAULT_RETRY_SECONDS,
) -> None:
    """Run ``work`` on exactly one replica at a time.

    Followers poll for the lock every ``retry_seconds`` until ``stop`` is set. Backends without
    advisory locks (sqlite in tests and local runs) have a single process, so ``work`` runs directly.
    """
    if not _is_postgres():
        await work(stop)
        return

    key = lock_key(name)
    retry = max(_MIN_RETRY_SECONDS, int(retry_seconds or _DEFAULT_RETRY_SECONDS))
    while not stop.is_set():
        try:
            async with _get_lock_engine().connect() as conn:
                if not await _try_acquire(conn, key):
                    await _wait(stop, retry)
                    continue
                logger.info("leader_lock_acquired", extra={"lock_name": name})
                try:
                    await work(stop)
                finally:
                    await _release(conn, key)
                    logger.info("leader_lock_released", extra={"lock_name": name})
                return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("leader_lock_failed", extra={"lock_name": name, "error": str(exc)})
            await _wait(stop, retry)
