"""Process-wide asyncpg pool."""
from __future__ import annotations

from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
import structlog

logger = structlog.get_logger(__name__)

pool: asyncpg.Pool | None = None


class SettingsProtocol(Protocol):
    database_url: Any
    db_pool_size: int


async def _init_connection(conn: asyncpg.Connection) -> None:
    # Timestamps are compared against UTC clocks in SQL.
    await conn.execute("SET TIME ZONE 'UTC'")


async def init_pool(database_url: str, pool_size: int) -> asyncpg.Pool:
    """Create the pool once; later calls return the existing one."""
    global pool
    if pool is None:
        pool = await asyncpg.create_pool(
            dsn=database_url,
            min_size=1,
            max_size=pool_size,
            init=_init_connection,
        )
        logger.info("database pool opened", max_size=pool_size)
    return pool


async def init_pool_service(settings: SettingsProtocol) -> asyncpg.Pool:
    return await init_pool(str(settings.database_url), settings.db_pool_size)


async def close_pool() -> None:
    global pool
    if pool is not None:
        await pool.close()
        pool = None
        logger.info("database pool closed")


async def ping() -> bool:
    """Readiness check: False when no pool is open, raises if the server is unreachable."""
    if pool is None:
        return False
    async with pool.acquire() as conn:
        return await conn.fetchval("SELECT 1") == 1
