"""PostgreSQL pool for the credential store, plus the users-table DDL."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

import psycopg
import psycopg.rows
import psycopg_pool

from twofactor.config import settings

logger = logging.getLogger(__name__)

_pool: psycopg_pool.AsyncConnectionPool | None = None

# Existing user tables only need the email_verified, two_factor_* and backup_codes columns.
SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id                  TEXT PRIMARY KEY,
    email               TEXT UNIQUE NOT NULL,
    password_hash       TEXT,
    email_verified      BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_enabled  BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_secret   TEXT,
    backup_codes        TEXT[] NOT NULL DEFAULT '{}'
);
ALTER TABLE users ADD COLUMN IF NOT EXISTS email_verified BOOLEAN NOT NULL DEFAULT FALSE;
ALTER TABLE users ADD COLUMN IF NOT EXISTS two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE;
ALTER TABLE users ADD COLUMN IF NOT EXISTS two_factor_secret TEXT;
ALTER TABLE users ADD COLUMN IF NOT EXISTS backup_codes TEXT[] NOT NULL DEFAULT '{}';
"""


async def init_pool(
    min_size: int | None = None,
    max_size: int | None = None,
) -> psycopg_pool.AsyncConnectionPool:
    """Open the shared pool once; later calls return the same pool."""
    global _pool
    if _pool is not None:
        return _pool
    _pool = psycopg_pool.AsyncConnectionPool(
        conninfo=settings.database_url,
        min_size=min_size or settings.db_pool_min_size,
        max_size=max_size or settings.db_pool_max_size,
        kwargs={"row_factory": psycopg.rows.dict_row},
        open=False,
    )
    await _pool.open()
    logger.info("Database pool opened (%s)", settings.database_url.split("@")[-1])
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


@contextlib.asynccontextmanager
async def get_conn() -> AsyncIterator[psycopg.AsyncConnection[dict[str, Any]]]:
    """Borrow a connection; it commits when the block exits cleanly."""
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    async with _pool.connection() as conn:
        yield conn


async def execute(query: str, params: tuple[Any, ...] | None = None) -> list[dict[str, Any]]:
    """Run one statement in its own transaction and return any rows."""
    async with get_conn() as conn:
        cur = await conn.execute(query, params)
        return await cur.fetchall() if cur.description else []


async def execute_one(query: str, params: tuple[Any, ...] | None = None) -> dict[str, Any] | None:
    rows = await execute(query, params)
    return rows[0] if rows else None


def init_schema() -> None:
    """Create or extend the users table (sync, for the CLI)."""
    with psycopg.connect(settings.database_url) as conn:
        conn.execute(SCHEMA)
    logger.info("users table ready")
