"""
Shared async database utilities for all microservices.
Uses asyncpg for non-blocking PostgreSQL access with connection pooling.

Connection settings come from DATABASE_URL when it is set, otherwise from the
individual DB_* variables.
"""
import os
import logging
from contextlib import asynccontextmanager
from importlib import resources

import asyncpg

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "2"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "20"))
# A request that outlives this is cancelled and its transaction rolled back.
DB_COMMAND_TIMEOUT = float(os.getenv("DB_COMMAND_TIMEOUT", "10"))
# Apply schema.sql when a service starts (off by default; use `db_admin init-db`).
APPLY_SCHEMA_ON_STARTUP = os.getenv("APPLY_SCHEMA_ON_STARTUP", "false").lower() in ("1", "true", "yes")


def connection_kwargs() -> dict:
    """Keyword arguments shared by the pool and the dedicated LISTEN connection."""
    if DATABASE_URL:
        return {"dsn": DATABASE_URL}
    return {
        "host": os.getenv("DB_HOST", "postgres"),
        "port": int(os.getenv("DB_PORT", "5432")),
        "database": os.getenv("DB_NAME", "campus_vote"),
        "user": os.getenv("DB_USER", "campus_vote"),
        "password": os.getenv("DB_PASSWORD", "campus_vote"),
    }


def load_schema_sql() -> str:
    """Return the idempotent DDL bundled with the package."""
    return resources.files("campusvote").joinpath("schema.sql").read_text(encoding="utf-8")


async def apply_schema(conn: asyncpg.Connection) -> None:
    """Create tables, constraints and triggers (safe to run repeatedly)."""
    await conn.execute(load_schema_sql())
    logger.info("Database schema applied")


class Database:
    """Async database connection pool manager."""

    _pool: asyncpg.Pool | None = None

    @classmethod
    async def get_pool(cls) -> asyncpg.Pool:
        """Return the existing pool or create one lazily."""
        if cls._pool is None:
            cls._pool = await asyncpg.create_pool(
                **connection_kwargs(),
                min_size=DB_POOL_MIN,
                max_size=DB_POOL_MAX,
                command_timeout=DB_COMMAND_TIMEOUT,
            )
        return cls._pool

    @classmethod
    async def close(cls) -> None:
        """Gracefully close the pool (called on app shutdown)."""
        if cls._pool is not None:
            await cls._pool.close()
            cls._pool = None

    @classmethod
    @asynccontextmanager
    async def connection(cls):
        """Acquire a connection from the pool (auto-released on exit)."""
        pool = await cls.get_pool()
        async with pool.acquire() as conn:
            yield conn

    @classmethod
    async def connect_dedicated(cls) -> asyncpg.Connection:
        """Open a connection outside the pool, used for long-lived LISTEN sessions."""
        return await asyncpg.connect(**connection_kwargs())


async def prepare_database() -> asyncpg.Pool:
    """Open the pool at service startup, applying the schema if configured to."""
    pool = await Database.get_pool()
    if APPLY_SCHEMA_ON_STARTUP:
        async with pool.acquire() as conn:
            await apply_schema(conn)
    return pool
