from pathlib import Path

import asyncpg
from loguru import logger
from app.config import get_settings

_pool: asyncpg.Pool | None = None

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


async def create_pool() -> asyncpg.Pool:
    global _pool
    settings = get_settings()
    _pool = await asyncpg.create_pool(
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_db,
        user=settings.postgres_user,
        password=settings.db_password,
        min_size=2,
        max_size=10,
    )
    logger.info("PostgreSQL connection pool created")
    return _pool


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await create_pool()
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("PostgreSQL connection pool closed")


async def apply_schema() -> None:
    """Create tables and indexes if they are missing. Safe to run on every boot."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_PATH.read_text())
    logger.info("Database schema ensured")


async def fetch_one(query: str, *args) -> asyncpg.Record | None:
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.fetchrow(query, *args)


async def fetch_all(query: str, *args) -> list[asyncpg.Record]:
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.fetch(query, *args)


async def execute(query: str, *args) -> str:
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.execute(query, *args)


async def execute_many(query: str, args: list[tuple]) -> None:
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.executemany(query, args)
