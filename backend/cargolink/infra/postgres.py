"""Process-wide asyncpg pool for the Postgres chat store."""

from __future__ import annotations

import asyncio
from typing import Optional

import asyncpg

from cargolink.settings import settings

_pool: Optional[asyncpg.Pool] = None
_pool_lock = asyncio.Lock()


async def _create() -> asyncpg.Pool:
	return await asyncpg.create_pool(
		dsn=settings.postgres_url,
		min_size=settings.postgres_min_pool_size,
		max_size=settings.postgres_max_pool_size,
		server_settings={"application_name": settings.service_name},
	)


async def init_pool() -> asyncpg.Pool:
	"""Create the pool once; concurrent first callers share the same pool."""
	global _pool
	async with _pool_lock:
		if _pool is None:
			_pool = await _create()
	return _pool


async def get_pool() -> asyncpg.Pool:
	return _pool if _pool is not None else await init_pool()


def set_pool(pool: Optional[asyncpg.Pool]) -> None:
	global _pool
	_pool = pool


async def close_pool() -> None:
	global _pool
	pool, _pool = _pool, None
	if pool is not None:
		await pool.close()
