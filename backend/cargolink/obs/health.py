"""Liveness and readiness probes."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Tuple

from cargolink.infra import postgres
from cargolink.infra.redis import redis_client
from cargolink.settings import settings

LOGGER = logging.getLogger(__name__)

Check = Callable[[], Awaitable[Any]]


async def _probe(name: str, check: Check, timeout: float) -> Dict[str, Any]:
	started = perf_counter()
	try:
		await asyncio.wait_for(check(), timeout=timeout)
	except Exception as exc:  # pragma: no cover - depends on runtime
		LOGGER.warning("health.probe.failed", extra={"probe": name}, exc_info=True)
		return {"ok": False, "error": str(exc) or type(exc).__name__}
	return {"ok": True, "latency_ms": round((perf_counter() - started) * 1000, 2)}


async def _ping_redis() -> None:
	await redis_client.ping()


async def _select_one() -> None:
	pool = await postgres.get_pool()
	async with pool.acquire() as conn:
		await conn.execute("SELECT 1")


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness() -> Tuple[int, Dict[str, Any]]:
	"""Redis carries the message feed, so it is always checked; Postgres only when it backs the store."""
	checks: Dict[str, Dict[str, Any]] = {"redis": await _probe("redis", _ping_redis, 0.2)}
	if settings.chat_store_backend == "postgres":
		checks["postgres"] = await _probe("postgres", _select_one, 0.3)
	else:
		checks["postgres"] = {"ok": True, "skipped": True}
	ok = all(state["ok"] for state in checks.values())
	return (200 if ok else 503), {"status": "ok" if ok else "degraded", "checks": checks}
