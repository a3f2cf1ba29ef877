"""Shared Redis client carrying the per-conversation message feed.

Modules import `redis_client` once at import time; the proxy lets tests point it
at fakeredis afterwards without re-importing anything.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as redis

from cargolink.settings import settings


class RedisProxy:
	__slots__ = ("_target",)

	def __init__(self, target: redis.Redis) -> None:
		self._target = target

	@property
	def client(self) -> redis.Redis:
		return self._target

	def set_client(self, target: redis.Redis) -> None:
		self._target = target

	def __getattr__(self, name: str) -> Any:
		return getattr(self._target, name)


# No connection is opened until the first command.
redis_client = RedisProxy(redis.from_url(settings.redis_url, decode_responses=True))


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
