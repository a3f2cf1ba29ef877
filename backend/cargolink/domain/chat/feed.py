"""Redis Streams live feed for committed chat messages.

Each conversation gets its own stream. Subscribers remember the stream tail at
subscribe time and read forward from there, so every entry published after
`subscribe()` returns is delivered exactly once and in stream order.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Mapping, Optional, Set

from redis.exceptions import RedisError

from cargolink.infra.redis import redis_client
from cargolink.obs import metrics as obs_metrics
from cargolink.settings import settings

from .errors import StoreUnavailable
from .models import Message
from .store import OnInsert, Subscription

_LOG = logging.getLogger(__name__)

FEED_PREFIX = "chat:feed:"


def feed_key(conversation_id: str) -> str:
	return f"{FEED_PREFIX}{conversation_id}"


def encode_message(message: Message) -> Dict[str, str]:
	fields = {
		"message_id": message.message_id,
		"conversation_id": message.conversation_id,
		"seq": str(message.seq),
		"sender_id": message.sender_id,
		"body": message.body,
		"created_at": message.created_at.isoformat(),
		"read": "1" if message.read else "0",
	}
	if message.client_msg_id:
		fields["client_msg_id"] = message.client_msg_id
	return fields


def decode_message(fields: Mapping[str, str]) -> Message:
	"""Rebuild a message from stream fields; raises KeyError/ValueError when malformed."""
	return Message(
		message_id=fields["message_id"],
		conversation_id=fields["conversation_id"],
		seq=int(fields["seq"]),
		sender_id=fields["sender_id"],
		body=fields["body"],
		created_at=datetime.fromisoformat(fields["created_at"]),
		read=fields.get("read") == "1",
		client_msg_id=fields.get("client_msg_id") or None,
	)


class RedisFeedSubscription(Subscription):
	"""Subscription that tails one conversation stream from a known entry id."""

	def __init__(
		self,
		conversation_id: str,
		callback: OnInsert,
		*,
		last_id: str,
		block_ms: int,
		retry_seconds: float,
		batch_size: int = 100,
		on_cancel=None,
	) -> None:
		super().__init__(conversation_id, callback, on_cancel=on_cancel)
		self.stream = feed_key(conversation_id)
		self.last_id = last_id
		self.block_ms = block_ms
		self.retry_seconds = retry_seconds
		self.batch_size = batch_size
		self._task: Optional[asyncio.Task] = None

	def start(self) -> None:
		if self._task is None and self.active:
			self._task = asyncio.create_task(self.run_forever())

	async def run_forever(self) -> None:
		while self.active:
			try:
				await self.process_once()
			except RedisError:
				_LOG.warning(
					"chat.feed.read_failed",
					extra={"conversation_id": self.conversation_id, "last_id": self.last_id},
				)
				await asyncio.sleep(self.retry_seconds)
			except Exception:
				_LOG.exception(
					"chat.feed.reader_failed",
					extra={"conversation_id": self.conversation_id, "last_id": self.last_id},
				)
				await asyncio.sleep(self.retry_seconds)

	async def process_once(self) -> int:
		"""Read one batch past `last_id` and deliver it. Returns the number delivered."""
		if not self.active:
			return 0
		block = self.block_ms if self.block_ms > 0 else None
		entries = await redis_client.xread({self.stream: self.last_id}, count=self.batch_size, block=block)
		if not entries:
			return 0
		delivered = 0
		for _stream, items in entries:
			for entry_id, fields in items:
				if not self.active:
					return delivered
				self.last_id = entry_id
				try:
					message = decode_message(fields)
				except (KeyError, ValueError):
					obs_metrics.inc_chat_feed_event("ignored")
					_LOG.warning("chat.feed.malformed_entry", extra={"stream": self.stream, "entry_id": entry_id})
					continue
				try:
					if self.deliver(message):
						delivered += 1
				except Exception:  # pragma: no cover - defensive logging
					_LOG.exception("chat.feed.callback_failed", extra={"conversation_id": self.conversation_id})
		return delivered

	def cancel(self) -> None:
		was_active = self.active
		super().cancel()
		if was_active and self._task is not None and not self._task.done():
			self._task.cancel()
		self._task = None


class RedisMessageFeed:
	"""Publishes committed messages and hands out tailing subscriptions.

	`block_ms <= 0` makes reads non-blocking, which is what tests use to drive
	`process_once()` by hand together with `autostart=False`.
	"""

	def __init__(
		self,
		*,
		maxlen: Optional[int] = None,
		block_ms: Optional[int] = None,
		retry_seconds: Optional[float] = None,
		autostart: bool = True,
	) -> None:
		self.maxlen = maxlen if maxlen is not None else settings.chat_feed_maxlen
		self.block_ms = block_ms if block_ms is not None else settings.chat_feed_block_ms
		self.retry_seconds = retry_seconds if retry_seconds is not None else settings.chat_feed_retry_seconds
		self.autostart = autostart
		self._subscriptions: Set[RedisFeedSubscription] = set()

	async def publish(self, message: Message) -> str:
		try:
			return await redis_client.xadd(
				feed_key(message.conversation_id),
				encode_message(message),
				maxlen=self.maxlen,
				approximate=True,
			)
		except RedisError as exc:
			raise StoreUnavailable("live feed unavailable") from exc

	async def subscribe(self, conversation_id: str, on_insert: OnInsert) -> RedisFeedSubscription:
		try:
			tail = await redis_client.xrevrange(feed_key(conversation_id), count=1)
		except RedisError as exc:
			raise StoreUnavailable("live feed unavailable") from exc
		last_id = tail[0][0] if tail else "0-0"
		subscription = RedisFeedSubscription(
			conversation_id,
			on_insert,
			last_id=last_id,
			block_ms=self.block_ms,
			retry_seconds=self.retry_seconds,
			on_cancel=self._subscriptions.discard,
		)
		self._subscriptions.add(subscription)
		if self.autostart:
			subscription.start()
		return subscription

	def unsubscribe(self, subscription: Subscription) -> None:
		subscription.cancel()

	def close(self) -> None:
		for subscription in list(self._subscriptions):
			subscription.cancel()
