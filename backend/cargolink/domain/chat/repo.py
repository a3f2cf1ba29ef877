"""asyncpg-backed chat store with a Redis Streams live feed."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import asyncpg
import ulid

from cargolink.infra.postgres import get_pool

from .errors import ConversationConflict, ConversationNotFound, StoreError, StoreUnavailable
from .feed import RedisMessageFeed
from .models import Conversation, Message, ParticipantPair
from .store import OnInsert, Subscription

_LOG = logging.getLogger(__name__)

_UNAVAILABLE = (
	OSError,
	asyncio.TimeoutError,
	asyncpg.InterfaceError,
	asyncpg.PostgresConnectionError,
	asyncpg.CannotConnectNowError,
)

_CONVERSATION_COLUMNS = "id, participant_a, participant_b, created_at, updated_at"
_MESSAGE_COLUMNS = "id, conversation_id, seq, sender_id, body, client_msg_id, read, created_at"


@asynccontextmanager
async def _connection() -> AsyncIterator[asyncpg.Connection]:
	try:
		pool = await get_pool()
		async with pool.acquire() as conn:
			yield conn
	except _UNAVAILABLE as exc:
		_LOG.warning("chat.store.unavailable", extra={"error": type(exc).__name__})
		raise StoreUnavailable("database unavailable") from exc
	except asyncpg.PostgresError as exc:
		raise StoreError(str(exc) or "database error") from exc


def _conversation(row) -> Conversation:
	return Conversation(
		conversation_id=row["id"],
		participant_a=row["participant_a"],
		participant_b=row["participant_b"],
		created_at=row["created_at"],
		last_activity_at=row["updated_at"],
	)


def _message(row) -> Message:
	return Message(
		message_id=row["id"],
		conversation_id=row["conversation_id"],
		seq=int(row["seq"]),
		sender_id=row["sender_id"],
		body=row["body"],
		created_at=row["created_at"],
		read=bool(row["read"]),
		client_msg_id=row["client_msg_id"],
	)


class PostgresChatStore:
	"""Durable store: rows live in Postgres, inserts are fanned out through Redis.

	Sequence numbers are assigned under the conversation row lock, so `seq`
	follows commit order within a conversation. Publishing happens after commit.
	"""

	def __init__(self, feed: Optional[RedisMessageFeed] = None) -> None:
		self.feed = feed or RedisMessageFeed()

	async def find_conversation(self, participant_a: str, participant_b: str) -> Optional[Conversation]:
		pair = ParticipantPair.from_participants(participant_a, participant_b)
		async with _connection() as conn:
			row = await conn.fetchrow(
				f"SELECT {_CONVERSATION_COLUMNS} FROM chat_conversations WHERE participant_low = $1 AND participant_high = $2",
				*pair.participants(),
			)
		return _conversation(row) if row else None

	async def create_conversation(self, participant_a: str, participant_b: str) -> Conversation:
		pair = ParticipantPair.from_participants(participant_a, participant_b)
		async with _connection() as conn:
			try:
				row = await conn.fetchrow(
					f"""
					INSERT INTO chat_conversations (id, participant_a, participant_b, participant_low, participant_high)
					VALUES ($1, $2, $3, $4, $5)
					RETURNING {_CONVERSATION_COLUMNS}
					""",
					str(ulid.new()),
					participant_a.strip(),
					participant_b.strip(),
					*pair.participants(),
				)
			except asyncpg.UniqueViolationError:
				raise ConversationConflict(f"conversation exists for {pair.key}") from None
		return _conversation(row)

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		async with _connection() as conn:
			row = await conn.fetchrow(
				f"SELECT {_CONVERSATION_COLUMNS} FROM chat_conversations WHERE id = $1",
				conversation_id,
			)
		return _conversation(row) if row else None

	async def list_conversations(self, participant_id: str) -> List[Conversation]:
		async with _connection() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_CONVERSATION_COLUMNS}
				FROM chat_conversations
				WHERE participant_a = $1 OR participant_b = $1
				ORDER BY updated_at DESC, id DESC
				""",
				participant_id,
			)
		return [_conversation(row) for row in rows]

	async def list_messages(self, conversation_id: str) -> List[Message]:
		async with _connection() as conn:
			exists = await conn.fetchval("SELECT 1 FROM chat_conversations WHERE id = $1", conversation_id)
			if not exists:
				raise ConversationNotFound(conversation_id)
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS}
				FROM chat_messages
				WHERE conversation_id = $1
				ORDER BY created_at ASC, seq ASC
				""",
				conversation_id,
			)
		return [_message(row) for row in rows]

	async def create_message(
		self,
		conversation_id: str,
		sender_id: str,
		body: str,
		*,
		client_msg_id: Optional[str] = None,
	) -> Message:
		async with _connection() as conn:
			async with conn.transaction():
				conversation = await conn.fetchrow(
					"SELECT participant_a, participant_b FROM chat_conversations WHERE id = $1 FOR UPDATE",
					conversation_id,
				)
				if conversation is None:
					raise ConversationNotFound(conversation_id)
				if sender_id not in (conversation["participant_a"], conversation["participant_b"]):
					raise ValueError("sender is not a participant")
				existing = None
				if client_msg_id:
					existing = await conn.fetchrow(
						f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages WHERE conversation_id = $1 AND client_msg_id = $2",
						conversation_id,
						client_msg_id,
					)
				if existing is None:
					bumped = await conn.fetchrow(
						"""
						UPDATE chat_conversations
						SET last_seq = last_seq + 1, updated_at = clock_timestamp()
						WHERE id = $1
						RETURNING last_seq, updated_at
						""",
						conversation_id,
					)
					row = await conn.fetchrow(
						f"""
						INSERT INTO chat_messages (id, conversation_id, seq, sender_id, body, client_msg_id, created_at)
						VALUES ($1, $2, $3, $4, $5, $6, $7)
						RETURNING {_MESSAGE_COLUMNS}
						""",
						str(ulid.new()),
						conversation_id,
						bumped["last_seq"],
						sender_id,
						body,
						client_msg_id,
						bumped["updated_at"],
					)
				else:
					row = existing
		message = _message(row)
		# Re-publishing an idempotent hit is harmless: streams drop it by message_id.
		await self.feed.publish(message)
		return message

	async def mark_read(self, conversation_id: str, reader_id: str) -> int:
		async with _connection() as conn:
			exists = await conn.fetchval("SELECT 1 FROM chat_conversations WHERE id = $1", conversation_id)
			if not exists:
				raise ConversationNotFound(conversation_id)
			status = await conn.execute(
				"""
				UPDATE chat_messages
				SET read = TRUE
				WHERE conversation_id = $1 AND sender_id <> $2 AND NOT read
				""",
				conversation_id,
				reader_id,
			)
		try:
			return int(status.split()[-1])
		except (AttributeError, IndexError, ValueError):
			return 0

	async def subscribe(self, conversation_id: str, on_insert: OnInsert) -> Subscription:
		return await self.feed.subscribe(conversation_id, on_insert)

	def unsubscribe(self, subscription: Subscription) -> None:
		self.feed.unsubscribe(subscription)
