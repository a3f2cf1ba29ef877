"""Store contract for the chat core and its in-memory implementation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import ulid

from .errors import ConversationConflict, ConversationNotFound
from .models import Conversation, Message, ParticipantPair, sort_messages

_LOG = logging.getLogger(__name__)

OnInsert = Callable[[Message], None]


class Subscription:
	"""Cancelable live feed handle bound to a single conversation.

	Delivery stops as soon as `cancel()` returns.
	"""

	def __init__(
		self,
		conversation_id: str,
		callback: OnInsert,
		*,
		on_cancel: Optional[Callable[["Subscription"], None]] = None,
	) -> None:
		self.conversation_id = conversation_id
		self._callback = callback
		self._on_cancel = on_cancel
		self._active = True

	@property
	def active(self) -> bool:
		return self._active

	def deliver(self, message: Message) -> bool:
		if not self._active or message.conversation_id != self.conversation_id:
			return False
		self._callback(message)
		return True

	def cancel(self) -> None:
		if not self._active:
			return
		self._active = False
		if self._on_cancel is not None:
			self._on_cancel(self)


class ChatStore(Protocol):
	async def find_conversation(self, participant_a: str, participant_b: str) -> Optional[Conversation]:
		...

	async def create_conversation(self, participant_a: str, participant_b: str) -> Conversation:
		...

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		...

	async def list_conversations(self, participant_id: str) -> List[Conversation]:
		...

	async def list_messages(self, conversation_id: str) -> List[Message]:
		...

	async def create_message(
		self,
		conversation_id: str,
		sender_id: str,
		body: str,
		*,
		client_msg_id: Optional[str] = None,
	) -> Message:
		...

	async def mark_read(self, conversation_id: str, reader_id: str) -> int:
		...

	async def subscribe(self, conversation_id: str, on_insert: OnInsert) -> Subscription:
		...

	def unsubscribe(self, subscription: Subscription) -> None:
		...


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class InMemoryChatStore:
	"""Process-local store used in development and tests.

	Inserts are fanned out to subscribers synchronously, in commit order, before
	`create_message` returns.
	"""

	def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
		self._lock = asyncio.Lock()
		self._clock = clock
		self._conversations: Dict[str, Conversation] = {}
		self._by_pair: Dict[Tuple[str, str], str] = {}
		self._messages: Dict[str, List[Message]] = {}
		self._client_ids: Dict[Tuple[str, str], Message] = {}
		self._subscriptions: Dict[str, List[Subscription]] = {}

	async def find_conversation(self, participant_a: str, participant_b: str) -> Optional[Conversation]:
		pair = ParticipantPair.from_participants(participant_a, participant_b)
		async with self._lock:
			conversation_id = self._by_pair.get(pair.participants())
			return self._conversations.get(conversation_id) if conversation_id else None

	async def create_conversation(self, participant_a: str, participant_b: str) -> Conversation:
		pair = ParticipantPair.from_participants(participant_a, participant_b)
		async with self._lock:
			if pair.participants() in self._by_pair:
				raise ConversationConflict(f"conversation exists for {pair.key}")
			now = self._clock()
			conversation = Conversation(
				conversation_id=str(ulid.new()),
				participant_a=participant_a.strip(),
				participant_b=participant_b.strip(),
				created_at=now,
				last_activity_at=now,
			)
			self._conversations[conversation.conversation_id] = conversation
			self._by_pair[pair.participants()] = conversation.conversation_id
			self._messages[conversation.conversation_id] = []
			return conversation

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		async with self._lock:
			return self._conversations.get(conversation_id)

	async def list_conversations(self, participant_id: str) -> List[Conversation]:
		async with self._lock:
			owned = [c for c in self._conversations.values() if c.has_participant(participant_id)]
		owned.sort(key=lambda c: c.last_activity_at, reverse=True)
		return owned

	async def list_messages(self, conversation_id: str) -> List[Message]:
		async with self._lock:
			if conversation_id not in self._conversations:
				raise ConversationNotFound(conversation_id)
			return sort_messages(self._messages[conversation_id])

	async def create_message(
		self,
		conversation_id: str,
		sender_id: str,
		body: str,
		*,
		client_msg_id: Optional[str] = None,
	) -> Message:
		async with self._lock:
			conversation = self._conversations.get(conversation_id)
			if conversation is None:
				raise ConversationNotFound(conversation_id)
			if not conversation.has_participant(sender_id):
				raise ValueError("sender is not a participant")
			if client_msg_id:
				existing = self._client_ids.get((conversation_id, client_msg_id))
				if existing is not None:
					return existing
			messages = self._messages[conversation_id]
			created_at = self._clock()
			message = Message(
				message_id=str(ulid.new()),
				conversation_id=conversation_id,
				seq=messages[-1].seq + 1 if messages else 1,
				sender_id=sender_id,
				body=body,
				created_at=created_at,
				client_msg_id=client_msg_id,
			)
			messages.append(message)
			if client_msg_id:
				self._client_ids[(conversation_id, client_msg_id)] = message
			self._conversations[conversation_id] = replace(
				conversation,
				last_activity_at=max(conversation.last_activity_at, created_at),
			)
			subscribers = list(self._subscriptions.get(conversation_id, []))
		for subscription in subscribers:
			try:
				subscription.deliver(message)
			except Exception:
				_LOG.exception("chat.feed.callback_failed", extra={"conversation_id": conversation_id})
		return message

	async def mark_read(self, conversation_id: str, reader_id: str) -> int:
		async with self._lock:
			if conversation_id not in self._conversations:
				raise ConversationNotFound(conversation_id)
			messages = self._messages[conversation_id]
			updated = 0
			for index, message in enumerate(messages):
				if message.sender_id != reader_id and not message.read:
					messages[index] = message.mark_read()
					updated += 1
			return updated

	async def subscribe(self, conversation_id: str, on_insert: OnInsert) -> Subscription:
		subscription = Subscription(conversation_id, on_insert, on_cancel=self._remove)
		self._subscriptions.setdefault(conversation_id, []).append(subscription)
		return subscription

	def unsubscribe(self, subscription: Subscription) -> None:
		subscription.cancel()

	def subscriber_count(self, conversation_id: str) -> int:
		return len(self._subscriptions.get(conversation_id, []))

	def _remove(self, subscription: Subscription) -> None:
		subs = self._subscriptions.get(subscription.conversation_id)
		if not subs:
			return
		try:
			subs.remove(subscription)
		except ValueError:
			return
		if not subs:
			self._subscriptions.pop(subscription.conversation_id, None)
