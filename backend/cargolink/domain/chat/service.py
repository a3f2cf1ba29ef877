"""Chat service: store selection and screen-level operations."""

from __future__ import annotations

import logging
import time
from typing import List, Optional

import ulid

from cargolink.obs import metrics as obs_metrics
from cargolink.settings import settings

from .errors import ConversationNotFound, HistoryLoadFailure, SendFailure, StoreError
from .models import Conversation, Message
from .repo import PostgresChatStore
from .resolver import ConversationResolver
from .store import ChatStore, InMemoryChatStore
from .stream import Listener, MessageStream, validate_body

_LOG = logging.getLogger(__name__)

_store: Optional[ChatStore] = None


def build_store() -> ChatStore:
	if settings.chat_store_backend == "memory":
		return InMemoryChatStore()
	return PostgresChatStore()


def get_store() -> ChatStore:
	global _store
	if _store is None:
		_store = build_store()
	return _store


def set_store(store: Optional[ChatStore]) -> None:
	global _store
	_store = store


class ChatService:
	"""Operations a chat screen needs, each checked against the caller's identity.

	Without an explicit store the module-level one is used, looked up on every
	call so `set_store()` takes effect immediately.
	"""

	def __init__(self, store: Optional[ChatStore] = None) -> None:
		self._store = store

	@property
	def store(self) -> ChatStore:
		return self._store if self._store is not None else get_store()

	async def resolve_conversation(self, participant_id: str, peer_id: str) -> Conversation:
		return await ConversationResolver(self.store).resolve(participant_id, peer_id)

	async def open_stream(
		self,
		participant_id: str,
		peer_id: str,
		*,
		listener: Optional[Listener] = None,
	) -> MessageStream:
		"""Resolve the conversation with `peer_id` and open a live stream on it.

		A `ResolutionFailure` propagates before any stream exists.
		"""
		conversation = await self.resolve_conversation(participant_id, peer_id)
		stream = MessageStream(self.store, participant_id, listener=listener)
		await stream.open(conversation)
		return stream

	async def list_conversations(self, participant_id: str) -> List[Conversation]:
		return await self.store.list_conversations(participant_id)

	async def get_conversation(self, participant_id: str, conversation_id: str) -> Conversation:
		conversation = await self.store.get_conversation(conversation_id)
		if conversation is None or not conversation.has_participant(participant_id):
			raise ConversationNotFound(conversation_id)
		return conversation

	async def history(self, participant_id: str, conversation_id: str) -> List[Message]:
		await self.get_conversation(participant_id, conversation_id)
		started = time.perf_counter()
		try:
			messages = await self.store.list_messages(conversation_id)
		except StoreError as exc:
			_LOG.warning("chat.history.failed", extra={"conversation_id": conversation_id, "error": exc.code})
			raise HistoryLoadFailure(str(exc) or exc.code) from exc
		obs_metrics.observe_chat_history(time.perf_counter() - started)
		return messages

	async def send_message(
		self,
		participant_id: str,
		conversation_id: str,
		body: str,
		*,
		client_msg_id: Optional[str] = None,
	) -> Message:
		validate_body(body)
		await self.get_conversation(participant_id, conversation_id)
		client_msg_id = client_msg_id or str(ulid.new())
		try:
			message = await self.store.create_message(
				conversation_id,
				participant_id,
				body,
				client_msg_id=client_msg_id,
			)
		except StoreError as exc:
			obs_metrics.inc_chat_send("failed")
			_LOG.warning(
				"chat.send.failed",
				extra={"conversation_id": conversation_id, "client_msg_id": client_msg_id, "error": exc.code},
			)
			raise SendFailure(str(exc) or exc.code) from exc
		obs_metrics.inc_chat_send("ok")
		return message

	async def mark_read(self, participant_id: str, conversation_id: str) -> int:
		await self.get_conversation(participant_id, conversation_id)
		updated = await self.store.mark_read(conversation_id, participant_id)
		obs_metrics.inc_chat_read(updated)
		return updated


def get_service() -> ChatService:
	return ChatService()
