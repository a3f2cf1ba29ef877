"""Live, ordered view over the messages of one conversation.

A stream loads the conversation history once and then appends whatever the
store's live feed delivers, in delivery order. The subscription is opened
before the history fetch so nothing committed in between is missed; feed
events that arrive while history is still loading are buffered and replayed
after it, skipping any message the history already contains.

Sends are tracked as pending messages until the feed delivers them back. The
stream never appends its own sends directly.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

import ulid

from cargolink.obs import metrics as obs_metrics
from cargolink.settings import settings

from .errors import ChatError, HistoryLoadFailure, SendFailure, StreamStateError
from .models import (
	Conversation,
	Message,
	PendingMessage,
	StreamEvent,
	StreamEventKind,
	StreamState,
)
from .store import ChatStore, Subscription

_LOG = logging.getLogger(__name__)

Listener = Callable[[StreamEvent], None]
TimelineEntry = Union[Message, PendingMessage]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def validate_body(body: str) -> str:
	if not isinstance(body, str) or not body.strip():
		raise ValueError("message body must not be empty")
	if len(body) > settings.chat_body_max_length:
		raise ValueError("message body too long")
	return body


class MessageStream:
	"""Ordered message sequence for one open chat view.

	Instances are single use: once closed, a new stream must be created to
	reopen the conversation.
	"""

	def __init__(
		self,
		store: ChatStore,
		viewer_id: str,
		*,
		listener: Optional[Listener] = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._store = store
		self._viewer_id = viewer_id
		self._listener = listener
		self._clock = clock
		self._state = StreamState.IDLE
		self._conversation: Optional[Conversation] = None
		self._subscription: Optional[Subscription] = None
		self._messages: List[Message] = []
		self._seen: Set[str] = set()
		self._buffer: List[Message] = []
		self._pending: Dict[str, PendingMessage] = {}
		self.failure: Optional[ChatError] = None

	@property
	def state(self) -> StreamState:
		return self._state

	@property
	def viewer_id(self) -> str:
		return self._viewer_id

	@property
	def conversation(self) -> Optional[Conversation]:
		return self._conversation

	@property
	def conversation_id(self) -> Optional[str]:
		return self._conversation.conversation_id if self._conversation else None

	@property
	def messages(self) -> Tuple[Message, ...]:
		return tuple(self._messages)

	@property
	def pending(self) -> Tuple[PendingMessage, ...]:
		return tuple(self._pending.values())

	def timeline(self) -> List[TimelineEntry]:
		"""Confirmed messages followed by unconfirmed sends in the order they were made."""
		entries: List[TimelineEntry] = list(self._messages)
		entries.extend(self._pending.values())
		return entries

	def bind(self, conversation: Conversation) -> None:
		if self._state is not StreamState.IDLE:
			raise StreamStateError(f"cannot bind a {self._state.value} stream")
		if not conversation.has_participant(self._viewer_id):
			raise ValueError("viewer is not a participant")
		self._conversation = conversation
		self._state = StreamState.LOADING
		obs_metrics.chat_stream_opened()

	async def open(self, conversation: Optional[Conversation] = None) -> Tuple[Message, ...]:
		"""Subscribe to the live feed, load history and go live.

		Returns the applied history, or an empty tuple when the stream was closed
		while loading.
		"""
		if conversation is not None:
			self.bind(conversation)
		if self._state is not StreamState.LOADING or self._subscription is not None:
			raise StreamStateError(f"cannot open a {self._state.value} stream")
		conversation_id = self.conversation_id
		if conversation_id is None:
			raise StreamStateError("stream has no conversation bound")
		started = time.perf_counter()
		try:
			subscription = await self._store.subscribe(conversation_id, self._on_insert)
			if self._state is StreamState.CLOSED:
				self._store.unsubscribe(subscription)
				return ()
			self._subscription = subscription
			history = await self._store.list_messages(conversation_id)
		except ChatError as exc:
			if self._state is StreamState.CLOSED:
				return ()
			_LOG.warning("chat.stream.history_failed", extra={"conversation_id": conversation_id, "error": exc.code})
			self.close()
			self.failure = HistoryLoadFailure(str(exc) or exc.code)
			raise self.failure from exc
		except Exception:
			self.close()
			raise
		if self._state is StreamState.CLOSED:
			_LOG.info("chat.stream.late_history_discarded", extra={"conversation_id": conversation_id})
			return ()
		obs_metrics.observe_chat_history(time.perf_counter() - started)
		self._apply_history(history)
		return tuple(self._messages)

	async def send(self, body: str, *, client_msg_id: Optional[str] = None) -> PendingMessage:
		"""Queue a message from the viewer and ask the store to create it.

		The pending entry shows up immediately and is replaced once the live feed
		delivers the stored message. On failure the entry stays, marked failed,
		and `SendFailure` is raised.
		"""
		if self._state not in (StreamState.LOADING, StreamState.LIVE):
			raise StreamStateError(f"cannot send on a {self._state.value} stream")
		validate_body(body)
		client_msg_id = client_msg_id or str(ulid.new())
		if client_msg_id in self._pending:
			raise ValueError("client_msg_id already pending")
		if self._conversation is None:
			raise StreamStateError("stream has no conversation bound")
		pending = PendingMessage(
			client_msg_id=client_msg_id,
			conversation_id=self._conversation.conversation_id,
			sender_id=self._viewer_id,
			body=body,
			queued_at=self._clock(),
		)
		self._pending[client_msg_id] = pending
		self._emit(StreamEventKind.PENDING, pending=pending)
		await self._submit(pending)
		return pending

	async def retry(self, client_msg_id: str) -> PendingMessage:
		if self._state not in (StreamState.LOADING, StreamState.LIVE):
			raise StreamStateError(f"cannot send on a {self._state.value} stream")
		pending = self._pending.get(client_msg_id)
		if pending is None or not pending.failed:
			raise ValueError("no failed message with that client_msg_id")
		self._emit(StreamEventKind.PENDING, pending=pending)
		await self._submit(pending)
		return pending

	def discard(self, client_msg_id: str) -> Optional[PendingMessage]:
		pending = self._pending.pop(client_msg_id, None)
		if pending is not None:
			self._emit(StreamEventKind.DISCARDED, pending=pending)
		return pending

	def close(self) -> None:
		"""Tear down the subscription and drop local state. Safe to call twice."""
		if self._state is StreamState.CLOSED:
			return
		was_open = self._state in (StreamState.LOADING, StreamState.LIVE)
		self._state = StreamState.CLOSED
		if self._subscription is not None:
			self._store.unsubscribe(self._subscription)
			self._subscription = None
		self._messages.clear()
		self._seen.clear()
		self._buffer.clear()
		self._pending.clear()
		if was_open:
			obs_metrics.chat_stream_closed()
		self._emit(StreamEventKind.CLOSED)

	async def _submit(self, pending: PendingMessage) -> None:
		pending.attempts += 1
		pending.failed = False
		pending.error = None
		try:
			stored = await self._store.create_message(
				pending.conversation_id,
				pending.sender_id,
				pending.body,
				client_msg_id=pending.client_msg_id,
			)
		except (ChatError, ValueError) as exc:
			obs_metrics.inc_chat_send("failed")
			code = getattr(exc, "code", "invalid_message")
			_LOG.warning(
				"chat.send.failed",
				extra={"conversation_id": pending.conversation_id, "client_msg_id": pending.client_msg_id, "error": code},
			)
			if self._pending.get(pending.client_msg_id) is pending:
				pending.failed = True
				pending.error = code
				self._emit(StreamEventKind.FAILED, pending=pending)
			raise SendFailure(str(exc) or code, pending=pending) from exc
		obs_metrics.inc_chat_send("ok")
		# An idempotent hit returns a message the stream may already hold; the feed
		# will not deliver it as new.
		if stored.message_id in self._seen:
			self._settle(stored)

	def _apply_history(self, history: List[Message]) -> None:
		self._messages = list(history)
		self._seen = {message.message_id for message in history}
		buffered, self._buffer = self._buffer, []
		self._state = StreamState.LIVE
		settled = [(message, self._take_pending(message)) for message in history]
		self._emit(StreamEventKind.HISTORY, history=tuple(self._messages))
		for message, pending in settled:
			if pending is not None:
				self._emit(StreamEventKind.CONFIRMED, message=message, pending=pending)
		for message in buffered:
			self._append(message)

	def _on_insert(self, message: Message) -> None:
		if self._state is StreamState.CLOSED:
			obs_metrics.inc_chat_feed_event("ignored")
			return
		if message.conversation_id != self.conversation_id:
			obs_metrics.inc_chat_feed_event("ignored")
			return
		if self._state is StreamState.LOADING:
			obs_metrics.inc_chat_feed_event("buffered")
			self._buffer.append(message)
			return
		self._append(message)

	def _append(self, message: Message) -> None:
		if message.message_id in self._seen:
			obs_metrics.inc_chat_feed_event("duplicate")
			self._settle(message)
			return
		self._seen.add(message.message_id)
		self._messages.append(message)
		obs_metrics.inc_chat_feed_event("appended")
		pending = self._take_pending(message)
		kind = StreamEventKind.CONFIRMED if pending is not None else StreamEventKind.APPENDED
		self._emit(kind, message=message, pending=pending)

	def _take_pending(self, message: Message) -> Optional[PendingMessage]:
		if not message.client_msg_id or message.sender_id != self._viewer_id:
			return None
		return self._pending.pop(message.client_msg_id, None)

	def _settle(self, message: Message) -> None:
		"""Confirm a send whose stored message is already in the sequence."""
		pending = self._take_pending(message)
		if pending is not None:
			self._emit(StreamEventKind.CONFIRMED, message=message, pending=pending)

	def _emit(
		self,
		kind: StreamEventKind,
		*,
		message: Optional[Message] = None,
		pending: Optional[PendingMessage] = None,
		history: Tuple[Message, ...] = (),
	) -> None:
		if self._listener is None:
			return
		self._listener(
			StreamEvent(
				kind=kind,
				conversation_id=self.conversation_id or "",
				message=message,
				pending=pending,
				history=history,
			)
		)
