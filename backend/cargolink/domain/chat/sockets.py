"""Socket.IO namespace hosting one MessageStream per open chat view."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import socketio

from cargolink.infra.auth import AuthenticatedUser, user_from_socket
from cargolink.obs import logging as obs_logging
from cargolink.obs import metrics as obs_metrics

from .errors import ChatError, SendFailure
from .models import StreamEvent, StreamEventKind
from .service import ChatService
from .stream import MessageStream

_LOG = logging.getLogger(__name__)

_EVENT_NAMES = {
	StreamEventKind.HISTORY: "chat:history",
	StreamEventKind.APPENDED: "chat:message",
	StreamEventKind.PENDING: "chat:pending",
	StreamEventKind.CONFIRMED: "chat:confirmed",
	StreamEventKind.FAILED: "chat:failed",
	StreamEventKind.DISCARDED: "chat:discarded",
}


def _headers(environ: dict) -> Dict[str, str]:
	headers: Dict[str, str] = {}
	scope = environ.get("asgi.scope") or {}
	for key, value in scope.get("headers", []):
		headers[key.decode().lower()] = value.decode()
	for key, value in environ.items():
		if isinstance(key, str) and key.startswith("HTTP_") and isinstance(value, str):
			headers.setdefault(key[5:].replace("_", "-").lower(), value)
	return headers


def serialize_event(event: StreamEvent) -> Optional[Tuple[str, dict]]:
	"""Map a stream event to a socket event name and payload; None when not forwarded."""
	name = _EVENT_NAMES.get(event.kind)
	if name is None:
		return None
	payload: dict = {"conversation_id": event.conversation_id}
	if event.kind is StreamEventKind.HISTORY:
		payload["messages"] = [message.to_dict() for message in event.history]
	if event.message is not None:
		payload["message"] = event.message.to_dict()
	if event.pending is not None:
		payload["client_msg_id"] = event.pending.client_msg_id
		if event.kind is not StreamEventKind.CONFIRMED:
			payload["pending"] = event.pending.to_dict()
	return name, payload


@dataclass
class _SocketSession:
	user: AuthenticatedUser
	streams: Dict[str, MessageStream] = field(default_factory=dict)
	outbox: "asyncio.Queue[Tuple[str, dict]]" = field(default_factory=asyncio.Queue)
	pump: Optional[asyncio.Task] = None


class ChatNamespace(socketio.AsyncNamespace):
	"""Each socket may keep several chat views open, one stream per conversation.

	Stream events are queued per socket and emitted by a single pump task, so the
	client sees them in the order the stream produced them.
	"""

	def __init__(self, service: Optional[ChatService] = None) -> None:
		super().__init__("/chat")
		self._service = service or ChatService()
		self._sessions: Dict[str, _SocketSession] = {}

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		auth_payload = auth or environ.get("auth") or {}
		try:
			user = user_from_socket(auth_payload, _headers(environ))
		except ValueError as exc:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError(str(exc)) from None
		session = _SocketSession(user=user)
		session.pump = asyncio.create_task(self._pump(sid, session.outbox))
		self._sessions[sid] = session
		await self.enter_room(sid, self.user_room(user.id))
		_LOG.info("chat.socket.connected", extra={"sid": sid, "user_id": user.id})

	async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		session = self._sessions.pop(sid, None)
		if session is None:
			return
		for stream in list(session.streams.values()):
			stream.close()
		session.streams.clear()
		if session.pump is not None:
			session.pump.cancel()
		await self.leave_room(sid, self.user_room(session.user.id))

	async def on_chat_open(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "chat_open")
		session = self._sessions.get(sid)
		if session is None:
			return {"ok": False, "error": "unauthenticated"}
		peer_id = str((payload or {}).get("peer_id") or "").strip()

		def listener(event: StreamEvent) -> None:
			self._enqueue(session, event)

		try:
			stream = await self._service.open_stream(session.user.id, peer_id, listener=listener)
		except ValueError:
			return {"ok": False, "error": "invalid_request"}
		except ChatError as exc:
			return {"ok": False, "error": exc.code}
		conversation_id = stream.conversation_id or ""
		previous = session.streams.get(conversation_id)
		session.streams[conversation_id] = stream
		if previous is not None:
			previous.close()
		if self._sessions.get(sid) is not session:
			stream.close()
			return {"ok": False, "error": "disconnected"}
		return {"ok": True, "conversation_id": conversation_id}

	async def on_chat_send(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "chat_send")
		payload = payload or {}
		stream = self._stream(sid, payload)
		if stream is None:
			return {"ok": False, "error": "stream_not_open"}
		tokens = obs_logging.bind_context(sid=sid, conversation_id=stream.conversation_id)
		try:
			pending = await stream.send(str(payload.get("body") or ""), client_msg_id=payload.get("client_msg_id"))
		except ValueError:
			return {"ok": False, "error": "invalid_message"}
		except SendFailure as exc:
			client_msg_id = exc.pending.client_msg_id if exc.pending is not None else None
			return {"ok": False, "error": exc.code, "client_msg_id": client_msg_id}
		except ChatError as exc:
			return {"ok": False, "error": exc.code}
		finally:
			obs_logging.reset_context(tokens)
		return {"ok": True, "client_msg_id": pending.client_msg_id}

	async def on_chat_retry(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "chat_retry")
		payload = payload or {}
		stream = self._stream(sid, payload)
		if stream is None:
			return {"ok": False, "error": "stream_not_open"}
		client_msg_id = str(payload.get("client_msg_id") or "")
		try:
			await stream.retry(client_msg_id)
		except ValueError:
			return {"ok": False, "error": "unknown_message"}
		except ChatError as exc:
			return {"ok": False, "error": exc.code, "client_msg_id": client_msg_id}
		return {"ok": True, "client_msg_id": client_msg_id}

	async def on_chat_discard(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "chat_discard")
		payload = payload or {}
		stream = self._stream(sid, payload)
		if stream is None:
			return {"ok": False, "error": "stream_not_open"}
		discarded = stream.discard(str(payload.get("client_msg_id") or ""))
		return {"ok": discarded is not None}

	async def on_chat_close(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "chat_close")
		session = self._sessions.get(sid)
		conversation_id = str((payload or {}).get("conversation_id") or "")
		stream = session.streams.pop(conversation_id, None) if session else None
		if stream is not None:
			stream.close()
		return {"ok": True}

	async def flush(self, sid: str) -> None:
		"""Wait until every queued event for `sid` has been emitted."""
		session = self._sessions.get(sid)
		if session is not None:
			await session.outbox.join()

	def open_streams(self, sid: str) -> Dict[str, MessageStream]:
		session = self._sessions.get(sid)
		return dict(session.streams) if session else {}

	@staticmethod
	def user_room(user_id: str) -> str:
		return f"user:{user_id}"

	def _stream(self, sid: str, payload: dict) -> Optional[MessageStream]:
		session = self._sessions.get(sid)
		if session is None:
			return None
		return session.streams.get(str(payload.get("conversation_id") or ""))

	def _enqueue(self, session: _SocketSession, event: StreamEvent) -> None:
		serialized = serialize_event(event)
		if serialized is not None:
			session.outbox.put_nowait(serialized)

	async def _pump(self, sid: str, outbox: "asyncio.Queue[Tuple[str, dict]]") -> None:
		while True:
			name, payload = await outbox.get()
			try:
				await self.emit(name, payload, room=sid)
				obs_metrics.socket_event(self.namespace, name)
			except Exception:
				_LOG.exception("chat.socket.emit_failed", extra={"sid": sid, "event": name})
			finally:
				outbox.task_done()
