"""Error taxonomy for the chat core."""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
	from .models import PendingMessage


class ChatError(Exception):
	"""Base class for chat failures."""

	code = "chat_error"


class StoreError(ChatError):
	"""The store rejected the request."""

	code = "store_error"


class StoreUnavailable(StoreError):
	"""The store could not be reached."""

	code = "store_unavailable"


class ConversationConflict(StoreError):
	"""A conversation already exists for the participant pair."""

	code = "conversation_conflict"


class ConversationNotFound(ChatError):
	code = "conversation_not_found"


class ResolutionFailure(ChatError):
	code = "resolution_failed"


class HistoryLoadFailure(ChatError):
	code = "history_load_failed"


class SendFailure(ChatError):
	"""Message creation failed; the pending message still holds the draft."""

	code = "send_failed"

	def __init__(self, message: str, *, pending: Optional["PendingMessage"] = None) -> None:
		super().__init__(message)
		self.pending = pending


class StreamStateError(ChatError):
	code = "invalid_stream_state"
