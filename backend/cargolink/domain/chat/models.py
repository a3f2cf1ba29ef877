"""Domain models for the chat synchronization core."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


def _clean_id(value: object) -> str:
	return str(value or "").strip()


@dataclass(slots=True, frozen=True)
class ParticipantPair:
	"""Unordered pair of participants, stored in canonical (sorted) order."""

	user_a: str
	user_b: str

	@classmethod
	def from_participants(cls, user_one: str, user_two: str) -> "ParticipantPair":
		first, second = _clean_id(user_one), _clean_id(user_two)
		if not first or not second:
			raise ValueError("participant ids must be non-empty")
		if first == second:
			raise ValueError("cannot start a conversation with yourself")
		ordered = tuple(sorted((first, second)))
		return cls(user_a=ordered[0], user_b=ordered[1])

	@property
	def key(self) -> str:
		"""Text form for logs and messages; the length prefix keeps ids containing ':' apart."""
		return f"{len(self.user_a)}:{self.user_a}:{self.user_b}"

	def participants(self) -> Tuple[str, str]:
		return (self.user_a, self.user_b)


@dataclass(slots=True, frozen=True)
class Conversation:
	"""The single dialogue thread between two participants.

	`participant_a` is whoever opened the conversation first; the pair itself is
	unordered.
	"""

	conversation_id: str
	participant_a: str
	participant_b: str
	created_at: datetime
	last_activity_at: datetime

	def participants(self) -> Tuple[str, str]:
		return (self.participant_a, self.participant_b)

	def has_participant(self, user_id: str) -> bool:
		return user_id in (self.participant_a, self.participant_b)

	def peer_of(self, user_id: str) -> str:
		if user_id == self.participant_a:
			return self.participant_b
		if user_id == self.participant_b:
			return self.participant_a
		raise ValueError("not a participant")

	def to_dict(self) -> dict:
		return {
			"conversation_id": self.conversation_id,
			"participant_a": self.participant_a,
			"participant_b": self.participant_b,
			"created_at": self.created_at.isoformat(),
			"last_activity_at": self.last_activity_at.isoformat(),
		}


@dataclass(slots=True, frozen=True)
class Message:
	"""One immutable unit of text within a conversation.

	`seq` is the store's insertion order within the conversation and breaks ties
	between equal `created_at` values.
	"""

	message_id: str
	conversation_id: str
	seq: int
	sender_id: str
	body: str
	created_at: datetime
	read: bool = False
	client_msg_id: Optional[str] = None

	@property
	def sort_key(self) -> Tuple[datetime, int]:
		return (self.created_at, self.seq)

	def mark_read(self) -> "Message":
		return replace(self, read=True)

	def to_dict(self) -> dict:
		return {
			"message_id": self.message_id,
			"conversation_id": self.conversation_id,
			"seq": self.seq,
			"sender_id": self.sender_id,
			"body": self.body,
			"created_at": self.created_at.isoformat(),
			"read": self.read,
			"client_msg_id": self.client_msg_id,
		}


@dataclass(slots=True)
class PendingMessage:
	"""A send that the live feed has not confirmed yet.

	A failed pending message keeps its body so the sender can retry it.
	"""

	client_msg_id: str
	conversation_id: str
	sender_id: str
	body: str
	queued_at: datetime
	failed: bool = False
	error: Optional[str] = None
	attempts: int = 0

	def to_dict(self) -> dict:
		return {
			"client_msg_id": self.client_msg_id,
			"conversation_id": self.conversation_id,
			"sender_id": self.sender_id,
			"body": self.body,
			"queued_at": self.queued_at.isoformat(),
			"failed": self.failed,
			"error": self.error,
			"attempts": self.attempts,
		}


class StreamState(str, Enum):
	IDLE = "idle"
	LOADING = "loading"
	LIVE = "live"
	CLOSED = "closed"


class StreamEventKind(str, Enum):
	HISTORY = "history"
	APPENDED = "appended"
	PENDING = "pending"
	CONFIRMED = "confirmed"
	FAILED = "failed"
	DISCARDED = "discarded"
	CLOSED = "closed"


@dataclass(slots=True, frozen=True)
class StreamEvent:
	kind: StreamEventKind
	conversation_id: str
	message: Optional[Message] = None
	pending: Optional[PendingMessage] = None
	history: Tuple[Message, ...] = ()


def sort_messages(messages) -> list[Message]:
	"""Order messages by creation time, ties broken by store insertion order."""
	return sorted(messages, key=lambda m: m.sort_key)
