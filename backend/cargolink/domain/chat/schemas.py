"""Pydantic schemas for the chat API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from cargolink.settings import settings

from .models import Conversation, Message


class ResolveConversationRequest(BaseModel):
	peer_id: str = Field(..., min_length=1, description="The other participant")


class ConversationResponse(BaseModel):
	conversation_id: str
	participant_a: str
	participant_b: str
	created_at: datetime
	last_activity_at: datetime

	@classmethod
	def from_model(cls, conversation: Conversation) -> "ConversationResponse":
		return cls(
			conversation_id=conversation.conversation_id,
			participant_a=conversation.participant_a,
			participant_b=conversation.participant_b,
			created_at=conversation.created_at,
			last_activity_at=conversation.last_activity_at,
		)


class ConversationSummary(ConversationResponse):
	peer_id: str

	@classmethod
	def for_participant(cls, conversation: Conversation, participant_id: str) -> "ConversationSummary":
		base = ConversationResponse.from_model(conversation)
		return cls(**base.model_dump(), peer_id=conversation.peer_of(participant_id))


class ConversationListResponse(BaseModel):
	items: List[ConversationSummary]


class SendMessageRequest(BaseModel):
	body: str = Field(..., min_length=1)
	client_msg_id: Optional[str] = Field(default=None, description="Client-generated ULID")

	@field_validator("body")
	@classmethod
	def _body_within_limits(cls, value: str) -> str:
		if not value.strip():
			raise ValueError("message body must not be empty")
		if len(value) > settings.chat_body_max_length:
			raise ValueError("message body too long")
		return value


class MessageResponse(BaseModel):
	message_id: str
	conversation_id: str
	seq: int
	sender_id: str
	body: str
	created_at: datetime
	read: bool
	client_msg_id: Optional[str] = None

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(
			message_id=message.message_id,
			conversation_id=message.conversation_id,
			seq=int(message.seq),
			sender_id=message.sender_id,
			body=message.body,
			created_at=message.created_at,
			read=message.read,
			client_msg_id=message.client_msg_id,
		)


class MessageListResponse(BaseModel):
	items: List[MessageResponse]


class ReadReceiptResponse(BaseModel):
	conversation_id: str
	updated: int
