"""FastAPI endpoints for the chat core."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from cargolink.domain.chat.schemas import (
	ConversationListResponse,
	ConversationResponse,
	ConversationSummary,
	MessageListResponse,
	MessageResponse,
	ReadReceiptResponse,
	ResolveConversationRequest,
	SendMessageRequest,
)
from cargolink.domain.chat.service import ChatService, get_service
from cargolink.infra.auth import AuthenticatedUser, get_current_user
from cargolink.obs import logging as obs_logging

router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_service),
) -> ConversationListResponse:
	conversations = await service.list_conversations(auth_user.id)
	return ConversationListResponse(
		items=[ConversationSummary.for_participant(conversation, auth_user.id) for conversation in conversations]
	)


@router.post("/conversations", response_model=ConversationResponse)
async def resolve_conversation_endpoint(
	payload: ResolveConversationRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_service),
) -> ConversationResponse:
	conversation = await service.resolve_conversation(auth_user.id, payload.peer_id)
	return ConversationResponse.from_model(conversation)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_service),
) -> MessageListResponse:
	tokens = obs_logging.bind_context(user_id=auth_user.id, conversation_id=conversation_id)
	try:
		messages = await service.history(auth_user.id, conversation_id)
	finally:
		obs_logging.reset_context(tokens)
	return MessageListResponse(items=[MessageResponse.from_model(message) for message in messages])


@router.post(
	"/conversations/{conversation_id}/messages",
	response_model=MessageResponse,
	status_code=status.HTTP_201_CREATED,
)
async def send_message_endpoint(
	conversation_id: str,
	payload: SendMessageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_service),
) -> MessageResponse:
	tokens = obs_logging.bind_context(user_id=auth_user.id, conversation_id=conversation_id)
	try:
		message = await service.send_message(
			auth_user.id,
			conversation_id,
			payload.body,
			client_msg_id=payload.client_msg_id,
		)
	finally:
		obs_logging.reset_context(tokens)
	return MessageResponse.from_model(message)


@router.post("/conversations/{conversation_id}/read", response_model=ReadReceiptResponse)
async def mark_read_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_service),
) -> ReadReceiptResponse:
	updated = await service.mark_read(auth_user.id, conversation_id)
	return ReadReceiptResponse(conversation_id=conversation_id, updated=updated)
