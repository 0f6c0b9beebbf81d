"""
Conversation management API routes.

Every route is scoped to the authenticated owner.
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from tokenchat.api.dependencies import Conversations
from tokenchat.api.middleware.auth import CurrentUser
from tokenchat.core.constants import DEFAULT_CONVERSATION_TITLE
from tokenchat.models.chat_models import (
    Conversation,
    ConversationCreateRequest,
    ConversationListResponse,
    ConversationRenameRequest,
    MessageListResponse,
)

router = APIRouter(prefix="/conversations", tags=["Conversations"])


@router.get("", response_model=ConversationListResponse, summary="List conversations")
async def list_conversations(
    user: CurrentUser,
    conversations: Conversations,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ConversationListResponse:
    items = await conversations.list_for_user(user.id, limit=limit, offset=offset)
    return ConversationListResponse(conversations=items)


@router.post(
    "",
    response_model=Conversation,
    status_code=status.HTTP_201_CREATED,
    summary="Create a conversation",
)
async def create_conversation(
    request: ConversationCreateRequest,
    user: CurrentUser,
    conversations: Conversations,
) -> Conversation:
    title = (request.title or "").strip() or DEFAULT_CONVERSATION_TITLE
    return await conversations.create(user.id, title)


@router.get("/{conversation_id}", response_model=Conversation, summary="Get a conversation")
async def get_conversation(conversation_id: UUID, user: CurrentUser, conversations: Conversations) -> Conversation:
    return await conversations.get_owned(user.id, conversation_id)


@router.patch("/{conversation_id}", response_model=Conversation, summary="Rename a conversation")
async def rename_conversation(
    conversation_id: UUID,
    request: ConversationRenameRequest,
    user: CurrentUser,
    conversations: Conversations,
) -> Conversation:
    await conversations.get_owned(user.id, conversation_id)
    return await conversations.rename(conversation_id, request.title)


@router.delete(
    "/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a conversation and its messages",
)
async def delete_conversation(conversation_id: UUID, user: CurrentUser, conversations: Conversations) -> Response:
    await conversations.get_owned(user.id, conversation_id)
    await conversations.delete(conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{conversation_id}/messages",
    response_model=MessageListResponse,
    summary="List messages",
    description="All messages of the conversation, oldest first.",
)
async def list_messages(conversation_id: UUID, user: CurrentUser, conversations: Conversations) -> MessageListResponse:
    await conversations.get_owned(user.id, conversation_id)
    messages = await conversations.get_messages(conversation_id)
    return MessageListResponse(messages=messages)
