from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from servicoja.auth import assert_actor_authorized
from servicoja.models import (
    Conversation,
    ConversationCreateRequest,
    ConversationSummary,
    MarkReadRequest,
    Message,
    MessageCreateRequest,
    MessageWithSender,
    SuccessResponse,
)
from servicoja.routers.errors import raise_store_http_error
from servicoja.services.marketplace_store import MarketplaceStoreError, marketplace_store
from servicoja.services.notification_store import notification_store

router = APIRouter(prefix="/conversations", tags=["conversations"])
messages_router = APIRouter(prefix="/messages", tags=["conversations"])

PREVIEW_LENGTH = 80


@router.get("", response_model=list[ConversationSummary])
def list_conversations(user_id: str = Query(...)):
    return marketplace_store.list_conversations(user_id)


@router.post("", response_model=Conversation)
def open_conversation(
    payload: ConversationCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.client_id, authorization=authorization)
    try:
        return marketplace_store.get_or_create_conversation(
            client_id=payload.client_id,
            provider_id=payload.provider_id,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.get("/{conversation_id}", response_model=Conversation)
def get_conversation(conversation_id: str):
    conversation = marketplace_store.get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.get("/{conversation_id}/messages", response_model=list[MessageWithSender])
def list_messages(conversation_id: str, after: Optional[str] = Query(default=None)):
    try:
        return marketplace_store.list_messages(conversation_id, after=after)
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)


@router.post("/{conversation_id}/read", response_model=SuccessResponse)
def mark_conversation_read(
    conversation_id: str,
    payload: MarkReadRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        updated = marketplace_store.mark_messages_read(conversation_id, user_id=payload.user_id)
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
    return SuccessResponse(success=True, updated=updated)


@messages_router.post("", response_model=Message)
def send_message(
    payload: MessageCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.sender_id, authorization=authorization)
    try:
        message, recipient_id = marketplace_store.create_message(
            conversation_id=payload.conversation_id,
            sender_id=payload.sender_id,
            content=payload.content,
        )
    except MarketplaceStoreError as exc:
        raise_store_http_error(exc)
    sender = marketplace_store.get_user(message.sender_id)
    preview = message.content if len(message.content) <= PREVIEW_LENGTH else f"{message.content[:PREVIEW_LENGTH]}..."
    notification_store.create(
        user_id=recipient_id,
        title=f"Nova mensagem de {sender.name}" if sender else "Nova mensagem",
        body=preview,
        category="message",
        deep_link=f"conversation:{message.conversation_id}",
    )
    return message
