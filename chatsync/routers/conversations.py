from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse

from chatsync.exceptions import ConversationNotFound, PartialSendFailure, StoreUnavailable
from chatsync.schemas.chat import (
    Conversation,
    Message,
    OpenConversationRequest,
    SendMessageRequest,
    TypingRequest,
)
from chatsync.services.chat_service import ChatService
from chatsync.services.presence import TypingChannel
from chatsync.utils.dependencies import get_chat_service, get_current_user_id, get_typing_channel


router = APIRouter(prefix="/conversations", tags=["chat"])


async def _member_conversation(service: ChatService, conversation_id: str, user_id: str) -> Conversation:
    try:
        conversation = await service.get_conversation(conversation_id)
    except ConversationNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if not conversation.has_member(user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this conversation")
    return conversation


@router.post("", response_model=Conversation)
async def open_conversation(
    body: OpenConversationRequest,
    current_user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    try:
        return await service.get_or_create_conversation(current_user_id, body.other_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.get("", response_model=List[Conversation])
async def list_conversations(
    current_user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    try:
        return await service.list_conversations(current_user_id)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.get("/{conversation_id}/messages", response_model=List[Message])
async def list_messages(
    conversation_id: str,
    current_user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    await _member_conversation(service, conversation_id, current_user_id)
    try:
        return await service.list_messages(conversation_id)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.post("/{conversation_id}/messages", response_model=Message)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    current_user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    if not body.text.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message content cannot be empty")
    await _member_conversation(service, conversation_id, current_user_id)
    try:
        return await service.send_message(conversation_id, current_user_id, body.text, body.client_message_id)
    except PartialSendFailure as exc:
        # the message is stored; the client should not resend it
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"message": exc.message.model_dump(mode="json"), "warning": "summary_pending"},
        )
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    current_user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    await _member_conversation(service, conversation_id, current_user_id)
    try:
        count = await service.mark_read(conversation_id, current_user_id)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return {"updated": count}


@router.post("/{conversation_id}/typing", status_code=status.HTTP_204_NO_CONTENT)
async def set_typing(
    conversation_id: str,
    body: TypingRequest,
    current_user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
    typing: TypingChannel = Depends(get_typing_channel),
):
    await _member_conversation(service, conversation_id, current_user_id)
    await typing.publish(conversation_id, current_user_id, body.is_typing)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
