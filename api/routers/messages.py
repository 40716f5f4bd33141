"""
api/routers/messages.py — read, send, edit, delete and save chat messages
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.dependencies.teams import get_service
from teams_relay import config
from teams_relay.dispatch import TeamsService
from teams_relay.parsers import ThreadMessage

router = APIRouter()


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, description="Plain text, or HTML starting with '<'")
    conversation_id: str = Field(config.SELF_CHAT_ID, description="Defaults to your own notes chat")
    reply_to: Optional[str] = Field(None, description="Root message id when replying in a channel thread")


@router.get("/{conversation_id}")
async def get_thread(
    conversation_id: str,
    limit: int = Query(config.DEFAULT_THREAD_LIMIT, ge=1, le=config.MAX_THREAD_LIMIT),
    service: TeamsService = Depends(get_service),
) -> List[ThreadMessage]:
    """Recent messages of a conversation, oldest first."""
    return await service.get_thread(conversation_id, limit=limit)


@router.post("/")
async def send_message(
    request: SendMessageRequest,
    service: TeamsService = Depends(get_service),
) -> dict:
    try:
        return await service.send_message(
            request.content,
            conversation_id=request.conversation_id,
            reply_to=request.reply_to,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


class EditMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, description="Replacement text, or HTML starting with '<'")


@router.put("/{conversation_id}/{message_id}")
async def edit_message(
    conversation_id: str,
    message_id: str,
    request: EditMessageRequest,
    service: TeamsService = Depends(get_service),
) -> dict:
    try:
        return await service.edit_message(conversation_id, message_id, request.content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.delete("/{conversation_id}/{message_id}")
async def delete_message(
    conversation_id: str,
    message_id: str,
    service: TeamsService = Depends(get_service),
) -> dict:
    """Soft delete: the message is replaced by a "deleted" placeholder."""
    return await service.delete_message(conversation_id, message_id)


@router.post("/{conversation_id}/{message_id}/save")
async def save_message(
    conversation_id: str,
    message_id: str,
    service: TeamsService = Depends(get_service),
) -> dict:
    try:
        return await service.save_message(conversation_id, message_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.delete("/{conversation_id}/{message_id}/save")
async def unsave_message(
    conversation_id: str,
    message_id: str,
    service: TeamsService = Depends(get_service),
) -> dict:
    try:
        return await service.unsave_message(conversation_id, message_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
