"""REST API routes for chats: listing, sending, searching and branching."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from chatledger.core.log_sanitizer import get_current_user
from chatledger.domain.messages.models import MessageRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chats", tags=["chats"])


class CreateChatRequest(BaseModel):
    title: Optional[str] = None
    model: Optional[str] = None


class SendMessageRequest(BaseModel):
    content: str = ""
    model: Optional[str] = None
    chat_id: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    enable_web_search: bool = False


class UpdateTitleRequest(BaseModel):
    title: str


class CreateBranchRequest(BaseModel):
    branch_point: int
    title: Optional[str] = None


def _get_service():
    """Get the chat service from the app factory."""
    from chatledger.infrastructure.app_factory import app_factory
    return app_factory.get_chat_service()


@router.get("")
async def list_chats(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: str = Depends(get_current_user),
):
    """List chats for the authenticated user, most recently updated first."""
    chats = _get_service().list_chats(current_user, limit=limit, offset=offset)
    return {"chats": [chat.to_dict() for chat in chats]}


@router.post("")
async def create_chat(
    body: CreateChatRequest,
    current_user: str = Depends(get_current_user),
):
    chat = _get_service().create_chat(current_user, title=body.title, model=body.model)
    return chat.to_dict()


@router.post("/messages")
async def send_message(
    body: SendMessageRequest,
    current_user: str = Depends(get_current_user),
):
    """Store a user message and start generating the reply.

    Returns immediately with the ids involved; clients poll the assistant
    message to watch it fill in.
    """
    return await _get_service().send_message(
        current_user,
        body.content,
        model=body.model,
        chat_id=body.chat_id,
        attachments=body.attachments,
        enable_web_search=body.enable_web_search,
    )


@router.post("/{chat_id}/messages")
async def send_message_to_chat(
    chat_id: str,
    body: SendMessageRequest,
    current_user: str = Depends(get_current_user),
):
    """Send into an existing chat; the path id wins over any id in the body."""
    return await _get_service().send_message(
        current_user,
        body.content,
        model=body.model,
        chat_id=chat_id,
        attachments=body.attachments,
        enable_web_search=body.enable_web_search,
    )


@router.get("/search")
async def search_messages(
    q: str = Query(..., min_length=1),
    chat_id: Optional[str] = Query(default=None),
    role: Optional[MessageRole] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: str = Depends(get_current_user),
):
    """Search message content across the user's chats."""
    hits = _get_service().search_messages(current_user, q, chat_id=chat_id, role=role, limit=limit)
    return {
        "results": [
            {"message": message.to_dict(), "chat_id": chat.id, "chat_title": chat.title}
            for message, chat in hits
        ]
    }


@router.get("/{chat_id}")
async def get_chat(
    chat_id: str,
    current_user: str = Depends(get_current_user),
):
    """Get a chat with all of its messages in conversation order."""
    chat, messages = _get_service().get_chat(chat_id, current_user)
    data = chat.to_dict()
    data["messages"] = [message.to_dict() for message in messages]
    return data


@router.patch("/{chat_id}/title")
async def update_title(
    chat_id: str,
    body: UpdateTitleRequest,
    current_user: str = Depends(get_current_user),
):
    chat = _get_service().update_chat_title(chat_id, body.title, current_user)
    return {"id": chat.id, "title": chat.title}


@router.delete("/{chat_id}")
async def delete_chat(
    chat_id: str,
    current_user: str = Depends(get_current_user),
):
    """Delete a chat and its messages."""
    removed = _get_service().delete_chat(chat_id, current_user)
    return {"deleted": True, "messages_deleted": removed}


@router.post("/{chat_id}/branch")
async def create_branch(
    chat_id: str,
    body: CreateBranchRequest,
    current_user: str = Depends(get_current_user),
):
    """Fork a chat, copying its first ``branch_point`` messages."""
    branch_id = _get_service().create_branch(chat_id, body.branch_point, title=body.title, user_email=current_user)
    return {"chat_id": branch_id}
