"""REST API routes for single messages: versions, retries, edits and aborts."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from chatledger.core.log_sanitizer import get_current_user
from chatledger.domain.chats.models import Attachment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["messages"])


class RetryRequest(BaseModel):
    chat_id: str
    model: str
    enable_web_search: bool = False


class EditRequest(BaseModel):
    chat_id: str
    content: str
    model: str
    enable_web_search: bool = False


class SwitchVersionRequest(BaseModel):
    version_index: int


class RegisterAttachmentRequest(BaseModel):
    storage_ref: str
    file_name: str
    file_type: str = "application/octet-stream"
    file_size: int = 0
    extracted_text: Optional[str] = None


def _get_service():
    """Get the chat service from the app factory."""
    from chatledger.infrastructure.app_factory import app_factory
    return app_factory.get_chat_service()


@router.get("/messages/{message_id}")
async def get_message(
    message_id: str,
    current_user: str = Depends(get_current_user),
):
    """Read a message; streaming progress is visible here."""
    return _get_service().get_message(message_id, current_user).to_dict()


@router.post("/messages/{message_id}/retry")
async def retry_message(
    message_id: str,
    body: RetryRequest,
    current_user: str = Depends(get_current_user),
):
    """Regenerate an assistant message as a new version."""
    result_id = await _get_service().retry(
        message_id, body.chat_id, body.model,
        user_email=current_user,
        enable_web_search=body.enable_web_search,
    )
    return {"message_id": result_id}


@router.post("/messages/{message_id}/edit")
async def edit_message(
    message_id: str,
    body: EditRequest,
    current_user: str = Depends(get_current_user),
):
    """Edit a user message and regenerate the reply that follows it."""
    assistant_id = await _get_service().edit_and_regenerate(
        message_id, body.content, body.chat_id, body.model,
        user_email=current_user,
        enable_web_search=body.enable_web_search,
    )
    return {"message_id": message_id, "assistant_message_id": assistant_id}


@router.post("/messages/{message_id}/version")
async def switch_version(
    message_id: str,
    body: SwitchVersionRequest,
    current_user: str = Depends(get_current_user),
):
    message = _get_service().switch_version(message_id, body.version_index, current_user)
    return message.to_dict()


@router.post("/messages/{message_id}/abort")
async def abort_message(
    message_id: str,
    current_user: str = Depends(get_current_user),
):
    """Ask a running generation to stop."""
    _get_service().mark_aborted(message_id, current_user)
    return {"message_id": message_id, "aborted": True}


@router.post("/attachments")
async def register_attachment(
    body: RegisterAttachmentRequest,
    current_user: str = Depends(get_current_user),
):
    """Record metadata for a file already uploaded to storage."""
    attachment = Attachment(
        storage_ref=body.storage_ref,
        file_name=body.file_name,
        file_type=body.file_type,
        file_size=body.file_size,
        uploaded_by=current_user,
        extracted_text=body.extracted_text,
    )
    return _get_service().register_attachment(attachment).to_dict()
