"""HTTP fallback endpoints for messaging.

Clients use these when the live channel is unavailable or a live send
failed. Every endpoint goes through the same DeliveryEngine as the
WebSocket protocol, so a retried send behaves identically on both paths.

Community endpoints (``community_id`` in the path):
    - GET    /communities/{community_id}/messages        paginated history
    - POST   /communities/{community_id}/messages        send (JSON or multipart)
    - DELETE /communities/{community_id}/messages        delete
    - PATCH  /communities/{community_id}/messages/read   mark read

Direct-thread endpoints (acting user and peer in the path):
    - GET    /direct/{user_id}/{peer_id}/messages
    - POST   /direct/{user_id}/{peer_id}/messages
    - DELETE /direct/{user_id}/{peer_id}/messages
    - PATCH  /direct/{user_id}/{peer_id}/messages/read
    - GET    /direct/{user_id}/conversations             conversation list
"""
import asyncio
import json
import logging
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PayloadError
from starlette.datastructures import UploadFile

from ..conversations import ConversationRef, validate_id
from ..errors import AuthorizationError, ValidationError
from ..hub import MessagingHub, get_hub
from .schemas import (
    DeleteMessagesRequest,
    MediaReference,
    MarkReadRequest,
    MessageDraft,
    SendMessageRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])

# Multipart field names that may carry an attachment, in priority order
MEDIA_FIELDS = ("image", "video", "file")


def _acting_user(path_user_id: Optional[str], body_user_id: Optional[str]) -> str:
    """The user a request acts as.

    Direct-thread routes carry the user in the path; a body userId, if
    present, must agree with it.
    """
    if path_user_id is not None:
        if body_user_id is not None and body_user_id != path_user_id:
            raise AuthorizationError("body userId does not match path")
        return validate_id(path_user_id, "userId")
    if not body_user_id:
        raise ValidationError("userId is required")
    return validate_id(body_user_id, "userId")


async def _json_body(request: Request, model):
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")
    try:
        return model.model_validate(data)
    except PayloadError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid request body: {location} {first.get('msg', '')}".strip())


def _form_text(form, name: str) -> Optional[str]:
    value = form.get(name)
    return value if isinstance(value, str) and value != "" else None


async def _read_send_request(
    request: Request,
    hub: MessagingHub,
    conversation_for,
    path_user_id: Optional[str] = None,
) -> Tuple[str, ConversationRef, MessageDraft, Optional[MediaReference]]:
    """Parse a send request, JSON or multipart.

    A multipart body carries ``userId``, ``content`` and optionally one file
    in an ``image``, ``video`` or ``file`` part. The file is stored only
    after the form fields are valid and the sender is known to be allowed
    in the conversation; it is returned as the last item so the caller can
    remove it if the send does not go through.
    """
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        body = await _json_body(request, SendMessageRequest)
        user_id = _acting_user(path_user_id, body.userId)
        draft = MessageDraft(**body.model_dump(exclude={"userId"}))
        return user_id, conversation_for(user_id), draft, None

    form = await request.form()
    user_id = _acting_user(path_user_id, _form_text(form, "userId"))
    conversation = conversation_for(user_id)

    try:
        draft = MessageDraft(
            content=_form_text(form, "content") or "",
            type=_form_text(form, "type"),
            replyTo=_form_text(form, "replyTo"),
            clientMessageId=_form_text(form, "clientMessageId"),
        )
    except PayloadError as e:
        raise ValidationError(f"Invalid form field: {e.errors()[0].get('loc', ('?',))[0]}")

    upload = None
    for name in MEDIA_FIELDS:
        candidate = form.get(name)
        if isinstance(candidate, UploadFile):
            upload = candidate
            break
    if upload is None:
        return user_id, conversation, draft, None

    await hub.engine.authorize(user_id, conversation)
    content = await upload.read()
    media = await asyncio.to_thread(
        hub.media.save,
        upload.filename or "upload",
        content,
        upload.content_type or "application/octet-stream",
    )
    return user_id, conversation, draft.model_copy(update={"media": media}), media


async def _send(request: Request, hub: MessagingHub, conversation_for, path_user_id=None) -> JSONResponse:
    user_id, conversation, draft, uploaded = await _read_send_request(
        request, hub, conversation_for, path_user_id
    )
    try:
        receipt = await hub.engine.send(user_id, conversation, draft)
    except Exception:
        if uploaded is not None:
            await asyncio.to_thread(hub.media.discard, uploaded)
        raise
    if receipt.duplicate and uploaded is not None:
        # The stored message keeps the attachment from the first attempt.
        await asyncio.to_thread(hub.media.discard, uploaded)

    logger.info(
        f"HTTP send by {user_id} to {conversation.id}: {receipt.message.id}"
        f"{' (duplicate)' if receipt.duplicate else ''}"
    )
    return JSONResponse(
        {
            "message": receipt.message.model_dump(mode="json"),
            "duplicate": receipt.duplicate,
            "deliveredTo": receipt.delivered_to,
        },
        status_code=200 if receipt.duplicate else 201,
    )


async def _delete(request: Request, hub: MessagingHub, conversation_for, path_user_id=None) -> dict:
    body = await _json_body(request, DeleteMessagesRequest)
    user_id = _acting_user(path_user_id, body.userId)
    deleted = await hub.engine.delete(
        user_id, conversation_for(user_id), body.messageIds, body.scope
    )
    return {"deleted": deleted, "scope": body.scope.value}


async def _mark_read(request: Request, hub: MessagingHub, conversation_for, path_user_id=None) -> dict:
    body = await _json_body(request, MarkReadRequest)
    user_id = _acting_user(path_user_id, body.userId)
    newly_read = await hub.engine.mark_read(user_id, conversation_for(user_id), body.messageIds)
    return {"read": [m.id for m in newly_read], "count": len(newly_read)}


# =============================================================================
# Community messages
# =============================================================================


@router.get("/communities/{community_id}/messages")
async def get_community_messages(
    community_id: str,
    userId: str = Query(..., description="Viewer's user ID"),
    before: Optional[float] = Query(None, description="Timestamp cursor (get messages before this time)"),
    beforeId: Optional[str] = Query(None, description="Message id cursor (get messages stored before this one)"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    hub: MessagingHub = Depends(get_hub),
) -> JSONResponse:
    """Get paginated message history for a community.

    Clients fetch older messages by passing the ``id`` of the oldest
    message they currently have as ``beforeId``; messages sharing a
    timestamp are never skipped. ``before`` (a timestamp) still works as
    a plain time filter. ``limit`` is capped at the
    configured maximum page size.

    Returns:
        JSON with messages array (oldest first) and hasMore boolean.

    Example:
        GET /communities/c1/messages?userId=alice&limit=50
        GET /communities/c1/messages?userId=alice&beforeId=<oldest message id>
    """
    page = await hub.engine.history(
        validate_id(userId, "userId"), ConversationRef.community(community_id), before, limit, beforeId
    )
    return JSONResponse(page.model_dump(mode="json"))


@router.post("/communities/{community_id}/messages")
async def send_community_message(
    community_id: str,
    request: Request,
    hub: MessagingHub = Depends(get_hub),
) -> JSONResponse:
    """Send a message to a community (fallback for the live channel)."""
    return await _send(request, hub, lambda _user: ConversationRef.community(community_id))


@router.delete("/communities/{community_id}/messages")
async def delete_community_messages(
    community_id: str,
    request: Request,
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    """Delete community messages for everyone, or hide them for the requester."""
    return await _delete(request, hub, lambda _user: ConversationRef.community(community_id))


@router.patch("/communities/{community_id}/messages/read")
async def mark_community_messages_read(
    community_id: str,
    request: Request,
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    """Mark community messages read; omit messageIds to mark everything."""
    return await _mark_read(request, hub, lambda _user: ConversationRef.community(community_id))


# =============================================================================
# Direct messages
# =============================================================================


@router.get("/direct/{user_id}/conversations")
async def list_direct_conversations(
    user_id: str,
    hub: MessagingHub = Depends(get_hub),
) -> JSONResponse:
    """A user's direct threads with last message and unread count, newest first."""
    threads = await hub.engine.direct_threads(validate_id(user_id, "userId"))
    return JSONResponse({"conversations": [t.model_dump(mode="json") for t in threads]})


@router.get("/direct/{user_id}/{peer_id}/messages")
async def get_direct_messages(
    user_id: str,
    peer_id: str,
    before: Optional[float] = Query(None, description="Timestamp cursor (get messages before this time)"),
    beforeId: Optional[str] = Query(None, description="Message id cursor (get messages stored before this one)"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    hub: MessagingHub = Depends(get_hub),
) -> JSONResponse:
    """Get paginated history of the direct thread between two users."""
    page = await hub.engine.history(
        user_id, ConversationRef.direct(user_id, peer_id), before, limit, beforeId
    )
    return JSONResponse(page.model_dump(mode="json"))


@router.post("/direct/{user_id}/{peer_id}/messages")
async def send_direct_message(
    user_id: str,
    peer_id: str,
    request: Request,
    hub: MessagingHub = Depends(get_hub),
) -> JSONResponse:
    """Send a direct message (fallback for the live channel)."""
    return await _send(
        request, hub, lambda user: ConversationRef.direct(user, peer_id), path_user_id=user_id
    )


@router.delete("/direct/{user_id}/{peer_id}/messages")
async def delete_direct_messages(
    user_id: str,
    peer_id: str,
    request: Request,
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    """Delete direct messages for everyone (sender only) or for the requester."""
    return await _delete(
        request, hub, lambda user: ConversationRef.direct(user, peer_id), path_user_id=user_id
    )


@router.patch("/direct/{user_id}/{peer_id}/messages/read")
async def mark_direct_messages_read(
    user_id: str,
    peer_id: str,
    request: Request,
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    """Mark messages from the peer read; omit messageIds to mark the whole thread."""
    return await _mark_read(
        request, hub, lambda user: ConversationRef.direct(user, peer_id), path_user_id=user_id
    )
