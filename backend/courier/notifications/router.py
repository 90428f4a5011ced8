"""FastAPI router for push-token registration."""
import asyncio
import logging

from fastapi import APIRouter, Depends

from ..conversations import validate_id
from ..errors import ValidationError
from ..directory.schemas import PushTokenRequest, PushTokenResponse
from ..hub import MessagingHub, get_hub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/register-token")
async def register_push_token(
    request: PushTokenRequest,
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    """Store a device push token on the user.

    The token is only stored here; an external dispatcher reads it when it
    drains the push outbox.

    Raises:
        ValidationError 400: If userId or pushToken is missing.
        NotFoundError 404: If the user does not exist.
    """
    if not request.userId or not request.pushToken:
        raise ValidationError("User ID and push token are required")
    validate_id(request.userId, "userId")

    user = await asyncio.to_thread(
        hub.directory.set_push_token, request.userId, request.pushToken, request.platform
    )
    return {
        "message": "Push token registered successfully",
        "data": PushTokenResponse(userId=user.userId, hasPushToken=user.hasPushToken).model_dump(),
    }
