"""Messaging routes: conversation list, history and send."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from core.container import container
from core.logging import get_logger
from middleware.auth import get_current_user, require_admin
from services.messaging import MessagingService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/messages", tags=["messages"])


class SendMessageRequest(BaseModel):
    content: str
    receiver_id: Optional[str] = None


def get_messaging_service() -> MessagingService:
    return container.messaging_service()


@router.get("/conversations")
async def list_conversations(
    admin: dict = Depends(require_admin),
    messaging: MessagingService = Depends(get_messaging_service)
):
    """Latest message per client (admin inbox)."""
    return {"conversations": await messaging.list_conversations(admin)}


@router.get("/{user_id}")
async def get_conversation(
    user_id: str,
    user: dict = Depends(get_current_user),
    messaging: MessagingService = Depends(get_messaging_service)
):
    """Messages between the current user and user_id, oldest first. Marks them read."""
    await messaging.check_conversation_access(user, user_id)
    return {"messages": await messaging.fetch_conversation(user["id"], user_id)}


@router.post("")
async def send_message(
    body: SendMessageRequest,
    user: dict = Depends(get_current_user),
    messaging: MessagingService = Depends(get_messaging_service)
):
    message = await messaging.send_message(user, body.content, body.receiver_id)
    return {"success": True, "message": message}
