"""Notification inbox for the signed-in user."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from src.api.deps import get_fanout
from src.auth import require_actor
from src.models.moderation import Actor
from src.services.notification_fanout import NotificationFanout

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("")
async def list_notifications(
    unread_only: bool = False,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(require_actor),
    fanout: NotificationFanout = Depends(get_fanout),
):
    """Current user's notifications, newest first. Retracted ones are hidden."""
    items = await fanout.list_for_recipient(actor.id, unread_only=unread_only, offset=offset, limit=limit)
    return {
        "notifications": [n.model_dump(mode="json") for n in items],
        "unread_count": await fanout.unread_count(actor.id),
    }


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    actor: Actor = Depends(require_actor),
    fanout: NotificationFanout = Depends(get_fanout),
):
    notification = await fanout.mark_read(notification_id, actor.id)
    return notification.model_dump(mode="json")
