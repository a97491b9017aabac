"""Server-Sent Events stream of moderation changes.

No backlog is replayed: a client should load the report list, then connect.
If events were dropped for this connection a ``resync`` event is sent and the
client must reload the list before applying further events.
"""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from config.settings import settings
from src.api.deps import get_bus
from src.auth import require_actor
from src.errors import Forbidden, ValidationError
from src.models.moderation import Actor, RealtimeEvent
from src.services.realtime import RealtimeBus, TOPICS, TOPIC_NOTIFICATIONS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/realtime", tags=["realtime"])


def _sse(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


def _visible(event: RealtimeEvent, actor: Actor) -> bool:
    if event.topic == TOPIC_NOTIFICATIONS:
        return event.payload.get("recipient_id") == actor.id
    return True


@router.get("/{topic}")
async def stream(
    topic: str,
    request: Request,
    actor: Actor = Depends(require_actor),
    realtime: RealtimeBus = Depends(get_bus),
):
    """Subscribe to ``reports``, ``logs`` (staff only) or your own ``notifications``."""
    if topic not in TOPICS:
        raise ValidationError(f"Unknown topic '{topic}'", topic=topic)
    if topic != TOPIC_NOTIFICATIONS and not actor.is_staff:
        raise Forbidden("Staff role required", actor_id=actor.id)

    async def event_generator():
        sub = realtime.subscribe(topic)
        try:
            yield _sse("ready", {"topic": topic})
            while not await request.is_disconnected():
                # Timeout so a keep-alive comment goes out on idle connections
                event = await sub.get(timeout=settings.REALTIME_KEEPALIVE_SECONDS)
                if sub.has_gap:
                    lost = sub.clear_gap()
                    logger.info("[Realtime] %s lost %d events on %s, asking for resync", actor.id, lost, topic)
                    yield _sse("resync", {"topic": topic, "dropped": lost})
                if event is None:
                    yield ": keep-alive\n\n"
                elif _visible(event, actor):
                    yield _sse(event.type, event.model_dump(mode="json"))
        finally:
            sub.close()

    return StreamingResponse(event_generator(), media_type="text/event-stream")
