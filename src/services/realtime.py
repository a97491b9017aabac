"""In-process realtime bus for live staff clients.

Delivery is at-most-once: every subscriber owns a bounded queue and a full
queue drops the event for that subscriber. There is no backlog replay, so a
client that reconnects (or sees ``has_gap``) must do a full report list and
rebuild its view. Events carry the row version so clients can apply them
last-writer-wins regardless of arrival order (see ``ReportQueueView``).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from config.settings import settings
from src.db.tables import utcnow
from src.errors import ValidationError
from src.models.moderation import (
    ModerationLogEntry, Notification, RealtimeEvent, Report, ReportStatus,
)

logger = logging.getLogger(__name__)

# Wakes an iterator blocked on an empty queue when the subscription closes
_CLOSED = object()

TOPIC_REPORTS = "reports"
TOPIC_NOTIFICATIONS = "notifications"
TOPIC_LOGS = "logs"
TOPICS = frozenset({TOPIC_REPORTS, TOPIC_NOTIFICATIONS, TOPIC_LOGS})


def report_event(event_type: str, report: Report) -> RealtimeEvent:
    return RealtimeEvent(
        topic=TOPIC_REPORTS,
        type=event_type,
        entity_id=report.id,
        version=report.version,
        server_time=utcnow(),
        payload=report.model_dump(mode="json"),
    )


def notification_event(event_type: str, notification: Notification) -> RealtimeEvent:
    return RealtimeEvent(
        topic=TOPIC_NOTIFICATIONS,
        type=event_type,
        entity_id=notification.id,
        version=1 if notification.retracted_at is None else 2,
        server_time=utcnow(),
        payload=notification.model_dump(mode="json"),
    )


def log_event(entry: ModerationLogEntry) -> RealtimeEvent:
    return RealtimeEvent(
        topic=TOPIC_LOGS,
        type="log_appended",
        entity_id=entry.id,
        version=1,
        server_time=utcnow(),
        payload=entry.model_dump(mode="json"),
    )


class Subscription:
    """One live client's view of a topic."""

    def __init__(self, bus: "RealtimeBus", topic: str, maxsize: int):
        self.topic = topic
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False
        self._bus = bus

    @property
    def has_gap(self) -> bool:
        """True once any event was dropped; the client must resync from the store."""
        return self.dropped > 0

    def clear_gap(self) -> int:
        """Reset the drop counter after the client was told to resync. Returns how many were lost."""
        lost, self.dropped = self.dropped, 0
        return lost

    def offer(self, event: RealtimeEvent) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def get(self, timeout: Optional[float] = None) -> Optional[RealtimeEvent]:
        """Next event, or None if ``timeout`` elapses first."""
        try:
            item = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return None if item is _CLOSED else item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)
            try:
                self.queue.put_nowait(_CLOSED)
            except asyncio.QueueFull:
                pass  # not empty, so nobody is blocked on get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> RealtimeEvent:
        if self.closed:
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class RealtimeBus:
    """Topic-based fan-out of change events to connected clients."""

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.REALTIME_QUEUE_SIZE
        self.subscriptions: dict[str, set[Subscription]] = {t: set() for t in TOPICS}

    def subscribe(self, topic: str) -> Subscription:
        if topic not in TOPICS:
            raise ValidationError(f"Unknown topic '{topic}'", topic=topic)
        sub = Subscription(self, topic, self.queue_size)
        self.subscriptions[topic].add(sub)
        logger.info("[Realtime] Subscribed to %s. Total subscribers: %d", topic, len(self.subscriptions[topic]))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self.subscriptions.get(sub.topic, set()).discard(sub)
        logger.info("[Realtime] Unsubscribed from %s.", sub.topic)

    def publish(self, topic: str, event: RealtimeEvent) -> int:
        """Fire-and-forget. Returns how many subscribers accepted the event."""
        if topic not in TOPICS:
            raise ValidationError(f"Unknown topic '{topic}'", topic=topic)
        delivered = 0
        for sub in list(self.subscriptions[topic]):
            if sub.offer(event):
                delivered += 1
            else:
                logger.warning(
                    "[Realtime] Subscriber queue full on %s, dropped %s for %s",
                    topic, event.type, event.entity_id,
                )
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self.subscriptions.get(topic, ()))


class ReportQueueView:
    """Client-side replica of the report queue.

    Applies events last-writer-wins by row version; older or duplicate
    events are ignored whatever order they arrive in.
    """

    def __init__(self):
        self.reports: dict[str, dict] = {}
        self.versions: dict[str, int] = {}

    def resync(self, reports: Iterable[Report]) -> None:
        """Replace local state with a fresh list from the store."""
        self.reports = {}
        self.versions = {}
        for report in reports:
            self.reports[report.id] = report.model_dump(mode="json")
            self.versions[report.id] = report.version

    def apply(self, event: RealtimeEvent) -> bool:
        if event.topic != TOPIC_REPORTS:
            return False
        known = self.versions.get(event.entity_id, 0)
        if event.version <= known:
            return False
        self.reports[event.entity_id] = dict(event.payload)
        self.versions[event.entity_id] = event.version
        return True

    def status_of(self, report_id: str) -> Optional[str]:
        report = self.reports.get(report_id)
        return report["status"] if report else None

    def pending(self) -> list[dict]:
        return [r for r in self.reports.values() if r["status"] == ReportStatus.PENDING.value]


# Global Instance
bus = RealtimeBus()
