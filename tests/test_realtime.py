"""Tests for the realtime bus and the client-side report view."""
from __future__ import annotations

import asyncio

import pytest

from src.db.tables import utcnow
from src.errors import ValidationError
from src.models.moderation import RealtimeEvent, Report, ReportStatus, Severity, TargetKind
from src.services.realtime import RealtimeBus, ReportQueueView, report_event


def _report(report_id="r1", status=ReportStatus.PENDING, version=1, handled_by=None) -> Report:
    return Report(
        id=report_id,
        reporter_id="user-1",
        target_kind=TargetKind.GENERAL,
        reason="spam",
        severity=Severity.LOW,
        status=status,
        handled_by=handled_by,
        version=version,
        created_at=utcnow(),
    )


def _event(n: int) -> RealtimeEvent:
    return RealtimeEvent(topic="logs", type="log_appended", entity_id=f"e{n}", version=1, server_time=utcnow())


class TestBus:
    def test_unknown_topic_rejected(self):
        bus = RealtimeBus(queue_size=4)
        with pytest.raises(ValidationError):
            bus.subscribe("payments")
        with pytest.raises(ValidationError):
            bus.publish("payments", _event(1))

    async def test_publish_reaches_every_subscriber(self):
        bus = RealtimeBus(queue_size=4)
        a = bus.subscribe("logs")
        b = bus.subscribe("logs")
        other = bus.subscribe("reports")
        assert bus.publish("logs", _event(1)) == 2
        assert (await a.get(timeout=1)).entity_id == "e1"
        assert (await b.get(timeout=1)).entity_id == "e1"
        assert await other.get(timeout=0.01) is None

    def test_full_queue_drops_and_flags_gap(self):
        bus = RealtimeBus(queue_size=2)
        slow = bus.subscribe("logs")
        fast = bus.subscribe("logs")
        for n in range(2):
            bus.publish("logs", _event(n))
        fast.queue.get_nowait()
        fast.queue.get_nowait()

        delivered = bus.publish("logs", _event(2))
        assert delivered == 1
        assert slow.has_gap
        assert slow.dropped == 1
        assert not fast.has_gap
        assert slow.clear_gap() == 1
        assert not slow.has_gap

    async def test_context_manager_unsubscribes(self):
        bus = RealtimeBus(queue_size=4)
        async with bus.subscribe("reports") as sub:
            assert bus.subscriber_count("reports") == 1
            bus.publish("reports", report_event("report_created", _report()))
            event = await sub.get(timeout=1)
            assert event.version == 1
        assert bus.subscriber_count("reports") == 0
        assert bus.publish("reports", report_event("report_created", _report())) == 0

    async def test_async_iteration(self):
        bus = RealtimeBus(queue_size=4)
        sub = bus.subscribe("logs")
        bus.publish("logs", _event(1))
        bus.publish("logs", _event(2))

        seen = []
        async for event in sub:
            seen.append(event.entity_id)
            if len(seen) == 2:
                sub.close()
        assert seen == ["e1", "e2"]

    async def test_close_from_another_task_ends_iteration(self):
        bus = RealtimeBus(queue_size=4)
        sub = bus.subscribe("logs")

        async def consume():
            return [event.entity_id async for event in sub]

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        sub.close()
        assert await asyncio.wait_for(consumer, timeout=1) == []

    async def test_get_returns_none_after_close(self):
        bus = RealtimeBus(queue_size=4)
        sub = bus.subscribe("logs")
        waiter = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        sub.close()
        assert await asyncio.wait_for(waiter, timeout=1) is None

    def test_idle_subscriber_does_not_stall_publisher(self):
        bus = RealtimeBus(queue_size=1)
        idle = bus.subscribe("logs")
        results = [bus.publish("logs", _event(n)) for n in range(100)]
        assert results[0] == 1
        assert sum(results) == 1
        assert idle.dropped == 99


class TestReportQueueView:
    def test_out_of_order_events_converge_by_version(self):
        view = ReportQueueView()
        view.resync([_report()])

        claimed = report_event("report_claimed", _report(status=ReportStatus.IN_PROGRESS, version=2, handled_by="a"))
        resolved = report_event("report_resolved", _report(status=ReportStatus.RESOLVED, version=3, handled_by="a"))

        assert view.apply(resolved) is True
        assert view.apply(claimed) is False  # older, arrives late
        assert view.status_of("r1") == "resolved"
        assert view.versions["r1"] == 3

    def test_duplicate_event_ignored(self):
        view = ReportQueueView()
        created = report_event("report_created", _report(report_id="r2"))
        assert view.apply(created) is True
        assert view.apply(created) is False
        assert [r["id"] for r in view.pending()] == ["r2"]

    def test_resync_replaces_state(self):
        view = ReportQueueView()
        view.apply(report_event("report_created", _report(report_id="gone")))
        view.resync([_report(report_id="r3", status=ReportStatus.IN_PROGRESS, version=2, handled_by="b")])
        assert view.status_of("gone") is None
        assert view.status_of("r3") == "in_progress"
        assert view.pending() == []

    def test_non_report_events_ignored(self):
        view = ReportQueueView()
        assert view.apply(_event(1)) is False
