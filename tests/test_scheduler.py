"""Tests for the notification reconciliation sweep."""
from __future__ import annotations

from sqlalchemy import delete

from conftest import FakeRoster, member, staff
from src.db.moderation_tables import NotificationRow
from src.models.moderation import NotificationKind, ReportCreate, ReportStatus
from src.services.scheduler import run_fanout_sweep


async def test_sweep_fills_missing_notifications(coordinator, fanout, roster, session_factory, realtime_bus):
    roster.ids = []
    report = await coordinator.submit_report(member("user-1"), ReportCreate(general=True, reason="other"))

    result = await run_fanout_sweep(session_factory, realtime_bus, roster=FakeRoster(["staff-a", "staff-b"]))
    assert result.reports_checked == 1
    assert result.notifications_created == 2
    assert result.failures == 0

    again = await run_fanout_sweep(session_factory, realtime_bus, roster=FakeRoster(["staff-a", "staff-b"]))
    assert again.notifications_created == 0
    kinds = [n.kind for n in await fanout.for_report(report.id)]
    assert kinds.count(NotificationKind.REPORT_CREATED) == 2


async def test_sweep_retracts_after_claim(coordinator, fanout, session_factory):
    report = await coordinator.submit_report(member("user-1"), ReportCreate(general=True, reason="other"))
    await coordinator.claim(report.id, staff("staff-b"))

    result = await run_fanout_sweep(session_factory, roster=FakeRoster(["staff-a", "staff-b", "staff-c"]))
    assert result.notifications_created == 0
    assert result.notifications_retracted == 0
    live = await fanout.for_report(report.id, include_retracted=False)
    assert {n.recipient_id for n in live if n.kind == NotificationKind.REPORT_CREATED} == {"staff-b"}


async def test_sweep_pages_through_every_report(coordinator, session_factory, monkeypatch):
    monkeypatch.setattr("src.services.scheduler.SWEEP_PAGE_SIZE", 2)
    for i in range(5):
        await coordinator.submit_report(member("user-1"), ReportCreate(reported_user_id=f"t-{i}", reason="spam"))

    result = await run_fanout_sweep(session_factory, roster=FakeRoster([]))
    assert result.reports_checked == 5
    assert result.failures == 0


async def test_sweep_refills_lost_outcome_notice(coordinator, fanout, session_factory):
    report = await coordinator.submit_report(member("user-1"), ReportCreate(general=True, reason="other"))
    await coordinator.resolve(report.id, staff("staff-a"), ReportStatus.DISMISSED)
    async with session_factory() as session:
        await session.execute(delete(NotificationRow).where(
            NotificationRow.related_report_id == report.id,
            NotificationRow.kind == NotificationKind.REPORT_DISMISSED.value,
        ))
        await session.commit()

    result = await run_fanout_sweep(session_factory, roster=FakeRoster(["staff-a", "staff-b", "staff-c"]))
    assert result.notifications_created == 1
    kinds = {n.kind for n in await fanout.list_for_recipient("user-1")}
    assert NotificationKind.REPORT_DISMISSED in kinds
