"""Scheduled notification reconciliation using APScheduler."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import settings
from src.db.engine import async_session
from src.db.tables import utcnow
from src.services.notification_fanout import NotificationFanout
from src.services.realtime import RealtimeBus, bus as default_bus
from src.services.report_store import ReportStore
from src.services.staff_roster import DbStaffRoster, StaffRoster

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

SWEEP_PAGE_SIZE = 200


@dataclass
class SweepResult:
    reports_checked: int = 0
    notifications_created: int = 0
    notifications_retracted: int = 0
    failures: int = 0


async def run_fanout_sweep(
    session_factory: Optional[async_sessionmaker] = None,
    bus: Optional[RealtimeBus] = None,
    roster: Optional[StaffRoster] = None,
    lookback_hours: Optional[int] = None,
) -> SweepResult:
    """Re-run the fan-out for every report created in the lookback window.

    Terminal reports are included so a lost outcome notice is refilled too;
    ``reconcile`` creates nothing for reports whose notifications are complete.
    """
    session_factory = session_factory or async_session
    store = ReportStore(session_factory)
    fanout = NotificationFanout(session_factory, roster or DbStaffRoster(session_factory), bus)
    since = utcnow() - timedelta(hours=lookback_hours or settings.FANOUT_SWEEP_LOOKBACK_HOURS)

    result = SweepResult()
    cursor = None
    while True:
        page = await store.scan(since, after=cursor, limit=SWEEP_PAGE_SIZE)
        for report in page:
            result.reports_checked += 1
            try:
                outcome = await fanout.reconcile(report)
            except Exception:
                logger.exception("Fan-out reconciliation failed for report %s", report.id)
                result.failures += 1
                continue
            result.notifications_created += len(outcome.created)
            result.notifications_retracted += len(outcome.retracted)
            result.failures += len(outcome.failed)
        if len(page) < SWEEP_PAGE_SIZE:
            break
        cursor = (page[-1].created_at, page[-1].id)

    logger.info(
        "Fan-out sweep: %d reports checked, %d created, %d retracted, %d failures",
        result.reports_checked, result.notifications_created,
        result.notifications_retracted, result.failures,
    )
    return result


async def scheduled_sweep():
    """APScheduler entry point."""
    try:
        await run_fanout_sweep(bus=default_bus)
    except Exception:
        logger.exception("Scheduled fan-out sweep failed")


def start_scheduler(interval_minutes: int = 10):
    """Start the background scheduler for periodic fan-out reconciliation."""
    scheduler.add_job(
        scheduled_sweep,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="fanout_sweep",
        name="Notification fan-out reconciliation",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started — reconciling notifications every {interval_minutes}m")


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
