"""FastAPI dependencies that wire the moderation services per request."""
from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.db.engine import get_session_factory
from src.services.claim_coordinator import ClaimCoordinator
from src.services.evidence import EvidenceStorage, evidence_storage
from src.services.moderation_analytics import AnalyticsAggregator
from src.services.moderation_log import ModerationLog
from src.services.notification_fanout import NotificationFanout
from src.services.realtime import RealtimeBus, bus
from src.services.report_store import ReportStore
from src.services.staff_roster import DbStaffRoster, StaffRoster


def get_bus() -> RealtimeBus:
    return bus


def get_evidence_storage() -> EvidenceStorage:
    return evidence_storage


def get_roster(factory: async_sessionmaker = Depends(get_session_factory)) -> StaffRoster:
    return DbStaffRoster(factory)


def get_store(factory: async_sessionmaker = Depends(get_session_factory)) -> ReportStore:
    return ReportStore(factory)


def get_log(factory: async_sessionmaker = Depends(get_session_factory)) -> ModerationLog:
    return ModerationLog(factory)


def get_fanout(
    factory: async_sessionmaker = Depends(get_session_factory),
    roster: StaffRoster = Depends(get_roster),
    realtime: RealtimeBus = Depends(get_bus),
) -> NotificationFanout:
    return NotificationFanout(factory, roster, realtime)


def get_coordinator(
    store: ReportStore = Depends(get_store),
    log: ModerationLog = Depends(get_log),
    fanout: NotificationFanout = Depends(get_fanout),
    realtime: RealtimeBus = Depends(get_bus),
    evidence: EvidenceStorage = Depends(get_evidence_storage),
) -> ClaimCoordinator:
    return ClaimCoordinator(store, log, fanout, bus=realtime, evidence=evidence)


def get_analytics(
    store: ReportStore = Depends(get_store),
    log: ModerationLog = Depends(get_log),
) -> AnalyticsAggregator:
    return AnalyticsAggregator(store, log)
