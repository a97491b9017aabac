"""Notification fan-out and retraction for the report lifecycle.

Every notification is keyed by (related_report_id, recipient_id, kind) and is
created at most once per key, so any fan-out can be re-run after a partial
failure without duplicating rows. Retraction is a soft delete
(``retracted_at``); retracted rows keep their key.

Fan-out is a best-effort side channel. The report transition that triggered
it has already committed, so failures here are logged and counted, never
raised into the state machine. ``reconcile`` is what the background sweep
calls to fill any gaps.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.db.moderation_tables import NotificationRow
from src.db.report_tables import ReportRow
from src.db.tables import utcnow
from src.errors import NotFound, StorageFailure
from src.models.moderation import (
    AccountAction, Notification, NotificationKind, Priority, Report, ReportStatus,
    ResolutionKind, Severity, priority_for,
)
from src.services.enforcement import Enforcement
from src.services.realtime import RealtimeBus, TOPIC_NOTIFICATIONS, notification_event
from src.services.staff_roster import StaffRoster

logger = logging.getLogger(__name__)

STAFF_KINDS = (NotificationKind.REPORT_CREATED, NotificationKind.REPORT_CLAIMED)


@dataclass
class FanoutResult:
    """Outcome of one fan-out or retraction pass."""
    created: list[str] = field(default_factory=list)  # notification ids
    skipped: list[str] = field(default_factory=list)  # recipient ids that already had the key
    failed: list[str] = field(default_factory=list)  # recipient ids we could not write
    retracted: list[str] = field(default_factory=list)  # notification ids


@dataclass
class _Draft:
    recipient_id: str
    kind: NotificationKind
    title: str
    message: str
    priority: Optional[Priority] = None  # defaults to the report severity's priority


def _action_url(report: Report) -> str:
    return f"/moderation/reports/{report.id}"


def _staff_alert(report: Report) -> tuple[str, str]:
    urgent = Severity(report.severity) in (Severity.HIGH, Severity.CRITICAL)
    target = report.target_ref
    if urgent:
        return "Urgent report", f"🚨 Urgent Report: {target} - reported for {report.reason}"
    return "New report", f"📋 New Report: {target} - reported for {report.reason}"


def _reporter_message(report: Report, kind: NotificationKind) -> tuple[str, str]:
    if kind == NotificationKind.SUBMISSION_ACK:
        return "Report received", "Thanks for your report. Our team will review it shortly."
    if kind == NotificationKind.REPORT_CLAIMED:
        return "Report under review", "A moderator is now reviewing your report."
    if kind == NotificationKind.REPORT_RESOLVED:
        return "Report resolved", "Your report was reviewed and action has been taken."
    return "Report reviewed", "Your report was reviewed. No action was needed."


def _enforcement_message(report: Report, enforcement: Enforcement) -> tuple[NotificationKind, str, str]:
    action = enforcement.action
    reason = action.reason or report.reason
    if action.type == ResolutionKind.WARNING:
        return NotificationKind.WARNING, "Warning from staff", f"⚠️ Warning from Staff: {action.message}"
    if action.action == AccountAction.SUSPEND:
        return (
            NotificationKind.ACCOUNT_ACTION,
            "Account suspended",
            f"⚠️ Account Action: Your account has been suspended for {action.duration_hours} hours. Reason: {reason}",
        )
    return (
        NotificationKind.ACCOUNT_ACTION,
        "Account deactivated",
        f"🚫 Account Deactivated: Your account has been deactivated. Reason: {reason}",
    )


class NotificationFanout:
    """The only writer of notification rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        roster: StaffRoster,
        bus: Optional[RealtimeBus] = None,
    ):
        self._session_factory = session_factory
        self._roster = roster
        self._bus = bus

    # ── Lifecycle hooks ──────────────────────────────────────────────────

    async def on_created(self, report: Report) -> FanoutResult:
        """One report_created per staff member (reporter excluded) plus the reporter's ack."""
        staff = await self._roster.staff_ids()
        title, message = _staff_alert(report)
        drafts = [
            _Draft(sid, NotificationKind.REPORT_CREATED, title, message)
            for sid in staff
            if sid != report.reporter_id
        ]
        ack_title, ack_message = _reporter_message(report, NotificationKind.SUBMISSION_ACK)
        drafts.append(_Draft(report.reporter_id, NotificationKind.SUBMISSION_ACK, ack_title, ack_message))
        result = await self._create_many(report, drafts)
        result.retracted = await self._settle_against_current_status(report)
        logger.info(
            "Fan-out for report %s: %d created, %d skipped, %d failed (roster=%d)",
            report.id, len(result.created), len(result.skipped), len(result.failed), len(staff),
        )
        return result

    async def on_claimed(self, report: Report, claimant_id: str) -> FanoutResult:
        """Retract other staff members' unread report_created rows; tell the reporter."""
        retracted = await self._retract(
            report.id,
            kinds=(NotificationKind.REPORT_CREATED,),
            exclude_recipient=claimant_id,
            unread_only=True,
        )
        result = FanoutResult(retracted=retracted)
        if report.reporter_id != claimant_id:
            title, message = _reporter_message(report, NotificationKind.REPORT_CLAIMED)
            created = await self._create_many(
                report, [_Draft(report.reporter_id, NotificationKind.REPORT_CLAIMED, title, message)],
            )
            result.created, result.skipped, result.failed = created.created, created.skipped, created.failed
        logger.info("Report %s claimed by %s: retracted %d staff notifications", report.id, claimant_id, len(retracted))
        return result

    async def on_resolved(self, report: Report) -> FanoutResult:
        """Notify the reporter of the outcome; retract every remaining staff alert for the report."""
        kind = (
            NotificationKind.REPORT_RESOLVED
            if ReportStatus(report.status) == ReportStatus.RESOLVED
            else NotificationKind.REPORT_DISMISSED
        )
        title, message = _reporter_message(report, kind)
        result = await self._create_many(report, [_Draft(report.reporter_id, kind, title, message)])
        result.retracted = await self._retract(
            report.id, kinds=STAFF_KINDS, exclude_recipient=report.reporter_id, unread_only=False,
        )
        logger.info("Report %s %s: retracted %d staff notifications", report.id, report.status, len(result.retracted))
        return result

    async def on_enforced(self, report: Report, enforcement: Enforcement) -> FanoutResult:
        """Tell the reported user about a warning or an account action."""
        kind, title, message = _enforcement_message(report, enforcement)
        result = await self._create_many(
            report, [_Draft(enforcement.user_id, kind, title, message, priority=Priority.HIGH)],
        )
        logger.info("Report %s: %s notice for %s", report.id, kind.value, enforcement.user_id)
        return result

    async def reconcile(self, report: Report) -> FanoutResult:
        """Re-run whatever fan-out the report's current status calls for. Safe to repeat."""
        status = ReportStatus(report.status)
        if status == ReportStatus.PENDING:
            return await self.on_created(report)
        if status == ReportStatus.IN_PROGRESS:
            ack_title, ack_message = _reporter_message(report, NotificationKind.SUBMISSION_ACK)
            ack = await self._create_many(
                report, [_Draft(report.reporter_id, NotificationKind.SUBMISSION_ACK, ack_title, ack_message)],
            )
            claimed = await self.on_claimed(report, report.handled_by)
            claimed.created = ack.created + claimed.created
            claimed.skipped = ack.skipped + claimed.skipped
            claimed.failed = ack.failed + claimed.failed
            return claimed
        return await self.on_resolved(report)

    # ── Recipient-facing reads ───────────────────────────────────────────

    async def list_for_recipient(
        self, recipient_id: str, *, unread_only: bool = False, offset: int = 0, limit: int = 50,
    ) -> list[Notification]:
        query = select(NotificationRow).where(
            NotificationRow.recipient_id == recipient_id,
            NotificationRow.retracted_at.is_(None),
        )
        if unread_only:
            query = query.where(NotificationRow.read.is_(False))
        query = query.order_by(NotificationRow.created_at.desc()).offset(offset).limit(limit)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not load notifications") from exc
        return [Notification.model_validate(r) for r in rows]

    async def unread_count(self, recipient_id: str) -> int:
        query = select(func.count(NotificationRow.id)).where(
            NotificationRow.recipient_id == recipient_id,
            NotificationRow.read.is_(False),
            NotificationRow.retracted_at.is_(None),
        )
        try:
            async with self._session_factory() as session:
                return (await session.execute(query)).scalar() or 0
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not count notifications") from exc

    async def mark_read(self, notification_id: str, recipient_id: str) -> Notification:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = (await session.execute(
                        select(NotificationRow).where(
                            NotificationRow.id == notification_id,
                            NotificationRow.recipient_id == recipient_id,
                            NotificationRow.retracted_at.is_(None),
                        )
                    )).scalar_one_or_none()
                    if row is not None:
                        row.read = True
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not update notification") from exc
        if row is None:
            raise NotFound("Notification not found", notification_id=notification_id)
        return Notification.model_validate(row)

    async def for_report(self, report_id: str, *, include_retracted: bool = True) -> list[Notification]:
        """Every notification tied to a report (used by reconciliation and tests)."""
        query = select(NotificationRow).where(NotificationRow.related_report_id == report_id)
        if not include_retracted:
            query = query.where(NotificationRow.retracted_at.is_(None))
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(query.order_by(NotificationRow.created_at))).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageFailure("Could not load notifications") from exc
        return [Notification.model_validate(r) for r in rows]

    # ── Internals ────────────────────────────────────────────────────────

    async def _existing_keys(self, report_id: str) -> set[tuple[str, str]]:
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(NotificationRow.recipient_id, NotificationRow.kind)
                .where(NotificationRow.related_report_id == report_id)
            )).all()
        return {(r[0], r[1]) for r in rows}

    async def _create_many(self, report: Report, drafts: Iterable[_Draft]) -> FanoutResult:
        """Insert each missing (report, recipient, kind) row in its own transaction."""
        drafts = list(drafts)
        result = FanoutResult()
        try:
            existing = await self._existing_keys(report.id)
        except SQLAlchemyError:
            logger.exception("Could not read existing notifications for report %s", report.id)
            result.failed = [d.recipient_id for d in drafts]
            return result

        default_priority = priority_for(report.severity)
        for draft in drafts:
            key = (draft.recipient_id, draft.kind.value)
            if key in existing:
                result.skipped.append(draft.recipient_id)
                continue
            row = NotificationRow(
                recipient_id=draft.recipient_id,
                kind=draft.kind.value,
                related_report_id=report.id,
                title=draft.title,
                message=draft.message,
                action_url=_action_url(report),
                priority=(draft.priority or default_priority).value,
                read=False,
                retracted_at=None,
                created_at=utcnow(),
            )
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        session.add(row)
            except IntegrityError:
                # A concurrent fan-out created the same key first
                result.skipped.append(draft.recipient_id)
                continue
            except Exception:
                logger.exception(
                    "Failed to create %s notification for %s (report %s)",
                    draft.kind.value, draft.recipient_id, report.id,
                )
                result.failed.append(draft.recipient_id)
                continue
            existing.add(key)
            result.created.append(row.id)
            self._publish("notification_created", Notification.model_validate(row))
        return result

    async def _retract(
        self,
        report_id: str,
        *,
        kinds: Iterable[NotificationKind],
        exclude_recipient: Optional[str],
        unread_only: bool,
    ) -> list[str]:
        conditions = [
            NotificationRow.related_report_id == report_id,
            NotificationRow.kind.in_([k.value for k in kinds]),
            NotificationRow.retracted_at.is_(None),
        ]
        if exclude_recipient is not None:
            conditions.append(NotificationRow.recipient_id != exclude_recipient)
        if unread_only:
            conditions.append(NotificationRow.read.is_(False))

        now = utcnow()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    rows = (await session.execute(select(NotificationRow).where(*conditions))).scalars().all()
                    ids = [r.id for r in rows]
                    if ids:
                        await session.execute(
                            update(NotificationRow)
                            .where(NotificationRow.id.in_(ids), NotificationRow.retracted_at.is_(None))
                            .values(retracted_at=now)
                            .execution_options(synchronize_session=False)
                        )
        except SQLAlchemyError:
            logger.exception("Failed to retract notifications for report %s", report_id)
            return []

        for row in rows:
            row.retracted_at = now
            self._publish("notification_retracted", Notification.model_validate(row))
        return ids

    def _publish(self, event_type: str, notification: Notification) -> None:
        if self._bus is None:
            return
        try:
            self._bus.publish(TOPIC_NOTIFICATIONS, notification_event(event_type, notification))
        except Exception:
            logger.exception("Failed to publish %s for notification %s", event_type, notification.id)
