"""Claim coordinator — the report lifecycle state machine.

    pending ──claim──▶ in_progress ──resolve──▶ resolved | dismissed
       └──────────────resolve──────────────────▶ resolved | dismissed

Every transition is a single guarded update on the report row, so when two
staff members race for the same report exactly one of them wins and the
other receives an error naming the winner. The audit log entry for a
transition is written in the same transaction as the transition itself.

Notification fan-out and realtime events are side effects that run after the
commit. They never roll a transition back; failures are logged and left for
the reconciliation sweep.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.tables import utcnow
from src.errors import (
    AlreadyClaimed, AlreadyHandled, Conflict, Forbidden, InvalidTransition,
    ModerationError, ValidationError,
)
from src.middleware.metrics import metrics
from src.models.moderation import (
    Actor, BulkAction, BulkItemResult, BulkResult, ModerationAction,
    ModerationLogEntry, Report, ReportCreate, ReportMutation, ReportStatus,
    ResolutionAction, TargetKind,
)
from src.services.enforcement import AccountEnforcement, Enforcement, check_action
from src.services.evidence import EvidenceStorage
from src.services.moderation_log import ModerationLog
from src.services.notification_fanout import NotificationFanout
from src.services.realtime import (
    RealtimeBus, TOPIC_LOGS, TOPIC_REPORTS, log_event, report_event,
)
from src.services.report_store import ReportStore
from src.services.staff_roster import DbStaffRoster, StaffRoster

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (filename, content) pairs uploaded alongside a submission
Attachment = tuple[str, bytes]


def _target_kind(payload: ReportCreate) -> TargetKind:
    kinds = []
    if payload.reported_user_id:
        kinds.append(TargetKind.USER)
    if payload.content_ref:
        kinds.append(TargetKind.CONTENT)
    if payload.general:
        kinds.append(TargetKind.GENERAL)
    if len(kinds) != 1:
        raise ValidationError(
            "A report must target exactly one of: a user, a piece of content, or general"
        )
    return kinds[0]


class ClaimCoordinator:
    """Owns every report status change."""

    def __init__(
        self,
        store: ReportStore,
        log: ModerationLog,
        fanout: NotificationFanout,
        bus: Optional[RealtimeBus] = None,
        evidence: Optional[EvidenceStorage] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._log = log
        self._fanout = fanout
        self._bus = bus
        self._evidence = evidence
        self._clock = clock
        self._enforcement = AccountEnforcement(log, clock)

    # ── Public operations ────────────────────────────────────────────────

    async def submit_report(
        self, actor: Actor, payload: ReportCreate, attachments: Iterable[Attachment] = (),
    ) -> Report:
        return await self._tracked("submit", self._submit(actor, payload, attachments))

    async def claim(self, report_id: str, actor: Actor) -> Report:
        return await self._tracked("claim", self._claim(report_id, actor))

    async def resolve(
        self,
        report_id: str,
        actor: Actor,
        outcome: ReportStatus | str,
        note: Optional[str] = None,
        action: Optional[ResolutionAction] = None,
    ) -> Report:
        """Close a report. ``action`` optionally warns, suspends or deactivates the reported user."""
        return await self._tracked("resolve", self._resolve(report_id, actor, outcome, note, action))

    async def reopen(self, report_id: str, actor: Actor) -> Report:
        """Reports never leave a terminal state, and an open report has nothing to reopen."""
        self._require_staff(actor)
        report = await self._store.get(report_id)
        metrics.record_transition("reopen", InvalidTransition.code)
        if report.status.is_terminal:
            raise InvalidTransition(
                f"Report {report_id} is {report.status.value}; reopening is not supported",
                report_id=report_id,
            )
        raise InvalidTransition(
            f"Report {report_id} is still {report.status.value}; nothing to reopen",
            report_id=report_id,
        )

    async def bulk_apply(
        self,
        report_ids: Iterable[str],
        action: BulkAction | str,
        actor: Actor,
        note: Optional[str] = None,
    ) -> BulkResult:
        """Apply one action to many reports. Each id succeeds or fails on its own."""
        action = BulkAction(action)
        self._require_staff(actor)

        seen: set[str] = set()
        results: list[BulkItemResult] = []
        for report_id in report_ids:
            if report_id in seen:
                continue
            seen.add(report_id)
            try:
                if action == BulkAction.CLAIM:
                    report = await self.claim(report_id, actor)
                else:
                    outcome = ReportStatus.RESOLVED if action == BulkAction.RESOLVE else ReportStatus.DISMISSED
                    report = await self.resolve(report_id, actor, outcome, note)
            except ModerationError as exc:
                results.append(BulkItemResult(
                    report_id=report_id, ok=False, error_code=exc.code, message=exc.message,
                ))
                continue
            results.append(BulkItemResult(report_id=report_id, ok=True, report=report))

        result = BulkResult(action=action, results=results)
        logger.info(
            "Bulk %s by %s: %d succeeded, %d failed",
            action.value, actor.id, result.succeeded, result.failed,
        )
        return result

    # ── Transitions ──────────────────────────────────────────────────────

    async def _submit(self, actor: Actor, payload: ReportCreate, attachments: Iterable[Attachment]) -> Report:
        target_kind = _target_kind(payload)
        if payload.reported_user_id and payload.reported_user_id == actor.id:
            raise ValidationError("You cannot report yourself")

        evidence = list(payload.evidence) + await self._upload_evidence(actor, attachments)
        entries: list[ModerationLogEntry] = []

        async def record(session: AsyncSession, report: Report) -> None:
            entries.append(await self._log.append(
                actor.id,
                ModerationAction.SUBMIT_REPORT,
                target_report_id=report.id,
                target_user_id=report.reported_user_id,
                description=f"Reported {report.target_ref} for {report.reason}",
                session=session,
            ))

        report = await self._store.create(
            reporter_id=actor.id,
            target_kind=target_kind,
            reason=payload.reason,
            reported_user_id=payload.reported_user_id if target_kind == TargetKind.USER else None,
            content_ref=payload.content_ref if target_kind == TargetKind.CONTENT else None,
            description=payload.description,
            severity=payload.severity,
            evidence=evidence,
            within_txn=record,
        )
        await self._after_commit("report_created", report, entries, lambda: self._fanout.on_created(report))
        return report

    async def _claim(self, report_id: str, actor: Actor) -> Report:
        self._require_staff(actor)
        current = await self._store.get(report_id)
        if current.status.is_terminal:
            raise AlreadyHandled(report_id, current.status.value, current.handled_by)
        if current.status == ReportStatus.IN_PROGRESS:
            if current.handled_by == actor.id:
                return current
            raise AlreadyClaimed(report_id, current.handled_by)

        entries: list[ModerationLogEntry] = []

        async def record(session: AsyncSession, report: Report) -> None:
            entries.append(await self._log.append(
                actor.id,
                ModerationAction.CLAIM_REPORT,
                target_report_id=report.id,
                target_user_id=report.reported_user_id,
                description=f"Claimed report on {report.target_ref}",
                session=session,
            ))

        try:
            report = await self._store.conditional_update(
                report_id,
                ReportStatus.PENDING,
                ReportMutation(status=ReportStatus.IN_PROGRESS, handled_by=actor.id, handled_at=self._clock()),
                within_txn=record,
            )
        except Conflict as exc:
            latest = await self._store.get(report_id)
            if latest.status == ReportStatus.IN_PROGRESS and latest.handled_by == actor.id:
                return latest
            if latest.status.is_terminal:
                raise AlreadyHandled(report_id, latest.status.value, latest.handled_by) from exc
            raise AlreadyClaimed(report_id, latest.handled_by) from exc

        await self._after_commit(
            "report_claimed", report, entries, lambda: self._fanout.on_claimed(report, actor.id),
        )
        return report

    async def _resolve(
        self,
        report_id: str,
        actor: Actor,
        outcome: ReportStatus | str,
        note: Optional[str],
        resolution: Optional[ResolutionAction],
    ) -> Report:
        try:
            outcome = ReportStatus(outcome)
        except ValueError:
            raise ValidationError(f"Unknown outcome '{outcome}'", report_id=report_id) from None
        if not outcome.is_terminal:
            raise InvalidTransition(
                f"Resolve outcome must be resolved or dismissed, not {outcome.value}",
                report_id=report_id,
            )
        self._require_staff(actor)

        current = await self._store.get(report_id)
        if current.status.is_terminal:
            raise AlreadyHandled(report_id, current.status.value, current.handled_by)
        check_action(current, outcome, resolution)

        action = (
            ModerationAction.RESOLVE_REPORT if outcome == ReportStatus.RESOLVED
            else ModerationAction.DISMISS_REPORT
        )
        entries: list[ModerationLogEntry] = []
        enforced: list[Enforcement] = []

        async def record(session: AsyncSession, report: Report) -> None:
            entries.append(await self._log.append(
                actor.id,
                action,
                target_report_id=report.id,
                target_user_id=report.reported_user_id,
                description=note or f"Report {outcome.value}",
                session=session,
            ))
            if resolution is not None:
                enforcement = await self._enforcement.apply(session, actor.id, report, resolution)
                enforced.append(enforcement)
                entries.append(enforcement.entry)

        mutation = ReportMutation(
            status=outcome,
            handled_by=current.handled_by or actor.id,
            handled_at=current.handled_at or self._clock(),
            resolution_note=note,
        )
        try:
            report = await self._store.conditional_update(
                report_id, current.status, mutation, expected_version=current.version, within_txn=record,
            )
        except Conflict as exc:
            latest = await self._store.get(report_id)
            if latest.status.is_terminal:
                raise AlreadyHandled(report_id, latest.status.value, latest.handled_by) from exc
            if latest.status == ReportStatus.IN_PROGRESS and latest.handled_by not in (None, actor.id):
                raise AlreadyClaimed(report_id, latest.handled_by) from exc
            raise

        async def notify() -> None:
            await self._fanout.on_resolved(report)
            for enforcement in enforced:
                await self._fanout.on_enforced(report, enforcement)

        await self._after_commit(f"report_{outcome.value}", report, entries, notify)
        return report

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _require_staff(actor: Actor) -> None:
        if not actor.is_staff:
            raise Forbidden("Staff role required", actor_id=actor.id)

    async def _tracked(self, action: str, operation: Awaitable[T]) -> T:
        try:
            result = await operation
        except ModerationError as exc:
            metrics.record_transition(action, exc.code)
            raise
        metrics.record_transition(action, "ok")
        return result

    async def _upload_evidence(self, actor: Actor, attachments: Iterable[Attachment]) -> list[str]:
        refs: list[str] = []
        for filename, data in attachments:
            if self._evidence is None:
                logger.warning("No evidence storage configured, dropping %s from %s", filename, actor.id)
                continue
            try:
                refs.append(await self._evidence.upload(filename, data, actor.id))
            except ModerationError as exc:
                logger.warning("Dropping evidence %s from %s: %s", filename, actor.id, exc.message)
            except Exception:
                logger.exception("Evidence storage failed, dropping %s from %s", filename, actor.id)
        return refs

    async def _after_commit(
        self,
        event_type: str,
        report: Report,
        entries: list[ModerationLogEntry],
        fanout: Callable[[], Awaitable[object]],
    ) -> None:
        for entry in entries:
            self._publish(TOPIC_LOGS, lambda: log_event(entry), entry.id)
        try:
            await fanout()
        except Exception:
            logger.exception("Notification fan-out failed for report %s (%s)", report.id, event_type)
        self._publish(TOPIC_REPORTS, lambda: report_event(event_type, report), report.id)

    def _publish(self, topic: str, build_event: Callable, entity_id: str) -> None:
        if self._bus is None:
            return
        try:
            self._bus.publish(topic, build_event())
        except Exception:
            logger.exception("Failed to publish on %s for %s", topic, entity_id)


def build_coordinator(
    session_factory: async_sessionmaker,
    bus: Optional[RealtimeBus] = None,
    roster: Optional[StaffRoster] = None,
    evidence: Optional[EvidenceStorage] = None,
) -> ClaimCoordinator:
    """Wire a coordinator and its collaborators around one session factory."""
    store = ReportStore(session_factory)
    log = ModerationLog(session_factory)
    fanout = NotificationFanout(session_factory, roster or DbStaffRoster(session_factory), bus)
    return ClaimCoordinator(store, log, fanout, bus=bus, evidence=evidence)
