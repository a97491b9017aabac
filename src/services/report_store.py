"""Report store — CRUD, filtered queries and the guarded conditional update.

``conditional_update`` is the one primitive the rest of the moderation core
relies on for correctness. It is a single ``UPDATE ... WHERE id = :id AND
status = :expected`` statement; a rowcount of zero means another writer got
there first and the caller receives ``Conflict``.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import and_, or_, select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.db.report_tables import ReportRow
from src.db.tables import utcnow
from src.errors import Conflict, InvalidTransition, NotFound, StorageFailure, ValidationError
from src.models.moderation import (
    Report, ReportFilter, ReportMutation, ReportStatus, Severity, TargetKind,
    TERMINAL_STATUSES, can_transition,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Runs inside the write transaction after the row change is applied
TxnHook = Callable[[AsyncSession, Report], Awaitable[Any]]


def _to_report(row: ReportRow) -> Report:
    return Report.model_validate(row)


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


class ReportStore:
    """Async report persistence backed by SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        read_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._read_attempts = max(1, read_attempts if read_attempts is not None else settings.READ_RETRY_ATTEMPTS)
        self._base_delay = base_delay if base_delay is not None else settings.READ_RETRY_BASE_DELAY

    # ── Reads (retried with backoff) ─────────────────────────────────────

    async def _read(self, op: Callable[[AsyncSession], Awaitable[T]], what: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._session_factory() as session:
                    return await op(session)
            except SQLAlchemyError as exc:
                if attempt >= self._read_attempts:
                    logger.error("Report store read failed after %d attempts: %s", attempt, what)
                    raise StorageFailure(f"Could not read {what}") from exc
                delay = self._base_delay * (2 ** (attempt - 1))
                logger.warning("Transient storage error reading %s (attempt %d), retrying in %.2fs", what, attempt, delay)
                await asyncio.sleep(delay)

    async def get(self, report_id: str) -> Report:
        async def op(session: AsyncSession) -> Optional[ReportRow]:
            result = await session.execute(select(ReportRow).where(ReportRow.id == report_id))
            return result.scalar_one_or_none()

        row = await self._read(op, f"report {report_id}")
        if row is None:
            raise NotFound(f"Report {report_id} not found", report_id=report_id)
        return _to_report(row)

    def _filtered(self, query, f: ReportFilter):
        if f.statuses:
            query = query.where(ReportRow.status.in_([s.value for s in f.statuses]))
        if f.severity:
            query = query.where(ReportRow.severity == f.severity.value)
        if f.reason:
            query = query.where(ReportRow.reason == f.reason)
        if f.target_kind:
            query = query.where(ReportRow.target_kind == f.target_kind.value)
        if f.reporter_id:
            query = query.where(ReportRow.reporter_id == f.reporter_id)
        if f.handled_by:
            query = query.where(ReportRow.handled_by == f.handled_by)
        if f.created_after:
            query = query.where(ReportRow.created_at >= f.created_after)
        if f.created_before:
            query = query.where(ReportRow.created_at < f.created_before)
        return query

    async def list(self, f: Optional[ReportFilter] = None) -> list[Report]:
        f = f or ReportFilter()

        async def op(session: AsyncSession) -> list[ReportRow]:
            query = self._filtered(select(ReportRow), f)
            query = query.order_by(ReportRow.created_at.desc(), ReportRow.id).offset(f.offset).limit(f.limit)
            result = await session.execute(query)
            return list(result.scalars().all())

        rows = await self._read(op, "report list")
        return [_to_report(r) for r in rows]

    async def scan(
        self,
        since: datetime,
        after: Optional[tuple[datetime, str]] = None,
        limit: int = 200,
    ) -> list[Report]:
        """Oldest-first page of reports created since ``since``.

        Pass the ``(created_at, id)`` of the last report seen to get the next
        page. Rows inserted while paging sort after the cursor, so none are skipped.
        """

        async def op(session: AsyncSession) -> list[ReportRow]:
            query = select(ReportRow).where(ReportRow.created_at >= since)
            if after is not None:
                created_at, report_id = after
                query = query.where(or_(
                    ReportRow.created_at > created_at,
                    and_(ReportRow.created_at == created_at, ReportRow.id > report_id),
                ))
            query = query.order_by(ReportRow.created_at, ReportRow.id).limit(limit)
            return list((await session.execute(query)).scalars().all())

        rows = await self._read(op, "report scan")
        return [_to_report(r) for r in rows]

    async def count(self, f: Optional[ReportFilter] = None) -> int:
        f = f or ReportFilter()

        async def op(session: AsyncSession) -> int:
            result = await session.execute(self._filtered(select(func.count(ReportRow.id)), f))
            return result.scalar() or 0

        return await self._read(op, "report count")

    async def aggregate_counts(
        self, field: str, since: Optional[datetime] = None, until: Optional[datetime] = None,
    ) -> dict[str, int]:
        """Count reports created in [since, until) grouped by a column (status, reason, severity...)."""
        column = getattr(ReportRow, field)

        async def op(session: AsyncSession) -> dict[str, int]:
            query = select(column, func.count(ReportRow.id)).group_by(column)
            query = self._filtered(query, ReportFilter(created_after=since, created_before=until))
            rows = (await session.execute(query)).all()
            return {row[0]: row[1] for row in rows}

        return await self._read(op, f"report counts by {field}")

    async def handling_samples(
        self, since: Optional[datetime] = None, until: Optional[datetime] = None,
    ) -> list[tuple[str, str, datetime, datetime]]:
        """(handled_by, status, created_at, handled_at) for terminal reports created in the window."""

        async def op(session: AsyncSession):
            query = select(
                ReportRow.handled_by, ReportRow.status, ReportRow.created_at, ReportRow.handled_at,
            ).where(
                ReportRow.status.in_([s.value for s in TERMINAL_STATUSES]),
                ReportRow.handled_at.is_not(None),
            )
            query = self._filtered(query, ReportFilter(created_after=since, created_before=until))
            return [tuple(r) for r in (await session.execute(query)).all()]

        return await self._read(op, "report handling samples")

    # ── Writes (never retried) ───────────────────────────────────────────

    async def create(
        self,
        *,
        reporter_id: str,
        target_kind: TargetKind,
        reason: str,
        reported_user_id: Optional[str] = None,
        content_ref: Optional[str] = None,
        description: Optional[str] = None,
        severity: Severity = Severity.MEDIUM,
        evidence: Iterable[str] = (),
        within_txn: Optional[TxnHook] = None,
    ) -> Report:
        """Insert a new pending report. ``within_txn`` runs in the same transaction."""
        now = utcnow()
        row = ReportRow(
            reporter_id=reporter_id,
            target_kind=_enum_value(target_kind),
            reported_user_id=reported_user_id,
            content_ref=content_ref,
            reason=_enum_value(reason),
            description=description,
            severity=_enum_value(severity),
            evidence=list(evidence),
            status=ReportStatus.PENDING.value,
            handled_by=None,
            handled_at=None,
            resolution_note=None,
            version=1,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(row)
                    await session.flush()
                    report = _to_report(row)
                    if within_txn is not None:
                        await within_txn(session, report)
        except IntegrityError as exc:
            raise ValidationError("Report violates target constraints") from exc
        except SQLAlchemyError as exc:
            logger.error("Failed to create report for reporter %s", reporter_id, exc_info=True)
            raise StorageFailure("Could not create report") from exc

        logger.info("Report %s created by %s (%s)", report.id, reporter_id, report.target_ref)
        return report

    async def conditional_update(
        self,
        report_id: str,
        expected_status: ReportStatus,
        mutation: ReportMutation,
        *,
        expected_version: Optional[int] = None,
        within_txn: Optional[TxnHook] = None,
    ) -> Report:
        """Apply ``mutation`` only if the row's status is still ``expected_status``.

        Raises ``Conflict`` if the precondition no longer holds and ``NotFound``
        if the row does not exist. The version counter is bumped on success.
        """
        expected_status = ReportStatus(expected_status)
        values = {k: _enum_value(v) for k, v in mutation.model_dump(exclude_none=True).items()}
        if "status" in values and not can_transition(expected_status, ReportStatus(values["status"])):
            raise InvalidTransition(
                f"Cannot move report from {expected_status.value} to {values['status']}",
                report_id=report_id,
            )
        values["version"] = ReportRow.version + 1
        values["updated_at"] = utcnow()

        stmt = (
            update(ReportRow)
            .where(ReportRow.id == report_id, ReportRow.status == expected_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if expected_version is not None:
            stmt = stmt.where(ReportRow.version == expected_version)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount == 1:
                        row = (await session.execute(
                            select(ReportRow).where(ReportRow.id == report_id)
                        )).scalar_one()
                        report = _to_report(row)
                        if within_txn is not None:
                            await within_txn(session, report)
                        applied = True
                    else:
                        current = (await session.execute(
                            select(ReportRow.status, ReportRow.handled_by, ReportRow.version)
                            .where(ReportRow.id == report_id)
                        )).first()
                        applied = False
        except SQLAlchemyError as exc:
            logger.error("Conditional update failed for report %s", report_id, exc_info=True)
            raise StorageFailure(f"Could not update report {report_id}") from exc

        if applied:
            logger.info(
                "Report %s: %s -> %s (v%d)", report_id, expected_status.value, report.status.value, report.version,
            )
            return report

        if current is None:
            raise NotFound(f"Report {report_id} not found", report_id=report_id)
        status, handled_by, version = current
        logger.info(
            "Report %s conditional update rejected: expected %s, found %s (v%d, handled_by=%s)",
            report_id, expected_status.value, status, version, handled_by,
        )
        raise Conflict(
            f"Report {report_id} is no longer {expected_status.value}",
            report_id=report_id,
            current_status=status,
            handled_by=handled_by,
        )
