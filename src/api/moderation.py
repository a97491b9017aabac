"""Report & Moderation API — submission, the staff queue and moderation analytics.

Users can report:
- Another user (harassment, impersonation, spam accounts)
- A piece of content (misleading, harmful, copyright)
- A general concern not tied to a specific target

Staff endpoints cover the moderation queue: claiming, resolving, bulk actions,
the audit log, stats and CSV exports. Lifecycle errors (already claimed,
already handled, ...) are raised by the services and rendered by the shared
error handler.
"""
from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_analytics, get_coordinator, get_log, get_store
from src.auth import RoleUpdate, require_actor, require_admin, require_staff
from src.db.engine import get_session
from src.db.tables import utcnow
from src.db.user_tables import UserRow
from src.errors import NotFound, ValidationError
from src.models.moderation import (
    Actor, BulkAction, Report, ReportCreate, ReportFilter, ReportStatus, ResolutionAction,
    Severity, TargetKind,
)
from src.services.claim_coordinator import ClaimCoordinator
from src.services.moderation_analytics import AnalyticsAggregator
from src.services.moderation_log import ModerationLog
from src.services.report_store import ReportStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["moderation"])

MAX_STATS_HOURS = 720


class ResolveRequest(BaseModel):
    outcome: ReportStatus = Field(..., description="resolved or dismissed")
    note: Optional[str] = Field(None, max_length=2000)
    action: Optional[ResolutionAction] = None


class BulkRequest(BaseModel):
    report_ids: list[str] = Field(..., min_length=1, max_length=100)
    action: BulkAction
    note: Optional[str] = Field(None, max_length=2000)


def _report_out(report: Report) -> dict:
    return report.model_dump(mode="json")


# ── User Endpoints ───────────────────────────────────────────────────────────

@router.post("/reports", status_code=201)
async def submit_report(
    body: ReportCreate,
    actor: Actor = Depends(require_actor),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    """Submit a report."""
    report = await coordinator.submit_report(actor, body)
    return _report_out(report)


@router.post("/reports/evidence", status_code=201)
async def submit_report_with_evidence(
    report: str = Form(..., description="Report payload as JSON"),
    files: list[UploadFile] = File(default=[]),
    actor: Actor = Depends(require_actor),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    """Submit a report with evidence files attached (multipart)."""
    try:
        payload = ReportCreate.model_validate_json(report)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid report payload",
            details=[{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()],
        ) from None
    attachments = [(f.filename or "", await f.read()) for f in files]
    created = await coordinator.submit_report(actor, payload, attachments)
    return _report_out(created)


@router.get("/reports/my")
async def my_reports(
    status: Optional[ReportStatus] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    actor: Actor = Depends(require_actor),
    store: ReportStore = Depends(get_store),
):
    """Reports the current user has filed, newest first."""
    f = ReportFilter(
        reporter_id=actor.id,
        statuses=[status] if status else None,
        offset=offset,
        limit=limit,
    )
    reports = await store.list(f)
    return {
        "reports": [_report_out(r) for r in reports],
        "total": await store.count(f),
        "offset": offset,
        "limit": limit,
    }


# ── Staff Queue ──────────────────────────────────────────────────────────────

@router.get("/admin/reports")
async def list_reports(
    status: Optional[list[ReportStatus]] = Query(None),
    severity: Optional[Severity] = None,
    reason: Optional[str] = None,
    target_kind: Optional[TargetKind] = None,
    reporter_id: Optional[str] = None,
    handled_by: Optional[str] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    _staff: Actor = Depends(require_staff),
    store: ReportStore = Depends(get_store),
):
    """Moderation queue, filterable by status (repeatable), severity, reason and target."""
    f = ReportFilter(
        statuses=status,
        severity=severity,
        reason=reason,
        target_kind=target_kind,
        reporter_id=reporter_id,
        handled_by=handled_by,
        offset=offset,
        limit=limit,
    )
    reports = await store.list(f)
    return {
        "reports": [_report_out(r) for r in reports],
        "total": await store.count(f),
        "offset": offset,
        "limit": limit,
    }


@router.get("/admin/reports/{report_id}")
async def get_report(
    report_id: str,
    _staff: Actor = Depends(require_staff),
    store: ReportStore = Depends(get_store),
    log: ModerationLog = Depends(get_log),
):
    """One report with its audit history."""
    report = await store.get(report_id)
    history = await log.list(target_report_id=report_id, limit=100)
    return {
        **_report_out(report),
        "history": [e.model_dump(mode="json") for e in history],
    }


@router.post("/admin/reports/{report_id}/claim")
async def claim_report(
    report_id: str,
    actor: Actor = Depends(require_staff),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    """Take ownership of a pending report."""
    return _report_out(await coordinator.claim(report_id, actor))


@router.post("/admin/reports/{report_id}/resolve")
async def resolve_report(
    report_id: str,
    body: ResolveRequest,
    actor: Actor = Depends(require_staff),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    """Close a report as resolved or dismissed, optionally acting on the reported user."""
    report = await coordinator.resolve(report_id, actor, body.outcome, body.note, body.action)
    return _report_out(report)


@router.post("/admin/reports/{report_id}/reopen")
async def reopen_report(
    report_id: str,
    actor: Actor = Depends(require_staff),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    """Reports are never reopened; this always answers invalid_transition."""
    return _report_out(await coordinator.reopen(report_id, actor))


@router.post("/admin/reports/bulk")
async def bulk_action(
    body: BulkRequest,
    actor: Actor = Depends(require_staff),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    """Apply one action to many reports; each id succeeds or fails independently."""
    result = await coordinator.bulk_apply(body.report_ids, body.action, actor, body.note)
    return {
        "action": result.action.value,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "results": [r.model_dump(mode="json") for r in result.results],
    }


# ── Analytics & Audit ────────────────────────────────────────────────────────

@router.get("/admin/moderation/stats")
async def moderation_stats(
    hours: int = Query(24, ge=1, le=MAX_STATS_HOURS),
    _staff: Actor = Depends(require_staff),
    analytics: AnalyticsAggregator = Depends(get_analytics),
):
    """Queue health for the last ``hours`` hours."""
    until = utcnow()
    stats = await analytics.get_stats(until - timedelta(hours=hours), until)
    return {"window_hours": hours, **asdict(stats)}


@router.get("/admin/moderation/logs")
async def moderation_logs(
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
    report_id: Optional[str] = None,
    hours: Optional[int] = Query(None, ge=1, le=MAX_STATS_HOURS),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    _staff: Actor = Depends(require_staff),
    log: ModerationLog = Depends(get_log),
):
    """Audit trail, newest first."""
    since = utcnow() - timedelta(hours=hours) if hours else None
    entries = await log.list(
        since=since, actor_id=actor_id, action=action, target_report_id=report_id,
        offset=offset, limit=limit,
    )
    return {"logs": [e.model_dump(mode="json") for e in entries], "offset": offset, "limit": limit}


@router.get("/admin/moderation/activity")
async def recent_activity(
    limit: int = Query(20, ge=1, le=100),
    _staff: Actor = Depends(require_staff),
    analytics: AnalyticsAggregator = Depends(get_analytics),
):
    """Recent reports and moderator actions merged into one feed."""
    return {"activity": await analytics.recent_activity(limit)}


@router.get("/admin/moderation/export/{kind}")
async def export_csv(
    kind: str,
    hours: int = Query(24 * 30, ge=1, le=MAX_STATS_HOURS),
    _staff: Actor = Depends(require_staff),
    analytics: AnalyticsAggregator = Depends(get_analytics),
):
    """CSV export of reports or audit log entries."""
    until = utcnow()
    body = await analytics.export_csv(kind, until - timedelta(hours=hours), until)
    filename = f"moderation-{kind}-{until.strftime('%Y%m%d')}.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ── Staff Management ─────────────────────────────────────────────────────────

@router.put("/admin/users/{user_id}/role")
async def set_user_role(
    user_id: str,
    body: RoleUpdate,
    admin: Actor = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Grant or revoke a staff role. Takes effect on the next fan-out."""
    user = (await session.execute(select(UserRow).where(UserRow.id == user_id))).scalar_one_or_none()
    if user is None:
        raise NotFound(f"User {user_id} not found", user_id=user_id)
    previous = user.role
    user.role = body.role.value
    await session.commit()
    logger.info("User %s role changed %s -> %s by %s", user_id, previous, body.role.value, admin.id)
    return {"id": user.id, "email": user.email, "role": user.role}
