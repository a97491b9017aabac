"""Moderation analytics — queue health, handling times, leaderboard and exports.

Everything is recomputed from the reports and moderation_logs tables on each
call; nothing is cached.
"""
from __future__ import annotations

import csv
import io
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from src.db.tables import utcnow
from src.errors import ValidationError
from src.models.moderation import ReportFilter, ReportStatus
from src.services.moderation_log import ModerationLog
from src.services.report_store import ReportStore

logger = logging.getLogger(__name__)

EXPORT_KINDS = ("reports", "logs")
EXPORT_ROW_LIMIT = 500

REPORT_COLUMNS = [
    "id", "reporter_id", "target_kind", "reported_user_id", "content_ref", "reason",
    "severity", "status", "handled_by", "handled_at", "resolution_note", "created_at",
]
LOG_COLUMNS = ["id", "actor_id", "action", "target_report_id", "target_user_id", "description", "created_at"]


@dataclass
class ModeratorStats:
    moderator_id: str
    reports_handled: int = 0
    resolved: int = 0
    dismissed: int = 0
    avg_handling_seconds: Optional[float] = None


@dataclass
class ModerationStats:
    since: datetime
    until: datetime
    total_reports: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_reason: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)
    avg_handling_seconds: Optional[float] = None
    leaderboard: list[ModeratorStats] = field(default_factory=list)
    actions: dict[str, int] = field(default_factory=dict)


def _seconds_between(start: datetime, end: datetime) -> float:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if start.tzinfo is None and end.tzinfo is not None:
        end = end.replace(tzinfo=None)
    elif end.tzinfo is None and start.tzinfo is not None:
        start = start.replace(tzinfo=None)
    return max(0.0, (end - start).total_seconds())


def _mean(values: list[float]) -> Optional[float]:
    return round(sum(values) / len(values), 2) if values else None


def _default_window(since: Optional[datetime], until: Optional[datetime]) -> tuple[datetime, datetime]:
    until = until or utcnow()
    since = since or until - timedelta(hours=24)
    if since >= until:
        raise ValidationError("Window start must be before its end")
    return since, until


class AnalyticsAggregator:
    """Read-only rollups over reports and the audit log."""

    def __init__(self, store: ReportStore, log: ModerationLog):
        self._store = store
        self._log = log

    async def get_stats(
        self, since: Optional[datetime] = None, until: Optional[datetime] = None,
    ) -> ModerationStats:
        since, until = _default_window(since, until)
        stats = ModerationStats(since=since, until=until)

        stats.by_status = {s.value: 0 for s in ReportStatus}
        stats.by_status.update(await self._store.aggregate_counts("status", since, until))
        stats.total_reports = sum(stats.by_status.values())
        stats.by_reason = await self._store.aggregate_counts("reason", since, until)
        stats.by_severity = await self._store.aggregate_counts("severity", since, until)
        stats.actions = await self._log.count_by_action(since, until)

        all_times: list[float] = []
        per_mod: dict[str, list[float]] = defaultdict(list)
        board: dict[str, ModeratorStats] = {}
        for handled_by, status, created_at, handled_at in await self._store.handling_samples(since, until):
            seconds = _seconds_between(created_at, handled_at)
            all_times.append(seconds)
            if not handled_by:
                continue
            entry = board.setdefault(handled_by, ModeratorStats(moderator_id=handled_by))
            entry.reports_handled += 1
            if status == ReportStatus.RESOLVED.value:
                entry.resolved += 1
            else:
                entry.dismissed += 1
            per_mod[handled_by].append(seconds)

        for mod_id, entry in board.items():
            entry.avg_handling_seconds = _mean(per_mod[mod_id])
        stats.avg_handling_seconds = _mean(all_times)
        stats.leaderboard = sorted(
            board.values(), key=lambda m: (-m.reports_handled, m.avg_handling_seconds or 0.0, m.moderator_id),
        )
        return stats

    async def recent_activity(self, limit: int = 20) -> list[dict]:
        """Newest reports and audit entries merged into one feed."""
        reports = await self._store.list(ReportFilter(limit=limit))
        entries = await self._log.list(limit=limit)

        feed = [
            {
                "type": "report",
                "id": r.id,
                "status": r.status.value,
                "severity": r.severity.value,
                "summary": f"{r.reason} report on {r.target_ref}",
                "actor_id": r.reporter_id,
                "timestamp": r.created_at,
            }
            for r in reports
        ] + [
            {
                "type": "log",
                "id": e.id,
                "action": e.action,
                "summary": e.description or e.action,
                "actor_id": e.actor_id,
                "report_id": e.target_report_id,
                "timestamp": e.created_at,
            }
            for e in entries
        ]
        feed.sort(key=lambda item: item["timestamp"], reverse=True)
        return feed[:limit]

    async def export_csv(
        self, kind: str, since: Optional[datetime] = None, until: Optional[datetime] = None,
    ) -> str:
        if kind not in EXPORT_KINDS:
            raise ValidationError(f"Unknown export '{kind}'. Expected one of: {', '.join(EXPORT_KINDS)}")
        since, until = _default_window(since, until)

        buf = io.StringIO()
        if kind == "reports":
            rows = [
                r.model_dump(mode="json", include=set(REPORT_COLUMNS))
                for r in await self._store.list(
                    ReportFilter(created_after=since, created_before=until, limit=EXPORT_ROW_LIMIT)
                )
            ]
            columns = REPORT_COLUMNS
        else:
            rows = [
                e.model_dump(mode="json")
                for e in await self._log.list(since=since, until=until, limit=EXPORT_ROW_LIMIT)
            ]
            columns = LOG_COLUMNS

        writer = csv.DictWriter(buf, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if v is None else v) for k, v in row.items()})

        logger.info("Exported %d %s rows (%s to %s)", len(rows), kind, since.isoformat(), until.isoformat())
        return buf.getvalue()
