"""Account enforcement attached to a report resolution.

A resolution may carry a warning for the reported user or an account action
(timed suspension or deactivation). The account change runs inside the
resolve transaction, so a report is never marked resolved when the account
update fails, and vice versa. The reported user's notice goes out after the
commit through the notification fan-out.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.tables import utcnow
from src.db.user_tables import UserRow
from src.errors import NotFound, ValidationError
from src.models.moderation import (
    AccountAction, ModerationAction, ModerationLogEntry, Report, ReportStatus,
    ResolutionAction, ResolutionKind,
)
from src.services.moderation_log import ModerationLog

logger = logging.getLogger(__name__)


@dataclass
class Enforcement:
    """What was done to the reported user's account."""
    action: ResolutionAction
    user_id: str
    suspended_until: Optional[datetime] = None
    entry: Optional[ModerationLogEntry] = None


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def suspension_expired(user: UserRow, now: Optional[datetime] = None) -> bool:
    if user.is_active or user.suspended_until is None:
        return False
    return as_utc(user.suspended_until) <= (now or utcnow())


def check_action(report: Report, outcome: ReportStatus, action: Optional[ResolutionAction]) -> None:
    """Reject resolution actions that cannot be applied to this report."""
    if action is None:
        return
    if outcome != ReportStatus.RESOLVED:
        raise ValidationError("Only a resolved report can carry an action", report_id=report.id)
    if not report.reported_user_id:
        raise ValidationError("Actions need a report against a user", report_id=report.id)
    if action.type == ResolutionKind.WARNING and not (action.message or "").strip():
        raise ValidationError("A warning needs a message", report_id=report.id)
    if action.type == ResolutionKind.ACCOUNT and action.action is None:
        raise ValidationError("An account action needs suspend or deactivate", report_id=report.id)


class AccountEnforcement:
    def __init__(self, log: ModerationLog, clock: Callable[[], datetime] = utcnow):
        self._log = log
        self._clock = clock

    async def apply(
        self, session: AsyncSession, actor_id: str, report: Report, action: ResolutionAction,
    ) -> Enforcement:
        """Apply ``action`` inside the caller's transaction and log it there too."""
        user_id = report.reported_user_id
        result = Enforcement(action=action, user_id=user_id)

        if action.type == ResolutionKind.WARNING:
            log_action = ModerationAction.WARN_USER
            description = f"Warned user over report {report.id}: {action.message}"
        else:
            if action.action == AccountAction.SUSPEND:
                result.suspended_until = self._clock() + timedelta(hours=action.duration_hours)
                values = {"is_active": False, "suspended_until": result.suspended_until}
                log_action = ModerationAction.SUSPEND_USER
                description = f"Suspended user for {action.duration_hours}h over report {report.id}"
            else:
                values = {"is_active": False, "suspended_until": None}
                log_action = ModerationAction.DEACTIVATE_USER
                description = f"Deactivated user over report {report.id}"
            updated = await session.execute(
                update(UserRow)
                .where(UserRow.id == user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise NotFound(f"User {user_id} not found", user_id=user_id, report_id=report.id)

        if action.reason:
            description = f"{description}. Reason: {action.reason}"
        result.entry = await self._log.append(
            actor_id,
            log_action,
            target_report_id=report.id,
            target_user_id=user_id,
            description=description,
            session=session,
        )
        logger.info("%s applied to %s by %s (report %s)", log_action.value, user_id, actor_id, report.id)
        return result
