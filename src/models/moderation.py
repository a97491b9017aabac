"""Moderation data models — reports, audit log entries, notifications."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReportStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ReportStatus.RESOLVED, ReportStatus.DISMISSED})
OPEN_STATUSES = frozenset({ReportStatus.PENDING, ReportStatus.IN_PROGRESS})

# Forward-only state machine. Terminal states have no exits.
ALLOWED_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.PENDING: frozenset({ReportStatus.IN_PROGRESS, ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.IN_PROGRESS: frozenset({ReportStatus.RESOLVED, ReportStatus.DISMISSED}),
    ReportStatus.RESOLVED: frozenset(),
    ReportStatus.DISMISSED: frozenset(),
}


def can_transition(current: ReportStatus, target: ReportStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


SEVERITY_PRIORITY = {
    Severity.LOW: Priority.LOW,
    Severity.MEDIUM: Priority.MEDIUM,
    Severity.HIGH: Priority.HIGH,
    Severity.CRITICAL: Priority.URGENT,
}


def priority_for(severity: Severity) -> Priority:
    return SEVERITY_PRIORITY[Severity(severity)]


class TargetKind(str, Enum):
    USER = "user"
    CONTENT = "content"
    GENERAL = "general"


class ReportReason(str, Enum):
    SPAM = "spam"
    HARASSMENT = "harassment"
    INAPPROPRIATE = "inappropriate"
    MISLEADING = "misleading"
    HARMFUL = "harmful"
    COPYRIGHT = "copyright"
    IMPERSONATION = "impersonation"
    OTHER = "other"


class NotificationKind(str, Enum):
    REPORT_CREATED = "report_created"
    REPORT_CLAIMED = "report_claimed"
    REPORT_RESOLVED = "report_resolved"
    REPORT_DISMISSED = "report_dismissed"
    SUBMISSION_ACK = "submission_ack"
    WARNING = "warning"
    ACCOUNT_ACTION = "account_action"


class ModerationAction(str, Enum):
    SUBMIT_REPORT = "submit_report"
    CLAIM_REPORT = "claim_report"
    RESOLVE_REPORT = "resolve_report"
    DISMISS_REPORT = "dismiss_report"
    WARN_USER = "warn_user"
    SUSPEND_USER = "suspend_user"
    DEACTIVATE_USER = "deactivate_user"


class Role(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    STAFF = "staff"
    USER = "user"


STAFF_ROLES = frozenset({Role.ADMIN, Role.MODERATOR, Role.STAFF})


class Actor(BaseModel):
    """Caller identity as supplied by the identity provider."""
    id: str
    roles: frozenset[Role] = frozenset()

    @property
    def is_staff(self) -> bool:
        return bool(self.roles & STAFF_ROLES)


# ---- Reports ----

class ReportCreate(BaseModel):
    """Submission payload. Exactly one target kind must be set."""
    reported_user_id: Optional[str] = Field(None, max_length=36)
    content_ref: Optional[str] = Field(None, max_length=500)
    general: bool = False
    reason: ReportReason
    description: Optional[str] = Field(None, max_length=2000)
    severity: Severity = Severity.MEDIUM
    evidence: list[str] = Field(default_factory=list, max_length=20)


class Report(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    reporter_id: str
    target_kind: TargetKind
    reported_user_id: Optional[str] = None
    content_ref: Optional[str] = None
    reason: str
    description: Optional[str] = None
    severity: Severity
    evidence: list[str] = []
    status: ReportStatus
    handled_by: Optional[str] = None
    handled_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    version: int = 1
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def target_ref(self) -> str:
        if self.target_kind == TargetKind.USER:
            return f"user:{self.reported_user_id}"
        if self.target_kind == TargetKind.CONTENT:
            return f"content:{self.content_ref}"
        return "general"


class ReportFilter(BaseModel):
    statuses: Optional[list[ReportStatus]] = None
    severity: Optional[Severity] = None
    reason: Optional[str] = None
    target_kind: Optional[TargetKind] = None
    reporter_id: Optional[str] = None
    handled_by: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    offset: int = Field(0, ge=0)
    limit: int = Field(50, ge=1, le=500)


class ReportMutation(BaseModel):
    """Fields a conditional update may write. Unset fields are left alone."""
    status: Optional[ReportStatus] = None
    handled_by: Optional[str] = None
    handled_at: Optional[datetime] = None
    resolution_note: Optional[str] = None


class ResolutionKind(str, Enum):
    WARNING = "warning"
    ACCOUNT = "account"


class AccountAction(str, Enum):
    SUSPEND = "suspend"
    DEACTIVATE = "deactivate"


class ResolutionAction(BaseModel):
    """Enforcement applied to the reported user when a report is resolved.

    A warning carries ``message``; an account action suspends the account for
    ``duration_hours`` or deactivates it outright.
    """
    type: ResolutionKind
    action: Optional[AccountAction] = None
    duration_hours: int = Field(24, ge=1, le=8760)
    message: Optional[str] = Field(None, max_length=1000)
    reason: Optional[str] = Field(None, max_length=500)


class BulkAction(str, Enum):
    CLAIM = "claim"
    RESOLVE = "resolve"
    DISMISS = "dismiss"


class BulkItemResult(BaseModel):
    report_id: str
    ok: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    report: Optional[Report] = None


class BulkResult(BaseModel):
    action: BulkAction
    results: list[BulkItemResult]

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


# ---- Audit log ----

class ModerationLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    actor_id: str
    action: str
    target_report_id: Optional[str] = None
    target_user_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


# ---- Notifications ----

class Notification(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipient_id: str
    kind: NotificationKind
    related_report_id: Optional[str] = None
    title: str
    message: str
    action_url: Optional[str] = None
    priority: Priority
    read: bool = False
    retracted_at: Optional[datetime] = None
    created_at: datetime


# ---- Realtime ----

class RealtimeEvent(BaseModel):
    topic: str
    type: str
    entity_id: str
    version: int = 0
    server_time: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
