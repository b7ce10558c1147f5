from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.utcnow()


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored and compared as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ApplicationStatus(str, Enum):
    applied = "applied"
    viewed = "viewed"
    contacted = "contacted"
    interviewing = "interviewing"
    offered = "offered"
    hired = "hired"
    # legacy: behaves like offered, kept for older applications
    accepted = "accepted"
    rejected = "rejected"
    withdrawn = "withdrawn"


LEGACY_STATUSES = frozenset({ApplicationStatus.accepted})


class EmailCategory(str, Enum):
    critical_transactional = "critical_transactional"
    important_transactional = "important_transactional"
    user_notification = "user_notification"
    system = "system"


class JobAlertFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    never = "never"


class UserRole(str, Enum):
    job_seeker = "job-seeker"
    recruiter = "recruiter"
    admin = "admin"


class DeliveryStatus(str, Enum):
    sent = "sent"
    suppressed = "suppressed"
    failed = "failed"


class UserRecord(BaseModel):
    id: str
    email: str
    role: UserRole
    created_at_utc: datetime


class EmailPreferencesRecord(BaseModel):
    user_id: str
    job_alerts: JobAlertFrequency = JobAlertFrequency.weekly
    application_updates: bool = True
    marketing: bool = False
    created_at_utc: datetime
    updated_at_utc: datetime


class ApplicationRecord(BaseModel):
    id: str
    job_id: str
    job_title: str
    company: str
    candidate_id: str
    recruiter_id: Optional[str] = None
    status: ApplicationStatus = ApplicationStatus.applied
    last_status_email_sent_at_utc: Optional[datetime] = None
    last_status_notified: Optional[ApplicationStatus] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class AuditEventRecord(BaseModel):
    id: str
    application_id: str
    from_status: Optional[ApplicationStatus]
    to_status: ApplicationStatus
    reason: str
    actor_id: Optional[str]
    created_at_utc: datetime


class NotificationDeliveryRecord(BaseModel):
    id: str
    user_id: Optional[str]
    category: EmailCategory
    event_type: str
    recipients: list[str]
    subject: str
    status: DeliveryStatus
    reason: Optional[str]
    message_id: Optional[str]
    application_id: Optional[str]
    created_at_utc: datetime


class UserCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    role: UserRole = UserRole.job_seeker

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("email must look like name@domain")
        return value


class UserCreateResponse(BaseModel):
    user_id: str
    email: str
    role: UserRole


class EmailPreferencesView(BaseModel):
    job_alerts: JobAlertFrequency
    application_updates: bool
    marketing: bool
    created_at_utc: Optional[datetime]
    updated_at_utc: Optional[datetime]


class EmailPreferencesResponse(BaseModel):
    preferences: EmailPreferencesView
    is_default: bool = False


class EmailPreferencesUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_alerts: Optional[JobAlertFrequency] = None
    application_updates: Optional[bool] = None
    marketing: Optional[bool] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_none=True)


class UnsubscribeResponse(BaseModel):
    user_id: str
    category: EmailCategory
    updated: bool
    already_unsubscribed: bool
    preference_field: Optional[str]
    manage_preferences_url: str


class ApplicationCreateRequest(BaseModel):
    job_id: str = Field(min_length=1, max_length=120)
    job_title: str = Field(min_length=2, max_length=200)
    company: str = Field(min_length=1, max_length=200)
    candidate_id: str = Field(min_length=1, max_length=120)
    recruiter_id: Optional[str] = Field(default=None, max_length=120)


class ApplicationView(BaseModel):
    application_id: str
    job_id: str
    candidate_id: str
    recruiter_id: Optional[str]
    status: ApplicationStatus
    last_status_email_sent_at_utc: Optional[datetime]
    last_status_notified: Optional[ApplicationStatus]
    allowed_transitions: list[ApplicationStatus]


class StatusUpdateRequest(BaseModel):
    # plain string so unknown values surface as a 400 with the valid set
    status: str = Field(min_length=1, max_length=40)
    reason: str = Field(default="status_update", min_length=2, max_length=200)


class StatusUpdateResponse(BaseModel):
    application_id: str
    from_status: ApplicationStatus
    status: ApplicationStatus
    status_changed: bool
    notification: Optional["GateDecisionView"] = None


class TransitionsResponse(BaseModel):
    application_id: str
    status: ApplicationStatus
    terminal: bool
    allowed_transitions: list[ApplicationStatus]
    description: str


class StatusContextPayload(BaseModel):
    candidate_status: ApplicationStatus
    last_status_email_sent_at_utc: Optional[datetime] = None
    last_status_notified: Optional[str] = None

    @field_validator("last_status_email_sent_at_utc")
    @classmethod
    def normalize_sent_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)


class GateEvaluateRequest(BaseModel):
    user_id: Optional[str] = None
    category: EmailCategory
    event_type: str = Field(min_length=1, max_length=80)
    status_context: Optional[StatusContextPayload] = None


class GateDecisionView(BaseModel):
    send: bool
    reason: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    winning_status: Optional[ApplicationStatus] = None


class SendEmailRequest(BaseModel):
    to: list[str] = Field(min_length=1)
    subject: str = Field(min_length=1, max_length=300)
    html: Optional[str] = None
    text: Optional[str] = None
    category: EmailCategory
    event_type: str = Field(min_length=1, max_length=80)
    user_id: Optional[str] = None


class SendEmailResponse(BaseModel):
    success: bool
    suppressed: bool = False
    message_id: Optional[str] = None
    error: Optional[str] = None


class RateLimitCountsResponse(BaseModel):
    user_id: str
    hourly: int
    daily: int
    status_hourly: int
    job_alerts_hourly: int
    job_alerts_daily: int


StatusUpdateResponse.model_rebuild()
