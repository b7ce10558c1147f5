from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from threading import RLock
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from backend.app.models import (
    ApplicationCreateRequest,
    ApplicationRecord,
    ApplicationStatus,
    AuditEventRecord,
    DeliveryStatus,
    EmailPreferencesRecord,
    NotificationDeliveryRecord,
    UserCreateRequest,
    UserRecord,
    utc_now,
)
from backend.app.persistence import MAX_DELIVERY_PAGE
from backend.app.services.workflow import ensure_transition, parse_status

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence
    from backend.app.services.dispatch import NotificationEvent

logger = logging.getLogger("ats_notify.store")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.users: dict[str, UserRecord] = {}
        self.email_preferences: dict[str, EmailPreferencesRecord] = {}
        self.applications: dict[str, ApplicationRecord] = {}
        self.audit_events: list[AuditEventRecord] = []
        # oldest records drop off; the full log lives in persistence
        self.deliveries: deque[NotificationDeliveryRecord] = deque(maxlen=MAX_DELIVERY_PAGE)

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)

    def create_user(self, request: UserCreateRequest) -> tuple[UserRecord, EmailPreferencesRecord]:
        with self._lock:
            for user in self.users.values():
                if user.email == request.email:
                    raise StoreConflictError(f"user already exists: {request.email}")
            now = utc_now()
            user = UserRecord(
                id=new_id("usr"),
                email=request.email,
                role=request.role,
                created_at_utc=now,
            )
            preferences = EmailPreferencesRecord(
                user_id=user.id,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.users[user.id] = user
            self.email_preferences[user.id] = preferences
            self._persist_state()
            return user, preferences

    def get_user(self, user_id: str) -> UserRecord:
        user = self.users.get(user_id)
        if not user:
            raise StoreNotFoundError(f"user not found: {user_id}")
        return user

    def get_email_preferences(self, user_id: str) -> Optional[EmailPreferencesRecord]:
        with self._lock:
            return self.email_preferences.get(user_id)

    def update_email_preferences(self, user_id: str, changes: dict) -> EmailPreferencesRecord:
        with self._lock:
            now = utc_now()
            existing = self.email_preferences.get(user_id)
            if existing is None:
                existing = EmailPreferencesRecord(
                    user_id=user_id,
                    created_at_utc=now,
                    updated_at_utc=now,
                )
            updated = existing.model_copy(update={**changes, "updated_at_utc": now})
            self.email_preferences[user_id] = updated
            self._persist_state()
            logger.info("email_preferences_updated user_id=%s updates=%s", user_id, changes)
            return updated

    def create_application(self, request: ApplicationCreateRequest) -> ApplicationRecord:
        with self._lock:
            for application in self.applications.values():
                if (
                    application.job_id == request.job_id
                    and application.candidate_id == request.candidate_id
                ):
                    raise StoreConflictError(
                        f"candidate {request.candidate_id} already applied to job {request.job_id}"
                    )
            now = utc_now()
            application = ApplicationRecord(
                id=new_id("app"),
                job_id=request.job_id,
                job_title=request.job_title.strip(),
                company=request.company.strip(),
                candidate_id=request.candidate_id,
                recruiter_id=request.recruiter_id,
                status=ApplicationStatus.applied,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.applications[application.id] = application
            self._add_audit_event(
                application_id=application.id,
                from_status=None,
                to_status=ApplicationStatus.applied,
                reason="application_created",
                actor_id=request.candidate_id,
            )
            self._persist_state()
            return application

    def get_application(self, application_id: str) -> ApplicationRecord:
        application = self.applications.get(application_id)
        if not application:
            raise StoreNotFoundError(f"application not found: {application_id}")
        return application

    def transition_application(
        self,
        application_id: str,
        to_status: ApplicationStatus,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> tuple[ApplicationRecord, ApplicationStatus]:
        """Apply a validated status change; returns the record and the previous status."""
        with self._lock:
            application = self.get_application(application_id)
            from_status = application.status
            ensure_transition(from_status, to_status)
            if from_status == to_status:
                return application, from_status
            application.status = to_status
            application.updated_at_utc = utc_now()
            self._add_audit_event(
                application_id=application.id,
                from_status=from_status,
                to_status=to_status,
                reason=reason,
                actor_id=actor_id,
            )
            self._persist_state()
            return application, from_status

    def mark_status_notified(
        self,
        application_id: str,
        status: ApplicationStatus,
        sent_at: datetime,
    ) -> ApplicationRecord:
        with self._lock:
            application = self.get_application(application_id)
            application.last_status_email_sent_at_utc = sent_at
            application.last_status_notified = parse_status(status)
            self._persist_state()
            return application

    def list_audit_events(self, application_id: str) -> list[AuditEventRecord]:
        with self._lock:
            return [event for event in self.audit_events if event.application_id == application_id]

    def record_delivery(
        self,
        *,
        event: "NotificationEvent",
        status: DeliveryStatus,
        reason: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> NotificationDeliveryRecord:
        record = NotificationDeliveryRecord(
            id=new_id("dlv"),
            user_id=event.user_id,
            category=event.category,
            event_type=event.event_type,
            recipients=list(event.to),
            subject=event.subject,
            status=status,
            reason=reason,
            message_id=message_id,
            application_id=event.application_id,
            created_at_utc=utc_now(),
        )
        with self._lock:
            self.deliveries.append(record)
            if self.persistence:
                self.persistence.insert_delivery(record)
        return record

    def list_deliveries(
        self,
        *,
        user_id: Optional[str] = None,
        application_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[NotificationDeliveryRecord]:
        """Matching records, oldest first, capped to the newest ``limit``."""
        safe_limit = max(1, min(limit, MAX_DELIVERY_PAGE))
        with self._lock:
            matches = [
                record
                for record in self.deliveries
                if (user_id is None or record.user_id == user_id)
                and (application_id is None or record.application_id == application_id)
            ]
        return matches[-safe_limit:]

    def _add_audit_event(
        self,
        *,
        application_id: str,
        from_status: Optional[ApplicationStatus],
        to_status: ApplicationStatus,
        reason: str,
        actor_id: Optional[str],
    ) -> None:
        event = AuditEventRecord(
            id=new_id("aud"),
            application_id=application_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            actor_id=actor_id,
            created_at_utc=utc_now(),
        )
        self.audit_events.append(event)

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "users": [record.model_dump(mode="json") for record in self.users.values()],
            "email_preferences": [
                record.model_dump(mode="json") for record in self.email_preferences.values()
            ],
            "applications": [
                record.model_dump(mode="json") for record in self.applications.values()
            ],
            "audit_events": [record.model_dump(mode="json") for record in self.audit_events],
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.users = {
            record["id"]: UserRecord.model_validate(record)
            for record in snapshot.get("users", [])
        }
        self.email_preferences = {
            record["user_id"]: EmailPreferencesRecord.model_validate(record)
            for record in snapshot.get("email_preferences", [])
        }
        self.applications = {
            record["id"]: ApplicationRecord.model_validate(record)
            for record in snapshot.get("applications", [])
        }
        self.audit_events = [
            AuditEventRecord.model_validate(record) for record in snapshot.get("audit_events", [])
        ]
        if self.persistence:
            recent = self.persistence.list_deliveries(limit=MAX_DELIVERY_PAGE)
            self.deliveries = deque(reversed(recent), maxlen=MAX_DELIVERY_PAGE)
