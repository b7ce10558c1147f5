from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from backend.app.models import EmailCategory, EmailPreferencesRecord, JobAlertFrequency

logger = logging.getLogger("ats_notify.preferences")

JOB_ALERT_EVENT = "job_alert"
MARKETING_EVENT = "marketing"

# categories that are never suppressed by user preferences
ALWAYS_SEND_CATEGORIES = frozenset({EmailCategory.critical_transactional, EmailCategory.system})

PreferenceSource = Callable[[str], Optional[EmailPreferencesRecord]]


@dataclass(frozen=True)
class PreferenceLookup:
    preferences: Optional[EmailPreferencesRecord] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class PreferenceCheck:
    can_send: bool
    reason: Optional[str] = None


def is_marketing_event(event_type: str) -> bool:
    return event_type == MARKETING_EVENT or event_type.startswith(f"{MARKETING_EVENT}_")


def evaluate_preferences(
    preferences: EmailPreferencesRecord,
    category: EmailCategory,
    event_type: str,
) -> PreferenceCheck:
    if category == EmailCategory.important_transactional:
        if not preferences.application_updates:
            return PreferenceCheck(
                can_send=False,
                reason="User has disabled application update emails",
            )
        return PreferenceCheck(can_send=True)

    if category == EmailCategory.user_notification:
        if event_type == JOB_ALERT_EVENT:
            # daily vs weekly cadence belongs to the alert scheduler, not the gate
            if preferences.job_alerts == JobAlertFrequency.never:
                return PreferenceCheck(can_send=False, reason="User has disabled job alerts")
            return PreferenceCheck(can_send=True)
        if is_marketing_event(event_type):
            if not preferences.marketing:
                return PreferenceCheck(
                    can_send=False,
                    reason="User has disabled marketing emails",
                )
            return PreferenceCheck(can_send=True)

    return PreferenceCheck(can_send=True)


class NotificationPreferenceGate:
    def __init__(self, source: PreferenceSource, *, fail_open: bool = True) -> None:
        self._source = source
        self.fail_open = fail_open

    def lookup(self, user_id: str) -> PreferenceLookup:
        try:
            return PreferenceLookup(preferences=self._source(user_id))
        except Exception as exc:
            return PreferenceLookup(error=f"{type(exc).__name__}: {exc}")

    def can_send(
        self,
        user_id: Optional[str],
        category: EmailCategory,
        event_type: str,
    ) -> PreferenceCheck:
        if not user_id:
            return PreferenceCheck(can_send=True)
        if category in ALWAYS_SEND_CATEGORIES:
            return PreferenceCheck(can_send=True)

        result = self.lookup(user_id)
        if result.failed:
            logger.error(
                "preference_lookup_failed user_id=%s category=%s event_type=%s error=%s "
                "fail_open=%s",
                user_id,
                category.value,
                event_type,
                result.error,
                self.fail_open,
            )
            if self.fail_open:
                return PreferenceCheck(can_send=True)
            return PreferenceCheck(can_send=False, reason="Email preferences unavailable")

        if result.preferences is None:
            # accounts created before preferences existed
            return PreferenceCheck(can_send=True)
        return evaluate_preferences(result.preferences, category, event_type)
