from __future__ import annotations

from backend.app.models import EmailCategory, EmailPreferencesRecord, JobAlertFrequency, utc_now
from backend.app.services.preferences import NotificationPreferenceGate, is_marketing_event


def _prefs(**overrides) -> EmailPreferencesRecord:
    now = utc_now()
    return EmailPreferencesRecord(user_id="usr_1", created_at_utc=now, updated_at_utc=now, **overrides)


def _gate(preferences, **kwargs) -> NotificationPreferenceGate:
    return NotificationPreferenceGate(lambda user_id: preferences, **kwargs)


def test_critical_and_system_always_send() -> None:
    gate = _gate(
        _prefs(application_updates=False, job_alerts=JobAlertFrequency.never, marketing=False)
    )
    for category in (EmailCategory.critical_transactional, EmailCategory.system):
        assert gate.can_send("usr_1", category, "password_reset").can_send


def test_application_updates_disabled_blocks_important_transactional() -> None:
    result = _gate(_prefs(application_updates=False)).can_send(
        "usr_1", EmailCategory.important_transactional, "status_changed"
    )
    assert not result.can_send
    assert result.reason == "User has disabled application update emails"


def test_job_alerts_never_blocks_job_alert_only() -> None:
    gate = _gate(_prefs(job_alerts=JobAlertFrequency.never))
    blocked = gate.can_send("usr_1", EmailCategory.user_notification, "job_alert")
    assert not blocked.can_send
    assert blocked.reason == "User has disabled job alerts"
    assert gate.can_send("usr_1", EmailCategory.user_notification, "saved_search").can_send


def test_daily_and_weekly_job_alerts_are_allowed() -> None:
    for frequency in (JobAlertFrequency.daily, JobAlertFrequency.weekly):
        gate = _gate(_prefs(job_alerts=frequency))
        assert gate.can_send("usr_1", EmailCategory.user_notification, "job_alert").can_send


def test_marketing_events_respect_marketing_flag() -> None:
    assert is_marketing_event("marketing")
    assert is_marketing_event("marketing_spring_promo")
    assert not is_marketing_event("marketingish")

    off = _gate(_prefs(marketing=False))
    result = off.can_send("usr_1", EmailCategory.user_notification, "marketing_newsletter")
    assert not result.can_send
    assert result.reason == "User has disabled marketing emails"

    on = _gate(_prefs(marketing=True))
    assert on.can_send("usr_1", EmailCategory.user_notification, "marketing").can_send


def test_anonymous_and_missing_record_are_allowed() -> None:
    gate = _gate(None)
    assert gate.can_send(None, EmailCategory.important_transactional, "status_changed").can_send
    assert gate.can_send("usr_1", EmailCategory.user_notification, "job_alert").can_send


def test_lookup_error_fails_open(caplog) -> None:
    def broken(user_id: str):
        raise RuntimeError("database is down")

    gate = NotificationPreferenceGate(broken)
    lookup = gate.lookup("usr_1")
    assert lookup.failed
    assert "database is down" in lookup.error

    caplog.set_level("ERROR", logger="ats_notify.preferences")
    assert gate.can_send("usr_1", EmailCategory.user_notification, "job_alert").can_send
    assert any("preference_lookup_failed" in record.message for record in caplog.records)


def test_lookup_error_can_fail_closed() -> None:
    def broken(user_id: str):
        raise RuntimeError("database is down")

    result = NotificationPreferenceGate(broken, fail_open=False).can_send(
        "usr_1", EmailCategory.important_transactional, "status_changed"
    )
    assert not result.can_send
    assert result.reason == "Email preferences unavailable"
