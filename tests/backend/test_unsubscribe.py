from __future__ import annotations

from datetime import datetime, timedelta

import jwt
import pytest

from backend.app.models import EmailCategory, EmailPreferencesRecord, JobAlertFrequency, UserRole, utc_now
from backend.app.services.unsubscribe import (
    UnsubscribeNotAllowedError,
    UnsubscribeTokenError,
    apply_unsubscribe,
    build_unsubscribe_url,
    generate_unsubscribe_token,
    preferences_url,
    unsubscribe_footer,
    verify_unsubscribe_token,
)

SECRET = "unsubscribe-secret"


def _prefs(**overrides) -> EmailPreferencesRecord:
    now = utc_now()
    return EmailPreferencesRecord(user_id="usr_1", created_at_utc=now, updated_at_utc=now, **overrides)


def test_token_round_trip() -> None:
    token = generate_unsubscribe_token("usr_1", EmailCategory.user_notification, secret=SECRET)
    claims = verify_unsubscribe_token(token, secret=SECRET)
    assert claims.user_id == "usr_1"
    assert claims.category == EmailCategory.user_notification


def test_expired_and_tampered_tokens_are_rejected() -> None:
    expired = jwt.encode(
        {
            "userId": "usr_1",
            "category": "user_notification",
            "exp": datetime.utcnow() - timedelta(minutes=1),
        },
        SECRET,
        algorithm="HS256",
    )
    with pytest.raises(UnsubscribeTokenError, match="Token has expired"):
        verify_unsubscribe_token(expired, secret=SECRET)

    token = generate_unsubscribe_token("usr_1", EmailCategory.user_notification, secret="other")
    with pytest.raises(UnsubscribeTokenError, match="Invalid token"):
        verify_unsubscribe_token(token, secret=SECRET)


def test_token_with_bad_claims_is_rejected() -> None:
    missing = jwt.encode({"category": "user_notification"}, SECRET, algorithm="HS256")
    with pytest.raises(UnsubscribeTokenError, match="missing required fields"):
        verify_unsubscribe_token(missing, secret=SECRET)

    bogus = jwt.encode({"userId": "usr_1", "category": "promo"}, SECRET, algorithm="HS256")
    with pytest.raises(UnsubscribeTokenError, match="invalid category"):
        verify_unsubscribe_token(bogus, secret=SECRET)


def test_unsubscribe_url_and_preferences_url() -> None:
    url = build_unsubscribe_url(
        "usr_1", EmailCategory.user_notification, secret=SECRET, base_url="https://jobs.example/"
    )
    assert url.startswith("https://jobs.example/email/unsubscribe?token=")
    assert preferences_url("https://jobs.example", UserRole.recruiter).endswith(
        "/recruiter/account/edit"
    )
    assert preferences_url("https://jobs.example", None).endswith("/job-seeker/account/edit")


def test_footer_is_omitted_for_always_send_categories_and_anonymous() -> None:
    kwargs = {"role": None, "secret": SECRET, "base_url": "https://jobs.example"}
    assert unsubscribe_footer("usr_1", EmailCategory.critical_transactional, **kwargs) is None
    assert unsubscribe_footer("usr_1", EmailCategory.system, **kwargs) is None
    assert unsubscribe_footer(None, EmailCategory.user_notification, **kwargs) is None

    footer = unsubscribe_footer("usr_1", EmailCategory.important_transactional, **kwargs)
    assert footer is not None
    assert "/email/unsubscribe?token=" in footer.html
    assert "Manage preferences: https://jobs.example/job-seeker/account/edit" in footer.text


def test_apply_unsubscribe_maps_category_to_preference() -> None:
    outcome = apply_unsubscribe(_prefs(), EmailCategory.important_transactional)
    assert outcome.updated
    assert outcome.preference_field == "application_updates"
    assert outcome.preferences.application_updates is False

    outcome = apply_unsubscribe(_prefs(), EmailCategory.user_notification)
    assert outcome.preferences.job_alerts == JobAlertFrequency.never

    again = apply_unsubscribe(outcome.preferences, EmailCategory.user_notification)
    assert not again.updated
    assert again.already_unsubscribed


def test_apply_unsubscribe_refuses_always_send_categories() -> None:
    with pytest.raises(UnsubscribeNotAllowedError):
        apply_unsubscribe(_prefs(), EmailCategory.critical_transactional)
