from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import quote

import jwt

from backend.app.models import (
    EmailCategory,
    EmailPreferencesRecord,
    JobAlertFrequency,
    UserRole,
)
from backend.app.services.dispatch import Footer
from backend.app.services.preferences import ALWAYS_SEND_CATEGORIES

UNSUBSCRIBE_ALGORITHM = "HS256"


class UnsubscribeTokenError(Exception):
    pass


class UnsubscribeNotAllowedError(Exception):
    pass


@dataclass(frozen=True)
class UnsubscribeToken:
    user_id: str
    category: EmailCategory


@dataclass(frozen=True)
class UnsubscribeOutcome:
    preferences: EmailPreferencesRecord
    updated: bool
    already_unsubscribed: bool
    preference_field: Optional[str]


def generate_unsubscribe_token(
    user_id: str,
    category: EmailCategory,
    *,
    secret: str,
    ttl_days: int = 90,
) -> str:
    payload = {
        "userId": user_id,
        "category": category.value,
        "exp": datetime.utcnow() + timedelta(days=ttl_days),
    }
    return jwt.encode(payload, secret, algorithm=UNSUBSCRIBE_ALGORITHM)


def verify_unsubscribe_token(token: str, *, secret: str) -> UnsubscribeToken:
    try:
        payload = jwt.decode(token, secret, algorithms=[UNSUBSCRIBE_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise UnsubscribeTokenError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise UnsubscribeTokenError("Invalid token") from exc

    user_id = payload.get("userId")
    category = payload.get("category")
    if not isinstance(user_id, str) or not user_id or not category:
        raise UnsubscribeTokenError("Invalid token: missing required fields")
    try:
        return UnsubscribeToken(user_id=user_id, category=EmailCategory(category))
    except ValueError as exc:
        raise UnsubscribeTokenError("Invalid token: invalid category") from exc


def build_unsubscribe_url(
    user_id: str,
    category: EmailCategory,
    *,
    secret: str,
    base_url: str,
    ttl_days: int = 90,
) -> str:
    token = generate_unsubscribe_token(user_id, category, secret=secret, ttl_days=ttl_days)
    return f"{base_url.rstrip('/')}/email/unsubscribe?token={quote(token, safe='')}"


def preferences_url(base_url: str, role: Optional[UserRole]) -> str:
    if role == UserRole.recruiter:
        return f"{base_url.rstrip('/')}/recruiter/account/edit"
    return f"{base_url.rstrip('/')}/job-seeker/account/edit"


def unsubscribe_footer(
    user_id: Optional[str],
    category: EmailCategory,
    *,
    role: Optional[UserRole],
    secret: str,
    base_url: str,
    ttl_days: int = 90,
) -> Optional[Footer]:
    if category in ALWAYS_SEND_CATEGORIES or not user_id:
        return None
    unsubscribe_url = build_unsubscribe_url(
        user_id, category, secret=secret, base_url=base_url, ttl_days=ttl_days
    )
    manage_url = preferences_url(base_url, role)
    html = (
        '<div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb;">'
        '<p style="margin: 0; color: #6b7280; font-size: 12px;">'
        "You're receiving this email because of your account activity.<br />"
        f'<a href="{unsubscribe_url}">Unsubscribe from these emails</a> | '
        f'<a href="{manage_url}">Manage email preferences</a>'
        "</p></div>"
    )
    text = (
        "\n\n---\nYou're receiving this email because of your account activity.\n"
        f"Unsubscribe: {unsubscribe_url}\nManage preferences: {manage_url}"
    )
    return Footer(html=html, text=text)


def apply_unsubscribe(
    preferences: EmailPreferencesRecord,
    category: EmailCategory,
) -> UnsubscribeOutcome:
    if category in ALWAYS_SEND_CATEGORIES:
        raise UnsubscribeNotAllowedError(f"{category.value} emails cannot be unsubscribed from")

    if category == EmailCategory.important_transactional:
        if not preferences.application_updates:
            return UnsubscribeOutcome(preferences, False, True, "application_updates")
        updated = preferences.model_copy(update={"application_updates": False})
        return UnsubscribeOutcome(updated, True, False, "application_updates")

    # user notifications are almost all job alerts; marketing is managed from the dashboard
    if preferences.job_alerts == JobAlertFrequency.never:
        return UnsubscribeOutcome(preferences, False, True, "job_alerts")
    updated = preferences.model_copy(update={"job_alerts": JobAlertFrequency.never})
    return UnsubscribeOutcome(updated, True, False, "job_alerts")
