"""Priority ordering and time-window suppression for status-change emails.

When several status changes land on one application in quick succession the
candidate should get one email for the most important of them, not one per
change. ``should_suppress`` makes that call from the last notification
marker stored on the application.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from backend.app.models import ApplicationStatus, to_naive_utc

STATUS_PRIORITY: dict[ApplicationStatus, int] = {
    ApplicationStatus.offered: 4,
    ApplicationStatus.interviewing: 3,
    ApplicationStatus.contacted: 2,
    ApplicationStatus.rejected: 1,
}

STATUS_EMAIL_SUPPRESSION_WINDOW = timedelta(minutes=30)


@dataclass(frozen=True)
class SuppressionDecision:
    suppress: bool
    reason: Optional[str] = None
    winning_status: Optional[ApplicationStatus] = None


def priority(status: ApplicationStatus) -> int:
    return STATUS_PRIORITY.get(status, 0)


def higher_priority(a: ApplicationStatus, b: ApplicationStatus) -> ApplicationStatus:
    """Return the status with the greater priority; ``a`` wins a tie."""
    if priority(b) > priority(a):
        return b
    return a


def should_notify(status: ApplicationStatus) -> bool:
    return priority(status) > 0


def _coerce_status(value: Union[str, ApplicationStatus, None]) -> Optional[ApplicationStatus]:
    if value is None or isinstance(value, ApplicationStatus):
        return value
    try:
        return ApplicationStatus(value)
    except ValueError:
        return None


def should_suppress(
    last_email_sent_at: Optional[datetime],
    candidate_status: ApplicationStatus,
    last_notified_status: Union[str, ApplicationStatus, None],
    now: datetime,
    window: timedelta = STATUS_EMAIL_SUPPRESSION_WINDOW,
) -> SuppressionDecision:
    if last_email_sent_at is None:
        return SuppressionDecision(suppress=False)

    elapsed = to_naive_utc(now) - to_naive_utc(last_email_sent_at)
    if elapsed >= window:
        return SuppressionDecision(suppress=False)

    # whole minutes, so a suppressed send never reports the full window
    minutes = int(elapsed.total_seconds() // 60)
    window_minutes = round(window.total_seconds() / 60)
    last_status = _coerce_status(last_notified_status)
    if last_status is None:
        # history is incomplete, so a duplicate is worse than a missed email
        return SuppressionDecision(
            suppress=True,
            reason=(
                f"Suppressed: Within {window_minutes} minute suppression window "
                f"(last email {minutes} minutes ago), prior status unknown"
            ),
        )

    winner = higher_priority(candidate_status, last_status)
    if winner == candidate_status and priority(candidate_status) > priority(last_status):
        return SuppressionDecision(suppress=False, winning_status=candidate_status)

    return SuppressionDecision(
        suppress=True,
        reason=(
            f"Suppressed: {candidate_status.value} has lower or equal priority than "
            f"{last_status.value} (within {window_minutes} minute suppression window, "
            f"last email {minutes} minutes ago)"
        ),
        winning_status=last_status,
    )
