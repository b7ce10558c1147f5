from __future__ import annotations

from datetime import datetime, timedelta, timezone

from backend.app.models import ApplicationStatus
from backend.app.services.status_priority import (
    higher_priority,
    priority,
    should_notify,
    should_suppress,
)

S = ApplicationStatus
NOW = datetime(2024, 3, 1, 12, 0, 0)


def test_priority_ordering() -> None:
    assert priority(S.offered) > priority(S.interviewing) > priority(S.contacted)
    assert priority(S.contacted) > priority(S.rejected) > priority(S.applied)
    for status in (S.applied, S.viewed, S.hired, S.withdrawn, S.accepted):
        assert priority(status) == 0


def test_higher_priority_tie_keeps_left_operand() -> None:
    assert higher_priority(S.contacted, S.offered) == S.offered
    assert higher_priority(S.offered, S.contacted) == S.offered
    assert higher_priority(S.applied, S.viewed) == S.applied
    assert higher_priority(S.viewed, S.applied) == S.viewed


def test_should_notify_only_for_prioritised_statuses() -> None:
    assert [s for s in ApplicationStatus if should_notify(s)] == [
        S.contacted,
        S.interviewing,
        S.offered,
        S.rejected,
    ]


def test_no_previous_email_never_suppresses() -> None:
    decision = should_suppress(None, S.rejected, None, NOW)
    assert not decision.suppress


def test_window_expiry_allows_any_status() -> None:
    decision = should_suppress(NOW - timedelta(minutes=30), S.rejected, S.offered, NOW)
    assert not decision.suppress


def test_higher_priority_within_window_is_sent() -> None:
    decision = should_suppress(NOW - timedelta(minutes=10), S.interviewing, S.contacted, NOW)
    assert not decision.suppress
    assert decision.winning_status == S.interviewing


def test_lower_priority_within_window_is_suppressed() -> None:
    decision = should_suppress(NOW - timedelta(minutes=5), S.rejected, S.interviewing, NOW)
    assert decision.suppress
    assert decision.winning_status == S.interviewing
    assert decision.reason == (
        "Suppressed: rejected has lower or equal priority than interviewing "
        "(within 30 minute suppression window, last email 5 minutes ago)"
    )


def test_equal_priority_within_window_is_suppressed() -> None:
    decision = should_suppress(NOW - timedelta(minutes=1), S.contacted, "contacted", NOW)
    assert decision.suppress


def test_unknown_prior_status_within_window_is_suppressed() -> None:
    for last in (None, "something-else"):
        decision = should_suppress(NOW - timedelta(minutes=2), S.offered, last, NOW)
        assert decision.suppress
        assert "prior status unknown" in decision.reason


def test_just_inside_window_is_suppressed_with_whole_minutes() -> None:
    decision = should_suppress(
        NOW - timedelta(minutes=29, seconds=59), S.contacted, S.interviewing, NOW
    )
    assert decision.suppress is True
    assert "last email 29 minutes ago" in decision.reason


def test_offered_outranks_interviewing_mid_window() -> None:
    decision = should_suppress(NOW - timedelta(minutes=15), S.offered, S.interviewing, NOW)
    assert not decision.suppress
    assert decision.winning_status == S.offered


def test_rejected_after_offered_mid_window_is_suppressed() -> None:
    decision = should_suppress(NOW - timedelta(minutes=15), S.rejected, S.offered, NOW)
    assert decision.suppress
    assert decision.winning_status == S.offered


def test_timezone_aware_timestamps_compare_as_utc() -> None:
    sent_at = (NOW - timedelta(minutes=5)).replace(tzinfo=timezone.utc)
    decision = should_suppress(sent_at, S.rejected, S.offered, NOW)
    assert decision.suppress
    assert "last email 5 minutes ago" in decision.reason

    offset = timezone(timedelta(hours=2))
    sent_local = (NOW + timedelta(hours=2) - timedelta(minutes=40)).replace(tzinfo=offset)
    assert not should_suppress(sent_local, S.rejected, S.offered, NOW).suppress
