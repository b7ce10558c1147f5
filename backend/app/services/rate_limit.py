from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Optional

from backend.app.models import EmailCategory, utc_now
from backend.app.services.preferences import JOB_ALERT_EVENT

STATUS_CHANGED_EVENT = "status_changed"

HOURLY_RESET = timedelta(hours=1)
DAILY_RESET = timedelta(hours=24)


@dataclass(frozen=True)
class RateLimits:
    max_emails_per_hour: int = 20
    max_emails_per_day: int = 100
    max_status_emails_per_hour: int = 5
    max_job_alerts_per_hour: int = 1
    max_job_alerts_per_day: int = 3


RATE_LIMITS = RateLimits()


@dataclass(frozen=True)
class RateLimitCounts:
    hourly: int = 0
    daily: int = 0
    status_hourly: int = 0
    job_alerts_hourly: int = 0
    job_alerts_daily: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class RateLimitCheck:
    should_allow: bool = True
    reason: Optional[str] = None
    counts: Optional[dict[str, int]] = None


def is_status_email(category: EmailCategory, event_type: str) -> bool:
    return category == EmailCategory.important_transactional and event_type == STATUS_CHANGED_EVENT


def is_job_alert(category: EmailCategory, event_type: str) -> bool:
    return category == EmailCategory.user_notification and event_type == JOB_ALERT_EVENT


class RateLimitLedger:
    """Per-user soft email limits.

    The ledger never blocks a send. ``check`` reports when a threshold has
    been reached so the caller can log it; ``record`` is called only after
    a confirmed delivery.
    """

    def __init__(
        self,
        limits: RateLimits = RATE_LIMITS,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.limits = limits
        self._clock = clock
        self._lock = Lock()
        self._hourly: dict[str, int] = {}
        self._daily: dict[str, int] = {}
        self._status_hourly: dict[str, int] = {}
        self._job_alerts_hourly: dict[str, int] = {}
        self._job_alerts_daily: dict[str, int] = {}
        self._last_reset = clock()

    @property
    def last_reset(self) -> datetime:
        with self._lock:
            return self._last_reset

    def reset(self) -> None:
        with self._lock:
            self._hourly.clear()
            self._daily.clear()
            self._status_hourly.clear()
            self._job_alerts_hourly.clear()
            self._job_alerts_daily.clear()
            self._last_reset = self._clock()

    def check(
        self,
        user_id: Optional[str],
        category: EmailCategory,
        event_type: str,
    ) -> RateLimitCheck:
        with self._lock:
            self._reset_if_needed()
            if not user_id:
                return RateLimitCheck()

            counts = self._counts(user_id)
            totals = {"hourly": counts.hourly, "daily": counts.daily}
            if counts.hourly >= self.limits.max_emails_per_hour:
                return RateLimitCheck(
                    reason=(
                        f"Hourly limit exceeded: {counts.hourly}/"
                        f"{self.limits.max_emails_per_hour} emails"
                    ),
                    counts=totals,
                )
            if counts.daily >= self.limits.max_emails_per_day:
                return RateLimitCheck(
                    reason=(
                        f"Daily limit exceeded: {counts.daily}/"
                        f"{self.limits.max_emails_per_day} emails"
                    ),
                    counts=totals,
                )

            if is_status_email(category, event_type):
                if counts.status_hourly >= self.limits.max_status_emails_per_hour:
                    return RateLimitCheck(
                        reason=(
                            f"Status email hourly limit exceeded: {counts.status_hourly}/"
                            f"{self.limits.max_status_emails_per_hour}"
                        ),
                        counts={**totals, "status_hourly": counts.status_hourly},
                    )

            if is_job_alert(category, event_type):
                alert_counts = {
                    **totals,
                    "job_alerts_hourly": counts.job_alerts_hourly,
                    "job_alerts_daily": counts.job_alerts_daily,
                }
                if counts.job_alerts_hourly >= self.limits.max_job_alerts_per_hour:
                    return RateLimitCheck(
                        reason=(
                            f"Job alert hourly limit exceeded: {counts.job_alerts_hourly}/"
                            f"{self.limits.max_job_alerts_per_hour}"
                        ),
                        counts=alert_counts,
                    )
                if counts.job_alerts_daily >= self.limits.max_job_alerts_per_day:
                    return RateLimitCheck(
                        reason=(
                            f"Job alert daily limit exceeded: {counts.job_alerts_daily}/"
                            f"{self.limits.max_job_alerts_per_day}"
                        ),
                        counts=alert_counts,
                    )

            return RateLimitCheck()

    def record(
        self,
        user_id: Optional[str],
        category: EmailCategory,
        event_type: str,
    ) -> None:
        if not user_id:
            return
        with self._lock:
            self._reset_if_needed()
            self._increment(self._hourly, user_id)
            self._increment(self._daily, user_id)
            if is_status_email(category, event_type):
                self._increment(self._status_hourly, user_id)
            if is_job_alert(category, event_type):
                self._increment(self._job_alerts_hourly, user_id)
                self._increment(self._job_alerts_daily, user_id)

    def snapshot(self, user_id: str) -> RateLimitCounts:
        with self._lock:
            self._reset_if_needed()
            return self._counts(user_id)

    def _counts(self, user_id: str) -> RateLimitCounts:
        return RateLimitCounts(
            hourly=self._hourly.get(user_id, 0),
            daily=self._daily.get(user_id, 0),
            status_hourly=self._status_hourly.get(user_id, 0),
            job_alerts_hourly=self._job_alerts_hourly.get(user_id, 0),
            job_alerts_daily=self._job_alerts_daily.get(user_id, 0),
        )

    def _reset_if_needed(self) -> None:
        # caller holds the lock; one timestamp drives both granularities
        now = self._clock()
        elapsed = now - self._last_reset
        if elapsed < HOURLY_RESET:
            return
        self._hourly.clear()
        self._status_hourly.clear()
        self._job_alerts_hourly.clear()
        if elapsed >= DAILY_RESET:
            self._daily.clear()
            self._job_alerts_daily.clear()
        self._last_reset = now

    @staticmethod
    def _increment(bucket: dict[str, int], user_id: str) -> None:
        bucket[user_id] = bucket.get(user_id, 0) + 1
