"""Gating pipeline for outbound email.

Every notification goes through ``NotificationDispatchOrchestrator.evaluate``
before anything is handed to the transport:

1. user preferences (hard stop, nothing recorded)
2. status-change priority suppression, for status emails only
3. soft rate limits (warning only)

``deliver`` is the unit of work that runs after the decision was returned.
Counters and the application's last-notified marker are written only once
the transport confirms the send.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from backend.app.models import (
    ApplicationRecord,
    ApplicationStatus,
    DeliveryStatus,
    EmailCategory,
    utc_now,
)
from backend.app.services.email_transport import DeliveryResult, EmailMessage, EmailTransport
from backend.app.services.preferences import NotificationPreferenceGate
from backend.app.services.rate_limit import STATUS_CHANGED_EVENT, RateLimitLedger
from backend.app.services.status_priority import (
    STATUS_EMAIL_SUPPRESSION_WINDOW,
    should_notify,
    should_suppress,
)
from backend.app.services.templates import status_changed_email

logger = logging.getLogger("ats_notify.dispatch")


@dataclass(frozen=True)
class StatusContext:
    candidate_status: ApplicationStatus
    last_status_email_sent_at: Optional[datetime] = None
    last_status_notified: Union[str, ApplicationStatus, None] = None


@dataclass(frozen=True)
class NotificationEvent:
    category: EmailCategory
    event_type: str
    to: list[str]
    subject: str
    html: Optional[str] = None
    text: Optional[str] = None
    user_id: Optional[str] = None
    application_id: Optional[str] = None
    status_context: Optional[StatusContext] = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GateDecision:
    send: bool
    reason: Optional[str] = None
    warnings: tuple[str, ...] = ()
    winning_status: Optional[ApplicationStatus] = None


@dataclass(frozen=True)
class Footer:
    html: str
    text: str


MarkerSink = Callable[[str, ApplicationStatus, datetime], Any]
DeliveryLog = Callable[..., Any]
FooterBuilder = Callable[[NotificationEvent], Optional[Footer]]
OutcomeHook = Callable[[str], Any]


def status_change_event(
    application: ApplicationRecord,
    *,
    new_status: ApplicationStatus,
    candidate_email: str,
    dashboard_url: str,
) -> Optional[NotificationEvent]:
    if not should_notify(new_status):
        return None
    rendered = status_changed_email(
        status=new_status,
        job_title=application.job_title,
        company=application.company,
        dashboard_url=dashboard_url,
    )
    return NotificationEvent(
        category=EmailCategory.important_transactional,
        event_type=STATUS_CHANGED_EVENT,
        to=[candidate_email],
        subject=rendered.subject,
        html=rendered.html,
        text=rendered.text,
        user_id=application.candidate_id,
        application_id=application.id,
        status_context=StatusContext(
            candidate_status=new_status,
            last_status_email_sent_at=application.last_status_email_sent_at_utc,
            last_status_notified=application.last_status_notified,
        ),
        tags={"event": STATUS_CHANGED_EVENT, "status": new_status.value},
    )


class NotificationDispatchOrchestrator:
    def __init__(
        self,
        *,
        gate: NotificationPreferenceGate,
        ledger: RateLimitLedger,
        transport: EmailTransport,
        marker_sink: Optional[MarkerSink] = None,
        delivery_log: Optional[DeliveryLog] = None,
        footer_builder: Optional[FooterBuilder] = None,
        on_outcome: Optional[OutcomeHook] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.gate = gate
        self.ledger = ledger
        self.transport = transport
        self._marker_sink = marker_sink
        self._delivery_log = delivery_log
        self._footer_builder = footer_builder
        self._on_outcome = on_outcome
        self._clock = clock

    def evaluate(
        self,
        user_id: Optional[str],
        category: EmailCategory,
        event_type: str,
        status_context: Optional[StatusContext] = None,
    ) -> GateDecision:
        preference = self.gate.can_send(user_id, category, event_type)
        if not preference.can_send:
            return GateDecision(send=False, reason=preference.reason)

        winning_status = None
        if status_context is not None:
            suppression = should_suppress(
                status_context.last_status_email_sent_at,
                status_context.candidate_status,
                status_context.last_status_notified,
                self._clock(),
                STATUS_EMAIL_SUPPRESSION_WINDOW,
            )
            if suppression.suppress:
                return GateDecision(send=False, reason=suppression.reason)
            winning_status = suppression.winning_status

        warnings: tuple[str, ...] = ()
        rate = self.ledger.check(user_id, category, event_type)
        if rate.reason:
            warnings = (rate.reason,)
        return GateDecision(send=True, warnings=warnings, winning_status=winning_status)

    def evaluate_event(self, event: NotificationEvent) -> GateDecision:
        return self.evaluate(event.user_id, event.category, event.event_type, event.status_context)

    def dispatch(
        self,
        event: NotificationEvent,
        schedule: Optional[Callable[..., Any]] = None,
    ) -> GateDecision:
        """Decide now, deliver later.

        ``schedule`` receives ``(self.deliver, event, decision)``; FastAPI's
        ``BackgroundTasks.add_task`` fits. Without it delivery runs inline.
        """
        decision = self.evaluate_event(event)
        recipients = ", ".join(event.to)
        if not decision.send:
            logger.info(
                "email_suppressed category=%s event_type=%s user_id=%s to=%s reason=%s",
                event.category.value,
                event.event_type,
                event.user_id or "anonymous",
                recipients,
                decision.reason or "unknown",
            )
            self._log_delivery(event, DeliveryStatus.suppressed, reason=decision.reason)
            self._outcome("suppressed")
            return decision

        for warning in decision.warnings:
            logger.warning(
                "email_rate_limit_warning category=%s event_type=%s user_id=%s to=%s "
                "reason=%s counts=%s",
                event.category.value,
                event.event_type,
                event.user_id or "anonymous",
                recipients,
                warning,
                self.ledger.snapshot(event.user_id).as_dict() if event.user_id else {},
            )
            self._outcome("rate_limit_warning")

        if schedule is None:
            self.deliver(event, decision)
        else:
            schedule(self.deliver, event, decision)
        return decision

    def send_now(self, event: NotificationEvent) -> tuple[GateDecision, Optional[DeliveryResult]]:
        results: list[Optional[DeliveryResult]] = []

        def run_inline(deliver, *args) -> None:
            results.append(deliver(*args))

        decision = self.dispatch(event, run_inline)
        return decision, (results[0] if results else None)

    def deliver(self, event: NotificationEvent, decision: GateDecision) -> Optional[DeliveryResult]:
        if not decision.send:
            return None

        message = self._compose(event)
        try:
            result = self.transport.send(message)
        except Exception as exc:
            result = DeliveryResult(success=False, error=f"{type(exc).__name__}: {exc}")

        if not result.success:
            logger.error(
                "email_delivery_failed category=%s event_type=%s user_id=%s application_id=%s "
                "error=%s",
                event.category.value,
                event.event_type,
                event.user_id or "anonymous",
                event.application_id,
                result.error,
            )
            self._log_delivery(event, DeliveryStatus.failed, reason=result.error)
            self._outcome("failed")
            return result

        try:
            self.on_sent(event)
        except Exception:
            logger.exception(
                "email_post_send_update_failed user_id=%s application_id=%s",
                event.user_id,
                event.application_id,
            )
        logger.info(
            "email_sent category=%s event_type=%s user_id=%s to=%s message_id=%s",
            event.category.value,
            event.event_type,
            event.user_id or "anonymous",
            ", ".join(event.to),
            result.message_id,
        )
        self._log_delivery(event, DeliveryStatus.sent, message_id=result.message_id)
        self._outcome("sent")
        return result

    def on_sent(self, event: NotificationEvent) -> None:
        self.ledger.record(event.user_id, event.category, event.event_type)
        context = event.status_context
        if context is not None and event.application_id and self._marker_sink is not None:
            self._marker_sink(event.application_id, context.candidate_status, self._clock())

    def _compose(self, event: NotificationEvent) -> EmailMessage:
        html = event.html
        text = event.text
        footer = None
        if self._footer_builder is not None:
            try:
                footer = self._footer_builder(event)
            except Exception:
                logger.exception("email_footer_failed user_id=%s", event.user_id)
        if footer is not None:
            html = html + footer.html if html else html
            text = text + footer.text if text else text
        return EmailMessage(
            to=list(event.to),
            subject=event.subject,
            html=html,
            text=text,
            tags=dict(event.tags),
        )

    def _log_delivery(
        self,
        event: NotificationEvent,
        status: DeliveryStatus,
        *,
        reason: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        if self._delivery_log is None:
            return
        try:
            self._delivery_log(event=event, status=status, reason=reason, message_id=message_id)
        except Exception:
            logger.exception("delivery_log_failed application_id=%s", event.application_id)

    def _outcome(self, outcome: str) -> None:
        if self._on_outcome is not None:
            self._on_outcome(outcome)
