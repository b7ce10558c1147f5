from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, Optional, Protocol
from urllib import error, request
from uuid import uuid4

if TYPE_CHECKING:
    from backend.app.settings import Settings

logger = logging.getLogger("ats_notify.transport")

RESEND_API_URL = "https://api.resend.com/emails"


class DeliveryError(Exception):
    pass


@dataclass(frozen=True)
class EmailMessage:
    to: list[str]
    subject: str
    html: Optional[str] = None
    text: Optional[str] = None
    sender: Optional[str] = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailTransport(Protocol):
    def send(self, message: EmailMessage) -> DeliveryResult: ...


class InMemoryTransport:
    def __init__(self, *, fail_with: Optional[str] = None) -> None:
        self._lock = Lock()
        self.outbox: list[EmailMessage] = []
        self.fail_with = fail_with

    def send(self, message: EmailMessage) -> DeliveryResult:
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        with self._lock:
            self.outbox.append(message)
        return DeliveryResult(success=True, message_id=f"mem_{uuid4().hex[:12]}")


class ResendTransport:
    def __init__(
        self,
        *,
        api_key: str,
        default_sender: str,
        timeout_seconds: int = 8,
        api_url: str = RESEND_API_URL,
    ) -> None:
        self.api_key = api_key
        self.default_sender = default_sender
        self.timeout_seconds = timeout_seconds
        self.api_url = api_url

    def send(self, message: EmailMessage) -> DeliveryResult:
        if not message.html and not message.text:
            return DeliveryResult(success=False, error="Either html or text content is required.")
        payload: dict = {
            "from": message.sender or self.default_sender,
            "to": message.to,
            "subject": message.subject,
        }
        if message.html:
            payload["html"] = message.html
        if message.text:
            payload["text"] = message.text
        if message.tags:
            payload["tags"] = [{"name": key, "value": value} for key, value in message.tags.items()]

        req = request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            return DeliveryResult(success=False, error=f"resend http {exc.code}: {detail[:200]}")
        except error.URLError as exc:
            raise DeliveryError("resend request failed") from exc

        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as exc:
            raise DeliveryError("resend response was not valid json") from exc
        return DeliveryResult(success=True, message_id=decoded.get("id"))


class DisabledTransport:
    def __init__(self, detail: str) -> None:
        self.detail = detail

    def send(self, message: EmailMessage) -> DeliveryResult:
        return DeliveryResult(success=False, error=self.detail)


def build_transport(settings: "Settings") -> EmailTransport:
    if settings.email_transport == "resend":
        api_key = settings.resend_api_key
        if not api_key:
            logger.warning("resend_api_key_missing email_delivery=disabled")
            return DisabledTransport(
                "Email service is not configured. Set RESEND_API_KEY to enable delivery."
            )
        if not api_key.startswith("re_"):
            logger.error("resend_api_key_invalid email_delivery=disabled")
            return DisabledTransport("RESEND_API_KEY appears to be invalid.")
        return ResendTransport(
            api_key=api_key,
            default_sender=settings.email_from,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return InMemoryTransport()
