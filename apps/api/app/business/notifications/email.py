"""Transactional email delivery.

``HttpEmailClient`` talks to a Brevo-style ``/v3/smtp/email`` endpoint. Without an API key the
process falls back to ``RecordingEmailClient`` so local runs never leave the machine.
"""

from __future__ import annotations

import html as html_module
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import httpx

from app.core.config import Settings, get_settings
from app.core.errors import DeliveryError


logger = logging.getLogger("app.notifications.email")


@dataclass(frozen=True, slots=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


class EmailClient(Protocol):
    def send(self, message: EmailMessage) -> None: ...


class HttpEmailClient:
    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        sender: str,
        sender_name: str,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.sender_name = sender_name
        self.timeout = timeout
        self.transport = transport

    def send(self, message: EmailMessage) -> None:
        payload = {
            "sender": {"email": self.sender, "name": self.sender_name},
            "to": [{"email": message.to}],
            "subject": message.subject,
            "htmlContent": message.html,
            "textContent": message.text,
        }
        headers = {"api-key": self.api_key, "Content-Type": "application/json", "Accept": "application/json"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"email delivery failed: {type(exc).__name__}") from exc
        if response.status_code >= 300:
            raise DeliveryError(
                f"email provider returned {response.status_code}",
                details={"status_code": response.status_code},
            )


class RecordingEmailClient:
    """Keeps messages in memory instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> None:
        self.sent.append(message)
        logger.info("email.recorded", extra={"status": "recorded"})


def build_email_client(settings: Settings) -> EmailClient:
    if not settings.email_api_key:
        return RecordingEmailClient()
    return HttpEmailClient(
        api_url=settings.email_api_url,
        api_key=settings.email_api_key,
        sender=settings.email_sender,
        sender_name=settings.email_sender_name,
        timeout=settings.email_timeout_seconds,
    )


@lru_cache
def get_email_client() -> EmailClient:
    return build_email_client(get_settings())


def render_email_body(title: str, message: str, link: str | None = None) -> tuple[str, str]:
    """Return ``(html, text)`` bodies for a single notification."""
    parts = [f"<h2>{html_module.escape(title)}</h2>", f"<p>{html_module.escape(message)}</p>"]
    text = f"{title}\n\n{message}"
    if link:
        parts.append(f'<p><a href="{html_module.escape(link, quote=True)}">Open in Pipeline</a></p>')
        text += f"\n\n{link}"
    return "".join(parts), text
