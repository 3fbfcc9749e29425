"""
email_alert.py — Email alert delivery channel.

Delivery mechanism:
    • SMTP over implicit TLS (Gmail by default, port 465)
    • multipart/alternative: plain text + HTML with a Google Maps link
    • Best effort: failures are logged by the dispatcher, never retried

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    From:    "AI Student Safety" <SMTP_USER>
    To:      every address in ALERT_RECEIVER
    Subject: 🚨 Emergency Alert: {userId}
    Body:
        ┌─────────────────────────────────────────┐
        │  🚨 Emergency Alert Triggered            │
        │  User:     {userId}                      │
        │  Time:     {createdAt}                   │
        │  Location: {lat}, {lon} — Google Maps    │
        │  Message:  {message}                     │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import abc
import asyncio
import html
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import List, Optional

from backend.app.alerts.models import Alert
from backend.app.core.errors import ChannelSendFailure, ProviderConfigError

logger = logging.getLogger(__name__)

MAPS_URL = "https://www.google.com/maps?q={lat},{lon}"


@dataclass(frozen=True)
class EmailMessage:
    to: List[str]
    subject: str
    text: str
    html: str


# ── Templates ──

def maps_link(alert: Alert) -> str:
    return MAPS_URL.format(lat=alert.location.latitude, lon=alert.location.longitude)


def _created(alert: Alert) -> str:
    return alert.created_at.strftime("%Y-%m-%d %H:%M:%S UTC")


def build_subject(alert: Alert) -> str:
    return f"🚨 Emergency Alert: {alert.user_id}"


def build_plain_body(alert: Alert) -> str:
    loc = alert.location
    return "\n".join([
        "Emergency alert triggered!",
        f"User: {alert.user_id}",
        f"Time: {_created(alert)}",
        f"Location: {loc.latitude}, {loc.longitude}",
        f"Maps: {maps_link(alert)}",
        f"Message: {alert.message or '(no message)'}",
    ])


def build_html_body(alert: Alert) -> str:
    loc = alert.location
    user = html.escape(alert.user_id)
    message = html.escape(alert.message or "(no message)")
    return f"""
    <div style="font-family:Arial,Helvetica,sans-serif;line-height:1.6">
      <h2>🚨 Emergency Alert Triggered</h2>
      <p><b>User:</b> {user}</p>
      <p><b>Time:</b> {_created(alert)}</p>
      <p><b>Location:</b> {loc.latitude}, {loc.longitude} —
        <a href="{maps_link(alert)}" target="_blank">Open in Google Maps</a>
      </p>
      <p><b>Message:</b> {message}</p>
      <hr/>
      <small>AI Student Safety System</small>
    </div>
    """


def build_email(alert: Alert, recipients: List[str]) -> EmailMessage:
    return EmailMessage(
        to=list(recipients),
        subject=build_subject(alert),
        text=build_plain_body(alert),
        html=build_html_body(alert),
    )


# ── Providers ──

class EmailProvider(abc.ABC):
    """Email provider capability injected into the dispatch orchestrator."""

    name = "email"

    @abc.abstractmethod
    async def send(self, message: EmailMessage) -> None:
        """Deliver one message to all its recipients; raises on failure."""

    async def close(self) -> None:
        pass


class SmtpEmailProvider(EmailProvider):
    """SMTP over implicit TLS; smtplib calls run in a worker thread."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        *,
        sender_name: str = "AI Student Safety",
        timeout_seconds: float = 15.0,
    ):
        if not user or not password:
            raise ProviderConfigError("smtp", "SMTP_USER, SMTP_PASSWORD")
        self.host = host
        self.port = port
        self.user = user
        self._password = password
        self.from_address = formataddr((sender_name, user))
        self.timeout_seconds = timeout_seconds

    def _deliver(self, message: EmailMessage) -> None:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = self.from_address
        mime["To"] = ", ".join(message.to)
        mime.attach(MIMEText(message.text, "plain", "utf-8"))
        mime.attach(MIMEText(message.html, "html", "utf-8"))

        context = ssl.create_default_context()
        with smtplib.SMTP_SSL(
            self.host, self.port, timeout=self.timeout_seconds, context=context,
        ) as server:
            server.login(self.user, self._password)
            server.sendmail(self.user, message.to, mime.as_string())

    async def send(self, message: EmailMessage) -> None:
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelSendFailure("email", str(exc), to=message.to) from exc


class SimulatedEmailProvider(EmailProvider):
    name = "simulation"

    def __init__(self) -> None:
        self.sent: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        logger.info(
            "[EMAIL] → %s: Subject='%s'", ", ".join(message.to), message.subject,
        )
        self.sent.append(message)
