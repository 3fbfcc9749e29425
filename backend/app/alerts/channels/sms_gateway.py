"""
sms_gateway.py — SMS delivery via provider integration.

Delivery mechanism:
    • Primary: Twilio REST API (twilio-python client)
    • Delivery confirmation via status-callback webhook (POST /sms-status)
      or on-demand fetch of the message resource
    • Default: simulation mode for development

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    App  →  messages.create  →  Twilio  →  Carrier  →  Handset
                  │
                  └── StatusCallback webhook (queued → sent → delivered
                                              or failed / undelivered)

    Provider interface:
        send(SmsMessage)  → SmsResult {sid, status, to, from, error_code, error_message}
        fetch(sid)        → SmsResult

The twilio client is blocking, so calls run in a worker thread via
asyncio.to_thread; they never block the event loop or sibling channels.

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATING
═══════════════════════════════════════════════════════════════════════════

    Operator SMS (short; details go out by email / app):
        "🚨 Emergency Alert: {userId} — Check email/app for details."

    Contact SMS:
        "🚨 Emergency Alert: Your contact triggered an SOS.
         Location: {lat}, {lon}. Open the app for details."
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from backend.app.alerts.models import Alert, TERMINAL_FAILURE_STATUSES
from backend.app.core.errors import ChannelSendFailure, ProviderConfigError
from backend.app.core.logging_config import mask_phone

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Message / result shapes
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SmsMessage:
    to: str
    from_: Optional[str]
    body: str
    status_callback: Optional[str] = None


@dataclass
class SmsResult:
    """Provider view of one message, as returned by send() and fetch()."""
    sid: Optional[str]
    status: Optional[str]
    to: Optional[str] = None
    from_: Optional[str] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def reports_failure(self) -> bool:
        """True if the synchronous response already signals failure."""
        return (
            (self.status or "").lower() in TERMINAL_FAILURE_STATUSES
            or self.error_code is not None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sid": self.sid,
            "status": self.status,
            "to": self.to,
            "from": self.from_,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════════════════

def format_operator_sms(alert: Alert) -> str:
    """Short operator notice; the full alert goes out by email."""
    return f"🚨 Emergency Alert: {alert.user_id} — Check email/app for details."


def format_contact_sms(alert: Alert) -> str:
    loc = alert.location
    if loc is not None:
        where = f"{loc.latitude}, {loc.longitude}"
    else:
        where = "(unknown)"
    return (
        "🚨 Emergency Alert: Your contact triggered an SOS. "
        f"Location: {where}. Open the app for details."
    )


# ═══════════════════════════════════════════════════════════════════════════
# Providers
# ═══════════════════════════════════════════════════════════════════════════

class SmsProvider(abc.ABC):
    """SMS provider capability injected into the dispatch orchestrator."""

    name = "sms"

    @abc.abstractmethod
    async def send(self, message: SmsMessage) -> SmsResult:
        """Submit one message; raises ChannelSendFailure if the call fails."""

    @abc.abstractmethod
    async def fetch(self, sid: str) -> SmsResult:
        ...

    async def close(self) -> None:
        pass


def _result_from_twilio(msg: Any) -> SmsResult:
    error_code = getattr(msg, "error_code", None)
    return SmsResult(
        sid=msg.sid,
        status=msg.status,
        to=msg.to,
        from_=getattr(msg, "from_", None),
        error_code=int(error_code) if error_code is not None else None,
        error_message=getattr(msg, "error_message", None),
    )


class TwilioSmsProvider(SmsProvider):
    """Twilio Programmable Messaging."""

    name = "twilio"

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        *,
        timeout_seconds: float = 15.0,
    ):
        missing = [
            key for key, val in (
                ("TWILIO_ACCOUNT_SID", account_sid),
                ("TWILIO_AUTH_TOKEN", auth_token),
            )
            if not val
        ]
        if missing:
            raise ProviderConfigError("twilio", ", ".join(missing))

        self._client = TwilioClient(
            account_sid,
            auth_token,
            http_client=TwilioHttpClient(timeout=timeout_seconds),
        )
        logger.info("Twilio client ready | SID=%s...", account_sid[:5])

    def _create(self, message: SmsMessage) -> SmsResult:
        kwargs: Dict[str, Any] = {
            "body": message.body,
            "from_": message.from_,
            "to": message.to,
        }
        if message.status_callback:
            kwargs["status_callback"] = message.status_callback
        return _result_from_twilio(self._client.messages.create(**kwargs))

    async def send(self, message: SmsMessage) -> SmsResult:
        try:
            return await asyncio.to_thread(self._create, message)
        except TwilioRestException as exc:
            raise ChannelSendFailure(
                "sms", exc.msg, to=message.to, provider_code=exc.code,
            ) from exc
        except Exception as exc:
            raise ChannelSendFailure("sms", str(exc), to=message.to) from exc

    async def fetch(self, sid: str) -> SmsResult:
        try:
            msg = await asyncio.to_thread(lambda: self._client.messages(sid).fetch())
        except TwilioRestException as exc:
            raise ChannelSendFailure("sms", exc.msg, sid=sid) from exc
        return _result_from_twilio(msg)


class SimulatedSmsProvider(SmsProvider):
    """Logs instead of sending; every message is accepted as 'queued'."""

    name = "simulation"

    def __init__(self) -> None:
        self.sent: List[SmsMessage] = []
        self._results: Dict[str, SmsResult] = {}

    async def send(self, message: SmsMessage) -> SmsResult:
        sid = f"SM{uuid.uuid4().hex}"
        logger.info(
            "[SMS] → %s: %d chars → '%s'",
            mask_phone(message.to),
            len(message.body),
            message.body[:80] + ("..." if len(message.body) > 80 else ""),
        )
        self.sent.append(message)
        result = SmsResult(sid=sid, status="queued", to=message.to, from_=message.from_)
        self._results[sid] = result
        return result

    async def fetch(self, sid: str) -> SmsResult:
        result = self._results.get(sid)
        if result is None:
            raise ChannelSendFailure("sms", "unknown message", sid=sid)
        return result
