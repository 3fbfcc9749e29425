"""
dispatcher.py — Fan-out of a persisted alert across notification channels.

This is the central coordinator that:
    1. Receives a freshly persisted Alert from ingestion
    2. Starts the four channels concurrently
    3. Sends the operator-SMS fallback when the primary fails
    4. Writes operator-SMS metadata back onto the alert
    5. Produces a DispatchReport with one ChannelOutcome per channel

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

                      ┌─────────────────────┐
                      │   Persisted Alert   │
                      └─────────┬───────────┘
          ┌───────────────┬─────┴─────────┬────────────────┐
          ▼               ▼               ▼                ▼
    ┌──────────┐   ┌─────────────┐  ┌─────────────┐  ┌────────────┐
    │  Email   │   │ Operator    │  │ Contact SMS │  │ Push       │
    │ receivers│   │ SMS         │  │ (resolver)  │  │ (proximity)│
    └──────────┘   └──────┬──────┘  └─────────────┘  └────────────┘
                          │ failed / error code / exception
                          ▼
                   ┌─────────────┐
                   │ Fallback SMS│  claim fallback_sent, then send
                   └─────────────┘

Each channel runs in its own coroutine under one asyncio.gather. A
channel's exception is caught by its wrapper and recorded as a FAILED
outcome, so no channel can cancel or delay a sibling. There is no
ordering across channels; the only sequential step is operator SMS →
its own fallback.

═══════════════════════════════════════════════════════════════════════════
REDUNDANCY STRATEGY
═══════════════════════════════════════════════════════════════════════════

    Channel          On failure
    ──────────       ──────────────────────────────────────────
    Email            logged; never retried
    Operator SMS     minimal fallback SMS, at most once per alert
    Contact SMS      per-recipient result recorded; others proceed
    Push             per-chunk / per-ticket result recorded

No channel retries. The fallback is the single redundancy path and is
shared with the delivery-status reconciler, which may trigger it later
from a `failed` / `undelivered` receipt. Both paths go through
send_operator_fallback(), whose atomic claim on sms.fallback_sent keeps
the fallback at-most-once even when they race.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional, Tuple

from backend.app.alerts.channels.email_alert import EmailProvider, build_email
from backend.app.alerts.channels.push import PushProvider, is_expo_push_token
from backend.app.alerts.channels.sms_fallback import build_fallback_message
from backend.app.alerts.channels.sms_gateway import (
    SmsMessage,
    SmsProvider,
    format_contact_sms,
    format_operator_sms,
)
from backend.app.alerts.contacts import ContactResolver
from backend.app.alerts.models import (
    Alert,
    AlertChannel,
    ChannelOutcome,
    DeliveryStatus,
    DispatchReport,
    RecipientResult,
)
from backend.app.alerts.proximity import DEFAULT_RADIUS_METERS, ProximitySelector
from backend.app.alerts.store import ALERT_LIST_LIMIT, AlertStore
from backend.app.core.logging_config import mask_phone

logger = logging.getLogger(__name__)

PUSH_TITLE = "🚨 Emergency Nearby"
PUSH_BODY = "Someone nearby triggered an SOS. Open the app for details."


# ═══════════════════════════════════════════════════════════════════════════
# Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DispatchConfig:
    """Static routing data, built once at startup."""
    operator_number: Optional[str] = None
    sender_number: Optional[str] = None
    status_callback_url: Optional[str] = None
    email_recipients: Tuple[str, ...] = ()
    radius_meters: float = DEFAULT_RADIUS_METERS
    push_title: str = PUSH_TITLE
    push_body: str = PUSH_BODY

    @classmethod
    def from_settings(cls, settings) -> "DispatchConfig":
        return cls(
            operator_number=settings.ALERT_SMS_RECEIVER,
            sender_number=settings.TWILIO_FROM,
            status_callback_url=settings.TWILIO_STATUS_CALLBACK,
            email_recipients=tuple(settings.alert_receivers),
            radius_meters=settings.RADIUS_METERS,
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════

class DispatchOrchestrator:
    """
    Drives delivery of one alert across all channels.

    Providers are injected; nothing is looked up at call time. Reports
    of the last `report_limit` dispatches are kept in memory for inspection.

    Usage:
        orchestrator = DispatchOrchestrator(store, sms, email, push, config)
        report = await orchestrator.dispatch(alert)
    """

    def __init__(
        self,
        store: AlertStore,
        sms: SmsProvider,
        email: EmailProvider,
        push: PushProvider,
        config: Optional[DispatchConfig] = None,
        *,
        contacts: Optional[ContactResolver] = None,
        proximity: Optional[ProximitySelector] = None,
        report_limit: int = ALERT_LIST_LIMIT,
    ):
        self.store = store
        self.sms = sms
        self.email = email
        self.push = push
        self.config = config or DispatchConfig()
        self.contacts = contacts or ContactResolver(store)
        self.proximity = proximity or ProximitySelector(
            store, self.config.radius_meters,
        )
        self.report_limit = report_limit
        self._reports: OrderedDict[str, DispatchReport] = OrderedDict()

    def get_report(self, alert_id: str) -> Optional[DispatchReport]:
        return self._reports.get(alert_id)

    def _remember(self, report: DispatchReport) -> None:
        self._reports[report.alert_id] = report
        self._reports.move_to_end(report.alert_id)
        while len(self._reports) > self.report_limit:
            self._reports.popitem(last=False)

    # ── Entry point ──

    async def dispatch(self, alert: Alert) -> DispatchReport:
        """Run every channel for `alert` and wait for all of them."""
        channels: Dict[AlertChannel, Callable[[Alert], Awaitable[ChannelOutcome]]] = {
            AlertChannel.EMAIL: self.send_email,
            AlertChannel.OPERATOR_SMS: self.send_operator_sms,
            AlertChannel.CONTACT_SMS: self.send_contact_sms,
            AlertChannel.PUSH: self.send_push,
        }
        report = DispatchReport(
            alert_id=alert.id,
            outcomes={ch: ChannelOutcome(channel=ch) for ch in channels},
        )
        self._remember(report)

        logger.info(
            "Dispatching alert %s for user %s", alert.id, alert.user_id,
            extra={"alert_id": alert.id, "user_id": alert.user_id},
        )
        start = time.perf_counter()

        outcomes = await asyncio.gather(*(
            self._run_channel(ch, fn, alert) for ch, fn in channels.items()
        ))
        for outcome in outcomes:
            report.outcomes[outcome.channel] = outcome
        report.completed_at = _now()

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Alert %s dispatch complete (%.1fms): %s",
            alert.id, duration_ms,
            ", ".join(f"{o.channel.value}={o.status.value}" for o in outcomes),
            extra={"alert_id": alert.id, "duration_ms": duration_ms},
        )
        return report

    async def _run_channel(
        self,
        channel: AlertChannel,
        fn: Callable[[Alert], Awaitable[ChannelOutcome]],
        alert: Alert,
    ) -> ChannelOutcome:
        try:
            return await fn(alert)
        except Exception as exc:
            logger.error(
                "Alert %s: %s channel failed: %s", alert.id, channel.value, exc,
                exc_info=True,
                extra={"alert_id": alert.id, "channel": channel.value},
            )
            outcome = ChannelOutcome(
                channel=channel, status=DeliveryStatus.FAILED, error=str(exc),
            )
            return outcome.settle()

    # ── Email ──

    async def send_email(self, alert: Alert) -> ChannelOutcome:
        outcome = ChannelOutcome(channel=AlertChannel.EMAIL)
        recipients = list(self.config.email_recipients)
        if not recipients:
            logger.warning("Alert %s: no email receivers configured", alert.id)
            return outcome.settle()

        await self.email.send(build_email(alert, recipients))
        outcome.recipients = [RecipientResult(r, True) for r in recipients]
        logger.info(
            "📧 Alert %s email sent to %d receiver(s)", alert.id, len(recipients),
            extra={"alert_id": alert.id, "channel": "email",
                   "recipient_count": len(recipients)},
        )
        return outcome.settle()

    # ── Operator SMS (+ fallback) ──

    async def send_operator_sms(self, alert: Alert) -> ChannelOutcome:
        outcome = ChannelOutcome(channel=AlertChannel.OPERATOR_SMS)
        to = self.config.operator_number
        if not to:
            logger.info("Alert %s: no operator SMS receiver configured", alert.id)
            return outcome.settle()

        message = SmsMessage(
            to=to,
            from_=self.config.sender_number,
            body=format_operator_sms(alert),
            status_callback=self.config.status_callback_url,
        )

        try:
            result = await self.sms.send(message)
        except Exception as exc:
            logger.error(
                "Alert %s: operator SMS send failed: %s", alert.id, exc,
                extra={"alert_id": alert.id, "channel": "operator_sms"},
            )
            outcome.recipients.append(RecipientResult(to, False, error=str(exc)))
            alert = await self.store.update_sms(
                alert.id,
                to=to,
                from_=self.config.sender_number,
                status="failed",
                error_message=str(exc),
                updated_at=_now(),
            )
            outcome.fallback_sent = await self.send_operator_fallback(alert)
            return outcome.settle()

        alert = await self.store.update_sms(
            alert.id,
            sid=result.sid,
            status=result.status,
            to=result.to or to,
            from_=result.from_ or self.config.sender_number,
            error_code=result.error_code,
            error_message=result.error_message,
            updated_at=_now(),
        )
        logger.info(
            "Alert %s operator SMS %s (%s)", alert.id, result.sid, result.status,
            extra={"alert_id": alert.id, "message_sid": result.sid,
                   "sms_status": result.status},
        )

        failed = result.reports_failure
        outcome.recipients.append(RecipientResult(
            to,
            not failed,
            message_id=result.sid,
            error=(result.error_message or result.status) if failed else None,
        ))
        if failed:
            outcome.fallback_sent = await self.send_operator_fallback(alert)
        return outcome.settle()

    async def send_operator_fallback(self, alert: Alert) -> bool:
        """
        Send the minimal fallback SMS for `alert` at most once.

        The claim on sms.fallback_sent happens before the send, so of any
        number of concurrent callers exactly one sends. A failed send is
        logged and not retried. Returns True if this call claimed it.
        """
        message = build_fallback_message(
            alert,
            operator_number=self.config.operator_number,
            sender_number=self.config.sender_number,
        )
        if message is None:
            return False

        if not await self.store.claim_fallback(alert.id):
            logger.info("Alert %s: fallback SMS already sent", alert.id)
            return False

        try:
            result = await self.sms.send(message)
        except Exception as exc:
            logger.error(
                "Alert %s: fallback SMS failed: %s", alert.id, exc,
                extra={"alert_id": alert.id, "channel": "operator_sms"},
            )
            return True

        logger.info(
            "Alert %s fallback SMS sent %s to %s",
            alert.id, result.sid, mask_phone(message.to),
            extra={"alert_id": alert.id, "message_sid": result.sid},
        )
        return True

    # ── Contact SMS ──

    async def send_contact_sms(self, alert: Alert) -> ChannelOutcome:
        outcome = ChannelOutcome(channel=AlertChannel.CONTACT_SMS)
        contacts = await self.contacts.resolve_contacts(alert.user_id)
        if not contacts:
            return outcome.settle()

        body = format_contact_sms(alert)
        results = await asyncio.gather(
            *(
                self.sms.send(SmsMessage(
                    to=c.phone,
                    from_=self.config.sender_number,
                    body=body,
                    status_callback=self.config.status_callback_url,
                ))
                for c in contacts
            ),
            return_exceptions=True,
        )

        for contact, result in zip(contacts, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Alert %s: SMS to contact %s failed: %s",
                    alert.id, mask_phone(contact.phone), result,
                    extra={"alert_id": alert.id, "channel": "contact_sms"},
                )
                outcome.recipients.append(
                    RecipientResult(contact.phone, False, error=str(result))
                )
            elif result.reports_failure:
                logger.warning(
                    "Alert %s: SMS to contact %s reported %s",
                    alert.id, mask_phone(contact.phone), result.status,
                )
                outcome.recipients.append(RecipientResult(
                    contact.phone, False, message_id=result.sid,
                    error=result.error_message or result.status,
                ))
            else:
                outcome.recipients.append(
                    RecipientResult(contact.phone, True, message_id=result.sid)
                )

        outcome.settle()
        logger.info(
            "Alert %s contact SMS: %d/%d sent",
            alert.id, outcome.succeeded, outcome.attempted,
            extra={"alert_id": alert.id, "channel": "contact_sms",
                   "recipient_count": outcome.attempted},
        )
        return outcome

    # ── Push ──

    async def send_push(self, alert: Alert) -> ChannelOutcome:
        outcome = ChannelOutcome(channel=AlertChannel.PUSH)
        tokens = await self.proximity.select_nearby_devices(
            alert.location, alert.user_id, self.config.radius_meters,
        )
        valid = [t for t in tokens if is_expo_push_token(t)]
        if not valid:
            logger.info("Alert %s: no nearby device tokens to notify", alert.id)
            return outcome.settle()

        data = {
            "alertId": str(alert.id),
            "latitude": str(alert.location.latitude),
            "longitude": str(alert.location.longitude),
        }
        chunks = await self.push.send(
            valid, self.config.push_title, self.config.push_body, data,
        )

        for chunk in chunks:
            for index, token in enumerate(chunk.tokens):
                if chunk.error:
                    outcome.recipients.append(
                        RecipientResult(token, False, error=chunk.error)
                    )
                    continue
                ticket = chunk.ticket_for(index) or {}
                ok = ticket.get("status") == "ok"
                outcome.recipients.append(RecipientResult(
                    token, ok,
                    message_id=ticket.get("id"),
                    error=None if ok else ticket.get("message", "no ticket"),
                ))

        outcome.settle()
        logger.info(
            "Alert %s push: %d/%d accepted",
            alert.id, outcome.succeeded, outcome.attempted,
            extra={"alert_id": alert.id, "channel": "push",
                   "recipient_count": outcome.attempted},
        )
        return outcome
