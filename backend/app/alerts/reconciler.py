"""
reconciler.py — SMS delivery receipts → alert state.

The SMS provider posts a status callback for every state change of a
message it accepted. Receipts are matched to alerts on sms.sid:

    no match            acknowledged, nothing changes (the receipt may
                        beat the sid write, or belong to a contact SMS)
    match               sms.status / error fields / updated_at written
    match + terminal    fallback SMS via DispatchOrchestrator, at most
    failure             once per alert (atomic fallback_sent claim)

refresh_from_provider() polls the provider for an alert's operator SMS
and runs the answer through the same path, for when callbacks cannot
reach the service.

Duplicate receipts are harmless: field writes are idempotent and only
the first terminal-failure receipt wins the fallback claim.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.alerts.dispatcher import DispatchOrchestrator
from backend.app.alerts.models import TERMINAL_FAILURE_STATUSES
from backend.app.alerts.store import AlertStore
from backend.app.core.logging_config import bind_context

logger = logging.getLogger(__name__)


@dataclass
class ReceiptAck:
    message_id: Optional[str]
    matched: bool = False
    alert_id: Optional[str] = None
    status: Optional[str] = None
    fallback_triggered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "matched": self.matched,
            "alert_id": self.alert_id,
            "status": self.status,
            "fallback_triggered": self.fallback_triggered,
        }


def parse_error_code(raw: Any) -> Optional[int]:
    """Provider error codes arrive as form strings; blank means none."""
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric SMS error code %r", raw)
        return None


class DeliveryStatusReconciler:
    def __init__(self, store: AlertStore, orchestrator: DispatchOrchestrator):
        self.store = store
        self.orchestrator = orchestrator

    async def on_delivery_receipt(
        self,
        message_id: Optional[str],
        status: Optional[str],
        error_code: Any = None,
        error_message: Optional[str] = None,
    ) -> ReceiptAck:
        ack = ReceiptAck(message_id=message_id, status=status)
        if not message_id:
            logger.info("SMS receipt without MessageSid ignored")
            return ack

        alert = await self.store.find_alert_by_sms_sid(message_id)
        if alert is None:
            logger.info("No alert found with sms.sid %s", message_id)
            return ack

        alert = await self.store.update_sms(
            alert.id,
            status=status,
            error_code=parse_error_code(error_code),
            error_message=error_message or None,
            updated_at=datetime.now(timezone.utc),
        )
        ack.matched = True
        ack.alert_id = alert.id
        bind_context(alert_id=alert.id)
        logger.info(
            "Alert %s SMS %s → %s", alert.id, message_id, status,
            extra={"alert_id": alert.id, "message_sid": message_id,
                   "sms_status": status},
        )

        if (status or "").lower() in TERMINAL_FAILURE_STATUSES and not alert.sms.fallback_sent:
            ack.fallback_triggered = await self.orchestrator.send_operator_fallback(alert)
        return ack

    async def refresh_from_provider(self, alert_id: str) -> Optional[ReceiptAck]:
        """
        Poll the SMS provider for the operator message of `alert_id` and
        apply the answer exactly like a status callback.

        Returns None if the alert does not exist, and an unmatched ack if
        no operator SMS was accepted for it. Provider errors propagate as
        ChannelSendFailure.
        """
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            return None
        sid = alert.sms.sid
        if not sid:
            logger.info("Alert %s has no operator SMS to refresh", alert.id)
            return ReceiptAck(message_id=None, alert_id=alert.id)

        result = await self.orchestrator.sms.fetch(sid)
        logger.info(
            "Polled SMS %s for alert %s: %s", sid, alert.id, result.status,
            extra={"alert_id": alert.id, "message_sid": sid,
                   "sms_status": result.status},
        )
        return await self.on_delivery_receipt(
            sid, result.status, result.error_code, result.error_message,
        )
