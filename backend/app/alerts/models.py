"""
models.py — Shared data structures for the alert pipeline.

Defines:
    • AlertChannel      — the four fan-out channels
    • DeliveryStatus    — per-channel outcome states
    • GeoPoint / LastLocation
    • SmsDelivery       — operator-SMS delivery metadata on an alert
    • Alert             — the persisted SOS event
    • UserRecord        — owning user (canonical + legacy ids, presence)
    • DeviceRegistration — projection used by the proximity selector
    • EmergencyContact
    • ChannelOutcome / DispatchReport — structured background results

═══════════════════════════════════════════════════════════════════════════
IDENTIFIERS
═══════════════════════════════════════════════════════════════════════════

Users are addressed two ways:

    canonical id   32 lowercase hex chars, assigned by the store
    legacy id      any other opaque string ("HUZAIFA001"), chosen by
                   the mobile client before accounts existed

Alerts keep whatever `user_id` the caller supplied; resolution to the
canonical form happens only where contacts are looked up.

═══════════════════════════════════════════════════════════════════════════
SMS STATE
═══════════════════════════════════════════════════════════════════════════

`Alert.sms` is written by two independent flows: the operator-SMS
channel right after its send, and the delivery-receipt reconciler.
Stores apply these writes field-by-field under a per-alert lock, and
`fallback_sent` only ever moves false → true through an atomic claim.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertChannel(str, Enum):
    """Fan-out channels started for every persisted alert."""
    EMAIL        = "email"
    OPERATOR_SMS = "operator_sms"
    CONTACT_SMS  = "contact_sms"
    PUSH         = "push"


class DeliveryStatus(str, Enum):
    """Outcome of one channel for one alert."""
    PENDING   = "pending"     # not started yet
    DELIVERED = "delivered"   # provider accepted every send
    PARTIAL   = "partial"     # some recipients failed
    FAILED    = "failed"      # nothing accepted
    SKIPPED   = "skipped"     # no recipients / not configured


# Provider statuses that end a message's life without delivery
TERMINAL_FAILURE_STATUSES = frozenset({"failed", "undelivered"})


# ═══════════════════════════════════════════════════════════════════════════
# Identifiers
# ═══════════════════════════════════════════════════════════════════════════

_CANONICAL_ID = re.compile(r"[0-9a-f]{32}")


def new_canonical_id() -> str:
    return uuid.uuid4().hex


def is_canonical_id(value: Any) -> bool:
    """True if `value` is a well-formed canonical user/contact id."""
    return isinstance(value, str) and _CANONICAL_ID.fullmatch(value) is not None


def _generate_alert_id() -> str:
    return f"ALR-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass
class LastLocation:
    """Last reported position of a device."""
    latitude: Any
    longitude: Any
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class SmsDelivery:
    """
    Operator-SMS metadata stored on an alert.

    Attributes
    ----------
    sid : str | None
        Provider message id; receipts are matched on this.
    status : str | None
        Last known provider status ("queued", "sent", "delivered",
        "failed", "undelivered", ...).
    fallback_sent : bool
        Whether the minimal fallback SMS has been claimed for this alert.
    """
    sid: Optional[str] = None
    status: Optional[str] = None
    to: Optional[str] = None
    from_: Optional[str] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    updated_at: Optional[datetime] = None
    fallback_sent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sid": self.sid,
            "status": self.status,
            "to": self.to,
            "from": self.from_,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "updated_at": _iso(self.updated_at),
            "fallback_sent": self.fallback_sent,
        }


# Fields of SmsDelivery that ordinary updates may touch; fallback_sent is
# only changed through AlertStore.claim_fallback().
SMS_UPDATABLE_FIELDS = frozenset(
    {"sid", "status", "to", "from_", "error_code", "error_message", "updated_at"}
)


@dataclass
class Alert:
    """A persisted SOS / fall event."""
    user_id: str
    location: GeoPoint
    message: str
    id: str = field(default_factory=_generate_alert_id)
    created_at: datetime = field(default_factory=_now)
    sms: SmsDelivery = field(default_factory=SmsDelivery)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "location": self.location.to_dict(),
            "message": self.message,
            "created_at": _iso(self.created_at),
            "sms": self.sms.to_dict(),
        }


@dataclass
class UserRecord:
    """
    Owning user as seen by the pipeline.

    Account management lives elsewhere; this record only carries what
    contact resolution and proximity selection need.
    """
    id: str = field(default_factory=new_canonical_id)
    legacy_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    device_token: Optional[str] = None
    last_location: Optional[LastLocation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.legacy_id,
            "name": self.name,
            "email": self.email,
            "device_token": self.device_token,
            "last_location": (
                self.last_location.to_dict() if self.last_location else None
            ),
        }


@dataclass(frozen=True)
class DeviceRegistration:
    """A device with a last-known location, as scanned by proximity."""
    user_id: str
    legacy_user_id: Optional[str]
    device_token: Optional[str]
    last_location: Optional[LastLocation]


@dataclass(frozen=True)
class EmergencyContact:
    id: str
    user_id: str  # canonical id of the owning user
    name: str
    phone: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "phone": self.phone,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Dispatch results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RecipientResult:
    """Outcome of one provider call inside a channel."""
    recipient: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "success": self.success,
            "message_id": self.message_id,
            "error": self.error,
        }


@dataclass
class ChannelOutcome:
    """Structured result of one channel for one alert."""
    channel: AlertChannel
    status: DeliveryStatus = DeliveryStatus.PENDING
    recipients: List[RecipientResult] = field(default_factory=list)
    fallback_sent: bool = False
    error: Optional[str] = None
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def attempted(self) -> int:
        return len(self.recipients)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.recipients if r.success)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    def settle(self) -> "ChannelOutcome":
        """Derive the status from recipient results (unless already final)."""
        if self.status == DeliveryStatus.PENDING:
            if not self.recipients:
                self.status = DeliveryStatus.SKIPPED
            elif self.failed == 0:
                self.status = DeliveryStatus.DELIVERED
            elif self.succeeded == 0:
                self.status = DeliveryStatus.FAILED
            else:
                self.status = DeliveryStatus.PARTIAL
        self.completed_at = _now()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "status": self.status.value,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "fallback_sent": self.fallback_sent,
            "error": self.error,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "recipients": [r.to_dict() for r in self.recipients],
        }


@dataclass
class DispatchReport:
    """All channel outcomes for one alert."""
    alert_id: str
    outcomes: Dict[AlertChannel, ChannelOutcome] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    def outcome(self, channel: AlertChannel) -> ChannelOutcome:
        return self.outcomes[channel]

    @property
    def any_delivered(self) -> bool:
        return any(
            o.status in (DeliveryStatus.DELIVERED, DeliveryStatus.PARTIAL)
            for o in self.outcomes.values()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "any_delivered": self.any_delivered,
            "channels": {
                ch.value: o.to_dict() for ch, o in self.outcomes.items()
            },
        }
