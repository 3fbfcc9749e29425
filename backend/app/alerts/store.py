"""
store.py — Record store used by the alert pipeline.

The pipeline treats persistence as a key-addressed record store with
query-by-field capability. `AlertStore` is that contract; two
implementations exist:

    InMemoryStore    (this module)   default, development and tests
    SqlAlchemyStore  (sql_store.py)  STORE_BACKEND=sql

Concurrency contract
--------------------
    update_sms()      read-modify-write of the named sms fields only,
                      under per-alert mutual exclusion
    claim_fallback()  atomic check-and-set of sms.fallback_sent;
                      returns True for exactly one caller per alert

Records handed out are copies: mutating a returned Alert never changes
stored state, every write goes through the store.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backend.app.alerts.models import (
    Alert,
    DeviceRegistration,
    EmergencyContact,
    GeoPoint,
    LastLocation,
    SMS_UPDATABLE_FIELDS,
    UserRecord,
    is_canonical_id,
    new_canonical_id,
)
from backend.app.core.errors import NotFoundError

logger = logging.getLogger(__name__)

ALERT_LIST_LIMIT = 200


def _check_sms_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - SMS_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Not updatable sms field(s): {sorted(unknown)}")


class AlertStore(abc.ABC):
    """Persistence contract for alerts, users and emergency contacts."""

    # ── Alerts ──

    @abc.abstractmethod
    async def create_alert(self, alert: Alert) -> Alert:
        ...

    @abc.abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        ...

    @abc.abstractmethod
    async def list_alerts(self, limit: int = ALERT_LIST_LIMIT) -> List[Alert]:
        """Most recent alerts first."""

    @abc.abstractmethod
    async def find_alert_by_sms_sid(self, sid: str) -> Optional[Alert]:
        ...

    @abc.abstractmethod
    async def update_sms(self, alert_id: str, **fields: Any) -> Alert:
        """Merge `fields` into alert.sms under the alert's lock."""

    @abc.abstractmethod
    async def claim_fallback(self, alert_id: str) -> bool:
        """Set sms.fallback_sent if still false; True if this call set it."""

    # ── Users / presence ──

    @abc.abstractmethod
    async def add_user(self, user: UserRecord) -> UserRecord:
        ...

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        """Lookup by canonical id."""

    @abc.abstractmethod
    async def find_user_by_legacy_id(self, legacy_id: str) -> Optional[UserRecord]:
        ...

    @abc.abstractmethod
    async def upsert_presence(
        self,
        user_id: str,
        *,
        device_token: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> UserRecord:
        """
        Record a device token and/or last location for a user.

        A canonical id updates that user if it exists; anything else is
        treated as a legacy id and upserted on it.
        """

    @abc.abstractmethod
    async def list_located_devices(self) -> List[DeviceRegistration]:
        """Users that have both a last location and a device token."""

    # ── Emergency contacts ──

    @abc.abstractmethod
    async def add_contact(self, user_id: str, name: str, phone: str) -> EmergencyContact:
        ...

    @abc.abstractmethod
    async def list_contacts(self, user_id: str) -> List[EmergencyContact]:
        """Contacts owned by a canonical user id."""

    async def close(self) -> None:
        """Release resources (no-op by default)."""


# ═══════════════════════════════════════════════════════════════════════════
# In-Memory Store
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryStore(AlertStore):
    """Dict-backed store; one asyncio.Lock per alert for sms writes."""

    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}
        self._users: Dict[str, UserRecord] = {}
        self._contacts: Dict[str, EmergencyContact] = {}
        self._alert_locks: Dict[str, asyncio.Lock] = {}
        self._users_lock = asyncio.Lock()

    def _lock_for(self, alert_id: str) -> asyncio.Lock:
        lock = self._alert_locks.get(alert_id)
        if lock is None:
            lock = self._alert_locks[alert_id] = asyncio.Lock()
        return lock

    # ── Alerts ──

    async def create_alert(self, alert: Alert) -> Alert:
        self._alerts[alert.id] = copy.deepcopy(alert)
        return copy.deepcopy(alert)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return copy.deepcopy(alert) if alert else None

    async def list_alerts(self, limit: int = ALERT_LIST_LIMIT) -> List[Alert]:
        alerts = sorted(
            self._alerts.values(), key=lambda a: a.created_at, reverse=True,
        )
        return [copy.deepcopy(a) for a in alerts[:limit]]

    async def find_alert_by_sms_sid(self, sid: str) -> Optional[Alert]:
        for alert in self._alerts.values():
            if alert.sms.sid is not None and alert.sms.sid == sid:
                return copy.deepcopy(alert)
        return None

    async def update_sms(self, alert_id: str, **fields: Any) -> Alert:
        _check_sms_fields(fields)
        async with self._lock_for(alert_id):
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            for name, value in fields.items():
                setattr(alert.sms, name, value)
            return copy.deepcopy(alert)

    async def claim_fallback(self, alert_id: str) -> bool:
        async with self._lock_for(alert_id):
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            if alert.sms.fallback_sent:
                return False
            alert.sms.fallback_sent = True
            alert.sms.updated_at = datetime.now(timezone.utc)
            return True

    # ── Users / presence ──

    async def add_user(self, user: UserRecord) -> UserRecord:
        self._users[user.id] = copy.deepcopy(user)
        return copy.deepcopy(user)

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    def _find_legacy(self, legacy_id: str) -> Optional[UserRecord]:
        for user in self._users.values():
            if user.legacy_id is not None and user.legacy_id == legacy_id:
                return user
        return None

    async def find_user_by_legacy_id(self, legacy_id: str) -> Optional[UserRecord]:
        user = self._find_legacy(legacy_id)
        return copy.deepcopy(user) if user else None

    async def upsert_presence(
        self,
        user_id: str,
        *,
        device_token: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> UserRecord:
        async with self._users_lock:
            user = self._users.get(user_id) if is_canonical_id(user_id) else None
            if user is None:
                user = self._find_legacy(user_id)
            if user is None:
                user = UserRecord(id=new_canonical_id(), legacy_id=user_id)
                self._users[user.id] = user
                logger.info("Presence upsert created user for %s", user_id)

            if device_token is not None:
                user.device_token = device_token
            if location is not None:
                user.last_location = LastLocation(
                    latitude=location.latitude,
                    longitude=location.longitude,
                )
            return copy.deepcopy(user)

    async def list_located_devices(self) -> List[DeviceRegistration]:
        return [
            DeviceRegistration(
                user_id=u.id,
                legacy_user_id=u.legacy_id,
                device_token=u.device_token,
                last_location=copy.deepcopy(u.last_location),
            )
            for u in self._users.values()
            if u.last_location is not None and u.device_token is not None
        ]

    # ── Emergency contacts ──

    async def add_contact(self, user_id: str, name: str, phone: str) -> EmergencyContact:
        contact = EmergencyContact(
            id=new_canonical_id(), user_id=user_id, name=name, phone=phone,
        )
        self._contacts[contact.id] = contact
        return contact

    async def list_contacts(self, user_id: str) -> List[EmergencyContact]:
        return [c for c in self._contacts.values() if c.user_id == user_id]
