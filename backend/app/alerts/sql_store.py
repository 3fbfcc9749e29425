"""
sql_store.py — SQLAlchemy implementation of AlertStore.

Tables
------
    users       canonical id, legacy id (unique), presence columns
    contacts    emergency contacts, FK → users.id
    alerts      SOS events with the operator-SMS metadata flattened
                into sms_* columns (sms_sid indexed for receipt lookup)

Per-alert mutual exclusion comes from the database: sms updates run in
a transaction that locks the row (SELECT ... FOR UPDATE), and the
fallback claim is a single conditional UPDATE whose rowcount says who
won. SQLite ignores FOR UPDATE but serialises writers, which is enough
for tests.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.alerts.models import (
    Alert,
    DeviceRegistration,
    EmergencyContact,
    GeoPoint,
    LastLocation,
    SmsDelivery,
    UserRecord,
    is_canonical_id,
    new_canonical_id,
)
from backend.app.alerts.store import ALERT_LIST_LIMIT, AlertStore, _check_sms_fields
from backend.app.core.database import Base
from backend.app.core.errors import NotFoundError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ORM rows
# ═══════════════════════════════════════════════════════════════════════════

class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    legacy_id: Mapped[Optional[str]] = mapped_column(
        String(128), unique=True, index=True, nullable=True,
    )
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    device_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    last_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_location_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_record(self) -> UserRecord:
        last_location = None
        if self.last_latitude is not None and self.last_longitude is not None:
            last_location = LastLocation(
                latitude=self.last_latitude,
                longitude=self.last_longitude,
                updated_at=self.last_location_at,
            )
        return UserRecord(
            id=self.id,
            legacy_id=self.legacy_id,
            name=self.name,
            email=self.email,
            device_token=self.device_token,
            last_location=last_location,
        )


class ContactRow(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), index=True,
    )
    name: Mapped[str] = mapped_column(String(200))
    phone: Mapped[str] = mapped_column(String(32))

    def to_record(self) -> EmergencyContact:
        return EmergencyContact(
            id=self.id, user_id=self.user_id, name=self.name, phone=self.phone,
        )


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    message: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    sms_sid: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    sms_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sms_to: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sms_from: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    sms_error_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sms_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sms_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    sms_fallback_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertRow":
        return cls(
            id=alert.id,
            user_id=alert.user_id,
            latitude=alert.location.latitude,
            longitude=alert.location.longitude,
            message=alert.message,
            created_at=alert.created_at,
            sms_sid=alert.sms.sid,
            sms_status=alert.sms.status,
            sms_to=alert.sms.to,
            sms_from=alert.sms.from_,
            sms_error_code=alert.sms.error_code,
            sms_error_message=alert.sms.error_message,
            sms_updated_at=alert.sms.updated_at,
            sms_fallback_sent=alert.sms.fallback_sent,
        )

    def to_alert(self) -> Alert:
        return Alert(
            id=self.id,
            user_id=self.user_id,
            location=GeoPoint(self.latitude, self.longitude),
            message=self.message,
            created_at=self.created_at,
            sms=SmsDelivery(
                sid=self.sms_sid,
                status=self.sms_status,
                to=self.sms_to,
                from_=self.sms_from,
                error_code=self.sms_error_code,
                error_message=self.sms_error_message,
                updated_at=self.sms_updated_at,
                fallback_sent=bool(self.sms_fallback_sent),
            ),
        )


# SmsDelivery attribute → AlertRow column
_SMS_COLUMNS = {
    "sid": "sms_sid",
    "status": "sms_status",
    "to": "sms_to",
    "from_": "sms_from",
    "error_code": "sms_error_code",
    "error_message": "sms_error_message",
    "updated_at": "sms_updated_at",
}


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlchemyStore(AlertStore):
    """AlertStore backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    # ── Alerts ──

    async def create_alert(self, alert: Alert) -> Alert:
        async with self._sessions() as session, session.begin():
            session.add(AlertRow.from_alert(alert))
        return alert

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async with self._sessions() as session:
            row = await session.get(AlertRow, alert_id)
            return row.to_alert() if row else None

    async def list_alerts(self, limit: int = ALERT_LIST_LIMIT) -> List[Alert]:
        stmt = select(AlertRow).order_by(AlertRow.created_at.desc()).limit(limit)
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
            return [r.to_alert() for r in rows]

    async def find_alert_by_sms_sid(self, sid: str) -> Optional[Alert]:
        stmt = select(AlertRow).where(AlertRow.sms_sid == sid).limit(1)
        async with self._sessions() as session:
            row = (await session.scalars(stmt)).first()
            return row.to_alert() if row else None

    async def update_sms(self, alert_id: str, **fields: Any) -> Alert:
        _check_sms_fields(fields)
        stmt = select(AlertRow).where(AlertRow.id == alert_id).with_for_update()
        async with self._sessions() as session, session.begin():
            row = (await session.scalars(stmt)).first()
            if row is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            for name, value in fields.items():
                setattr(row, _SMS_COLUMNS[name], value)
            alert = row.to_alert()
        return alert

    async def claim_fallback(self, alert_id: str) -> bool:
        stmt = (
            update(AlertRow)
            .where(AlertRow.id == alert_id, AlertRow.sms_fallback_sent.is_(False))
            .values(sms_fallback_sent=True, sms_updated_at=datetime.now(timezone.utc))
        )
        async with self._sessions() as session, session.begin():
            result = await session.execute(stmt)
            if result.rowcount == 1:
                return True
            if await session.get(AlertRow, alert_id) is None:
                raise NotFoundError("Alert", alert_id=alert_id)
            return False

    # ── Users / presence ──

    async def add_user(self, user: UserRecord) -> UserRecord:
        row = UserRow(
            id=user.id,
            legacy_id=user.legacy_id,
            name=user.name,
            email=user.email,
            device_token=user.device_token,
        )
        if user.last_location is not None:
            row.last_latitude = user.last_location.latitude
            row.last_longitude = user.last_location.longitude
            row.last_location_at = user.last_location.updated_at
        async with self._sessions() as session, session.begin():
            session.add(row)
        return user

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async with self._sessions() as session:
            row = await session.get(UserRow, user_id)
            return row.to_record() if row else None

    async def find_user_by_legacy_id(self, legacy_id: str) -> Optional[UserRecord]:
        stmt = select(UserRow).where(UserRow.legacy_id == legacy_id)
        async with self._sessions() as session:
            row = (await session.scalars(stmt)).first()
            return row.to_record() if row else None

    async def upsert_presence(
        self,
        user_id: str,
        *,
        device_token: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> UserRecord:
        async with self._sessions() as session, session.begin():
            row = None
            if is_canonical_id(user_id):
                row = await session.get(UserRow, user_id, with_for_update=True)
            if row is None:
                stmt = (
                    select(UserRow)
                    .where(UserRow.legacy_id == user_id)
                    .with_for_update()
                )
                row = (await session.scalars(stmt)).first()
            if row is None:
                row = UserRow(id=new_canonical_id(), legacy_id=user_id)
                session.add(row)
                logger.info("Presence upsert created user for %s", user_id)

            if device_token is not None:
                row.device_token = device_token
            if location is not None:
                row.last_latitude = location.latitude
                row.last_longitude = location.longitude
                row.last_location_at = datetime.now(timezone.utc)
            record = row.to_record()
        return record

    async def list_located_devices(self) -> List[DeviceRegistration]:
        stmt = select(UserRow).where(
            UserRow.last_latitude.is_not(None),
            UserRow.last_longitude.is_not(None),
            UserRow.device_token.is_not(None),
        )
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
            return [
                DeviceRegistration(
                    user_id=r.id,
                    legacy_user_id=r.legacy_id,
                    device_token=r.device_token,
                    last_location=r.to_record().last_location,
                )
                for r in rows
            ]

    # ── Emergency contacts ──

    async def add_contact(self, user_id: str, name: str, phone: str) -> EmergencyContact:
        row = ContactRow(id=new_canonical_id(), user_id=user_id, name=name, phone=phone)
        async with self._sessions() as session, session.begin():
            session.add(row)
        return row.to_record()

    async def list_contacts(self, user_id: str) -> List[EmergencyContact]:
        stmt = select(ContactRow).where(ContactRow.user_id == user_id)
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
            return [r.to_record() for r in rows]
