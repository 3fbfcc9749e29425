"""
test_sql_store.py — SqlAlchemyStore against SQLite (aiosqlite).

Same contract as the in-memory store: field-wise sms updates, a single
winner for the fallback claim, presence upserts on legacy ids.

Run with:
    pytest tests/test_sql_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.alerts.models import Alert, GeoPoint, UserRecord
from backend.app.alerts.sql_store import SqlAlchemyStore
from backend.app.core.database import (
    build_session_factory,
    close_db,
    create_engine_from_url,
    init_db,
)
from backend.app.core.errors import NotFoundError


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}"


def _run(db_url, scenario):
    async def wrapper():
        engine = create_engine_from_url(db_url)
        await init_db(engine)
        try:
            return await scenario(SqlAlchemyStore(build_session_factory(engine)))
        finally:
            await close_db(engine)

    return asyncio.run(wrapper())


def _alert(user_id="U1", minutes_ago=0) -> Alert:
    return Alert(
        user_id=user_id,
        location=GeoPoint(12.9716, 77.5946),
        message="help",
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


class TestAlerts:
    def test_create_get_list(self, db_url):
        async def scenario(store):
            old = await store.create_alert(_alert(minutes_ago=5))
            new = await store.create_alert(_alert())
            return old, new, await store.get_alert(old.id), await store.list_alerts()

        old, new, fetched, listing = _run(db_url, scenario)
        assert fetched.id == old.id
        assert fetched.location == GeoPoint(12.9716, 77.5946)
        assert fetched.sms.fallback_sent is False
        assert [a.id for a in listing] == [new.id, old.id]

    def test_missing_alert(self, db_url):
        async def scenario(store):
            return await store.get_alert("ALR-NOPE")

        assert _run(db_url, scenario) is None

    def test_update_sms_and_find_by_sid(self, db_url):
        async def scenario(store):
            alert = await store.create_alert(_alert())
            await store.update_sms(alert.id, sid="SM1", status="queued", to="+1")
            await store.update_sms(alert.id, status="failed", error_code=30003)
            return await store.find_alert_by_sms_sid("SM1"), await store.find_alert_by_sms_sid("SM2")

        found, missing = _run(db_url, scenario)
        assert missing is None
        assert found.sms.sid == "SM1"
        assert found.sms.to == "+1"
        assert found.sms.status == "failed"
        assert found.sms.error_code == 30003

    def test_update_rejects_fallback_flag(self, db_url):
        async def scenario(store):
            alert = await store.create_alert(_alert())
            await store.update_sms(alert.id, fallback_sent=True)

        with pytest.raises(ValueError):
            _run(db_url, scenario)

    def test_update_unknown_alert(self, db_url):
        async def scenario(store):
            await store.update_sms("ALR-NOPE", status="sent")

        with pytest.raises(NotFoundError):
            _run(db_url, scenario)

    def test_claim_fallback_once(self, db_url):
        async def scenario(store):
            alert = await store.create_alert(_alert())
            first = await store.claim_fallback(alert.id)
            second = await store.claim_fallback(alert.id)
            return first, second, await store.get_alert(alert.id)

        first, second, stored = _run(db_url, scenario)
        assert (first, second) == (True, False)
        assert stored.sms.fallback_sent is True

    def test_claim_unknown_alert(self, db_url):
        async def scenario(store):
            await store.claim_fallback("ALR-NOPE")

        with pytest.raises(NotFoundError):
            _run(db_url, scenario)


class TestUsersAndContacts:
    def test_presence_upsert_on_legacy_id(self, db_url):
        async def scenario(store):
            created = await store.upsert_presence(
                "HUZAIFA001", device_token="ExponentPushToken[a]",
                location=GeoPoint(12.34, 56.78),
            )
            updated = await store.upsert_presence(
                "HUZAIFA001", device_token="ExponentPushToken[b]",
            )
            by_canonical = await store.upsert_presence(
                created.id, location=GeoPoint(1.0, 2.0),
            )
            return created, updated, by_canonical, await store.list_located_devices()

        created, updated, by_canonical, devices = _run(db_url, scenario)
        assert created.legacy_id == "HUZAIFA001"
        assert updated.id == created.id
        assert updated.device_token == "ExponentPushToken[b]"
        assert updated.last_location.latitude == 12.34
        assert by_canonical.id == created.id
        assert by_canonical.last_location.latitude == 1.0
        assert [(d.legacy_user_id, d.device_token) for d in devices] == [
            ("HUZAIFA001", "ExponentPushToken[b]"),
        ]

    def test_located_devices_need_token_and_location(self, db_url):
        async def scenario(store):
            await store.upsert_presence("U1", device_token="ExponentPushToken[a]")
            await store.upsert_presence("U2", location=GeoPoint(1.0, 2.0))
            return await store.list_located_devices()

        assert _run(db_url, scenario) == []

    def test_contacts_by_canonical_owner(self, db_url):
        async def scenario(store):
            user = await store.add_user(UserRecord(legacy_id="U1", name="Ana"))
            other = await store.add_user(UserRecord(legacy_id="U2"))
            await store.add_contact(user.id, "Mum", "+15550201")
            await store.add_contact(other.id, "Dad", "+15550202")
            return (
                user,
                await store.find_user_by_legacy_id("U1"),
                await store.get_user(user.id),
                await store.list_contacts(user.id),
            )

        user, by_legacy, by_id, contacts = _run(db_url, scenario)
        assert by_legacy.id == user.id
        assert by_id.name == "Ana"
        assert [c.phone for c in contacts] == ["+15550201"]
