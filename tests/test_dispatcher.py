"""
test_dispatcher.py — Tests for alert fan-out, the operator-SMS fallback
and delivery-receipt reconciliation.

Covers:
    • Full dispatch across email, operator SMS, contact SMS and push
    • Fallback on send exception / failed status / error code
    • Fallback at most once under concurrent triggers
    • Per-recipient isolation for contact SMS
    • Channel failures never cancelling siblings
    • Receipt matching, field updates and fallback from receipts

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from backend.app.alerts.channels.email_alert import EmailMessage, SimulatedEmailProvider
from backend.app.alerts.channels.push import SimulatedPushProvider
from backend.app.alerts.channels.sms_gateway import SmsMessage, SmsProvider, SmsResult
from backend.app.alerts.dispatcher import DispatchConfig, DispatchOrchestrator
from backend.app.alerts.models import (
    Alert,
    AlertChannel,
    DeliveryStatus,
    GeoPoint,
    UserRecord,
)
from backend.app.alerts.reconciler import DeliveryStatusReconciler, parse_error_code
from backend.app.alerts.store import InMemoryStore
from backend.app.core.errors import ChannelSendFailure

OPERATOR = "+15550100"
SENDER = "+15550000"
HERE = GeoPoint(12.9716, 77.5946)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

class ScriptedSms(SmsProvider):
    """
    SMS fake: per-recipient behaviour, every call recorded.

    `script` maps a phone number to an Exception (raised) or a status
    string (returned); numbers not in the script get "queued".
    `polled` holds what fetch() answers per sid.
    """

    name = "scripted"

    def __init__(self, script: Optional[Dict[str, object]] = None, error_code=None):
        self.script = script or {}
        self.error_code = error_code
        self.sent: List[SmsMessage] = []
        self.polled: Dict[str, SmsResult] = {}
        self._n = 0

    async def send(self, message: SmsMessage) -> SmsResult:
        self.sent.append(message)
        self._n += 1
        await asyncio.sleep(0)
        outcome = self.script.get(message.to, "queued")
        if isinstance(outcome, Exception):
            raise outcome
        code = self.error_code if message.to == OPERATOR else None
        return SmsResult(
            sid=f"SM{self._n:04d}", status=outcome, to=message.to,
            from_=message.from_, error_code=code,
        )

    async def fetch(self, sid: str) -> SmsResult:
        if sid not in self.polled:
            raise ChannelSendFailure("sms", "unknown message", sid=sid)
        return self.polled[sid]

    def to(self, number: str) -> List[SmsMessage]:
        return [m for m in self.sent if m.to == number]

    def fallbacks(self) -> List[SmsMessage]:
        return [m for m in self.sent if m.body.startswith("SOS ")]


class FailingEmail(SimulatedEmailProvider):
    async def send(self, message: EmailMessage) -> None:
        raise ChannelSendFailure("email", "smtp down")


def _config(**overrides) -> DispatchConfig:
    values = dict(
        operator_number=OPERATOR,
        sender_number=SENDER,
        status_callback_url="https://example.com/api/v1/alerts/sms-status",
        email_recipients=("ops@example.com",),
    )
    values.update(overrides)
    return DispatchConfig(**values)


def _build(sms=None, email=None, push=None, **config):
    store = InMemoryStore()
    orchestrator = DispatchOrchestrator(
        store,
        sms or ScriptedSms(),
        email or SimulatedEmailProvider(),
        push or SimulatedPushProvider(),
        _config(**config),
    )
    return store, orchestrator


async def _persist(store: InMemoryStore, user_id: str = "U1") -> Alert:
    return await store.create_alert(Alert(user_id=user_id, location=HERE, message="help"))


async def _seed_user(store: InMemoryStore, legacy_id: str, phones=()) -> UserRecord:
    user = await store.add_user(UserRecord(legacy_id=legacy_id))
    for i, phone in enumerate(phones):
        await store.add_contact(user.id, f"Contact {i}", phone)
    return user


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Full dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatch:
    def test_all_channels_delivered(self):
        sms, email, push = ScriptedSms(), SimulatedEmailProvider(), SimulatedPushProvider()
        store, orchestrator = _build(sms, email, push)

        async def scenario():
            await _seed_user(store, "U1", phones=["+15550201"])
            await store.upsert_presence(
                "U2", device_token="ExponentPushToken[near]",
                location=GeoPoint(12.9720, 77.5950),
            )
            alert = await _persist(store)
            report = await orchestrator.dispatch(alert)
            return alert, report, await store.get_alert(alert.id)

        alert, report, stored = asyncio.run(scenario())

        for channel in AlertChannel:
            assert report.outcome(channel).status == DeliveryStatus.DELIVERED
        assert report.completed_at is not None
        assert orchestrator.get_report(alert.id) is report

        assert len(email.sent) == 1
        assert email.sent[0].to == ["ops@example.com"]
        assert sms.to("+15550201")[0].body.startswith("🚨 Emergency Alert")
        assert push.sent[0]["data"] == {
            "alertId": alert.id,
            "latitude": str(HERE.latitude),
            "longitude": str(HERE.longitude),
        }

        assert stored.sms.sid.startswith("SM")
        assert stored.sms.status == "queued"
        assert stored.sms.to == OPERATOR
        assert stored.sms.from_ == SENDER
        assert stored.sms.fallback_sent is False
        assert sms.fallbacks() == []

    def test_no_recipients_anywhere_is_skipped(self):
        store, orchestrator = _build(operator_number=None, email_recipients=())

        async def scenario():
            return await orchestrator.dispatch(await _persist(store, "nobody"))

        report = asyncio.run(scenario())
        for channel in AlertChannel:
            assert report.outcome(channel).status == DeliveryStatus.SKIPPED

    def test_email_failure_does_not_affect_other_channels(self):
        sms = ScriptedSms()
        store, orchestrator = _build(sms, email=FailingEmail())

        async def scenario():
            await _seed_user(store, "U1", phones=["+15550201"])
            return await orchestrator.dispatch(await _persist(store))

        report = asyncio.run(scenario())
        assert report.outcome(AlertChannel.EMAIL).status == DeliveryStatus.FAILED
        assert "smtp down" in report.outcome(AlertChannel.EMAIL).error
        assert report.outcome(AlertChannel.OPERATOR_SMS).status == DeliveryStatus.DELIVERED
        assert report.outcome(AlertChannel.CONTACT_SMS).status == DeliveryStatus.DELIVERED

    def test_report_serialises(self):
        store, orchestrator = _build()

        async def scenario():
            return await orchestrator.dispatch(await _persist(store))

        d = asyncio.run(scenario()).to_dict()
        assert set(d["channels"]) == {"email", "operator_sms", "contact_sms", "push"}
        assert d["any_delivered"] is True

    def test_only_latest_reports_are_kept(self):
        store = InMemoryStore()
        orchestrator = DispatchOrchestrator(
            store, ScriptedSms(), SimulatedEmailProvider(), SimulatedPushProvider(),
            _config(), report_limit=3,
        )

        async def scenario():
            alerts = [await _persist(store) for _ in range(5)]
            for alert in alerts:
                await orchestrator.dispatch(alert)
            return alerts

        alerts = asyncio.run(scenario())
        kept = [orchestrator.get_report(a.id) is not None for a in alerts]
        assert kept == [False, False, True, True, True]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Operator SMS fallback
# ═══════════════════════════════════════════════════════════════════════════

class TestOperatorFallback:
    def _run(self, sms: ScriptedSms):
        store, orchestrator = _build(sms)

        async def scenario():
            alert = await _persist(store)
            outcome = await orchestrator.send_operator_sms(alert)
            return outcome, await store.get_alert(alert.id)

        return asyncio.run(scenario())

    def test_send_exception_triggers_fallback(self):
        sms = ScriptedSms({OPERATOR: ChannelSendFailure("sms", "timeout")})
        outcome, stored = self._run(sms)

        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.fallback_sent is True
        assert stored.sms.status == "failed"
        assert "timeout" in stored.sms.error_message
        assert stored.sms.fallback_sent is True
        # primary attempt + one fallback, both to the operator
        assert len(sms.to(OPERATOR)) == 2
        assert sms.fallbacks()[0].body.endswith(stored.id[-6:])

    @pytest.mark.parametrize("status", ["failed", "undelivered"])
    def test_failed_status_triggers_fallback(self, status):
        sms = ScriptedSms()
        sms.script[OPERATOR] = status
        store, orchestrator = _build(sms)

        async def scenario():
            alert = await _persist(store)
            outcome = await orchestrator.send_operator_sms(alert)
            return outcome, await store.get_alert(alert.id)

        outcome, stored = asyncio.run(scenario())
        assert outcome.fallback_sent is True
        assert stored.sms.status == status
        assert stored.sms.sid is not None
        # the fallback itself comes back with the same scripted status;
        # it is never retried
        assert len(sms.fallbacks()) == 1

    def test_error_code_triggers_fallback(self):
        outcome, stored = self._run(ScriptedSms(error_code=30007))
        assert outcome.fallback_sent is True
        assert stored.sms.error_code == 30007

    def test_queued_does_not_trigger_fallback(self):
        sms = ScriptedSms()
        outcome, stored = self._run(sms)
        assert outcome.status == DeliveryStatus.DELIVERED
        assert outcome.fallback_sent is False
        assert sms.fallbacks() == []

    def test_fallback_at_most_once_under_concurrency(self):
        sms = ScriptedSms()
        store, orchestrator = _build(sms)

        async def scenario():
            alert = await _persist(store)
            return await asyncio.gather(*(
                orchestrator.send_operator_fallback(alert) for _ in range(10)
            ))

        claims = asyncio.run(scenario())
        assert claims.count(True) == 1
        assert len(sms.fallbacks()) == 1

    def test_failed_fallback_send_is_not_retried(self):
        sms = ScriptedSms({OPERATOR: ChannelSendFailure("sms", "down")})
        store, orchestrator = _build(sms)

        async def scenario():
            alert = await _persist(store)
            first = await orchestrator.send_operator_fallback(alert)
            second = await orchestrator.send_operator_fallback(alert)
            return first, second, await store.get_alert(alert.id)

        first, second, stored = asyncio.run(scenario())
        assert (first, second) == (True, False)
        assert stored.sms.fallback_sent is True
        assert len(sms.sent) == 1

    def test_no_operator_number_skips_channel(self):
        sms = ScriptedSms()
        store, orchestrator = _build(sms, operator_number=None)

        async def scenario():
            alert = await _persist(store)
            return await orchestrator.send_operator_sms(alert)

        outcome = asyncio.run(scenario())
        assert outcome.status == DeliveryStatus.SKIPPED
        assert sms.sent == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Contact SMS
# ═══════════════════════════════════════════════════════════════════════════

class TestContactSms:
    def test_one_failure_does_not_block_others(self):
        sms = ScriptedSms({"+15550202": ChannelSendFailure("sms", "invalid number")})
        store, orchestrator = _build(sms)

        async def scenario():
            await _seed_user(store, "U1", phones=["+15550201", "+15550202", "+15550203"])
            return await orchestrator.send_contact_sms(await _persist(store))

        outcome = asyncio.run(scenario())
        assert outcome.status == DeliveryStatus.PARTIAL
        assert (outcome.attempted, outcome.succeeded, outcome.failed) == (3, 2, 1)
        assert len(sms.to("+15550201")) == 1
        assert len(sms.to("+15550203")) == 1
        failed = [r for r in outcome.recipients if not r.success]
        assert failed[0].recipient == "+15550202"

    def test_canonical_user_id(self):
        sms = ScriptedSms()
        store, orchestrator = _build(sms)

        async def scenario():
            user = await _seed_user(store, "U1", phones=["+15550201"])
            return await orchestrator.send_contact_sms(await _persist(store, user.id))

        assert asyncio.run(scenario()).succeeded == 1

    def test_unknown_user_has_no_contacts(self):
        store, orchestrator = _build()

        async def scenario():
            return await orchestrator.send_contact_sms(await _persist(store, "ghost"))

        assert asyncio.run(scenario()).status == DeliveryStatus.SKIPPED


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Push
# ═══════════════════════════════════════════════════════════════════════════

class TestPush:
    def test_only_valid_nearby_tokens_of_others(self):
        push = SimulatedPushProvider()
        store, orchestrator = _build(push=push)

        async def scenario():
            near = GeoPoint(12.9720, 77.5950)
            await store.upsert_presence("U1", device_token="ExponentPushToken[self]", location=near)
            await store.upsert_presence("U2", device_token="ExponentPushToken[ok]", location=near)
            await store.upsert_presence("U3", device_token="garbage", location=near)
            await store.upsert_presence(
                "U4", device_token="ExponentPushToken[far]", location=GeoPoint(13.2, 77.6),
            )
            return await orchestrator.send_push(await _persist(store, "U1"))

        outcome = asyncio.run(scenario())
        assert [r.recipient for r in outcome.recipients] == ["ExponentPushToken[ok]"]
        assert [m["to"] for m in push.sent] == ["ExponentPushToken[ok]"]

    def test_no_nearby_devices_is_skipped(self):
        push = SimulatedPushProvider()
        store, orchestrator = _build(push=push)

        async def scenario():
            return await orchestrator.send_push(await _persist(store))

        assert asyncio.run(scenario()).status == DeliveryStatus.SKIPPED
        assert push.sent == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Delivery receipts
# ═══════════════════════════════════════════════════════════════════════════

class TestReconciler:
    def _setup(self, sms=None):
        sms = sms or ScriptedSms()
        store, orchestrator = _build(sms)
        return sms, store, DeliveryStatusReconciler(store, orchestrator), orchestrator

    def test_parse_error_code(self):
        assert parse_error_code("30003") == 30003
        assert parse_error_code("") is None
        assert parse_error_code(None) is None
        assert parse_error_code("abc") is None

    def test_unknown_sid_is_acknowledged(self):
        _, _, reconciler, _ = self._setup()
        ack = asyncio.run(reconciler.on_delivery_receipt("SM-nope", "delivered"))
        assert ack.matched is False
        assert ack.fallback_triggered is False

    def test_missing_sid_is_acknowledged(self):
        _, _, reconciler, _ = self._setup()
        assert asyncio.run(reconciler.on_delivery_receipt(None, "failed")).matched is False

    def test_delivered_updates_status_only(self):
        sms, store, reconciler, orchestrator = self._setup()

        async def scenario():
            alert = await _persist(store)
            await orchestrator.send_operator_sms(alert)
            sid = (await store.get_alert(alert.id)).sms.sid
            ack = await reconciler.on_delivery_receipt(sid, "delivered")
            return ack, await store.get_alert(alert.id)

        ack, stored = asyncio.run(scenario())
        assert ack.matched is True
        assert stored.sms.status == "delivered"
        assert stored.sms.fallback_sent is False
        assert sms.fallbacks() == []

    def test_failed_receipt_sends_fallback_once(self):
        sms, store, reconciler, orchestrator = self._setup()

        async def scenario():
            alert = await _persist(store)
            await orchestrator.send_operator_sms(alert)
            sid = (await store.get_alert(alert.id)).sms.sid
            acks = [
                await reconciler.on_delivery_receipt(sid, "failed", "30003", "Unreachable"),
                await reconciler.on_delivery_receipt(sid, "failed", "30003", "Unreachable"),
            ]
            return acks, await store.get_alert(alert.id)

        acks, stored = asyncio.run(scenario())
        assert [a.fallback_triggered for a in acks] == [True, False]
        assert stored.sms.status == "failed"
        assert stored.sms.error_code == 30003
        assert stored.sms.error_message == "Unreachable"
        assert len(sms.fallbacks()) == 1

    def test_concurrent_failure_receipts(self):
        sms, store, reconciler, orchestrator = self._setup()

        async def scenario():
            alert = await _persist(store)
            await orchestrator.send_operator_sms(alert)
            sid = (await store.get_alert(alert.id)).sms.sid
            return await asyncio.gather(
                reconciler.on_delivery_receipt(sid, "failed"),
                reconciler.on_delivery_receipt(sid, "undelivered"),
                reconciler.on_delivery_receipt(sid, "failed"),
            )

        acks = asyncio.run(scenario())
        assert sum(a.fallback_triggered for a in acks) == 1
        assert len(sms.fallbacks()) == 1

    def test_receipt_after_send_time_fallback(self):
        sms = ScriptedSms()
        sms.script[OPERATOR] = "failed"
        sms, store, reconciler, orchestrator = self._setup(sms)

        async def scenario():
            alert = await _persist(store)
            await orchestrator.send_operator_sms(alert)
            stored = await store.get_alert(alert.id)
            ack = await reconciler.on_delivery_receipt(stored.sms.sid, "undelivered")
            return ack

        ack = asyncio.run(scenario())
        assert ack.matched is True
        assert ack.fallback_triggered is False
        assert len(sms.fallbacks()) == 1

    def test_refresh_applies_polled_failure(self):
        sms, store, reconciler, orchestrator = self._setup()

        async def scenario():
            alert = await _persist(store)
            await orchestrator.send_operator_sms(alert)
            sid = (await store.get_alert(alert.id)).sms.sid
            sms.polled[sid] = SmsResult(
                sid=sid, status="undelivered", to=OPERATOR,
                error_code=30005, error_message="Unknown destination handset",
            )
            acks = [
                await reconciler.refresh_from_provider(alert.id),
                await reconciler.refresh_from_provider(alert.id),
            ]
            return acks, await store.get_alert(alert.id)

        acks, stored = asyncio.run(scenario())
        assert all(a.matched for a in acks)
        assert [a.fallback_triggered for a in acks] == [True, False]
        assert stored.sms.status == "undelivered"
        assert stored.sms.error_code == 30005
        assert stored.sms.fallback_sent is True
        assert len(sms.fallbacks()) == 1

    def test_refresh_without_operator_sms(self):
        _, store, reconciler, _ = self._setup()

        async def scenario():
            alert = await _persist(store)
            return alert, await reconciler.refresh_from_provider(alert.id)

        alert, ack = asyncio.run(scenario())
        assert ack.matched is False
        assert ack.alert_id == alert.id

    def test_refresh_unknown_alert(self):
        _, _, reconciler, _ = self._setup()
        assert asyncio.run(reconciler.refresh_from_provider("ALR-NOPE")) is None

    def test_refresh_provider_error_propagates(self):
        _, store, reconciler, orchestrator = self._setup()

        async def scenario():
            alert = await _persist(store)
            await orchestrator.send_operator_sms(alert)
            await reconciler.refresh_from_provider(alert.id)

        with pytest.raises(ChannelSendFailure):
            asyncio.run(scenario())
