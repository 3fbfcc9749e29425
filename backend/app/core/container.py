"""
Service container — provider clients and pipeline components, built once.

Everything that talks to the outside world (store, SMS, email, push) is
constructed here from Settings at startup and handed to the components
that need it. Tests build a container directly with fakes.

Usage:
    container = build_container(settings)
    app = create_app(container)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.alerts.channels.email_alert import (
    EmailProvider,
    SimulatedEmailProvider,
    SmtpEmailProvider,
)
from backend.app.alerts.channels.push import (
    ExpoPushProvider,
    PushProvider,
    SimulatedPushProvider,
)
from backend.app.alerts.channels.sms_gateway import (
    SimulatedSmsProvider,
    SmsProvider,
    TwilioSmsProvider,
)
from backend.app.alerts.dispatcher import DispatchConfig, DispatchOrchestrator
from backend.app.alerts.ingestion import AlertService
from backend.app.alerts.reconciler import DeliveryStatusReconciler
from backend.app.alerts.store import AlertStore, InMemoryStore
from backend.app.core.background import TaskSupervisor
from backend.app.core.config import Settings
from backend.app.core.errors import ProviderConfigError

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    store: AlertStore
    sms: SmsProvider
    email: EmailProvider
    push: PushProvider
    orchestrator: DispatchOrchestrator
    alerts: AlertService
    reconciler: DeliveryStatusReconciler
    supervisor: TaskSupervisor
    engine: Optional[AsyncEngine] = None

    async def aclose(self, drain_timeout: Optional[float] = 10.0) -> None:
        """Drain background dispatch, then release provider and store handles."""
        await self.supervisor.drain(timeout=drain_timeout)
        for provider in (self.sms, self.email, self.push):
            await provider.close()
        await self.store.close()
        if self.engine is not None:
            from backend.app.core.database import close_db
            await close_db(self.engine)


def assemble(
    store: AlertStore,
    sms: SmsProvider,
    email: EmailProvider,
    push: PushProvider,
    config: Optional[DispatchConfig] = None,
    *,
    engine: Optional[AsyncEngine] = None,
) -> ServiceContainer:
    """Wire pipeline components around already-built providers."""
    supervisor = TaskSupervisor()
    orchestrator = DispatchOrchestrator(store, sms, email, push, config)
    return ServiceContainer(
        store=store,
        sms=sms,
        email=email,
        push=push,
        orchestrator=orchestrator,
        alerts=AlertService(store, orchestrator, supervisor),
        reconciler=DeliveryStatusReconciler(store, orchestrator),
        supervisor=supervisor,
        engine=engine,
    )


# ── Provider selection ──

def _build_sms(settings: Settings) -> SmsProvider:
    if settings.SMS_PROVIDER == "twilio":
        if not settings.TWILIO_FROM:
            raise ProviderConfigError("twilio", "TWILIO_FROM")
        return TwilioSmsProvider(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    if settings.SMS_PROVIDER != "simulation":
        raise ProviderConfigError(settings.SMS_PROVIDER, "SMS_PROVIDER (unknown)")
    return SimulatedSmsProvider()


def _build_email(settings: Settings) -> EmailProvider:
    if settings.EMAIL_PROVIDER == "smtp":
        return SmtpEmailProvider(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USER,
            settings.SMTP_PASSWORD,
            sender_name=settings.EMAIL_SENDER_NAME,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    if settings.EMAIL_PROVIDER != "simulation":
        raise ProviderConfigError(settings.EMAIL_PROVIDER, "EMAIL_PROVIDER (unknown)")
    return SimulatedEmailProvider()


def _build_push(settings: Settings) -> PushProvider:
    if settings.PUSH_PROVIDER == "expo":
        return ExpoPushProvider(
            settings.EXPO_PUSH_URL,
            access_token=settings.EXPO_ACCESS_TOKEN,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    if settings.PUSH_PROVIDER != "simulation":
        raise ProviderConfigError(settings.PUSH_PROVIDER, "PUSH_PROVIDER (unknown)")
    return SimulatedPushProvider()


def build_container(settings: Settings) -> ServiceContainer:
    """Build every provider named by `settings` and wire the pipeline."""
    engine = None
    if settings.STORE_BACKEND == "sql":
        from backend.app.alerts.sql_store import SqlAlchemyStore
        from backend.app.core.database import build_session_factory, create_engine_from_url

        engine = create_engine_from_url(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        store: AlertStore = SqlAlchemyStore(build_session_factory(engine))
    else:
        store = InMemoryStore()

    container = assemble(
        store,
        _build_sms(settings),
        _build_email(settings),
        _build_push(settings),
        DispatchConfig.from_settings(settings),
        engine=engine,
    )
    logger.info(
        "Container ready: store=%s sms=%s email=%s push=%s",
        settings.STORE_BACKEND, container.sms.name,
        container.email.name, container.push.name,
    )
    return container
