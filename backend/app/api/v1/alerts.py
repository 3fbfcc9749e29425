"""
FastAPI routes: SOS alert ingestion and SMS delivery receipts.

Provides endpoints to:
    POST /api/v1/alerts                  — create an alert (201, dispatch in background)
    GET  /api/v1/alerts                  — latest alerts, newest first
    GET  /api/v1/alerts/{id}             — one alert
    GET  /api/v1/alerts/{id}/dispatch    — per-channel dispatch report
    POST /api/v1/alerts/{id}/sms/refresh — poll the SMS provider for the operator SMS
    POST /api/v1/alerts/sms-status       — SMS provider status callback (form)
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import PlainTextResponse

from backend.app.api.deps import get_container, resolve_user_id
from backend.app.api.schemas import (
    AlertListResponse,
    AlertResponse,
    CreateAlertRequest,
    DispatchReportResponse,
    SmsRefreshResponse,
)
from backend.app.alerts.store import ALERT_LIST_LIMIT
from backend.app.core.container import ServiceContainer
from backend.app.core.errors import NotFoundError
from backend.app.core.logging_config import mask_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    status_code=201,
    response_model=AlertResponse,
    summary="Create an SOS alert",
    description=(
        "Validates and persists the alert, then returns it immediately. "
        "Email, operator SMS, contact SMS and nearby push run in the "
        "background and never affect this response."
    ),
)
async def create_alert(
    body: CreateAlertRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    user_id = resolve_user_id(request, body.user_id)
    alert = await container.alerts.create_alert(user_id, body.location, body.message)
    return {"success": True, "alert": alert.to_dict()}


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List recent alerts",
)
async def list_alerts(
    limit: int = Query(ALERT_LIST_LIMIT, ge=1, le=ALERT_LIST_LIMIT),
    container: ServiceContainer = Depends(get_container),
):
    alerts = await container.store.list_alerts(limit=limit)
    return {
        "success": True,
        "count": len(alerts),
        "alerts": [a.to_dict() for a in alerts],
    }


@router.post(
    "/sms-status",
    response_class=PlainTextResponse,
    summary="SMS delivery status callback",
    description=(
        "Form-encoded receipt from the SMS provider. Always answers 200 OK "
        "so the provider never retries a receipt into an error state."
    ),
)
async def sms_status_callback(
    MessageSid: Optional[str] = Form(None),
    MessageStatus: Optional[str] = Form(None),
    To: Optional[str] = Form(None),
    From: Optional[str] = Form(None),
    ErrorCode: Optional[str] = Form(None),
    ErrorMessage: Optional[str] = Form(None),
    container: ServiceContainer = Depends(get_container),
):
    logger.debug(
        "SMS status callback: sid=%s status=%s to=%s from=%s error=%s %s",
        MessageSid, MessageStatus, mask_phone(To), mask_phone(From),
        ErrorCode, ErrorMessage,
        extra={"message_sid": MessageSid, "sms_status": MessageStatus},
    )
    try:
        await container.reconciler.on_delivery_receipt(
            MessageSid, MessageStatus, ErrorCode, ErrorMessage,
        )
    except Exception as exc:
        logger.error(
            "Failed to apply SMS status %s for %s: %s",
            MessageStatus, MessageSid, exc, exc_info=True,
        )
    return "OK"


@router.get(
    "/{alert_id}",
    response_model=AlertResponse,
    summary="Get one alert",
)
async def get_alert(
    alert_id: str,
    container: ServiceContainer = Depends(get_container),
):
    alert = await container.store.get_alert(alert_id)
    if alert is None:
        raise NotFoundError("Alert", alert_id=alert_id)
    return {"success": True, "alert": alert.to_dict()}


@router.get(
    "/{alert_id}/dispatch",
    response_model=DispatchReportResponse,
    summary="Get the dispatch report for an alert",
    description="Per-channel outcomes captured by the background dispatch.",
)
async def get_dispatch_report(
    alert_id: str,
    container: ServiceContainer = Depends(get_container),
):
    report = container.orchestrator.get_report(alert_id)
    if report is None:
        raise NotFoundError("DispatchReport", alert_id=alert_id)
    return {"success": True, "report": report.to_dict()}


@router.post(
    "/{alert_id}/sms/refresh",
    response_model=SmsRefreshResponse,
    summary="Refresh the operator SMS status from the provider",
    description=(
        "Fetches the operator SMS from the provider and applies its status "
        "like a delivery receipt; a terminal failure sends the fallback SMS "
        "if it has not been sent yet."
    ),
)
async def refresh_sms_status(
    alert_id: str,
    container: ServiceContainer = Depends(get_container),
):
    ack = await container.reconciler.refresh_from_provider(alert_id)
    if ack is None:
        raise NotFoundError("Alert", alert_id=alert_id)
    return {"success": True, "receipt": ack.to_dict()}
