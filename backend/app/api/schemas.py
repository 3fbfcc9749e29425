"""
Pydantic schemas for the alert API.

Request fields keep the mobile client's camelCase names on the wire
(`userId`, `deviceToken`) via aliases. Field contents are deliberately
loose (Any): the alert service owns validation so that a missing or
malformed field yields its 400 INVALID_INPUT naming the field, rather
than a generic 422 from the schema layer.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class CreateAlertRequest(BaseModel):
    """Body for POST /api/v1/alerts."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[Any] = Field(
        default=None, alias="userId",
        description="Legacy or canonical user id; ignored when authenticated",
        examples=["HUZAIFA001"],
    )
    location: Optional[Any] = Field(
        default=None,
        description="{latitude, longitude} in decimal degrees",
        examples=[{"latitude": 12.9, "longitude": 77.6}],
    )
    message: Optional[Any] = Field(
        default=None, examples=["🚨 Panic alert triggered manually!"],
    )


class PresenceUpdateRequest(BaseModel):
    """Body for POST /api/v1/users/update-token."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[Any] = Field(default=None, alias="userId", examples=["HUZAIFA001"])
    device_token: Optional[Any] = Field(
        default=None, alias="deviceToken",
        examples=["ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]"],
    )
    location: Optional[Any] = Field(
        default=None, examples=[{"latitude": 12.34, "longitude": 56.78}],
    )


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class CoordinateOut(BaseModel):
    latitude: float
    longitude: float


class SmsOut(BaseModel):
    sid: Optional[str] = None
    status: Optional[str] = None
    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    updated_at: Optional[str] = None
    fallback_sent: bool = False


class AlertOut(BaseModel):
    id: str
    user_id: str
    location: CoordinateOut
    message: str
    created_at: str
    sms: SmsOut


class AlertResponse(BaseModel):
    success: bool = True
    alert: AlertOut


class AlertListResponse(BaseModel):
    success: bool = True
    count: int
    alerts: List[AlertOut]


class PresenceResponse(BaseModel):
    success: bool = True
    user: Dict[str, Any]


class DispatchReportResponse(BaseModel):
    success: bool = True
    report: Dict[str, Any]


class SmsReceiptOut(BaseModel):
    message_id: Optional[str] = None
    matched: bool
    alert_id: Optional[str] = None
    status: Optional[str] = None
    fallback_triggered: bool


class SmsRefreshResponse(BaseModel):
    success: bool = True
    receipt: SmsReceiptOut
