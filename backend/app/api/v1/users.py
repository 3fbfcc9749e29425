"""
FastAPI route: device presence / push-token upsert.

    POST /api/v1/users/update-token

Body:
    {
      "userId": "HUZAIFA001",
      "deviceToken": "ExponentPushToken[xxxxxx]",
      "location": {"latitude": 12.34, "longitude": 56.78}
    }

The token is stored only when it is a non-blank string, the location
only when both coordinates are numbers; anything else is ignored, not
rejected. The user record is upserted on its legacy id.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from backend.app.alerts.ingestion import validate_location
from backend.app.api.deps import get_container, resolve_user_id
from backend.app.api.schemas import PresenceResponse, PresenceUpdateRequest
from backend.app.core.container import ServiceContainer
from backend.app.core.errors import InvalidInput

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.post(
    "/update-token",
    response_model=PresenceResponse,
    summary="Upsert device token and last location",
)
async def update_token(
    body: PresenceUpdateRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    user_id = resolve_user_id(request, body.user_id)
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidInput("userId required", field="userId")

    token = body.device_token
    if not isinstance(token, str) or not token.strip():
        token = None

    try:
        location = validate_location(body.location) if body.location is not None else None
    except InvalidInput:
        logger.debug("Ignoring malformed location for %s", user_id)
        location = None

    user = await container.store.upsert_presence(
        user_id, device_token=token, location=location,
    )
    return {"success": True, "user": user.to_dict()}
