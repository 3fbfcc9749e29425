"""
ingestion.py — Alert creation: validate, persist, hand off to dispatch.

create_alert() answers as soon as the alert is stored. Dispatch runs as
a supervised background task; nothing it does (or fails to do) reaches
the caller. Validation failures are the only errors create_alert raises.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

from backend.app.alerts.dispatcher import DispatchOrchestrator
from backend.app.alerts.models import Alert, GeoPoint
from backend.app.alerts.store import AlertStore
from backend.app.core.background import TaskSupervisor
from backend.app.core.errors import InvalidInput
from backend.app.core.logging_config import bind_context

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _coordinate(location: Any, name: str) -> Any:
    if isinstance(location, dict):
        return location.get(name)
    return getattr(location, name, None)


def validate_location(location: Any) -> GeoPoint:
    """
    Check that `location` carries numeric latitude and longitude.

    Raises InvalidInput(field="location") otherwise; range checks are left
    to consumers that do geometry.
    """
    if location is None:
        raise InvalidInput("Valid location required", field="location")
    lat = _coordinate(location, "latitude")
    lon = _coordinate(location, "longitude")
    if not (_is_number(lat) and _is_number(lon)):
        raise InvalidInput("Valid location required", field="location")
    return GeoPoint(latitude=float(lat), longitude=float(lon))


class AlertService:
    """
    Alert ingestion.

    Usage:
        service = AlertService(store, orchestrator, supervisor)
        alert = await service.create_alert("U1", {"latitude": 12.9, "longitude": 77.6}, "help")
    """

    def __init__(
        self,
        store: AlertStore,
        orchestrator: Optional[DispatchOrchestrator],
        supervisor: TaskSupervisor,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.supervisor = supervisor

    async def create_alert(self, user_id: Any, location: Any, message: Any) -> Alert:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidInput("userId required", field="userId")
        point = validate_location(location)
        if not isinstance(message, str) or not message.strip():
            raise InvalidInput("message required", field="message")

        alert = await self.store.create_alert(
            Alert(user_id=user_id, location=point, message=message)
        )
        logger.info(
            "Alert %s persisted for user %s", alert.id, user_id,
            extra={"alert_id": alert.id, "user_id": user_id},
        )

        if self.orchestrator is not None:
            # The dispatch task inherits this context
            bind_context(alert_id=alert.id)
            self.supervisor.spawn(
                self.orchestrator.dispatch(alert), name=f"dispatch:{alert.id}",
            )
        return alert
