"""
client.py — HTTP client for the alert creation endpoint.

Used on the device side as the AlertSession's send hook:

    client = AlertApiClient("http://10.0.0.5:5000", token=jwt)
    session = AlertSession(client.sender("HUZAIFA001", gps.current_location))
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

ALERTS_PATH = "/api/v1/alerts"


class AlertApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def create_alert(
        self,
        user_id: Optional[str],
        location: Dict[str, float],
        message: str,
    ) -> Dict[str, Any]:
        """
        POST an alert; returns the persisted alert from the response.

        Raises httpx.HTTPStatusError on a non-2xx answer (e.g. 400 for a
        missing location).
        """
        payload: Dict[str, Any] = {"location": location, "message": message}
        if user_id:
            payload["userId"] = user_id

        response = self._client.post(
            f"{self.base_url}{ALERTS_PATH}", json=payload, headers=self._headers(),
        )
        response.raise_for_status()
        body = response.json()
        alert = body.get("alert", body)
        logger.info("Alert %s accepted by server", alert.get("id"))
        return alert

    def sender(
        self,
        user_id: Optional[str],
        location_provider: Callable[[], Optional[Dict[str, float]]],
    ) -> Callable[[str], Dict[str, Any]]:
        """
        Bind user and location source into an AlertSession send hook.

        An unknown location is sent as (0, 0) so the alert still reaches
        the operator and contacts.
        """
        def send(message: str) -> Dict[str, Any]:
            location = location_provider() or {"latitude": 0.0, "longitude": 0.0}
            return self.create_alert(user_id, location, message)

        return send
