"""
push.py — Mobile push notification channel (Expo push service).

Delivery mechanism:
    • HTTPS POST of a JSON array of messages to the Expo push API
    • At most 100 messages per request (Expo's batch limit)
    • The service answers with one ticket per message: {"status": "ok", "id"}
      or {"status": "error", "message", "details"}

Only well-formed Expo push tokens are sent; anything else is dropped
before the call so one stale registration cannot fail a whole chunk.

═══════════════════════════════════════════════════════════════════════════
WHY PUSH FOR NEARBY USERS
═══════════════════════════════════════════════════════════════════════════

    1. Zero marginal cost    — no per-message charge (unlike SMS)
    2. Instant delivery      — sub-second latency via persistent connection
    3. No phone number needed — nearby users are strangers to the sender

Limitations:
    - Requires the app to have been granted notification permission
    - Devices offline at send time may never receive it (TTL expiry)
"""

from __future__ import annotations

import abc
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx

logger = logging.getLogger(__name__)

EXPO_CHUNK_SIZE = 100

_TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[")
_BARE_TOKEN = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$",
    re.IGNORECASE,
)


def is_expo_push_token(token: Any) -> bool:
    """Same acceptance rule as the Expo server SDK."""
    if not isinstance(token, str):
        return False
    if token.startswith(_TOKEN_PREFIXES) and token.endswith("]"):
        return True
    return _BARE_TOKEN.match(token) is not None


def chunked(items: List[Any], size: int = EXPO_CHUNK_SIZE) -> Iterable[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class PushChunkResult:
    """Outcome of one batched request."""
    tokens: List[str]
    tickets: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def ticket_for(self, index: int) -> Optional[Dict[str, Any]]:
        if index >= len(self.tickets):
            return None
        ticket = self.tickets[index]
        return ticket if isinstance(ticket, dict) else None

    def to_dict(self) -> Dict[str, Any]:
        return {"tokens": len(self.tokens), "tickets": self.tickets, "error": self.error}


def parse_tickets(payload: Any) -> List[Any]:
    """Tickets from an Expo response body; raises ValueError on any other shape."""
    data = payload.get("data") if isinstance(payload, dict) else None
    if data is None and isinstance(payload, dict):
        return []
    if not isinstance(data, list):
        raise ValueError(
            f"unexpected push response body ({type(payload).__name__})"
        )
    return data


def build_messages(
    tokens: List[str], title: str, body: str, data: Dict[str, str],
) -> List[Dict[str, Any]]:
    return [
        {"to": token, "sound": "default", "title": title, "body": body, "data": data}
        for token in tokens
    ]


class PushProvider(abc.ABC):
    """Push provider capability injected into the dispatch orchestrator."""

    name = "push"

    @abc.abstractmethod
    async def send(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[PushChunkResult]:
        """
        Send one notification to every valid token.

        Invalid tokens are dropped first; an empty valid set sends
        nothing and returns []. A failing chunk is reported in its
        PushChunkResult and does not stop later chunks.
        """

    async def close(self) -> None:
        pass


class ExpoPushProvider(PushProvider):
    """Expo push API over httpx."""

    name = "expo"

    def __init__(
        self,
        url: str,
        *,
        access_token: Optional[str] = None,
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[PushChunkResult]:
        valid = [t for t in tokens if is_expo_push_token(t)]
        dropped = len(tokens) - len(valid)
        if dropped:
            logger.warning("[PUSH] Dropped %d malformed token(s)", dropped)
        if not valid:
            return []

        client = await self._get_client()
        results: List[PushChunkResult] = []

        for chunk in chunked(valid):
            result = PushChunkResult(tokens=chunk)
            try:
                response = await client.post(
                    self.url,
                    json=build_messages(chunk, title, body, data),
                    headers=self._headers(),
                )
                response.raise_for_status()
                result.tickets = parse_tickets(response.json())
            except httpx.HTTPStatusError as e:
                logger.error("[PUSH] Expo API error: %s", e)
                result.error = f"HTTP {e.response.status_code}"
            except (httpx.HTTPError, ValueError) as e:
                logger.error("[PUSH] Expo request failed: %s", e)
                result.error = str(e) or type(e).__name__
            results.append(result)

        logger.info(
            "[PUSH] Sent %d message(s) in %d chunk(s)", len(valid), len(results),
        )
        return results


class SimulatedPushProvider(PushProvider):
    name = "simulation"

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[PushChunkResult]:
        valid = [t for t in tokens if is_expo_push_token(t)]
        if not valid:
            return []
        results = []
        for chunk in chunked(valid):
            messages = build_messages(chunk, title, body, data)
            self.sent.extend(messages)
            logger.info("[PUSH] → %d device(s): %s", len(chunk), title)
            results.append(PushChunkResult(
                tokens=chunk,
                tickets=[{"status": "ok", "id": uuid.uuid4().hex} for _ in chunk],
            ))
        return results
