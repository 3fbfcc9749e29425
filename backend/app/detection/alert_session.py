"""
alert_session.py — Client-side alert lifecycle above the fall detector.

    ┌──────┐  fall   ┌───────────────────┐  last tick  ┌───────────┐
    │ IDLE │ ──────► │ COUNTDOWN_PENDING │ ──────────► │ AUTO_SENT │
    └──────┘         └───────────────────┘             └───────────┘
        ▲                 │ cancel()                          │ fall
        └─────────────────┘                                   ▼
                                                       COUNTDOWN_PENDING

The countdown (3 ticks at 1 s by default) gives the user a chance to
say "I'm OK". The host drives it by calling tick() once per second;
nothing here owns a timer, so the session is deterministic under test.

Rate limiting
-------------
Both paths share one `last_sent_at` timestamp:

    auto     a fall is ignored while now − last_sent_at ≤ auto_cooldown_ms
    manual   rejected while now − last_sent_at < manual_cooldown_ms

A manual send therefore also holds off an auto send, and vice versa.
The two durations (4000 / 5000 ms) are independent settings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from backend.app.detection.fall_model import monotonic_ms

logger = logging.getLogger(__name__)

AUTO_MESSAGE = "🚨 Emergency alert triggered by AI fall detection!"
MANUAL_MESSAGE = "🚨 Panic alert triggered manually!"


class SessionState(str, Enum):
    IDLE = "idle"
    COUNTDOWN_PENDING = "countdown_pending"
    AUTO_SENT = "auto_sent"


@dataclass(frozen=True)
class AlertSessionConfig:
    countdown_ticks: int = 3
    tick_seconds: float = 1.0
    auto_cooldown_ms: float = 4000.0
    manual_cooldown_ms: float = 5000.0
    auto_message: str = AUTO_MESSAGE
    manual_message: str = MANUAL_MESSAGE


class AlertSession:
    """
    Parameters
    ----------
    send_alert : callable(message) -> Any
        Delivers the alert (e.g. AlertApiClient.sender(...)). Exceptions
        are logged and reported through `last_error`; the session state
        still advances.
    config : AlertSessionConfig
    clock : callable() -> float
        Current time in ms; monotonic by default.
    """

    def __init__(
        self,
        send_alert: Callable[[str], Any],
        config: AlertSessionConfig = AlertSessionConfig(),
        *,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.send_alert = send_alert
        self.config = config
        self.clock = clock
        self.state = SessionState.IDLE
        self.countdown_remaining = 0
        self.last_sent_at: Optional[float] = None
        self.last_error: Optional[Exception] = None

    # ── Auto path ──

    def on_fall(self, score: Any = None) -> bool:
        """Start the countdown; False if one is pending or within cooldown."""
        if self.state == SessionState.COUNTDOWN_PENDING:
            return False
        now = self.clock()
        if (self.last_sent_at is not None
                and now - self.last_sent_at <= self.config.auto_cooldown_ms):
            logger.debug("Fall ignored: within auto cooldown")
            return False

        self.state = SessionState.COUNTDOWN_PENDING
        self.countdown_remaining = self.config.countdown_ticks
        logger.info("Fall countdown started (%d ticks)", self.countdown_remaining)
        return True

    def tick(self) -> bool:
        """Advance the countdown by one tick; True if this tick sent the alert."""
        if self.state != SessionState.COUNTDOWN_PENDING:
            return False
        self.countdown_remaining -= 1
        if self.countdown_remaining > 0:
            return False

        self.state = SessionState.AUTO_SENT
        self.last_sent_at = self.clock()
        self._send(self.config.auto_message)
        return True

    def cancel(self) -> bool:
        """User dismissed the countdown; nothing is sent."""
        if self.state != SessionState.COUNTDOWN_PENDING:
            return False
        self.state = SessionState.IDLE
        self.countdown_remaining = 0
        logger.info("Fall countdown cancelled by user")
        return True

    # ── Manual path ──

    def manual_cooldown_remaining_ms(self) -> float:
        if self.last_sent_at is None:
            return 0.0
        elapsed = self.clock() - self.last_sent_at
        return max(0.0, self.config.manual_cooldown_ms - elapsed)

    def manual_trigger(self) -> bool:
        """Send immediately; False while the manual cooldown is running."""
        now = self.clock()
        if (self.last_sent_at is not None
                and now - self.last_sent_at < self.config.manual_cooldown_ms):
            logger.info(
                "Manual alert rejected: %.0f ms of cooldown left",
                self.manual_cooldown_remaining_ms(),
            )
            return False

        if self.state == SessionState.COUNTDOWN_PENDING:
            self.cancel()
        self.last_sent_at = now
        self._send(self.config.manual_message)
        return True

    def _send(self, message: str) -> None:
        self.last_error = None
        try:
            self.send_alert(message)
        except Exception as exc:
            self.last_error = exc
            logger.warning("Alert send failed: %s", exc)
