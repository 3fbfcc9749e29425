"""
sms_fallback.py — Minimal fallback SMS to the operator.

Sent once per alert when the primary operator SMS fails at send time,
comes back from the provider already failed, or is later reported
`failed` / `undelivered` by a delivery receipt.

═══════════════════════════════════════════════════════════════════════════
WHY A SEPARATE FALLBACK BODY
═══════════════════════════════════════════════════════════════════════════

The primary operator SMS carries an emoji, which forces UCS-2 encoding.
Carriers that reject or drop the primary often do so on encoding or
segment count, so the fallback goes further:

    ┌──────────────────────┬──────────────────┬──────────────────────┐
    │ Feature              │ Operator SMS     │ Fallback SMS         │
    ├──────────────────────┼──────────────────┼──────────────────────┤
    │ Max length           │ 160 chars        │ 70 chars             │
    │ Unicode              │ Allowed (UCS-2)  │ Forbidden (ASCII)    │
    │ Status callback      │ Yes              │ No                   │
    │ Sent                 │ Every alert      │ At most once / alert │
    └──────────────────────┴──────────────────┴──────────────────────┘

Message template (≤70 chars):

    "SOS {userId}. Check email/app. #{ref}"

    Example: "SOS HUZAIFA001. Check email/app. #3A7B9C"   (40 chars)
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.alerts.channels.sms_gateway import SmsMessage
from backend.app.alerts.models import Alert

logger = logging.getLogger(__name__)

SMS_FALLBACK_MAX = 70  # strict 70-char limit


def _ascii(text: str) -> str:
    return text.encode("ascii", "ignore").decode("ascii")


def format_fallback_sms(alert: Alert) -> str:
    """
    Build an ASCII-only SMS (≤70 chars).

    Format: "SOS {user}. Check email/app. #{ref}"
    """
    ref = alert.id[-6:]
    skeleton = f"SOS . Check email/app. #{ref}"
    available = SMS_FALLBACK_MAX - len(skeleton)

    user = _ascii(alert.user_id).strip() or "user"
    if len(user) > available:
        user = user[: available - 1] + "."

    msg = f"SOS {user}. Check email/app. #{ref}"

    # Final safety trim
    if len(msg) > SMS_FALLBACK_MAX:
        msg = msg[:SMS_FALLBACK_MAX]

    return msg


def build_fallback_message(
    alert: Alert,
    *,
    operator_number: Optional[str],
    sender_number: Optional[str],
) -> Optional[SmsMessage]:
    """
    Fallback addressed to the operator, or the primary's recipient when
    no operator number is configured. None when no route exists.
    """
    to = operator_number or alert.sms.to
    if not to:
        logger.warning(
            "[SMS_FALLBACK] Alert %s: no recipient configured; skipping",
            alert.id,
        )
        return None
    return SmsMessage(to=to, from_=sender_number, body=format_fallback_sms(alert))
