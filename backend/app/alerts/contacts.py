"""
contacts.py — Emergency-contact resolution.

Alerts carry whatever user id the client sent: either a canonical id
(32 hex chars) or a legacy code such as "HUZAIFA001" picked before
accounts existed. Contacts are always owned by the canonical id, so a
legacy code is first mapped through the user record.

"No user" and "no contacts" are ordinary outcomes that yield an empty
list, never an exception.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from backend.app.alerts.models import EmergencyContact, is_canonical_id
from backend.app.alerts.store import AlertStore

logger = logging.getLogger(__name__)


class ContactResolver:
    def __init__(self, store: AlertStore):
        self.store = store

    async def resolve_user_id(self, user_id: Optional[str]) -> Optional[str]:
        """Canonical id for `user_id`, or None if no user resolves."""
        if not user_id:
            return None
        if is_canonical_id(user_id):
            return user_id
        user = await self.store.find_user_by_legacy_id(user_id)
        return user.id if user else None

    async def resolve_contacts(self, user_id: Optional[str]) -> List[EmergencyContact]:
        canonical = await self.resolve_user_id(user_id)
        if canonical is None:
            logger.warning("No user found for %r; no emergency contacts", user_id)
            return []

        contacts = await self.store.list_contacts(canonical)
        logger.debug("Resolved %d contact(s) for %s", len(contacts), user_id)
        return contacts
