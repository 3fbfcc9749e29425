"""
Shared FastAPI dependencies.

The service container lives on `app.state.container` (set by the app
lifespan or passed to create_app). Authentication is an external
collaborator: when present it stores the verified user id on
`request.state.user_id`, which then takes precedence over body fields.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Request

from backend.app.core.container import ServiceContainer
from backend.app.core.logging_config import bind_context


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def resolve_user_id(request: Request, body_user_id: Any) -> Any:
    """Verified identity first, request body as fallback."""
    verified: Optional[str] = getattr(request.state, "user_id", None)
    user_id = verified or body_user_id
    if isinstance(user_id, str):
        bind_context(user_id=user_id)
    return user_id
