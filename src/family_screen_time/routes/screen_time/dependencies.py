"""
Screen-time route dependencies.

Identity is taken from the ``viewer_type`` and ``viewer_id`` query parameters,
with the guardian passcode in the ``X-Guardian-Passcode`` header for a child's
privileged actions. The engine components are built once in the application
lifespan and read from ``app.state``.
"""

from typing import Optional

from fastapi import Header, HTTPException, Query, Request, status
from pydantic import SecretStr

from family_screen_time.managers.logging_manager import get_logger
from family_screen_time.managers.notification_bus import NotificationBus
from family_screen_time.managers.session_lifecycle import SessionLifecycleController
from family_screen_time.managers.session_store import SessionStore
from family_screen_time.models.screen_time_models import Actor, ActorRole

logger = get_logger(prefix="[ScreenTime Dependencies]")

PASSCODE_HEADER = "X-Guardian-Passcode"


async def get_actor(
    viewer_type: ActorRole = Query(..., description="guardian or child"),
    viewer_id: Optional[str] = Query(None, max_length=128),
    x_guardian_passcode: Optional[str] = Header(None, alias=PASSCODE_HEADER),
) -> Actor:
    """Build the calling actor; a child must say who they are."""
    if viewer_type == ActorRole.CHILD and not viewer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "VALIDATION_ERROR", "message": "viewer_id is required for a child", "context": {}},
        )
    return Actor(
        role=viewer_type,
        id=viewer_id,
        passcode=SecretStr(x_guardian_passcode) if x_guardian_passcode else None,
    )


async def require_guardian_actor(
    viewer_type: ActorRole = Query(..., description="guardian or child"),
    viewer_id: Optional[str] = Query(None, max_length=128),
) -> Actor:
    """Guardian-only endpoints: family and settings management."""
    if viewer_type != ActorRole.GUARDIAN:
        logger.warning("Child %s attempted a guardian-only operation", viewer_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "INSUFFICIENT_PERMISSIONS",
                "message": "Only a guardian can change family settings",
                "context": {"required_role": "guardian", "user_role": viewer_type.value},
            },
        )
    return Actor(role=viewer_type, id=viewer_id)


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def get_bus(request: Request) -> NotificationBus:
    return request.app.state.bus


def get_controller(request: Request) -> SessionLifecycleController:
    return request.app.state.controller
