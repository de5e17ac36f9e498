"""Routes package initialization."""

from family_screen_time.routes.screen_time import router as screen_time_router
from family_screen_time.routes.websockets import router as websocket_router

__all__ = ["screen_time_router", "websocket_router"]
