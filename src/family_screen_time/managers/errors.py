"""
Exception hierarchy for the screen-time engine.

Every failure the engine reports is a ``ScreenTimeError`` subclass carrying a
stable ``error_code``, a ``context`` dict for logs and API payloads, and the
HTTP status the route layer answers with. Failures never leave a partial write
behind, so callers can rely on the stored state being unchanged.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ScreenTimeError(Exception):
    """Base screen-time exception with enhanced context."""

    http_status: int = 500

    def __init__(self, message: str, error_code: str = None, context: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "SCREEN_TIME_ERROR"
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_detail(self) -> Dict[str, Any]:
        """Payload used as the ``detail`` of an HTTP error response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "context": {k: v for k, v in self.context.items() if v is not None},
        }


class FamilyNotFound(ScreenTimeError):
    """Family record does not exist."""

    http_status = 404

    def __init__(self, message: str, family_id: str = None):
        super().__init__(message, "FAMILY_NOT_FOUND", {"family_id": family_id})


class ChildNotFound(ScreenTimeError):
    """Child is not registered in the family."""

    http_status = 404

    def __init__(self, message: str, family_id: str = None, child_id: str = None):
        super().__init__(message, "CHILD_NOT_FOUND", {"family_id": family_id, "child_id": child_id})


class SessionNotFound(ScreenTimeError):
    """Session id is absent from the child's sessions."""

    http_status = 404

    def __init__(self, message: str, child_id: str = None, session_id: str = None):
        super().__init__(message, "SESSION_NOT_FOUND", {"child_id": child_id, "session_id": session_id})


class ValidationError(ScreenTimeError):
    """Input or invariant validation failed with field context."""

    http_status = 400

    def __init__(self, message: str, field: str = None, value: Any = None, constraint: str = None):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            {"field": field, "value": value, "constraint": constraint},
        )


class InvalidDuration(ValidationError):
    """Duration outside the accepted session bounds."""

    def __init__(self, message: str, duration: Any = None, minimum: int = None, maximum: int = None):
        super().__init__(message, field="duration", value=duration, constraint=f"[{minimum}, {maximum}]")
        self.error_code = "INVALID_DURATION"
        self.context.update({"minimum": minimum, "maximum": maximum})


class QuotaExceeded(ScreenTimeError):
    """No time left for a counted session; a guardian may override."""

    http_status = 409

    def __init__(
        self,
        message: str,
        child_id: str = None,
        remaining: int = None,
        limit_type: str = "daily",
        limit_key: Optional[str] = None,
    ):
        super().__init__(
            message,
            "QUOTA_EXCEEDED",
            {
                "child_id": child_id,
                "remaining": remaining,
                "limit_type": limit_type,
                "limit_key": limit_key,
                "overridable": True,
            },
        )


class BedtimeActive(ScreenTimeError):
    """Start requested inside the rest window; a guardian may override."""

    http_status = 409

    def __init__(self, message: str, child_id: str = None, bedtime: str = None, wake_time: str = None):
        super().__init__(
            message,
            "BEDTIME_ACTIVE",
            {"child_id": child_id, "bedtime": bedtime, "wake_time": wake_time, "overridable": True},
        )


class InvalidTransition(ScreenTimeError):
    """Lifecycle event is not allowed from the session's current state."""

    http_status = 409

    def __init__(self, message: str, state: str = None, event: str = None):
        super().__init__(message, "INVALID_TRANSITION", {"state": state, "event": event})


class SessionAlreadyClosed(InvalidTransition):
    """End requested for a session that has already ended."""

    def __init__(self, message: str, session_id: str = None):
        super().__init__(message, state="closed", event="end")
        self.error_code = "SESSION_ALREADY_CLOSED"
        self.context["session_id"] = session_id


class ConcurrentModification(ScreenTimeError):
    """Compare-and-swap kept losing to other writers; safe to retry."""

    http_status = 409

    def __init__(self, message: str, record: str = None, attempts: int = None):
        super().__init__(
            message,
            "CONCURRENT_MODIFICATION",
            {"record": record, "attempts": attempts, "retryable": True},
        )


class InsufficientPermissions(ScreenTimeError):
    """Actor's role does not allow the operation."""

    http_status = 403

    def __init__(self, message: str, required_role: str = None, user_role: str = None):
        super().__init__(
            message,
            "INSUFFICIENT_PERMISSIONS",
            {"required_role": required_role, "user_role": user_role},
        )


class PasscodeRequired(ScreenTimeError):
    """Child action needs the guardian passcode and it was missing or wrong."""

    http_status = 403

    def __init__(self, message: str, action: str = None):
        super().__init__(message, "PASSCODE_REQUIRED", {"action": action})


class StoreUnavailable(ScreenTimeError):
    """Backing store could not be reached; the write may not have happened."""

    http_status = 503

    def __init__(self, message: str, operation: str = None, backend: str = None):
        super().__init__(message, "STORE_UNAVAILABLE", {"operation": operation, "backend": backend})
