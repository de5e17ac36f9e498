"""Logging utilities for request tracing, timing and error context.

Provides the request middleware, the ``log_performance`` decorator used on
store operations, and helpers for lifecycle and error logging.
"""

import asyncio
from contextvars import ContextVar
from datetime import datetime, timezone
import functools
import os
import time
import traceback
from typing import Any, Callable, Dict, Optional
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from family_screen_time.config import settings
from family_screen_time.managers.logging_manager import get_logger

# Context variable for request tracing
request_id_context: ContextVar[str] = ContextVar("request_id", default="")

SLOW_REQUEST_SECONDS = 1.0
SLOW_OPERATION_SECONDS = 2.0

SENSITIVE_KEYS = {
    "password",
    "passcode",
    "token",
    "secret",
    "key",
    "auth",
    "credential",
}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request/response logging middleware for FastAPI.

    Each request gets a short id, exposed through ``request_id_context`` and the
    ``X-Request-ID`` response header, so route logs can be tied to it.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = get_logger(name="Family_Screen_Time_Requests", prefix="[REQUEST]")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        token = request_id_context.set(request_id)
        start_time = time.time()

        client_ip = self._get_client_ip(request)
        method = request.method
        path = str(request.url.path)

        self.logger.info(
            {
                "event": "request_received",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": request_id,
                "method": method,
                "path": path,
                "query_params": str(request.url.query) if request.url.query else None,
                "client_ip": client_ip,
                "user_agent": request.headers.get("user-agent", "unknown"),
                "process": os.getpid(),
                "app": settings.APP_NAME,
                "env": settings.ENV,
            }
        )

        try:
            response = await call_next(request)
            duration = time.time() - start_time
            response.headers["X-Request-ID"] = request_id

            response_log = {
                "event": "response_sent",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": request_id,
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration": duration,
                "client_ip": client_ip,
            }
            self.logger.info(response_log)

            if duration > SLOW_REQUEST_SECONDS:
                slow_log = response_log.copy()
                slow_log["event"] = "slow_request"
                self.logger.warning(slow_log)

            return response

        except Exception as e:
            self.logger.error(
                {
                    "event": "request_error",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "request_id": request_id,
                    "method": method,
                    "path": path,
                    "duration": time.time() - start_time,
                    "exception": str(e),
                    "stack_trace": traceback.format_exc(),
                    "client_ip": client_ip,
                }
            )
            raise
        finally:
            request_id_context.reset(token)

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP address from request headers."""
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip

        return getattr(request.client, "host", "unknown")


def log_performance(operation_name: str, log_args: bool = False):
    """
    Decorator for logging function/method performance with timing.

    Args:
        operation_name: Name of the operation for logging
        log_args: Whether to log function arguments (sensitive keys are redacted)
    """

    def decorator(func: Callable) -> Callable:
        logger = get_logger(name="Family_Screen_Time_Performance", prefix="[PERFORMANCE]")

        def _start(args, kwargs) -> str:
            operation_id = str(uuid.uuid4())[:8]
            if log_args and (args or kwargs):
                logger.debug("[%s] Starting %s with args: %s", operation_id, operation_name, _sanitize_args(args, kwargs))
            else:
                logger.debug("[%s] Starting %s", operation_id, operation_name)
            return operation_id

        def _finish(operation_id: str, start_time: float) -> None:
            duration = time.time() - start_time
            logger.debug("[%s] Completed %s in %.3fs", operation_id, operation_name, duration)
            if duration > SLOW_OPERATION_SECONDS:
                logger.warning("[%s] SLOW OPERATION: %s took %.3fs", operation_id, operation_name, duration)

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.info(
                    "[%s] Failed %s after %.3fs: %s", operation_id, operation_name, time.time() - start_time, str(e)
                )
                raise
            _finish(operation_id, start_time)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.info(
                    "[%s] Failed %s after %.3fs: %s", operation_id, operation_name, time.time() - start_time, str(e)
                )
                raise
            _finish(operation_id, start_time)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def log_application_lifecycle(event: str, details: Optional[Dict[str, Any]] = None):
    """
    Log application lifecycle events (startup, shutdown, etc.).

    Args:
        event: Lifecycle event name
        details: Additional event details
    """
    logger = get_logger(name="Family_Screen_Time_Lifecycle", prefix="[LIFECYCLE]")

    event_data = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    if details:
        event_data.update(details)

    logger.info("APPLICATION LIFECYCLE: %s - %s", event, event_data)


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """
    Log errors with full context and stack trace.

    Args:
        error: The exception that occurred
        context: Additional context information
        operation: Name of the operation that failed
    """
    logger = get_logger(name="Family_Screen_Time_Errors", prefix="[ERROR]")

    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id_context.get() or None,
        "stack_trace": traceback.format_exc(),
    }
    if operation:
        error_data["operation"] = operation
    if context:
        error_data["context"] = _sanitize_args((), context)

    logger.error("ERROR OCCURRED: %s", error_data)


def _sanitize_args(args: tuple, kwargs: dict) -> dict:
    """
    Sanitize function arguments to avoid logging sensitive data.

    Returns:
        Sanitized arguments dictionary
    """
    sanitized = {}

    if args:
        sanitized["args"] = [
            (
                "<REDACTED>"
                if any(key in str(arg).lower() for key in SENSITIVE_KEYS)
                else str(arg)[:100] + ("..." if len(str(arg)) > 100 else "")
            )
            for arg in args
        ]

    if kwargs:
        sanitized["kwargs"] = {}
        for key, value in kwargs.items():
            if any(sensitive_key in key.lower() for sensitive_key in SENSITIVE_KEYS):
                sanitized["kwargs"][key] = "<REDACTED>"
            else:
                str_value = str(value)
                sanitized["kwargs"][key] = str_value[:100] + ("..." if len(str_value) > 100 else "")

    return sanitized
