"""Utility modules for Family Screen Time."""

from .datetime_utils import DateTimeUtils, FamilyClock, minutes_between, round_half_up
from .logging_utils import (  # Performance logging; Request logging; Application lifecycle logging
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
    log_performance,
)

__all__ = [
    # Time handling
    "DateTimeUtils",
    "FamilyClock",
    "minutes_between",
    "round_half_up",
    # Performance logging
    "log_performance",
    # Request logging
    "RequestLoggingMiddleware",
    # Application lifecycle logging
    "log_application_lifecycle",
    "log_error_with_context",
]
