"""
Centralized logging manager for the application.

This module provides the logging setup shared by every manager and route, with
optional Loki integration and a file-based buffer for Loki downtime.

Loki Downtime Handling:
----------------------
- Loki is only attached when `LOKI_ENABLED` is set.
- If the Loki handler cannot be attached (network or handler setup failure),
  records are appended as JSON lines to `LOKI_BUFFER_FILE` so a log shipper
  (e.g. Promtail) can forward them later.
- Console output (stdout) is always present.

Usage:
- Use get_logger() to obtain a logger instance. Passing a prefix returns a child
  logger whose messages are tagged with that prefix, e.g.
  `get_logger(prefix="[SessionStore]")`.
"""

import json
import logging
import os
import socket
import sys
import threading
import traceback

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from family_screen_time.config import settings

APP_LOGGER_NAME: str = "Family_Screen_Time"
LOKI_TAGS: dict[str, str] = {
    "app": settings.APP_NAME,
    "env": settings.ENV,
}
LOG_LEVEL: str = settings.LOG_LEVEL.upper()
BUFFER_FILE: str = settings.LOKI_BUFFER_FILE
BUFFER_LOCK = threading.Lock()
FORMATTER = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


class PrefixFilter(logging.Filter):
    """Prepend a fixed tag to every record logged through one logger."""

    def __init__(self, prefix: str) -> None:
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


class BufferHandler(logging.Handler):
    """Write records to the Loki buffer file while Loki is unreachable."""

    def emit(self, record: logging.LogRecord) -> None:
        _write_to_buffer(record)


def _ensure_console_handler(logger: logging.Logger) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(FORMATTER)
    logger.addHandler(console_handler)
    return True


def _write_to_buffer(record: logging.LogRecord) -> None:
    """
    Append a log record to the buffer file as one JSON line.

    Side-effects:
        Appends to BUFFER_FILE, skipping a line identical to the previous one.
    """
    log_dict = {
        "ts": record.created,
        "level": record.levelname,
        "logger": record.name,
        "msg": record.getMessage(),
        "process": record.process,
        "thread": record.threadName,
        "filename": record.filename,
        "funcName": record.funcName,
        "lineno": record.lineno,
        "host": socket.gethostname(),
        "app": settings.APP_NAME,
        "env": settings.ENV,
        "exception": None,
        "request_id": getattr(record, "request_id", None),
        "family_id": getattr(record, "family_id", None),
    }
    if record.exc_info:
        log_dict["exception"] = "".join(traceback.format_exception(*record.exc_info))
    log_line = json.dumps(log_dict, ensure_ascii=False, default=str) + "\n"
    try:
        with BUFFER_LOCK:
            directory = os.path.dirname(BUFFER_FILE)
            if directory:
                os.makedirs(directory, exist_ok=True)
            last_line = None
            if os.path.exists(BUFFER_FILE):
                with open(BUFFER_FILE, "rb") as f:
                    try:
                        f.seek(-4096, os.SEEK_END)
                    except OSError:
                        f.seek(0)
                    lines = f.readlines()
                    if lines:
                        last_line = lines[-1].decode("utf-8", errors="ignore").rstrip("\n")
            if last_line == log_line.rstrip("\n"):
                return
            with open(BUFFER_FILE, "a", encoding="utf-8") as f:
                f.write(log_line)
    except OSError as e:
        sys.stderr.write(f"[LoggingManager] Failed to write log to buffer file '{BUFFER_FILE}': {e}\n")


def _attach_loki(logger: logging.Logger) -> None:
    if any(isinstance(h, (LokiLoggerHandler, BufferHandler)) for h in logger.handlers):
        return
    try:
        loki_handler = LokiLoggerHandler(
            url=settings.LOKI_URL,
            labels=LOKI_TAGS,
            compressed=settings.LOKI_COMPRESS,
        )
        logger.addHandler(loki_handler)
        logger.info(
            "[LoggingManager] LokiLoggerHandler attached to logger '%s' (url=%s, labels=%s)",
            logger.name,
            settings.LOKI_URL,
            LOKI_TAGS,
        )
    except (ValueError, OSError) as e:
        logger.error(
            "[LoggingManager] Failed to attach LokiLoggerHandler: %s. Falling back to file buffer.",
            e,
            exc_info=True,
        )
        logger.addHandler(BufferHandler())


def get_logger(name: str = APP_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """Return a configured logger.

    Handlers live on the named base logger. A prefix yields a child logger that
    propagates to it, so every prefix keeps its own tag.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    if _ensure_console_handler(logger):
        logger.debug("[LoggingManager] Console StreamHandler attached to logger '%s'", name)

    if add_loki and settings.LOKI_ENABLED:
        _attach_loki(logger)

    if not prefix:
        return logger

    child_name = prefix.strip("[] ").replace(" ", "_").lower() or "default"
    child = logger.getChild(child_name)
    if not any(isinstance(f, PrefixFilter) and f.prefix == prefix for f in child.filters):
        child.addFilter(PrefixFilter(prefix))
    return child
