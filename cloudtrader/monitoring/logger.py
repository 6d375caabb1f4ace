"""
Structured logging for the paper trading engine.

structlog renders JSON (or console) lines on stdout and, optionally, into a
size-rotated log file. Events carry keyword context (symbol=, reason=, pnl=)
plus whatever is bound with `bind_cycle_context`, e.g. the cycle number.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import structlog

SENSITIVE_KEY_FRAGMENTS = ("api_key", "api_secret", "secret", "password", "token")
REDACTED = "***REDACTED***"

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_file_handler: Optional[logging.Handler] = None


def redact_credentials(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """Structlog processor: mask exchange credentials if they end up in an event."""
    for key in list(event_dict):
        if any(fragment in key.lower() for fragment in SENSITIVE_KEY_FRAGMENTS):
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
        log_format: Format (json or text)
        log_file: Optional log file path; rotated at 10MB, 5 backups kept
    """
    global _file_handler
    level = getattr(logging, log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    logging.root.setLevel(level)

    processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Re-running setup (CLI commands, tests) replaces the file handler
    if _file_handler is not None:
        logging.root.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _file_handler = RotatingFileHandler(log_path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
        _file_handler.setLevel(level)
        _file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(_file_handler)

        get_logger(__name__).info("Logging initialized", log_file=str(log_file), log_level=log_level)


def bind_cycle_context(**context: Any) -> None:
    """Attach context (e.g. cycle=3) to every event logged until cleared."""
    structlog.contextvars.bind_contextvars(**context)


def clear_cycle_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)
