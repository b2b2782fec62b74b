"""
Structured logging for ResolveChain.

JSON output for log aggregation in production (LOG_FORMAT=json), coloured
console output for development. Request context set by the HTTP middleware
(request_id, method, path) is attached to every record emitted while the
request is being served.

Ledger credentials travel through this process (signing keys, gateway
tokens, RPC URLs with embedded API keys), so every formatter scrubs them.
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Sensitive Data Redaction
# ============================================================

SENSITIVE_PATTERNS = [
    # key=value style secrets
    (re.compile(r"(api[_-]?key|apikey|token|secret|password|private[_-]?key)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)", re.IGNORECASE), r"\1\2[REDACTED]"),
    # Bearer tokens
    (re.compile(r"(Bearer\s+)([^\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
    # Raw 32-byte hex private keys following a "key" marker
    (re.compile(r"(key\W{0,3})(0x)?[a-fA-F0-9]{64}\b", re.IGNORECASE), r"\1[REDACTED_KEY]"),
    # RPC URLs with an API key in the path (https://host/v2/<key>)
    (re.compile(r"(https?://[^\s/]+/v\d+/)([A-Za-z0-9_-]{16,})"), r"\1[REDACTED]"),
]

REDACTED_FIELDS = {
    "password",
    "secret",
    "api_key",
    "apikey",
    "token",
    "api_token",
    "ledger_api_token",
    "private_key",
    "authorization",
    "credentials",
}

_RESERVED_RECORD_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
    "thread", "threadName", "message", "taskName",
))


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """Recursively redact secrets from dicts, lists and strings."""
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if str(key).lower().replace("-", "_") in REDACTED_FIELDS:
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive_data(value, depth + 1, max_depth)
        return result

    if isinstance(data, list):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]

    if isinstance(data, str):
        return redact_string(data)

    return data


def redact_string(text: str) -> str:
    if not isinstance(text, str):
        return text

    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


# Thread-local storage for request context
_request_context = threading.local()


def set_request_context(**kwargs) -> None:
    """Set context values for the current request."""
    if not hasattr(_request_context, "data"):
        _request_context.data = {}
    _request_context.data.update(kwargs)


def clear_request_context() -> None:
    """Clear request context after request completes."""
    _request_context.data = {}


def get_request_context() -> dict[str, Any]:
    """Get current request context."""
    return getattr(_request_context, "data", {})


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_ATTRS
    }


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Output format:
    {
        "timestamp": "2025-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "attestation",
        "message": "Attestation confirmed",
        "context": {"request_id": "abc123"},
        "resolution_id": "...",
        ...
    }
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if self.redact_sensitive:
            message = redact_string(message)

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }

        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and self.include_stack_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        context = get_request_context()
        if context:
            log_entry["context"] = redact_sensitive_data(context) if self.redact_sensitive else context

        for key, value in _extra_fields(record).items():
            log_entry[key] = redact_sensitive_data(value) if self.redact_sensitive else value

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter with colors."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET

        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        msg = (
            f"{color}{timestamp} {record.levelname[0]} [{record.name}]{reset} "
            f"{redact_string(record.getMessage())}"
        )

        context = get_request_context()
        if context:
            ctx_str = " ".join(f"{k}={v}" for k, v in context.items())
            msg += f" {color}({ctx_str}){reset}"

        extras = [
            f"{key}={redact_sensitive_data(value)}"
            for key, value in _extra_fields(record).items()
        ]
        if extras:
            msg += f" [{', '.join(extras)}]"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON format (auto-detected from LOG_FORMAT if None)
        log_file: Optional file path for log output (always JSON)
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module."""
    return logging.getLogger(name)


class LoggingContext:
    """
    Context manager for adding temporary context to logs.

    Usage:
        with LoggingContext(resolution_id="abc123"):
            logger.info("Submitting attestation")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context = {}

    def __enter__(self):
        self.previous_context = get_request_context().copy()
        set_request_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        clear_request_context()
        if self.previous_context:
            set_request_context(**self.previous_context)
        return False
