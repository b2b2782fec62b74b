"""
Flask middleware for request logging and metrics.

Every request gets an X-Request-ID (taken from the caller or generated),
a timing measurement, a structured access log line and a counter sample.
"""

import time
import uuid
from collections.abc import Callable
from functools import wraps

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, get_logger, set_request_context
from monitoring.metrics import metrics

logger = get_logger("resolvechain.request")


def setup_request_logging(app: Flask) -> None:
    """Install request ID, timing, logging and metrics hooks on a Flask app."""

    @app.before_request
    def before_request():
        g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        g.start_time = time.perf_counter()

        set_request_context(
            request_id=g.request_id,
            method=request.method,
            path=request.path,
        )
        metrics.increment_gauge("http_requests_active")

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request(response.status_code)
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        if exception:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={
                    "request_id": getattr(g, "request_id", "unknown"),
                    "path": request.path,
                    "method": request.method,
                },
            )
        metrics.decrement_gauge("http_requests_active")
        clear_request_context()


def _record_request(status_code: int) -> None:
    duration_ms = 0.0
    if hasattr(g, "start_time"):
        duration_ms = (time.perf_counter() - g.start_time) * 1000

    path = normalize_path(request.path)
    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing(
        "http_request_duration_ms",
        duration_ms,
        labels={"method": request.method, "path": path},
    )

    if status_code >= 500:
        log = logger.error
    elif status_code >= 400:
        log = logger.warning
    else:
        log = logger.info

    log(
        f"{request.method} {request.path} -> {status_code}",
        extra={"status_code": status_code, "duration_ms": round(duration_ms, 2)},
    )


def normalize_path(path: str) -> str:
    """
    Normalize a request path for metrics labels.

    Attestation ids, UUID record ids and evidence hashes are replaced with
    placeholders so label cardinality stays bounded.
    """
    parts = [p for p in path.strip("/").split("/") if p]
    normalized = []

    for part in parts:
        lowered = part.lower()
        if part.isdigit():
            normalized.append(":id")
        elif len(part) == 36 and part.count("-") == 4:
            normalized.append(":uuid")
        elif lowered.startswith("0x") and len(lowered) == 66:
            normalized.append(":hash")
        elif len(lowered) == 64 and all(c in "0123456789abcdef" for c in lowered):
            normalized.append(":hash")
        else:
            normalized.append(part)

    return "/" + "/".join(normalized)


def timed(metric_name: str | None = None):
    """
    Decorator for timing function execution.

    Usage:
        @timed("ledger_submit_ms")
        def submit():
            ...
    """

    def decorator(func: Callable) -> Callable:
        name = metric_name or f"function_{func.__name__}"

        @wraps(func)
        def wrapper(*args, **kwargs):
            with metrics.timer(name):
                return func(*args, **kwargs)

        return wrapper

    return decorator


def counted(metric_name: str | None = None, labels: dict[str, str] | None = None):
    """
    Decorator for counting function calls.

    Usage:
        @counted("hash_requests_total")
        def hash_evidence():
            ...
    """

    def decorator(func: Callable) -> Callable:
        name = metric_name or f"function_{func.__name__}_total"

        @wraps(func)
        def wrapper(*args, **kwargs):
            metrics.increment(name, labels=labels)
            return func(*args, **kwargs)

        return wrapper

    return decorator
