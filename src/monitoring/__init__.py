"""
Monitoring infrastructure for ResolveChain.

- Application metrics (counters, gauges, histograms)
- Structured logging with JSON output and secret redaction
- Request timing middleware

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("attestations_total", labels={"outcome": "confirmed"})

    logger = get_logger("attestation")
    logger.info("Attestation confirmed", extra={"resolution_id": "..."})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import counted, setup_request_logging, timed

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "configure_logging",
    "counted",
    "get_logger",
    "metrics",
    "setup_request_logging",
    "timed",
]
