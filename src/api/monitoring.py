"""
Monitoring and metrics API endpoints.

- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Kubernetes liveness probe
- /health/ready: Kubernetes readiness probe (stores and ledger reachable)
"""

import time
from importlib.metadata import PackageNotFoundError, version

from flask import Blueprint, Response, jsonify

from api.state import get_services
from monitoring import metrics
from storage import StorageError

monitoring_bp = Blueprint("monitoring", __name__)

_startup_time = time.time()


def _update_dynamic_metrics() -> None:
    services = get_services()
    for status, count in services.registry.count_by_status().items():
        metrics.set_gauge("issues", count, labels={"status": status})
    metrics.set_gauge("attestations_in_flight", services.gateway.in_flight_count())


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    """Metrics in Prometheus text exposition format."""
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route("/health", methods=["GET"])
def health():
    """Service status and key statistics."""
    services = get_services()
    return jsonify({
        "status": "healthy",
        "service": "ResolveChain API",
        "version": _get_version(),
        "uptime_seconds": time.time() - _startup_time,
        "checks": {
            "storage": _check_storage(),
            "ledger": {
                "backend": type(services.ledger).__name__,
                "network": services.ledger.chain_config.name,
            },
        },
    })


@monitoring_bp.route("/health/live", methods=["GET"])
def liveness():
    """Returns 200 while the process is running."""
    return jsonify({"status": "alive"})


@monitoring_bp.route("/health/ready", methods=["GET"])
def readiness():
    """
    Returns 200 when the stores and the ledger are reachable.

    An unreachable ledger makes the service not ready: attestations and
    verifications would fail.
    """
    services = get_services()
    issues = []

    storage = _check_storage()
    for name, status in storage.items():
        if not status["available"]:
            issues.append(f"storage.{name}: not available")

    if not services.ledger.is_available():
        issues.append("ledger: not reachable")

    if issues:
        return jsonify({"status": "not_ready", "issues": issues}), 503

    return jsonify({"status": "ready"})


def _get_version() -> str:
    try:
        return version("resolvechain")
    except PackageNotFoundError:
        return "0.1.0"


def _check_storage() -> dict:
    result = {}
    for name, store in get_services().stores().items():
        try:
            result[name] = {"available": store.is_available(), "backend": type(store).__name__}
        except StorageError as e:
            result[name] = {"available": False, "error": str(e)}
    return result
