"""
ResolveChain API Package.

Flask blueprints for the ResolveChain HTTP frontend.

Blueprints:
- issues: issue tracking
- resolutions: resolution creation and queries
- attestations: ledger attestation, verification, hash precompute, stats
- monitoring: health probes and metrics
"""

import logging

from flask import Flask, jsonify

from api.attestations import attestations_bp
from api.issues import issues_bp
from api.monitoring import monitoring_bp
from api.resolutions import resolutions_bp
from api.state import EXTENSION_KEY, Services, build_services
from errors import ResolveChainError
from monitoring import setup_request_logging
from storage import StorageError

logger = logging.getLogger(__name__)

# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (issues_bp, ""),
    (resolutions_bp, ""),
    (attestations_bp, ""),
    (monitoring_bp, ""),
]


def register_blueprints(app: Flask) -> None:
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def register_error_handlers(app: Flask) -> None:
    """Map the exception hierarchy onto JSON error responses."""

    @app.errorhandler(ResolveChainError)
    def handle_resolvechain_error(error: ResolveChainError):
        if error.http_status >= 500:
            logger.error(f"{type(error).__name__}: {error.message}", extra={"details": error.details})
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(StorageError)
    def handle_storage_error(error: StorageError):
        logger.error(f"Storage failure: {error}")
        return jsonify({"error": "Storage unavailable", "error_type": type(error).__name__,
                        "retryable": True}), 503

    @app.errorhandler(TimeoutError)
    def handle_lock_timeout(error: TimeoutError):
        logger.warning(f"Lock wait timed out: {error}")
        return jsonify({"error": str(error), "error_type": "TimeoutError", "retryable": True}), 503

    @app.errorhandler(404)
    def handle_not_found(_error):
        return jsonify({"error": "Not found", "error_type": "NotFound", "retryable": False}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(_error):
        return jsonify({"error": "Method not allowed", "error_type": "MethodNotAllowed",
                        "retryable": False}), 405


def create_app(services: Services | None = None) -> Flask:
    """
    Create the Flask application.

    Args:
        services: Pre-wired services; built from the environment when omitted
    """
    app = Flask(__name__)
    app.json.sort_keys = False
    app.extensions[EXTENSION_KEY] = services or build_services()

    setup_request_logging(app)
    register_error_handlers(app)
    register_blueprints(app)
    return app
