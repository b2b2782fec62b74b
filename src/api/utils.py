"""
Shared utilities for the ResolveChain API.

Payload validation, evidence parsing and the API-key guard used across
all blueprints.
"""

import secrets
from functools import wraps
from typing import Any

from flask import jsonify, request

from api.state import get_services
from errors import InvalidEvidenceError, ValidationError
from models import Evidence, parse_timestamp

# Bounded parameters
MAX_RESULTS = 500
MAX_OFFSET = 100000
MAX_TEXT_LENGTH = 10000
MAX_SAMPLE_COMPLAINTS = 1000
MAX_DATA_SOURCES = 100

NUMBER = (int, float)

EVIDENCE_REQUIRED_FIELDS = {
    "complaints_before": int,
    "complaints_after": int,
    "measurement_start": str,
    "measurement_end": str,
}
EVIDENCE_OPTIONAL_FIELDS = {
    "percentage_decrease": NUMBER,
    "sentiment_shift": NUMBER,
    "sample_complaints": list,
    "data_sources": list,
    "analysis_methodology": str,
}


# ============================================================
# Validation Utilities
# ============================================================

def validate_pagination_params(
    limit: Any,
    offset: Any = 0,
    max_limit: int = MAX_RESULTS,
    max_offset: int = MAX_OFFSET
) -> tuple[int, int]:
    """
    Validate and bound pagination parameters.

    Raises:
        ValidationError: If limit or offset is not an integer
    """
    try:
        limit = int(limit) if limit not in (None, "") else max_limit
        offset = int(offset) if offset not in (None, "") else 0
    except (TypeError, ValueError):
        raise ValidationError("limit and offset must be integers") from None

    return max(1, min(limit, max_limit)), max(0, min(offset, max_offset))


def _type_name(expected: type | tuple) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _is_instance(value: Any, expected: type | tuple) -> bool:
    # JSON true/false must not pass as numbers
    if isinstance(value, bool) and expected is not bool:
        return False
    return isinstance(value, expected)


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple],
    optional_fields: dict[str, type | tuple] | None = None,
    max_lengths: dict[str, int] | None = None
) -> tuple[bool, str | None]:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string/list lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        if field_name not in data or data[field_name] is None:
            return False, f"Missing required field: {field_name}"
        if not _is_instance(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if optional_fields:
        for field_name, expected_type in optional_fields.items():
            if field_name in data and data[field_name] is not None:
                if not _is_instance(data[field_name], expected_type):
                    return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if max_lengths:
        for field_name, max_len in max_lengths.items():
            value = data.get(field_name)
            if isinstance(value, (str, list)) and len(value) > max_len:
                return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def get_json_body() -> dict[str, Any]:
    """
    Parsed JSON request body.

    Raises:
        ValidationError: If the body is missing or not a JSON object
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_fields(data: dict[str, Any], required: dict, optional: dict | None = None,
                   max_lengths: dict[str, int] | None = None) -> None:
    """validate_json_schema, raising ValidationError on failure."""
    is_valid, error = validate_json_schema(data, required, optional, max_lengths)
    if not is_valid:
        raise ValidationError(error)


def parse_evidence(data: Any) -> Evidence:
    """
    Build Evidence from a JSON payload.

    Raises:
        InvalidEvidenceError: On missing fields, wrong types or bad timestamps
    """
    is_valid, error = validate_json_schema(
        data,
        EVIDENCE_REQUIRED_FIELDS,
        EVIDENCE_OPTIONAL_FIELDS,
        {
            "analysis_methodology": MAX_TEXT_LENGTH,
            "sample_complaints": MAX_SAMPLE_COMPLAINTS,
            "data_sources": MAX_DATA_SOURCES,
        },
    )
    if not is_valid:
        raise InvalidEvidenceError(f"Invalid evidence: {error}")

    for list_field in ("sample_complaints", "data_sources"):
        if not all(isinstance(item, str) for item in data.get(list_field) or []):
            raise InvalidEvidenceError(f"Invalid evidence: '{list_field}' must be a list of strings")

    try:
        start = parse_timestamp(data["measurement_start"])
        end = parse_timestamp(data["measurement_end"])
    except ValueError as e:
        raise InvalidEvidenceError(f"Invalid evidence timestamp: {e}") from e

    return Evidence.from_dict({**data, "measurement_start": start, "measurement_end": end})


# ============================================================
# Authentication
# ============================================================

def require_api_key(f):
    """
    Decorator requiring the X-API-Key header on mutating routes.

    Controlled by RESOLVECHAIN_API_KEY / RESOLVECHAIN_REQUIRE_AUTH.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        settings = get_services().settings
        if not settings.require_auth:
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key")

        if not provided_key:
            return jsonify({
                "error": "API key required",
                "hint": "Provide API key in X-API-Key header"
            }), 401

        if not settings.api_key:
            return jsonify({
                "error": "Server API key not configured",
                "hint": "Set RESOLVECHAIN_API_KEY environment variable"
            }), 503

        if not secrets.compare_digest(provided_key, settings.api_key):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)
    return decorated_function
