"""
ResolveChain - Resolutions API Blueprint

    POST /api/resolutions         create a resolution for an issue
    GET  /api/resolutions         list (?status=, ?issue_id=, ?limit=, ?offset=)
    GET  /api/resolutions/<id>    fetch one resolution
    GET  /api/resolutions/<id>/attestation    its ledger attestation (404 until attested)
"""

from flask import Blueprint, jsonify, request

from api.state import get_services
from api.utils import (
    MAX_TEXT_LENGTH,
    get_json_body,
    parse_evidence,
    require_api_key,
    require_fields,
    validate_pagination_params,
)
from errors import ValidationError
from models import ResolutionStatus

resolutions_bp = Blueprint("resolutions", __name__)


@resolutions_bp.route("/api/resolutions", methods=["POST"])
@require_api_key
def create_resolution():
    """
    Create a resolution from evidence.

    Request body:
        {
            "issue_id": "issue-123",
            "summary": "Withdrawal backlog cleared",
            "evidence": {
                "complaints_before": 150,
                "complaints_after": 22,
                "percentage_decrease": 0.853,            // Optional, recomputed
                "sentiment_shift": 0.3,
                "sample_complaints": ["c1", "c2"],
                "data_sources": ["youtube", "google", "reddit"],
                "measurement_start": "2025-01-01T00:00:00Z",
                "measurement_end": "2025-01-15T00:00:00Z",
                "analysis_methodology": "weekly complaint volume"
            }
        }
    """
    data = get_json_body()
    require_fields(
        data,
        {"issue_id": str, "evidence": dict},
        {"summary": str},
        {"summary": MAX_TEXT_LENGTH},
    )

    evidence = parse_evidence(data["evidence"])
    resolution = get_services().engine.create_resolution(
        data["issue_id"], evidence, data.get("summary", "")
    )
    return jsonify(resolution.to_dict()), 201


@resolutions_bp.route("/api/resolutions", methods=["GET"])
def list_resolutions():
    limit, offset = validate_pagination_params(request.args.get("limit"), request.args.get("offset"))

    status = request.args.get("status") or None
    if status is not None and status not in {s.value for s in ResolutionStatus}:
        raise ValidationError(
            f"Invalid resolution status: {status}",
            {"allowed": [s.value for s in ResolutionStatus]},
        )

    resolutions = get_services().engine.list_resolutions(
        status=status,
        issue_id=request.args.get("issue_id") or None,
    )
    return jsonify({
        "resolutions": [r.to_dict() for r in resolutions[offset:offset + limit]],
        "count": len(resolutions),
        "limit": limit,
        "offset": offset,
    })


@resolutions_bp.route("/api/resolutions/<resolution_id>", methods=["GET"])
def get_resolution(resolution_id: str):
    return jsonify(get_services().engine.get_resolution(resolution_id).to_dict())


@resolutions_bp.route("/api/resolutions/<resolution_id>/attestation", methods=["GET"])
def get_resolution_attestation(resolution_id: str):
    resolution = get_services().engine.get_resolution(resolution_id)
    if resolution.attestation is None:
        return jsonify({
            "error": "Resolution not yet attested",
            "error_type": "NotAttested",
            "resolution_id": resolution_id,
            "retryable": False,
        }), 404
    return jsonify(resolution.attestation.to_dict())
