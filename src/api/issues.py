"""
ResolveChain - Issues API Blueprint

    POST  /api/issues                 create an issue
    GET   /api/issues                 list issues (?status=, ?limit=, ?offset=)
    GET   /api/issues/<id>            fetch one issue
    PATCH /api/issues/<id>            partial update
    GET   /api/issues/<id>/timeline   timeline events
"""

from flask import Blueprint, jsonify, request

from api.state import get_services
from api.utils import (
    MAX_TEXT_LENGTH,
    get_json_body,
    require_api_key,
    require_fields,
    validate_pagination_params,
)

issues_bp = Blueprint("issues", __name__)

ISSUE_LENGTH_LIMITS = {
    "exchange": 100,
    "category": 100,
    "title": 500,
    "description": MAX_TEXT_LENGTH,
    "id": 100,
}


@issues_bp.route("/api/issues", methods=["POST"])
@require_api_key
def create_issue():
    """
    Start tracking an issue.

    Request body:
        {
            "exchange": "coinbase",
            "category": "withdrawal_delays",
            "title": "Withdrawals stuck for days",      // Optional
            "description": "...",                       // Optional
            "complaint_count": 150,                     // Optional
            "severity": "high",                         // Optional
            "id": "issue-123"                           // Optional explicit id
        }
    """
    data = get_json_body()
    require_fields(
        data,
        {"exchange": str, "category": str},
        {"title": str, "description": str, "complaint_count": int, "severity": str, "id": str},
        ISSUE_LENGTH_LIMITS,
    )

    issue = get_services().registry.create_issue(
        exchange=data["exchange"],
        category=data["category"],
        title=data.get("title", ""),
        description=data.get("description", ""),
        complaint_count=data.get("complaint_count", 0),
        severity=data.get("severity") or "medium",
        issue_id=data.get("id"),
    )
    return jsonify(issue.to_dict()), 201


@issues_bp.route("/api/issues", methods=["GET"])
def list_issues():
    limit, offset = validate_pagination_params(request.args.get("limit"), request.args.get("offset"))
    issues = get_services().registry.list(request.args.get("status") or None)

    return jsonify({
        "issues": [issue.to_dict() for issue in issues[offset:offset + limit]],
        "count": len(issues),
        "limit": limit,
        "offset": offset,
    })


@issues_bp.route("/api/issues/<issue_id>", methods=["GET"])
def get_issue(issue_id: str):
    return jsonify(get_services().registry.get(issue_id).to_dict())


@issues_bp.route("/api/issues/<issue_id>", methods=["PATCH"])
@require_api_key
def update_issue(issue_id: str):
    """
    Merge a partial update. Empty and zero values are ignored.

    Request body (all optional):
        {"title": "...", "description": "...", "complaint_count": 200,
         "severity": "critical", "status": "investigating"}
    """
    data = get_json_body()
    require_fields(
        data,
        {},
        {"title": str, "description": str, "complaint_count": int, "severity": str, "status": str},
        ISSUE_LENGTH_LIMITS,
    )
    issue = get_services().registry.update(issue_id, data)
    return jsonify(issue.to_dict())


@issues_bp.route("/api/issues/<issue_id>/timeline", methods=["GET"])
def get_issue_timeline(issue_id: str):
    events = get_services().registry.timeline(issue_id)
    return jsonify({
        "issue_id": issue_id,
        "events": [event.to_dict() for event in events],
        "count": len(events),
    })
