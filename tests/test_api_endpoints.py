"""
Tests for the ResolveChain HTTP API.

This module provides test coverage for:
- Health, readiness and metrics endpoints
- Issue creation, listing, updates and timelines
- Resolution creation and queries
- Attestation, custody, verification and hash precompute
- API key enforcement
- Error mapping
"""

import json

import pytest


def _post(client, path, payload, headers=None):
    return client.post(path, data=json.dumps(payload), headers=headers or {"Content-Type": "application/json"})


def _patch(client, path, payload):
    return client.patch(path, data=json.dumps(payload), headers={"Content-Type": "application/json"})


@pytest.fixture
def api_issue(flask_client):
    response = _post(flask_client, "/api/issues", {
        "exchange": "coinbase",
        "category": "withdrawal_delays",
        "title": "Withdrawals stuck for days",
        "complaint_count": 150,
        "severity": "high",
    })
    assert response.status_code == 201
    return json.loads(response.data)


@pytest.fixture
def api_resolution(flask_client, api_issue, evidence_payload):
    response = _post(flask_client, "/api/resolutions", {
        "issue_id": api_issue["id"],
        "summary": "Withdrawal backlog cleared",
        "evidence": evidence_payload,
    })
    assert response.status_code == 201
    return json.loads(response.data)


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health_check_returns_healthy(self, flask_client):
        response = flask_client.get("/health")
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["status"] == "healthy"
        assert "version" in data
        assert data["checks"]["ledger"]["backend"] == "InMemoryLedger"

    def test_liveness(self, flask_client):
        response = flask_client.get("/health/live")
        assert json.loads(response.data) == {"status": "alive"}

    def test_readiness(self, flask_client):
        response = flask_client.get("/health/ready")
        assert response.status_code == 200
        assert json.loads(response.data)["status"] == "ready"

    def test_not_ready_without_ledger(self, flask_client, ledger):
        ledger.available = False
        response = flask_client.get("/health/ready")
        assert response.status_code == 503
        data = json.loads(response.data)
        assert data["status"] == "not_ready"
        assert "ledger: not reachable" in data["issues"]

    def test_request_id_echoed(self, flask_client):
        response = flask_client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestMetricsEndpoints:
    """Tests for metrics export."""

    def test_prometheus_format(self, flask_client, api_issue):
        response = flask_client.get("/metrics")
        assert response.status_code == 200
        assert response.mimetype == "text/plain"
        body = response.data.decode()
        assert "resolvechain_uptime_seconds" in body
        assert 'resolvechain_issues{status="active"} 1' in body

    def test_json_format(self, flask_client):
        flask_client.get("/health")
        data = json.loads(flask_client.get("/metrics/json").data)
        assert set(data) == {"uptime_seconds", "counters", "gauges", "histograms"}
        assert "http_requests_total" in data["counters"]


class TestIssueEndpoints:
    """Tests for issue endpoints."""

    def test_create_issue(self, api_issue):
        assert api_issue["status"] == "active"
        assert api_issue["severity"] == "high"
        assert api_issue["resolution_id"] is None

    def test_create_issue_missing_exchange(self, flask_client):
        response = _post(flask_client, "/api/issues", {"category": "withdrawal_delays"})
        assert response.status_code == 400
        assert "exchange" in json.loads(response.data)["error"]

    def test_create_issue_wrong_type(self, flask_client):
        response = _post(flask_client, "/api/issues", {
            "exchange": "coinbase", "category": "fees", "complaint_count": "many",
        })
        assert response.status_code == 400

    def test_create_issue_duplicate_id(self, flask_client):
        payload = {"exchange": "kraken", "category": "fees", "id": "issue-fixed"}
        assert _post(flask_client, "/api/issues", payload).status_code == 201
        response = _post(flask_client, "/api/issues", payload)
        assert response.status_code == 409
        assert json.loads(response.data)["error_type"] == "DuplicateIssueError"

    def test_get_issue(self, flask_client, api_issue):
        response = flask_client.get(f"/api/issues/{api_issue['id']}")
        assert response.status_code == 200
        assert json.loads(response.data)["title"] == "Withdrawals stuck for days"

    def test_get_missing_issue(self, flask_client):
        response = flask_client.get("/api/issues/does-not-exist")
        assert response.status_code == 404
        assert json.loads(response.data)["error_type"] == "NotFoundError"

    def test_list_issues(self, flask_client, api_issue):
        _post(flask_client, "/api/issues", {"exchange": "kraken", "category": "fees"})
        data = json.loads(flask_client.get("/api/issues?limit=1").data)
        assert data["count"] == 2
        assert len(data["issues"]) == 1
        assert data["limit"] == 1

    def test_list_issues_by_status(self, flask_client, api_issue):
        data = json.loads(flask_client.get("/api/issues?status=resolved").data)
        assert data["count"] == 0

    def test_list_issues_bad_limit(self, flask_client):
        assert flask_client.get("/api/issues?limit=abc").status_code == 400

    def test_patch_issue(self, flask_client, api_issue):
        response = _patch(flask_client, f"/api/issues/{api_issue['id']}",
                          {"complaint_count": 200, "status": "investigating"})
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["complaint_count"] == 200
        assert data["status"] == "investigating"

    def test_patch_cannot_decrease_count(self, flask_client, api_issue):
        response = _patch(flask_client, f"/api/issues/{api_issue['id']}", {"complaint_count": 10})
        assert response.status_code == 400

    def test_patch_cannot_verify_without_attestation(self, flask_client, api_issue):
        response = _patch(flask_client, f"/api/issues/{api_issue['id']}", {"status": "verified"})
        assert response.status_code == 409

    def test_timeline(self, flask_client, api_issue):
        _patch(flask_client, f"/api/issues/{api_issue['id']}", {"title": "Still stuck"})
        data = json.loads(flask_client.get(f"/api/issues/{api_issue['id']}/timeline").data)
        assert [e["event_type"] for e in data["events"]] == ["detected", "updated"]
        assert data["count"] == 2


class TestResolutionEndpoints:
    """Tests for resolution endpoints."""

    def test_create_resolution(self, api_resolution):
        assert api_resolution["status"] == "verified"
        assert api_resolution["confidence"] == pytest.approx(0.93)
        assert api_resolution["exchange"] == "coinbase"
        assert api_resolution["attestation"] is None

    def test_create_resolution_resolves_issue(self, flask_client, api_resolution):
        issue = json.loads(flask_client.get(f"/api/issues/{api_resolution['issue_id']}").data)
        assert issue["status"] == "resolved"
        assert issue["resolution_id"] == api_resolution["id"]

    def test_weak_evidence_stays_pending(self, flask_client, api_issue, evidence_payload):
        evidence = {**evidence_payload, "complaints_after": 120, "percentage_decrease": None}
        response = _post(flask_client, "/api/resolutions", {"issue_id": api_issue["id"], "evidence": evidence})
        assert response.status_code == 201
        assert json.loads(response.data)["status"] == "pending"

    def test_unknown_issue(self, flask_client, evidence_payload):
        response = _post(flask_client, "/api/resolutions", {"issue_id": "nope", "evidence": evidence_payload})
        assert response.status_code == 404

    def test_inverted_window(self, flask_client, api_issue, evidence_payload):
        evidence = {**evidence_payload, "measurement_start": "2025-02-01T00:00:00Z"}
        response = _post(flask_client, "/api/resolutions", {"issue_id": api_issue["id"], "evidence": evidence})
        assert response.status_code == 400
        assert json.loads(response.data)["error_type"] == "InvalidEvidenceError"

    def test_bad_timestamp(self, flask_client, api_issue, evidence_payload):
        evidence = {**evidence_payload, "measurement_end": "next tuesday"}
        response = _post(flask_client, "/api/resolutions", {"issue_id": api_issue["id"], "evidence": evidence})
        assert response.status_code == 400

    def test_boolean_is_not_a_count(self, flask_client, api_issue, evidence_payload):
        evidence = {**evidence_payload, "complaints_after": True}
        response = _post(flask_client, "/api/resolutions", {"issue_id": api_issue["id"], "evidence": evidence})
        assert response.status_code == 400

    def test_get_resolution(self, flask_client, api_resolution):
        response = flask_client.get(f"/api/resolutions/{api_resolution['id']}")
        assert json.loads(response.data)["id"] == api_resolution["id"]

    def test_list_resolutions_filters(self, flask_client, api_resolution):
        data = json.loads(flask_client.get(f"/api/resolutions?issue_id={api_resolution['issue_id']}").data)
        assert data["count"] == 1
        data = json.loads(flask_client.get("/api/resolutions?status=on_chain").data)
        assert data["count"] == 0

    def test_list_resolutions_bad_status(self, flask_client):
        response = flask_client.get("/api/resolutions?status=done")
        assert response.status_code == 400
        assert "allowed" in json.loads(response.data)["details"]


class TestAttestationEndpoints:
    """Tests for attestation, custody and verification endpoints."""

    def test_attest(self, flask_client, api_resolution):
        response = _post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]})
        assert response.status_code == 201
        data = json.loads(response.data)
        assert data["resolution_status"] == "on_chain"
        assert data["attestation"]["evidence_hash"].startswith("0x")
        assert data["attestation"]["previous_hash"] == "0x" + "0" * 64

    def test_attest_twice_returns_existing(self, flask_client, api_resolution):
        first = json.loads(_post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]}).data)
        response = _post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]})
        assert response.status_code == 200
        assert json.loads(response.data)["attestation"]["id"] == first["attestation"]["id"]

    def test_attest_unknown_resolution(self, flask_client):
        response = _post(flask_client, "/api/attestations", {"resolution_id": "nope"})
        assert response.status_code == 404

    def test_attest_ledger_down(self, flask_client, ledger, api_resolution):
        ledger.available = False
        response = _post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]})
        assert response.status_code == 503
        data = json.loads(response.data)
        assert data["error_type"] == "LedgerUnavailableError"
        assert data["retryable"] is True

    def test_attest_confirmation_timeout(self, flask_client, ledger, api_resolution):
        ledger.stall = True
        response = _post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]})
        assert response.status_code == 504
        assert ledger.submission_count == 1

    def test_get_attestation(self, flask_client, api_resolution):
        attested = json.loads(_post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]}).data)
        attestation_id = attested["attestation"]["id"]

        response = flask_client.get(f"/api/attestations/{attestation_id}")
        assert response.status_code == 200
        assert json.loads(response.data)["evidence_hash"] == attested["attestation"]["evidence_hash"]

    def test_get_missing_attestation(self, flask_client):
        assert flask_client.get("/api/attestations/999").status_code == 404

    def test_resolution_attestation(self, flask_client, api_resolution):
        attested = json.loads(_post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]}).data)

        response = flask_client.get(f"/api/resolutions/{api_resolution['id']}/attestation")
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["id"] == attested["attestation"]["id"]
        assert data["evidence_hash"] == attested["attestation"]["evidence_hash"]

    def test_resolution_not_yet_attested(self, flask_client, api_resolution):
        response = flask_client.get(f"/api/resolutions/{api_resolution['id']}/attestation")
        assert response.status_code == 404
        assert json.loads(response.data)["error"] == "Resolution not yet attested"

    def test_attestation_of_unknown_resolution(self, flask_client):
        response = flask_client.get("/api/resolutions/nope/attestation")
        assert response.status_code == 404
        assert json.loads(response.data)["error_type"] == "NotFoundError"

    def test_custody_chain(self, flask_client, api_resolution):
        attested = json.loads(_post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]}).data)
        data = json.loads(flask_client.get("/api/custody/coinbase/withdrawal_delays").data)
        assert data["length"] == 1
        assert data["latest"] == attested["attestation"]["evidence_hash"]

    def test_empty_custody_chain(self, flask_client):
        data = json.loads(flask_client.get("/api/custody/kraken/fees").data)
        assert data == {"exchange": "kraken", "issue_category": "fees", "entries": [], "length": 0, "latest": None}

    def test_verify_by_resolution(self, flask_client, api_resolution):
        _post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]})
        data = json.loads(_post(flask_client, "/api/verify", {"resolution_id": api_resolution["id"]}).data)
        assert data["verified"] is True
        assert data["hash_match"] is True

    def test_verify_by_hash(self, flask_client, api_resolution):
        attested = json.loads(_post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]}).data)
        evidence_hash = attested["attestation"]["evidence_hash"]
        data = json.loads(flask_client.get(f"/api/verify/{evidence_hash}").data)
        assert data["verified"] is True
        assert data["on_chain"] is True

    def test_verify_unknown_hash(self, flask_client):
        data = json.loads(flask_client.get("/api/verify/0x" + "cd" * 32).data)
        assert data["verified"] is False

    def test_verify_needs_exactly_one_input(self, flask_client):
        assert _post(flask_client, "/api/verify", {}).status_code == 400

    def test_verify_malformed_hash(self, flask_client):
        assert flask_client.get("/api/verify/0xnothex").status_code == 400


class TestEvidenceHashEndpoint:
    """Tests for hash precompute."""

    def test_precompute_matches_attestation(self, flask_client, api_resolution, evidence_payload):
        precomputed = json.loads(_post(flask_client, "/api/evidence/hash", {"evidence": evidence_payload}).data)
        attested = json.loads(_post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]}).data)

        assert precomputed["evidence_hash"] == attested["attestation"]["evidence_hash"]
        assert precomputed["algorithm"] == "keccak256"
        assert precomputed["canonical_version"] == 1
        assert precomputed["percentage_decrease"] == pytest.approx(0.853, abs=0.001)

    def test_precompute_is_order_independent(self, flask_client, evidence_payload):
        shuffled = {**evidence_payload, "data_sources": ["reddit", "youtube", "google"]}
        first = json.loads(_post(flask_client, "/api/evidence/hash", {"evidence": evidence_payload}).data)
        second = json.loads(_post(flask_client, "/api/evidence/hash", {"evidence": shuffled}).data)
        assert first["evidence_hash"] == second["evidence_hash"]

    def test_precompute_rejects_wrong_percentage(self, flask_client, evidence_payload):
        evidence = {**evidence_payload, "percentage_decrease": 0.5}
        assert _post(flask_client, "/api/evidence/hash", {"evidence": evidence}).status_code == 400


class TestStatsEndpoints:
    """Tests for statistics endpoints."""

    def test_stats(self, flask_client, api_resolution):
        _post(flask_client, "/api/attestations", {"resolution_id": api_resolution["id"]})
        data = json.loads(flask_client.get("/api/stats").data)
        assert data["total_issues"] == 1
        assert data["total_resolutions"] == 1
        assert data["attestation_count"] == 1
        assert data["on_chain_attestation_count"] == 1
        assert data["custody_chains"] == 1
        assert data["attestations_in_flight"] == 0

    def test_blockchain_info(self, flask_client):
        data = json.loads(flask_client.get("/api/blockchain/info").data)
        assert data["connected"] is True
        assert data["attestation_count"] == 0
        assert data["hash_algorithm"] == "keccak256"
        assert set(data["supported_chains"]) == {"base_sepolia", "base_mainnet", "ethereum_sepolia"}
        assert data["supported_chains"]["base_mainnet"]["chain_id"] == 8453

    def test_blockchain_info_disconnected(self, flask_client, ledger):
        ledger.available = False
        data = json.loads(flask_client.get("/api/blockchain/info").data)
        assert data["connected"] is False
        assert "attestation_count" not in data


class TestAuthentication:
    """Tests for API key enforcement on mutating routes."""

    @pytest.fixture
    def secured_client(self, ledger, lock_manager):
        from api import create_app
        from api.state import build_services
        from config import Settings

        settings = Settings(api_key="test-api-key-12345", require_auth=True)
        app = create_app(build_services(settings, ledger=ledger, lock_manager=lock_manager))
        app.config["TESTING"] = True
        return app.test_client()

    def test_missing_key(self, secured_client):
        response = _post(secured_client, "/api/issues", {"exchange": "coinbase", "category": "fees"})
        assert response.status_code == 401

    def test_wrong_key(self, secured_client):
        response = _post(secured_client, "/api/issues", {"exchange": "coinbase", "category": "fees"},
                         headers={"Content-Type": "application/json", "X-API-Key": "wrong"})
        assert response.status_code == 403

    def test_valid_key(self, secured_client, test_auth_headers):
        response = _post(secured_client, "/api/issues", {"exchange": "coinbase", "category": "fees"},
                         headers=test_auth_headers)
        assert response.status_code == 201

    def test_reads_are_open(self, secured_client):
        assert secured_client.get("/api/issues").status_code == 200

    def test_server_key_unset(self, ledger, lock_manager):
        from api import create_app
        from api.state import build_services
        from config import Settings

        settings = Settings(api_key=None, require_auth=True)
        client = create_app(build_services(settings, ledger=ledger, lock_manager=lock_manager)).test_client()
        response = _post(client, "/api/issues", {"exchange": "coinbase", "category": "fees"},
                         headers={"Content-Type": "application/json", "X-API-Key": "anything"})
        assert response.status_code == 503


class TestErrorHandling:
    """Tests for error responses."""

    def test_invalid_json_returns_400(self, flask_client):
        response = flask_client.post("/api/issues", data="not json",
                                     headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_unknown_route(self, flask_client):
        response = flask_client.get("/api/nothing-here")
        assert response.status_code == 404
        assert json.loads(response.data)["error"] == "Not found"

    def test_method_not_allowed(self, flask_client):
        response = flask_client.delete("/api/issues")
        assert response.status_code == 405
