"""
Tests for metrics, log redaction and request path normalization.
"""

import json
import logging

from monitoring import LoggingContext, MetricsCollector, counted, timed
from monitoring.logging import JSONFormatter, redact_sensitive_data, redact_string
from monitoring.metrics import metrics
from monitoring.middleware import normalize_path


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_counters_by_label(self):
        collector = MetricsCollector()
        collector.increment("attestations_total", labels={"outcome": "confirmed"})
        collector.increment("attestations_total", labels={"outcome": "confirmed"})
        collector.increment("attestations_total", labels={"outcome": "LedgerTimeoutError"})

        assert collector.get_counter("attestations_total", {"outcome": "confirmed"}) == 2
        assert collector.get_counter("attestations_total", {"outcome": "missing"}) == 0

    def test_gauges(self):
        collector = MetricsCollector()
        collector.set_gauge("attestations_in_flight", 3)
        collector.decrement_gauge("attestations_in_flight")
        assert collector.get_gauge("attestations_in_flight") == 2

    def test_get_all_collapses_unlabelled(self):
        collector = MetricsCollector()
        collector.increment("hash_mismatch_total")
        collector.timing("verification_duration_ms", 12.0)

        data = collector.get_all()
        assert data["counters"]["hash_mismatch_total"] == 1
        assert data["histograms"]["verification_duration_ms"]["_total"]["count"] == 1

    def test_prometheus_export(self):
        collector = MetricsCollector()
        collector.increment("attestations_total", labels={"outcome": "confirmed"})
        collector.timing("attestation_duration_ms", 40.0)

        text = collector.to_prometheus()
        assert "# TYPE resolvechain_attestations_total counter" in text
        assert 'resolvechain_attestations_total{outcome="confirmed"} 1' in text
        assert 'resolvechain_attestation_duration_ms_bucket{le="50"} 1' in text
        assert 'resolvechain_attestation_duration_ms_bucket{le="25"} 0' in text
        assert "resolvechain_attestation_duration_ms_count 1" in text

    def test_reset(self):
        collector = MetricsCollector()
        collector.increment("x")
        collector.reset()
        assert collector.get_all()["counters"] == {}


class TestDecorators:
    """Tests for timed and counted."""

    def test_counted(self):
        @counted("evidence_hash_requests_total")
        def compute():
            return "0x00"

        compute()
        compute()
        assert metrics.get_counter("evidence_hash_requests_total") == 2

    def test_timed_records_on_error(self):
        @timed("ledger_call_ms")
        def failing():
            raise ConnectionError("reset")

        try:
            failing()
        except ConnectionError:
            pass
        assert metrics.get_all()["histograms"]["ledger_call_ms"]["_total"]["count"] == 1


class TestRedaction:
    """Ledger credentials never reach log output."""

    def test_redact_fields(self):
        data = redact_sensitive_data({"ledger_api_token": "abc", "api-key": "k", "exchange": "coinbase"})
        assert data == {"ledger_api_token": "[REDACTED]", "api-key": "[REDACTED]", "exchange": "coinbase"}

    def test_redact_bearer(self):
        assert redact_string("Authorization: Bearer eyJabc.def") == "Authorization: Bearer [REDACTED]"

    def test_redact_private_key(self):
        text = "signing key: 0x" + "a1" * 32
        assert "a1a1" not in redact_string(text)

    def test_redact_rpc_url(self):
        text = "rpc https://base-sepolia.g.alchemy.com/v2/AbCdEfGhIjKlMnOpQrSt"
        assert redact_string(text) == "rpc https://base-sepolia.g.alchemy.com/v2/[REDACTED]"

    def test_evidence_hash_is_not_redacted(self):
        commitment = "0x" + "ab" * 32
        assert redact_string(f"evidence_hash={commitment}") == f"evidence_hash={commitment}"

    def test_json_formatter(self):
        record = logging.LogRecord("attestation", logging.INFO, __file__, 1,
                                   "Submitting with token=abc123", None, None)
        record.resolution_id = "r1"
        with LoggingContext(request_id="req-1"):
            entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Submitting with token=[REDACTED]"
        assert entry["resolution_id"] == "r1"
        assert entry["context"] == {"request_id": "req-1"}


class TestNormalizePath:
    """Tests for metrics path labels."""

    def test_attestation_id(self):
        assert normalize_path("/api/attestations/42") == "/api/attestations/:id"

    def test_uuid(self):
        assert normalize_path("/api/issues/123e4567-e89b-12d3-a456-426614174000/timeline") == \
            "/api/issues/:uuid/timeline"

    def test_commitment(self):
        assert normalize_path("/api/verify/0x" + "ab" * 32) == "/api/verify/:hash"
        assert normalize_path("/api/verify/" + "ab" * 32) == "/api/verify/:hash"

    def test_plain(self):
        assert normalize_path("/health/ready") == "/health/ready"
