"""
Pytest configuration and shared fixtures for ResolveChain tests.

This module provides shared fixtures and test configuration including:
- Issue registry, resolution engine and attestation gateway on memory stores
- An in-memory ledger with fast confirmation polling
- Flask test client wired to the same services
- Evidence factory and API authentication headers
"""

import os
import sys
from datetime import datetime, timezone

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["RESOLVECHAIN_API_KEY"] = "test-api-key-12345"
os.environ["RESOLVECHAIN_REQUIRE_AUTH"] = "false"
os.environ["RETRY_BASE_DELAY"] = "0.01"
os.environ["RETRY_MAX_DELAY"] = "0.05"


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with empty counters."""
    from monitoring import metrics
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def lock_manager():
    """Private lock manager so tests never share lock state."""
    from scaling import LocalLockManager
    return LocalLockManager()


@pytest.fixture
def registry(lock_manager):
    from issue_registry import IssueRegistry
    return IssueRegistry(lock_manager=lock_manager, lock_timeout=5.0)


@pytest.fixture
def engine(registry, lock_manager):
    from resolution_engine import ResolutionEngine
    return ResolutionEngine(registry, lock_manager=lock_manager, lock_timeout=5.0)


@pytest.fixture
def ledger():
    from ledger import InMemoryLedger
    return InMemoryLedger()


@pytest.fixture
def gateway(engine, ledger, lock_manager):
    """Gateway that gives up on confirmation after a fraction of a second."""
    from attestation import AttestationGateway
    return AttestationGateway(
        engine,
        ledger,
        lock_manager=lock_manager,
        confirmation_timeout=0.2,
        poll_interval=0.01,
    )


@pytest.fixture
def verifier(engine, gateway):
    from verification import VerificationService
    return VerificationService(engine, gateway)


@pytest.fixture
def make_evidence():
    """
    Factory for Evidence records.

    Defaults describe a 14-day window with 150 -> 22 complaints
    (percentage decrease 0.853), positive sentiment and three sources.
    """
    from models import Evidence

    def _make(**overrides):
        values = {
            "complaints_before": 150,
            "complaints_after": 22,
            "percentage_decrease": 0.853,
            "sentiment_shift": 0.3,
            "sample_complaints": ["withdrawal stuck for 3 days", "support never answered"],
            "data_sources": ["youtube", "google", "reddit"],
            "measurement_start": datetime(2025, 1, 1, tzinfo=timezone.utc),
            "measurement_end": datetime(2025, 1, 15, tzinfo=timezone.utc),
            "analysis_methodology": "weekly complaint volume",
        }
        values.update(overrides)
        return Evidence(**values)

    return _make


@pytest.fixture
def issue(registry):
    """A freshly detected withdrawal-delay issue on coinbase."""
    return registry.create_issue(
        exchange="coinbase",
        category="withdrawal_delays",
        title="Withdrawals stuck for days",
        complaint_count=150,
        severity="high",
    )


@pytest.fixture
def resolution(engine, issue, make_evidence):
    """A resolution that meets the default acceptance criteria."""
    return engine.create_resolution(issue.id, make_evidence(), "Withdrawal backlog cleared")


@pytest.fixture
def services(ledger, lock_manager):
    """Services wired on memory stores with the in-memory ledger."""
    from api.state import build_services
    from config import Settings
    from retry import RetryConfig

    settings = Settings(
        api_key="test-api-key-12345",
        require_auth=False,
        confirmation_timeout=0.2,
        poll_interval=0.01,
    )
    built = build_services(settings, ledger=ledger, lock_manager=lock_manager)
    built.retry_config = RetryConfig(max_retries=2, base_delay=0.01, max_delay=0.05, jitter=0.0)
    return built


@pytest.fixture(scope="function")
def flask_app(services):
    """Create Flask test app with fresh services for each test."""
    from api import create_app
    app = create_app(services)
    app.config['TESTING'] = True
    return app


@pytest.fixture(scope="function")
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def test_auth_headers():
    """Headers for authenticated requests."""
    return {
        "Content-Type": "application/json",
        "X-API-Key": "test-api-key-12345"
    }


@pytest.fixture
def evidence_payload():
    """JSON evidence body matching the make_evidence defaults."""
    return {
        "complaints_before": 150,
        "complaints_after": 22,
        "percentage_decrease": 0.853,
        "sentiment_shift": 0.3,
        "sample_complaints": ["withdrawal stuck for 3 days", "support never answered"],
        "data_sources": ["youtube", "google", "reddit"],
        "measurement_start": "2025-01-01T00:00:00Z",
        "measurement_end": "2025-01-15T00:00:00Z",
        "analysis_methodology": "weekly complaint volume",
    }
