"""
Shared state for the ResolveChain API.

The services (registry, engine, ledger, gateway, verifier) are built once
per application by build_services() and stored on the Flask app, so tests
can hand create_app() a fully wired set backed by an in-memory ledger.
"""

import logging
from dataclasses import dataclass, field

from flask import current_app

from attestation import AttestationGateway
from config import Settings
from issue_registry import IssueRegistry
from ledger import LedgerClient, get_ledger_client
from resolution_engine import ResolutionEngine
from retry import RetryConfig
from scaling import LockManager, get_lock_manager
from storage import KeyedStore, get_storage_backend
from verification import VerificationService

logger = logging.getLogger(__name__)

EXTENSION_KEY = "resolvechain"


@dataclass
class Services:
    """Wired service graph shared by all blueprints."""

    settings: Settings
    registry: IssueRegistry
    engine: ResolutionEngine
    ledger: LedgerClient
    gateway: AttestationGateway
    verifier: VerificationService
    retry_config: RetryConfig = field(default_factory=RetryConfig.from_env)

    def stores(self) -> dict[str, KeyedStore]:
        return {
            "issues": self.registry.store,
            "timelines": self.registry.timeline_store,
            "resolutions": self.engine.store,
            "custody": self.gateway.custody.store,
        }


def build_services(
    settings: Settings | None = None,
    ledger: LedgerClient | None = None,
    lock_manager: LockManager | None = None,
) -> Services:
    """
    Wire the services from settings.

    Args:
        settings: Configuration (read from the environment when omitted)
        ledger: Ledger client to use instead of the configured backend
        lock_manager: Lock manager shared by all services
    """
    settings = settings or Settings.from_env()
    locks = lock_manager or get_lock_manager()

    def store(namespace: str) -> KeyedStore:
        return get_storage_backend(namespace, settings.storage_backend, settings.data_dir)

    registry = IssueRegistry(
        store=store("issues"),
        timeline_store=store("timelines"),
        lock_manager=locks,
    )
    engine = ResolutionEngine(
        registry,
        store=store("resolutions"),
        criteria=settings.criteria,
        percentage_tolerance=settings.percentage_tolerance,
        lock_manager=locks,
    )
    ledger = ledger or get_ledger_client(settings)
    gateway = AttestationGateway(
        engine,
        ledger,
        custody_store=store("custody"),
        lock_manager=locks,
        confirmation_timeout=settings.confirmation_timeout,
        poll_interval=settings.poll_interval,
    )
    verifier = VerificationService(
        engine,
        gateway,
        max_clock_skew=settings.max_clock_skew,
        max_age_days=settings.max_age_days,
    )

    logger.info(
        "Services initialized",
        extra={
            "storage_backend": settings.storage_backend,
            "ledger_backend": type(ledger).__name__,
            "network": settings.network,
        },
    )
    return Services(
        settings=settings,
        registry=registry,
        engine=engine,
        ledger=ledger,
        gateway=gateway,
        verifier=verifier,
    )


def get_services() -> Services:
    """Services of the current Flask application."""
    return current_app.extensions[EXTENSION_KEY]
