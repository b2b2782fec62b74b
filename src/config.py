"""
ResolveChain - Configuration

All settings come from environment variables, optionally loaded from a
.env file (python-dotenv). Nothing else in the core reads os.environ
directly except the retry layer and logging, which keep their own
variables.

Environment Variables:
    RESOLUTION_MIN_PERCENTAGE_DECREASE=0.70
    RESOLUTION_MIN_CONFIDENCE=0.85
    RESOLUTION_MIN_WINDOW_DAYS=7
    RESOLUTION_REQUIRE_POSITIVE_SENTIMENT=false
    RESOLUTION_PERCENTAGE_TOLERANCE=0.005

    LEDGER_BACKEND=memory              # memory | http
    LEDGER_URL=                        # relayer base URL for http
    LEDGER_API_TOKEN=
    BLOCKCHAIN_NETWORK=base_sepolia    # base_sepolia | base_mainnet | ethereum_sepolia
    ATTESTATION_CONTRACT_ADDRESS=
    ATTESTOR_ADDRESS=
    ATTESTATION_CONFIRMATION_TIMEOUT=120
    ATTESTATION_POLL_INTERVAL=2

    STORAGE_BACKEND=memory             # memory | json
    RESOLVECHAIN_DATA_DIR=data

    VERIFICATION_MAX_CLOCK_SKEW=300
    VERIFICATION_MAX_AGE_DAYS=3650

    RESOLVECHAIN_API_KEY=
    RESOLVECHAIN_REQUIRE_AUTH=true
    HOST=0.0.0.0
    PORT=5000
    LOG_LEVEL=INFO
    LOG_FORMAT=                        # json for structured output
"""

import os
from dataclasses import dataclass, field, replace

from dotenv import load_dotenv

from models import SUPPORTED_CHAINS, ChainConfig, ResolutionCriteria

DEFAULT_NETWORK = "base_sepolia"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass
class Settings:
    """Runtime configuration for the services and the HTTP frontend."""

    criteria: ResolutionCriteria = field(default_factory=ResolutionCriteria)
    percentage_tolerance: float = 0.005

    ledger_backend: str = "memory"
    ledger_url: str = ""
    ledger_api_token: str | None = None
    network: str = DEFAULT_NETWORK
    contract_address: str = ""
    attestor_address: str = ""
    confirmation_timeout: float = 120.0
    poll_interval: float = 2.0

    storage_backend: str = "memory"
    data_dir: str = "data"

    max_clock_skew: float = 300.0
    max_age_days: int = 3650

    api_key: str | None = None
    require_auth: bool = True
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"
    log_format: str = ""

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """
        Create settings from environment variables.

        Args:
            dotenv: Load a .env file first (existing variables win)
        """
        if dotenv:
            load_dotenv()

        criteria = ResolutionCriteria(
            min_percentage_decrease=_env_float("RESOLUTION_MIN_PERCENTAGE_DECREASE", 0.70),
            min_confidence=_env_float("RESOLUTION_MIN_CONFIDENCE", 0.85),
            min_window_days=_env_int("RESOLUTION_MIN_WINDOW_DAYS", 7),
            require_positive_sentiment=_env_bool("RESOLUTION_REQUIRE_POSITIVE_SENTIMENT", False),
        )

        return cls(
            criteria=criteria,
            percentage_tolerance=_env_float("RESOLUTION_PERCENTAGE_TOLERANCE", 0.005),
            ledger_backend=os.getenv("LEDGER_BACKEND", "memory").lower(),
            ledger_url=os.getenv("LEDGER_URL", ""),
            ledger_api_token=os.getenv("LEDGER_API_TOKEN") or None,
            network=os.getenv("BLOCKCHAIN_NETWORK", DEFAULT_NETWORK).lower(),
            contract_address=os.getenv("ATTESTATION_CONTRACT_ADDRESS", ""),
            attestor_address=os.getenv("ATTESTOR_ADDRESS", ""),
            confirmation_timeout=_env_float("ATTESTATION_CONFIRMATION_TIMEOUT", 120.0),
            poll_interval=_env_float("ATTESTATION_POLL_INTERVAL", 2.0),
            storage_backend=os.getenv("STORAGE_BACKEND", "memory").lower(),
            data_dir=os.getenv("RESOLVECHAIN_DATA_DIR", "data"),
            max_clock_skew=_env_float("VERIFICATION_MAX_CLOCK_SKEW", 300.0),
            max_age_days=_env_int("VERIFICATION_MAX_AGE_DAYS", 3650),
            api_key=os.getenv("RESOLVECHAIN_API_KEY") or None,
            require_auth=_env_bool("RESOLVECHAIN_REQUIRE_AUTH", True),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 5000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "").lower(),
        )

    def chain_config(self) -> ChainConfig:
        """
        The configured network with the deployment's contract address.

        Raises:
            ValueError: For an unsupported network name
        """
        base = SUPPORTED_CHAINS.get(self.network)
        if base is None:
            raise ValueError(
                f"Unsupported network: {self.network} "
                f"(supported: {', '.join(sorted(SUPPORTED_CHAINS))})"
            )
        return replace(base, contract_address=self.contract_address or base.contract_address)

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems = []
        if self.network not in SUPPORTED_CHAINS:
            problems.append(f"BLOCKCHAIN_NETWORK '{self.network}' is not supported")
        if self.ledger_backend not in ("memory", "http"):
            problems.append(f"LEDGER_BACKEND '{self.ledger_backend}' is not supported")
        if self.ledger_backend == "http" and not self.ledger_url:
            problems.append("LEDGER_URL is required when LEDGER_BACKEND=http")
        if self.storage_backend not in ("memory", "json"):
            problems.append(f"STORAGE_BACKEND '{self.storage_backend}' is not supported")
        if self.require_auth and not self.api_key:
            problems.append("RESOLVECHAIN_REQUIRE_AUTH is on but RESOLVECHAIN_API_KEY is not set")
        if self.confirmation_timeout <= 0:
            problems.append("ATTESTATION_CONFIRMATION_TIMEOUT must be positive")
        if self.poll_interval <= 0:
            problems.append("ATTESTATION_POLL_INTERVAL must be positive")
        if not 0 <= self.criteria.min_confidence <= 1:
            problems.append("RESOLUTION_MIN_CONFIDENCE must be within [0, 1]")
        return problems

    def to_dict(self) -> dict:
        """Settings safe to display (secrets masked)."""
        return {
            "criteria": self.criteria.to_dict(),
            "percentage_tolerance": self.percentage_tolerance,
            "ledger_backend": self.ledger_backend,
            "ledger_url": self.ledger_url,
            "ledger_api_token": "***" if self.ledger_api_token else None,
            "network": self.network,
            "contract_address": self.contract_address,
            "attestor_address": self.attestor_address,
            "confirmation_timeout": self.confirmation_timeout,
            "poll_interval": self.poll_interval,
            "storage_backend": self.storage_backend,
            "data_dir": self.data_dir,
            "max_clock_skew": self.max_clock_skew,
            "max_age_days": self.max_age_days,
            "api_key": "***" if self.api_key else None,
            "require_auth": self.require_auth,
            "host": self.host,
            "port": self.port,
            "log_level": self.log_level,
            "log_format": self.log_format,
        }
