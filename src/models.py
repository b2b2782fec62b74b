"""
ResolveChain - Data Model

Issues, resolutions, evidence and ledger attestations.

Lifecycles:
    Issue:       {active, investigating} -> resolved -> verified
    Resolution:  pending | verified -> on_chain

Records serialize to plain dicts (to_dict / from_dict) so they can live in
any KeyedStore backend. Timestamps are timezone-aware UTC datetimes in
memory and ISO-8601 strings on the wire.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# 32 zero bytes, hex-encoded: previous hash of the first link in a custody chain
ZERO_HASH = "0x" + "00" * 32


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 / RFC3339 string (or pass through a datetime)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, UTC)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


# =============================================================================
# Enums
# =============================================================================


class Severity(Enum):
    """Severity of a tracked issue."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueStatus(Enum):
    """Lifecycle status of an issue."""

    ACTIVE = "active"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    VERIFIED = "verified"

    @property
    def rank(self) -> int:
        """Position in the lifecycle; active and investigating share a tier."""
        return _ISSUE_STATUS_RANK[self]

    def can_transition_to(self, target: "IssueStatus") -> bool:
        return target.rank >= self.rank


_ISSUE_STATUS_RANK = {
    IssueStatus.ACTIVE: 0,
    IssueStatus.INVESTIGATING: 0,
    IssueStatus.RESOLVED: 1,
    IssueStatus.VERIFIED: 2,
}


class ResolutionStatus(Enum):
    """Lifecycle status of a resolution."""

    PENDING = "pending"  # Created, did not meet acceptance criteria
    VERIFIED = "verified"  # Met acceptance criteria at creation time
    ON_CHAIN = "on_chain"  # Attested on the ledger


class TimelineEventType(Enum):
    """Kinds of issue timeline events."""

    DETECTED = "detected"
    UPDATED = "updated"
    RESOLVED = "resolved"
    ATTESTED = "attested"


# =============================================================================
# Configuration-like records
# =============================================================================


@dataclass
class ResolutionCriteria:
    """Thresholds a resolution must meet to be marked verified."""

    min_percentage_decrease: float = 0.70
    min_confidence: float = 0.85
    min_window_days: int = 7
    require_positive_sentiment: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_percentage_decrease": self.min_percentage_decrease,
            "min_confidence": self.min_confidence,
            "min_window_days": self.min_window_days,
            "require_positive_sentiment": self.require_positive_sentiment,
        }


@dataclass
class ChainConfig:
    """Configuration for a supported ledger network."""

    name: str
    chain_id: int
    rpc_url: str
    explorer_url: str
    is_testnet: bool
    contract_address: str = ""

    def transaction_url(self, transaction_hash: str) -> str:
        return f"{self.explorer_url}/tx/{transaction_hash}"

    def contract_url(self) -> str:
        return f"{self.explorer_url}/address/{self.contract_address}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "chain_id": self.chain_id,
            "rpc_url": self.rpc_url,
            "explorer_url": self.explorer_url,
            "contract_address": self.contract_address,
            "is_testnet": self.is_testnet,
        }


SUPPORTED_CHAINS: dict[str, ChainConfig] = {
    "base_sepolia": ChainConfig(
        name="Base Sepolia",
        chain_id=84532,
        rpc_url="https://sepolia.base.org",
        explorer_url="https://sepolia.basescan.org",
        is_testnet=True,
    ),
    "base_mainnet": ChainConfig(
        name="Base",
        chain_id=8453,
        rpc_url="https://mainnet.base.org",
        explorer_url="https://basescan.org",
        is_testnet=False,
    ),
    "ethereum_sepolia": ChainConfig(
        name="Ethereum Sepolia",
        chain_id=11155111,
        rpc_url="https://rpc.sepolia.org",
        explorer_url="https://sepolia.etherscan.io",
        is_testnet=True,
    ),
}


# =============================================================================
# Evidence
# =============================================================================


@dataclass
class Evidence:
    """
    Measurable claim substrate behind a resolution.

    percentage_decrease may be None on input; the Resolution Engine fills it
    from the complaint counts. data_sources is a set semantically; the
    canonical encoding sorts it.
    """

    complaints_before: int
    complaints_after: int
    percentage_decrease: float | None = None
    sentiment_shift: float = 0.0
    sample_complaints: list[str] = field(default_factory=list)
    data_sources: list[str] = field(default_factory=list)
    measurement_start: datetime | None = None
    measurement_end: datetime | None = None
    analysis_methodology: str = ""

    def recomputed_percentage_decrease(self) -> float:
        """(before - after) / before, or 0.0 when there was nothing before."""
        if self.complaints_before > 0:
            return (self.complaints_before - self.complaints_after) / self.complaints_before
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "complaints_before": self.complaints_before,
            "complaints_after": self.complaints_after,
            "percentage_decrease": self.percentage_decrease,
            "sentiment_shift": self.sentiment_shift,
            "sample_complaints": list(self.sample_complaints),
            "data_sources": list(self.data_sources),
            "measurement_start": format_timestamp(self.measurement_start),
            "measurement_end": format_timestamp(self.measurement_end),
            "analysis_methodology": self.analysis_methodology,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Evidence":
        pct = data.get("percentage_decrease")
        return cls(
            complaints_before=int(data.get("complaints_before", 0)),
            complaints_after=int(data.get("complaints_after", 0)),
            percentage_decrease=float(pct) if pct is not None else None,
            sentiment_shift=float(data.get("sentiment_shift", 0.0)),
            sample_complaints=[str(s) for s in data.get("sample_complaints") or []],
            data_sources=[str(s) for s in data.get("data_sources") or []],
            measurement_start=parse_timestamp(data.get("measurement_start")),
            measurement_end=parse_timestamp(data.get("measurement_end")),
            analysis_methodology=data.get("analysis_methodology") or "",
        )


# =============================================================================
# Attestation
# =============================================================================


@dataclass
class Attestation:
    """Ledger-side proof that a resolution's commitment was recorded."""

    id: int
    transaction_hash: str
    block_number: int
    block_timestamp: datetime
    chain_id: int
    contract_address: str
    evidence_hash: str
    previous_hash: str
    attestor: str
    explorer_url: str
    verified: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "block_timestamp": format_timestamp(self.block_timestamp),
            "chain_id": self.chain_id,
            "contract_address": self.contract_address,
            "evidence_hash": self.evidence_hash,
            "previous_hash": self.previous_hash,
            "attestor": self.attestor,
            "explorer_url": self.explorer_url,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attestation":
        return cls(
            id=int(data["id"]),
            transaction_hash=data.get("transaction_hash", ""),
            block_number=int(data.get("block_number", 0)),
            block_timestamp=parse_timestamp(data.get("block_timestamp")),
            chain_id=int(data.get("chain_id", 0)),
            contract_address=data.get("contract_address", ""),
            evidence_hash=data["evidence_hash"],
            previous_hash=data.get("previous_hash") or ZERO_HASH,
            attestor=data.get("attestor", ""),
            explorer_url=data.get("explorer_url", ""),
            verified=bool(data.get("verified", False)),
        )


# =============================================================================
# Resolution
# =============================================================================


@dataclass
class Resolution:
    """A claim, with evidence, that an issue's complaint volume has abated."""

    id: str
    issue_id: str
    exchange: str
    issue_category: str
    summary: str
    evidence: Evidence
    confidence: float
    resolution_window: int
    status: ResolutionStatus = ResolutionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    verified_at: datetime | None = None
    attestation: Attestation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "exchange": self.exchange,
            "issue_category": self.issue_category,
            "summary": self.summary,
            "evidence": self.evidence.to_dict(),
            "confidence": self.confidence,
            "resolution_window": self.resolution_window,
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "verified_at": format_timestamp(self.verified_at),
            "attestation": self.attestation.to_dict() if self.attestation else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Resolution":
        attestation = data.get("attestation")
        return cls(
            id=data["id"],
            issue_id=data.get("issue_id", ""),
            exchange=data["exchange"],
            issue_category=data["issue_category"],
            summary=data.get("summary", ""),
            evidence=Evidence.from_dict(data["evidence"]),
            confidence=float(data["confidence"]),
            resolution_window=int(data["resolution_window"]),
            status=ResolutionStatus(data.get("status", "pending")),
            created_at=parse_timestamp(data.get("created_at")),
            verified_at=parse_timestamp(data.get("verified_at")),
            attestation=Attestation.from_dict(attestation) if attestation else None,
        )


# =============================================================================
# Issue
# =============================================================================


@dataclass
class Issue:
    """A tracked complaint cluster about an exchange."""

    id: str
    exchange: str
    category: str
    title: str = ""
    description: str = ""
    complaint_count: int = 0
    severity: Severity = Severity.MEDIUM
    status: IssueStatus = IssueStatus.ACTIVE
    first_detected: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    resolution_id: str | None = None
    attestation: Attestation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "exchange": self.exchange,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "complaint_count": self.complaint_count,
            "severity": self.severity.value,
            "status": self.status.value,
            "first_detected": format_timestamp(self.first_detected),
            "last_updated": format_timestamp(self.last_updated),
            "resolution_id": self.resolution_id,
            "attestation": self.attestation.to_dict() if self.attestation else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Issue":
        attestation = data.get("attestation")
        return cls(
            id=data["id"],
            exchange=data["exchange"],
            category=data["category"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            complaint_count=int(data.get("complaint_count", 0)),
            severity=Severity(data.get("severity", "medium")),
            status=IssueStatus(data.get("status", "active")),
            first_detected=parse_timestamp(data.get("first_detected")),
            last_updated=parse_timestamp(data.get("last_updated")),
            resolution_id=data.get("resolution_id"),
            attestation=Attestation.from_dict(attestation) if attestation else None,
        )


@dataclass
class IssueTimelineEvent:
    """A single entry in an issue's history."""

    timestamp: datetime
    event_type: TimelineEventType
    description: str
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "event_type": self.event_type.value,
            "description": self.description,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IssueTimelineEvent":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            event_type=TimelineEventType(data["event_type"]),
            description=data.get("description", ""),
            data=data.get("data"),
        )


# =============================================================================
# Verification
# =============================================================================


@dataclass
class VerificationResult:
    """Composite verdict returned by the Verification Service."""

    verified: bool
    on_chain: bool
    hash_match: bool
    timestamp_valid: bool
    evidence_hash: str
    attestation: Attestation | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "on_chain": self.on_chain,
            "hash_match": self.hash_match,
            "timestamp_valid": self.timestamp_valid,
            "evidence_hash": self.evidence_hash,
            "attestation": self.attestation.to_dict() if self.attestation else None,
            "message": self.message,
        }
