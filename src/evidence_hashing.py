"""
ResolveChain - Evidence Canonicalizer

Turns an Evidence record into a deterministic byte sequence and derives the
32-byte commitment that is written to the ledger.

Canonical form (version 1):
- UTF-8 JSON, keys sorted, no insignificant whitespace
- strings NFC-normalized
- floats as fixed 6-decimal strings ("0.853000"); negative zero is "0.000000"
- timestamps as RFC3339 UTC with microseconds: "2025-01-08T00:00:00.000000Z"
- data_sources deduplicated and sorted; sample_complaints keep their order
- a "canonical_version" field so the format can evolve without collisions

The digest algorithm is pinned by EVIDENCE_HASH_ALGORITHM and must match the
ledger deployment that stores the commitments. Changing it invalidates every
commitment already on a ledger.
"""

import json
import re
import unicodedata
from datetime import UTC, datetime
from typing import Any

from Crypto.Hash import keccak

from errors import InvalidEvidenceError
from models import Evidence

EVIDENCE_HASH_ALGORITHM = "keccak256"
CANONICAL_VERSION = 1
COMMITMENT_SIZE = 32
FLOAT_DECIMALS = 6

_COMMITMENT_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def _canonical_float(value: float) -> str:
    # Adding 0.0 folds -0.0 into 0.0
    return f"{float(value) + 0.0:.{FLOAT_DECIMALS}f}"


def _canonical_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _canonical_text(value: str) -> str:
    return unicodedata.normalize("NFC", value)


def canonical_fields(evidence: Evidence) -> dict[str, Any]:
    """
    Build the canonical field mapping for an Evidence record.

    Raises:
        InvalidEvidenceError: If a required field is absent
    """
    missing = []
    if evidence.measurement_start is None:
        missing.append("measurement_start")
    if evidence.measurement_end is None:
        missing.append("measurement_end")
    if evidence.percentage_decrease is None:
        missing.append("percentage_decrease")
    if evidence.complaints_before is None:
        missing.append("complaints_before")
    if evidence.complaints_after is None:
        missing.append("complaints_after")
    if missing:
        raise InvalidEvidenceError(
            f"Cannot canonicalize evidence, missing fields: {missing}",
            {"missing": missing},
        )

    return {
        "analysis_methodology": _canonical_text(evidence.analysis_methodology or ""),
        "canonical_version": CANONICAL_VERSION,
        "complaints_after": int(evidence.complaints_after),
        "complaints_before": int(evidence.complaints_before),
        "data_sources": sorted({_canonical_text(s) for s in evidence.data_sources}),
        "measurement_end": _canonical_timestamp(evidence.measurement_end),
        "measurement_start": _canonical_timestamp(evidence.measurement_start),
        "percentage_decrease": _canonical_float(evidence.percentage_decrease),
        "sample_complaints": [_canonical_text(s) for s in evidence.sample_complaints],
        "sentiment_shift": _canonical_float(evidence.sentiment_shift),
    }


def canonicalize(evidence: Evidence) -> bytes:
    """Serialize evidence to its canonical byte sequence."""
    return json.dumps(
        canonical_fields(evidence),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def keccak256(data: bytes) -> bytes:
    """Legacy Keccak-256 as used by EVM contracts (not NIST SHA3-256)."""
    return keccak.new(digest_bits=256, data=data).digest()


def hash_evidence(evidence: Evidence) -> bytes:
    """Compute the raw 32-byte commitment for evidence."""
    return keccak256(canonicalize(evidence))


def hash_evidence_hex(evidence: Evidence) -> str:
    """Compute the commitment as a 0x-prefixed lowercase hex string."""
    return "0x" + hash_evidence(evidence).hex()


def is_commitment(value: str) -> bool:
    return isinstance(value, str) and bool(_COMMITMENT_RE.match(value.strip()))


def normalize_commitment(value: str) -> str:
    """
    Normalize a user-supplied commitment to 0x-prefixed lowercase hex.

    Raises:
        InvalidEvidenceError: If the value is not a 32-byte hex string
    """
    if not is_commitment(value):
        raise InvalidEvidenceError(
            "Evidence hash must be 32 bytes of hex (64 characters, optional 0x prefix)",
            {"evidence_hash": value},
        )
    text = value.strip().lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text
