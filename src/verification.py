"""
ResolveChain - Verification Service

Independently re-checks a resolution against the ledger. The truth value
never comes from the locally cached attestation: the commitment is always
recomputed from the stored evidence and the ledger is always queried.

    verified = hash_match and on_chain

timestamp_valid is reported alongside: the ledger's timestamp must not be
in the future (beyond a small clock skew) and must not be implausibly old.
"""

import logging
from datetime import timedelta

from attestation import AttestationGateway, LedgerLookup
from errors import HashMismatchError, NotFoundError, ValidationError
from evidence_hashing import hash_evidence_hex, normalize_commitment
from models import VerificationResult, utcnow
from monitoring import metrics, timed
from resolution_engine import ResolutionEngine

logger = logging.getLogger(__name__)

DEFAULT_MAX_CLOCK_SKEW = 300.0
DEFAULT_MAX_AGE_DAYS = 3650


class VerificationService:
    def __init__(
        self,
        engine: ResolutionEngine,
        gateway: AttestationGateway,
        max_clock_skew: float = DEFAULT_MAX_CLOCK_SKEW,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    ):
        self.engine = engine
        self.gateway = gateway
        self.max_clock_skew = timedelta(seconds=max_clock_skew)
        self.max_age = timedelta(days=max_age_days)

    @timed("verification_duration_ms")
    def verify(
        self,
        resolution_id: str | None = None,
        evidence_hash: str | None = None,
        strict: bool = False,
    ) -> VerificationResult:
        """
        Verify a resolution (by id) or a bare commitment against the ledger.

        Args:
            resolution_id: Resolution whose evidence is re-hashed and looked up
            evidence_hash: Commitment to look up directly
            strict: Raise HashMismatchError instead of returning hash_match=False

        Raises:
            ValidationError: Unless exactly one of resolution_id / evidence_hash is given
            NotFoundError: If the resolution does not exist
            LedgerUnavailableError: If the ledger cannot be reached
        """
        if bool(resolution_id) == bool(evidence_hash):
            raise ValidationError("Provide exactly one of resolution_id or evidence_hash")

        if resolution_id:
            result = self._verify_resolution(resolution_id, strict)
        else:
            result = self._verify_commitment(normalize_commitment(evidence_hash))

        metrics.increment("verifications_total", labels={"result": "verified" if result.verified else "unverified"})
        return result

    def _verify_commitment(self, commitment: str) -> VerificationResult:
        lookup = self.gateway.verify_by_commitment(commitment)
        if not lookup.exists:
            return self._not_on_chain(commitment)
        return self._compare(commitment, lookup)

    def _verify_resolution(self, resolution_id: str, strict: bool) -> VerificationResult:
        resolution = self.engine.get_resolution(resolution_id)
        recomputed = hash_evidence_hex(resolution.evidence)

        lookup = self.gateway.verify_by_commitment(recomputed)
        if lookup.exists:
            return self._compare(recomputed, lookup)

        # The recomputed hash is unknown to the ledger. If this resolution was
        # attested, fetch what the ledger holds for that attestation id.
        cached = resolution.attestation
        if cached is None:
            return self._not_on_chain(recomputed)

        try:
            record = self.gateway.get_record(cached.id)
        except NotFoundError:
            logger.error(
                "Cached attestation id is unknown to the ledger",
                extra={"resolution_id": resolution_id, "attestation_id": cached.id},
            )
            return self._not_on_chain(recomputed, "Attestation id not found on ledger")

        lookup = LedgerLookup(
            exists=True,
            evidence_hash=record.evidence_hash,
            record=record,
            attestation=self.gateway.get_by_id(record.id),
        )
        result = self._compare(recomputed, lookup)
        if not result.hash_match:
            metrics.increment("hash_mismatch_total")
            logger.error(
                "Evidence hash mismatch: stored evidence differs from ledger commitment",
                extra={
                    "resolution_id": resolution_id,
                    "recomputed": recomputed,
                    "on_ledger": record.evidence_hash,
                },
            )
            if strict:
                raise HashMismatchError(recomputed, record.evidence_hash, resolution_id)
        return result

    def _compare(self, commitment: str, lookup: LedgerLookup) -> VerificationResult:
        record = lookup.record
        hash_match = record.evidence_hash == commitment
        timestamp_valid = self.timestamp_is_valid(record.timestamp)

        if not hash_match:
            message = "Evidence hash does not match ledger commitment"
        elif not timestamp_valid:
            message = "Commitment found on ledger but its timestamp is implausible"
        else:
            message = "Commitment verified on ledger"

        return VerificationResult(
            verified=hash_match,
            on_chain=True,
            hash_match=hash_match,
            timestamp_valid=timestamp_valid,
            evidence_hash=commitment,
            attestation=lookup.attestation,
            message=message,
        )

    @staticmethod
    def _not_on_chain(commitment: str, message: str = "Commitment not found on ledger") -> VerificationResult:
        return VerificationResult(
            verified=False,
            on_chain=False,
            hash_match=False,
            timestamp_valid=False,
            evidence_hash=commitment,
            message=message,
        )

    def timestamp_is_valid(self, timestamp) -> bool:
        if timestamp is None:
            return False
        now = utcnow()
        return now - self.max_age <= timestamp <= now + self.max_clock_skew
