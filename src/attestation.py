"""
ResolveChain - Attestation Gateway

Anchors a resolution's evidence commitment on the external ledger and
keeps the per-(exchange, issue category) chain of custody intact.

Attest flow:
1. A resolution that already carries an attestation is returned unchanged.
2. The commitment is recomputed from the stored evidence.
3. Under the custody lock for (exchange, category):
   - a commitment already on the ledger (or in flight) is either adopted,
     when it belongs to this resolution's earlier attempt, or refused as a
     duplicate
   - otherwise the write is submitted and its receipt awaited, bounded by
     confirmation_timeout and cancellable through a threading.Event
4. The confirmed commitment is appended to the custody log and the
   attestation is attached to the resolution and its issue.

The issue and resolution locks are only taken by the final attach step,
never across the ledger round-trip. The custody lock is held across it so
two writes for the same pair cannot claim the same previous hash.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from errors import (
    AttestationCancelledError,
    ConcurrentModificationError,
    DuplicateCommitmentError,
    LedgerError,
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnavailableError,
)
from evidence_hashing import hash_evidence_hex, normalize_commitment
from ledger import LedgerClient, LedgerReceipt, LedgerRecord
from models import ZERO_HASH, Attestation, Resolution, format_timestamp, utcnow
from monitoring import LoggingContext, metrics
from resolution_engine import ResolutionEngine
from scaling import LockManager, custody_lock_name, get_lock_manager
from storage import KeyedStore, MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_TIMEOUT = 120.0
DEFAULT_POLL_INTERVAL = 2.0


@dataclass
class LedgerLookup:
    """Result of looking a commitment up on the ledger."""

    exists: bool
    evidence_hash: str
    record: LedgerRecord | None = None
    attestation: Attestation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "exists": self.exists,
            "evidence_hash": self.evidence_hash,
            "record": self.record.to_dict() if self.record else None,
            "attestation": self.attestation.to_dict() if self.attestation else None,
        }


class CustodyLog:
    """
    Append-only log of confirmed commitments per (exchange, category).

    The latest commitment is the last entry, never a separate pointer.
    Appends are expected to run under the custody lock for the pair and are
    committed with compare_and_swap.
    """

    def __init__(self, store: KeyedStore | None = None):
        self.store = store if store is not None else MemoryStore()

    @staticmethod
    def key(exchange: str, issue_category: str) -> str:
        # JSON array keeps pairs distinct whatever characters the names contain
        return json.dumps([exchange, issue_category], ensure_ascii=False)

    def chain(self, exchange: str, issue_category: str) -> list[dict[str, Any]]:
        data = self.store.get(self.key(exchange, issue_category))
        return list(data["entries"]) if data else []

    def latest(self, exchange: str, issue_category: str) -> str | None:
        entries = self.chain(exchange, issue_category)
        return entries[-1]["evidence_hash"] if entries else None

    def append(self, exchange: str, issue_category: str, attestation: Attestation,
               resolution_id: str) -> None:
        key = self.key(exchange, issue_category)
        current = self.store.get(key)
        entries = list(current["entries"]) if current else []

        if entries and entries[-1]["evidence_hash"] == attestation.evidence_hash:
            return

        entries.append({
            "evidence_hash": attestation.evidence_hash,
            "previous_hash": attestation.previous_hash,
            "attestation_id": attestation.id,
            "resolution_id": resolution_id,
            "recorded_at": format_timestamp(utcnow()),
        })
        if not self.store.compare_and_swap(key, current, {"entries": entries}):
            raise ConcurrentModificationError(
                f"Custody log for {key} was modified concurrently",
                {"exchange": exchange, "issue_category": issue_category},
            )

    def count(self) -> int:
        return self.store.count()


class AttestationGateway:
    """Writes commitments to the ledger and reads them back."""

    def __init__(
        self,
        engine: ResolutionEngine,
        ledger: LedgerClient,
        custody_store: KeyedStore | None = None,
        lock_manager: LockManager | None = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        lock_timeout: float | None = None,
    ):
        self.engine = engine
        self.ledger = ledger
        self.custody = CustodyLog(custody_store)
        self.locks = lock_manager or get_lock_manager()
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        # Waiting for the custody lock may take as long as another write's confirmation
        self.lock_timeout = lock_timeout if lock_timeout is not None else confirmation_timeout + 30.0

        # commitment -> (resolution_id, transaction_ref) for writes awaiting confirmation
        self._in_flight: dict[str, tuple[str, str]] = {}
        self._in_flight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Attest
    # ------------------------------------------------------------------

    def attest(self, resolution: Resolution | str,
               cancel_event: threading.Event | None = None) -> Attestation:
        """
        Anchor a resolution on the ledger.

        Args:
            resolution: Resolution or resolution id
            cancel_event: Set it to abandon the wait for confirmation

        Returns:
            The resolution's attestation

        Raises:
            NotFoundError: If the resolution does not exist
            LedgerUnavailableError: The ledger could not be reached (safe to retry)
            LedgerTimeoutError: Submitted but unconfirmed; calling attest again
                re-checks the ledger before writing anything
            LedgerRejectedError: The ledger refused the write
            DuplicateCommitmentError: Another resolution already anchored this evidence
            AttestationCancelledError: cancel_event was set before confirmation
        """
        resolution_id = resolution if isinstance(resolution, str) else resolution.id
        current = self.engine.get_resolution(resolution_id)
        if current.attestation is not None:
            metrics.increment("attestations_total", labels={"outcome": "already_attested"})
            return current.attestation

        commitment = hash_evidence_hex(current.evidence)
        exchange, category = current.exchange, current.issue_category

        with LoggingContext(resolution_id=resolution_id, evidence_hash=commitment):
            start = time.perf_counter()
            try:
                with self.locks.lock(custody_lock_name(exchange, category), timeout=self.lock_timeout):
                    # Another caller may have finished while we waited for the lock
                    current = self.engine.get_resolution(resolution_id)
                    if current.attestation is not None:
                        metrics.increment("attestations_total", labels={"outcome": "already_attested"})
                        return current.attestation

                    attestation = self._anchor(current, commitment, cancel_event)
                    self.custody.append(exchange, category, attestation, resolution_id)
                    self.engine.attach_attestation(resolution_id, attestation)
                    self._clear_in_flight(commitment)

            except AttestationCancelledError:
                metrics.increment("attestations_total", labels={"outcome": "cancelled"})
                logger.warning("Attestation cancelled before confirmation")
                raise
            except LedgerError as e:
                if isinstance(e, LedgerRejectedError) and not isinstance(e, DuplicateCommitmentError):
                    # A reverted write never lands, so the next attempt submits again
                    self._clear_in_flight(commitment)
                metrics.increment("attestations_total", labels={"outcome": type(e).__name__})
                logger.error(f"Attestation failed: {e.message}", extra={"error_type": type(e).__name__})
                raise

            metrics.timing("attestation_duration_ms", (time.perf_counter() - start) * 1000)
            metrics.increment("attestations_total", labels={"outcome": "confirmed"})
            logger.info(
                "Attestation confirmed",
                extra={
                    "attestation_id": attestation.id,
                    "transaction_hash": attestation.transaction_hash,
                    "previous_hash": attestation.previous_hash,
                },
            )
        return attestation

    def _anchor(self, resolution: Resolution, commitment: str,
                cancel_event: threading.Event | None) -> Attestation:
        # Runs under the custody lock
        in_flight = self._get_in_flight(commitment)
        if in_flight is not None:
            owner, transaction_ref = in_flight
            if owner != resolution.id:
                raise DuplicateCommitmentError(
                    "Commitment is being attested for another resolution",
                    {"evidence_hash": commitment, "resolution_id": owner},
                )
            logger.info("Re-checking earlier submission", extra={"transaction_ref": transaction_ref})
            receipt = self._await_receipt(transaction_ref, commitment, cancel_event)
            return self._from_receipt(receipt)

        exists, attestation_id = self.ledger.find_commitment(commitment)
        if exists:
            return self._adopt(resolution, commitment, attestation_id)

        expected_previous = self._expected_previous(resolution.exchange, resolution.issue_category)

        self._check_cancelled(cancel_event)
        transaction_ref = self.ledger.submit_commitment(
            resolution.exchange, resolution.issue_category, commitment
        )
        self._set_in_flight(commitment, resolution.id, transaction_ref)
        logger.info("Commitment submitted", extra={"transaction_ref": transaction_ref})

        receipt = self._await_receipt(transaction_ref, commitment, cancel_event)
        if receipt.previous_hash != expected_previous:
            metrics.increment("ledger_previous_hash_mismatch_total")
            logger.warning(
                "Ledger previous hash differs from local custody log",
                extra={"expected": expected_previous, "on_ledger": receipt.previous_hash},
            )
        return self._from_receipt(receipt)

    def _adopt(self, resolution: Resolution, commitment: str, attestation_id: int) -> Attestation:
        """
        Take over a commitment already on the ledger.

        Allowed only when no other resolution carries it and the ledger
        record belongs to this resolution's custody chain, which is what an
        earlier attempt that timed out or crashed leaves behind.
        """
        for other in self.engine.list_resolutions():
            if other.id != resolution.id and other.attestation is not None \
                    and other.attestation.evidence_hash == commitment:
                raise DuplicateCommitmentError(
                    "Commitment already attested for another resolution",
                    {"evidence_hash": commitment, "resolution_id": other.id},
                )

        record = self.ledger.get_record(attestation_id)
        if (record.exchange, record.issue_category) != (resolution.exchange, resolution.issue_category):
            raise DuplicateCommitmentError(
                "Commitment already recorded under a different custody chain",
                {"evidence_hash": commitment, "attestation_id": attestation_id},
            )

        logger.info("Adopting commitment already on ledger", extra={"attestation_id": attestation_id})
        metrics.increment("attestations_adopted_total")
        return self._from_record(record)

    def _expected_previous(self, exchange: str, issue_category: str) -> str:
        latest = self.custody.latest(exchange, issue_category)
        if latest is not None:
            return latest
        # Empty local log: the ledger may already hold earlier links
        return self.ledger.latest_commitment(exchange, issue_category)

    def _await_receipt(self, transaction_ref: str, commitment: str,
                       cancel_event: threading.Event | None) -> LedgerReceipt:
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            self._check_cancelled(cancel_event)
            receipt = self.ledger.get_receipt(transaction_ref)
            if receipt is not None:
                return receipt

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LedgerTimeoutError(
                    f"No ledger confirmation within {self.confirmation_timeout}s",
                    transaction_ref=transaction_ref,
                    commitment=commitment,
                )

            wait = min(self.poll_interval, remaining)
            if cancel_event is not None:
                cancel_event.wait(wait)
            else:
                time.sleep(wait)

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise AttestationCancelledError("Attestation cancelled")

    # In-flight bookkeeping

    def _get_in_flight(self, commitment: str) -> tuple[str, str] | None:
        with self._in_flight_lock:
            return self._in_flight.get(commitment)

    def _set_in_flight(self, commitment: str, resolution_id: str, transaction_ref: str) -> None:
        with self._in_flight_lock:
            self._in_flight[commitment] = (resolution_id, transaction_ref)

    def _clear_in_flight(self, commitment: str) -> None:
        with self._in_flight_lock:
            self._in_flight.pop(commitment, None)

    def in_flight_count(self) -> int:
        with self._in_flight_lock:
            return len(self._in_flight)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _from_receipt(self, receipt: LedgerReceipt) -> Attestation:
        chain = self.ledger.chain_config
        return Attestation(
            id=receipt.attestation_id,
            transaction_hash=receipt.transaction_hash,
            block_number=receipt.block_number,
            block_timestamp=receipt.block_timestamp,
            chain_id=chain.chain_id,
            contract_address=chain.contract_address,
            evidence_hash=receipt.evidence_hash,
            previous_hash=receipt.previous_hash or ZERO_HASH,
            attestor=receipt.attestor or self.ledger.attestor,
            explorer_url=self.ledger.explorer_url(receipt.transaction_hash),
            verified=True,
        )

    def _from_record(self, record: LedgerRecord) -> Attestation:
        chain = self.ledger.chain_config
        if record.transaction_hash:
            explorer_url = self.ledger.explorer_url(record.transaction_hash)
        else:
            explorer_url = chain.contract_url()
        return Attestation(
            id=record.id,
            transaction_hash=record.transaction_hash,
            block_number=record.block_number,
            block_timestamp=record.timestamp,
            chain_id=chain.chain_id,
            contract_address=chain.contract_address,
            evidence_hash=record.evidence_hash,
            previous_hash=record.previous_hash or ZERO_HASH,
            attestor=record.attestor,
            explorer_url=explorer_url,
            verified=True,
        )

    def verify_by_commitment(self, evidence_hash: str) -> LedgerLookup:
        """
        Look a commitment up on the ledger.

        Raises:
            InvalidEvidenceError: If evidence_hash is not 32 bytes of hex
            LedgerUnavailableError: If the ledger cannot be reached
        """
        commitment = normalize_commitment(evidence_hash)
        exists, attestation_id = self.ledger.find_commitment(commitment)
        if not exists:
            return LedgerLookup(exists=False, evidence_hash=commitment)

        record = self.ledger.get_record(attestation_id)
        return LedgerLookup(
            exists=True,
            evidence_hash=commitment,
            record=record,
            attestation=self._from_record(record),
        )

    def get_record(self, attestation_id: int) -> LedgerRecord:
        return self.ledger.get_record(attestation_id)

    def get_by_id(self, attestation_id: int) -> Attestation:
        """Raises NotFoundError for an id the ledger does not know."""
        return self._from_record(self.ledger.get_record(attestation_id))

    def get_stats(self) -> dict[str, Any]:
        stats = {
            "custody_chains": self.custody.count(),
            "in_flight": self.in_flight_count(),
            "ledger": self.ledger.get_info(),
        }
        try:
            stats["on_chain_attestation_count"] = self.ledger.commitment_count()
        except LedgerUnavailableError as e:
            logger.warning(f"Ledger unavailable for stats: {e.message}")
        return stats
