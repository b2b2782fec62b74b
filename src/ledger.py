"""
ResolveChain - Ledger Clients

The ledger is an external, append-only store of resolution commitments
(in production a contract on an EVM chain reached through a relayer). It
keeps, per commitment:

    evidence hash, previous hash, timestamp, block number,
    exchange, issue category, attestor

plus a global commitment counter, the latest commitment per
(exchange, issue category) and a ResolutionRecorded event per write.

Two implementations share the LedgerClient interface:

- InMemoryLedger: a faithful in-process model of the contract, used by
  tests and local development (LEDGER_BACKEND=memory)
- HttpLedgerClient: talks JSON to a ledger relayer (LEDGER_BACKEND=http)
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import (
    DuplicateCommitmentError,
    LedgerRejectedError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    NotFoundError,
)
from evidence_hashing import COMMITMENT_SIZE, is_commitment, keccak256
from models import SUPPORTED_CHAINS, ZERO_HASH, ChainConfig, parse_timestamp, utcnow
from retry import CircuitBreaker, get_circuit_breaker, is_retryable_status_code

logger = logging.getLogger(__name__)

RESOLUTION_RECORDED = "ResolutionRecorded"
DEFAULT_ATTESTOR = "0x" + "00" * 19 + "01"


@dataclass
class LedgerRecord:
    """A commitment as stored by the ledger."""

    id: int
    evidence_hash: str
    previous_hash: str
    timestamp: datetime
    block_number: int
    exchange: str
    issue_category: str
    attestor: str
    transaction_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "evidence_hash": self.evidence_hash,
            "previous_hash": self.previous_hash,
            "timestamp": int(self.timestamp.timestamp()),
            "block_number": self.block_number,
            "exchange": self.exchange,
            "issue_category": self.issue_category,
            "attestor": self.attestor,
            "transaction_hash": self.transaction_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerRecord":
        return cls(
            id=int(data["id"]),
            evidence_hash=data["evidence_hash"].lower(),
            previous_hash=(data.get("previous_hash") or ZERO_HASH).lower(),
            timestamp=parse_timestamp(data["timestamp"]),
            block_number=int(data.get("block_number", 0)),
            exchange=data.get("exchange", ""),
            issue_category=data.get("issue_category", ""),
            attestor=data.get("attestor", ""),
            transaction_hash=data.get("transaction_hash", ""),
        )


@dataclass
class LedgerReceipt:
    """Confirmation that a submitted write was included."""

    transaction_hash: str
    attestation_id: int
    block_number: int
    block_timestamp: datetime
    evidence_hash: str
    previous_hash: str
    exchange: str
    issue_category: str
    attestor: str
    success: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerReceipt":
        return cls(
            transaction_hash=data["transaction_hash"],
            attestation_id=int(data["attestation_id"]),
            block_number=int(data["block_number"]),
            block_timestamp=parse_timestamp(data["block_timestamp"]),
            evidence_hash=data["evidence_hash"].lower(),
            previous_hash=(data.get("previous_hash") or ZERO_HASH).lower(),
            exchange=data.get("exchange", ""),
            issue_category=data.get("issue_category", ""),
            attestor=data.get("attestor", ""),
            success=bool(data.get("success", True)),
        )


@dataclass
class LedgerEvent:
    """Event emitted on every successful write, for external indexers."""

    name: str
    attestation_id: int
    exchange: str
    issue_category: str
    evidence_hash: str
    previous_hash: str
    timestamp: datetime
    attestor: str
    block_number: int = 0
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "attestation_id": self.attestation_id,
            "exchange": self.exchange,
            "issue_category": self.issue_category,
            "evidence_hash": self.evidence_hash,
            "previous_hash": self.previous_hash,
            "timestamp": int(self.timestamp.timestamp()),
            "block_number": self.block_number,
            "attestor": self.attestor,
        }


class LedgerClient(ABC):
    """
    Interface to the external commitment ledger.

    Methods raise LedgerUnavailableError when the ledger cannot be
    reached, which callers must keep distinct from "not found".
    """

    def __init__(self, chain_config: ChainConfig, attestor: str):
        self.chain_config = chain_config
        self.attestor = attestor

    @abstractmethod
    def submit_commitment(self, exchange: str, issue_category: str, evidence_hash: str) -> str:
        """
        Submit a commitment write.

        Returns:
            Transaction reference to poll with get_receipt

        Raises:
            LedgerUnavailableError: The write was not sent
            LedgerRejectedError: The ledger refused the write
            DuplicateCommitmentError: The commitment is already recorded
            LedgerTimeoutError: The write was sent but its fate is unknown
        """

    @abstractmethod
    def get_receipt(self, transaction_ref: str) -> LedgerReceipt | None:
        """Receipt for a submitted write, or None while unconfirmed."""

    @abstractmethod
    def find_commitment(self, evidence_hash: str) -> tuple[bool, int]:
        """(exists, attestation id) for a commitment; id is 0 when absent."""

    @abstractmethod
    def get_record(self, attestation_id: int) -> LedgerRecord:
        """Raises NotFoundError for an unknown id."""

    @abstractmethod
    def latest_commitment(self, exchange: str, issue_category: str) -> str:
        """Latest commitment for a custody chain, ZERO_HASH if none."""

    @abstractmethod
    def commitment_count(self) -> int:
        pass

    def is_available(self) -> bool:
        try:
            self.commitment_count()
            return True
        except LedgerUnavailableError:
            return False

    def explorer_url(self, transaction_hash: str) -> str:
        return self.chain_config.transaction_url(transaction_hash)

    def get_info(self) -> dict[str, Any]:
        return {
            "backend": self.__class__.__name__,
            "chain": self.chain_config.to_dict(),
            "attestor": self.attestor,
        }


def _validate_write(exchange: str, issue_category: str, evidence_hash: str) -> str:
    if not exchange:
        raise LedgerRejectedError("Exchange cannot be empty")
    if not issue_category:
        raise LedgerRejectedError("Issue category cannot be empty")
    if not is_commitment(evidence_hash) or bytes.fromhex(evidence_hash.strip()[-64:]) == bytes(COMMITMENT_SIZE):
        raise LedgerRejectedError(
            "Invalid evidence hash",
            {"evidence_hash": evidence_hash},
        )
    text = evidence_hash.strip().lower()
    return text if text.startswith("0x") else "0x" + text


# =============================================================================
# In-process ledger
# =============================================================================


@dataclass
class _PendingWrite:
    record: LedgerRecord
    polls_remaining: int


class InMemoryLedger(LedgerClient):
    """
    In-process model of the attestation contract.

    Writes are included immediately (the record, latest pointer, counter
    and event all change together) and become visible through
    get_receipt after ``confirmations_required`` polls.

    Test hooks:
        available = False   every call raises LedgerUnavailableError
        stall = True        get_receipt never confirms
    """

    def __init__(
        self,
        chain_config: ChainConfig | None = None,
        attestor: str = DEFAULT_ATTESTOR,
        confirmations_required: int = 1,
    ):
        config = chain_config or SUPPORTED_CHAINS["base_sepolia"]
        super().__init__(config, attestor)
        self.confirmations_required = max(1, confirmations_required)

        self.available = True
        self.stall = False
        self.submission_count = 0

        self._lock = threading.RLock()
        self._records: dict[int, LedgerRecord] = {}
        self._by_hash: dict[str, int] = {}
        self._latest: dict[tuple[str, str], str] = {}
        self._pending: dict[str, _PendingWrite] = {}
        self._events: list[LedgerEvent] = []
        self._ids = itertools.count(1)
        self._block_number = 0
        self._last_timestamp = utcnow().replace(microsecond=0)

    def _check_available(self) -> None:
        if not self.available:
            raise LedgerUnavailableError("Ledger is unreachable", {"backend": "memory"})

    # Contract surface

    def record_resolution(self, exchange: str, issue_category: str, evidence_hash: str) -> LedgerRecord:
        """Append a commitment; the contract's recordResolution."""
        evidence_hash = _validate_write(exchange, issue_category, evidence_hash)

        with self._lock:
            if evidence_hash in self._by_hash:
                raise DuplicateCommitmentError(
                    "Hash already recorded",
                    {"evidence_hash": evidence_hash, "attestation_id": self._by_hash[evidence_hash]},
                )

            attestation_id = next(self._ids)
            self._block_number += 1
            timestamp = max(utcnow().replace(microsecond=0), self._last_timestamp)
            self._last_timestamp = timestamp
            key = (exchange, issue_category)

            record = LedgerRecord(
                id=attestation_id,
                evidence_hash=evidence_hash,
                previous_hash=self._latest.get(key, ZERO_HASH),
                timestamp=timestamp,
                block_number=self._block_number,
                exchange=exchange,
                issue_category=issue_category,
                attestor=self.attestor,
                transaction_hash="0x" + keccak256(
                    f"{self.chain_config.chain_id}:{attestation_id}:{evidence_hash}".encode()
                ).hex(),
            )

            self._records[attestation_id] = record
            self._by_hash[evidence_hash] = attestation_id
            self._latest[key] = evidence_hash
            self._events.append(LedgerEvent(
                name=RESOLUTION_RECORDED,
                attestation_id=attestation_id,
                exchange=exchange,
                issue_category=issue_category,
                evidence_hash=evidence_hash,
                previous_hash=record.previous_hash,
                timestamp=record.timestamp,
                attestor=self.attestor,
                block_number=record.block_number,
            ))
            return record

    def verify_hash(self, evidence_hash: str) -> tuple[bool, int]:
        with self._lock:
            attestation_id = self._by_hash.get(evidence_hash.strip().lower(), 0)
        return attestation_id != 0, attestation_id

    def get_attestation(self, attestation_id: int) -> LedgerRecord:
        with self._lock:
            record = self._records.get(int(attestation_id))
        if record is None:
            raise NotFoundError("Attestation", attestation_id)
        return record

    def attestation_count(self) -> int:
        with self._lock:
            return len(self._records)

    def events(self) -> list[LedgerEvent]:
        with self._lock:
            return list(self._events)

    # LedgerClient

    def submit_commitment(self, exchange: str, issue_category: str, evidence_hash: str) -> str:
        self._check_available()
        with self._lock:
            self.submission_count += 1
            record = self.record_resolution(exchange, issue_category, evidence_hash)
            self._pending[record.transaction_hash] = _PendingWrite(record, self.confirmations_required)
        logger.debug(
            "Commitment included",
            extra={"attestation_id": record.id, "transaction_hash": record.transaction_hash},
        )
        return record.transaction_hash

    def get_receipt(self, transaction_ref: str) -> LedgerReceipt | None:
        self._check_available()
        with self._lock:
            pending = self._pending.get(transaction_ref)
            if pending is None:
                raise NotFoundError("Transaction", transaction_ref)
            if self.stall:
                return None

            pending.polls_remaining -= 1
            if pending.polls_remaining > 0:
                return None

            record = pending.record
            return LedgerReceipt(
                transaction_hash=record.transaction_hash,
                attestation_id=record.id,
                block_number=record.block_number,
                block_timestamp=record.timestamp,
                evidence_hash=record.evidence_hash,
                previous_hash=record.previous_hash,
                exchange=record.exchange,
                issue_category=record.issue_category,
                attestor=record.attestor,
            )

    def find_commitment(self, evidence_hash: str) -> tuple[bool, int]:
        self._check_available()
        return self.verify_hash(evidence_hash)

    def get_record(self, attestation_id: int) -> LedgerRecord:
        self._check_available()
        return self.get_attestation(attestation_id)

    def latest_commitment(self, exchange: str, issue_category: str) -> str:
        self._check_available()
        with self._lock:
            return self._latest.get((exchange, issue_category), ZERO_HASH)

    def commitment_count(self) -> int:
        self._check_available()
        return self.attestation_count()

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["confirmations_required"] = self.confirmations_required
        return info


# =============================================================================
# HTTP relayer client
# =============================================================================

CONNECT_TIMEOUT = 5
MAX_READ_RETRIES = 3
RETRY_BACKOFF_FACTOR = 0.5


class HttpLedgerClient(LedgerClient):
    """
    Client for a ledger relayer speaking JSON over HTTP.

    Relayer API:
        POST /commitments                          submit, -> {transaction_hash}
        GET  /transactions/<tx>                    receipt, 202/404 while pending
        GET  /commitments/<hash>                   -> {exists, id}
        GET  /attestations/<id>                    ledger record
        GET  /custody/<exchange>/<category>/latest -> {evidence_hash}
        GET  /attestations/count                   -> {count}

    Reads are retried by the transport; writes never are, since a resent
    write could be recorded twice.
    """

    def __init__(
        self,
        base_url: str,
        chain_config: ChainConfig,
        attestor: str,
        api_token: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        super().__init__(chain_config, attestor)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or get_circuit_breaker("ledger_rpc")
        self.session = session or self._build_session()
        if api_token:
            self.session.headers["Authorization"] = f"Bearer {api_token}"

    def _build_session(self) -> requests.Session:
        session = requests.Session()

        retry_strategy = Retry(
            total=MAX_READ_RETRIES,
            backoff_factor=RETRY_BACKOFF_FACTOR,
            status_forcelist=[429, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "ResolveChain-Python/1",
        })
        return session

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        if not self.circuit_breaker.is_allowed():
            raise LedgerUnavailableError(
                "Ledger circuit is open",
                {"circuit": self.circuit_breaker.name},
            )

        url = f"{self.base_url}{path}"
        is_write = method.upper() != "GET"

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=body,
                timeout=(CONNECT_TIMEOUT, self.timeout),
            )
        except requests.exceptions.ConnectionError as e:
            # Includes ConnectTimeout: nothing reached the relayer
            self.circuit_breaker.record_failure()
            raise LedgerUnavailableError(f"Ledger connection failed: {e}", {"url": url}) from e
        except requests.exceptions.Timeout as e:
            self.circuit_breaker.record_failure()
            if is_write:
                raise LedgerTimeoutError(
                    "Ledger write timed out; outcome unknown",
                    commitment=(body or {}).get("evidence_hash"),
                ) from e
            raise LedgerUnavailableError(f"Ledger read timed out: {e}", {"url": url}) from e

        status = response.status_code
        if allow_missing and status in (202, 404):
            self.circuit_breaker.record_success()
            return None

        if is_retryable_status_code(status):
            self.circuit_breaker.record_failure()
            raise LedgerUnavailableError(
                f"Ledger returned HTTP {status}",
                {"url": url, "status_code": status},
            )

        # The relayer answered, so the dependency is healthy even on a 4xx
        self.circuit_breaker.record_success()

        if status == 404:
            return None
        if status == 409:
            raise DuplicateCommitmentError("Hash already recorded", _error_details(response))
        if status >= 400:
            raise LedgerRejectedError(
                f"Ledger rejected request: HTTP {status}",
                _error_details(response),
            )

        try:
            return response.json()
        except ValueError as e:
            raise LedgerRejectedError("Ledger returned a non-JSON response", {"url": url}) from e

    def submit_commitment(self, exchange: str, issue_category: str, evidence_hash: str) -> str:
        evidence_hash = _validate_write(exchange, issue_category, evidence_hash)
        data = self._request("POST", "/commitments", {
            "exchange": exchange,
            "issue_category": issue_category,
            "evidence_hash": evidence_hash,
            "attestor": self.attestor,
            "chain_id": self.chain_config.chain_id,
            "contract_address": self.chain_config.contract_address,
        })
        if not data or not data.get("transaction_hash"):
            raise LedgerRejectedError("Ledger accepted the write without a transaction hash")
        return data["transaction_hash"]

    def get_receipt(self, transaction_ref: str) -> LedgerReceipt | None:
        data = self._request("GET", f"/transactions/{transaction_ref}", allow_missing=True)
        if data is None:
            return None
        receipt = LedgerReceipt.from_dict(data)
        if not receipt.success:
            raise LedgerRejectedError(
                "Ledger transaction reverted",
                {"transaction_hash": transaction_ref},
            )
        return receipt

    def find_commitment(self, evidence_hash: str) -> tuple[bool, int]:
        data = self._request("GET", f"/commitments/{evidence_hash.strip().lower()}")
        if not data:
            return False, 0
        return bool(data.get("exists")), int(data.get("id") or 0)

    def get_record(self, attestation_id: int) -> LedgerRecord:
        data = self._request("GET", f"/attestations/{int(attestation_id)}")
        if data is None:
            raise NotFoundError("Attestation", attestation_id)
        return LedgerRecord.from_dict(data)

    def latest_commitment(self, exchange: str, issue_category: str) -> str:
        data = self._request(
            "GET", f"/custody/{quote(exchange, safe='')}/{quote(issue_category, safe='')}/latest"
        )
        if not data:
            return ZERO_HASH
        return (data.get("evidence_hash") or ZERO_HASH).lower()

    def commitment_count(self) -> int:
        data = self._request("GET", "/attestations/count") or {}
        return int(data.get("count", 0))

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({
            "url": self.base_url,
            "circuit_state": self.circuit_breaker.state.value,
        })
        return info


def _error_details(response: requests.Response) -> dict[str, Any]:
    details: dict[str, Any] = {"status_code": response.status_code}
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        details.update(body)
    elif response.text:
        details["message"] = response.text[:500]
    return details


def get_ledger_client(settings) -> LedgerClient:
    """
    Build the ledger client selected by settings.ledger_backend.

    Raises:
        ValueError: For an unknown backend or an http backend without a URL
    """
    chain = settings.chain_config()
    backend = settings.ledger_backend.lower()

    if backend == "memory":
        logger.info("Using in-memory ledger", extra={"chain": chain.name})
        return InMemoryLedger(chain_config=chain, attestor=settings.attestor_address or DEFAULT_ATTESTOR)

    if backend == "http":
        if not settings.ledger_url:
            raise ValueError("LEDGER_URL is required when LEDGER_BACKEND=http")
        logger.info("Using HTTP ledger relayer", extra={"chain": chain.name})
        return HttpLedgerClient(
            base_url=settings.ledger_url,
            chain_config=chain,
            attestor=settings.attestor_address or DEFAULT_ATTESTOR,
            api_token=settings.ledger_api_token,
        )

    raise ValueError(f"Unknown ledger backend: {settings.ledger_backend}")
