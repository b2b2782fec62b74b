"""
ResolveChain - Exception Hierarchy

Every error raised by the core derives from ResolveChainError and carries:
- retryable: whether an automated retry layer may safely repeat the call
- http_status: the status the HTTP frontend should answer with
- details: structured context for logs and API responses

Ledger errors additionally derive from the retry layer's RetryableError /
NonRetryableError so that retry.retry_call classifies them correctly.
"""

from typing import Any

from retry import NonRetryableError, RetryableError


class ResolveChainError(Exception):
    """Base exception for all ResolveChain errors."""

    retryable = False
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error": self.message,
            "error_type": type(self).__name__,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Caller-facing validation errors (never retried by the system)
# =============================================================================


class NotFoundError(ResolveChainError):
    """Referenced Issue, Resolution or Attestation does not exist."""

    http_status = 404

    def __init__(self, kind: str, identifier: Any):
        super().__init__(f"{kind} not found: {identifier}", {"kind": kind, "id": identifier})
        self.kind = kind
        self.identifier = identifier


class ValidationError(ResolveChainError):
    """Request payload is structurally invalid."""

    http_status = 400


class InvalidEvidenceError(ValidationError):
    """Evidence is malformed (window, counts, ranges or recomputed percentage)."""


class DuplicateIssueError(ValidationError):
    """An issue with the given explicit id already exists."""

    http_status = 409


class InvalidStateTransitionError(ResolveChainError):
    """A status change would move a record backwards in its lifecycle."""

    http_status = 409


class ConcurrentModificationError(ResolveChainError):
    """A compare-and-swap write lost against a concurrent writer."""

    retryable = True
    http_status = 409


# =============================================================================
# Ledger errors (caller-facing, annotated with retry safety)
# =============================================================================


class LedgerError(ResolveChainError):
    """Base class for failures talking to the external ledger."""

    http_status = 502


class LedgerUnavailableError(LedgerError, RetryableError):
    """Transient connectivity failure; the whole attest call may be retried."""

    retryable = True
    http_status = 503


class LedgerTimeoutError(LedgerError, NonRetryableError):
    """
    Write submitted but not confirmed in time.

    The outcome is ambiguous. Re-check with verify_by_commitment before
    submitting again; AttestationGateway.attest does this itself when it
    is called again for the same resolution.
    """

    http_status = 504
    requires_recheck = True

    def __init__(self, message: str, transaction_ref: str | None = None,
                 commitment: str | None = None):
        details = {}
        if transaction_ref:
            details["transaction_ref"] = transaction_ref
        if commitment:
            details["commitment"] = commitment
        super().__init__(message, details)
        self.transaction_ref = transaction_ref
        self.commitment = commitment


class LedgerRejectedError(LedgerError, NonRetryableError):
    """The ledger explicitly refused the write (malformed call, revert)."""

    http_status = 422


class DuplicateCommitmentError(LedgerRejectedError):
    """The commitment is already on the ledger for a different resolution."""

    http_status = 409


class AttestationCancelledError(ResolveChainError):
    """The caller cancelled an attestation before ledger confirmation."""

    http_status = 499


# =============================================================================
# Verification-time integrity errors
# =============================================================================


class HashMismatchError(ResolveChainError):
    """Recomputed commitment differs from the ledger-stored commitment."""

    http_status = 409

    def __init__(self, expected: str, actual: str, resolution_id: str | None = None):
        super().__init__(
            "Recomputed evidence hash does not match ledger commitment",
            {"recomputed": expected, "on_ledger": actual, "resolution_id": resolution_id},
        )
        self.expected = expected
        self.actual = actual
        self.resolution_id = resolution_id
