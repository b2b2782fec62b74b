"""
ResolveChain - Resolution Engine

Turns an issue plus evidence into a Resolution:

1. the issue must exist
2. evidence is validated (window, counts, sentiment range) and its
   percentage decrease is recomputed from the complaint counts
3. confidence is scored with the fixed rule table
4. the resolution window is the whole number of days in the measurement
5. acceptance criteria decide between pending and verified
6. the resolution is stored and the issue moves to resolved

This is a pure state transition over the stores. Nothing here talks to the
ledger or retries anything; the Attestation Gateway calls back into
attach_attestation once a ledger write is confirmed.

An issue may collect several resolutions. The newest one becomes the
issue's reference until one of them is attested; the attested resolution
keeps the reference from then on.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import replace
from typing import Any

import confidence as confidence_scorer
from errors import (
    ConcurrentModificationError,
    HashMismatchError,
    InvalidEvidenceError,
    InvalidStateTransitionError,
    NotFoundError,
)
from evidence_hashing import FLOAT_DECIMALS, hash_evidence_hex
from issue_registry import IssueRegistry
from models import (
    Attestation,
    Evidence,
    IssueStatus,
    Resolution,
    ResolutionCriteria,
    ResolutionStatus,
    TimelineEventType,
    utcnow,
)
from monitoring import metrics
from scaling import LockManager, get_lock_manager, issue_lock_name, resolution_lock_name
from storage import KeyedStore, MemoryStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
DEFAULT_PERCENTAGE_TOLERANCE = 0.005


def resolution_window_days(evidence: Evidence) -> int:
    """Whole days between measurement start and end, truncated."""
    elapsed = evidence.measurement_end - evidence.measurement_start
    return int(elapsed.total_seconds() // SECONDS_PER_DAY)


class ResolutionEngine:
    """Validates evidence, creates Resolutions and links them to Issues."""

    def __init__(
        self,
        registry: IssueRegistry,
        store: KeyedStore | None = None,
        criteria: ResolutionCriteria | None = None,
        percentage_tolerance: float = DEFAULT_PERCENTAGE_TOLERANCE,
        lock_manager: LockManager | None = None,
        lock_timeout: float = 30.0,
    ):
        self.registry = registry
        self.store = store if store is not None else MemoryStore()
        self.criteria = criteria or ResolutionCriteria()
        self.percentage_tolerance = percentage_tolerance
        self.locks = lock_manager or get_lock_manager()
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def validate_evidence(self, evidence: Evidence) -> Evidence:
        """
        Check evidence invariants and settle its percentage decrease.

        Returns:
            A copy of the evidence whose percentage_decrease is the supplied
            value (when it agrees with the counts) or the recomputed one

        Raises:
            InvalidEvidenceError: On a missing or inverted window, negative
                counts, sentiment outside [-1, 1], a non-finite value, or a
                percentage decrease that disagrees with the counts
        """
        if evidence.measurement_start is None or evidence.measurement_end is None:
            raise InvalidEvidenceError(
                "Evidence requires measurement_start and measurement_end",
                {
                    "measurement_start": evidence.measurement_start is not None,
                    "measurement_end": evidence.measurement_end is not None,
                },
            )
        if evidence.measurement_start > evidence.measurement_end:
            raise InvalidEvidenceError(
                "measurement_start must not be after measurement_end",
                {
                    "measurement_start": evidence.measurement_start.isoformat(),
                    "measurement_end": evidence.measurement_end.isoformat(),
                },
            )
        if evidence.complaints_before < 0 or evidence.complaints_after < 0:
            raise InvalidEvidenceError(
                "Complaint counts must be >= 0",
                {
                    "complaints_before": evidence.complaints_before,
                    "complaints_after": evidence.complaints_after,
                },
            )
        if not math.isfinite(evidence.sentiment_shift) or not -1.0 <= evidence.sentiment_shift <= 1.0:
            raise InvalidEvidenceError(
                "sentiment_shift must be within [-1, 1]",
                {"sentiment_shift": evidence.sentiment_shift},
            )

        recomputed = evidence.recomputed_percentage_decrease()
        supplied = evidence.percentage_decrease

        if supplied is None:
            return replace(evidence, percentage_decrease=round(recomputed, FLOAT_DECIMALS))

        if not math.isfinite(supplied):
            raise InvalidEvidenceError(
                "percentage_decrease must be a finite number",
                {"percentage_decrease": supplied},
            )
        if abs(supplied - recomputed) > self.percentage_tolerance:
            raise InvalidEvidenceError(
                "percentage_decrease does not match complaint counts",
                {
                    "supplied": supplied,
                    "recomputed": round(recomputed, FLOAT_DECIMALS),
                    "tolerance": self.percentage_tolerance,
                },
            )
        return replace(evidence)

    def unmet_criteria(self, evidence: Evidence, confidence: float, window_days: int) -> list[str]:
        """Names of the acceptance criteria the evidence fails."""
        criteria = self.criteria
        unmet = []
        if evidence.percentage_decrease < criteria.min_percentage_decrease:
            unmet.append("min_percentage_decrease")
        if confidence < criteria.min_confidence:
            unmet.append("min_confidence")
        if window_days < criteria.min_window_days:
            unmet.append("min_window_days")
        if criteria.require_positive_sentiment and not evidence.sentiment_shift > 0:
            unmet.append("require_positive_sentiment")
        return unmet

    def meets_criteria(self, evidence: Evidence, confidence: float, window_days: int) -> bool:
        return not self.unmet_criteria(evidence, confidence, window_days)

    # ------------------------------------------------------------------
    # Resolutions
    # ------------------------------------------------------------------

    def create_resolution(self, issue_id: str, evidence: Evidence, summary: str = "") -> Resolution:
        """
        Create a resolution for an issue.

        Raises:
            NotFoundError: If the issue does not exist
            InvalidEvidenceError: If the evidence is malformed
        """
        issue = self.registry.get(issue_id)
        evidence = self.validate_evidence(evidence)

        score = confidence_scorer.score(evidence)
        window = resolution_window_days(evidence)
        unmet = self.unmet_criteria(evidence, score, window)

        now = utcnow()
        resolution = Resolution(
            id=str(uuid.uuid4()),
            issue_id=issue.id,
            exchange=issue.exchange,
            issue_category=issue.category,
            summary=summary or "",
            evidence=evidence,
            confidence=score,
            resolution_window=window,
            status=ResolutionStatus.PENDING,
            created_at=now,
        )
        if not unmet:
            resolution.status = ResolutionStatus.VERIFIED
            resolution.verified_at = now

        if not self.store.compare_and_swap(resolution.id, None, resolution.to_dict()):
            raise ConcurrentModificationError(f"Resolution id collision: {resolution.id}")

        try:
            self.registry.modify(issue_id, lambda current: self._link_to_issue(current, resolution))
        except Exception:
            # An unlinked resolution must not outlive a failed link
            self.store.delete(resolution.id, resolution.to_dict())
            logger.warning("Resolution discarded, issue link failed", extra={"resolution_id": resolution.id})
            raise
        self.registry.record_event(
            issue_id,
            TimelineEventType.RESOLVED,
            f"Resolution created ({resolution.status.value}, confidence {score:.2f})",
            {
                "resolution_id": resolution.id,
                "status": resolution.status.value,
                "confidence": score,
                "unmet_criteria": unmet,
            },
        )

        metrics.increment("resolutions_created_total", labels={"status": resolution.status.value})
        logger.info(
            "Resolution created",
            extra={
                "resolution_id": resolution.id,
                "issue_id": issue_id,
                "status": resolution.status.value,
                "confidence": score,
                "resolution_window": window,
            },
        )
        return resolution

    def _link_to_issue(self, issue, resolution: Resolution):
        # Runs under the issue lock
        if issue.resolution_id and issue.resolution_id != resolution.id:
            current = self.store.get(issue.resolution_id)
            if current and current.get("status") == ResolutionStatus.ON_CHAIN.value:
                logger.info(
                    "Issue keeps its attested resolution",
                    extra={"issue_id": issue.id, "resolution_id": issue.resolution_id,
                           "new_resolution_id": resolution.id},
                )
                return issue

        issue.resolution_id = resolution.id
        if issue.status.rank < IssueStatus.RESOLVED.rank:
            issue.status = IssueStatus.RESOLVED
        return issue

    def get_resolution(self, resolution_id: str) -> Resolution:
        """Raises NotFoundError if the resolution does not exist."""
        data = self.store.get(resolution_id)
        if data is None:
            raise NotFoundError("Resolution", resolution_id)
        return Resolution.from_dict(data)

    def list_resolutions(
        self,
        status: ResolutionStatus | str | None = None,
        issue_id: str | None = None,
    ) -> list[Resolution]:
        """List resolutions oldest first, optionally filtered."""
        wanted = ResolutionStatus(status) if isinstance(status, str) else status
        resolutions = [Resolution.from_dict(data) for _, data in self.store.list()]
        if wanted is not None:
            resolutions = [r for r in resolutions if r.status == wanted]
        if issue_id is not None:
            resolutions = [r for r in resolutions if r.issue_id == issue_id]
        resolutions.sort(key=lambda r: (r.created_at, r.id))
        return resolutions

    def attach_attestation(self, resolution_id: str, attestation: Attestation) -> Resolution:
        """
        Record a confirmed ledger attestation on a resolution and its issue.

        Attaching the same attestation twice is a no-op. The commitment must
        be the hash of the stored evidence.

        Raises:
            NotFoundError: If the resolution does not exist
            HashMismatchError: If the attestation is for different evidence
            InvalidStateTransitionError: If a different attestation is already attached
        """
        issue_id = self.get_resolution(resolution_id).issue_id

        with self.locks.lock(issue_lock_name(issue_id), timeout=self.lock_timeout):
            with self.locks.lock(resolution_lock_name(resolution_id), timeout=self.lock_timeout):
                current = self.store.get(resolution_id)
                resolution = Resolution.from_dict(current)

                if resolution.attestation is not None:
                    if resolution.attestation.evidence_hash == attestation.evidence_hash:
                        return resolution
                    raise InvalidStateTransitionError(
                        "Resolution already carries a different attestation",
                        {"resolution_id": resolution_id,
                         "attestation_id": resolution.attestation.id},
                    )

                expected = hash_evidence_hex(resolution.evidence)
                if attestation.evidence_hash != expected:
                    raise HashMismatchError(expected, attestation.evidence_hash, resolution_id)

                resolution.attestation = attestation
                resolution.status = ResolutionStatus.ON_CHAIN
                if not self.store.compare_and_swap(resolution_id, current, resolution.to_dict()):
                    raise ConcurrentModificationError(
                        f"Resolution {resolution_id} was modified concurrently",
                        {"resolution_id": resolution_id},
                    )

            if self.registry.exists(issue_id):
                self.registry.modify(
                    issue_id, lambda issue: self._propagate_attestation(issue, resolution)
                )
                self.registry.record_event(
                    issue_id,
                    TimelineEventType.ATTESTED,
                    f"Resolution attested on ledger (attestation {attestation.id})",
                    {
                        "resolution_id": resolution_id,
                        "attestation_id": attestation.id,
                        "transaction_hash": attestation.transaction_hash,
                        "evidence_hash": attestation.evidence_hash,
                    },
                )

        logger.info(
            "Attestation attached",
            extra={"resolution_id": resolution_id, "attestation_id": attestation.id},
        )
        return resolution

    def _propagate_attestation(self, issue, resolution: Resolution):
        if issue.resolution_id and issue.resolution_id != resolution.id:
            current = self.store.get(issue.resolution_id)
            if current and current.get("status") == ResolutionStatus.ON_CHAIN.value:
                return issue

        issue.resolution_id = resolution.id
        issue.attestation = resolution.attestation
        issue.status = IssueStatus.VERIFIED
        return issue

    def get_stats(self) -> dict[str, Any]:
        resolutions = self.list_resolutions()
        by_status = {status.value: 0 for status in ResolutionStatus}
        for resolution in resolutions:
            by_status[resolution.status.value] += 1

        issues_by_status = self.registry.count_by_status()
        return {
            "total_issues": sum(issues_by_status.values()),
            "issues_by_status": issues_by_status,
            "total_resolutions": len(resolutions),
            "resolutions_by_status": by_status,
            "attestation_count": sum(1 for r in resolutions if r.attestation is not None),
            "criteria": self.criteria.to_dict(),
        }
