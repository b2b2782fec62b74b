"""
ResolveChain - Issue Registry

Tracks complaint clusters ("issues") about exchanges through their
lifecycle:

    {active, investigating} -> resolved -> verified

Issues live in a KeyedStore keyed by id. Every read-modify-write happens
under the per-issue lock and is committed with compare_and_swap, so
independent issues never block each other and a lost race is reported
instead of silently overwriting a concurrent change.

Each issue also has an append-only timeline (detected, updated, resolved,
attested) kept in a second store.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from errors import (
    ConcurrentModificationError,
    DuplicateIssueError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from models import (
    Attestation,
    Issue,
    IssueStatus,
    IssueTimelineEvent,
    Severity,
    TimelineEventType,
    utcnow,
)
from monitoring import metrics
from scaling import LockManager, get_lock_manager, issue_lock_name
from storage import KeyedStore, MemoryStore

logger = logging.getLogger(__name__)

# Fields callers may change through update()
UPDATABLE_FIELDS = ("title", "description", "complaint_count", "severity", "status",
                    "resolution_id", "attestation")


def _parse_severity(value: Any) -> Severity:
    if isinstance(value, Severity):
        return value
    try:
        return Severity(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid severity: {value}",
            {"allowed": [s.value for s in Severity]},
        ) from None


def _parse_status(value: Any) -> IssueStatus:
    if isinstance(value, IssueStatus):
        return value
    try:
        return IssueStatus(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid issue status: {value}",
            {"allowed": [s.value for s in IssueStatus]},
        ) from None


class IssueRegistry:
    """Concurrency-safe store of Issues and their timelines."""

    def __init__(
        self,
        store: KeyedStore | None = None,
        timeline_store: KeyedStore | None = None,
        lock_manager: LockManager | None = None,
        lock_timeout: float = 30.0,
    ):
        self.store = store if store is not None else MemoryStore()
        self.timeline_store = timeline_store if timeline_store is not None else MemoryStore()
        self.locks = lock_manager or get_lock_manager()
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_issue(
        self,
        exchange: str,
        category: str,
        title: str = "",
        description: str = "",
        complaint_count: int = 0,
        severity: Severity | str = Severity.MEDIUM,
        issue_id: str | None = None,
    ) -> Issue:
        """
        Start tracking a new issue.

        Args:
            exchange: Exchange the complaints are about
            category: Category tag (e.g. "withdrawal_delays")
            title: Short human-readable title
            description: Free-text description
            complaint_count: Complaints observed so far
            severity: critical / high / medium / low
            issue_id: Explicit id; generated when omitted

        Returns:
            The stored Issue with status active

        Raises:
            ValidationError: If exchange/category are empty or the count is negative
            DuplicateIssueError: If an explicit issue_id is already taken
        """
        if not exchange or not str(exchange).strip():
            raise ValidationError("exchange is required")
        if not category or not str(category).strip():
            raise ValidationError("category is required")
        if int(complaint_count) < 0:
            raise ValidationError("complaint_count must be >= 0", {"complaint_count": complaint_count})

        now = utcnow()
        issue = Issue(
            id=issue_id or str(uuid.uuid4()),
            exchange=exchange.strip(),
            category=category.strip(),
            title=title or "",
            description=description or "",
            complaint_count=int(complaint_count),
            severity=_parse_severity(severity),
            status=IssueStatus.ACTIVE,
            first_detected=now,
            last_updated=now,
        )

        if not self.store.compare_and_swap(issue.id, None, issue.to_dict()):
            raise DuplicateIssueError(f"Issue already exists: {issue.id}", {"id": issue.id})

        self.record_event(
            issue.id,
            TimelineEventType.DETECTED,
            f"Issue detected with {issue.complaint_count} complaints",
            {"complaint_count": issue.complaint_count, "severity": issue.severity.value},
        )

        metrics.increment("issues_created_total")
        logger.info(
            "Issue created",
            extra={"issue_id": issue.id, "exchange": issue.exchange, "category": issue.category},
        )
        return issue

    def get(self, issue_id: str) -> Issue:
        """Raises NotFoundError if the issue does not exist."""
        data = self.store.get(issue_id)
        if data is None:
            raise NotFoundError("Issue", issue_id)
        return Issue.from_dict(data)

    def exists(self, issue_id: str) -> bool:
        return self.store.get(issue_id) is not None

    def list(self, status: IssueStatus | str | None = None) -> list[Issue]:
        """
        List all issues, optionally filtered by status.

        Ordered by first detection, then id, so one snapshot is stable.
        """
        wanted = _parse_status(status) if status else None
        issues = [Issue.from_dict(data) for _, data in self.store.list()]
        if wanted is not None:
            issues = [issue for issue in issues if issue.status == wanted]
        issues.sort(key=lambda issue: (issue.first_detected, issue.id))
        return issues

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in IssueStatus}
        for issue in self.list():
            counts[issue.status.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update(self, issue_id: str, partial: dict[str, Any]) -> Issue:
        """
        Merge a partial update into an issue.

        Only non-empty / non-zero values are applied; last_updated is always
        refreshed.

        Raises:
            NotFoundError: If the issue does not exist
            ValidationError: If the complaint count would decrease or a value is invalid
            InvalidStateTransitionError: If the status would move backwards, or
                verified is requested without an attestation
        """
        unknown = set(partial) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown issue fields: {sorted(unknown)}")

        def apply(issue: Issue) -> Issue:
            return self._merge(issue, partial)

        issue = self.modify(issue_id, apply)

        stored = issue.to_dict()
        self.record_event(
            issue_id,
            TimelineEventType.UPDATED,
            "Issue updated",
            {key: stored[key] for key in partial if key != "attestation" and partial[key]},
        )
        return issue

    def modify(self, issue_id: str, mutator: Callable[[Issue], Issue]) -> Issue:
        """
        Apply mutator to the current issue under its lock and commit with CAS.

        The mutator receives a private copy and returns the new record;
        last_updated is stamped here and never moves backwards.
        """
        with self.locks.lock(issue_lock_name(issue_id), timeout=self.lock_timeout):
            current = self.store.get(issue_id)
            if current is None:
                raise NotFoundError("Issue", issue_id)

            existing = Issue.from_dict(current)
            updated = mutator(Issue.from_dict(current))
            updated.last_updated = max(utcnow(), existing.last_updated)

            if not self.store.compare_and_swap(issue_id, current, updated.to_dict()):
                raise ConcurrentModificationError(
                    f"Issue {issue_id} was modified concurrently",
                    {"issue_id": issue_id},
                )
        return updated

    def _merge(self, issue: Issue, partial: dict[str, Any]) -> Issue:
        changes: dict[str, Any] = {}

        for key in ("title", "description"):
            if partial.get(key):
                changes[key] = str(partial[key])

        count = partial.get("complaint_count")
        if count:
            count = int(count)
            if count < issue.complaint_count:
                raise ValidationError(
                    "complaint_count cannot decrease",
                    {"current": issue.complaint_count, "requested": count},
                )
            changes["complaint_count"] = count

        if partial.get("severity"):
            changes["severity"] = _parse_severity(partial["severity"])

        if partial.get("resolution_id"):
            changes["resolution_id"] = str(partial["resolution_id"])

        attestation = partial.get("attestation")
        if attestation:
            if isinstance(attestation, dict):
                attestation = Attestation.from_dict(attestation)
            changes["attestation"] = attestation

        if partial.get("status"):
            target = _parse_status(partial["status"])
            check_transition(issue, target, changes.get("attestation") or issue.attestation)
            changes["status"] = target

        return replace(issue, **changes)

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def record_event(
        self,
        issue_id: str,
        event_type: TimelineEventType,
        description: str,
        data: dict[str, Any] | None = None,
    ) -> IssueTimelineEvent:
        """Append an event to an issue's timeline."""
        event = IssueTimelineEvent(
            timestamp=utcnow(),
            event_type=event_type,
            description=description,
            data=data or None,
        )

        with self.locks.lock(issue_lock_name(issue_id), timeout=self.lock_timeout):
            current = self.timeline_store.get(issue_id)
            events = list(current["events"]) if current else []
            events.append(event.to_dict())
            if not self.timeline_store.compare_and_swap(issue_id, current, {"events": events}):
                raise ConcurrentModificationError(
                    f"Timeline for issue {issue_id} was modified concurrently",
                    {"issue_id": issue_id},
                )
        return event

    def timeline(self, issue_id: str) -> list[IssueTimelineEvent]:
        """Raises NotFoundError if the issue does not exist."""
        if not self.exists(issue_id):
            raise NotFoundError("Issue", issue_id)
        current = self.timeline_store.get(issue_id) or {"events": []}
        return [IssueTimelineEvent.from_dict(e) for e in current["events"]]


def check_transition(issue: Issue, target: IssueStatus,
                     attestation: Attestation | None) -> None:
    """
    Raises InvalidStateTransitionError unless issue may move to target.

    Moves within the same tier (active <-> investigating) are allowed.
    """
    if not issue.status.can_transition_to(target):
        raise InvalidStateTransitionError(
            f"Cannot move issue from {issue.status.value} to {target.value}",
            {"issue_id": issue.id, "from": issue.status.value, "to": target.value},
        )
    if target == IssueStatus.VERIFIED and attestation is None:
        raise InvalidStateTransitionError(
            "An issue can only be verified with an attestation",
            {"issue_id": issue.id},
        )
