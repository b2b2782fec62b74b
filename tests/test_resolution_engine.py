"""
Tests for the Resolution Engine.

Tests:
- Evidence validation and percentage recomputation
- Resolution window and acceptance criteria
- Resolution creation and issue linkage
- Several resolutions per issue and the supersede rule
- Attaching attestations
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from errors import (
    ConcurrentModificationError,
    HashMismatchError,
    InvalidEvidenceError,
    InvalidStateTransitionError,
    NotFoundError,
)
from evidence_hashing import hash_evidence_hex
from models import (
    ZERO_HASH,
    Attestation,
    IssueStatus,
    ResolutionCriteria,
    ResolutionStatus,
    TimelineEventType,
)
from monitoring import metrics
from resolution_engine import ResolutionEngine, resolution_window_days


def _attestation_for(resolution, attestation_id=1):
    return Attestation(
        id=attestation_id,
        transaction_hash="0x" + f"{attestation_id:064x}",
        block_number=attestation_id,
        block_timestamp=datetime.now(timezone.utc),
        chain_id=84532,
        contract_address="",
        evidence_hash=hash_evidence_hex(resolution.evidence),
        previous_hash=ZERO_HASH,
        attestor="0x" + "00" * 19 + "01",
        explorer_url="https://sepolia.basescan.org/tx/0x" + f"{attestation_id:064x}",
    )


class TestValidateEvidence:
    """Tests for evidence validation."""

    def test_valid_evidence_returns_copy(self, engine, make_evidence):
        evidence = make_evidence()
        validated = engine.validate_evidence(evidence)
        assert validated == evidence
        assert validated is not evidence

    def test_missing_percentage_is_filled(self, engine, make_evidence):
        validated = engine.validate_evidence(make_evidence(percentage_decrease=None))
        assert validated.percentage_decrease == pytest.approx(0.853333)

    def test_percentage_within_tolerance_is_kept(self, engine, make_evidence):
        """0.853 vs recomputed 0.85333 is inside the 0.005 tolerance."""
        assert engine.validate_evidence(make_evidence()).percentage_decrease == 0.853

    def test_percentage_disagreeing_with_counts_rejected(self, engine, make_evidence):
        with pytest.raises(InvalidEvidenceError) as exc_info:
            engine.validate_evidence(make_evidence(percentage_decrease=0.95))
        assert exc_info.value.details["recomputed"] == pytest.approx(0.853333)

    def test_custom_tolerance(self, registry, make_evidence):
        strict = ResolutionEngine(registry, percentage_tolerance=0.0001)
        with pytest.raises(InvalidEvidenceError):
            strict.validate_evidence(make_evidence())

    def test_zero_before_means_zero_decrease(self, engine, make_evidence):
        evidence = make_evidence(complaints_before=0, complaints_after=5, percentage_decrease=None)
        assert engine.validate_evidence(evidence).percentage_decrease == 0.0

    def test_increase_is_negative(self, engine, make_evidence):
        evidence = make_evidence(complaints_before=100, complaints_after=150, percentage_decrease=None)
        assert engine.validate_evidence(evidence).percentage_decrease == pytest.approx(-0.5)

    def test_missing_window_rejected(self, engine, make_evidence):
        with pytest.raises(InvalidEvidenceError):
            engine.validate_evidence(make_evidence(measurement_end=None))

    def test_inverted_window_rejected(self, engine, make_evidence):
        with pytest.raises(InvalidEvidenceError):
            engine.validate_evidence(make_evidence(
                measurement_start=datetime(2025, 2, 1, tzinfo=timezone.utc),
            ))

    def test_negative_counts_rejected(self, engine, make_evidence):
        with pytest.raises(InvalidEvidenceError):
            engine.validate_evidence(make_evidence(complaints_after=-1, percentage_decrease=None))

    @pytest.mark.parametrize("sentiment", [-1.01, 1.5, math.nan, math.inf])
    def test_sentiment_out_of_range_rejected(self, engine, make_evidence, sentiment):
        with pytest.raises(InvalidEvidenceError):
            engine.validate_evidence(make_evidence(sentiment_shift=sentiment))

    def test_sentiment_bounds_accepted(self, engine, make_evidence):
        engine.validate_evidence(make_evidence(sentiment_shift=-1.0))
        engine.validate_evidence(make_evidence(sentiment_shift=1.0))

    def test_non_finite_percentage_rejected(self, engine, make_evidence):
        with pytest.raises(InvalidEvidenceError):
            engine.validate_evidence(make_evidence(percentage_decrease=math.nan))


class TestWindowAndCriteria:
    """Tests for the resolution window and acceptance criteria."""

    def test_window_is_whole_days(self, make_evidence):
        evidence = make_evidence(
            measurement_start=datetime(2025, 1, 1, tzinfo=timezone.utc),
            measurement_end=datetime(2025, 1, 8, 23, 59, tzinfo=timezone.utc),
        )
        assert resolution_window_days(evidence) == 7

    def test_window_fourteen_days(self, make_evidence):
        assert resolution_window_days(make_evidence()) == 14

    def test_all_criteria_met(self, engine, make_evidence):
        assert engine.meets_criteria(engine.validate_evidence(make_evidence()), 0.93, 14)

    def test_unmet_criteria_are_named(self, engine, make_evidence):
        evidence = engine.validate_evidence(make_evidence(
            complaints_before=150, complaints_after=120, percentage_decrease=0.20,
        ))
        assert engine.unmet_criteria(evidence, 0.50, 3) == [
            "min_percentage_decrease", "min_confidence", "min_window_days",
        ]

    def test_positive_sentiment_criterion(self, registry, make_evidence):
        engine = ResolutionEngine(registry, criteria=ResolutionCriteria(require_positive_sentiment=True))
        evidence = engine.validate_evidence(make_evidence(sentiment_shift=0.0))
        assert engine.unmet_criteria(evidence, 0.95, 14) == ["require_positive_sentiment"]


class TestCreateResolution:
    """Tests for resolution creation."""

    def test_scenario_meets_default_criteria(self, engine, issue, make_evidence):
        """150 -> 22 with sentiment and three sources is verified at 0.93."""
        resolution = engine.create_resolution(issue.id, make_evidence(), "Backlog cleared")
        assert resolution.status == ResolutionStatus.VERIFIED
        assert resolution.confidence == pytest.approx(0.93)
        assert resolution.resolution_window == 14
        assert resolution.verified_at is not None
        assert resolution.exchange == "coinbase"
        assert resolution.issue_category == "withdrawal_delays"

    def test_scenario_small_decrease_stays_pending(self, engine, issue, make_evidence):
        evidence = make_evidence(complaints_before=150, complaints_after=120,
                                 percentage_decrease=None, sentiment_shift=0.0, data_sources=[])
        resolution = engine.create_resolution(issue.id, evidence)
        assert resolution.evidence.percentage_decrease == pytest.approx(0.20)
        assert resolution.confidence == pytest.approx(0.50)
        assert resolution.status == ResolutionStatus.PENDING
        assert resolution.verified_at is None

    def test_short_window_stays_pending(self, engine, issue, make_evidence):
        evidence = make_evidence(measurement_end=datetime(2025, 1, 4, tzinfo=timezone.utc))
        assert engine.create_resolution(issue.id, evidence).status == ResolutionStatus.PENDING

    def test_unknown_issue(self, engine, make_evidence):
        with pytest.raises(NotFoundError):
            engine.create_resolution("nope", make_evidence())

    def test_invalid_evidence_leaves_issue_untouched(self, engine, registry, issue, make_evidence):
        with pytest.raises(InvalidEvidenceError):
            engine.create_resolution(issue.id, make_evidence(percentage_decrease=0.10))
        assert registry.get(issue.id).status == IssueStatus.ACTIVE
        assert engine.list_resolutions() == []

    def test_issue_moves_to_resolved(self, engine, registry, issue, make_evidence):
        resolution = engine.create_resolution(issue.id, make_evidence())
        stored = registry.get(issue.id)
        assert stored.status == IssueStatus.RESOLVED
        assert stored.resolution_id == resolution.id

    def test_pending_resolution_also_resolves_issue(self, engine, registry, issue, make_evidence):
        evidence = make_evidence(complaints_before=150, complaints_after=120, percentage_decrease=None)
        engine.create_resolution(issue.id, evidence)
        assert registry.get(issue.id).status == IssueStatus.RESOLVED

    def test_records_resolved_event(self, engine, registry, issue, make_evidence):
        resolution = engine.create_resolution(issue.id, make_evidence())
        event = registry.timeline(issue.id)[-1]
        assert event.event_type == TimelineEventType.RESOLVED
        assert event.data["resolution_id"] == resolution.id
        assert event.data["unmet_criteria"] == []

    def test_counts_metric(self, engine, issue, make_evidence):
        engine.create_resolution(issue.id, make_evidence())
        assert metrics.get_counter("resolutions_created_total", labels={"status": "verified"}) == 1

    def test_stored_evidence_hashes_like_input(self, engine, issue, make_evidence):
        """A stored round trip must not change the commitment."""
        resolution = engine.create_resolution(issue.id, make_evidence())
        stored = engine.get_resolution(resolution.id)
        assert hash_evidence_hex(stored.evidence) == hash_evidence_hex(resolution.evidence)

    def test_failed_issue_link_leaves_no_resolution(self, engine, registry, issue, make_evidence, monkeypatch):
        """If the issue cannot be updated the resolution is not kept either."""
        def contended(issue_id, mutator):
            raise ConcurrentModificationError(f"Issue {issue_id} was modified concurrently")

        monkeypatch.setattr(registry, "modify", contended)
        with pytest.raises(ConcurrentModificationError):
            engine.create_resolution(issue.id, make_evidence())

        assert engine.list_resolutions() == []
        assert registry.get(issue.id).resolution_id is None
        assert registry.get(issue.id).status == IssueStatus.ACTIVE

    def test_lock_timeout_on_link_leaves_no_resolution(self, engine, registry, issue, make_evidence, monkeypatch):
        def timed_out(issue_id, mutator):
            raise TimeoutError(f"Could not acquire lock issue:{issue_id}")

        monkeypatch.setattr(registry, "modify", timed_out)
        with pytest.raises(TimeoutError):
            engine.create_resolution(issue.id, make_evidence())
        assert engine.get_stats()["total_resolutions"] == 0


class TestMultipleResolutions:
    """Tests for several resolutions on one issue."""

    def test_two_resolutions_get_distinct_ids(self, engine, issue, make_evidence):
        first = engine.create_resolution(issue.id, make_evidence())
        second = engine.create_resolution(issue.id, make_evidence(sentiment_shift=0.25))
        assert first.id != second.id
        assert len(engine.list_resolutions(issue_id=issue.id)) == 2

    def test_newest_resolution_takes_reference(self, engine, registry, issue, make_evidence):
        engine.create_resolution(issue.id, make_evidence())
        second = engine.create_resolution(issue.id, make_evidence(sentiment_shift=0.25))
        assert registry.get(issue.id).resolution_id == second.id

    def test_attested_resolution_keeps_reference(self, engine, registry, issue, make_evidence):
        first = engine.create_resolution(issue.id, make_evidence())
        engine.attach_attestation(first.id, _attestation_for(first))

        engine.create_resolution(issue.id, make_evidence(sentiment_shift=0.25))

        stored = registry.get(issue.id)
        assert stored.resolution_id == first.id
        assert stored.status == IssueStatus.VERIFIED

    def test_second_attestation_does_not_replace_first(self, engine, registry, issue, make_evidence):
        first = engine.create_resolution(issue.id, make_evidence())
        engine.attach_attestation(first.id, _attestation_for(first, 1))
        second = engine.create_resolution(issue.id, make_evidence(sentiment_shift=0.25))
        engine.attach_attestation(second.id, _attestation_for(second, 2))

        stored = registry.get(issue.id)
        assert stored.resolution_id == first.id
        assert stored.attestation.id == 1
        assert engine.get_resolution(second.id).status == ResolutionStatus.ON_CHAIN


class TestQueries:
    """Tests for get/list."""

    def test_get_missing(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_resolution("nope")

    def test_list_filters(self, engine, registry, issue, make_evidence):
        verified = engine.create_resolution(issue.id, make_evidence())
        other_issue = registry.create_issue("kraken", "fees")
        pending = engine.create_resolution(other_issue.id, make_evidence(
            complaints_before=150, complaints_after=120, percentage_decrease=None,
        ))

        assert [r.id for r in engine.list_resolutions(status="verified")] == [verified.id]
        assert [r.id for r in engine.list_resolutions(status=ResolutionStatus.PENDING)] == [pending.id]
        assert [r.id for r in engine.list_resolutions(issue_id=other_issue.id)] == [pending.id]

    def test_stats(self, engine, issue, make_evidence):
        engine.create_resolution(issue.id, make_evidence())
        stats = engine.get_stats()
        assert stats["total_issues"] == 1
        assert stats["total_resolutions"] == 1
        assert stats["resolutions_by_status"]["verified"] == 1
        assert stats["issues_by_status"]["resolved"] == 1
        assert stats["attestation_count"] == 0
        assert stats["criteria"]["min_confidence"] == 0.85


class TestAttachAttestation:
    """Tests for attaching confirmed attestations."""

    def test_attach_marks_on_chain(self, engine, registry, resolution):
        attestation = _attestation_for(resolution)
        updated = engine.attach_attestation(resolution.id, attestation)

        assert updated.status == ResolutionStatus.ON_CHAIN
        assert engine.get_resolution(resolution.id).attestation == attestation

        issue = registry.get(resolution.issue_id)
        assert issue.status == IssueStatus.VERIFIED
        assert issue.attestation == attestation
        assert registry.timeline(issue.id)[-1].event_type == TimelineEventType.ATTESTED

    def test_attach_pending_resolution(self, engine, issue, make_evidence):
        """Attestation records the evidence; it does not require verified status."""
        pending = engine.create_resolution(issue.id, make_evidence(
            complaints_before=150, complaints_after=120, percentage_decrease=None,
        ))
        updated = engine.attach_attestation(pending.id, _attestation_for(pending))
        assert updated.status == ResolutionStatus.ON_CHAIN

    def test_attach_is_idempotent(self, engine, registry, resolution):
        attestation = _attestation_for(resolution)
        engine.attach_attestation(resolution.id, attestation)
        events_before = len(registry.timeline(resolution.issue_id))

        engine.attach_attestation(resolution.id, attestation)
        assert len(registry.timeline(resolution.issue_id)) == events_before

    def test_different_attestation_rejected(self, engine, resolution):
        engine.attach_attestation(resolution.id, _attestation_for(resolution, 1))
        other = replace(_attestation_for(resolution, 2), evidence_hash="0x" + "11" * 32)
        with pytest.raises(InvalidStateTransitionError):
            engine.attach_attestation(resolution.id, other)

    def test_wrong_commitment_rejected(self, engine, resolution):
        wrong = replace(_attestation_for(resolution), evidence_hash="0x" + "11" * 32)
        with pytest.raises(HashMismatchError):
            engine.attach_attestation(resolution.id, wrong)
        assert engine.get_resolution(resolution.id).attestation is None

    def test_attach_unknown_resolution(self, engine, resolution):
        with pytest.raises(NotFoundError):
            engine.attach_attestation("nope", _attestation_for(resolution))

    def test_attestation_survives_round_trip(self, engine, resolution):
        attestation = _attestation_for(resolution)
        attestation = replace(attestation, block_timestamp=attestation.block_timestamp - timedelta(days=1))
        engine.attach_attestation(resolution.id, attestation)
        stored = engine.get_resolution(resolution.id).attestation
        assert stored.block_timestamp == attestation.block_timestamp
        assert stored.verified is True
