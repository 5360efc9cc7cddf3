"""Tests for ecopulse.core.credibility - the event-sourced credibility ledger.

Tests cover:
- Enrollment and imported scores
- Clamping and history folding
- Component breakdown and improvement suggestions
- Read operations never writing
"""

from __future__ import annotations

import pytest

from ecopulse.core.credibility import (
    COMPONENT_WEIGHTS,
    CredibilityCategory,
    CredibilityEntry,
    CredibilityLedger,
    CredibilityReason,
    compute_components,
    fold,
    rank_suggestions,
)
from ecopulse.core.exceptions import ValidationException
from ecopulse.core.store import InMemoryStore


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def ledger(store, config, clock):
    return CredibilityLedger(store, config, clock)


# ============================================================================
# Enrollment
# ============================================================================


class TestEnrollment:
    """Test first contact with the ledger."""

    def test_default_initial_score(self, ledger):
        entry = ledger.enroll("alice")
        assert entry.reason == CredibilityReason.ENROLLMENT
        assert entry.score == 10
        assert ledger.score("alice") == 10

    def test_imported_score(self, ledger):
        assert ledger.enroll("bob", imported_score=15).score == 15

    @pytest.mark.parametrize("imported", [21, 95, 150])
    def test_imported_score_capped_at_beginner_band(self, ledger, imported):
        entry = ledger.enroll("carol", imported_score=imported)
        assert entry.score == 20
        assert ledger.current("carol").category == CredibilityCategory.BEGINNER

    def test_negative_import_clamped(self, ledger):
        assert ledger.enroll("carol", imported_score=-5).score == 0

    def test_second_enroll_is_noop(self, ledger):
        ledger.enroll("alice", imported_score=15)
        ledger.enroll("alice", imported_score=90)
        assert ledger.score("alice") == 15
        assert len(ledger.history("alice")) == 1

    def test_unknown_user_reads_initial_without_writing(self, ledger, store):
        assert ledger.score("ghost") == 10
        report = ledger.current("ghost")
        assert report.score == 10
        assert report.is_new_user is True
        assert store.credibility_history("ghost") == []

    def test_outcome_enrolls_implicitly(self, ledger):
        assert ledger.record_outcome("dave", CredibilityReason.OBSERVATION_VERIFIED, 2) == 12
        assert [e.reason for e in ledger.history("dave")] == [
            CredibilityReason.ENROLLMENT,
            CredibilityReason.OBSERVATION_VERIFIED,
        ]


# ============================================================================
# Outcomes
# ============================================================================


class TestRecordOutcome:
    """Test appending outcomes."""

    def test_appends_and_returns_score(self, ledger):
        ledger.enroll("alice")
        assert ledger.record_outcome("alice", CredibilityReason.OBSERVATION_VERIFIED, 2, observation_id="o1") == 12
        last = ledger.history("alice")[-1]
        assert last.delta == 2
        assert last.observation_id == "o1"

    def test_clamps_at_zero(self, ledger):
        ledger.enroll("alice", imported_score=2)
        assert ledger.record_outcome("alice", CredibilityReason.OBSERVATION_OVERTURNED, -3) == 0
        assert ledger.record_outcome("alice", CredibilityReason.OBSERVATION_VERIFIED, 2) == 2

    def test_clamps_at_hundred(self, ledger):
        ledger.enroll("alice")
        assert ledger.record_outcome("alice", CredibilityReason.VERIFICATION_UPHELD, 89) == 99
        assert ledger.record_outcome("alice", CredibilityReason.DISPUTE_WON, 5) == 100

    def test_enrollment_reason_rejected(self, ledger):
        with pytest.raises(ValidationException):
            ledger.record_outcome("alice", CredibilityReason.ENROLLMENT, 10)

    def test_five_credits_cross_tier_one(self, ledger, config):
        ledger.enroll("erin", imported_score=15)
        for i in range(5):
            ledger.record_outcome("erin", CredibilityReason.OBSERVATION_VERIFIED, 2, observation_id=f"o{i}")
        assert ledger.score("erin") == 25
        assert ledger.score("erin") >= config.tier1_min_credibility

    def test_history_folds_to_current(self, ledger):
        ledger.enroll("alice", imported_score=5)
        for reason, delta in [
            (CredibilityReason.OBSERVATION_OVERTURNED, -3),
            (CredibilityReason.OBSERVATION_OVERTURNED, -3),
            (CredibilityReason.OBSERVATION_VERIFIED, 2),
            (CredibilityReason.VERIFIER_PARTICIPATION, 1),
        ]:
            ledger.record_outcome("alice", reason, delta)
        assert fold(ledger.history("alice")) == ledger.score("alice") == 3
        assert ledger.replay("alice") == 3

    def test_replay_detects_tampering(self, ledger, store, clock):
        ledger.enroll("alice")
        store.append_credibility(
            CredibilityEntry(
                id="forged", user_id="alice", reason=CredibilityReason.DISPUTE_WON,
                delta=1, score=90, created_at=clock(),
            )
        )
        with pytest.raises(ValidationException):
            ledger.replay("alice")

    def test_failed_transaction_appends_nothing(self, ledger, store):
        ledger.enroll("alice")
        with pytest.raises(RuntimeError):
            with store.transaction():
                ledger.record_outcome("alice", CredibilityReason.OBSERVATION_VERIFIED, 2)
                raise RuntimeError("boom")
        assert ledger.score("alice") == 10
        assert len(ledger.history("alice")) == 1

    def test_entry_from_dict(self, ledger):
        entry = ledger.enroll("alice")
        assert CredibilityEntry.from_dict(entry.to_dict()) == entry


# ============================================================================
# Breakdown
# ============================================================================


class TestComponents:
    """Test the component breakdown and suggestions."""

    def test_weights_sum_to_one(self):
        assert sum(COMPONENT_WEIGHTS.values()) == pytest.approx(1.0)

    @pytest.mark.parametrize(
        "score,category",
        [(0, "beginner"), (20, "beginner"), (21, "intermediate"), (60, "intermediate"), (61, "expert")],
    )
    def test_category_boundaries(self, score, category):
        assert CredibilityCategory.for_score(score).value == category

    def test_new_user_components(self, ledger, clock):
        ledger.enroll("alice")
        by_id = {c.id: c for c in compute_components(ledger.history("alice"), clock())}
        assert by_id["accuracy"].value == 50.0
        assert by_id["participation"].value == 0.0
        assert by_id["dispute_conduct"].value == 50.0
        assert by_id["tenure"].value == 0.0

    def test_accuracy_ratio(self, ledger, clock):
        ledger.enroll("alice")
        ledger.record_outcome("alice", CredibilityReason.OBSERVATION_VERIFIED, 2)
        ledger.record_outcome("alice", CredibilityReason.OBSERVATION_VERIFIED, 2)
        ledger.record_outcome("alice", CredibilityReason.OBSERVATION_OVERTURNED, -3)
        by_id = {c.id: c for c in compute_components(ledger.history("alice"), clock())}
        assert by_id["accuracy"].value == pytest.approx(66.67, abs=0.01)

    def test_tenure_grows_with_time(self, ledger, clock):
        ledger.enroll("alice")
        clock.advance(days=365)
        by_id = {c.id: c for c in ledger.current("alice").components}
        assert by_id["tenure"].value == 100.0

    def test_suggestions_ranked_by_potential_gain(self, ledger, clock):
        ledger.enroll("alice")
        components = compute_components(ledger.history("alice"), clock())
        suggestions = rank_suggestions(components)
        assert len(suggestions) == 3
        assert suggestions[0].startswith("Verify observations")
        assert ledger.improvement_suggestions("alice") == suggestions

    def test_no_suggestion_for_strong_component(self, ledger, clock):
        ledger.enroll("alice")
        for i in range(10):
            ledger.record_outcome("alice", CredibilityReason.VERIFIER_PARTICIPATION, 1, observation_id=f"o{i}")
        components = compute_components(ledger.history("alice"), clock())
        assert not any(s.startswith("Verify observations") for s in rank_suggestions(components))

    def test_report_to_dict(self, ledger):
        ledger.enroll("alice")
        ledger.record_outcome("alice", CredibilityReason.OBSERVATION_VERIFIED, 2)
        d = ledger.current("alice").to_dict()
        assert d["current_score"] == 12
        assert d["category"] == "beginner"
        assert d["is_new_user"] is False
        assert [h["change_reason"] for h in d["history"]] == ["enrollment", "observation_verified"]
        assert {c["id"] for c in d["components"]} == set(COMPONENT_WEIGHTS)
        assert "Reach 20" in d["explanation"]
