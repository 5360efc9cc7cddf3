"""Tests for ecopulse.core.verification - the observation state machine."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from ecopulse.core.credibility import CredibilityReason
from ecopulse.core.exceptions import (
    ConcurrentModification,
    InsufficientCredibility,
    InvalidTransition,
    NotEligible,
    NotFoundError,
    NotOwner,
    ValidationException,
)
from ecopulse.core.models import Actor, ExpertiseLevel, ObservationState, ZoneStatus
from ecopulse.core.store import retry_on_conflict
from ecopulse.core.verification import (
    OBSERVATION_TRANSITIONS,
    DisputeStatus,
    VerificationRecord,
    VerificationTier,
    active_records,
    check_transition,
    validate_verification_input,
)


@pytest.fixture
def owner(make_actor):
    return make_actor("owner")


@pytest.fixture
def expert(make_actor):
    return make_actor("expert", 80)


@pytest.fixture
def observation_id(engine, owner, submission):
    return engine.validate_and_ingest(submission(), owner).observation_id


# ============================================================================
# Transition table
# ============================================================================


class TestTransitionTable:
    """Test the enumerated transition table."""

    @pytest.mark.parametrize("terminal", [ObservationState.RESOLVED_UPHELD, ObservationState.RESOLVED_OVERTURNED])
    def test_resolved_states_are_terminal(self, terminal):
        assert OBSERVATION_TRANSITIONS[terminal] == frozenset()
        assert terminal.is_terminal

    def test_no_path_back_to_pending(self):
        assert all(ObservationState.PENDING not in targets for targets in OBSERVATION_TRANSITIONS.values())

    def test_every_state_listed(self):
        assert set(OBSERVATION_TRANSITIONS) == set(ObservationState)

    def test_check_transition_rejects_skip(self, engine, observation_id):
        observation = engine.get_observation(observation_id)
        with pytest.raises(InvalidTransition) as exc_info:
            check_transition(observation, ObservationState.RESOLVED_UPHELD)
        assert exc_info.value.from_state == "pending"


class TestInputValidation:
    def test_valid(self):
        assert validate_verification_input(1, 0.8, "white tail bands") == []

    def test_all_errors_reported(self):
        errors = validate_verification_input(3, 1.5, "x" * 2001)
        assert len(errors) == 3

    def test_bool_confidence(self):
        assert validate_verification_input(1, True, "") == ["confidence must be a number"]


# ============================================================================
# Verification
# ============================================================================


class TestSubmitVerification:
    """Test filing verification records."""

    def test_first_verification_verifies_and_credits(self, engine, owner, expert, observation_id):
        record = engine.submit_verification(observation_id, expert, tier=1, confidence=0.9, notes="clear photo")

        assert record.tier == VerificationTier.PEER
        assert engine.get_observation(observation_id).state == ObservationState.VERIFIED
        assert engine.credibility("owner").score == 12
        assert engine.credibility("expert").score == 81

    def test_corroboration_keeps_state(self, engine, make_actor, expert, observation_id):
        engine.submit_verification(observation_id, expert, tier=1, confidence=0.9)
        engine.submit_verification(observation_id, make_actor("second", 75), tier=2, confidence=0.7)

        assert engine.get_observation(observation_id).state == ObservationState.VERIFIED
        assert engine.credibility("owner").score == 12
        assert len(engine.verification.active_verifications(observation_id)) == 2

    def test_same_verifier_supersedes(self, engine, expert, observation_id):
        first = engine.submit_verification(observation_id, expert, tier=1, confidence=0.6)
        second = engine.submit_verification(observation_id, expert, tier=1, confidence=0.95)

        assert second.supersedes_id == first.id
        assert [r.id for r in engine.verification.active_verifications(observation_id)] == [second.id]
        # Participation is credited once per observation
        assert engine.credibility("expert").score == 81

    def test_owner_cannot_verify(self, engine, make_actor, observation_id):
        with pytest.raises(NotEligible):
            engine.submit_verification(observation_id, make_actor("owner", 90), tier=1, confidence=0.9)

    def test_tier_two_threshold(self, engine, make_actor, observation_id):
        with pytest.raises(InsufficientCredibility) as exc_info:
            engine.submit_verification(observation_id, make_actor("mid", 50), tier=2, confidence=0.9)
        assert exc_info.value.required == 70
        assert exc_info.value.tier == 2
        assert engine.get_observation(observation_id).state == ObservationState.PENDING

    def test_invalid_input(self, engine, expert, observation_id):
        with pytest.raises(ValidationException) as exc_info:
            engine.submit_verification(observation_id, expert, tier=1, confidence=1.5)
        assert exc_info.value.field == "confidence"

    def test_unknown_observation(self, engine, expert):
        with pytest.raises(NotFoundError):
            engine.submit_verification("missing", expert, tier=1, confidence=0.5)

    def test_low_credibility_until_credited(self, engine, make_actor, submission, clock):
        """A 15-point verifier is refused, then succeeds after five verified observations."""
        novice = make_actor("novice", 15)
        target = engine.validate_and_ingest(submission(), make_actor("owner")).observation_id

        with pytest.raises(InsufficientCredibility) as exc_info:
            engine.submit_verification(target, novice, tier=1, confidence=0.8)
        assert (exc_info.value.required, exc_info.value.actual) == (20, 15)

        reviewer = make_actor("reviewer", 80)
        for i in range(5):
            own = engine.validate_and_ingest(submission(latitude=45.0 + i * 0.1), novice).observation_id
            engine.submit_verification(own, reviewer, tier=1, confidence=0.9)
        assert engine.credibility("novice").score == 25

        record = engine.submit_verification(target, novice, tier=1, confidence=0.8)
        assert record.verifier_id == "novice"

    def test_identity_score_does_not_override_ledger(self, engine, observation_id):
        engine.identify(Actor("climber", ExpertiseLevel.BEGINNER, 15))
        with pytest.raises(InsufficientCredibility):
            engine.submit_verification(
                observation_id, Actor("climber", ExpertiseLevel.BEGINNER, 95), tier=1, confidence=0.5
            )

    def test_first_contact_seed_capped(self, engine, observation_id):
        """A new caller claiming 95 starts in the beginner band."""
        newcomer = Actor("mallory", ExpertiseLevel.EXPERT, 95)
        engine.identify(newcomer)

        report = engine.credibility("mallory")
        assert report.score == 20
        assert report.is_new_user is True
        with pytest.raises(InsufficientCredibility):
            engine.submit_verification(observation_id, newcomer, tier=2, confidence=0.9)


class TestActiveRecords:
    def test_superseded_excluded(self, clock):
        a = VerificationRecord("a", "o", "v1", VerificationTier.PEER, 0.5, clock())
        b = VerificationRecord("b", "o", "v1", VerificationTier.PEER, 0.9, clock() + timedelta(1), supersedes_id="a")
        c = VerificationRecord("c", "o", "v2", VerificationTier.EXPERT, 0.7, clock() + timedelta(2))
        assert [r.id for r in active_records([c, a, b])] == ["b", "c"]

    def test_record_from_dict(self, clock):
        record = VerificationRecord("a", "o", "v1", VerificationTier.EXPERT, 0.5, clock(), notes="n")
        assert VerificationRecord.from_dict(record.to_dict()) == record


# ============================================================================
# Disputes
# ============================================================================


class TestRaiseDispute:
    """Test contesting a verification."""

    @pytest.fixture
    def verified(self, engine, expert, observation_id):
        record = engine.submit_verification(observation_id, expert, tier=1, confidence=0.9)
        return observation_id, record

    def test_dispute_opens_voting(self, engine, make_actor, verified):
        observation_id, record = verified
        dispute = engine.raise_dispute(observation_id, make_actor("critic", 85), "Juvenile plumage", "img-9")

        assert dispute.status == DisputeStatus.VOTING
        assert dispute.verification_id == record.id
        assert dispute.evidence_ref == "img-9"
        assert dispute.voting_deadline == engine.clock() + timedelta(hours=72)
        assert engine.get_observation(observation_id).state == ObservationState.DISPUTED
        assert engine.get_dispute(dispute.id).status == DisputeStatus.VOTING

    def test_requires_tier_two_standing(self, engine, make_actor, verified):
        observation_id, _ = verified
        with pytest.raises(NotEligible):
            engine.raise_dispute(observation_id, make_actor("junior", 50), "Looks wrong")
        assert engine.get_observation(observation_id).state == ObservationState.VERIFIED

    def test_owner_cannot_dispute(self, engine, make_actor, verified):
        observation_id, _ = verified
        with pytest.raises(NotEligible):
            engine.raise_dispute(observation_id, make_actor("owner", 90), "Changed my mind")

    def test_contested_verifier_cannot_dispute(self, engine, expert, verified):
        observation_id, _ = verified
        with pytest.raises(NotEligible):
            engine.raise_dispute(observation_id, expert, "Second thoughts")

    def test_header_score_grants_no_dispute_standing(self, engine, verified):
        observation_id, _ = verified
        with pytest.raises(NotEligible):
            engine.raise_dispute(observation_id, Actor("mallory", ExpertiseLevel.EXPERT, 100), "Wrong species")
        assert engine.get_observation(observation_id).state == ObservationState.VERIFIED

    def test_tier_two_verification_needs_higher_tier(self, engine, make_actor, observation_id):
        engine.submit_verification(observation_id, make_actor("senior", 90), tier=2, confidence=0.9)

        with pytest.raises(NotEligible, match="higher tier"):
            engine.raise_dispute(observation_id, make_actor("critic", 95), "Juvenile plumage")
        assert engine.get_observation(observation_id).state == ObservationState.VERIFIED

    def test_contests_tier_one_record_when_named(self, engine, make_actor, expert, observation_id):
        peer = engine.submit_verification(observation_id, expert, tier=1, confidence=0.8)
        engine.submit_verification(observation_id, make_actor("senior", 90), tier=2, confidence=0.9)

        dispute = engine.raise_dispute(
            observation_id, make_actor("critic", 95), "Juvenile plumage", verification_id=peer.id
        )
        assert dispute.verification_id == peer.id

    def test_reason_required(self, engine, make_actor, verified):
        observation_id, _ = verified
        with pytest.raises(ValidationException) as exc_info:
            engine.raise_dispute(observation_id, make_actor("critic", 85), "  ")
        assert exc_info.value.field == "reason"

    def test_unknown_verification_id(self, engine, make_actor, verified):
        observation_id, _ = verified
        with pytest.raises(ValidationException) as exc_info:
            engine.raise_dispute(observation_id, make_actor("critic", 85), "Wrong", verification_id="nope")
        assert exc_info.value.field == "verification_id"

    def test_cannot_dispute_twice(self, engine, make_actor, verified):
        observation_id, _ = verified
        engine.raise_dispute(observation_id, make_actor("critic", 85), "Wrong species")
        with pytest.raises(InvalidTransition):
            engine.raise_dispute(observation_id, make_actor("other", 85), "Also wrong")

    def test_disputed_observation_cannot_be_verified(self, engine, make_actor, verified):
        observation_id, _ = verified
        engine.raise_dispute(observation_id, make_actor("critic", 85), "Wrong species")
        with pytest.raises(InvalidTransition):
            engine.submit_verification(observation_id, make_actor("late", 90), tier=2, confidence=0.9)

    def test_pending_observation_disputed_without_contested_record(self, engine, make_actor, observation_id):
        dispute = engine.raise_dispute(observation_id, make_actor("critic", 85), "Impossible range")
        assert dispute.verification_id is None
        assert engine.get_observation(observation_id).state == ObservationState.DISPUTED


# ============================================================================
# Freshness
# ============================================================================


class TestRefreshExpired:
    """Test refreshing an observation past the retention window."""

    def test_owner_refresh_resets_freshness(self, engine, owner, expert, observation_id, clock):
        engine.submit_verification(observation_id, expert, tier=1, confidence=0.9)
        clock.advance(days=100)
        assert engine.is_expired(observation_id) is True

        refreshed = engine.refresh_expired(observation_id, owner, ["photo-2", "photo-3"])

        assert refreshed.evidence_refs == ["photo-2", "photo-3"]
        assert refreshed.refreshed_at == clock.now
        assert refreshed.state == ObservationState.VERIFIED
        assert engine.is_expired(observation_id) is False

    def test_non_owner_refused(self, engine, make_actor, observation_id):
        with pytest.raises(NotOwner):
            engine.refresh_expired(observation_id, make_actor("stranger"), ["x"])

    def test_refresh_reapplies_zone_policy(self, engine, owner, core_zone, observation_id):
        moved = replace(core_zone, center=engine.get_observation(observation_id).raw_coordinate)
        engine.store.replace_zones([moved])

        refreshed = engine.refresh_expired(observation_id, owner, ["x"])

        assert refreshed.zone_status == ZoneStatus.CORE
        assert refreshed.is_private is True


# ============================================================================
# Concurrency
# ============================================================================


class TestConcurrency:
    """Test optimistic versioning and bounded retry."""

    def test_stale_write_rejected(self, engine, observation_id):
        a = engine.get_observation(observation_id)
        b = engine.get_observation(observation_id)
        engine.store.update_observation(a, a.version)
        with pytest.raises(ConcurrentModification):
            engine.store.update_observation(b, b.version)

    def test_retry_until_success(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConcurrentModification("Observation", "o1", 0)
            return "done"

        assert retry_on_conflict(flaky, attempts=3) == "done"
        assert len(calls) == 3

    def test_retry_gives_up(self):
        def always():
            raise ConcurrentModification("Observation", "o1", 0)

        with pytest.raises(ConcurrentModification):
            retry_on_conflict(always, attempts=2)

    def test_other_errors_not_retried(self):
        calls = []

        def broken():
            calls.append(1)
            raise NotOwner("o1", "u")

        with pytest.raises(NotOwner):
            retry_on_conflict(broken, attempts=5)
        assert len(calls) == 1

    def test_credit_reasons_recorded(self, engine, expert, observation_id):
        engine.submit_verification(observation_id, expert, tier=1, confidence=0.9)
        reasons = [e.reason for e in engine.ledger.history("expert")]
        assert reasons == [CredibilityReason.ENROLLMENT, CredibilityReason.VERIFIER_PARTICIPATION]
