# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Validation functions for verifications, disputes and votes.

Input-shape checks return a list of error strings (empty if valid), so a
caller can report every problem at once. Standing and state checks raise
the typed error straight away.
"""

from __future__ import annotations

from ..config import CoreSettings
from ..exceptions import InsufficientCredibility, InvalidTransition, NotEligible
from ..models import Observation, ObservationState
from .constants import (
    DISPUTE_TRANSITIONS,
    MAX_NOTES_LENGTH,
    MAX_REASON_LENGTH,
    OBSERVATION_TRANSITIONS,
)
from .enums import DisputeStatus, VerificationTier
from .models import Dispute, VerificationRecord


# ============================================================================
# Input checks
# ============================================================================

def validate_verification_input(tier: int, confidence: float, notes: str | None) -> list[str]:
    """Validate the fields of a verification submission."""
    errors = []

    if tier not in {t.value for t in VerificationTier}:
        errors.append(f"tier must be one of {sorted(t.value for t in VerificationTier)}")

    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        errors.append("confidence must be a number")
    elif not 0.0 <= confidence <= 1.0:
        errors.append("confidence must be between 0.0 and 1.0")

    if notes and len(notes) > MAX_NOTES_LENGTH:
        errors.append(f"notes must be at most {MAX_NOTES_LENGTH} characters")

    return errors


def validate_dispute_input(reason: str | None) -> list[str]:
    """Validate the fields of a dispute submission."""
    errors = []
    if not reason or not reason.strip():
        errors.append("reason is required")
    elif len(reason) > MAX_REASON_LENGTH:
        errors.append(f"reason must be at most {MAX_REASON_LENGTH} characters")
    return errors


# ============================================================================
# Transitions
# ============================================================================

def check_transition(observation: Observation, to_state: ObservationState) -> None:
    """Raise ``InvalidTransition`` unless the table allows the move."""
    if to_state not in OBSERVATION_TRANSITIONS[observation.state]:
        raise InvalidTransition(observation.state.value, to_state.value, observation.id)


def check_dispute_transition(dispute: Dispute, to_status: DisputeStatus) -> None:
    if to_status not in DISPUTE_TRANSITIONS[dispute.status]:
        raise InvalidTransition(dispute.status.value, to_status.value, dispute.id)


# ============================================================================
# Standing
# ============================================================================

def check_credibility(score: int, tier: VerificationTier, config: CoreSettings) -> None:
    """Raise ``InsufficientCredibility`` if ``score`` is below the tier's threshold."""
    required = config.tier_threshold(int(tier))
    if score < required:
        raise InsufficientCredibility(required=required, actual=score, tier=int(tier))


def standing_tier(score: int, config: CoreSettings) -> int:
    """Highest tier ``score`` qualifies for, 0 below the tier-1 threshold."""
    if score >= config.tier2_min_credibility:
        return int(VerificationTier.EXPERT)
    if score >= config.tier1_min_credibility:
        return int(VerificationTier.PEER)
    return 0


def check_verifier_eligibility(observation: Observation, verifier_id: str) -> None:
    if observation.owner_id == verifier_id:
        raise NotEligible("Contributors cannot verify their own observations", verifier_id)


def check_disputer_eligibility(
    observation: Observation,
    disputer_id: str,
    disputer_score: int,
    contested: VerificationRecord | None,
    config: CoreSettings,
) -> None:
    """A disputer needs tier-2 standing and must not be the owner or the contested verifier.

    Once an observation is verified, only standing above the contested
    record's tier can reopen it.
    """
    if observation.owner_id == disputer_id:
        raise NotEligible("Contributors cannot dispute their own observations", disputer_id)
    if contested is not None and contested.verifier_id == disputer_id:
        raise NotEligible("Verifiers cannot dispute their own verification", disputer_id)
    if disputer_score < config.tier2_min_credibility:
        raise NotEligible(
            f"Raising a dispute requires tier 2 standing (credibility {config.tier2_min_credibility})",
            disputer_id,
        )
    if (
        observation.state == ObservationState.VERIFIED
        and contested is not None
        and standing_tier(disputer_score, config) <= int(contested.tier)
    ):
        raise NotEligible(
            f"A tier {int(contested.tier)} verification can only be contested from a higher tier",
            disputer_id,
        )


def check_voter_eligibility(
    observation: Observation,
    dispute: Dispute,
    contested: VerificationRecord | None,
    voter_id: str,
    voter_score: int,
    config: CoreSettings,
) -> None:
    """Voters need tier-2 standing and no stake in the dispute."""
    if voter_id == observation.owner_id:
        raise NotEligible("The observation's owner cannot vote on its dispute", voter_id)
    if voter_id == dispute.raised_by:
        raise NotEligible("The disputing verifier cannot vote on their own dispute", voter_id)
    if contested is not None and voter_id == contested.verifier_id:
        raise NotEligible("The disputed verifier cannot vote on this dispute", voter_id)
    if voter_score < config.tier2_min_credibility:
        raise NotEligible(
            f"Voting requires tier 2 standing (credibility {config.tier2_min_credibility})",
            voter_id,
        )
