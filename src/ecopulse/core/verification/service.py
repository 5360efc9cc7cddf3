# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Verification state machine.

Owns each observation's lifecycle state:

    pending -> verified -> disputed -> under_review -> resolved_upheld
    pending -> disputed                             -> resolved_overturned

Every transition is checked against ``OBSERVATION_TRANSITIONS`` and
committed through the store's optimistic version check, with the
observation row locked for the duration of the transaction. Credibility
events fire in the same transaction as the transition that causes them.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from ..config import CoreSettings, get_config
from ..credibility import CredibilityLedger, CredibilityReason
from ..exceptions import (
    InsufficientCredibility,
    InvalidTransition,
    NotEligible,
    NotFoundError,
    NotOwner,
    ValidationException,
)
from ..location import reassess
from ..logging import event_extra
from ..models import Observation, ObservationState, ProtectedZone, new_id, utcnow
from .constants import DISPUTABLE_STATES, VERIFIABLE_STATES
from .enums import DisputeOutcome, DisputeStatus, VerificationTier
from .models import Dispute, VerificationRecord, active_records
from .validators import (
    check_credibility,
    check_disputer_eligibility,
    check_transition,
    check_verifier_eligibility,
    validate_dispute_input,
    validate_verification_input,
)

if TYPE_CHECKING:
    from ..store import ObservationStore

logger = logging.getLogger(__name__)


class VerificationService:
    """Applies verification and dispute actions to observations.

    ``dispute_handoff`` is called with every newly raised dispute inside the
    same transaction; the dispute coordinator installs itself there to open
    voting.
    """

    def __init__(
        self,
        store: ObservationStore,
        ledger: CredibilityLedger,
        config: CoreSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.config = config or get_config()
        self.clock = clock
        self.dispute_handoff: Callable[[Dispute], Dispute] | None = None

    def _load_for_update(self, observation_id: str) -> Observation:
        observation = self.store.get_observation_for_update(observation_id)
        if observation is None:
            raise NotFoundError("Observation", observation_id)
        return observation

    def _transition(self, observation: Observation, to_state: ObservationState) -> None:
        check_transition(observation, to_state)
        from_state = observation.state
        expected = observation.version
        observation.state = to_state
        self.store.update_observation(observation, expected)
        logger.info(
            f"Observation {observation.id}: {from_state.value} -> {to_state.value}",
            extra=event_extra(
                "observation_transition",
                observation_id=observation.id,
                from_state=from_state.value,
                to_state=to_state.value,
            ),
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def submit_verification(
        self,
        observation_id: str,
        verifier_id: str,
        tier: int,
        confidence: float,
        notes: str = "",
    ) -> VerificationRecord:
        """File a verification record for an observation.

        The first verification of a pending observation moves it to
        ``verified`` and credits the owner. Later verifications of a verified
        observation are kept as corroboration without a state change. A
        verifier's newer record supersedes their older one.

        Raises:
            ValidationException: malformed tier, confidence or notes
            NotFoundError: unknown observation
            NotEligible: the verifier owns the observation
            InsufficientCredibility: the verifier is below the tier threshold
            InvalidTransition: the observation is disputed or resolved
            ConcurrentModification: lost a race with another transition
        """
        errors = validate_verification_input(tier, confidence, notes)
        if errors:
            raise ValidationException("; ".join(errors), errors[0].split(" ", 1)[0])
        tier = VerificationTier(tier)

        with self.store.transaction():
            observation = self._load_for_update(observation_id)
            check_verifier_eligibility(observation, verifier_id)

            score = self.ledger.score(verifier_id)
            try:
                check_credibility(score, tier, self.config)
            except InsufficientCredibility:
                logger.warning(
                    f"Verification of {observation_id} by {verifier_id} refused: credibility {score}",
                    extra=event_extra("verification_refused", observation_id=observation_id, verifier_id=verifier_id),
                )
                raise

            if observation.state not in VERIFIABLE_STATES:
                raise InvalidTransition(observation.state.value, ObservationState.VERIFIED.value, observation.id)

            existing = self.store.verifications_for(observation_id)
            previous = [r for r in active_records(existing) if r.verifier_id == verifier_id]
            record = VerificationRecord(
                id=new_id(),
                observation_id=observation_id,
                verifier_id=verifier_id,
                tier=tier,
                confidence=float(confidence),
                created_at=self.clock(),
                notes=notes or "",
                supersedes_id=previous[-1].id if previous else None,
            )
            self.store.add_verification(record)

            if observation.state == ObservationState.PENDING:
                self._transition(observation, ObservationState.VERIFIED)
                self.ledger.record_outcome(
                    observation.owner_id,
                    CredibilityReason.OBSERVATION_VERIFIED,
                    self.config.credit_observation_verified,
                    observation_id=observation_id,
                )

            if not self.ledger.has_participated(verifier_id, observation_id):
                self.ledger.record_outcome(
                    verifier_id,
                    CredibilityReason.VERIFIER_PARTICIPATION,
                    self.config.credit_verifier_participation,
                    observation_id=observation_id,
                )

        logger.info(
            f"Verification {record.id} filed by {verifier_id} on {observation_id} at tier {int(tier)}",
            extra=event_extra("verification_filed", observation_id=observation_id, verifier_id=verifier_id),
        )
        return record

    def active_verifications(self, observation_id: str) -> list[VerificationRecord]:
        return active_records(self.store.verifications_for(observation_id))

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def raise_dispute(
        self,
        observation_id: str,
        disputer_id: str,
        reason: str,
        evidence_ref: str | None = None,
        verification_id: str | None = None,
    ) -> Dispute:
        """Contest an observation's verification.

        ``verification_id`` defaults to the most recent active record. The
        observation moves to ``disputed`` and the dispute is handed to the
        coordinator for voting.

        Raises:
            ValidationException: missing reason, or ``verification_id`` does
                not belong to the observation
            NotEligible: disputer lacks tier-2 standing, owns the observation,
                filed the contested verification, or does not outrank the
                tier of a verified observation's contested record
            InvalidTransition: the observation is already disputed or resolved
        """
        errors = validate_dispute_input(reason)
        if errors:
            raise ValidationException("; ".join(errors), "reason")

        with self.store.transaction():
            observation = self._load_for_update(observation_id)

            active = active_records(self.store.verifications_for(observation_id))
            contested = None
            if verification_id is not None:
                contested = next((r for r in active if r.id == verification_id), None)
                if contested is None:
                    raise ValidationException(
                        "verification_id is not an active verification of this observation",
                        "verification_id",
                        verification_id,
                    )
            elif active:
                contested = active[-1]

            score = self.ledger.score(disputer_id)
            try:
                check_disputer_eligibility(observation, disputer_id, score, contested, self.config)
            except NotEligible:
                logger.warning(
                    f"Dispute of {observation_id} by {disputer_id} refused",
                    extra=event_extra("dispute_refused", observation_id=observation_id, disputer_id=disputer_id),
                )
                raise

            if observation.state not in DISPUTABLE_STATES:
                raise InvalidTransition(observation.state.value, ObservationState.DISPUTED.value, observation.id)

            self._transition(observation, ObservationState.DISPUTED)
            dispute = Dispute(
                id=new_id(),
                observation_id=observation_id,
                raised_by=disputer_id,
                reason=reason.strip(),
                created_at=self.clock(),
                verification_id=contested.id if contested else None,
                evidence_ref=evidence_ref,
            )
            self.store.add_dispute(dispute)
            if self.dispute_handoff is not None:
                dispute = self.dispute_handoff(dispute)

        logger.info(
            f"Dispute {dispute.id} raised by {disputer_id} on {observation_id}",
            extra=event_extra("dispute_raised", dispute_id=dispute.id, observation_id=observation_id),
        )
        return dispute

    def mark_under_review(self, observation_id: str) -> None:
        """Move a disputed observation into community review. No-op once under review."""
        with self.store.transaction():
            observation = self._load_for_update(observation_id)
            if observation.state == ObservationState.UNDER_REVIEW:
                return
            self._transition(observation, ObservationState.UNDER_REVIEW)

    def apply_resolution(self, dispute: Dispute, outcome: DisputeOutcome) -> Observation:
        """Drive the observation to its resolved state and settle credibility.

        Overturned: the owner and the contested verifier are debited and the
        disputer is credited. Upheld: the contested verifier is credited and
        the disputer is debited.
        """
        if dispute.status != DisputeStatus.RESOLVED:
            raise InvalidTransition(dispute.status.value, outcome.observation_state.value, dispute.id)

        with self.store.transaction():
            observation = self._load_for_update(dispute.observation_id)
            self._transition(observation, outcome.observation_state)

            contested = self.store.get_verification(dispute.verification_id) if dispute.verification_id else None
            cfg = self.config
            if outcome == DisputeOutcome.OVERTURNED:
                self.ledger.record_outcome(
                    observation.owner_id, CredibilityReason.OBSERVATION_OVERTURNED,
                    cfg.debit_observation_overturned, observation.id, dispute.id,
                )
                if contested is not None:
                    self.ledger.record_outcome(
                        contested.verifier_id, CredibilityReason.VERIFICATION_OVERTURNED,
                        cfg.debit_verification_overturned, observation.id, dispute.id,
                    )
                self.ledger.record_outcome(
                    dispute.raised_by, CredibilityReason.DISPUTE_WON,
                    cfg.credit_dispute_won, observation.id, dispute.id,
                )
            else:
                if contested is not None:
                    self.ledger.record_outcome(
                        contested.verifier_id, CredibilityReason.VERIFICATION_UPHELD,
                        cfg.credit_verification_upheld, observation.id, dispute.id,
                    )
                self.ledger.record_outcome(
                    dispute.raised_by, CredibilityReason.DISPUTE_LOST,
                    cfg.debit_dispute_lost, observation.id, dispute.id,
                )
        return observation

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def refresh_expired(
        self,
        observation_id: str,
        actor_id: str,
        new_evidence: list[str],
        zones: list[ProtectedZone],
        rng: random.Random,
    ) -> Observation:
        """Let the owner attach fresh evidence and reset the freshness marker.

        Verification state is untouched. The privacy transform is re-run
        against the current zone registry.

        Raises:
            NotOwner: ``actor_id`` does not own the observation
        """
        with self.store.transaction():
            observation = self._load_for_update(observation_id)
            if observation.owner_id != actor_id:
                raise NotOwner(observation_id, actor_id)
            expected = observation.version
            observation.evidence_refs.extend(e for e in new_evidence if e not in observation.evidence_refs)
            observation.refreshed_at = self.clock()
            reassess(observation, zones, rng, self.config)
            self.store.update_observation(observation, expected)

        logger.info(
            f"Observation {observation_id} refreshed with {len(new_evidence)} evidence item(s)",
            extra=event_extra("observation_refreshed", observation_id=observation_id),
        )
        return observation
