# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Dispute and voting coordinator.

Takes disputes raised by the verification state machine, collects one vote
per eligible voter, and resolves each dispute once the quorum is reached
or the voting window has elapsed, whichever comes first. The outcome is a
simple majority of cast votes; a tie upholds the contested verification.

A dispute never resolves without at least one vote. A dispute whose window
elapses with no votes stays in ``voting`` and is reported as stalled.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .config import CoreSettings, get_config
from .credibility import CredibilityLedger
from .exceptions import AlreadyVoted, InvalidTransition, NotEligible, NotFoundError, ValidationException
from .logging import event_extra
from .models import ObservationState, new_id, utcnow
from .verification import (
    Dispute,
    DisputeOutcome,
    DisputeStatus,
    DisputeTally,
    VerificationService,
    Vote,
    VoteChoice,
    check_dispute_transition,
    check_voter_eligibility,
)

if TYPE_CHECKING:
    from .store import ObservationStore

logger = logging.getLogger(__name__)


@dataclass
class VoteResult:
    """What happened when a vote was cast."""

    vote: Vote
    dispute: Dispute
    tally: DisputeTally

    @property
    def resolved(self) -> bool:
        return self.dispute.is_resolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "vote": self.vote.to_dict(),
            "dispute": self.dispute.to_dict(),
            "tally": self.tally.to_dict(),
            "resolved": self.resolved,
        }


@dataclass
class SweepReport:
    """Result of closing disputes whose voting window has elapsed."""

    resolved: list[Dispute] = field(default_factory=list)
    stalled: list[Dispute] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolved": [d.to_dict() for d in self.resolved],
            "stalled": [d.to_dict() for d in self.stalled],
        }


class DisputeCoordinator:
    """Runs community voting for disputes."""

    def __init__(
        self,
        store: ObservationStore,
        ledger: CredibilityLedger,
        verification: VerificationService,
        config: CoreSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.verification = verification
        self.config = config or get_config()
        self.clock = clock
        verification.dispute_handoff = self.open_voting

    def _load_for_update(self, dispute_id: str) -> Dispute:
        dispute = self.store.get_dispute_for_update(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        return dispute

    def get(self, dispute_id: str) -> Dispute:
        dispute = self.store.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        return dispute

    def open_voting(self, dispute: Dispute) -> Dispute:
        """Move an open dispute to ``voting`` and start its window."""
        with self.store.transaction():
            check_dispute_transition(dispute, DisputeStatus.VOTING)
            expected = dispute.version
            dispute.status = DisputeStatus.VOTING
            dispute.voting_deadline = self.clock() + timedelta(hours=self.config.voting_window_hours)
            self.store.update_dispute(dispute, expected)
        logger.info(
            f"Voting opened on dispute {dispute.id} until {dispute.voting_deadline.isoformat()}",
            extra=event_extra("voting_opened", dispute_id=dispute.id, observation_id=dispute.observation_id),
        )
        return dispute

    def tally(self, dispute_id: str) -> DisputeTally:
        """Current vote counts. Side-effect free."""
        dispute = self.get(dispute_id)
        return DisputeTally.from_votes(
            dispute.id, self.store.votes_for(dispute.id), self.config.vote_quorum, dispute.voting_deadline
        )

    def cast_vote(self, dispute_id: str, voter_id: str, choice: VoteChoice | str) -> VoteResult:
        """Record one vote and resolve the dispute if quorum or the deadline has been reached.

        The first vote moves the observation from ``disputed`` to
        ``under_review``.

        Raises:
            ValidationException: unknown vote choice
            NotFoundError: unknown dispute
            InvalidTransition: the dispute is not accepting votes
            NotEligible: the voter lacks tier-2 standing or has a stake in the dispute
            AlreadyVoted: the voter already voted on this dispute
        """
        try:
            choice = VoteChoice(choice)
        except ValueError:
            raise ValidationException("choice must be 'uphold' or 'overturn'", "choice", choice)

        with self.store.transaction():
            dispute = self._load_for_update(dispute_id)
            if dispute.status != DisputeStatus.VOTING:
                raise InvalidTransition(dispute.status.value, DisputeStatus.VOTING.value, dispute.id)

            observation = self.store.get_observation_for_update(dispute.observation_id)
            if observation is None:
                raise NotFoundError("Observation", dispute.observation_id)
            contested = self.store.get_verification(dispute.verification_id) if dispute.verification_id else None

            votes = self.store.votes_for(dispute.id)
            if any(v.voter_id == voter_id for v in votes):
                raise AlreadyVoted(dispute.id, voter_id)
            try:
                check_voter_eligibility(
                    observation, dispute, contested, voter_id, self.ledger.score(voter_id), self.config
                )
            except NotEligible:
                logger.warning(
                    f"Vote by {voter_id} on dispute {dispute.id} refused",
                    extra=event_extra("vote_refused", dispute_id=dispute.id, voter_id=voter_id),
                )
                raise

            vote = Vote(id=new_id(), dispute_id=dispute.id, voter_id=voter_id, choice=choice, created_at=self.clock())
            self.store.add_vote(vote)
            votes.append(vote)
            logger.info(
                f"Vote {choice.value} by {voter_id} on dispute {dispute.id} ({len(votes)} cast)",
                extra=event_extra("vote_cast", dispute_id=dispute.id, voter_id=voter_id, choice=choice.value),
            )

            if observation.state == ObservationState.DISPUTED:
                self.verification.mark_under_review(observation.id)

            tally = DisputeTally.from_votes(dispute.id, votes, self.config.vote_quorum, dispute.voting_deadline)
            if tally.total >= self.config.vote_quorum or self._window_elapsed(dispute):
                dispute = self._resolve(dispute, tally)

        return VoteResult(vote=vote, dispute=dispute, tally=tally)

    def _window_elapsed(self, dispute: Dispute) -> bool:
        return dispute.voting_deadline is not None and self.clock() >= dispute.voting_deadline

    def _resolve(self, dispute: Dispute, tally: DisputeTally) -> Dispute:
        if tally.total == 0:
            raise InvalidTransition(dispute.status.value, DisputeStatus.RESOLVED.value, dispute.id)
        check_dispute_transition(dispute, DisputeStatus.RESOLVED)

        outcome = tally.leading
        expected = dispute.version
        dispute.status = DisputeStatus.RESOLVED
        dispute.outcome = outcome
        dispute.resolved_at = self.clock()
        self.store.update_dispute(dispute, expected)
        self.verification.apply_resolution(dispute, outcome)

        logger.info(
            f"Dispute {dispute.id} resolved {outcome.value} ({tally.overturn} overturn / {tally.uphold} uphold)",
            extra=event_extra(
                "dispute_resolved",
                dispute_id=dispute.id,
                observation_id=dispute.observation_id,
                outcome=outcome.value,
                overturn=tally.overturn,
                uphold=tally.uphold,
            ),
        )
        return dispute

    def close_expired(self) -> SweepReport:
        """Force resolution of every voting dispute whose window has elapsed.

        Disputes with no votes are left in ``voting`` and reported as stalled.
        """
        report = SweepReport()
        for candidate in self.store.disputes_with_status(DisputeStatus.VOTING):
            if not self._window_elapsed(candidate):
                continue
            with self.store.transaction():
                dispute = self._load_for_update(candidate.id)
                if dispute.status != DisputeStatus.VOTING:
                    continue
                votes = self.store.votes_for(dispute.id)
                if not votes:
                    report.stalled.append(dispute)
                    logger.warning(
                        f"Dispute {dispute.id} reached its deadline without votes",
                        extra=event_extra("dispute_stalled", dispute_id=dispute.id),
                    )
                    continue
                tally = DisputeTally.from_votes(dispute.id, votes, self.config.vote_quorum, dispute.voting_deadline)
                report.resolved.append(self._resolve(dispute, tally))
        return report
