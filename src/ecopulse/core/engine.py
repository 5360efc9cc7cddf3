# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Observation trust and integrity engine.

``TrustEngine`` wires the components together over one store and is the
entry point for the HTTP layer, the CLI and the offline sync processor:

    engine = TrustEngine(InMemoryStore(zones))
    result = engine.validate_and_ingest(payload, actor)
    engine.submit_verification(result.observation_id, verifier, tier=1, confidence=0.9)

State-changing operations are retried a bounded number of times on
``ConcurrentModification``. Read operations never write.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .config import CoreSettings, get_config
from .conflicts import ConflictResolver, ResolutionOption, ResolutionResult
from .credibility import CredibilityLedger, CredibilityReport
from .disputes import DisputeCoordinator, SweepReport, VoteResult
from .exceptions import NotFoundError
from .ingest import BatchImportResult, BatchValidationResult, IngestResult, IngestService
from .models import Actor, Observation, utcnow
from .store import ObservationStore, retry_on_conflict
from .temporal import TemporalResult, is_expired, validation_window
from .verification import Dispute, DisputeTally, VerificationRecord, VerificationService, VoteChoice

logger = logging.getLogger(__name__)


class TrustEngine:
    """Facade over ingest, privacy, conflicts, verification, disputes and credibility.

    Args:
        store: Persistence backend
        config: Settings; defaults to the process-wide ``get_config()``
        clock: Returns the current UTC time
        rng: Random source for location blurring
    """

    def __init__(
        self,
        store: ObservationStore,
        config: CoreSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.config = config or get_config()
        self.clock = clock
        self.rng = rng or random.SystemRandom()

        self.ledger = CredibilityLedger(store, self.config, clock)
        self.verification = VerificationService(store, self.ledger, self.config, clock)
        self.disputes = DisputeCoordinator(store, self.ledger, self.verification, self.config, clock)
        self.ingest = IngestService(store, self.config, clock, self.rng)
        self.conflicts = ConflictResolver(store, clock)

    @classmethod
    def from_config(cls, config: CoreSettings | None = None) -> TrustEngine:
        """Engine backed by PostgreSQL using the ``ECOPULSE_DB_*`` settings."""
        from .pg_store import PostgresStore

        return cls(PostgresStore(), config)

    def _retry(self, fn: Callable[[], Any]) -> Any:
        return retry_on_conflict(fn, self.config.max_transition_retries)

    def identify(self, actor: Actor) -> None:
        """Enroll an actor on first contact, seeding from the identity provider's score.

        The seed is capped at ``MAX_ENROLLMENT_SCORE``; a known user's ledger
        always wins over the header.
        """
        self.ledger.enroll(actor.user_id, actor.credibility_score)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def validate_and_ingest(self, data: dict[str, Any], actor: Actor) -> IngestResult:
        self.identify(actor)
        return self._retry(lambda: self.ingest.validate_and_ingest(data, actor))

    def sync_batch(self, items: list[dict[str, Any]], actor: Actor) -> list[IngestResult]:
        self.identify(actor)
        return self.ingest.sync_batch(items, actor)

    def validate_batch(self, rows: list[dict[str, Any]], actor: Actor) -> BatchValidationResult:
        return self.ingest.validate_rows(rows, actor)

    def import_batch(self, rows: list[dict[str, Any]], actor: Actor) -> BatchImportResult:
        self.identify(actor)
        return self.ingest.import_rows(rows, actor)

    def check_timestamp(self, data: dict[str, Any]) -> TemporalResult:
        return self.ingest.check_timestamp(data)

    def validation_window(self) -> tuple:
        return validation_window(self.clock(), self.config.retention_days)

    def confirm_disclosure(self, observation_id: str, actor: Actor, precision_m: float | None) -> Observation:
        return self._retry(lambda: self.ingest.confirm_disclosure(observation_id, actor.user_id, precision_m))

    def resolve_conflict(self, observation_id: str, actor: Actor, choice: ResolutionOption | str) -> ResolutionResult:
        return self._retry(lambda: self.conflicts.resolve(observation_id, actor.user_id, choice))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_observation(self, observation_id: str) -> Observation:
        observation = self.store.get_observation(observation_id)
        if observation is None:
            raise NotFoundError("Observation", observation_id)
        return observation

    def observation_view(self, observation_id: str, viewer_id: str | None) -> dict[str, Any]:
        """Observation as ``viewer_id`` may see it. Only the owner sees the raw coordinate."""
        observation = self.get_observation(observation_id)
        view = observation.to_public_dict()
        view["expired"] = is_expired(observation.freshness_anchor, self.clock(), self.config.retention_days)
        if viewer_id == observation.owner_id:
            view["raw_coordinate"] = observation.raw_coordinate.to_dict()
            view["zone_status"] = observation.zone_status.value
            view["requires_disclosure_confirmation"] = observation.requires_disclosure_confirmation
            view["justification"] = observation.justification
            view["conflicting_ids"] = list(observation.conflicting_ids)
            view["evidence_refs"] = list(observation.evidence_refs)
        view["verifications"] = [r.to_dict() for r in self.verification.active_verifications(observation_id)]
        return view

    def credibility(self, user_id: str) -> CredibilityReport:
        return self.ledger.current(user_id)

    def improvement_suggestions(self, user_id: str) -> list[str]:
        return self.ledger.improvement_suggestions(user_id)

    def get_dispute(self, dispute_id: str) -> Dispute:
        return self.disputes.get(dispute_id)

    def tally(self, dispute_id: str) -> DisputeTally:
        return self.disputes.tally(dispute_id)

    def is_expired(self, observation_id: str) -> bool:
        observation = self.get_observation(observation_id)
        return is_expired(observation.freshness_anchor, self.clock(), self.config.retention_days)

    # ------------------------------------------------------------------
    # Verification and disputes
    # ------------------------------------------------------------------

    def submit_verification(
        self,
        observation_id: str,
        verifier: Actor,
        tier: int,
        confidence: float,
        notes: str = "",
    ) -> VerificationRecord:
        self.identify(verifier)
        return self._retry(
            lambda: self.verification.submit_verification(observation_id, verifier.user_id, tier, confidence, notes)
        )

    def raise_dispute(
        self,
        observation_id: str,
        disputer: Actor,
        reason: str,
        evidence_ref: str | None = None,
        verification_id: str | None = None,
    ) -> Dispute:
        self.identify(disputer)
        return self._retry(
            lambda: self.verification.raise_dispute(
                observation_id, disputer.user_id, reason, evidence_ref, verification_id
            )
        )

    def cast_vote(self, dispute_id: str, voter: Actor, choice: VoteChoice | str) -> VoteResult:
        self.identify(voter)
        return self._retry(lambda: self.disputes.cast_vote(dispute_id, voter.user_id, choice))

    def close_expired_disputes(self) -> SweepReport:
        return self.disputes.close_expired()

    def refresh_expired(self, observation_id: str, actor: Actor, new_evidence: list[str]) -> Observation:
        return self._retry(
            lambda: self.verification.refresh_expired(
                observation_id, actor.user_id, new_evidence, self.store.list_zones(), self.rng
            )
        )
