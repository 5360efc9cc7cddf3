# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""PostgreSQL implementation of ``ObservationStore``.

One ``get_cursor()`` block is one transaction; nested ``transaction()``
calls on the same thread join it. Observations and disputes are locked
with ``SELECT ... FOR UPDATE`` and written with a version check.
Credibility appends take a transaction-scoped advisory lock per user.

Deadlocks, serialization failures and unique-key races surface as
``ConcurrentModification`` so callers can retry them.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from typing import Any

from psycopg2 import errors as pg_errors

from .credibility import CredibilityEntry, CredibilityReason
from .db import get_cursor
from .exceptions import AlreadyVoted, ConcurrentModification, DatabaseException, NotFoundError
from .models import Coordinate, Observation, ObservationState, ProtectedZone, ZoneStatus
from .store import ObservationStore
from .verification.enums import DisputeOutcome, DisputeStatus, VerificationTier, VoteChoice
from .verification.models import Dispute, VerificationRecord, Vote

logger = logging.getLogger(__name__)

_RETRYABLE = (pg_errors.DeadlockDetected, pg_errors.SerializationFailure, pg_errors.UniqueViolation)


# ============================================================================
# Row mapping
# ============================================================================

def observation_from_row(row: dict[str, Any]) -> Observation:
    disclosed = None
    if row.get("disclosed_lat") is not None:
        disclosed = Coordinate(row["disclosed_lat"], row["disclosed_lng"])
    return Observation(
        id=row["id"],
        owner_id=row["owner_id"],
        species_id=row["species_id"],
        raw_coordinate=Coordinate(row["raw_lat"], row["raw_lng"]),
        observed_at=row["observed_at"],
        submitted_at=row["submitted_at"],
        disclosed_coordinate=disclosed,
        disclosure_precision_m=row.get("disclosure_precision_m"),
        zone_status=ZoneStatus(row["zone_status"]),
        zone_id=row.get("zone_id"),
        requires_disclosure_confirmation=row["requires_disclosure_confirmation"],
        is_private=row["is_private"],
        is_retrospective=row["is_retrospective"],
        justification=row.get("justification"),
        state=ObservationState(row["state"]),
        media_refs=list(row.get("media_refs") or []),
        evidence_refs=list(row.get("evidence_refs") or []),
        notes=row.get("notes") or "",
        count=row["count"],
        idempotency_key=row.get("idempotency_key"),
        conflict_detected=row["conflict_detected"],
        conflicting_ids=list(row.get("conflicting_ids") or []),
        superseded_by=row.get("superseded_by"),
        refreshed_at=row.get("refreshed_at"),
        version=row["version"],
    )


def _observation_params(obs: Observation) -> dict[str, Any]:
    disclosed = obs.disclosed_coordinate
    return {
        "id": obs.id,
        "owner_id": obs.owner_id,
        "species_id": obs.species_id,
        "raw_lat": obs.raw_coordinate.latitude,
        "raw_lng": obs.raw_coordinate.longitude,
        "disclosed_lat": disclosed.latitude if disclosed else None,
        "disclosed_lng": disclosed.longitude if disclosed else None,
        "disclosure_precision_m": obs.disclosure_precision_m,
        "zone_status": obs.zone_status.value,
        "zone_id": obs.zone_id,
        "requires_disclosure_confirmation": obs.requires_disclosure_confirmation,
        "is_private": obs.is_private,
        "is_retrospective": obs.is_retrospective,
        "justification": obs.justification,
        "state": obs.state.value,
        "media_refs": json.dumps(obs.media_refs),
        "evidence_refs": json.dumps(obs.evidence_refs),
        "notes": obs.notes,
        "count": obs.count,
        "idempotency_key": obs.idempotency_key,
        "conflict_detected": obs.conflict_detected,
        "conflicting_ids": json.dumps(obs.conflicting_ids),
        "superseded_by": obs.superseded_by,
        "observed_at": obs.observed_at,
        "submitted_at": obs.submitted_at,
        "refreshed_at": obs.refreshed_at,
        "version": obs.version,
    }


_OBSERVATION_COLUMNS = (
    "id, owner_id, species_id, raw_lat, raw_lng, disclosed_lat, disclosed_lng, "
    "disclosure_precision_m, zone_status, zone_id, requires_disclosure_confirmation, "
    "is_private, is_retrospective, justification, state, media_refs, evidence_refs, "
    "notes, count, idempotency_key, conflict_detected, conflicting_ids, superseded_by, "
    "observed_at, submitted_at, refreshed_at, version"
)

_MUTABLE_OBSERVATION_COLUMNS = (
    "disclosed_lat", "disclosed_lng", "disclosure_precision_m", "zone_status", "zone_id",
    "requires_disclosure_confirmation", "is_private", "state", "media_refs", "evidence_refs",
    "conflict_detected", "conflicting_ids", "superseded_by", "refreshed_at",
)


def verification_from_row(row: dict[str, Any]) -> VerificationRecord:
    return VerificationRecord(
        id=row["id"],
        observation_id=row["observation_id"],
        verifier_id=row["verifier_id"],
        tier=VerificationTier(row["tier"]),
        confidence=row["confidence"],
        created_at=row["created_at"],
        notes=row.get("notes") or "",
        supersedes_id=row.get("supersedes_id"),
    )


def dispute_from_row(row: dict[str, Any]) -> Dispute:
    return Dispute(
        id=row["id"],
        observation_id=row["observation_id"],
        raised_by=row["raised_by"],
        reason=row["reason"],
        created_at=row["created_at"],
        verification_id=row.get("verification_id"),
        evidence_ref=row.get("evidence_ref"),
        status=DisputeStatus(row["status"]),
        outcome=DisputeOutcome(row["outcome"]) if row.get("outcome") else None,
        voting_deadline=row.get("voting_deadline"),
        resolved_at=row.get("resolved_at"),
        version=row["version"],
    )


def vote_from_row(row: dict[str, Any]) -> Vote:
    return Vote(
        id=row["id"],
        dispute_id=row["dispute_id"],
        voter_id=row["voter_id"],
        choice=VoteChoice(row["choice"]),
        created_at=row["created_at"],
    )


def credibility_from_row(row: dict[str, Any]) -> CredibilityEntry:
    return CredibilityEntry(
        id=row["id"],
        user_id=row["user_id"],
        reason=CredibilityReason(row["reason"]),
        delta=row["delta"],
        score=row["score"],
        created_at=row["created_at"],
        observation_id=row.get("observation_id"),
        dispute_id=row.get("dispute_id"),
    )


def zone_from_row(row: dict[str, Any]) -> ProtectedZone:
    center = None
    if row.get("center_lat") is not None:
        center = Coordinate(row["center_lat"], row["center_lng"])
    polygon = [Coordinate(lat, lng) for lat, lng in (row.get("polygon") or [])]
    return ProtectedZone(
        id=row["id"],
        category=row["category"],
        buffer_distance_m=row["buffer_distance_m"],
        blur_radius_m=row.get("blur_radius_m"),
        center=center,
        radius_m=row.get("radius_m"),
        polygon=polygon,
    )


# ============================================================================
# Store
# ============================================================================

class PostgresStore(ObservationStore):
    """Store backed by the schema in ``migrations/``.

    Args:
        cursor_factory: Context manager factory yielding a dict cursor that
            commits on clean exit; defaults to ``ecopulse.core.db.get_cursor``.
    """

    def __init__(self, cursor_factory: Callable[[], AbstractContextManager[Any]] = get_cursor):
        self._cursor_factory = cursor_factory
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        current = getattr(self._local, "cursor", None)
        if current is not None:
            yield current
            return

        try:
            with self._cursor_factory() as cur:
                self._local.cursor = cur
                try:
                    yield cur
                finally:
                    self._local.cursor = None
        except DatabaseException as e:
            if isinstance(e.__cause__, _RETRYABLE):
                raise ConcurrentModification("transaction", type(e.__cause__).__name__) from e
            raise

    # Observations

    def add_observation(self, observation: Observation) -> None:
        params = _observation_params(observation)
        placeholders = ", ".join(f"%({c.strip()})s" for c in _OBSERVATION_COLUMNS.split(","))
        with self.transaction() as cur:
            cur.execute(f"INSERT INTO observations ({_OBSERVATION_COLUMNS}) VALUES ({placeholders})", params)

    def get_observation(self, observation_id: str) -> Observation | None:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM observations WHERE id = %s", (observation_id,))
            row = cur.fetchone()
            return observation_from_row(row) if row else None

    def get_observation_for_update(self, observation_id: str) -> Observation | None:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM observations WHERE id = %s FOR UPDATE", (observation_id,))
            row = cur.fetchone()
            return observation_from_row(row) if row else None

    def update_observation(self, observation: Observation, expected_version: int) -> None:
        params = _observation_params(observation)
        params["expected_version"] = expected_version
        assignments = ", ".join(f"{c} = %({c})s" for c in _MUTABLE_OBSERVATION_COLUMNS)
        with self.transaction() as cur:
            cur.execute(
                f"UPDATE observations SET {assignments}, version = version + 1 "
                "WHERE id = %(id)s AND version = %(expected_version)s",
                params,
            )
            if cur.rowcount == 0:
                cur.execute("SELECT 1 FROM observations WHERE id = %s", (observation.id,))
                if cur.fetchone() is None:
                    raise NotFoundError("Observation", observation.id)
                raise ConcurrentModification("Observation", observation.id, expected_version)
        observation.version = expected_version + 1

    def find_by_idempotency_key(self, owner_id: str, key: str) -> Observation | None:
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM observations WHERE owner_id = %s AND idempotency_key = %s",
                (owner_id, key),
            )
            row = cur.fetchone()
            return observation_from_row(row) if row else None

    def observations_between(self, owner_id: str, start: datetime, end: datetime) -> list[Observation]:
        with self.transaction() as cur:
            cur.execute(
                """
                SELECT * FROM observations
                WHERE owner_id = %s AND superseded_by IS NULL
                  AND observed_at >= %s AND observed_at < %s
                ORDER BY observed_at
                """,
                (owner_id, start, end),
            )
            return [observation_from_row(r) for r in cur.fetchall()]

    # Verification records

    def add_verification(self, record: VerificationRecord) -> None:
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO verification_records
                    (id, observation_id, verifier_id, tier, confidence, notes, supersedes_id, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.observation_id,
                    record.verifier_id,
                    int(record.tier),
                    record.confidence,
                    record.notes,
                    record.supersedes_id,
                    record.created_at,
                ),
            )

    def verifications_for(self, observation_id: str) -> list[VerificationRecord]:
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM verification_records WHERE observation_id = %s ORDER BY created_at, id",
                (observation_id,),
            )
            return [verification_from_row(r) for r in cur.fetchall()]

    def get_verification(self, verification_id: str) -> VerificationRecord | None:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM verification_records WHERE id = %s", (verification_id,))
            row = cur.fetchone()
            return verification_from_row(row) if row else None

    # Disputes and votes

    def add_dispute(self, dispute: Dispute) -> None:
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO disputes
                    (id, observation_id, raised_by, reason, verification_id, evidence_ref,
                     status, outcome, created_at, voting_deadline, resolved_at, version)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    dispute.id,
                    dispute.observation_id,
                    dispute.raised_by,
                    dispute.reason,
                    dispute.verification_id,
                    dispute.evidence_ref,
                    dispute.status.value,
                    dispute.outcome.value if dispute.outcome else None,
                    dispute.created_at,
                    dispute.voting_deadline,
                    dispute.resolved_at,
                    dispute.version,
                ),
            )

    def get_dispute(self, dispute_id: str) -> Dispute | None:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM disputes WHERE id = %s", (dispute_id,))
            row = cur.fetchone()
            return dispute_from_row(row) if row else None

    def get_dispute_for_update(self, dispute_id: str) -> Dispute | None:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM disputes WHERE id = %s FOR UPDATE", (dispute_id,))
            row = cur.fetchone()
            return dispute_from_row(row) if row else None

    def update_dispute(self, dispute: Dispute, expected_version: int) -> None:
        with self.transaction() as cur:
            cur.execute(
                """
                UPDATE disputes
                SET status = %s, outcome = %s, voting_deadline = %s, resolved_at = %s,
                    version = version + 1
                WHERE id = %s AND version = %s
                """,
                (
                    dispute.status.value,
                    dispute.outcome.value if dispute.outcome else None,
                    dispute.voting_deadline,
                    dispute.resolved_at,
                    dispute.id,
                    expected_version,
                ),
            )
            if cur.rowcount == 0:
                raise ConcurrentModification("Dispute", dispute.id, expected_version)
        dispute.version = expected_version + 1

    def disputes_for(self, observation_id: str) -> list[Dispute]:
        with self.transaction() as cur:
            cur.execute(
                "SELECT * FROM disputes WHERE observation_id = %s ORDER BY created_at", (observation_id,)
            )
            return [dispute_from_row(r) for r in cur.fetchall()]

    def disputes_with_status(self, status: DisputeStatus) -> list[Dispute]:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM disputes WHERE status = %s ORDER BY created_at", (status.value,))
            return [dispute_from_row(r) for r in cur.fetchall()]

    def add_vote(self, vote: Vote) -> None:
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO votes (id, dispute_id, voter_id, choice, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (dispute_id, voter_id) DO NOTHING
                RETURNING id
                """,
                (vote.id, vote.dispute_id, vote.voter_id, vote.choice.value, vote.created_at),
            )
            if cur.fetchone() is None:
                raise AlreadyVoted(vote.dispute_id, vote.voter_id)

    def votes_for(self, dispute_id: str) -> list[Vote]:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM votes WHERE dispute_id = %s ORDER BY created_at, id", (dispute_id,))
            return [vote_from_row(r) for r in cur.fetchall()]

    # Credibility

    def lock_user(self, user_id: str) -> None:
        with self.transaction() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"credibility:{user_id}",))

    def credibility_history(self, user_id: str) -> list[CredibilityEntry]:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM credibility_history WHERE user_id = %s ORDER BY seq", (user_id,))
            return [credibility_from_row(r) for r in cur.fetchall()]

    def append_credibility(self, entry: CredibilityEntry) -> None:
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO credibility_history
                    (id, user_id, reason, delta, score, created_at, observation_id, dispute_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.reason.value,
                    entry.delta,
                    entry.score,
                    entry.created_at,
                    entry.observation_id,
                    entry.dispute_id,
                ),
            )

    # Zones

    def list_zones(self) -> list[ProtectedZone]:
        with self.transaction() as cur:
            cur.execute("SELECT * FROM protected_zones ORDER BY id")
            return [zone_from_row(r) for r in cur.fetchall()]
