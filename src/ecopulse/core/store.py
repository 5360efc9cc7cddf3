# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Persistence interface for the trust engine, plus an in-memory backend.

Observations, verification records, disputes, votes and credibility
history live in one store. Every mutation the engine makes runs inside
``transaction()``, which either commits all of its writes or none.

Two serialization points are exposed:
- ``get_observation_for_update`` locks one observation for the rest of
  the transaction; ``update_observation`` additionally checks the
  optimistic ``version`` and raises ``ConcurrentModification`` on a
  stale write.
- ``lock_user`` serializes credibility appends for one user.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, TypeVar

from .credibility import CredibilityEntry
from .exceptions import AlreadyVoted, ConcurrentModification, NotFoundError
from .models import Observation, ProtectedZone
from .verification.enums import DisputeStatus
from .verification.models import Dispute, VerificationRecord, Vote

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_on_conflict(fn: Callable[[], T], attempts: int = 3) -> T:
    """Call ``fn``, retrying on ``ConcurrentModification`` up to ``attempts`` times.

    Any other exception propagates on the first failure.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrentModification as e:
            if attempt == attempts:
                logger.warning(f"Giving up after {attempts} attempts: {e.message}")
                raise
            logger.info(f"Retrying after concurrent modification (attempt {attempt}/{attempts}): {e.message}")
    raise AssertionError("unreachable")


class ObservationStore(ABC):
    """Storage contract for the trust engine."""

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager scoping an atomic unit of work. Nested calls join the outer one."""

    # Observations

    @abstractmethod
    def add_observation(self, observation: Observation) -> None: ...

    @abstractmethod
    def get_observation(self, observation_id: str) -> Observation | None: ...

    @abstractmethod
    def get_observation_for_update(self, observation_id: str) -> Observation | None: ...

    @abstractmethod
    def update_observation(self, observation: Observation, expected_version: int) -> None:
        """Persist ``observation`` if the stored version still equals ``expected_version``.

        On success ``observation.version`` is incremented.
        """

    @abstractmethod
    def find_by_idempotency_key(self, owner_id: str, key: str) -> Observation | None: ...

    @abstractmethod
    def observations_between(self, owner_id: str, start: datetime, end: datetime) -> list[Observation]:
        """The owner's non-superseded observations with ``start <= observed_at < end``."""

    # Verification records

    @abstractmethod
    def add_verification(self, record: VerificationRecord) -> None: ...

    @abstractmethod
    def verifications_for(self, observation_id: str) -> list[VerificationRecord]: ...

    @abstractmethod
    def get_verification(self, verification_id: str) -> VerificationRecord | None: ...

    # Disputes and votes

    @abstractmethod
    def add_dispute(self, dispute: Dispute) -> None: ...

    @abstractmethod
    def get_dispute(self, dispute_id: str) -> Dispute | None: ...

    @abstractmethod
    def get_dispute_for_update(self, dispute_id: str) -> Dispute | None: ...

    @abstractmethod
    def update_dispute(self, dispute: Dispute, expected_version: int) -> None: ...

    @abstractmethod
    def disputes_for(self, observation_id: str) -> list[Dispute]: ...

    @abstractmethod
    def disputes_with_status(self, status: DisputeStatus) -> list[Dispute]: ...

    @abstractmethod
    def add_vote(self, vote: Vote) -> None:
        """Record a vote. Raises ``AlreadyVoted`` if the voter has one on the dispute."""

    @abstractmethod
    def votes_for(self, dispute_id: str) -> list[Vote]: ...

    # Credibility

    @abstractmethod
    def lock_user(self, user_id: str) -> None:
        """Serialize credibility writes for ``user_id`` until the transaction ends."""

    @abstractmethod
    def credibility_history(self, user_id: str) -> list[CredibilityEntry]: ...

    @abstractmethod
    def append_credibility(self, entry: CredibilityEntry) -> None: ...

    # Protected-zone registry (read-only to the engine)

    @abstractmethod
    def list_zones(self) -> list[ProtectedZone]: ...


class InMemoryStore(ObservationStore):
    """Process-local store for tests and single-process deployments.

    One re-entrant lock covers every transaction, so transitions and
    credibility appends are serialized. State is snapshotted when the
    outermost transaction opens and restored if it raises. Reads return
    copies; a caller's changes only land through the update methods.
    """

    def __init__(self, zones: list[ProtectedZone] | None = None):
        self._lock = threading.RLock()
        self._depth = 0
        self._zones = list(zones or [])
        self._observations: dict[str, Observation] = {}
        self._verifications: dict[str, VerificationRecord] = {}
        self._disputes: dict[str, Dispute] = {}
        self._votes: dict[str, Vote] = {}
        self._credibility: dict[str, list[CredibilityEntry]] = {}

    def _state(self) -> tuple:
        return (self._observations, self._verifications, self._disputes, self._votes, self._credibility)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy(self._state()) if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    (
                        self._observations,
                        self._verifications,
                        self._disputes,
                        self._votes,
                        self._credibility,
                    ) = snapshot
                raise
            finally:
                self._depth -= 1

    # Observations

    def add_observation(self, observation: Observation) -> None:
        with self.transaction():
            self._observations[observation.id] = copy.deepcopy(observation)

    def get_observation(self, observation_id: str) -> Observation | None:
        with self._lock:
            found = self._observations.get(observation_id)
            return copy.deepcopy(found) if found else None

    def get_observation_for_update(self, observation_id: str) -> Observation | None:
        return self.get_observation(observation_id)

    def update_observation(self, observation: Observation, expected_version: int) -> None:
        with self.transaction():
            current = self._observations.get(observation.id)
            if current is None:
                raise NotFoundError("Observation", observation.id)
            if current.version != expected_version:
                raise ConcurrentModification("Observation", observation.id, expected_version)
            observation.version = expected_version + 1
            self._observations[observation.id] = copy.deepcopy(observation)

    def find_by_idempotency_key(self, owner_id: str, key: str) -> Observation | None:
        with self._lock:
            for obs in self._observations.values():
                if obs.owner_id == owner_id and obs.idempotency_key == key:
                    return copy.deepcopy(obs)
        return None

    def observations_between(self, owner_id: str, start: datetime, end: datetime) -> list[Observation]:
        with self._lock:
            return [
                copy.deepcopy(o)
                for o in self._observations.values()
                if o.owner_id == owner_id and not o.is_superseded and start <= o.observed_at < end
            ]

    # Verification records

    def add_verification(self, record: VerificationRecord) -> None:
        with self.transaction():
            self._verifications[record.id] = record

    def verifications_for(self, observation_id: str) -> list[VerificationRecord]:
        with self._lock:
            return sorted(
                (r for r in self._verifications.values() if r.observation_id == observation_id),
                key=lambda r: r.created_at,
            )

    def get_verification(self, verification_id: str) -> VerificationRecord | None:
        with self._lock:
            return self._verifications.get(verification_id)

    # Disputes and votes

    def add_dispute(self, dispute: Dispute) -> None:
        with self.transaction():
            self._disputes[dispute.id] = copy.deepcopy(dispute)

    def get_dispute(self, dispute_id: str) -> Dispute | None:
        with self._lock:
            found = self._disputes.get(dispute_id)
            return copy.deepcopy(found) if found else None

    def get_dispute_for_update(self, dispute_id: str) -> Dispute | None:
        return self.get_dispute(dispute_id)

    def update_dispute(self, dispute: Dispute, expected_version: int) -> None:
        with self.transaction():
            current = self._disputes.get(dispute.id)
            if current is None:
                raise NotFoundError("Dispute", dispute.id)
            if current.version != expected_version:
                raise ConcurrentModification("Dispute", dispute.id, expected_version)
            dispute.version = expected_version + 1
            self._disputes[dispute.id] = copy.deepcopy(dispute)

    def disputes_for(self, observation_id: str) -> list[Dispute]:
        with self._lock:
            return sorted(
                (copy.deepcopy(d) for d in self._disputes.values() if d.observation_id == observation_id),
                key=lambda d: d.created_at,
            )

    def disputes_with_status(self, status: DisputeStatus) -> list[Dispute]:
        with self._lock:
            return sorted(
                (copy.deepcopy(d) for d in self._disputes.values() if d.status == status),
                key=lambda d: d.created_at,
            )

    def add_vote(self, vote: Vote) -> None:
        with self.transaction():
            for existing in self._votes.values():
                if existing.dispute_id == vote.dispute_id and existing.voter_id == vote.voter_id:
                    raise AlreadyVoted(vote.dispute_id, vote.voter_id)
            self._votes[vote.id] = vote

    def votes_for(self, dispute_id: str) -> list[Vote]:
        with self._lock:
            return sorted(
                (v for v in self._votes.values() if v.dispute_id == dispute_id),
                key=lambda v: v.created_at,
            )

    # Credibility

    def lock_user(self, user_id: str) -> None:
        # The store-wide lock already serializes every transaction
        return None

    def credibility_history(self, user_id: str) -> list[CredibilityEntry]:
        with self._lock:
            return list(self._credibility.get(user_id, []))

    def append_credibility(self, entry: CredibilityEntry) -> None:
        with self.transaction():
            self._credibility.setdefault(entry.user_id, []).append(entry)

    # Zones

    def list_zones(self) -> list[ProtectedZone]:
        with self._lock:
            return list(self._zones)

    def replace_zones(self, zones: list[ProtectedZone]) -> None:
        """Swap in a new registry snapshot."""
        with self._lock:
            self._zones = list(zones)
