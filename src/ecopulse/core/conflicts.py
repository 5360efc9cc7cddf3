# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Conflict detection and resolution for a contributor's submissions.

Two records of the same contributor conflict when their raw coordinates lie
within ``conflict_distance_m`` of each other and they were observed on the
same UTC calendar day. A resubmission carrying a known idempotency key is a
retry and never a conflict.

Conflicts are data, not failures: both records persist, the new one is
flagged, and the owner later picks ``keep_existing``, ``keep_new`` or
``merge``. A losing record is marked superseded, never deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from .exceptions import InvalidTransition, NotFoundError, NotOwner, ValidationException
from .location import distance_m
from .logging import event_extra
from .models import Observation, utcnow

if TYPE_CHECKING:
    from .store import ObservationStore

logger = logging.getLogger(__name__)


class ResolutionOption(str, Enum):
    KEEP_EXISTING = "keep_existing"
    KEEP_NEW = "keep_new"
    MERGE = "merge"


RESOLUTION_OPTIONS = [o.value for o in ResolutionOption]


class ConflictKind(str, Enum):
    DUPLICATE = "duplicate"        # Same material content
    INCONSISTENT = "inconsistent"  # Differs in species or other material content


@dataclass
class ConflictReport:
    """Outcome of checking one candidate against the contributor's records."""

    conflict_detected: bool = False
    conflicting_ids: list[str] = field(default_factory=list)
    kind: ConflictKind | None = None
    options: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_detected": self.conflict_detected,
            "conflicting_ids": list(self.conflicting_ids),
            "kind": self.kind.value if self.kind else None,
            "options": list(self.options),
        }


def utc_day(instant: datetime) -> tuple[datetime, datetime]:
    """The [start, end) bounds of the UTC calendar day containing ``instant``."""
    day = instant.astimezone(timezone.utc).date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def material_content(observation: Observation) -> tuple:
    """Fields whose disagreement makes two nearby records inconsistent."""
    return (
        observation.species_id.strip().lower(),
        observation.count,
        observation.notes.strip(),
    )


def detect_conflicts(
    candidate: Observation,
    existing: list[Observation],
    tolerance_m: float,
) -> ConflictReport:
    """Compare a candidate with the same contributor's other observations.

    ``existing`` should already be narrowed to the owner and day; records
    that are superseded or are the candidate itself are ignored here too.
    """
    start, end = utc_day(candidate.observed_at)
    nearby = [
        other
        for other in existing
        if other.id != candidate.id
        and other.owner_id == candidate.owner_id
        and not other.is_superseded
        and start <= other.observed_at < end
        and distance_m(candidate.raw_coordinate, other.raw_coordinate) <= tolerance_m
    ]
    if not nearby:
        return ConflictReport()

    signature = material_content(candidate)
    kind = (
        ConflictKind.DUPLICATE
        if all(material_content(o) == signature for o in nearby)
        else ConflictKind.INCONSISTENT
    )
    return ConflictReport(
        conflict_detected=True,
        conflicting_ids=[o.id for o in nearby],
        kind=kind,
        options=list(RESOLUTION_OPTIONS),
    )


# ============================================================================
# Resolution
# ============================================================================


@dataclass
class ResolutionResult:
    kept: list[Observation]
    superseded: list[Observation]
    choice: ResolutionOption

    def to_dict(self) -> dict[str, Any]:
        return {
            "choice": self.choice.value,
            "kept": [o.id for o in self.kept],
            "superseded": [o.id for o in self.superseded],
        }


class ConflictResolver:
    """Applies the owner's choice to a flagged observation."""

    def __init__(self, store: ObservationStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def _load(self, observation_id: str) -> Observation:
        observation = self.store.get_observation_for_update(observation_id)
        if observation is None:
            raise NotFoundError("Observation", observation_id)
        return observation

    def _supersede(self, loser: Observation, winner_id: str) -> None:
        expected = loser.version
        loser.superseded_by = winner_id
        self.store.update_observation(loser, expected)

    def resolve(self, observation_id: str, actor_id: str, choice: ResolutionOption | str) -> ResolutionResult:
        """Resolve the conflict flagged on ``observation_id``.

        ``keep_existing`` supersedes the flagged record with the first
        conflicting one; ``keep_new`` supersedes the conflicting records;
        ``merge`` does the same and folds their media into the flagged record.

        Raises:
            NotFoundError: unknown observation
            NotOwner: ``actor_id`` does not own the observation
            ValidationException: unknown choice, or no unresolved conflict
        """
        try:
            choice = ResolutionOption(choice)
        except ValueError:
            raise ValidationException(
                f"choice must be one of {', '.join(RESOLUTION_OPTIONS)}", "choice", choice
            )

        with self.store.transaction():
            flagged = self._load(observation_id)
            if flagged.owner_id != actor_id:
                raise NotOwner(observation_id, actor_id)
            if not flagged.conflict_detected:
                raise ValidationException("Observation has no unresolved conflict", "observation_id", observation_id)
            if flagged.is_superseded:
                raise InvalidTransition("superseded", choice.value, observation_id)

            others = [self._load(oid) for oid in flagged.conflicting_ids]
            others = [o for o in others if not o.is_superseded]

            if choice == ResolutionOption.KEEP_EXISTING and others:
                winner = others[0]
                flagged.conflict_detected = False
                self._supersede(flagged, winner.id)
                kept, superseded = others, [flagged]
            else:
                for other in others:
                    self._supersede(other, flagged.id)
                if choice == ResolutionOption.MERGE:
                    for other in others:
                        flagged.media_refs.extend(m for m in other.media_refs if m not in flagged.media_refs)
                        flagged.evidence_refs.extend(e for e in other.evidence_refs if e not in flagged.evidence_refs)
                kept, superseded = [flagged], others

            if not flagged.is_superseded:
                expected = flagged.version
                flagged.conflict_detected = False
                self.store.update_observation(flagged, expected)

        logger.info(
            f"Conflict on {observation_id} resolved: {choice.value}",
            extra=event_extra(
                "conflict_resolved",
                observation_id=observation_id,
                choice=choice.value,
                superseded=[o.id for o in superseded],
            ),
        )
        return ResolutionResult(kept=kept, superseded=superseded, choice=choice)
