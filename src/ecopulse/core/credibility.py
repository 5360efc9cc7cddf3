# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Credibility ledger: the single source of truth for contributor trust.

A user's score is never stored as a free-standing counter. It is the fold
of an append-only history of signed deltas, each clamped into [0, 100]:

    score_0 = 0
    score_n = clamp(score_{n-1} + delta_n)

The first entry is always the enrollment credit. Every later entry comes
from a verification or dispute outcome. Appends for one user are
serialized by ``ObservationStore.lock_user`` inside a store transaction.

The component breakdown shown to contributors is recomputed from the
history on every read, so it cannot drift from the score.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import CoreSettings, get_config
from .exceptions import ValidationException
from .logging import event_extra
from .models import new_id, parse_datetime, utcnow

if TYPE_CHECKING:
    from .store import ObservationStore

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 100
# Enrollment never seeds a score above the beginner band
MAX_ENROLLMENT_SCORE = 20


class CredibilityReason(str, Enum):
    """Why a credibility entry was appended."""

    ENROLLMENT = "enrollment"
    OBSERVATION_VERIFIED = "observation_verified"
    OBSERVATION_OVERTURNED = "observation_overturned"
    VERIFICATION_UPHELD = "verification_upheld"
    VERIFICATION_OVERTURNED = "verification_overturned"
    VERIFIER_PARTICIPATION = "verifier_participation"
    DISPUTE_WON = "dispute_won"
    DISPUTE_LOST = "dispute_lost"


class CredibilityCategory(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"

    @classmethod
    def for_score(cls, score: int) -> CredibilityCategory:
        if score <= 20:
            return cls.BEGINNER
        if score <= 60:
            return cls.INTERMEDIATE
        return cls.EXPERT


def clamp(score: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, score))


@dataclass(frozen=True)
class CredibilityEntry:
    """One append-only history entry. ``score`` is the balance after ``delta``."""

    id: str
    user_id: str
    reason: CredibilityReason
    delta: int
    score: int
    created_at: datetime
    observation_id: str | None = None
    dispute_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "reason": self.reason.value,
            "delta": self.delta,
            "score": self.score,
            "created_at": self.created_at.isoformat(),
            "observation_id": self.observation_id,
            "dispute_id": self.dispute_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredibilityEntry:
        return cls(
            id=str(data["id"]),
            user_id=data["user_id"],
            reason=CredibilityReason(data["reason"]),
            delta=int(data["delta"]),
            score=int(data["score"]),
            created_at=parse_datetime(data["created_at"], "created_at"),
            observation_id=str(data["observation_id"]) if data.get("observation_id") else None,
            dispute_id=str(data["dispute_id"]) if data.get("dispute_id") else None,
        )


def fold(history: list[CredibilityEntry]) -> int:
    """Replay a history into a score."""
    score = MIN_SCORE
    for entry in history:
        score = clamp(score + entry.delta)
    return score


# ============================================================================
# Component breakdown
# ============================================================================


@dataclass
class CredibilityComponent:
    """One weighted factor of the score explanation. ``value`` is 0-100."""

    id: str
    name: str
    value: float
    weight: float
    description: str

    @property
    def contribution(self) -> float:
        return round(self.value * self.weight, 2)

    @property
    def potential_gain(self) -> float:
        return self.weight * (100.0 - self.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "value": round(self.value, 2),
            "weight": self.weight,
            "contribution": self.contribution,
            "description": self.description,
        }


COMPONENT_WEIGHTS = {
    "accuracy": 0.40,
    "participation": 0.25,
    "dispute_conduct": 0.20,
    "tenure": 0.15,
}

_SUGGESTIONS = {
    "accuracy": "Add clear photos and double-check species identification before submitting.",
    "participation": "Verify observations from other contributors in species groups you know well.",
    "dispute_conduct": "Only raise disputes you can back with strong evidence.",
    "tenure": "Keep contributing regularly; tenure grows with time on the platform.",
}

# Participation credits needed for a full participation component
_PARTICIPATION_TARGET = 10
_TENURE_TARGET_DAYS = 365


def _ratio(good: int, bad: int) -> float:
    if good + bad == 0:
        return 50.0
    return 100.0 * good / (good + bad)


def compute_components(history: list[CredibilityEntry], now: datetime) -> list[CredibilityComponent]:
    """Derive the weighted component breakdown from a user's history."""
    counts = Counter(e.reason for e in history)

    accuracy = _ratio(
        counts[CredibilityReason.OBSERVATION_VERIFIED] + counts[CredibilityReason.VERIFICATION_UPHELD],
        counts[CredibilityReason.OBSERVATION_OVERTURNED] + counts[CredibilityReason.VERIFICATION_OVERTURNED],
    )
    participation = min(100.0, 100.0 * counts[CredibilityReason.VERIFIER_PARTICIPATION] / _PARTICIPATION_TARGET)
    conduct = _ratio(counts[CredibilityReason.DISPUTE_WON], counts[CredibilityReason.DISPUTE_LOST])
    tenure_days = (now - history[0].created_at).days if history else 0
    tenure = min(100.0, 100.0 * max(0, tenure_days) / _TENURE_TARGET_DAYS)

    return [
        CredibilityComponent(
            "accuracy", "Accuracy rate", accuracy, COMPONENT_WEIGHTS["accuracy"],
            "Share of your observations and verifications that held up under review",
        ),
        CredibilityComponent(
            "participation", "Verification participation", participation, COMPONENT_WEIGHTS["participation"],
            "How actively you verify other contributors' observations",
        ),
        CredibilityComponent(
            "dispute_conduct", "Dispute conduct", conduct, COMPONENT_WEIGHTS["dispute_conduct"],
            "Share of the disputes you raised that the community agreed with",
        ),
        CredibilityComponent(
            "tenure", "Tenure", tenure, COMPONENT_WEIGHTS["tenure"],
            "Time since you joined",
        ),
    ]


def rank_suggestions(components: list[CredibilityComponent], limit: int = 3) -> list[str]:
    """Suggestions for the components with the most room to grow, best first."""
    ranked = sorted(components, key=lambda c: c.potential_gain, reverse=True)
    return [_SUGGESTIONS[c.id] for c in ranked if c.value < 80.0][:limit]


@dataclass
class CredibilityReport:
    """Read-only view of a user's standing."""

    user_id: str
    score: int
    category: CredibilityCategory
    components: list[CredibilityComponent]
    history: list[CredibilityEntry]
    suggestions: list[str]
    explanation: str
    is_new_user: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "current_score": self.score,
            "category": self.category.value,
            "components": [c.to_dict() for c in self.components],
            "history": [
                {"date": e.created_at.isoformat(), "score": e.score, "delta": e.delta, "change_reason": e.reason.value}
                for e in self.history
            ],
            "improvement_suggestions": list(self.suggestions),
            "explanation": self.explanation,
            "is_new_user": self.is_new_user,
        }


def _explain(score: int, category: CredibilityCategory, config: CoreSettings) -> str:
    text = f"Your credibility score is {score} ({category.value})."
    if score < config.tier1_min_credibility:
        text += f" Reach {config.tier1_min_credibility} to verify observations."
    elif score < config.tier2_min_credibility:
        text += f" Reach {config.tier2_min_credibility} to raise disputes and vote on them."
    else:
        text += " You can verify, dispute and vote."
    return text


# ============================================================================
# Ledger
# ============================================================================


class CredibilityLedger:
    """Owns every user's score and its history.

    Reads (``score``, ``current``, ``improvement_suggestions``) never write;
    an unknown user reads as the initial credibility.
    """

    def __init__(
        self,
        store: ObservationStore,
        config: CoreSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or get_config()
        self.clock = clock

    def enroll(self, user_id: str, imported_score: int | None = None) -> CredibilityEntry:
        """Create the enrollment entry if the user has none yet.

        ``imported_score`` seeds a user whose standing the identity provider
        already knows, capped at ``MAX_ENROLLMENT_SCORE``; otherwise the
        configured initial credibility is used. Standing above the cap is
        only earned through recorded outcomes.
        """
        with self.store.transaction():
            self.store.lock_user(user_id)
            history = self.store.credibility_history(user_id)
            if history:
                return history[0]
            start = self.config.initial_credibility
            if imported_score is not None:
                start = min(clamp(int(imported_score)), MAX_ENROLLMENT_SCORE)
            entry = CredibilityEntry(
                id=new_id(),
                user_id=user_id,
                reason=CredibilityReason.ENROLLMENT,
                delta=start,
                score=clamp(start),
                created_at=self.clock(),
            )
            self.store.append_credibility(entry)
        logger.info(
            f"Enrolled {user_id} with credibility {entry.score}",
            extra=event_extra("credibility_enrolled", user_id=user_id, score=entry.score),
        )
        return entry

    def record_outcome(
        self,
        user_id: str,
        reason: CredibilityReason,
        delta: int,
        observation_id: str | None = None,
        dispute_id: str | None = None,
    ) -> int:
        """Append an outcome to the user's history and return the new score."""
        if reason == CredibilityReason.ENROLLMENT:
            raise ValidationException("Enrollment entries are created by enroll()", "reason", reason.value)

        with self.store.transaction():
            self.store.lock_user(user_id)
            history = self.store.credibility_history(user_id)
            if not history:
                history = [self.enroll(user_id)]
            previous = history[-1].score
            entry = CredibilityEntry(
                id=new_id(),
                user_id=user_id,
                reason=reason,
                delta=int(delta),
                score=clamp(previous + int(delta)),
                created_at=self.clock(),
                observation_id=observation_id,
                dispute_id=dispute_id,
            )
            self.store.append_credibility(entry)

        logger.info(
            f"Credibility of {user_id}: {previous} -> {entry.score} ({reason.value})",
            extra=event_extra(
                "credibility_changed",
                user_id=user_id,
                reason=reason.value,
                delta=entry.delta,
                score=entry.score,
                observation_id=observation_id,
                dispute_id=dispute_id,
            ),
        )
        return entry.score

    def history(self, user_id: str) -> list[CredibilityEntry]:
        return self.store.credibility_history(user_id)

    def score(self, user_id: str) -> int:
        history = self.store.credibility_history(user_id)
        return history[-1].score if history else self.config.initial_credibility

    def has_participated(self, user_id: str, observation_id: str) -> bool:
        """Whether the user already received participation credit for the observation."""
        return any(
            e.reason == CredibilityReason.VERIFIER_PARTICIPATION and e.observation_id == observation_id
            for e in self.store.credibility_history(user_id)
        )

    def current(self, user_id: str) -> CredibilityReport:
        history = self.store.credibility_history(user_id)
        now = self.clock()
        score = history[-1].score if history else self.config.initial_credibility
        components = compute_components(history, now)
        category = CredibilityCategory.for_score(score)
        return CredibilityReport(
            user_id=user_id,
            score=score,
            category=category,
            components=components,
            history=history,
            suggestions=rank_suggestions(components),
            explanation=_explain(score, category, self.config),
            is_new_user=len(history) <= 1,
        )

    def improvement_suggestions(self, user_id: str) -> list[str]:
        return self.current(user_id).suggestions

    def replay(self, user_id: str) -> int:
        """Fold the history and check each recorded balance against it.

        Raises:
            ValidationException: if a stored balance disagrees with the fold
        """
        score = MIN_SCORE
        for entry in self.store.credibility_history(user_id):
            score = clamp(score + entry.delta)
            if score != entry.score:
                raise ValidationException(
                    f"Credibility history of {user_id} does not fold to its recorded balance at entry {entry.id}",
                    "credibility_history",
                )
        return score
