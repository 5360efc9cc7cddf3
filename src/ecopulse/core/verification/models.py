# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Data models for verification records, disputes and votes.

Records reference their parents by id only. Verification records and
votes are immutable once written; a verifier's newer record supersedes
the older one through ``supersedes_id``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..models import parse_datetime
from .enums import DisputeOutcome, DisputeStatus, VerificationTier, VoteChoice


# ============================================================================
# Verification
# ============================================================================

@dataclass(frozen=True)
class VerificationRecord:
    """One verifier's assessment of one observation."""
    id: str
    observation_id: str
    verifier_id: str
    tier: VerificationTier
    confidence: float
    created_at: datetime
    notes: str = ""
    supersedes_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "observation_id": self.observation_id,
            "verifier_id": self.verifier_id,
            "tier": int(self.tier),
            "confidence": self.confidence,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
            "supersedes_id": self.supersedes_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationRecord:
        return cls(
            id=str(data["id"]),
            observation_id=str(data["observation_id"]),
            verifier_id=data["verifier_id"],
            tier=VerificationTier(int(data["tier"])),
            confidence=float(data["confidence"]),
            created_at=parse_datetime(data["created_at"], "created_at"),
            notes=data.get("notes") or "",
            supersedes_id=str(data["supersedes_id"]) if data.get("supersedes_id") else None,
        )


def active_records(records: list[VerificationRecord]) -> list[VerificationRecord]:
    """Records not superseded by a later record, oldest first."""
    superseded = {r.supersedes_id for r in records if r.supersedes_id}
    return sorted((r for r in records if r.id not in superseded), key=lambda r: r.created_at)


# ============================================================================
# Disputes
# ============================================================================

@dataclass
class Dispute:
    """A contest of an observation's verification, settled by community vote.

    ``verification_id`` is the contested record; None when the observation
    is disputed before anyone verified it.
    """
    id: str
    observation_id: str
    raised_by: str
    reason: str
    created_at: datetime
    verification_id: str | None = None
    evidence_ref: str | None = None
    status: DisputeStatus = DisputeStatus.OPEN
    outcome: DisputeOutcome | None = None
    voting_deadline: datetime | None = None
    resolved_at: datetime | None = None
    version: int = 0

    @property
    def is_resolved(self) -> bool:
        return self.status == DisputeStatus.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "observation_id": self.observation_id,
            "raised_by": self.raised_by,
            "reason": self.reason,
            "verification_id": self.verification_id,
            "evidence_ref": self.evidence_ref,
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "created_at": self.created_at.isoformat(),
            "voting_deadline": self.voting_deadline.isoformat() if self.voting_deadline else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Dispute:
        deadline = data.get("voting_deadline")
        resolved_at = data.get("resolved_at")
        return cls(
            id=str(data["id"]),
            observation_id=str(data["observation_id"]),
            raised_by=data["raised_by"],
            reason=data["reason"],
            created_at=parse_datetime(data["created_at"], "created_at"),
            verification_id=str(data["verification_id"]) if data.get("verification_id") else None,
            evidence_ref=data.get("evidence_ref"),
            status=DisputeStatus(data.get("status", "open")),
            outcome=DisputeOutcome(data["outcome"]) if data.get("outcome") else None,
            voting_deadline=parse_datetime(deadline, "voting_deadline") if deadline else None,
            resolved_at=parse_datetime(resolved_at, "resolved_at") if resolved_at else None,
            version=int(data.get("version", 0)),
        )


@dataclass(frozen=True)
class Vote:
    """One voter's choice on one dispute."""
    id: str
    dispute_id: str
    voter_id: str
    choice: VoteChoice
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "dispute_id": self.dispute_id,
            "voter_id": self.voter_id,
            "choice": self.choice.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Vote:
        return cls(
            id=str(data["id"]),
            dispute_id=str(data["dispute_id"]),
            voter_id=data["voter_id"],
            choice=VoteChoice(data["choice"]),
            created_at=parse_datetime(data["created_at"], "created_at"),
        )


@dataclass
class DisputeTally:
    """Vote counts for display. Reading a tally never changes a dispute."""
    dispute_id: str
    uphold: int = 0
    overturn: int = 0
    quorum: int = 0
    voting_deadline: datetime | None = None
    voters: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.uphold + self.overturn

    @property
    def leading(self) -> DisputeOutcome:
        """Simple majority of cast votes; a tie keeps the status quo."""
        return DisputeOutcome.OVERTURNED if self.overturn > self.uphold else DisputeOutcome.UPHELD

    @classmethod
    def from_votes(
        cls,
        dispute_id: str,
        votes: list[Vote],
        quorum: int,
        voting_deadline: datetime | None = None,
    ) -> DisputeTally:
        tally = cls(dispute_id=dispute_id, quorum=quorum, voting_deadline=voting_deadline)
        for vote in votes:
            if vote.choice == VoteChoice.OVERTURN:
                tally.overturn += 1
            else:
                tally.uphold += 1
            tally.voters.append(vote.voter_id)
        return tally

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispute_id": self.dispute_id,
            "uphold": self.uphold,
            "overturn": self.overturn,
            "total": self.total,
            "quorum": self.quorum,
            "quorum_reached": self.total >= self.quorum,
            "leading": self.leading.value,
            "voting_deadline": self.voting_deadline.isoformat() if self.voting_deadline else None,
        }
