# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Core data models for EcoPulse observations and protected zones."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .exceptions import ValidationException


class ObservationState(str, Enum):
    """Verification lifecycle state of an observation."""

    PENDING = "pending"
    VERIFIED = "verified"
    DISPUTED = "disputed"
    UNDER_REVIEW = "under_review"  # Community voting in progress
    RESOLVED_UPHELD = "resolved_upheld"
    RESOLVED_OVERTURNED = "resolved_overturned"

    @property
    def is_terminal(self) -> bool:
        return self in (ObservationState.RESOLVED_UPHELD, ObservationState.RESOLVED_OVERTURNED)


class ZoneStatus(str, Enum):
    """Where a coordinate falls relative to protected zones."""

    NONE = "none"
    BUFFER = "buffer"
    CORE = "core"


class ExpertiseLevel(str, Enum):
    """Self-declared expertise supplied by the identity provider."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a UUID string for new records."""
    return str(uuid4())


def parse_datetime(value: Any, field_name: str) -> datetime:
    """Parse an ISO-8601 string or datetime, raising a field-attributed error."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
    raise ValidationException(f"{field_name} must be an ISO-8601 timestamp", field_name, value)


def _opt_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return parse_datetime(value, "timestamp")


# ============================================================================
# Geometry
# ============================================================================


@dataclass(frozen=True)
class Coordinate:
    """WGS84 latitude/longitude in decimal degrees."""

    latitude: float
    longitude: float

    def __post_init__(self):
        for name, value, bound in (("latitude", self.latitude, 90.0), ("longitude", self.longitude, 180.0)):
            if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
                raise ValidationException(f"{name} must be a finite number", name, value)
            if abs(value) > bound:
                raise ValidationException(f"{name} must be within ±{bound:g}", name, value)

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Coordinate:
        for key in ("latitude", "longitude"):
            if data.get(key) is None:
                raise ValidationException(f"{key} is required", key)
        try:
            lat = float(data["latitude"])
        except (TypeError, ValueError):
            raise ValidationException("latitude must be a number", "latitude", data["latitude"])
        try:
            lng = float(data["longitude"])
        except (TypeError, ValueError):
            raise ValidationException("longitude must be a number", "longitude", data["longitude"])
        return cls(latitude=lat, longitude=lng)


@dataclass
class ProtectedZone:
    """A protected area, owned by platform operators and read-only to the core.

    Geometry is either a point with ``radius_m`` or a polygon ring of
    coordinates. ``buffer_distance_m`` is the width of the approach ring
    outside the core boundary.
    """

    id: str
    category: str  # IUCN-style, e.g. "Ia", "II"
    buffer_distance_m: float
    blur_radius_m: float | None = None
    center: Coordinate | None = None
    radius_m: float | None = None
    polygon: list[Coordinate] = field(default_factory=list)

    def __post_init__(self):
        if self.center is None and len(self.polygon) < 3:
            raise ValidationException("Zone needs a center+radius or a polygon of 3+ vertices", "geometry")
        if self.center is not None and (self.radius_m is None or self.radius_m < 0):
            raise ValidationException("Circular zone needs a non-negative radius_m", "radius_m", self.radius_m)
        if self.buffer_distance_m < 0:
            raise ValidationException(
                "buffer_distance_m must be non-negative", "buffer_distance_m", self.buffer_distance_m
            )
        if self.blur_radius_m is not None and self.blur_radius_m <= 0:
            raise ValidationException("blur_radius_m must be positive", "blur_radius_m", self.blur_radius_m)

    def effective_blur_radius(self, default: float) -> float:
        return self.blur_radius_m if self.blur_radius_m is not None else default

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "category": self.category,
            "buffer_distance_m": self.buffer_distance_m,
            "blur_radius_m": self.blur_radius_m,
        }
        if self.center is not None:
            result["center"] = self.center.to_dict()
            result["radius_m"] = self.radius_m
        else:
            result["polygon"] = [c.to_dict() for c in self.polygon]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProtectedZone:
        center = Coordinate.from_dict(data["center"]) if data.get("center") else None
        polygon = [Coordinate.from_dict(c) for c in data.get("polygon", [])]
        return cls(
            id=str(data["id"]),
            category=data.get("category", "unknown"),
            buffer_distance_m=float(data.get("buffer_distance_m", 0.0)),
            blur_radius_m=float(data["blur_radius_m"]) if data.get("blur_radius_m") is not None else None,
            center=center,
            radius_m=float(data["radius_m"]) if data.get("radius_m") is not None else None,
            polygon=polygon,
        )


# ============================================================================
# Identity
# ============================================================================


@dataclass(frozen=True)
class Actor:
    """The current user as supplied by the identity provider.

    ``credibility_score`` is informational only: eligibility checks read the
    credibility ledger, which is the source of truth.
    """

    user_id: str
    expertise_level: ExpertiseLevel = ExpertiseLevel.BEGINNER
    credibility_score: int | None = None


# ============================================================================
# Observation
# ============================================================================


@dataclass
class Observation:
    """An ecological sighting.

    Mutated only by the verification state machine and by privacy/temporal
    re-evaluation; never hard-deleted. ``version`` increments on every
    committed change and backs the optimistic concurrency check.
    """

    id: str
    owner_id: str
    species_id: str
    raw_coordinate: Coordinate
    observed_at: datetime
    submitted_at: datetime
    disclosed_coordinate: Coordinate | None = None
    disclosure_precision_m: float | None = None
    zone_status: ZoneStatus = ZoneStatus.NONE
    zone_id: str | None = None
    requires_disclosure_confirmation: bool = False
    is_private: bool = False
    is_retrospective: bool = False
    justification: str | None = None
    state: ObservationState = ObservationState.PENDING
    media_refs: list[str] = field(default_factory=list)
    evidence_refs: list[str] = field(default_factory=list)
    notes: str = ""
    count: int = 1
    idempotency_key: str | None = None
    conflict_detected: bool = False
    conflicting_ids: list[str] = field(default_factory=list)
    superseded_by: str | None = None
    refreshed_at: datetime | None = None
    version: int = 0

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None

    @property
    def freshness_anchor(self) -> datetime:
        """The instant the retention window is measured from."""
        return self.refreshed_at or self.submitted_at

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize for readers other than the owner. Never includes the raw coordinate."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "species_id": self.species_id,
            "coordinate": self.disclosed_coordinate.to_dict() if self.disclosed_coordinate else None,
            "precision_m": self.disclosure_precision_m,
            "observed_at": self.observed_at.isoformat(),
            "submitted_at": self.submitted_at.isoformat(),
            "is_private": self.is_private,
            "is_retrospective": self.is_retrospective,
            "state": self.state.value,
            "media_refs": list(self.media_refs),
            "conflict_detected": self.conflict_detected,
            "superseded_by": self.superseded_by,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "species_id": self.species_id,
            "raw_coordinate": self.raw_coordinate.to_dict(),
            "observed_at": self.observed_at.isoformat(),
            "submitted_at": self.submitted_at.isoformat(),
            "disclosed_coordinate": self.disclosed_coordinate.to_dict() if self.disclosed_coordinate else None,
            "disclosure_precision_m": self.disclosure_precision_m,
            "zone_status": self.zone_status.value,
            "zone_id": self.zone_id,
            "requires_disclosure_confirmation": self.requires_disclosure_confirmation,
            "is_private": self.is_private,
            "is_retrospective": self.is_retrospective,
            "justification": self.justification,
            "state": self.state.value,
            "media_refs": list(self.media_refs),
            "evidence_refs": list(self.evidence_refs),
            "notes": self.notes,
            "count": self.count,
            "idempotency_key": self.idempotency_key,
            "conflict_detected": self.conflict_detected,
            "conflicting_ids": list(self.conflicting_ids),
            "superseded_by": self.superseded_by,
            "refreshed_at": self.refreshed_at.isoformat() if self.refreshed_at else None,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Observation:
        disclosed = data.get("disclosed_coordinate")
        return cls(
            id=str(data["id"]),
            owner_id=data["owner_id"],
            species_id=data["species_id"],
            raw_coordinate=Coordinate.from_dict(data["raw_coordinate"]),
            observed_at=parse_datetime(data["observed_at"], "observed_at"),
            submitted_at=parse_datetime(data["submitted_at"], "submitted_at"),
            disclosed_coordinate=Coordinate.from_dict(disclosed) if disclosed else None,
            disclosure_precision_m=data.get("disclosure_precision_m"),
            zone_status=ZoneStatus(data.get("zone_status", "none")),
            zone_id=data.get("zone_id"),
            requires_disclosure_confirmation=bool(data.get("requires_disclosure_confirmation", False)),
            is_private=bool(data.get("is_private", False)),
            is_retrospective=bool(data.get("is_retrospective", False)),
            justification=data.get("justification"),
            state=ObservationState(data.get("state", "pending")),
            media_refs=list(data.get("media_refs") or []),
            evidence_refs=list(data.get("evidence_refs") or []),
            notes=data.get("notes") or "",
            count=int(data.get("count", 1)),
            idempotency_key=data.get("idempotency_key"),
            conflict_detected=bool(data.get("conflict_detected", False)),
            conflicting_ids=list(data.get("conflicting_ids") or []),
            superseded_by=data.get("superseded_by"),
            refreshed_at=_opt_datetime(data.get("refreshed_at")),
            version=int(data.get("version", 0)),
        )
