# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Location privacy transform.

Decides how precisely an observation's coordinate may be published, given
the protected-zone registry:

- inside a zone's core geometry: the point is perturbed by up to the zone's
  blur radius on each axis and the observation is forced private
- inside a buffer ring: nothing is disclosed until the contributor
  acknowledges and picks a precision
- elsewhere: the raw coordinate is published as is

Geometry is evaluated in a local azimuthal equidistant projection centred
on the raw point, so distances to polygon edges come out in metres.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any

from pyproj import CRS, Geod, Transformer
from shapely.geometry import Point, Polygon

from .config import CoreSettings, get_config
from .exceptions import ValidationException
from .models import Coordinate, Observation, ProtectedZone, ZoneStatus

logger = logging.getLogger(__name__)

_GEOD = Geod(ellps="WGS84")
_WGS84 = CRS.from_epsg(4326)


@dataclass(frozen=True)
class ZoneMatch:
    """How one zone relates to a coordinate."""

    zone: ProtectedZone
    status: ZoneStatus
    distance_m: float  # 0 inside the core, otherwise metres to the core boundary


@dataclass(frozen=True)
class DisclosureDecision:
    """Result of the privacy transform for one coordinate.

    ``disclosed_coordinate`` is None while a buffer-zone disclosure is
    awaiting the contributor's acknowledgment.
    """

    zone_status: ZoneStatus
    disclosed_coordinate: Coordinate | None
    disclosure_precision_m: float | None
    requires_confirmation: bool
    is_private: bool
    zone_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "zone_status": self.zone_status.value,
            "zone_id": self.zone_id,
            "disclosed_coordinate": self.disclosed_coordinate.to_dict() if self.disclosed_coordinate else None,
            "disclosure_precision_m": self.disclosure_precision_m,
            "requires_confirmation": self.requires_confirmation,
            "is_private": self.is_private,
        }


# ============================================================================
# Geometry helpers
# ============================================================================


def _local_transformer(origin: Coordinate) -> Transformer:
    local = CRS.from_proj4(
        f"+proj=aeqd +lat_0={origin.latitude} +lon_0={origin.longitude} +datum=WGS84 +units=m +no_defs"
    )
    return Transformer.from_crs(_WGS84, local, always_xy=True)


def distance_m(a: Coordinate, b: Coordinate) -> float:
    """Geodesic distance in metres between two coordinates."""
    _, _, dist = _GEOD.inv(a.longitude, a.latitude, b.longitude, b.latitude)
    return abs(dist)


def zone_distance_m(coordinate: Coordinate, zone: ProtectedZone) -> float:
    """Metres from ``coordinate`` to the zone's core boundary; 0 when inside."""
    if zone.center is not None and zone.radius_m is not None:
        return max(0.0, distance_m(coordinate, zone.center) - zone.radius_m)

    transformer = _local_transformer(coordinate)
    ring = [transformer.transform(c.longitude, c.latitude) for c in zone.polygon]
    polygon = Polygon(ring)
    if not polygon.is_valid:
        polygon = polygon.buffer(0)
    origin = Point(0.0, 0.0)
    if polygon.covers(origin):
        return 0.0
    return polygon.distance(origin)


def classify(coordinate: Coordinate, zones: list[ProtectedZone]) -> list[ZoneMatch]:
    """Return the zones whose core or buffer contains ``coordinate``."""
    matches = []
    for zone in zones:
        dist = zone_distance_m(coordinate, zone)
        if dist == 0.0:
            matches.append(ZoneMatch(zone, ZoneStatus.CORE, dist))
        elif dist <= zone.buffer_distance_m:
            matches.append(ZoneMatch(zone, ZoneStatus.BUFFER, dist))
    return matches


def perturb(coordinate: Coordinate, radius_m: float, rng: random.Random) -> Coordinate:
    """Offset each axis by a magnitude uniform in [0, radius_m] with a random sign."""
    dx = rng.uniform(0.0, radius_m) * rng.choice((-1.0, 1.0))
    dy = rng.uniform(0.0, radius_m) * rng.choice((-1.0, 1.0))
    transformer = _local_transformer(coordinate)
    lon, lat = transformer.transform(dx, dy, direction="INVERSE")
    lat = max(-90.0, min(90.0, lat))
    lon = ((lon + 180.0) % 360.0) - 180.0
    return Coordinate(latitude=lat, longitude=lon)


# ============================================================================
# Disclosure policy
# ============================================================================


def validate_precision(precision_m: float | None, config: CoreSettings | None = None) -> float:
    """Check a contributor-selected buffer precision; None selects the midpoint."""
    config = config or get_config()
    if precision_m is None:
        return config.default_buffer_precision_m
    try:
        value = float(precision_m)
    except (TypeError, ValueError):
        raise ValidationException("precision_m must be a number", "precision_m", precision_m)
    if not config.buffer_precision_min_m <= value <= config.buffer_precision_max_m:
        raise ValidationException(
            f"precision_m must be between {config.buffer_precision_min_m:g} and {config.buffer_precision_max_m:g}",
            "precision_m",
            value,
        )
    return value


def decide_disclosure(
    raw: Coordinate,
    zones: list[ProtectedZone],
    rng: random.Random,
    config: CoreSettings | None = None,
) -> DisclosureDecision:
    """Apply the privacy policy to a raw coordinate.

    When several zones match, core status dominates buffer status and the
    zone with the largest effective blur radius governs, so the published
    precision is never finer than any containing zone's blur radius.
    """
    config = config or get_config()
    matches = classify(raw, zones)
    default_blur = config.default_blur_radius_m

    core = [m for m in matches if m.status == ZoneStatus.CORE]
    if core:
        governing = max(core, key=lambda m: m.zone.effective_blur_radius(default_blur)).zone
        radius = governing.effective_blur_radius(default_blur)
        logger.debug(f"Coordinate inside core of zone {governing.id}; blurring by {radius:g} m")
        return DisclosureDecision(
            zone_status=ZoneStatus.CORE,
            disclosed_coordinate=perturb(raw, radius, rng),
            disclosure_precision_m=radius,
            requires_confirmation=False,
            is_private=True,
            zone_id=governing.id,
        )

    if matches:
        governing = max(matches, key=lambda m: m.zone.effective_blur_radius(default_blur)).zone
        return DisclosureDecision(
            zone_status=ZoneStatus.BUFFER,
            disclosed_coordinate=None,
            disclosure_precision_m=None,
            requires_confirmation=True,
            is_private=False,
            zone_id=governing.id,
        )

    return DisclosureDecision(
        zone_status=ZoneStatus.NONE,
        disclosed_coordinate=raw,
        disclosure_precision_m=0.0,
        requires_confirmation=False,
        is_private=False,
    )


def confirm_buffer_disclosure(
    raw: Coordinate,
    precision_m: float | None,
    rng: random.Random,
    config: CoreSettings | None = None,
    zone_id: str | None = None,
) -> DisclosureDecision:
    """Disclose a buffer-zone coordinate at the contributor-selected precision."""
    precision = validate_precision(precision_m, config)
    return DisclosureDecision(
        zone_status=ZoneStatus.BUFFER,
        disclosed_coordinate=perturb(raw, precision, rng),
        disclosure_precision_m=precision,
        requires_confirmation=False,
        is_private=False,
        zone_id=zone_id,
    )


def apply_decision(observation: Observation, decision: DisclosureDecision) -> None:
    """Copy a disclosure decision onto an observation.

    ``is_private`` is only ever raised here, never cleared: a contributor's
    own privacy choice survives re-evaluation.
    """
    observation.zone_status = decision.zone_status
    observation.zone_id = decision.zone_id
    observation.disclosed_coordinate = decision.disclosed_coordinate
    observation.disclosure_precision_m = decision.disclosure_precision_m
    observation.requires_disclosure_confirmation = decision.requires_confirmation
    observation.is_private = observation.is_private or decision.is_private


def reassess(
    observation: Observation,
    zones: list[ProtectedZone],
    rng: random.Random,
    config: CoreSettings | None = None,
) -> bool:
    """Re-run the privacy transform against the current zone registry.

    The stored disclosed point is kept while the zone status and governing
    zone are unchanged, so repeated reads cannot be used to triangulate the
    raw location. Returns True when the disclosure changed.
    """
    decision = decide_disclosure(observation.raw_coordinate, zones, rng, config)
    if decision.zone_status == observation.zone_status and decision.zone_id == observation.zone_id:
        precision_changed = observation.disclosure_precision_m != decision.disclosure_precision_m
        if decision.zone_status == ZoneStatus.CORE and precision_changed:
            apply_decision(observation, decision)
            return True
        return False
    logger.info(
        f"Zone status of observation {observation.id} changed "
        f"{observation.zone_status.value} -> {decision.zone_status.value}"
    )
    apply_decision(observation, decision)
    return True
