"""Global test fixtures for the EcoPulse test suite."""

from __future__ import annotations

import os
import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from ecopulse.core.config import CoreSettings, clear_config_cache
from ecopulse.core.credibility import CredibilityReason
from ecopulse.core.engine import TrustEngine
from ecopulse.core.models import Actor, Coordinate, ExpertiseLevel, ProtectedZone
from ecopulse.core.store import InMemoryStore

# ============================================================================
# PostgreSQL Availability Detection
# ============================================================================


def _check_postgres_available() -> tuple[bool, str | None]:
    """Check if PostgreSQL is available for integration tests."""
    try:
        import psycopg2
    except ImportError:
        return False, "psycopg2 not installed"

    try:
        conn = psycopg2.connect(
            host=os.environ.get("ECOPULSE_DB_HOST", "localhost"),
            port=int(os.environ.get("ECOPULSE_DB_PORT", "5432")),
            dbname=os.environ.get("ECOPULSE_DB_NAME", "ecopulse"),
            user=os.environ.get("ECOPULSE_DB_USER", "ecopulse"),
            password=os.environ.get("ECOPULSE_DB_PASSWORD", ""),
            connect_timeout=3,
        )
        conn.close()
        return True, None
    except psycopg2.OperationalError as e:
        return False, f"PostgreSQL connection failed: {e}"


POSTGRES_AVAILABLE, POSTGRES_ERROR = _check_postgres_available()


def pytest_collection_modifyitems(config, items):
    """Skip tests that require PostgreSQL when no database is reachable."""
    if POSTGRES_AVAILABLE:
        return

    skip_postgres = pytest.mark.skip(reason=f"PostgreSQL not available: {POSTGRES_ERROR}")
    for item in items:
        if "requires_postgres" in item.keywords:
            item.add_marker(skip_postgres)


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove ECOPULSE_ variables and reset cached settings around each test."""
    for key in list(os.environ.keys()):
        if key.startswith("ECOPULSE_") and not key.startswith("ECOPULSE_DB_"):
            monkeypatch.delenv(key, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


# ============================================================================
# Clock and randomness
# ============================================================================

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=UTC)


class FixedClock:
    """A settable clock; call it for the current instant."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def config() -> CoreSettings:
    return CoreSettings(_env_file=None)


# ============================================================================
# Zones
# ============================================================================

# Nesting site near Lake Lucerne
CORE_CENTER = Coordinate(47.0, 8.0)


@pytest.fixture
def core_zone() -> ProtectedZone:
    """Circular zone: 2 km core, 1 km buffer ring, 1 km blur."""
    return ProtectedZone(
        id="zone-eagle",
        category="Ia",
        buffer_distance_m=1000.0,
        blur_radius_m=1000.0,
        center=CORE_CENTER,
        radius_m=2000.0,
    )


@pytest.fixture
def polygon_zone() -> ProtectedZone:
    """Square polygon roughly 2.2 km on a side, without its own blur radius."""
    return ProtectedZone(
        id="zone-fen",
        category="IV",
        buffer_distance_m=500.0,
        polygon=[
            Coordinate(46.50, 7.50),
            Coordinate(46.50, 7.53),
            Coordinate(46.52, 7.53),
            Coordinate(46.52, 7.50),
        ],
    )


# ============================================================================
# Engine
# ============================================================================


@pytest.fixture
def make_engine(clock, rng) -> Callable[..., TrustEngine]:
    """Factory for in-memory engines sharing the test clock and RNG."""

    def _make(zones: list[ProtectedZone] | None = None, **overrides: Any) -> TrustEngine:
        settings = CoreSettings(_env_file=None, **overrides)
        return TrustEngine(InMemoryStore(zones), settings, clock, rng)

    return _make


@pytest.fixture
def engine(make_engine, core_zone) -> TrustEngine:
    return make_engine([core_zone])


def build_standing(engine: TrustEngine, user_id: str, score: int) -> None:
    """Enroll a new ``user_id`` and append one outcome that moves the ledger to ``score``.

    Users already in the ledger keep whatever they have earned.
    """
    if engine.ledger.history(user_id):
        return
    engine.ledger.enroll(user_id)
    delta = score - engine.ledger.score(user_id)
    if delta:
        engine.ledger.record_outcome(user_id, CredibilityReason.VERIFIER_PARTICIPATION, delta)


@pytest.fixture
def make_actor(engine) -> Callable[..., Actor]:
    """Factory for actors; ``score`` is earned in ``engine``'s ledger (or ``on``'s)."""

    def _make(
        user_id: str,
        score: int | None = None,
        level: ExpertiseLevel = ExpertiseLevel.BEGINNER,
        on: TrustEngine | None = None,
    ) -> Actor:
        if score is not None:
            build_standing(on or engine, user_id, score)
        return Actor(user_id=user_id, expertise_level=level)

    return _make


@pytest.fixture
def submission() -> Callable[..., dict[str, Any]]:
    """Factory for a valid payload well outside any test zone."""

    def _make(**overrides: Any) -> dict[str, Any]:
        data: dict[str, Any] = {
            "species_id": "aquila-chrysaetos",
            "latitude": 46.0,
            "longitude": 9.0,
            "observed_at": (NOW - timedelta(hours=2)).isoformat(),
        }
        data.update(overrides)
        return data

    return _make
