"""Server-specific test fixtures."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from starlette.testclient import TestClient

from ecopulse.server.app import create_app
from ecopulse.server.config import clear_settings_cache


@pytest.fixture(autouse=True)
def clean_server_settings():
    """Reset server settings between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def client(engine) -> TestClient:
    """Client for an app serving the in-memory test engine."""
    return TestClient(create_app(engine))


@pytest.fixture
def headers(make_actor) -> Callable[..., dict[str, str]]:
    """Identity headers as forwarded by the session provider.

    A ``score`` is earned in the test engine's ledger first; the header
    alone only seeds a first contact.
    """

    def _make(user_id: str, score: int | None = None, level: str | None = None) -> dict[str, str]:
        result = {"X-User-Id": user_id}
        if score is not None:
            make_actor(user_id, score)
            result["X-Credibility-Score"] = str(score)
        if level is not None:
            result["X-Expertise-Level"] = level
        return result

    return _make
