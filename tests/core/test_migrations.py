"""Tests for ecopulse.core.migrations - versioned schema migration runner."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock, call

import pytest

from ecopulse.core.migrations import DEFAULT_MIGRATIONS_DIR, MigrationRunner, _checksum

MIGRATION_TEMPLATE = '''
version = "{version}"
description = "{description}"


def up(conn):
    conn.marker("up", version)


def down(conn):
    conn.marker("down", version)
'''


def write_migration(directory: Path, version: str, description: str) -> Path:
    path = directory / f"{version}_{description}.py"
    path.write_text(MIGRATION_TEMPLATE.format(version=version, description=description))
    return path


@pytest.fixture
def migrations_dir(tmp_path):
    write_migration(tmp_path, "001", "initial_schema")
    write_migration(tmp_path, "002", "vote_index")
    write_migration(tmp_path, "003", "zone_names")
    (tmp_path / "__init__.py").write_text("")
    (tmp_path / "helpers.py").write_text("")
    return tmp_path


@pytest.fixture
def conn():
    connection = MagicMock()
    connection.cursor.return_value.fetchall.return_value = []
    return connection


def applied_rows(conn, rows):
    conn.cursor.return_value.fetchall.return_value = rows


def runner_for(migrations_dir, conn):
    return MigrationRunner(migrations_dir, connection_factory=lambda: conn)


# ============================================================================
# Discovery
# ============================================================================


class TestDiscover:
    def test_sorted_and_filtered(self, migrations_dir):
        found = MigrationRunner(migrations_dir).discover()
        assert [m.version for m in found] == ["001", "002", "003"]
        assert found[1].description == "vote_index"

    def test_missing_directory(self, tmp_path):
        assert MigrationRunner(tmp_path / "nope").discover() == []

    def test_incomplete_migration(self, tmp_path):
        (tmp_path / "001_broken.py").write_text('version = "001"\n')
        with pytest.raises(ValueError, match="missing: description, up, down"):
            MigrationRunner(tmp_path).discover()

    def test_bundled_schema_is_discoverable(self):
        found = MigrationRunner(DEFAULT_MIGRATIONS_DIR).discover()
        assert found[0].version == "001"
        assert found[0].description == "initial_schema"


# ============================================================================
# Status
# ============================================================================


class TestStatus:
    def test_reports_each_state(self, migrations_dir, conn):
        applied_at = datetime(2026, 5, 1, tzinfo=UTC)
        current = _checksum(migrations_dir / "001_initial_schema.py")
        applied_rows(
            conn,
            [
                {"version": "001", "checksum": current, "applied_at": applied_at},
                {"version": "002", "checksum": "edited", "applied_at": applied_at},
            ],
        )

        states = {s.version: s for s in runner_for(migrations_dir, conn).status()}

        assert states["001"].state == "applied"
        assert states["002"].state == "checksum_mismatch"
        assert states["003"].state == "pending"
        assert states["001"].to_dict()["applied_at"] == applied_at.isoformat()
        assert states["003"].to_dict()["applied_at"] is None
        conn.close.assert_called_once()


# ============================================================================
# Up / down
# ============================================================================


class TestUp:
    def test_applies_pending_in_order(self, migrations_dir, conn):
        applied_rows(conn, [{"version": "001", "checksum": "x", "applied_at": None}])

        done = runner_for(migrations_dir, conn).up()

        assert done == ["002", "003"]
        assert conn.marker.call_args_list == [call("up", "002"), call("up", "003")]

    def test_target_is_inclusive(self, migrations_dir, conn):
        assert runner_for(migrations_dir, conn).up(target="002") == ["001", "002"]

    def test_dry_run_touches_nothing(self, migrations_dir, conn):
        done = runner_for(migrations_dir, conn).up(dry_run=True)

        assert done == ["001", "002", "003"]
        conn.marker.assert_not_called()

    def test_nothing_pending(self, migrations_dir, conn):
        applied_rows(conn, [{"version": v, "checksum": "x", "applied_at": None} for v in ("001", "002", "003")])
        assert runner_for(migrations_dir, conn).up() == []

    def test_failure_rolls_back(self, migrations_dir, conn):
        conn.marker.side_effect = RuntimeError("syntax error")

        with pytest.raises(RuntimeError):
            runner_for(migrations_dir, conn).up()
        conn.rollback.assert_called_once()


class TestDown:
    def test_rolls_back_latest_only(self, migrations_dir, conn):
        applied_rows(conn, [{"version": v, "checksum": "x", "applied_at": None} for v in ("001", "002")])

        assert runner_for(migrations_dir, conn).down() == ["002"]
        conn.marker.assert_called_once_with("down", "002")

    def test_rolls_back_to_target(self, migrations_dir, conn):
        applied_rows(conn, [{"version": v, "checksum": "x", "applied_at": None} for v in ("001", "002", "003")])

        assert runner_for(migrations_dir, conn).down(target="001") == ["003", "002"]

    def test_skips_unknown_versions(self, migrations_dir, conn):
        applied_rows(conn, [{"version": "009", "checksum": "x", "applied_at": None}])
        assert runner_for(migrations_dir, conn).down() == []
