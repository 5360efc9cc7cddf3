# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Versioned schema migrations for the EcoPulse store.

Each file in the migrations directory is named ``NNN_description.py`` and
defines:
    version: str      e.g. "001"
    description: str  human-readable name
    def up(conn) -> None
    def down(conn) -> None

Applied versions and file checksums are tracked in ``schema_migrations`` so
an edited migration shows up as ``checksum_mismatch`` in ``status()``.
"""

from __future__ import annotations

import hashlib
import importlib.util
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from types import ModuleType
from typing import Any

from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "schema_migrations"

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent.parent / "migrations"


@dataclass(order=True)
class MigrationInfo:
    """A migration file found on disk."""

    version: str
    description: str
    checksum: str
    file_path: Path
    module: ModuleType


@dataclass
class MigrationStatus:
    """State of one migration: applied, pending, or checksum_mismatch."""

    version: str
    description: str
    state: str
    applied_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "description": self.description,
            "state": self.state,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }


def _checksum(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()[:16]


def _load_module(path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"ecopulse_migration_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ValueError(f"Cannot load migration: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class MigrationRunner:
    """Discovers and applies migrations in version order.

    Args:
        migrations_dir: Directory of ``NNN_description.py`` files.
        connection_factory: Optional zero-argument callable returning a
            psycopg2 connection; defaults to the shared pool in ``ecopulse.core.db``.
    """

    def __init__(
        self,
        migrations_dir: str | Path | None = None,
        connection_factory: Callable[[], Any] | None = None,
    ):
        self.migrations_dir = Path(migrations_dir) if migrations_dir else DEFAULT_MIGRATIONS_DIR
        self._connection_factory = connection_factory
        self._discovered: list[MigrationInfo] | None = None

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        if self._connection_factory is not None:
            conn = self._connection_factory()
            try:
                yield conn
            finally:
                conn.close()
            return

        from .db import get_connection

        with get_connection() as conn:
            yield conn

    def discover(self) -> list[MigrationInfo]:
        """Load every migration module, sorted by version."""
        if self._discovered is not None:
            return self._discovered

        found: list[MigrationInfo] = []
        if not self.migrations_dir.is_dir():
            logger.warning(f"Migrations directory not found: {self.migrations_dir}")
            self._discovered = found
            return found

        for path in sorted(self.migrations_dir.glob("*.py")):
            prefix = path.stem.split("_", 1)[0]
            if path.name.startswith("__") or not prefix.isdigit():
                continue
            module = _load_module(path)
            missing = [a for a in ("version", "description", "up", "down") if not hasattr(module, a)]
            if missing:
                raise ValueError(f"Migration {path.name} missing: {', '.join(missing)}")
            found.append(MigrationInfo(module.version, module.description, _checksum(path), path, module))

        found.sort()
        self._discovered = found
        return found

    def _applied(self, conn) -> dict[str, dict[str, Any]]:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        try:
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
                    version TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)
            conn.commit()
            cur.execute(f"SELECT version, description, checksum, applied_at FROM {MIGRATIONS_TABLE} ORDER BY version")
            return {row["version"]: row for row in cur.fetchall()}
        finally:
            cur.close()

    def status(self) -> list[MigrationStatus]:
        """Report every known migration against the database."""
        migrations = self.discover()
        with self._connection() as conn:
            applied = self._applied(conn)

        result = []
        for m in migrations:
            row = applied.get(m.version)
            if row is None:
                result.append(MigrationStatus(m.version, m.description, "pending"))
            else:
                state = "applied" if row["checksum"] == m.checksum else "checksum_mismatch"
                result.append(MigrationStatus(m.version, m.description, state, row["applied_at"]))
        return result

    def up(self, *, target: str | None = None, dry_run: bool = False) -> list[str]:
        """Apply pending migrations up to ``target`` (inclusive). Returns applied versions."""
        migrations = self.discover()
        done: list[str] = []

        with self._connection() as conn:
            applied = self._applied(conn)
            todo = [m for m in migrations if m.version not in applied and (target is None or m.version <= target)]
            if not todo:
                logger.info("No pending migrations")
                return done

            for m in todo:
                if dry_run:
                    logger.info(f"[dry run] would apply {m.version}: {m.description}")
                    done.append(m.version)
                    continue
                logger.info(f"Applying migration {m.version}: {m.description}")
                try:
                    m.module.up(conn)
                    cur = conn.cursor()
                    try:
                        cur.execute(
                            f"INSERT INTO {MIGRATIONS_TABLE} (version, description, checksum) VALUES (%s, %s, %s)",
                            (m.version, m.description, m.checksum),
                        )
                    finally:
                        cur.close()
                    conn.commit()
                except Exception:
                    conn.rollback()
                    logger.exception(f"Migration {m.version} failed; rolled back")
                    raise
                done.append(m.version)
        return done

    def down(self, *, target: str | None = None, dry_run: bool = False) -> list[str]:
        """Roll back applied migrations newer than ``target``, or only the latest when None."""
        by_version = {m.version: m for m in self.discover()}
        done: list[str] = []

        with self._connection() as conn:
            applied = sorted(self._applied(conn), reverse=True)
            todo = [v for v in applied if v > target] if target else applied[:1]

            for version in todo:
                m = by_version.get(version)
                if m is None:
                    logger.warning(f"No migration file for applied version {version}; skipping")
                    continue
                if dry_run:
                    logger.info(f"[dry run] would roll back {version}: {m.description}")
                    done.append(version)
                    continue
                logger.info(f"Rolling back migration {version}: {m.description}")
                try:
                    m.module.down(conn)
                    cur = conn.cursor()
                    try:
                        cur.execute(f"DELETE FROM {MIGRATIONS_TABLE} WHERE version = %s", (version,))
                    finally:
                        cur.close()
                    conn.commit()
                except Exception:
                    conn.rollback()
                    logger.exception(f"Rollback of {version} failed")
                    raise
                done.append(version)
        return done
