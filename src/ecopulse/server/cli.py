# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Command-line interface for EcoPulse server administration."""

from __future__ import annotations

import argparse
import json
import sys

from ..core.exceptions import EcoPulseException
from ..core.logging import configure_logging


def _engine():
    from ..core.engine import TrustEngine

    return TrustEngine.from_config()


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP server."""
    from .app import run

    run()
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    """Apply or inspect schema migrations."""
    from ..core.migrations import MigrationRunner

    runner = MigrationRunner(args.migrations_dir)

    if args.action == "status":
        statuses = runner.status()
        if not statuses:
            print("No migrations found.")
            return 0
        print(f"{'Version':<10} {'State':<20} {'Description'}")
        print("-" * 60)
        for s in statuses:
            print(f"{s.version:<10} {s.state:<20} {s.description}")
        return 1 if any(s.state == "checksum_mismatch" for s in statuses) else 0

    applied = runner.up(target=args.target, dry_run=args.dry_run)
    if not applied:
        print("Schema is up to date.")
    else:
        verb = "Would apply" if args.dry_run else "Applied"
        print(f"{verb}: {', '.join(applied)}")
    return 0


def cmd_close_disputes(args: argparse.Namespace) -> int:
    """Resolve disputes whose voting window has elapsed."""
    report = _engine().close_expired_disputes()
    print(f"Resolved {len(report.resolved)} dispute(s)")
    for d in report.resolved:
        print(f"  {d.id}: {d.outcome.value}")
    if report.stalled:
        print(f"Stalled without votes: {len(report.stalled)}")
        for d in report.stalled:
            print(f"  {d.id}")
    return 0


def cmd_credibility(args: argparse.Namespace) -> int:
    """Print a contributor's credibility report."""
    report = _engine().credibility(args.user_id)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
        return 0

    data = report.to_dict()
    print(f"User:     {args.user_id}")
    print(f"Score:    {data['current_score']} ({data['category']})")
    print(f"Entries:  {len(data['history'])}")
    print()
    print(data["explanation"])
    if data["improvement_suggestions"]:
        print()
        print("Suggestions:")
        for s in data["improvement_suggestions"]:
            print(f"  - {s}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="EcoPulse observation trust engine",
        prog="ecopulse",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Serve command
    subparsers.add_parser("serve", help="Run the HTTP API")

    # Migrate command
    migrate_parser = subparsers.add_parser("migrate", help="Manage the database schema")
    migrate_parser.add_argument("action", choices=["up", "status"], help="Apply pending migrations or show status")
    migrate_parser.add_argument("--target", default=None, help="Stop at this version (inclusive)")
    migrate_parser.add_argument("--dry-run", action="store_true", help="Show what would be applied")
    migrate_parser.add_argument("--migrations-dir", default=None, help="Directory holding migration files")

    # Close-disputes command
    subparsers.add_parser("close-disputes", help="Resolve disputes past their voting window")

    # Credibility command
    credibility_parser = subparsers.add_parser("credibility", help="Show a contributor's credibility")
    credibility_parser.add_argument("user_id", help="Contributor id")
    credibility_parser.add_argument("--json", action="store_true", help="Print the raw report")

    args = parser.parse_args(argv)
    configure_logging()

    commands = {
        "serve": cmd_serve,
        "migrate": cmd_migrate,
        "close-disputes": cmd_close_disputes,
        "credibility": cmd_credibility,
    }
    try:
        return commands[args.command](args)
    except EcoPulseException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
