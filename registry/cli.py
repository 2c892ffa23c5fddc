"""
registry/cli.py

Admin command line for the shock registry.

Usage:
    python -m registry.cli init-db
    python -m registry.cli lookup NSN-A7B2-C9D4-E3F8
    python -m registry.cli audit [--event-type case_archived] [--limit 20]

The database location comes from REGISTRY_DB_PATH (see registry/db.py).
Results are printed as JSON.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from registry.case_manager import CaseManager
from registry.db import SqliteCaseStore
from workflow.errors import LifecycleError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="registry", description="Shock registry admin tool")
    parser.add_argument("--db", default=None, help="SQLite file (default: REGISTRY_DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    lookup = sub.add_parser("lookup", help="Show the archive record for a Registry ID")
    lookup.add_argument("registry_id")

    audit = sub.add_parser("audit", help="Show recent audit log entries")
    audit.add_argument("--event-type", default=None)
    audit.add_argument("--limit", type=int, default=100)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args = _build_parser().parse_args(argv)

    try:
        manager = CaseManager(SqliteCaseStore(args.db))
        if args.command == "init-db":
            print(json.dumps({"database": str(manager.store.path)}))
        elif args.command == "lookup":
            record = manager.lookup(args.registry_id)
            print(json.dumps(record.model_dump(mode="json"), indent=2))
        elif args.command == "audit":
            entries = manager.audit_log(event_type=args.event_type, limit=args.limit)
            print(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
    except LifecycleError as exc:
        print(json.dumps({"error": exc.kind, "message": str(exc)}), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
