"""
Dead-letter CLI tool for TierArchive.

Operators use this tool against the engine state database:
- list: Show dead-letter entries as JSON lines
- requeue: Mark open entries for re-injection by the running engine
- resolve: Close an entry with a note

Usage:
    tierarchive-deadletter --db /var/lib/tierarchive/engine_state.db list --status open
    tierarchive-deadletter --db engine_state.db requeue --all
    tierarchive-deadletter --db engine_state.db requeue --key tenant_1 doc_1
    tierarchive-deadletter --db engine_state.db resolve 42 --note "payload purged"

Invariants:
    - The tool never archives anything itself; requeued entries are
      picked up by the running service
    - Output of list is one JSON object per line, stable for scripting

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep list output fields stable
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from ..deadletter import DeadLetterEntryNotFoundError, SqliteDeadLetterSink
from ..models import ArchivalCandidate, DeadLetterEntry, DeadLetterStatus, RecordKey

logger = logging.getLogger(__name__)


class DeadLetterCLI:
    """CLI operations over a dead-letter database.

    Example:
        >>> cli = DeadLetterCLI("/var/lib/tierarchive/engine_state.db")
        >>> entries = await cli.list(status=DeadLetterStatus.OPEN)
    """

    def __init__(self, db_path: str) -> None:
        self.sink = SqliteDeadLetterSink(db_path)

    async def list(
        self, status: DeadLetterStatus | None = None, limit: int = 100
    ) -> list[DeadLetterEntry]:
        await self.sink.connect()
        return await self.sink.list(status=status, limit=limit)

    async def requeue(self, keys: list[RecordKey] | None = None) -> list[ArchivalCandidate]:
        await self.sink.connect()
        return await self.sink.requeue(keys)

    async def resolve(self, entry_id: int, note: str) -> DeadLetterEntry:
        await self.sink.connect()
        return await self.sink.resolve(entry_id, note)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TierArchive dead-letter management tool")
    parser.add_argument("--db", required=True, help="Path to the engine state database")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # list command
    list_parser = subparsers.add_parser("list", help="List dead-letter entries")
    list_parser.add_argument(
        "--status",
        choices=[s.value for s in DeadLetterStatus],
        help="Only entries with this status",
    )
    list_parser.add_argument("--limit", type=int, default=100, help="Maximum entries")

    # requeue command
    requeue_parser = subparsers.add_parser("requeue", help="Mark open entries for re-injection")
    target = requeue_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--all", action="store_true", help="Requeue every open entry")
    target.add_argument(
        "--key",
        nargs=2,
        action="append",
        metavar=("PARTITION_KEY", "RECORD_ID"),
        help="Requeue the entry for this record (repeatable)",
    )

    # resolve command
    resolve_parser = subparsers.add_parser("resolve", help="Close an entry with a note")
    resolve_parser.add_argument("entry_id", type=int, help="Dead-letter entry ID")
    resolve_parser.add_argument("--note", required=True, help="Resolution note")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the dead-letter tool."""
    args = build_parser().parse_args(argv)
    cli = DeadLetterCLI(args.db)

    if args.command == "list":
        status = DeadLetterStatus(args.status) if args.status else None
        entries = asyncio.run(cli.list(status=status, limit=args.limit))
        for entry in entries:
            print(json.dumps(entry.to_dict(), sort_keys=True))
        return 0

    elif args.command == "requeue":
        keys = None if args.all else [RecordKey(pk, rid) for pk, rid in args.key]
        requeued = asyncio.run(cli.requeue(keys))
        print(f"Requeued {len(requeued)} entr{'y' if len(requeued) == 1 else 'ies'}")
        for candidate in requeued:
            print(f"  - {candidate.key}")
        return 0

    elif args.command == "resolve":
        try:
            entry = asyncio.run(cli.resolve(args.entry_id, args.note))
        except DeadLetterEntryNotFoundError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        print(f"Resolved entry {entry.entry_id} ({entry.key})")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
