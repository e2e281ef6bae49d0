"""
Outbox Maintenance

Out-of-band operator commands against the outbox table.

Usage:
    outbox-maintenance purge                      # terminal rows older than OUTBOX_RETENTION_DAYS
    outbox-maintenance purge --days 7
    outbox-maintenance purge --before 2026-01-01T00:00:00+00:00
    outbox-maintenance reset-failed               # every failed event
    outbox-maintenance reset-failed --id <uuid>
    outbox-maintenance reset-failed --event-type task.completed
    outbox-maintenance stats
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from ..config import RelaySettings
from ..database.adapter import DatabaseAdapter
from ..observability import configure_logging
from .errors import OutboxError
from .store import OutboxStore

logger = logging.getLogger(__name__)


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="outbox-maintenance",
        description="Outbox maintenance commands",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    purge = sub.add_parser("purge", help="Delete published/failed events older than a cutoff")
    window = purge.add_mutually_exclusive_group()
    window.add_argument("--days", type=int, help="Retention window in days (default: OUTBOX_RETENTION_DAYS)")
    window.add_argument("--before", type=_parse_timestamp, help="Explicit cutoff (ISO-8601)")

    reset = sub.add_parser("reset-failed", help="Return failed events to pending with a fresh retry budget")
    reset.add_argument("--id", dest="event_id", type=UUID, help="Only this event")
    reset.add_argument("--event-type", help="Only events of this type")

    sub.add_parser("stats", help="Print outbox counts as JSON")
    return parser


async def run_command(args: argparse.Namespace, store: OutboxStore, settings: RelaySettings) -> dict:
    if args.command == "purge":
        if args.before is not None:
            cutoff = args.before
        else:
            days = args.days if args.days is not None else settings.retention_days
            cutoff = store.clock.now() - timedelta(days=days)
        deleted = await store.purge_older_than(cutoff)
        return {"command": "purge", "cutoff": cutoff.isoformat(), "deleted": deleted}

    if args.command == "reset-failed":
        count = await store.reset_failed(event_id=args.event_id, event_type=args.event_type)
        logger.info(f"Reset {count} failed events for retry")
        return {"command": "reset-failed", "reset": count}

    stats = await store.stats()
    return {"command": "stats", **stats.to_dict()}


async def _main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = RelaySettings.from_env()
    configure_logging(settings.log_level, structured=False)

    db = DatabaseAdapter()
    await db.connect()
    try:
        result = await run_command(args, OutboxStore(db, retry=settings.retry), settings)
    except OutboxError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        await db.disconnect()

    print(json.dumps(result, indent=2))
    return 0


def main():
    """Console entry point."""
    sys.exit(asyncio.run(_main()))


if __name__ == "__main__":
    main()
