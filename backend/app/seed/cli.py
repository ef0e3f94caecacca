"""Argument handling and console output shared by the seed scripts."""

from __future__ import annotations

import argparse
import random
import sys
import traceback
from datetime import date
from typing import Callable, Optional

from app.core.config import settings
from app.core.time import days_before, today_utc
from app.queries.common import day_end, day_start, parse_day
from app.seed import writer
from app.seed.writer import SeedBatch


def add_common_arguments(parser: argparse.ArgumentParser, default_days: int = 30) -> None:
    parser.add_argument(
        "--websiteId",
        "--website",
        dest="website_id",
        default=None,
        help="Website to seed (default: DEFAULT_WEBSITE_ID, or a new random UUID).",
    )
    parser.add_argument(
        "--from",
        "--start",
        dest="date_from",
        default=None,
        help=f"First day, YYYY-MM-DD (default: {default_days} days ago).",
    )
    parser.add_argument(
        "--to",
        "--end",
        dest="date_to",
        default=None,
        help="Last day, YYYY-MM-DD (default: today).",
    )
    parser.add_argument(
        "--reset",
        "--reset-range",
        dest="reset",
        action="store_true",
        help="Delete the website's sessions and events in the range before seeding.",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible data.")
    parser.set_defaults(default_days=default_days)


def resolve_website_id(args: argparse.Namespace) -> str:
    return args.website_id or settings.DEFAULT_WEBSITE_ID or writer.new_id()


def resolve_dates(args: argparse.Namespace) -> tuple[date, date]:
    end = parse_day(args.date_to) if args.date_to else today_utc()
    start = parse_day(args.date_from) if args.date_from else days_before(args.default_days, end)
    if end < start:
        raise ValueError("--to must not be before --from")
    return start, end


def make_rng(args: argparse.Namespace) -> random.Random:
    return random.Random(args.seed)


def banner(title: str) -> None:
    print("=" * 50)
    print(title)
    print("=" * 50)
    print()


def reset_if_requested(args: argparse.Namespace, website_id: str, start: date, end: date) -> None:
    if not args.reset:
        return
    print(f"Clearing existing data for {website_id} between {start} and {end}...")
    deleted = writer.reset_range(website_id, day_start(start), day_end(end))
    print(
        f"  Removed {deleted['sessions']} sessions, {deleted['websiteEvents']} events, "
        f"{deleted['eventData']} event data rows."
    )
    print()


def write(batch: SeedBatch) -> dict[str, int]:
    written = writer.write_batch(batch)
    print(f"Inserted {written['sessions']} sessions and {written['events']} events "
          f"(chunks of {writer.CHUNK_SIZE}).")
    return written


def run(main: Callable[[Optional[list[str]]], None], argv: Optional[list[str]] = None) -> int:
    """Run a script entry point; print the traceback and return 1 on failure."""
    try:
        main(argv)
    except Exception:
        traceback.print_exc()
        return 1
    return 0


def exit_with(main: Callable[[Optional[list[str]]], None]) -> None:
    sys.exit(run(main))
