#!/usr/bin/env python3
"""
Seed a pageview timeseries with a single spike day for the timeseries
anomaly detector.
"""
import argparse
from datetime import timedelta

# Add parent to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.time import days_before
from app.queries.common import day_end, day_start, parse_day
from app.seed import cli, generators, writer


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Seed daily traffic with one anomalous day.")
    parser.add_argument("--websiteId", "--website", dest="website_id", default=None)
    parser.add_argument("--from", "--start", dest="date_from", default=None,
                        help="First day, YYYY-MM-DD (default: 14 days ago).")
    parser.add_argument("--days", type=int, default=14)
    parser.add_argument("--anomaly-index", type=int, default=7, help="0-based index of the spike day.")
    parser.add_argument("--multiplier", type=float, default=2.5)
    parser.add_argument("--reset", "--reset-range", dest="reset", action="store_true")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args(argv)

    if args.days < 1:
        raise SystemExit("--days must be at least 1")
    if not 0 <= args.anomaly_index < args.days:
        raise SystemExit("--anomaly-index must fall inside the seeded days")

    cli.banner("PULSE - Timeseries Anomaly Seed")
    website_id = cli.resolve_website_id(args)
    start = parse_day(args.date_from) if args.date_from else days_before(args.days)
    end = start + timedelta(days=args.days - 1)
    print(f"Website ID: {website_id}")
    print(f"Date range: {start} to {end}")
    print()

    if args.reset:
        deleted = writer.reset_range(website_id, day_start(start), day_end(end))
        print(f"Removed {deleted['sessions']} sessions and {deleted['websiteEvents']} events.")

    batch = generators.anomaly_timeseries(
        website_id,
        start,
        args.days,
        cli.make_rng(args),
        anomaly_index=args.anomaly_index,
        multiplier=args.multiplier,
    )
    cli.write(batch)

    print()
    for day in batch.stats["days"]:
        marker = "  <- spike" if day["date"] == batch.stats["anomalyDate"] else ""
        print(f"  {day['date']}: {day['pageviews']} pageviews, {day['visits']} visits{marker}")
    print()
    print("Try:")
    print(f"  get-detect-timeseries-anomalies metric=pageviews date_from={start} date_to={end}")


if __name__ == "__main__":
    cli.exit_with(main)
