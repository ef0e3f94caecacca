#!/usr/bin/env python3
"""
Seed weekly cohorts with one cohort retaining noticeably worse than the
others, for the retention dip detector.
"""
import argparse
from datetime import timedelta

# Add parent to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.queries.common import parse_day
from app.seed import cli, generators


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Seed weekly retention cohorts with one dip.")
    cli.add_common_arguments(parser, default_days=70)
    parser.add_argument("--cohort-size", type=int, default=200)
    parser.add_argument(
        "--anomaly-cohort",
        default=None,
        help="Any day in the cohort week that should dip (default: the third cohort).",
    )
    args = parser.parse_args(argv)

    cli.banner("PULSE - Retention Dips Seed")
    website_id = cli.resolve_website_id(args)
    start, end = cli.resolve_dates(args)
    anomaly = parse_day(args.anomaly_cohort) if args.anomaly_cohort else None
    if anomaly is None:
        first = generators.week_start(start)
        anomaly = first + timedelta(days=21 if first < start else 14)
    print(f"Website ID: {website_id}")
    print(f"Date range: {start} to {end}")
    print(f"Cohort size: {args.cohort_size} users")
    print(f"Anomaly cohort week: {generators.week_start(anomaly)}")
    print()

    cli.reset_if_requested(args, website_id, start, end)
    batch = generators.retention_dips(
        website_id, start, end, cli.make_rng(args), cohort_size=args.cohort_size, anomaly_cohort=anomaly
    )
    cli.write(batch)

    print()
    for cohort in batch.stats["cohorts"]:
        flag = "ANOMALY" if cohort["pattern"] == "anomaly" else "normal "
        print(f"  {flag} {cohort['cohort']}: active by week {cohort['active']}")


if __name__ == "__main__":
    cli.exit_with(main)
