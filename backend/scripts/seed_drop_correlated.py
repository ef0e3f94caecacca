#!/usr/bin/env python3
"""
Seed data for the drop-correlated events and pages tools.

Roughly 30% of sessions fire a conversion event; the rest lean towards
events such as contacted_support and viewed_faq before leaving.
"""
import argparse

# Add parent to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.seed import cli, generators


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Seed converting and non-converting sessions.")
    cli.add_common_arguments(parser, default_days=14)
    parser.add_argument("--conversion-rate", type=float, default=0.3)
    args = parser.parse_args(argv)

    if not 0 <= args.conversion_rate <= 1:
        raise SystemExit("--conversion-rate must be between 0 and 1")

    cli.banner("PULSE - Drop Correlation Seed")
    website_id = cli.resolve_website_id(args)
    start, end = cli.resolve_dates(args)
    print(f"Website ID: {website_id}")
    print(f"Date range: {start} to {end}")
    print()

    cli.reset_if_requested(args, website_id, start, end)
    batch = generators.drop_correlated(
        website_id, start, end, cli.make_rng(args), conversion_rate=args.conversion_rate
    )
    cli.write(batch)

    stats = batch.stats
    print()
    print(f"Sessions: {stats['sessions']}")
    print(f"  Converting: {stats['convertingSessions']}")
    print(f"  Non-converting: {stats['nonConvertingSessions']}")
    print(f"Conversion events: {', '.join(generators.CONVERSION_EVENTS)}")
    print("Events weighted towards non-converting sessions:")
    for name, weight in sorted(generators.DROP_EVENTS, key=lambda item: -item[1])[:5]:
        print(f"  {name} ({weight:.2f})")


if __name__ == "__main__":
    cli.exit_with(main)
