#!/usr/bin/env python3
"""
Seed data for the signup conversion rate tool.

100 sessions, 500 pageviews and 25 sessions that fire `signup` once, so the
tool should report 25 signups over 500 visits (5.00%).
"""
import argparse

# Add parent to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.seed import cli, generators


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Seed sessions, pageviews and signup events.")
    cli.add_common_arguments(parser)
    parser.add_argument("--sessions", type=int, default=100)
    parser.add_argument("--pageviews", type=int, default=500)
    parser.add_argument("--signups", type=int, default=25)
    parser.add_argument("--signup-event", default="signup")
    args = parser.parse_args(argv)

    cli.banner("PULSE - Signup Conversion Seed")
    website_id = cli.resolve_website_id(args)
    start, end = cli.resolve_dates(args)
    print(f"Website ID: {website_id}")
    print(f"Date range: {start} to {end}")
    print()

    cli.reset_if_requested(args, website_id, start, end)
    batch = generators.signup_conversion(
        website_id,
        start,
        end,
        cli.make_rng(args),
        sessions=args.sessions,
        pageviews=args.pageviews,
        signups=args.signups,
        signup_event_name=args.signup_event,
    )
    cli.write(batch)

    stats = batch.stats
    print()
    print(f"Expected conversion rate: {stats['expectedConversionRate']:.2f}% "
          f"({stats['signups']}/{stats['pageviews']} pageviews)")
    print(f"Expected unique conversion: {stats['signups']}/{stats['sessions']} sessions")


if __name__ == "__main__":
    cli.exit_with(main)
