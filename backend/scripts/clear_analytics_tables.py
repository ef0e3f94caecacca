#!/usr/bin/env python3
"""
Delete analytics rows (event_data, website_event, session) for one website
or for every website. Websites themselves are kept.
"""
import argparse

# Add parent to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.seed import cli, writer


def _print_counts(label, counts):
    print(f"\n[clear:analytics] {label}")
    print(f"  event_data:     {counts['eventData']}")
    print(f"  website_event:  {counts['websiteEvents']}")
    print(f"  session:        {counts['sessions']}")


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Clear analytics tables.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--websiteId", "--website", dest="website_id", default=None)
    target.add_argument("--all-websites", action="store_true")
    parser.add_argument(
        "--confirm",
        action="store_true",
        help="Actually delete. Without it the script only prints row counts.",
    )
    args = parser.parse_args(argv)

    website_id = None if args.all_websites else args.website_id
    scope = "all websites" if website_id is None else f"website {website_id}"

    cli.banner("PULSE - Clear Analytics Tables")
    _print_counts(f"Current rows for {scope}", writer.count_rows(website_id))

    if not args.confirm:
        print("\n[clear:analytics] Dry run. Re-run with --confirm to delete these rows.")
        return

    deleted = writer.clear_website(website_id)
    _print_counts(f"Deleted rows for {scope}", deleted)
    _print_counts(f"Remaining rows for {scope}", writer.count_rows(website_id))


if __name__ == "__main__":
    cli.exit_with(main)
