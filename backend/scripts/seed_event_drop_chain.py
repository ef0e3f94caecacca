#!/usr/bin/env python3
"""
Seed data for the check-event-drop-chain tool.

Generates sessions walking through several multi-step funnels, each step
continuing from the previous one with a fixed probability.
"""
import argparse

# Add parent to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.seed import cli, generators


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Seed funnel step events for drop-chain analysis.")
    cli.add_common_arguments(parser, default_days=60)
    args = parser.parse_args(argv)

    cli.banner("PULSE - Event Drop Chain Seed")
    website_id = cli.resolve_website_id(args)
    start, end = cli.resolve_dates(args)
    print(f"Website ID: {website_id}")
    print(f"Date range: {start} to {end}")
    print()

    cli.reset_if_requested(args, website_id, start, end)
    batch = generators.event_drop_chain(website_id, start, end, cli.make_rng(args))
    cli.write(batch)

    for name, counts in batch.stats["funnels"].items():
        print()
        print(f"Funnel: {name}")
        steps = list(counts.items())
        for index, (step, users) in enumerate(steps):
            line = f"  {step}: {users}"
            if index + 1 < len(steps):
                next_users = steps[index + 1][1]
                rate = (users - next_users) / users * 100 if users > 0 else 0
                line += f" (drop to next: {users - next_users}, {rate:.1f}%)"
            print(line)

    first_funnel = generators.FUNNELS[0]
    print()
    print("Try:")
    print(f"  POST /api/tools/check-event-drop-chain "
          f'{{"websiteId": "{website_id}", "from": "{start}", "to": "{end}", '
          f'"steps": {first_funnel["steps"]!r}}}'.replace("'", '"'))


if __name__ == "__main__":
    cli.exit_with(main)
