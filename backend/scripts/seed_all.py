#!/usr/bin/env python3
"""
Run every seed script against one website and date range.
"""
import argparse
import time

# Add parent to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.seed import cli

import seed_anomaly_timeseries
import seed_drop_correlated
import seed_event_drop_chain
import seed_retention_dips
import seed_signup_conversion_rate

SEEDS = {
    "signup-conversion-rate": seed_signup_conversion_rate.main,
    "event-drop-chain": seed_event_drop_chain.main,
    "drop-correlated": seed_drop_correlated.main,
    "anomaly-timeseries": seed_anomaly_timeseries.main,
    "retention-dips": seed_retention_dips.main,
}


def _argv_for(name: str, args: argparse.Namespace, website_id: str) -> list[str]:
    argv = ["--websiteId", website_id]
    if args.date_from:
        argv += ["--from", args.date_from]
    # The timeseries seed takes a day count instead of an end date.
    if args.date_to and name != "anomaly-timeseries":
        argv += ["--to", args.date_to]
    if args.reset:
        argv.append("--reset")
    if args.seed is not None:
        argv += ["--seed", str(args.seed)]
    return argv


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run all seed scripts.")
    cli.add_common_arguments(parser)
    parser.add_argument("--skip", default="", help=f"Comma-separated seeds to skip: {', '.join(SEEDS)}")
    args = parser.parse_args(argv)

    skipped = {name.strip() for name in args.skip.split(",") if name.strip()}
    unknown = skipped - set(SEEDS)
    if unknown:
        raise SystemExit(f"Unknown seeds: {', '.join(sorted(unknown))}")

    website_id = cli.resolve_website_id(args)
    to_run = [name for name in SEEDS if name not in skipped]
    cli.banner("PULSE - Seed All")
    print(f"Website ID: {website_id}")
    print(f"Will run {len(to_run)} seeds: {', '.join(to_run)}")

    results = {}
    for name in to_run:
        print(f"\n[seed-all] Running {name}...")
        started = time.monotonic()
        code = cli.run(SEEDS[name], _argv_for(name, args, website_id))
        duration = time.monotonic() - started
        results[name] = code
        status = "completed" if code == 0 else "FAILED"
        print(f"[seed-all] {name} {status} in {duration:.2f}s")

    failed = [name for name, code in results.items() if code != 0]
    print()
    print(f"[seed-all] {len(results) - len(failed)}/{len(results)} seeds succeeded.")
    if failed:
        raise RuntimeError(f"Seeds failed: {', '.join(failed)}")


if __name__ == "__main__":
    cli.exit_with(main)
