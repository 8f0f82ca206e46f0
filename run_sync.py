#!/usr/bin/env python3
"""
Run one leaderboard sync by hand.

Fetches the affiliate leaderboard, ranks it, and reconciles profiles against
the all-time bucket, the same way the background cycle does.

Usage:
    python run_sync.py                # Fetch (reusing a fresh snapshot) and sync profiles
    python run_sync.py --dry-run      # Fetch and rank only, print the top of each board
    python run_sync.py --top 10       # Show more entries per timeframe
"""
import asyncio
import argparse
import sys

from wagerboard.config import get_settings
from wagerboard.database import AsyncSessionLocal, init_models
from wagerboard.services import (
    CacheService,
    LeaderboardService,
    ProfileReconciler,
    UpstreamClient,
    aggregate_stats,
    top_performers,
)
from wagerboard.utils.exceptions import UpstreamError


async def run_sync(dry_run: bool = False, top: int = 3) -> int:
    """
    Fetch, rank and optionally reconcile.

    Returns:
        Process exit code
    """
    settings = get_settings()

    print("=" * 60)
    print("LEADERBOARD SYNC")
    print("=" * 60)

    async with UpstreamClient(settings) as client:
        service = LeaderboardService(client, CacheService(), settings)
        try:
            leaderboard = await service.get_leaderboard(force_refresh=True)
        except UpstreamError as e:
            print(f"\nUpstream unavailable: {e}")
            return 1

    if leaderboard.status != "success":
        print("\nUpstream payload could not be ranked, nothing to sync.")
        return 1

    stats = aggregate_stats(leaderboard)
    print(f"\nUsers: {stats.user_count}")
    print(f"All-time total: {stats.all_time_total:,.2f} (top {stats.top_wager:,.2f})")

    for bucket, entries in top_performers(leaderboard, top).items():
        print(f"\n--- {bucket} ---")
        for entry in entries:
            print(f"  #{entry.rank:<4} {entry.name:<24} {entry.uid}")

    if dry_run:
        print("\nDry run, profiles left untouched.")
        return 0

    await init_models()
    async with AsyncSessionLocal() as session:
        result = await ProfileReconciler(session).sync_all(leaderboard)

    print("\n" + "=" * 60)
    print(
        f"Created {result.created}, updated {result.updated}, unchanged {result.unchanged}, "
        f"failed {result.failed} ({result.duration_ms}ms)"
    )
    return 1 if result.failed else 0


def main():
    """Main entry point for the manual sync script."""
    parser = argparse.ArgumentParser(description="Run one leaderboard sync")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and rank without writing profiles"
    )
    parser.add_argument(
        "--top",
        type=int,
        default=3,
        help="Entries to print per timeframe (default: 3)"
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run_sync(dry_run=args.dry_run, top=args.top)))


if __name__ == "__main__":
    main()
