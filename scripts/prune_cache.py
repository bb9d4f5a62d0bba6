#!/usr/bin/env python3
"""
Prune the Solana Monitor cache.

Removes cached state of validators that no longer appear in the node's
vote account list, geolocation entries older than a given age and
rewards records of old epochs.
Stop the monitor before running this (LMDB allows it, but the monitor
may re-create pruned entries on its next cycle).
"""

import argparse
import asyncio
import os
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from clients.solana_rpc_client import RPCError, SolanaRPCClient  # noqa: E402
from monitor.config import DEFAULT_CACHE_PATH  # noqa: E402
from storage.cache_store import CacheStore, GEO_PREFIX, REWARDS_PREFIX, VALIDATOR_PREFIX  # noqa: E402


async def fetch_live_state(rpc_url: str):
    async with SolanaRPCClient(url=rpc_url) as client:
        accounts = await client.get_vote_accounts()
        epoch_info = await client.get_epoch_info()
    return {account.node_pubkey for account in accounts}, epoch_info.epoch


def main():
    parser = argparse.ArgumentParser(description="Prune the Solana Monitor cache")
    parser.add_argument("--cache", default=os.getenv("CACHE_PATH", DEFAULT_CACHE_PATH), help="cache directory")
    parser.add_argument("--rpc", default=os.getenv("SOLANA_RPC_URL", "http://localhost:8899"), help="Solana RPC URL")
    parser.add_argument("--geo-max-age-days", type=float, default=None,
                        help="also drop geo entries older than this many days")
    parser.add_argument("--rewards-keep-epochs", type=int, default=None,
                        help="also drop rewards records except those of the last N epochs")
    parser.add_argument("--yes", action="store_true", help="do not ask for confirmation")
    args = parser.parse_args()

    cache_path = Path(args.cache).expanduser()
    if not cache_path.exists():
        print(f"ERROR: Cache not found: {cache_path}")
        sys.exit(1)

    try:
        identities, epoch = asyncio.run(fetch_live_state(args.rpc))
    except RPCError as e:
        print(f"ERROR: Could not fetch vote accounts from {args.rpc}: {e}")
        sys.exit(1)

    with CacheStore(str(cache_path)) as cache:
        cached = [identity for identity, _state in cache.iter_validator_states()]
        orphaned = [identity for identity in cached if identity not in identities]

        print("=== Solana Monitor Cache ===")
        print(f"  path:                {cache_path}")
        print(f"  validator records:   {cache.count(VALIDATOR_PREFIX)}")
        print(f"  geo records:         {cache.count(GEO_PREFIX)}")
        print(f"  reward epochs:       {cache.count(REWARDS_PREFIX)} (current epoch {epoch})")
        print(f"  orphaned validators: {len(orphaned)} (of {len(identities)} live identities)")
        print("")

        if not args.yes:
            try:
                answer = input("Prune now? [y/N]: ").strip().lower()
            except (KeyboardInterrupt, EOFError):
                print("\nCancelled.")
                sys.exit(0)
            if answer != "y":
                print("Exiting without changes.")
                sys.exit(0)

        removed = cache.prune_validators(identities)
        print(f"✓ Removed {removed} orphaned validator records")

        if args.geo_max_age_days is not None:
            cutoff = time.time() - args.geo_max_age_days * 86400
            removed_geo = cache.prune_geo_entries(cutoff)
            print(f"✓ Removed {removed_geo} geo records older than {args.geo_max_age_days} days")

        if args.rewards_keep_epochs is not None:
            removed_rewards = cache.prune_epoch_rewards(epoch - args.rewards_keep_epochs + 1)
            print(f"✓ Removed {removed_rewards} rewards records outside the last {args.rewards_keep_epochs} epochs")


if __name__ == "__main__":
    main()
