#!/usr/bin/env python3
"""
Rewards Tracker

Reads the voting rewards paid at the start of the current epoch. Rewards
are paid in the first block of an epoch, so they are fetched from the node
once per epoch and served from the epoch_rewards:* cache partition after
that. The tracker itself never writes: the deriver stages freshly fetched
rewards and persists them when the cycle commits.
"""

import logging
from typing import List, Optional, Tuple

from clients.solana_rpc_client import EpochInfo, SolanaRPCClient, call_with_retry
from storage.cache_store import CacheStore
from storage.records import CacheStoreError, VoteReward


logger = logging.getLogger(__name__)


# Slots after the epoch start searched for the first produced block
SLOT_OFFSET = 20


class RewardsUnavailable(Exception):
    """The epoch's first block could not be found"""

    def __init__(self, epoch: int, reason: str):
        super().__init__(f"epoch {epoch}: {reason}")
        self.epoch = epoch
        self.reason = reason


class RewardsTracker:
    """
    Voting rewards of the current epoch, cache first

    Usage:
        tracker = RewardsTracker(rpc_client)
        rewards, fetched = await tracker.epoch_rewards(epoch_info, cache)
    """

    def __init__(self, rpc: SolanaRPCClient, max_retries: int = 2, retry_backoff: float = 0.5):
        """
        Initialize rewards tracker

        Args:
            rpc: Solana RPC client
            max_retries: Retries per query for transient errors
            retry_backoff: Base backoff between retries in seconds
        """
        self.rpc = rpc
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    def _read_cached(self, cache: CacheStore, epoch: int) -> Optional[List[VoteReward]]:
        try:
            return cache.get_epoch_rewards(epoch)
        except CacheStoreError as e:
            logger.warning(f"Ignoring unreadable rewards cache entry for epoch {epoch}: {e}")
            return None

    async def epoch_rewards(
        self,
        epoch_info: EpochInfo,
        cache: CacheStore
    ) -> Tuple[Optional[List[VoteReward]], bool]:
        """
        Voting rewards paid at the start of epoch_info.epoch

        Returns:
            (rewards, fetched): rewards is None while the epoch's first block
            does not exist yet; fetched is True when the rewards came from the
            node and still have to be persisted

        Raises:
            RPCError: a query failed
            RewardsUnavailable: no block in the first SLOT_OFFSET slots of the epoch
        """
        epoch = epoch_info.epoch
        cached = self._read_cached(cache, epoch)
        if cached is not None:
            return cached, False

        start_slot = epoch_info.first_slot
        # Right after the boundary the end of the search window may not exist yet
        end_slot = None if epoch_info.slot_index < SLOT_OFFSET else start_slot + SLOT_OFFSET

        blocks = await call_with_retry(
            lambda: self.rpc.get_blocks(start_slot, end_slot),
            self.max_retries,
            self.retry_backoff
        )
        if not blocks:
            if end_slot is None:
                logger.debug(f"First block of epoch {epoch} not produced yet")
                return None, False
            raise RewardsUnavailable(epoch, f"no blocks in slots {start_slot}-{end_slot}")

        block_rewards = await call_with_retry(
            lambda: self.rpc.get_block_rewards(blocks[0]),
            self.max_retries,
            self.retry_backoff
        )
        rewards = [
            VoteReward(reward.pubkey, reward.lamports, reward.post_balance)
            for reward in block_rewards
            if reward.reward_type == "Voting"
        ]
        logger.info(f"Fetched {len(rewards)} voting rewards of epoch {epoch} from block {blocks[0]}")
        return rewards, True
