import asyncio

import pytest

from clients.solana_rpc_client import EpochInfo, RPCNodeRejected
from conftest import FakeRPC
from monitor.rewards_tracker import SLOT_OFFSET, RewardsTracker, RewardsUnavailable
from storage.cache_store import rewards_key
from storage.records import VoteReward


def _epoch_info(slot_index):
    return EpochInfo(epoch=10, slot_index=slot_index, slots_in_epoch=432000,
                     absolute_slot=4_320_000 + slot_index)


def _rewards(rpc, cache, slot_index=100):
    tracker = RewardsTracker(rpc, max_retries=0, retry_backoff=0)
    return asyncio.run(tracker.epoch_rewards(_epoch_info(slot_index), cache))


def test_voting_rewards_of_first_block(cache):
    rpc = FakeRPC(blocks=[4_320_003, 4_320_004])

    rewards, fetched = _rewards(rpc, cache)

    assert fetched
    assert rewards == [VoteReward("Vote1", 5_000, 1_000_005_000)]
    assert rpc.block_ranges == [(4_320_000, 4_320_000 + SLOT_OFFSET)]
    # persisting is left to the caller
    assert cache.get_epoch_rewards(10) is None


def test_cached_epoch_is_served_without_queries(cache):
    cache.put_epoch_rewards(10, [VoteReward("Vote1", 4_000, 900)])
    rpc = FakeRPC()

    rewards, fetched = _rewards(rpc, cache)

    assert not fetched
    assert rewards == [VoteReward("Vote1", 4_000, 900)]
    assert rpc.calls == {}


def test_open_search_window_right_after_the_boundary(cache):
    rpc = FakeRPC(blocks=[])

    assert _rewards(rpc, cache, slot_index=5) == (None, False)
    assert rpc.block_ranges == [(4_320_000, None)]


def test_no_block_in_search_window(cache):
    with pytest.raises(RewardsUnavailable) as excinfo:
        _rewards(FakeRPC(blocks=[]), cache)

    assert excinfo.value.epoch == 10


def test_rpc_failure_propagates(cache):
    rpc = FakeRPC()
    rpc.errors["getBlocks"] = [RPCNodeRejected("getBlocks", "slot not available")]

    with pytest.raises(RPCNodeRejected):
        _rewards(rpc, cache)


def test_unreadable_cache_entry_is_refetched(cache):
    cache.put(rewards_key(10), b"junk")

    rewards, fetched = _rewards(FakeRPC(), cache)

    assert fetched
    assert [reward.vote_account for reward in rewards] == ["Vote1"]
