import asyncio
import os
import sys

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_ROOT = os.path.join(PROJECT_ROOT, "src")
if SRC_ROOT not in sys.path:
    sys.path.insert(0, SRC_ROOT)

from clients.geolocation_client import GeolocationError, Location  # noqa: E402
from clients.solana_rpc_client import (  # noqa: E402
    BlockProduction,
    BlockReward,
    ClusterNodeInfo,
    EpochInfo,
    VoteAccountInfo,
)
from monitor.snapshot_collector import Snapshot  # noqa: E402
from storage.cache_store import CacheStore  # noqa: E402


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRPC:
    """
    Stands in for SolanaRPCClient

    errors: method name -> list of exceptions raised by successive calls
    delays: method name -> seconds to sleep before answering
    """

    def __init__(self, epoch_info=None, vote_accounts=None, cluster_nodes=None,
                 production=None, schedule=None, slot=None, blocks=None, block_rewards=None):
        self.epoch_info = epoch_info or EpochInfo(epoch=10, slot_index=100, slots_in_epoch=432000,
                                                  absolute_slot=4_320_100)
        self.slot = slot if slot is not None else self.epoch_info.absolute_slot
        self.vote_accounts = vote_accounts if vote_accounts is not None else [make_account("V1", "Vote1")]
        self.cluster_nodes = cluster_nodes if cluster_nodes is not None else [
            ClusterNodeInfo("V1", "1.2.3.4:8001", "1.17.0")
        ]
        self.production = production or BlockProduction(
            first_slot=self.epoch_info.first_slot,
            last_slot=self.epoch_info.absolute_slot,
            by_identity={"V1": (8, 6)}
        )
        self.schedule = schedule if schedule is not None else {"V1": list(range(16))}
        self.blocks = blocks if blocks is not None else [self.epoch_info.first_slot + 2]
        self.block_rewards = block_rewards if block_rewards is not None else [
            BlockReward("Vote1", 5_000, 1_000_005_000, "Voting", 10),
            BlockReward("Stake1", 900, 2_000_900, "Staking"),
        ]
        self.block_ranges = []
        self.errors = {}
        self.delays = {}
        self.calls = {}

    async def _answer(self, method, value):
        self.calls[method] = self.calls.get(method, 0) + 1
        delay = self.delays.get(method)
        if delay:
            await asyncio.sleep(delay)
        pending = self.errors.get(method)
        if pending:
            raise pending.pop(0)
        return value

    async def get_slot(self):
        return await self._answer("getSlot", self.slot)

    async def get_epoch_info(self):
        return await self._answer("getEpochInfo", self.epoch_info)

    async def get_vote_accounts(self):
        return await self._answer("getVoteAccounts", list(self.vote_accounts))

    async def get_cluster_nodes(self):
        return await self._answer("getClusterNodes", list(self.cluster_nodes))

    async def get_block_production(self, first_slot=None, last_slot=None):
        return await self._answer("getBlockProduction", self.production)

    async def get_leader_schedule(self, slot=None):
        return await self._answer("getLeaderSchedule", self.schedule)

    async def get_blocks(self, start_slot, end_slot=None):
        self.block_ranges.append((start_slot, end_slot))
        return await self._answer("getBlocks", list(self.blocks))

    async def get_block_rewards(self, slot):
        return await self._answer("getBlock", list(self.block_rewards))


class FakeGeoClient:
    """delays: ip -> seconds to sleep before answering"""

    def __init__(self, locations=None, failing=(), delays=None):
        self.locations = locations or {}
        self.failing = set(failing)
        self.delays = dict(delays or {})
        self.calls = []

    async def lookup(self, ip):
        self.calls.append(ip)
        if ip in self.delays:
            await asyncio.sleep(self.delays[ip])
        if ip in self.failing or ip not in self.locations:
            raise GeolocationError(f"lookup of {ip} failed")
        return self.locations[ip]


def make_account(identity, vote, stake=1_000_000, root_slot=4_320_000, credits=None,
                 delinquent=False, commission=10, last_vote=4_320_090):
    return VoteAccountInfo(
        node_pubkey=identity,
        vote_pubkey=vote,
        activated_stake=stake,
        commission=commission,
        last_vote=last_vote,
        root_slot=root_slot,
        epoch_credits=tuple(credits) if credits is not None else ((10, 1500, 1000),),
        delinquent=delinquent
    )


def make_snapshot(epoch=10, slot_index=100, accounts=None, nodes=(), production=None,
                  schedule=None, current_slot=None):
    epoch_info = EpochInfo(epoch=epoch, slot_index=slot_index, slots_in_epoch=432000,
                           absolute_slot=epoch * 432000 + slot_index)
    return Snapshot(
        current_slot=current_slot if current_slot is not None else epoch_info.absolute_slot,
        epoch_info=epoch_info,
        vote_accounts=tuple(accounts if accounts is not None else [make_account("V1", "Vote1")]),
        cluster_nodes=tuple(nodes),
        block_production=dict(production or {}),
        leader_schedule=dict(schedule or {}),
        collected_at=1_700_000_000.0
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_path(tmp_path):
    return str(tmp_path / "cache")


@pytest.fixture
def cache(cache_path):
    store = CacheStore(cache_path, map_size=1 << 20)
    store.open()
    yield store
    store.close()


@pytest.fixture
def berlin():
    return Location("DE", "Berlin", 52.52, 13.405)
