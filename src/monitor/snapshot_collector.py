#!/usr/bin/env python3
"""
Snapshot Collector

Issues the RPC queries of one polling cycle concurrently and assembles
them into a single immutable Snapshot. Either every query succeeds within
the shared deadline or the whole collection fails; the deriver never sees
a half-populated snapshot.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from clients.solana_rpc_client import (
    BlockProduction,
    ClusterNodeInfo,
    EpochInfo,
    RPCError,
    SolanaRPCClient,
    VoteAccountInfo,
    call_with_retry,
)


logger = logging.getLogger(__name__)


class CollectionError(Exception):
    """The cycle could not assemble a complete snapshot"""


class PartialData(CollectionError):
    """
    One or more queries failed permanently (or exhausted their retries)

    Attributes:
        failed: query name -> error description
    """

    def __init__(self, failed: Dict[str, str]):
        super().__init__(f"queries failed: {', '.join(f'{k} ({v})' for k, v in sorted(failed.items()))}")
        self.failed = dict(failed)


class CollectionTimeout(CollectionError):
    """The shared deadline elapsed before every query finished"""

    def __init__(self, timeout: float, pending: Tuple[str, ...]):
        super().__init__(f"collection exceeded {timeout}s, still pending: {', '.join(pending)}")
        self.timeout = timeout
        self.pending = pending


@dataclass(frozen=True)
class Snapshot:
    """
    Everything one polling cycle read from the node

    block_production maps leader identity -> (leader_slots, blocks_produced)
    for the current epoch so far; leader_schedule maps identity -> number
    of leader slots scheduled for the whole epoch.
    """
    current_slot: int
    epoch_info: EpochInfo
    vote_accounts: Tuple[VoteAccountInfo, ...]
    cluster_nodes: Tuple[ClusterNodeInfo, ...]
    block_production: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    leader_schedule: Dict[str, int] = field(default_factory=dict)
    collected_at: float = 0.0

    @property
    def epoch(self) -> int:
        return self.epoch_info.epoch


# Query names double as the labels reported in PartialData
QUERY_NAMES = (
    "getSlot",
    "getEpochInfo",
    "getVoteAccounts",
    "getClusterNodes",
    "getBlockProduction",
    "getLeaderSchedule",
)


class SnapshotCollector:
    """
    Fans out the per-cycle RPC queries and joins them on a single deadline

    Transient errors are retried a bounded number of times per query;
    anything still failing makes the collection fail with PartialData.
    Collecting never touches the cache.
    """

    def __init__(
        self,
        rpc: SolanaRPCClient,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        include_block_production: bool = True,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize snapshot collector

        Args:
            rpc: Solana RPC client (anything exposing the same query methods)
            max_retries: Retries per query for transient errors
            retry_backoff: Base backoff between retries in seconds
            include_block_production: Query getBlockProduction and getLeaderSchedule
            clock: Time source for Snapshot.collected_at
        """
        self.rpc = rpc
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.include_block_production = include_block_production
        self.clock = clock

    def _query_factories(self) -> Dict[str, Callable]:
        factories = {
            "getSlot": self.rpc.get_slot,
            "getEpochInfo": self.rpc.get_epoch_info,
            "getVoteAccounts": self.rpc.get_vote_accounts,
            "getClusterNodes": self.rpc.get_cluster_nodes,
        }
        if self.include_block_production:
            factories["getBlockProduction"] = self.rpc.get_block_production
            factories["getLeaderSchedule"] = self.rpc.get_leader_schedule
        return factories

    async def collect(self, timeout: float) -> Snapshot:
        """
        Run one collection

        Args:
            timeout: Shared deadline for all queries, in seconds

        Returns:
            A complete Snapshot

        Raises:
            CollectionTimeout: the deadline elapsed; stragglers were cancelled
            PartialData: at least one query failed
        """
        started = time.monotonic()
        tasks: Dict[str, asyncio.Task] = {
            name: asyncio.create_task(
                call_with_retry(factory, self.max_retries, self.retry_backoff),
                name=f"rpc-{name}"
            )
            for name, factory in self._query_factories().items()
        }

        try:
            _done, pending = await asyncio.wait(tasks.values(), timeout=timeout)
        finally:
            # Cycle abandoned (timeout or outer cancellation): drop in-flight queries
            stragglers = [task for task in tasks.values() if not task.done()]
            for task in stragglers:
                task.cancel()
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)

        if pending:
            pending_names = tuple(name for name, task in tasks.items() if task in pending)
            raise CollectionTimeout(timeout, pending_names)

        failed: Dict[str, str] = {}
        results = {}
        for name, task in tasks.items():
            error = task.exception()
            if error is None:
                results[name] = task.result()
            elif isinstance(error, RPCError):
                kind = "transient" if error.transient else "permanent"
                failed[name] = f"{kind}: {error.message}"
            else:
                failed[name] = f"unexpected: {error!r}"

        if failed:
            raise PartialData(failed)

        snapshot = self._assemble(results)
        logger.debug(
            f"Snapshot collected in {time.monotonic() - started:.2f}s: slot={snapshot.current_slot}, "
            f"epoch={snapshot.epoch}, vote_accounts={len(snapshot.vote_accounts)}, "
            f"nodes={len(snapshot.cluster_nodes)}"
        )
        return snapshot

    def _assemble(self, results: Dict[str, object]) -> Snapshot:
        epoch_info: EpochInfo = results["getEpochInfo"]
        production: Optional[BlockProduction] = results.get("getBlockProduction")
        schedule: Optional[Dict[str, list]] = results.get("getLeaderSchedule")

        # Queries that straddled an epoch boundary describe different epochs
        if production is not None and production.first_slot != epoch_info.first_slot:
            raise PartialData({
                "getBlockProduction": (
                    f"epoch window mismatch: production starts at {production.first_slot}, "
                    f"epoch {epoch_info.epoch} starts at {epoch_info.first_slot}"
                )
            })

        return Snapshot(
            current_slot=results["getSlot"],
            epoch_info=epoch_info,
            vote_accounts=tuple(results["getVoteAccounts"]),
            cluster_nodes=tuple(results["getClusterNodes"]),
            block_production=dict(production.by_identity) if production is not None else {},
            leader_schedule={identity: len(slots) for identity, slots in (schedule or {}).items()},
            collected_at=self.clock()
        )
