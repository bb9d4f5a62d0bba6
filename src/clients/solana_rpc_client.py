#!/usr/bin/env python3
"""
Solana JSON-RPC Client for Solana Monitor

Async HTTP client for the read-only query methods the monitor needs.
Every method returns a typed result or raises an RPCError subclass tagged
as transient (worth retrying) or permanent (retrying will not help).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx


logger = logging.getLogger(__name__)


class RPCError(Exception):
    """Base class for RPC failures"""

    transient = False

    def __init__(self, method: str, message: str):
        super().__init__(f"{method}: {message}")
        self.method = method
        self.message = message


class RPCTimeout(RPCError):
    """The node did not answer within the per-query deadline"""

    transient = True


class RPCTransportError(RPCError):
    """Connection reset/refused, or the node answered with a retryable HTTP status"""

    transient = True


class RPCMalformedResponse(RPCError):
    """The node answered, but the payload does not have the expected shape"""


class RPCNodeRejected(RPCError):
    """The node answered with a JSON-RPC error object or a non-retryable HTTP status"""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        super().__init__(method, message)
        self.code = code


@dataclass(frozen=True)
class EpochInfo:
    epoch: int
    slot_index: int
    slots_in_epoch: int
    absolute_slot: int
    block_height: int = 0
    transaction_count: int = 0

    @property
    def first_slot(self) -> int:
        """Absolute slot number of the first slot in this epoch"""
        return self.absolute_slot - self.slot_index


@dataclass(frozen=True)
class VoteAccountInfo:
    """
    One entry of getVoteAccounts

    epoch_credits holds (epoch, credits, previous_credits) triples exactly as
    the node reports them; credits are cumulative over the account lifetime.
    """
    node_pubkey: str
    vote_pubkey: str
    activated_stake: int
    commission: int
    last_vote: int
    root_slot: int
    epoch_credits: Tuple[Tuple[int, int, int], ...] = ()
    delinquent: bool = False


@dataclass(frozen=True)
class ClusterNodeInfo:
    pubkey: str
    gossip: Optional[str] = None
    version: Optional[str] = None

    @property
    def gossip_ip(self) -> Optional[str]:
        """Host part of the gossip address (handles bracketed IPv6)"""
        if not self.gossip:
            return None
        host, sep, _port = self.gossip.rpartition(':')
        if not sep:
            return self.gossip
        return host.strip('[]') or None


@dataclass(frozen=True)
class BlockProduction:
    """
    Result of getBlockProduction

    by_identity maps leader identity to (leader_slots, blocks_produced) for
    the slot range [first_slot, last_slot].
    """
    first_slot: int
    last_slot: int
    by_identity: Dict[str, Tuple[int, int]] = field(default_factory=dict)


@dataclass(frozen=True)
class BlockReward:
    """One entry of a block's `rewards` list"""
    pubkey: str
    lamports: int
    post_balance: int
    reward_type: Optional[str] = None
    commission: Optional[int] = None


# HTTP statuses worth retrying (node overloaded or restarting)
RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}


class SolanaRPCClient:
    """
    Async JSON-RPC 2.0 client for a Solana node

    Usage:
        client = SolanaRPCClient(url="http://localhost:8899")
        await client.start()

        epoch_info = await client.get_epoch_info()

        await client.close()
    """

    def __init__(
        self,
        url: str = "http://localhost:8899",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize Solana RPC client

        Args:
            url: Node JSON-RPC URL (default: http://localhost:8899)
            timeout: Per-query deadline in seconds (default: 10.0)
            transport: Optional httpx transport (used by tests)
        """
        self.url = url
        self.timeout = timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

        logger.info(f"Solana RPC client initialized: url={self.url}, timeout={timeout}s")

    async def start(self):
        """Start the HTTP client session"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            logger.info("Solana RPC HTTP client started")

    async def close(self):
        """Close the HTTP client session"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Solana RPC HTTP client closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Issue one JSON-RPC call and return its `result` member

        Args:
            method: JSON-RPC method name (e.g. 'getSlot')
            params: Positional parameters

        Returns:
            The decoded `result` value

        Raises:
            RPCTimeout, RPCTransportError: transient failures
            RPCMalformedResponse, RPCNodeRejected: permanent failures
        """
        if not self._client:
            await self.start()

        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}

        try:
            response = await self._client.post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json"}
            )
        except httpx.TimeoutException as e:
            raise RPCTimeout(method, f"timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise RPCTransportError(method, f"transport error: {e}") from e

        if response.status_code in RETRYABLE_HTTP_STATUSES:
            raise RPCTransportError(method, f"HTTP {response.status_code}")
        if response.status_code != 200:
            raise RPCNodeRejected(method, f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise RPCMalformedResponse(method, "response is not valid JSON") from e

        if not isinstance(data, dict):
            raise RPCMalformedResponse(method, "response is not a JSON object")

        error = data.get('error')
        if error is not None:
            if isinstance(error, dict):
                raise RPCNodeRejected(method, str(error.get('message', error)), error.get('code'))
            raise RPCNodeRejected(method, str(error))

        if 'result' not in data:
            raise RPCMalformedResponse(method, "response has neither 'result' nor 'error'")

        return data['result']

    async def get_slot(self) -> int:
        """Current slot at the node's default commitment"""
        result = await self.call("getSlot")
        if not isinstance(result, int):
            raise RPCMalformedResponse("getSlot", f"expected integer, got {type(result).__name__}")
        return result

    async def get_epoch_info(self) -> EpochInfo:
        """Current epoch and progress within it"""
        result = await self.call("getEpochInfo")
        try:
            return EpochInfo(
                epoch=int(result['epoch']),
                slot_index=int(result['slotIndex']),
                slots_in_epoch=int(result['slotsInEpoch']),
                absolute_slot=int(result['absoluteSlot']),
                block_height=int(result.get('blockHeight') or 0),
                transaction_count=int(result.get('transactionCount') or 0)
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RPCMalformedResponse("getEpochInfo", f"unexpected shape: {e}") from e

    async def get_vote_accounts(self) -> List[VoteAccountInfo]:
        """
        All vote accounts, current ones first, delinquent ones flagged

        Returns:
            List of VoteAccountInfo in node order
        """
        result = await self.call("getVoteAccounts")
        try:
            accounts = []
            for key, delinquent in (('current', False), ('delinquent', True)):
                for entry in result[key]:
                    accounts.append(VoteAccountInfo(
                        node_pubkey=entry['nodePubkey'],
                        vote_pubkey=entry['votePubkey'],
                        activated_stake=int(entry['activatedStake']),
                        commission=int(entry['commission']),
                        last_vote=int(entry['lastVote']),
                        root_slot=int(entry.get('rootSlot') or 0),
                        epoch_credits=tuple(
                            (int(e), int(c), int(p)) for e, c, p in entry.get('epochCredits') or []
                        ),
                        delinquent=delinquent
                    ))
            return accounts
        except (KeyError, TypeError, ValueError) as e:
            raise RPCMalformedResponse("getVoteAccounts", f"unexpected shape: {e}") from e

    async def get_cluster_nodes(self) -> List[ClusterNodeInfo]:
        """Nodes participating in the cluster, as seen through gossip"""
        result = await self.call("getClusterNodes")
        try:
            return [
                ClusterNodeInfo(
                    pubkey=node['pubkey'],
                    gossip=node.get('gossip'),
                    version=node.get('version')
                )
                for node in result
            ]
        except (KeyError, TypeError) as e:
            raise RPCMalformedResponse("getClusterNodes", f"unexpected shape: {e}") from e

    async def get_block_production(
        self,
        first_slot: Optional[int] = None,
        last_slot: Optional[int] = None
    ) -> BlockProduction:
        """
        Leader slots and produced blocks per identity

        Without a range the node reports the current epoch up to the
        current slot.

        Args:
            first_slot: First slot of the range (optional)
            last_slot: Last slot of the range (optional, requires first_slot)
        """
        params: List[Any] = []
        if first_slot is not None:
            slot_range = {"firstSlot": first_slot}
            if last_slot is not None:
                slot_range["lastSlot"] = last_slot
            params.append({"range": slot_range})

        result = await self.call("getBlockProduction", params)
        try:
            value = result['value']
            by_identity = {
                identity: (int(counts[0]), int(counts[1]))
                for identity, counts in value['byIdentity'].items()
            }
            return BlockProduction(
                first_slot=int(value['range']['firstSlot']),
                last_slot=int(value['range']['lastSlot']),
                by_identity=by_identity
            )
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise RPCMalformedResponse("getBlockProduction", f"unexpected shape: {e}") from e

    async def get_leader_schedule(self, slot: Optional[int] = None) -> Dict[str, List[int]]:
        """
        Leader schedule of the epoch containing `slot` (current epoch if None)

        Returns:
            Mapping of identity to slot offsets relative to the epoch start
        """
        result = await self.call("getLeaderSchedule", [slot])
        if result is None:
            raise RPCNodeRejected("getLeaderSchedule", "no leader schedule for requested epoch")
        if not isinstance(result, dict):
            raise RPCMalformedResponse("getLeaderSchedule", f"expected object, got {type(result).__name__}")
        try:
            return {identity: [int(s) for s in slots] for identity, slots in result.items()}
        except (TypeError, ValueError) as e:
            raise RPCMalformedResponse("getLeaderSchedule", f"unexpected shape: {e}") from e

    async def get_blocks(self, start_slot: int, end_slot: Optional[int] = None) -> List[int]:
        """
        Confirmed blocks between two slots (skipped slots are absent)

        Args:
            start_slot: First slot, inclusive
            end_slot: Last slot, inclusive (None = up to the latest confirmed block)
        """
        params: List[Any] = [start_slot] if end_slot is None else [start_slot, end_slot]
        result = await self.call("getBlocks", params)
        if not isinstance(result, list):
            raise RPCMalformedResponse("getBlocks", f"expected array, got {type(result).__name__}")
        try:
            return [int(slot) for slot in result]
        except (TypeError, ValueError) as e:
            raise RPCMalformedResponse("getBlocks", f"unexpected shape: {e}") from e

    async def get_block_rewards(self, slot: int) -> List[BlockReward]:
        """
        Rewards paid in one block (no transaction details are fetched)

        Args:
            slot: Slot of a confirmed block
        """
        result = await self.call("getBlock", [slot, {
            "encoding": "json",
            "transactionDetails": "none",
            "rewards": True,
            "maxSupportedTransactionVersion": 0
        }])
        if result is None:
            raise RPCNodeRejected("getBlock", f"no block at slot {slot}")
        try:
            return [
                BlockReward(
                    pubkey=reward['pubkey'],
                    lamports=int(reward['lamports']),
                    post_balance=int(reward['postBalance']),
                    reward_type=reward.get('rewardType'),
                    commission=reward.get('commission')
                )
                for reward in result.get('rewards') or []
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RPCMalformedResponse("getBlock", f"unexpected shape: {e}") from e


async def call_with_retry(coro_factory, max_retries: int = 2, backoff: float = 0.5):
    """
    Run an RPC coroutine, retrying transient failures with short exponential backoff

    Args:
        coro_factory: Zero-argument callable returning a fresh coroutine per attempt
        max_retries: Retries after the first attempt for transient errors
        backoff: Base delay in seconds (doubles per retry)

    Returns:
        The coroutine's result

    Raises:
        RPCError: the permanent error, or the last transient one once retries are exhausted
    """
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except RPCError as e:
            if not e.transient or attempt >= max_retries:
                raise
            delay = backoff * (2 ** attempt)
            logger.debug(f"{e} (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay}s")
            await asyncio.sleep(delay)
