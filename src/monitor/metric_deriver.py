#!/usr/bin/env python3
"""
Metric Deriver

Turns one Snapshot plus the cached per-validator state into the metric
set to publish and the new state to persist.

Derived per validator:
- skip rate for the current epoch (omitted until the validator has leader slots)
- credits delta since the previous cycle (omitted when the input is untrustworthy)
- delinquency (node-reported) and local "stalled" detection from root slot progress
Derived cluster-wide:
- epoch progress, node versions, stake-weighted geography
- voting rewards paid at the start of the epoch
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from clients.geolocation_client import Location
from clients.solana_rpc_client import ClusterNodeInfo, RPCError, VoteAccountInfo
from monitor.geolocation_resolver import GeolocationResolver, ResolutionError
from monitor.rewards_tracker import RewardsTracker, RewardsUnavailable
from monitor.snapshot_collector import Snapshot
from storage.cache_store import CacheStore
from storage.records import CachedValidatorState, CacheStoreError, GeoCacheEntry, SchemaMismatch, VoteReward


logger = logging.getLogger(__name__)


LabelSet = Tuple[Tuple[str, str], ...]


class DerivedMetricSet:
    """
    Metric name + label set -> value for one cycle

    Built up with set() during derivation, then frozen before it is
    handed to the publisher; a frozen set never changes again.
    """

    def __init__(self):
        self._values: Dict[Tuple[str, LabelSet], float] = {}
        self._frozen = False

    @staticmethod
    def _labels(labels: Optional[Mapping[str, str]]) -> LabelSet:
        return tuple(sorted((labels or {}).items()))

    def set(self, name: str, labels: Optional[Mapping[str, str]], value: float):
        if self._frozen:
            raise RuntimeError("metric set is frozen")
        self._values[(name, self._labels(labels))] = float(value)

    def get(self, name: str, labels: Optional[Mapping[str, str]] = None) -> Optional[float]:
        return self._values.get((name, self._labels(labels)))

    def has(self, name: str, labels: Optional[Mapping[str, str]] = None) -> bool:
        return (name, self._labels(labels)) in self._values

    def drop_label_value(self, label: str, value: str, prefix: str = "") -> int:
        """Remove every sample named prefix* carrying label=value; returns the number removed"""
        if self._frozen:
            raise RuntimeError("metric set is frozen")
        doomed = [
            key for key in self._values
            if key[0].startswith(prefix) and (label, value) in key[1]
        ]
        for key in doomed:
            del self._values[key]
        return len(doomed)

    def freeze(self) -> 'DerivedMetricSet':
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def families(self) -> Dict[str, List[Tuple[Dict[str, str], float]]]:
        """Samples grouped by metric name, in name order"""
        grouped: Dict[str, List[Tuple[Dict[str, str], float]]] = defaultdict(list)
        for (name, labels), value in sorted(self._values.items()):
            grouped[name].append((dict(labels), value))
        return dict(grouped)

    def __len__(self):
        return len(self._values)

    def __iter__(self) -> Iterator[Tuple[str, Dict[str, str], float]]:
        for (name, labels), value in self._values.items():
            yield name, dict(labels), value

    def __eq__(self, other):
        if not isinstance(other, DerivedMetricSet):
            return NotImplemented
        return self._values == other._values

    def __repr__(self):
        return f"DerivedMetricSet({len(self._values)} samples, frozen={self._frozen})"


@dataclass
class DerivationResult:
    """
    Output of one derivation

    pending_writes: validator identity -> state to persist once the cycle commits
    pending_geo_writes: gossip IP -> location looked up during this derivation
    pending_rewards: epoch -> voting rewards fetched during this derivation
    skipped_validators: identities whose cache entry could not be read
    geo_failures: cluster nodes whose location could not be resolved (or not in time)
    """
    metrics: DerivedMetricSet
    pending_writes: Dict[str, CachedValidatorState] = field(default_factory=dict)
    pending_geo_writes: Dict[str, GeoCacheEntry] = field(default_factory=dict)
    pending_rewards: Dict[int, List[VoteReward]] = field(default_factory=dict)
    skipped_validators: Set[str] = field(default_factory=set)
    geo_failures: int = 0


@dataclass(frozen=True)
class CreditsOutcome:
    epoch_credits: int
    delta: Optional[int]
    state: Optional[CachedValidatorState]


def epoch_credits(account: VoteAccountInfo, epoch: int) -> int:
    """Credits earned during `epoch` (0 if the account has no entry for it)"""
    for entry_epoch, credits, previous_credits in account.epoch_credits:
        if entry_epoch == epoch:
            return max(credits - previous_credits, 0)
    return 0


def total_credits(account: VoteAccountInfo) -> int:
    """Cumulative lifetime credits, from the newest epochCredits entry"""
    if not account.epoch_credits:
        return 0
    return account.epoch_credits[-1][1]


def node_pubkeys(whitelist: FrozenSet[str], vote_accounts: Iterable[VoteAccountInfo]) -> FrozenSet[str]:
    """Identities of the whitelisted vote accounts (empty whitelist = no restriction)"""
    return frozenset(a.node_pubkey for a in vote_accounts if not whitelist or a.vote_pubkey in whitelist)


def derive_credits(
    current_credits: int,
    epoch: int,
    cached: Optional[CachedValidatorState]
) -> CreditsOutcome:
    """
    Credits delta against the cached state

    - first observation: no delta, start tracking
    - same epoch: delta = current - cached; a decrease falls back to absolute reporting
    - epoch advanced: fresh epoch, delta = current, accumulator reset
    - epoch regressed: untrustworthy, no delta and the cache is left alone (state is None)
    """
    if cached is None:
        return CreditsOutcome(current_credits, None, CachedValidatorState(epoch, current_credits, 0))

    if epoch == cached.last_epoch:
        if current_credits < cached.last_credits:
            logger.warning(
                f"Epoch credits decreased within epoch {epoch} "
                f"({cached.last_credits} -> {current_credits}), reporting absolute value only"
            )
            delta = None
        else:
            delta = current_credits - cached.last_credits
        return CreditsOutcome(current_credits, delta, replace(cached, last_credits=current_credits))

    if epoch > cached.last_epoch:
        fresh = cached.reset_accumulator(epoch)
        return CreditsOutcome(current_credits, current_credits, replace(fresh, last_credits=current_credits))

    logger.warning(
        f"Snapshot epoch {epoch} is behind cached epoch {cached.last_epoch}, "
        f"not deriving credits delta"
    )
    return CreditsOutcome(current_credits, None, None)


class MetricDeriver:
    """
    Computes the DerivedMetricSet of one cycle

    Holds no state between cycles: everything it remembers goes through
    the cache store. Cache writes are staged in DerivationResult and only
    happen in commit(), after derivation finished.
    """

    def __init__(
        self,
        geo_resolver: Optional[GeolocationResolver] = None,
        stall_slot_threshold: int = 150,
        vote_account_whitelist: FrozenSet[str] = frozenset(),
        geo_concurrency: int = 8,
        rewards_tracker: Optional[RewardsTracker] = None,
        skipped_slots_enabled: bool = True,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize metric deriver

        Args:
            geo_resolver: Resolver for gossip IPs (None disables geography)
            stall_slot_threshold: Slots without root progress before a validator counts as stalled
            vote_account_whitelist: Vote accounts to report per-validator metrics for (empty = all)
            geo_concurrency: Maximum concurrent geolocation lookups
            rewards_tracker: Source of epoch voting rewards (None disables rewards)
            skipped_slots_enabled: Export leader slot, produced block and skip rate metrics
            clock: Time source for CachedValidatorState.updated_at
        """
        self.geo_resolver = geo_resolver
        self.stall_slot_threshold = stall_slot_threshold
        self.vote_account_whitelist = frozenset(vote_account_whitelist)
        self.geo_concurrency = geo_concurrency
        self.rewards_tracker = rewards_tracker
        self.skipped_slots_enabled = skipped_slots_enabled
        self.clock = clock

    async def derive(
        self,
        snapshot: Snapshot,
        cache: CacheStore,
        budget: Optional[float] = None
    ) -> DerivationResult:
        """
        Derive the metric set for a snapshot

        Args:
            snapshot: Complete snapshot of this cycle
            cache: Cache store (read only here; see commit())
            budget: Seconds the enrichments (rewards, geography) may take; what
                is not done by then is left out of the set (None = no limit)

        Returns:
            DerivationResult with a frozen-ready metric set and staged cache writes
        """
        result = DerivationResult(metrics=DerivedMetricSet())

        self._derive_cluster(snapshot, result.metrics)

        seen: Set[str] = set()
        for account in snapshot.vote_accounts:
            if self.vote_account_whitelist and account.vote_pubkey not in self.vote_account_whitelist:
                continue
            if account.node_pubkey in seen:
                logger.warning(
                    f"Identity {account.node_pubkey} has more than one vote account, "
                    f"ignoring {account.vote_pubkey}"
                )
                continue
            seen.add(account.node_pubkey)
            self._derive_validator(snapshot, account, cache, result)

        enrichments = []
        if self.rewards_tracker is not None:
            enrichments.append(self._derive_rewards(snapshot, cache, result, budget))
        if self.geo_resolver is not None:
            enrichments.append(self._derive_geography(snapshot, result, budget))
        if enrichments:
            await asyncio.gather(*enrichments)

        logger.debug(
            f"Derived {len(result.metrics)} samples for epoch {snapshot.epoch} "
            f"({len(result.pending_writes)} staged writes, {len(result.skipped_validators)} skipped)"
        )
        return result

    def _derive_cluster(self, snapshot: Snapshot, metrics: DerivedMetricSet):
        info = snapshot.epoch_info
        metrics.set("solana_current_slot", None, snapshot.current_slot)
        metrics.set("solana_epoch", None, info.epoch)
        metrics.set("solana_epoch_slot_index", None, info.slot_index)
        metrics.set("solana_epoch_slots", None, info.slots_in_epoch)
        metrics.set("solana_block_height", None, info.block_height)
        metrics.set("solana_transaction_count", None, info.transaction_count)

        delinquent = sum(1 for a in snapshot.vote_accounts if a.delinquent)
        metrics.set("solana_active_validators", {"status": "current"}, len(snapshot.vote_accounts) - delinquent)
        metrics.set("solana_active_validators", {"status": "delinquent"}, delinquent)

        versions: Dict[str, int] = defaultdict(int)
        for node in snapshot.cluster_nodes:
            versions[node.version or "unknown"] += 1
        for version, count in versions.items():
            metrics.set("solana_node_versions", {"version": version}, count)

    def _read_state(self, cache: CacheStore, identity: str):
        """
        Read cached state with one retry

        Returns:
            (state or None, ok); ok is False when the read failed twice
        """
        for attempt in (1, 2):
            try:
                return cache.get_validator_state(identity), True
            except SchemaMismatch as e:
                # Fail closed for this key: no prior state is trusted, fresh state overwrites it
                logger.warning(f"Discarding unreadable cache state of {identity}: {e}")
                return None, True
            except CacheStoreError as e:
                logger.warning(f"Cache read for {identity} failed (attempt {attempt}/2): {e}")
        return None, False

    def _derive_validator(
        self,
        snapshot: Snapshot,
        account: VoteAccountInfo,
        cache: CacheStore,
        result: DerivationResult
    ):
        identity = account.node_pubkey
        cached, ok = self._read_state(cache, identity)
        if not ok:
            result.skipped_validators.add(identity)
            return

        labels = {"identity": identity, "vote_account": account.vote_pubkey}
        metrics = result.metrics

        metrics.set("solana_validator_activated_stake", labels, account.activated_stake)
        metrics.set("solana_validator_commission", labels, account.commission)
        metrics.set("solana_validator_last_vote", labels, account.last_vote)
        metrics.set("solana_validator_root_slot", labels, account.root_slot)
        metrics.set("solana_validator_credits", labels, total_credits(account))
        metrics.set("solana_validator_delinquent", labels, 1 if account.delinquent else 0)

        credits = derive_credits(epoch_credits(account, snapshot.epoch), snapshot.epoch, cached)
        metrics.set("solana_validator_epoch_credits", labels, credits.epoch_credits)
        if credits.delta is not None:
            metrics.set("solana_validator_credits_delta", labels, credits.delta)

        # Skip rate: the cached accumulator only counts if it belongs to this epoch
        base = credits.state if credits.state is not None else cached
        leader_slots, produced = snapshot.block_production.get(identity, (0, 0))
        if base is not None and base.last_epoch == snapshot.epoch:
            leader_slots = max(leader_slots, base.leader_slots)
            produced = max(produced, base.blocks_produced)

        if self.skipped_slots_enabled:
            metrics.set("solana_validator_leader_slots", labels, leader_slots)
            metrics.set("solana_validator_blocks_produced", labels, produced)
            if leader_slots > 0:
                metrics.set("solana_validator_skip_rate", labels, 1.0 - min(produced, leader_slots) / leader_slots)

            scheduled = snapshot.leader_schedule.get(identity)
            if scheduled is not None:
                metrics.set("solana_validator_leader_slots_scheduled", labels, scheduled)

        stalled, root_changed_slot = self._stall_status(snapshot, account, cached, credits.state is None)
        metrics.set("solana_validator_stalled", labels, 1 if stalled else 0)

        if credits.state is None:
            # Untrustworthy snapshot for this validator: keep the cache as it is
            return

        result.pending_writes[identity] = replace(
            credits.state,
            last_root_slot=account.root_slot,
            root_changed_slot=root_changed_slot,
            blocks_produced=produced,
            leader_slots=leader_slots,
            updated_at=self.clock()
        )

    def _stall_status(
        self,
        snapshot: Snapshot,
        account: VoteAccountInfo,
        cached: Optional[CachedValidatorState],
        untrusted: bool
    ) -> Tuple[bool, int]:
        """
        Returns:
            (stalled, root_changed_slot to persist)
        """
        current_slot = snapshot.current_slot
        if cached is None or untrusted:
            return False, current_slot

        if account.root_slot != cached.last_root_slot:
            return False, current_slot

        if not cached.root_changed_slot:
            # Unknown since when the root has been stuck: start counting now
            return False, current_slot

        stuck_for = current_slot - cached.root_changed_slot
        stalled = stuck_for > self.stall_slot_threshold
        if stalled:
            logger.info(
                f"Validator {account.node_pubkey} root slot stuck at {account.root_slot} "
                f"for {stuck_for} slots"
            )
        return stalled, cached.root_changed_slot

    async def _derive_rewards(
        self,
        snapshot: Snapshot,
        cache: CacheStore,
        result: DerivationResult,
        budget: Optional[float]
    ):
        """Voting rewards (post balance per vote account) paid at the start of the epoch"""
        epoch = snapshot.epoch
        try:
            rewards, fetched = await asyncio.wait_for(
                self.rewards_tracker.epoch_rewards(snapshot.epoch_info, cache),
                timeout=budget
            )
        except asyncio.TimeoutError:
            logger.warning(f"Rewards of epoch {epoch} not fetched within {budget:.1f}s, omitting")
            return
        except (RPCError, RewardsUnavailable) as e:
            logger.warning(f"Rewards of epoch {epoch} unavailable: {e}")
            return

        if rewards is None:
            return
        if fetched:
            result.pending_rewards[epoch] = rewards

        for reward in rewards:
            if self.vote_account_whitelist and reward.vote_account not in self.vote_account_whitelist:
                continue
            result.metrics.set("solana_validator_rewards", {"vote_account": reward.vote_account}, reward.post_balance)

    async def _derive_geography(self, snapshot: Snapshot, result: DerivationResult, budget: Optional[float]):
        """
        Resolve gossip IPs and aggregate node counts and stake per country/city

        Each distinct IP is resolved once. Lookups still running when the
        budget runs out are cancelled; their nodes fall back to a stale cache
        entry or count as unresolved. New locations are staged in
        result.pending_geo_writes.
        """
        stake: Dict[str, int] = defaultdict(int)
        for account in snapshot.vote_accounts:
            stake[account.node_pubkey] += account.activated_stake

        allowed = node_pubkeys(self.vote_account_whitelist, snapshot.vote_accounts)
        nodes_by_ip: Dict[str, List[ClusterNodeInfo]] = defaultdict(list)
        for node in snapshot.cluster_nodes:
            if node.gossip_ip and (not self.vote_account_whitelist or node.pubkey in allowed):
                nodes_by_ip[node.gossip_ip].append(node)

        semaphore = asyncio.Semaphore(self.geo_concurrency)

        async def _locate(ip: str) -> Location:
            async with semaphore:
                return await self.geo_resolver.resolve(ip, staged=result.pending_geo_writes)

        tasks = {asyncio.ensure_future(_locate(ip)): ip for ip in nodes_by_ip}
        done: Set[asyncio.Future] = set()
        try:
            if tasks:
                done, _pending = await asyncio.wait(set(tasks), timeout=budget)
        finally:
            stragglers = [task for task in tasks if task not in done]
            for task in stragglers:
                task.cancel()
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)

        locations: Dict[str, Location] = {}
        timed_out = 0
        for task, ip in tasks.items():
            if task in done:
                try:
                    locations[ip] = task.result()
                except ResolutionError as e:
                    logger.warning(f"No location for {len(nodes_by_ip[ip])} node(s) at {e}")
                continue
            timed_out += 1
            stale = self.geo_resolver.fallback(ip)
            if stale is not None:
                locations[ip] = stale

        if timed_out:
            self.geo_resolver.record_timeouts(timed_out)
            logger.warning(f"{timed_out}/{len(tasks)} geolocation lookups cancelled after {budget:.1f}s")

        failures = 0
        nodes_by_country: Dict[str, int] = defaultdict(int)
        stake_by_country: Dict[str, int] = defaultdict(int)
        nodes_by_city: Dict[Tuple[str, str], int] = defaultdict(int)
        stake_by_city: Dict[Tuple[str, str], int] = defaultdict(int)
        metrics = result.metrics

        for ip, nodes in nodes_by_ip.items():
            location = locations.get(ip)
            if location is None:
                failures += len(nodes)
                continue
            country = location.country_code or "unknown"
            city = location.city or "unknown"
            for node in nodes:
                nodes_by_country[country] += 1
                stake_by_country[country] += stake.get(node.pubkey, 0)
                nodes_by_city[(country, city)] += 1
                stake_by_city[(country, city)] += stake.get(node.pubkey, 0)
                metrics.set("solana_node_location", {
                    "identity": node.pubkey,
                    "country": country,
                    "city": city,
                    "latitude": f"{location.latitude:.4f}",
                    "longitude": f"{location.longitude:.4f}",
                }, 1)

        for country, count in nodes_by_country.items():
            metrics.set("solana_nodes_by_country", {"country": country}, count)
            metrics.set("solana_stake_by_country", {"country": country}, stake_by_country[country])
        for (country, city), count in nodes_by_city.items():
            metrics.set("solana_nodes_by_city", {"country": country, "city": city}, count)
            metrics.set("solana_stake_by_city", {"country": country, "city": city}, stake_by_city[(country, city)])

        if failures:
            total = sum(len(nodes) for nodes in nodes_by_ip.values())
            logger.warning(f"Partial geography: {failures}/{total} nodes unresolved")
        result.geo_failures = failures

    @staticmethod
    def _put_with_retry(write: Callable[[], None], what: str) -> bool:
        for attempt in (1, 2):
            try:
                write()
                return True
            except CacheStoreError as e:
                logger.warning(f"Cache write for {what} failed (attempt {attempt}/2): {e}")
        return False

    def commit(self, cache: CacheStore, result: DerivationResult) -> Set[str]:
        """
        Persist everything staged during derivation, one atomic put per key, one retry each

        Validator states come first. Geo entries and epoch rewards that cannot
        be written are only logged: they are looked up again next cycle.

        Returns:
            Identities whose state could not be written
        """
        failed: Set[str] = set()
        for identity, state in result.pending_writes.items():
            if not self._put_with_retry(lambda: cache.put_validator_state(identity, state), identity):
                failed.add(identity)

        for ip, entry in result.pending_geo_writes.items():
            self._put_with_retry(lambda: cache.put_geo_entry(ip, entry), f"location of {ip}")

        for epoch, rewards in result.pending_rewards.items():
            self._put_with_retry(lambda: cache.put_epoch_rewards(epoch, rewards), f"rewards of epoch {epoch}")

        return failed
