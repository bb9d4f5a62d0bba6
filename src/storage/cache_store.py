#!/usr/bin/env python3
"""
Cache Store - Persistent LMDB-backed cache for Solana Monitor

Keeps the little state the monitor needs across restarts:
- validator:<identity>  per-validator credits/root/skip-rate state
- geo:<ip>              resolved gossip IP locations
- epoch_rewards:<epoch> voting rewards paid at the start of a finalized epoch

Each put is its own LMDB write transaction, so a crash never leaves a
half-written record. Values go through the versioned codecs in
storage.records.
"""

import logging
import os
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

import lmdb

from storage.records import (
    CachedValidatorState,
    CacheStoreError,
    GeoCacheEntry,
    SchemaMismatch,
    VoteReward,
    decode_epoch_rewards,
    decode_geo_entry,
    decode_validator_state,
    encode_epoch_rewards,
    encode_geo_entry,
    encode_validator_state,
)

logger = logging.getLogger(__name__)


VALIDATOR_PREFIX = "validator:"
GEO_PREFIX = "geo:"
REWARDS_PREFIX = "epoch_rewards:"

DB_NAME = b"solana_monitor"

# Initial and maximum LMDB map size; the map doubles on MapFullError
MAP_SIZE_INIT = 64 * 1024 * 1024
MAP_SIZE_MAX = 4 * 1024 * 1024 * 1024


def validator_key(identity: str) -> str:
    return f"{VALIDATOR_PREFIX}{identity}"


def geo_key(ip: str) -> str:
    return f"{GEO_PREFIX}{ip}"


def rewards_key(epoch: int) -> str:
    # zero-padded so that key order is epoch order
    return f"{REWARDS_PREFIX}{epoch:010d}"


class CacheStore:
    """
    Durable byte-string map with prefix scans, plus typed accessors

    Usage:
        store = CacheStore("/var/lib/solana-monitor/cache")
        store.open()

        store.put_validator_state("Ident1111", state)
        state = store.get_validator_state("Ident1111")

        store.close()
    """

    def __init__(
        self,
        path: str,
        map_size: int = MAP_SIZE_INIT,
        max_map_size: int = MAP_SIZE_MAX
    ):
        """
        Initialize cache store

        Args:
            path: Directory holding the LMDB environment (created if missing)
            map_size: Initial LMDB map size in bytes
            max_map_size: Upper bound for automatic map growth
        """
        self.path = Path(path).expanduser()
        self.map_size = map_size
        self.max_map_size = max_map_size

        self._env: Optional[lmdb.Environment] = None
        self._db = None

    def open(self):
        """Open (or create) the LMDB environment"""
        if self._env is not None:
            return

        if not self.path.exists():
            logger.warning(f"Cache not found at {self.path}, a new one will be created")

        try:
            os.makedirs(self.path, exist_ok=True)
            self._env = lmdb.open(
                str(self.path),
                map_size=self.map_size,
                max_dbs=4,
                subdir=True,
                create=True,
                lock=True
            )
            self._db = self._env.open_db(DB_NAME, create=True)
        except (OSError, lmdb.Error) as e:
            self._env = None
            raise CacheStoreError(f"could not open cache at {self.path}: {e}") from e

        logger.info(
            f"Cache store opened: path={self.path}, "
            f"validators={self.count(VALIDATOR_PREFIX)}, geo={self.count(GEO_PREFIX)}, "
            f"reward epochs={self.count(REWARDS_PREFIX)}"
        )

    def close(self):
        if self._env is not None:
            self._env.close()
            self._env = None
            self._db = None
            logger.info("Cache store closed")

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _require_env(self) -> lmdb.Environment:
        if self._env is None:
            raise CacheStoreError("cache store is not open")
        return self._env

    def _grow_map(self) -> int:
        env = self._require_env()
        current = int(env.info().get('map_size', 0) or 0)
        new_size = min(max(current * 2, self.map_size), self.max_map_size)
        if new_size <= current:
            raise CacheStoreError(f"cache map is full at its maximum size ({current} bytes)")
        env.set_mapsize(new_size)
        logger.info(f"Cache map grown: {current} -> {new_size} bytes")
        return new_size

    def _write(self, operation: Callable[[lmdb.Transaction], None]):
        env = self._require_env()
        try:
            with env.begin(db=self._db, write=True) as txn:
                operation(txn)
        except lmdb.MapFullError:
            self._grow_map()
            try:
                with env.begin(db=self._db, write=True) as txn:
                    operation(txn)
            except lmdb.Error as e:
                raise CacheStoreError(f"cache write failed after map growth: {e}") from e
        except lmdb.Error as e:
            raise CacheStoreError(f"cache write failed: {e}") from e

    # Raw byte-level access

    def get(self, key: str) -> Optional[bytes]:
        env = self._require_env()
        try:
            with env.begin(db=self._db, write=False) as txn:
                return txn.get(key.encode('utf-8'))
        except lmdb.Error as e:
            raise CacheStoreError(f"cache read of {key} failed: {e}") from e

    def put(self, key: str, value: bytes):
        self._write(lambda txn: txn.put(key.encode('utf-8'), value))

    def delete(self, key: str):
        self._write(lambda txn: txn.delete(key.encode('utf-8')))

    def scan(self, prefix: str) -> List[Tuple[str, bytes]]:
        """
        All (key, value) pairs whose key starts with prefix, in key order

        The result is materialized so no read transaction outlives the call.
        """
        env = self._require_env()
        raw_prefix = prefix.encode('utf-8')
        items = []
        try:
            with env.begin(db=self._db, write=False) as txn:
                with txn.cursor() as cursor:
                    if not cursor.set_range(raw_prefix):
                        return items
                    for key, value in cursor:
                        if not key.startswith(raw_prefix):
                            break
                        items.append((key.decode('utf-8'), value))
        except lmdb.Error as e:
            raise CacheStoreError(f"cache scan of {prefix!r} failed: {e}") from e
        return items

    def count(self, prefix: str) -> int:
        return len(self.scan(prefix))

    def prune(self, prefix: str, should_delete: Callable[[str, bytes], bool]) -> int:
        """
        Delete every record under prefix for which should_delete(key, value) is true

        Returns:
            Number of deleted records
        """
        doomed = [key for key, value in self.scan(prefix) if should_delete(key, value)]
        if not doomed:
            return 0

        def _delete_all(txn):
            for key in doomed:
                txn.delete(key.encode('utf-8'))

        self._write(_delete_all)
        logger.info(f"Pruned {len(doomed)} cache records under {prefix!r}")
        return len(doomed)

    # Validator state

    def get_validator_state(self, identity: str) -> Optional[CachedValidatorState]:
        """
        Raises:
            SchemaMismatch: the stored record cannot be decoded
            CacheStoreError: LMDB failure
        """
        key = validator_key(identity)
        value = self.get(key)
        if value is None:
            return None
        return decode_validator_state(key, value)

    def put_validator_state(self, identity: str, state: CachedValidatorState):
        self.put(validator_key(identity), encode_validator_state(state))

    def iter_validator_states(self) -> Iterator[Tuple[str, CachedValidatorState]]:
        """Yield every decodable validator record; undecodable ones are logged and skipped"""
        for key, value in self.scan(VALIDATOR_PREFIX):
            try:
                yield key[len(VALIDATOR_PREFIX):], decode_validator_state(key, value)
            except SchemaMismatch as e:
                logger.warning(f"Skipping unreadable cache record: {e}")

    def prune_validators(self, keep: Iterable[str]) -> int:
        """Delete cached state of every validator identity not in keep"""
        keep_keys = {validator_key(identity) for identity in keep}
        return self.prune(VALIDATOR_PREFIX, lambda key, _value: key not in keep_keys)

    # Geolocation entries

    def get_geo_entry(self, ip: str) -> Optional[GeoCacheEntry]:
        """
        Raises:
            SchemaMismatch: the stored record cannot be decoded
            CacheStoreError: LMDB failure
        """
        key = geo_key(ip)
        value = self.get(key)
        if value is None:
            return None
        return decode_geo_entry(key, value)

    def put_geo_entry(self, ip: str, entry: GeoCacheEntry):
        self.put(geo_key(ip), encode_geo_entry(entry))

    def prune_geo_entries(self, resolved_before: float) -> int:
        """Delete geo entries resolved before the given unix time (and unreadable ones)"""
        def _should_delete(key: str, value: bytes) -> bool:
            try:
                return decode_geo_entry(key, value).resolved_at < resolved_before
            except SchemaMismatch:
                return True

        return self.prune(GEO_PREFIX, _should_delete)

    def iter_geo_entries(self) -> Iterator[Tuple[str, GeoCacheEntry]]:
        for key, value in self.scan(GEO_PREFIX):
            try:
                yield key[len(GEO_PREFIX):], decode_geo_entry(key, value)
            except SchemaMismatch as e:
                logger.warning(f"Skipping unreadable cache record: {e}")

    # Epoch rewards

    def get_epoch_rewards(self, epoch: int) -> Optional[List[VoteReward]]:
        """
        Raises:
            SchemaMismatch: the stored record cannot be decoded
            CacheStoreError: LMDB failure
        """
        key = rewards_key(epoch)
        value = self.get(key)
        if value is None:
            return None
        return decode_epoch_rewards(key, value)

    def put_epoch_rewards(self, epoch: int, rewards: List[VoteReward]):
        self.put(rewards_key(epoch), encode_epoch_rewards(rewards))

    def prune_epoch_rewards(self, before_epoch: int) -> int:
        """Delete rewards records of epochs older than before_epoch"""
        cutoff = rewards_key(before_epoch)
        return self.prune(REWARDS_PREFIX, lambda key, _value: key < cutoff)
