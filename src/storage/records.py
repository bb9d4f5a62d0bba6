#!/usr/bin/env python3
"""
Persisted Record Types and Codecs

Binary encodings for the records kept in the cache store. Every encoded
record starts with a one-byte schema version; the whole payload is
zlib-compressed before it reaches disk. Older versions are upgraded on
read, unknown or damaged records raise SchemaMismatch.
"""

import struct
import zlib
from dataclasses import dataclass, replace
from typing import List


class CacheStoreError(Exception):
    """The cache store could not complete an operation"""


class SchemaMismatch(CacheStoreError):
    """A persisted record cannot be decoded with any known schema"""

    def __init__(self, key: str, reason: str):
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


VALIDATOR_STATE_VERSION = 2
GEO_ENTRY_VERSION = 1
EPOCH_REWARDS_VERSION = 1

# version, last_epoch, last_credits, last_root_slot, blocks_produced, leader_slots, updated_at
_VALIDATOR_V1 = struct.Struct(">B5Qd")
# version, last_epoch, last_credits, last_root_slot, root_changed_slot, blocks_produced, leader_slots, updated_at
_VALIDATOR_V2 = struct.Struct(">B6Qd")

_VERSION = struct.Struct(">B")
_STR_LEN = struct.Struct(">H")
# latitude, longitude, resolved_at
_GEO_TAIL = struct.Struct(">3d")
_REWARD_COUNT = struct.Struct(">I")
# lamports, post_balance
_REWARD_TAIL = struct.Struct(">qQ")


@dataclass(frozen=True)
class CachedValidatorState:
    """
    What the monitor remembers about one validator between cycles

    last_epoch/last_credits: epoch and current-epoch credits seen last cycle
    last_root_slot: root slot seen last cycle
    root_changed_slot: current slot at which the root was last seen to move (0 = unknown)
    blocks_produced/leader_slots: skip-rate accumulator for last_epoch
    updated_at: unix time of the last write
    """
    last_epoch: int
    last_credits: int
    last_root_slot: int
    root_changed_slot: int = 0
    blocks_produced: int = 0
    leader_slots: int = 0
    updated_at: float = 0.0

    def reset_accumulator(self, epoch: int) -> 'CachedValidatorState':
        """Start a fresh epoch: credits and skip-rate counters go back to zero"""
        return replace(self, last_epoch=epoch, last_credits=0, blocks_produced=0, leader_slots=0)


@dataclass(frozen=True)
class GeoCacheEntry:
    country_code: str
    city: str
    latitude: float
    longitude: float
    resolved_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.resolved_at >= ttl


@dataclass(frozen=True)
class VoteReward:
    """
    Voting reward paid to one vote account at the start of an epoch

    post_balance is the vote account balance (lamports) after the payout.
    """
    vote_account: str
    lamports: int
    post_balance: int


def _decompress(key: str, value: bytes) -> bytes:
    try:
        payload = zlib.decompress(value)
    except zlib.error as e:
        raise SchemaMismatch(key, f"corrupt compressed record: {e}") from e
    if not payload:
        raise SchemaMismatch(key, "empty record")
    return payload


def encode_validator_state(state: CachedValidatorState) -> bytes:
    payload = _VALIDATOR_V2.pack(
        VALIDATOR_STATE_VERSION,
        state.last_epoch,
        state.last_credits,
        state.last_root_slot,
        state.root_changed_slot,
        state.blocks_produced,
        state.leader_slots,
        state.updated_at
    )
    return zlib.compress(payload)


def decode_validator_state(key: str, value: bytes) -> CachedValidatorState:
    """
    Decode a validator record, upgrading v1 records on the fly

    Raises:
        SchemaMismatch: unknown version, wrong length or corrupt data
    """
    payload = _decompress(key, value)
    version = payload[0]

    try:
        if version == 2:
            _, epoch, credits, root, root_changed, produced, slots, updated = _VALIDATOR_V2.unpack(payload)
            return CachedValidatorState(epoch, credits, root, root_changed, produced, slots, updated)
        if version == 1:
            _, epoch, credits, root, produced, slots, updated = _VALIDATOR_V1.unpack(payload)
            # v1 did not track when the root last moved
            return CachedValidatorState(epoch, credits, root, 0, produced, slots, updated)
    except struct.error as e:
        raise SchemaMismatch(key, f"validator record v{version} has wrong length {len(payload)}") from e

    raise SchemaMismatch(key, f"unknown validator record version {version}")


def _pack_str(value: str) -> bytes:
    raw = value.encode('utf-8')
    if len(raw) > 0xFFFF:
        raise ValueError(f"string too long to encode ({len(raw)} bytes)")
    return _STR_LEN.pack(len(raw)) + raw


def _unpack_str(payload: bytes, offset: int):
    (length,) = _STR_LEN.unpack_from(payload, offset)
    offset += _STR_LEN.size
    raw = payload[offset:offset + length]
    if len(raw) != length:
        raise struct.error("truncated string")
    return raw.decode('utf-8'), offset + length


def encode_geo_entry(entry: GeoCacheEntry) -> bytes:
    payload = (
        _VERSION.pack(GEO_ENTRY_VERSION)
        + _pack_str(entry.country_code)
        + _pack_str(entry.city)
        + _GEO_TAIL.pack(entry.latitude, entry.longitude, entry.resolved_at)
    )
    return zlib.compress(payload)


def decode_geo_entry(key: str, value: bytes) -> GeoCacheEntry:
    """
    Decode a geolocation record

    Raises:
        SchemaMismatch: unknown version, wrong length or corrupt data
    """
    payload = _decompress(key, value)
    version = payload[0]
    if version != GEO_ENTRY_VERSION:
        raise SchemaMismatch(key, f"unknown geo record version {version}")

    try:
        country, offset = _unpack_str(payload, _VERSION.size)
        city, offset = _unpack_str(payload, offset)
        latitude, longitude, resolved_at = _GEO_TAIL.unpack_from(payload, offset)
        trailing = len(payload) - offset - _GEO_TAIL.size
    except (struct.error, UnicodeDecodeError) as e:
        raise SchemaMismatch(key, f"malformed geo record: {e}") from e

    if trailing:
        raise SchemaMismatch(key, f"geo record has {trailing} trailing bytes")

    return GeoCacheEntry(country, city, latitude, longitude, resolved_at)


def encode_epoch_rewards(rewards: List[VoteReward]) -> bytes:
    parts = [_VERSION.pack(EPOCH_REWARDS_VERSION), _REWARD_COUNT.pack(len(rewards))]
    for reward in rewards:
        parts.append(_pack_str(reward.vote_account))
        parts.append(_REWARD_TAIL.pack(reward.lamports, reward.post_balance))
    return zlib.compress(b"".join(parts))


def decode_epoch_rewards(key: str, value: bytes) -> List[VoteReward]:
    """
    Decode the voting rewards of one finalized epoch

    Raises:
        SchemaMismatch: unknown version, wrong length or corrupt data
    """
    payload = _decompress(key, value)
    version = payload[0]
    if version != EPOCH_REWARDS_VERSION:
        raise SchemaMismatch(key, f"unknown rewards record version {version}")

    rewards = []
    try:
        (count,) = _REWARD_COUNT.unpack_from(payload, _VERSION.size)
        offset = _VERSION.size + _REWARD_COUNT.size
        for _ in range(count):
            vote_account, offset = _unpack_str(payload, offset)
            lamports, post_balance = _REWARD_TAIL.unpack_from(payload, offset)
            offset += _REWARD_TAIL.size
            rewards.append(VoteReward(vote_account, lamports, post_balance))
    except (struct.error, UnicodeDecodeError) as e:
        raise SchemaMismatch(key, f"malformed rewards record: {e}") from e

    if offset != len(payload):
        raise SchemaMismatch(key, f"rewards record has {len(payload) - offset} trailing bytes")

    return rewards
