#!/usr/bin/env python3
"""
Geolocation Resolver

Cache-first wrapper around the external IP geolocation lookup. Fresh
cache entries are returned without any external call; expired or missing
entries are re-resolved, and when the lookup fails a stale entry is still
preferred over no answer.

The resolver never writes to the cache itself. Fresh lookups are staged
in a caller-provided dict and persisted by the caller once its cycle
commits.
"""

import logging
import time
from typing import Callable, Dict, Optional

from clients.geolocation_client import GeolocationError, Location
from storage.cache_store import CacheStore
from storage.records import CacheStoreError, GeoCacheEntry


logger = logging.getLogger(__name__)


# Resolution outcomes counted in stats
GEO_OUTCOMES = ("cache_hit", "lookup", "stale_fallback", "failed", "timeout")


def _to_entry(location: Location, resolved_at: float) -> GeoCacheEntry:
    return GeoCacheEntry(
        country_code=location.country_code,
        city=location.city,
        latitude=location.latitude,
        longitude=location.longitude,
        resolved_at=resolved_at
    )


def _to_location(entry: GeoCacheEntry) -> Location:
    return Location(entry.country_code, entry.city, entry.latitude, entry.longitude)


class ResolutionError(Exception):
    """No location is available for an IP (lookup failed and nothing cached)"""

    def __init__(self, ip: str, reason: str):
        super().__init__(f"{ip}: {reason}")
        self.ip = ip
        self.reason = reason


class GeolocationResolver:
    """
    Resolve IP -> Location through the geo:* cache partition

    The lookup client only needs an async `lookup(ip) -> Location` method.
    """

    def __init__(
        self,
        lookup_client,
        cache: CacheStore,
        ttl: float,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize resolver

        Args:
            lookup_client: External lookup client (e.g. MaxMindGeolocationClient)
            cache: Cache store holding geo:* entries (read only)
            ttl: Seconds after which a cached entry is re-resolved
            clock: Time source for resolution timestamps
        """
        self.lookup_client = lookup_client
        self.cache = cache
        self.ttl = ttl
        self.clock = clock

        # Outcome counters, exported by the driver
        self.stats: Dict[str, int] = dict.fromkeys(GEO_OUTCOMES, 0)

    def _read_cached(self, ip: str):
        try:
            return self.cache.get_geo_entry(ip)
        except CacheStoreError as e:
            # Unreadable entry: treat as absent and let a fresh lookup overwrite it
            logger.warning(f"Ignoring unreadable geo cache entry for {ip}: {e}")
            return None

    async def resolve(self, ip: str, staged: Optional[Dict[str, GeoCacheEntry]] = None) -> Location:
        """
        Resolve one IP address

        Args:
            ip: IPv4 or IPv6 address
            staged: Entries looked up but not yet persisted; consulted before the
                cache and extended with this lookup's result (None = not kept)

        Returns:
            Location (fresh, freshly looked up, or stale fallback)

        Raises:
            ResolutionError: the lookup failed and no cached entry exists
        """
        now = self.clock()
        cached = staged.get(ip) if staged is not None else None
        if cached is None:
            cached = self._read_cached(ip)

        if cached is not None and not cached.is_expired(now, self.ttl):
            self.stats["cache_hit"] += 1
            return _to_location(cached)

        try:
            location = await self.lookup_client.lookup(ip)
        except GeolocationError as e:
            if cached is not None:
                self.stats["stale_fallback"] += 1
                logger.warning(
                    f"Geolocation lookup for {ip} failed, using cached entry "
                    f"from {now - cached.resolved_at:.0f}s ago: {e}"
                )
                return _to_location(cached)
            self.stats["failed"] += 1
            raise ResolutionError(ip, str(e)) from e

        self.stats["lookup"] += 1
        if staged is not None:
            staged[ip] = _to_entry(location, self.clock())

        logger.debug(f"Resolved {ip} -> {location.country_code}/{location.city}")
        return location

    def fallback(self, ip: str) -> Optional[Location]:
        """Cached location of ip regardless of age (None if nothing is cached)"""
        cached = self._read_cached(ip)
        if cached is None:
            return None
        return _to_location(cached)

    def record_timeouts(self, count: int):
        """Count lookups abandoned because their cycle ran out of time"""
        self.stats["timeout"] += count
