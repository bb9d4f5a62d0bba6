#!/usr/bin/env python3
"""
MaxMind GeoIP2 Web Service Client

Looks up the location of an IP address through the GeoIP2 City web service.
Each lookup is billed, so callers are expected to cache results.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx


logger = logging.getLogger(__name__)


MAXMIND_CITY_URL = "https://geoip.maxmind.com/geoip/v2.1/city"


class GeolocationError(Exception):
    """Lookup failed (network, credentials, quota, unknown address)"""


@dataclass(frozen=True)
class Location:
    country_code: str
    city: str
    latitude: float
    longitude: float


class MaxMindGeolocationClient:
    """
    Async client for the MaxMind GeoIP2 City web service

    Usage:
        client = MaxMindGeolocationClient("account_id", "license_key")
        location = await client.lookup("1.2.3.4")
        await client.close()
    """

    def __init__(
        self,
        username: str,
        password: str,
        url: str = MAXMIND_CITY_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize MaxMind client

        Args:
            username: MaxMind account ID
            password: MaxMind license key
            url: City endpoint base URL
            timeout: HTTP request timeout in seconds (default: 10.0)
            transport: Optional httpx transport (used by tests)
        """
        self.url = url.rstrip('/')
        self.timeout = timeout
        self._auth = httpx.BasicAuth(username, password)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(f"MaxMind geolocation client initialized: url={self.url}")

    async def close(self):
        """Close the HTTP client session"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def lookup(self, ip: str) -> Location:
        """
        Resolve an IP address to a location

        Args:
            ip: IPv4 or IPv6 address

        Returns:
            Location of the address

        Raises:
            GeolocationError: on any failure
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, auth=self._auth, transport=self._transport)

        try:
            response = await self._client.get(f"{self.url}/{ip}")
        except httpx.HTTPError as e:
            raise GeolocationError(f"lookup of {ip} failed: {e}") from e

        if response.status_code != 200:
            raise GeolocationError(
                f"lookup of {ip} failed: HTTP {response.status_code} {response.text[:200]}"
            )

        try:
            data = response.json()
            location = data.get('location') or {}
            return Location(
                country_code=(data.get('country') or {}).get('iso_code') or "",
                city=((data.get('city') or {}).get('names') or {}).get('en') or "",
                latitude=float(location.get('latitude') or 0.0),
                longitude=float(location.get('longitude') or 0.0)
            )
        except (ValueError, AttributeError, TypeError) as e:
            raise GeolocationError(f"lookup of {ip} returned an unexpected payload: {e}") from e
