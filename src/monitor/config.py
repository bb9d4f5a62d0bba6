#!/usr/bin/env python3
"""
Solana Monitor - Configuration

Configuration is read from environment variables (optionally seeded from
a .env file next to the project root).
"""

import logging
import os
from pathlib import Path
from typing import FrozenSet, Mapping, Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)


DEFAULT_CACHE_PATH = "~/.solana-monitor/cache"


class ConfigError(Exception):
    """A configuration value is missing or out of range"""


def load_env_file(env_path: Optional[Path] = None) -> bool:
    """
    Load a .env file into os.environ (existing variables win)

    Returns:
        True if a file was loaded
    """
    env_path = env_path or Path(__file__).parent.parent.parent / '.env'
    if env_path.exists():
        load_dotenv(env_path)
        logger.info(f"Loaded environment from {env_path}")
        return True
    return False


def _parse_whitelist(raw: str) -> FrozenSet[str]:
    return frozenset(item.strip() for item in raw.split(',') if item.strip())


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


class MonitorConfig:
    """Configuration loaded from environment variables"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        try:
            # Solana node
            self.rpc_url = env.get('SOLANA_RPC_URL', 'http://localhost:8899')

            # Metrics exposition
            self.listen_host = env.get('EXPORTER_HOST', '0.0.0.0')
            self.listen_port = int(env.get('EXPORTER_PORT', '9179'))

            # Persistent cache
            self.cache_path = os.path.expanduser(env.get('CACHE_PATH', DEFAULT_CACHE_PATH))

            # Cycle cadence and deadlines (seconds)
            self.poll_interval = float(env.get('POLL_INTERVAL', '30'))
            self.rpc_timeout = float(env.get('RPC_TIMEOUT', '10'))
            self.rpc_max_retries = int(env.get('RPC_MAX_RETRIES', '2'))
            self.rpc_retry_backoff = float(env.get('RPC_RETRY_BACKOFF', '0.5'))
            self.cycle_timeout = float(env.get('CYCLE_TIMEOUT', '25'))

            # Geolocation
            self.geo_cache_ttl = float(env.get('GEO_CACHE_TTL', str(30 * 24 * 3600)))
            self.geo_concurrency = int(env.get('GEO_CONCURRENCY', '8'))
            self.maxmind_username = env.get('MAXMIND_USERNAME') or None
            self.maxmind_password = env.get('MAXMIND_PASSWORD') or None

            # Derivation policy
            self.stall_slot_threshold = int(env.get('STALL_SLOT_THRESHOLD', '150'))
            self.vote_account_whitelist = _parse_whitelist(env.get('VOTE_ACCOUNT_WHITELIST', ''))

            # Optional metric groups
            self.rewards_enabled = _parse_bool('ENABLE_REWARDS', env.get('ENABLE_REWARDS', 'true'))
            self.skipped_slots_enabled = _parse_bool('ENABLE_SKIPPED_SLOTS', env.get('ENABLE_SKIPPED_SLOTS', 'true'))
        except ValueError as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        # Logging
        self.log_level = env.get('LOG_LEVEL', 'INFO').upper()

        self.validate()

    @property
    def geolocation_enabled(self) -> bool:
        return bool(self.maxmind_username and self.maxmind_password)

    def validate(self):
        """
        Raises:
            ConfigError: if any value is out of range
        """
        for name in ('poll_interval', 'rpc_timeout', 'cycle_timeout', 'geo_cache_ttl'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        if self.cycle_timeout > self.poll_interval:
            raise ConfigError(
                f"cycle_timeout ({self.cycle_timeout}s) must not exceed "
                f"poll_interval ({self.poll_interval}s)"
            )

        if self.rpc_max_retries < 0:
            raise ConfigError(f"rpc_max_retries must not be negative, got {self.rpc_max_retries}")

        if self.geo_concurrency < 1:
            raise ConfigError(f"geo_concurrency must be at least 1, got {self.geo_concurrency}")

        if self.stall_slot_threshold < 0:
            raise ConfigError(f"stall_slot_threshold must not be negative, got {self.stall_slot_threshold}")

        if not 0 < self.listen_port < 65536:
            raise ConfigError(f"listen_port out of range: {self.listen_port}")

        if self.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigError(f"Unknown log level: {self.log_level}")

        if bool(self.maxmind_username) != bool(self.maxmind_password):
            raise ConfigError("MAXMIND_USERNAME and MAXMIND_PASSWORD must be set together")

    def __repr__(self):
        return (
            f"MonitorConfig(\n"
            f"  rpc={self.rpc_url}\n"
            f"  listen={self.listen_host}:{self.listen_port}\n"
            f"  cache={self.cache_path}\n"
            f"  poll_interval={self.poll_interval}s cycle_timeout={self.cycle_timeout}s "
            f"rpc_timeout={self.rpc_timeout}s\n"
            f"  geo_cache_ttl={self.geo_cache_ttl}s "
            f"maxmind={'***' if self.geolocation_enabled else 'not set'}\n"
            f"  stall_slot_threshold={self.stall_slot_threshold}\n"
            f"  whitelist={len(self.vote_account_whitelist) or 'all'} vote accounts\n"
            f"  rewards={self.rewards_enabled} skipped_slots={self.skipped_slots_enabled}\n"
            f"  log_level={self.log_level}\n"
            f")"
        )
