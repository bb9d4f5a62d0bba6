#!/usr/bin/env python3
"""
Solana Monitor - Main

Async monitoring application that polls a Solana validator node over
JSON-RPC, derives validator health metrics against a persistent local
cache, and serves them for Prometheus to scrape.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from clients.geolocation_client import MaxMindGeolocationClient
from clients.solana_rpc_client import SolanaRPCClient
from exporters.metrics_exporter import MetricsPublisher, build_registry, start_metrics_server
from monitor.config import ConfigError, MonitorConfig, load_env_file
from monitor.geolocation_resolver import GeolocationResolver
from monitor.metric_deriver import MetricDeriver
from monitor.rewards_tracker import RewardsTracker
from monitor.scheduler import CycleDriver
from monitor.snapshot_collector import SnapshotCollector
from storage.cache_store import CacheStore
from storage.records import CacheStoreError


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


# Global shutdown flag
shutdown_event = asyncio.Event()


def signal_handler(signum, frame):
    """Handle shutdown signals (SIGINT, SIGTERM)"""
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_event.set()


async def run_monitor(config: MonitorConfig):
    """
    Main monitor loop

    Args:
        config: Monitor configuration
    """
    rpc_client = None
    geo_client = None
    cache = None
    metrics_server = None

    try:
        # Persistent cache (fail fast if it cannot be opened)
        logger.info("Opening cache store...")
        cache = CacheStore(config.cache_path)
        try:
            cache.open()
        except CacheStoreError as e:
            logger.error(f"Cache store unavailable: {e}")
            logger.error("Cannot continue without a cache. Please fix CACHE_PATH or permissions.")
            return

        # Solana RPC
        logger.info("Initializing Solana RPC client...")
        rpc_client = SolanaRPCClient(url=config.rpc_url, timeout=config.rpc_timeout)
        await rpc_client.start()

        # Geolocation (optional)
        geo_resolver = None
        if config.geolocation_enabled:
            geo_client = MaxMindGeolocationClient(config.maxmind_username, config.maxmind_password)
            geo_resolver = GeolocationResolver(geo_client, cache, ttl=config.geo_cache_ttl)
            logger.info("✓ Geolocation enabled (MaxMind)")
        else:
            logger.info("MaxMind credentials not set - geography metrics disabled")

        # Rewards (optional)
        rewards_tracker = None
        if config.rewards_enabled:
            rewards_tracker = RewardsTracker(
                rpc_client,
                max_retries=config.rpc_max_retries,
                retry_backoff=config.rpc_retry_backoff
            )
        else:
            logger.info("Rewards metrics disabled")
        if not config.skipped_slots_enabled:
            logger.info("Skipped slot metrics disabled")

        # Engine
        collector = SnapshotCollector(
            rpc_client,
            max_retries=config.rpc_max_retries,
            retry_backoff=config.rpc_retry_backoff,
            include_block_production=config.skipped_slots_enabled
        )
        deriver = MetricDeriver(
            geo_resolver=geo_resolver,
            stall_slot_threshold=config.stall_slot_threshold,
            vote_account_whitelist=config.vote_account_whitelist,
            geo_concurrency=config.geo_concurrency,
            rewards_tracker=rewards_tracker,
            skipped_slots_enabled=config.skipped_slots_enabled
        )

        # Exposition
        publisher = MetricsPublisher()
        registry, health = build_registry(publisher)
        metrics_server = await start_metrics_server(
            registry,
            publisher,
            host=config.listen_host,
            port=config.listen_port,
            max_age=config.poll_interval * 3
        )

        driver = CycleDriver(
            collector,
            deriver,
            cache,
            publisher,
            health=health,
            poll_interval=config.poll_interval,
            cycle_timeout=config.cycle_timeout
        )

        logger.info("=" * 70)
        logger.info("Solana Monitor monitoring started")
        logger.info("=" * 70)

        await driver.run(shutdown_event)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")

    except Exception as e:
        logger.error(f"Fatal error in monitor: {e}", exc_info=True)

    finally:
        # Graceful shutdown
        logger.info("Shutting down gracefully...")

        if metrics_server:
            try:
                logger.info("Stopping metrics server...")
                await metrics_server.cleanup()
            except Exception as e:
                logger.error(f"Error stopping metrics server: {e}")

        if geo_client:
            await geo_client.close()

        if rpc_client:
            await rpc_client.close()

        if cache:
            cache.close()

        logger.info("✓ Shutdown complete")


async def main():
    """Main entry point"""
    load_env_file()

    try:
        config = MonitorConfig()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    logging.getLogger().setLevel(getattr(logging, config.log_level))

    logger.info("=" * 70)
    logger.info("Solana Monitor - Validator Telemetry Exporter")
    logger.info("=" * 70)
    logger.info(f"Configuration:\n{config}")
    logger.info("=" * 70)

    # Set up signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await run_monitor(config)


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Exiting")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
