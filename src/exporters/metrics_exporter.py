#!/usr/bin/env python3
"""
Metrics Exporter for Solana Monitor

Serves the last successfully derived metric set in Prometheus exposition
format on /metrics, together with the monitor's own health metrics.

The published set is an immutable DerivedMetricSet behind a single
reference: the driver replaces the reference after a successful cycle,
scrapes read whatever reference is current. A scrape therefore sees
either the old set or the new one, never a mix.
"""

import logging
import time
from typing import Callable, Dict, Iterable, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest
from prometheus_client.core import GaugeMetricFamily

from monitor.metric_deriver import DerivedMetricSet


logger = logging.getLogger(__name__)


# HELP text per derived metric family
METRIC_HELP: Dict[str, str] = {
    "solana_current_slot": "Current slot at the node's commitment",
    "solana_epoch": "Current epoch",
    "solana_epoch_slot_index": "Slot offset within the current epoch",
    "solana_epoch_slots": "Number of slots in the current epoch",
    "solana_block_height": "Current block height",
    "solana_transaction_count": "Total transactions processed by the cluster",
    "solana_active_validators": "Vote accounts by status (current/delinquent)",
    "solana_node_versions": "Cluster nodes per reported software version",
    "solana_validator_activated_stake": "Activated stake delegated to the vote account (lamports)",
    "solana_validator_commission": "Vote account commission (percent)",
    "solana_validator_last_vote": "Most recent slot voted on",
    "solana_validator_root_slot": "Current root slot of the vote account",
    "solana_validator_credits": "Cumulative vote credits",
    "solana_validator_epoch_credits": "Vote credits earned in the current epoch",
    "solana_validator_credits_delta": "Vote credits earned since the previous cycle",
    "solana_validator_delinquent": "1 if the node reports the vote account as delinquent",
    "solana_validator_stalled": "1 if the root slot has not advanced for longer than the stall threshold",
    "solana_validator_leader_slots": "Leader slots assigned so far in the current epoch",
    "solana_validator_blocks_produced": "Blocks produced so far in the current epoch",
    "solana_validator_skip_rate": "Fraction of leader slots so far in the current epoch without a block",
    "solana_validator_leader_slots_scheduled": "Leader slots scheduled for the whole current epoch",
    "solana_nodes_by_country": "Cluster nodes per country",
    "solana_stake_by_country": "Activated stake per country (lamports)",
    "solana_nodes_by_city": "Cluster nodes per city",
    "solana_stake_by_city": "Activated stake per city (lamports)",
    "solana_node_location": "Location of a cluster node (always 1, data is in labels)",
    "solana_validator_rewards": "Vote account balance after the voting reward of the current epoch (lamports)",
}

CYCLE_STATES = ("idle", "collecting", "deriving", "publishing")


class MetricsPublisher:
    """
    Holds the last published DerivedMetricSet

    Only the driver calls publish(); the exposition path only calls
    current(). Rebinding one attribute is atomic, so no lock is needed.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._published = DerivedMetricSet().freeze()
        self._published_at: Optional[float] = None
        self._publish_count = 0

    def publish(self, metrics: DerivedMetricSet):
        """Replace the published set with a new, frozen one"""
        metrics.freeze()
        self._published = metrics
        self._published_at = self.clock()
        self._publish_count += 1
        logger.debug(f"Published {len(metrics)} samples (publication #{self._publish_count})")

    def current(self) -> DerivedMetricSet:
        return self._published

    @property
    def published_at(self) -> Optional[float]:
        return self._published_at

    @property
    def publish_count(self) -> int:
        return self._publish_count

    def age(self) -> Optional[float]:
        """Seconds since the last publication (None if nothing was published yet)"""
        if self._published_at is None:
            return None
        return self.clock() - self._published_at


class PublishedMetricsCollector:
    """prometheus_client collector exposing the publisher's current set"""

    def __init__(self, publisher: MetricsPublisher):
        self.publisher = publisher

    def collect(self) -> Iterable[GaugeMetricFamily]:
        metrics = self.publisher.current()
        for name, samples in metrics.families().items():
            label_names = sorted(samples[0][0].keys())
            family = GaugeMetricFamily(name, METRIC_HELP.get(name, name), labels=label_names)
            for labels, value in samples:
                if sorted(labels.keys()) != label_names:
                    logger.warning(f"Dropping sample of {name} with inconsistent labels: {labels}")
                    continue
                family.add_metric([labels[label] for label in label_names], value)
            yield family


class MonitorHealthMetrics:
    """
    The monitor's own health metrics, updated live by the driver

    These let operators detect a stuck collector: cycles_since_success
    keeps growing and last_success_timestamp stops moving while the
    published values stay frozen at the last good cycle.
    """

    def __init__(self, registry: CollectorRegistry):
        self.cycles = Counter(
            "solana_monitor_cycles_total",
            "Completed polling cycles by result",
            ["result"],
            registry=registry
        )
        self.cycles_skipped = Counter(
            "solana_monitor_cycles_skipped_total",
            "Ticks skipped because the previous cycle was still running",
            registry=registry
        )
        self.cycles_since_success = Gauge(
            "solana_monitor_cycles_since_success",
            "Cycles finished since the last successful one",
            registry=registry
        )
        self.last_success_timestamp = Gauge(
            "solana_monitor_last_success_timestamp_seconds",
            "Unix time of the last successful cycle",
            registry=registry
        )
        self.cycle_duration = Gauge(
            "solana_monitor_cycle_duration_seconds",
            "Duration of the last finished cycle",
            registry=registry
        )
        self.cycle_state = Gauge(
            "solana_monitor_cycle_state",
            "Current driver state (1 = current)",
            ["state"],
            registry=registry
        )
        self.published_metrics = Gauge(
            "solana_monitor_published_metrics",
            "Samples in the currently published metric set",
            registry=registry
        )
        self.geo_lookups = Counter(
            "solana_monitor_geo_lookups_total",
            "Geolocation resolutions by outcome",
            ["result"],
            registry=registry
        )
        self.validator_cache_errors = Gauge(
            "solana_monitor_validator_cache_errors",
            "Validators skipped in the last cycle because of cache read/write errors",
            registry=registry
        )
        self._geo_seen: Dict[str, int] = {}

        for result in ("success", "collection_failed", "derivation_failed", "timeout"):
            self.cycles.labels(result=result)
        self.set_state("idle")

    def set_state(self, state: str):
        for name in CYCLE_STATES:
            self.cycle_state.labels(state=name).set(1 if name == state else 0)

    def record_geo_stats(self, stats: Dict[str, int]):
        """Advance the lookup counters to the resolver's running totals"""
        for result, count in stats.items():
            delta = count - self._geo_seen.get(result, 0)
            if delta > 0:
                self.geo_lookups.labels(result=result).inc(delta)
            self._geo_seen[result] = count


def build_registry(publisher: MetricsPublisher):
    """
    Create the registry served on /metrics

    Returns:
        (registry, health metrics)
    """
    registry = CollectorRegistry()
    registry.register(PublishedMetricsCollector(publisher))
    health = MonitorHealthMetrics(registry)
    return registry, health


async def metrics_handler(request):
    """Prometheus scrape endpoint"""
    registry = request.app['registry']
    return web.Response(body=generate_latest(registry), headers={"Content-Type": CONTENT_TYPE_LATEST})


async def health_check_handler(request):
    """
    Health endpoint

    Returns:
        200 OK if a cycle succeeded within max_age seconds
        503 Service Unavailable if nothing was published yet or the last publication is too old
    """
    publisher: MetricsPublisher = request.app['publisher']
    max_age: float = request.app['max_age']
    age = publisher.age()

    if age is None:
        return web.Response(
            text="STARTING\nNo successful cycle yet\n",
            status=503,
            content_type='text/plain'
        )
    if age > max_age:
        return web.Response(
            text=f"STALE\nLast successful cycle {age:.0f}s ago\n",
            status=503,
            content_type='text/plain'
        )
    return web.Response(
        text=f"OK\nLast successful cycle {age:.0f}s ago\n",
        status=200,
        content_type='text/plain'
    )


def create_app(registry: CollectorRegistry, publisher: MetricsPublisher, max_age: float) -> web.Application:
    app = web.Application()
    app['registry'] = registry
    app['publisher'] = publisher
    app['max_age'] = max_age
    app.router.add_get('/metrics', metrics_handler)
    app.router.add_get('/health', health_check_handler)
    return app


async def start_metrics_server(
    registry: CollectorRegistry,
    publisher: MetricsPublisher,
    host: str = '0.0.0.0',
    port: int = 9179,
    max_age: float = 90.0
):
    """
    Start the HTTP exposition server

    Args:
        registry: Registry to expose on /metrics
        publisher: Publisher consulted by /health
        host: Listen address
        port: Listen port
        max_age: Publication age in seconds after which /health reports STALE

    Returns:
        web.AppRunner instance
    """
    runner = web.AppRunner(create_app(registry, publisher, max_age))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"✓ Metrics server started on http://{host}:{port}/metrics")
    return runner
