import asyncio

from aiohttp.test_utils import TestClient, TestServer

from conftest import FakeClock
from exporters.metrics_exporter import MetricsPublisher, build_registry, create_app
from monitor.metric_deriver import DerivedMetricSet

V1 = {"identity": "V1", "vote_account": "Vote1"}


def _metric_set(skip_rate=0.25):
    metrics = DerivedMetricSet()
    metrics.set("solana_epoch", None, 10)
    metrics.set("solana_validator_skip_rate", V1, skip_rate)
    return metrics


def _get(registry, publisher, path):
    async def scenario():
        app = create_app(registry, publisher, max_age=90)
        async with TestClient(TestServer(app)) as client:
            response = await client.get(path)
            return response.status, await response.text()
    return asyncio.run(scenario())


def test_scrape_serves_published_set_and_health_metrics():
    publisher = MetricsPublisher()
    registry, _health = build_registry(publisher)
    publisher.publish(_metric_set())

    status, body = _get(registry, publisher, "/metrics")

    assert status == 200
    assert 'solana_validator_skip_rate{identity="V1",vote_account="Vote1"} 0.25' in body
    assert "solana_epoch 10.0" in body
    assert 'solana_monitor_cycle_state{state="idle"} 1.0' in body


def test_publication_swaps_whole_set():
    publisher = MetricsPublisher()
    registry, _health = build_registry(publisher)
    first = _metric_set(0.25)
    publisher.publish(first)
    publisher.publish(_metric_set(0.5))

    assert first.frozen
    assert registry.get_sample_value("solana_validator_skip_rate", V1) == 0.5
    assert publisher.publish_count == 2


def test_nothing_published_yet():
    publisher = MetricsPublisher()
    registry, _health = build_registry(publisher)

    assert registry.get_sample_value("solana_epoch") is None
    status, body = _get(registry, publisher, "/health")
    assert status == 503
    assert body.startswith("STARTING")


def test_health_turns_stale():
    clock = FakeClock()
    publisher = MetricsPublisher(clock=clock)
    registry, _health = build_registry(publisher)
    publisher.publish(_metric_set())

    status, body = _get(registry, publisher, "/health")
    assert status == 200
    assert body.startswith("OK")

    clock.advance(120)
    status, body = _get(registry, publisher, "/health")
    assert status == 503
    assert body.startswith("STALE")


def test_geo_stats_are_exported_as_counters():
    publisher = MetricsPublisher()
    registry, health = build_registry(publisher)

    health.record_geo_stats({"cache_hit": 4, "lookup": 2, "stale_fallback": 0, "failed": 1})
    health.record_geo_stats({"cache_hit": 7, "lookup": 2, "stale_fallback": 0, "failed": 1})

    assert registry.get_sample_value("solana_monitor_geo_lookups_total", {"result": "cache_hit"}) == 7
    assert registry.get_sample_value("solana_monitor_geo_lookups_total", {"result": "lookup"}) == 2
    assert registry.get_sample_value("solana_monitor_geo_lookups_total", {"result": "failed"}) == 1


def test_state_gauge_is_one_hot():
    publisher = MetricsPublisher()
    registry, health = build_registry(publisher)

    health.set_state("deriving")

    assert registry.get_sample_value("solana_monitor_cycle_state", {"state": "deriving"}) == 1
    assert registry.get_sample_value("solana_monitor_cycle_state", {"state": "idle"}) == 0
