#!/usr/bin/env python3
"""
Cycle Scheduler / Driver

Runs Snapshot Collector -> Metric Deriver -> publication on a fixed
interval:

    Idle -> Collecting -> Deriving -> Publishing -> Idle

A cycle failing while collecting or deriving goes straight back to Idle:
no cache writes, no publication, the exposition endpoint keeps serving
the previous set. A tick that fires while a cycle is still running is
skipped, never queued.
"""

import asyncio
import enum
import logging
import time
from typing import Callable, Optional, Set

from exporters.metrics_exporter import MetricsPublisher, MonitorHealthMetrics
from monitor.metric_deriver import MetricDeriver
from monitor.snapshot_collector import CollectionError, CollectionTimeout, SnapshotCollector
from storage.cache_store import CacheStore


logger = logging.getLogger(__name__)


# Share of the time left after collection that rewards and geography may use
ENRICHMENT_SHARE = 0.8


class CycleState(enum.Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    DERIVING = "deriving"
    PUBLISHING = "publishing"


class CycleResult:
    """Cycle outcome constants (also the `result` label of cycles_total)"""
    SUCCESS = "success"
    COLLECTION_FAILED = "collection_failed"
    DERIVATION_FAILED = "derivation_failed"
    TIMEOUT = "timeout"


class CycleDriver:
    """
    Drives polling cycles, one at a time

    Usage:
        driver = CycleDriver(collector, deriver, cache, publisher, health,
                             poll_interval=30, cycle_timeout=25)
        await driver.run(shutdown_event)
    """

    def __init__(
        self,
        collector: SnapshotCollector,
        deriver: MetricDeriver,
        cache: CacheStore,
        publisher: MetricsPublisher,
        health: Optional[MonitorHealthMetrics] = None,
        poll_interval: float = 30.0,
        cycle_timeout: float = 25.0,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize driver

        Args:
            collector: Snapshot collector
            deriver: Metric deriver
            cache: Cache store (written only by this driver, one cycle at a time)
            publisher: Holder of the published metric set
            health: Optional health metrics to update
            poll_interval: Seconds between ticks
            cycle_timeout: Deadline for collection + derivation of one cycle
            clock: Wall-clock time source
        """
        self.collector = collector
        self.deriver = deriver
        self.cache = cache
        self.publisher = publisher
        self.health = health
        self.poll_interval = poll_interval
        self.cycle_timeout = cycle_timeout
        self.clock = clock

        self._state = CycleState.IDLE
        self._cycle_task: Optional[asyncio.Task] = None
        self._cycles_started = 0
        self._cycles_skipped = 0
        self._cycles_since_success = 0
        self._last_result: Optional[str] = None

        # Validators whose cache entry failed last cycle, retried on the next one
        self.flagged_validators: Set[str] = set()

        logger.info(
            f"CycleDriver initialized: poll_interval={poll_interval}s, cycle_timeout={cycle_timeout}s"
        )

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def cycles_skipped(self) -> int:
        return self._cycles_skipped

    @property
    def cycles_started(self) -> int:
        return self._cycles_started

    @property
    def cycles_since_success(self) -> int:
        return self._cycles_since_success

    @property
    def last_result(self) -> Optional[str]:
        return self._last_result

    @property
    def cycle_running(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    def _set_state(self, state: CycleState):
        if state is not self._state:
            logger.debug(f"Cycle state: {self._state.value} → {state.value}")
        self._state = state
        if self.health:
            self.health.set_state(state.value)

    def tick(self) -> bool:
        """
        Start a cycle unless one is already running

        Returns:
            True if a cycle was started, False if the tick was skipped
        """
        if self.cycle_running:
            self._cycles_skipped += 1
            if self.health:
                self.health.cycles_skipped.inc()
            logger.warning(
                f"Previous cycle still {self._state.value}, skipping tick "
                f"({self._cycles_skipped} skipped so far)"
            )
            return False

        self._cycle_task = asyncio.create_task(self.run_cycle(), name="monitor-cycle")
        return True

    async def run_cycle(self) -> str:
        """
        Run one complete cycle

        Returns:
            One of the CycleResult constants
        """
        self._cycles_started += 1
        cycle = self._cycles_started
        started = time.monotonic()

        if self.flagged_validators:
            logger.info(f"Cycle {cycle}: retrying {len(self.flagged_validators)} validators flagged last cycle")

        try:
            self._set_state(CycleState.COLLECTING)
            snapshot = await self.collector.collect(timeout=self.cycle_timeout)

            remaining = self.cycle_timeout - (time.monotonic() - started)
            if remaining <= 0:
                raise asyncio.TimeoutError()

            self._set_state(CycleState.DERIVING)
            # Enrichments stop early enough to leave room for the core metrics and the commit
            derivation = await asyncio.wait_for(
                self.deriver.derive(snapshot, self.cache, budget=remaining * ENRICHMENT_SHARE),
                timeout=remaining
            )

            self._set_state(CycleState.PUBLISHING)
            write_failures = self.deriver.commit(self.cache, derivation)
            for identity in write_failures:
                derivation.metrics.drop_label_value("identity", identity, prefix="solana_validator_")
            self.flagged_validators = write_failures | derivation.skipped_validators
            if self.flagged_validators:
                logger.warning(
                    f"Cycle {cycle}: metrics of {len(self.flagged_validators)} validators skipped "
                    f"after cache errors, flagged for next cycle"
                )

            self.publisher.publish(derivation.metrics)
            result = CycleResult.SUCCESS
            logger.info(
                f"Cycle {cycle} published {len(derivation.metrics)} samples for epoch {snapshot.epoch} "
                f"slot {snapshot.current_slot} in {time.monotonic() - started:.2f}s"
            )

        except (CollectionTimeout, asyncio.TimeoutError):
            result = CycleResult.TIMEOUT
            logger.error(f"Cycle {cycle} exceeded {self.cycle_timeout}s, abandoned")
        except CollectionError as e:
            result = CycleResult.COLLECTION_FAILED
            logger.error(f"Cycle {cycle} collection failed: {e}")
        except Exception as e:
            result = CycleResult.DERIVATION_FAILED
            logger.error(f"Cycle {cycle} derivation failed: {e}", exc_info=True)
        finally:
            self._set_state(CycleState.IDLE)

        self._finish(result, time.monotonic() - started)
        return result

    def _finish(self, result: str, duration: float):
        self._last_result = result
        if result == CycleResult.SUCCESS:
            self._cycles_since_success = 0
        else:
            self._cycles_since_success += 1

        if self.health:
            self.health.cycles.labels(result=result).inc()
            self.health.cycle_duration.set(duration)
            self.health.cycles_since_success.set(self._cycles_since_success)
            self.health.published_metrics.set(len(self.publisher.current()))
            self.health.validator_cache_errors.set(len(self.flagged_validators))
            if result == CycleResult.SUCCESS:
                self.health.last_success_timestamp.set(self.clock())
            geo_resolver = getattr(self.deriver, 'geo_resolver', None)
            if geo_resolver is not None:
                self.health.record_geo_stats(geo_resolver.stats)

    async def run(self, shutdown_event: asyncio.Event):
        """
        Tick every poll_interval until shutdown_event is set

        The first cycle starts immediately.
        """
        logger.info(f"Cycle driver started (interval: {self.poll_interval}s)")
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        try:
            while not shutdown_event.is_set():
                self.tick()
                next_tick += self.poll_interval
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=max(next_tick - loop.time(), 0))
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def stop(self):
        """Abandon the running cycle, if any"""
        if self.cycle_running:
            logger.info("Cancelling running cycle...")
            self._cycle_task.cancel()
            try:
                await self._cycle_task
            except asyncio.CancelledError:
                pass
        self._set_state(CycleState.IDLE)
        logger.info("Cycle driver stopped")
