import asyncio
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .config import DAY_MS, HOUR_MS, Settings
from .logging_config import get_logger
from .metrics import (
    CLEANUP_DELETED,
    DEVICES_KNOWN,
    MAINTENANCE_FAILURES,
    ROLLUP_SIGNALS,
    ROLLUPS_STORED,
    SIGNALS_STORED,
)
from .schemas import (
    AggregateExport,
    AggregationResult,
    CleanupResult,
    GrowthBucket,
    SignalSource,
    StoreStats,
    VacuumResult,
    now_ms,
)
from .store import SignalBackend

logger = get_logger("retention")


class RetentionService:
    """Chunked age-based deletion, rollups and storage maintenance for one backend.

    Every chunk is committed on its own, so stopping between chunks (max runtime
    reached or ``stop_event`` set) leaves a valid, partially cleaned store.
    """

    def __init__(self, backend: SignalBackend, settings: Settings, clock: Callable[[], int] = now_ms) -> None:
        self.backend = backend
        self.settings = settings
        self.clock = clock
        # One cleanup or aggregation pass at a time; a scheduled and a manual run never overlap.
        self._run_lock = threading.Lock()

    def _should_stop(self, started: float, stop_event: Optional[threading.Event]) -> bool:
        if stop_event is not None and stop_event.is_set():
            return True
        return (time.monotonic() - started) * 1000.0 >= self.settings.cleanup_max_runtime_ms

    def retention_passes(self) -> List[Tuple[int, Optional[List[str]]]]:
        """``(max_age_ms, sources)`` for each scheduled sweep; the last pass covers every other source."""
        per_source = {
            SignalSource.SWEEP_SENSOR.value: self.settings.sweep_retention_ms,
            SignalSource.DEVICE_SCAN.value: self.settings.device_scan_retention_ms,
        }
        others = [source.value for source in SignalSource if source.value not in per_source]
        passes: List[Tuple[int, Optional[List[str]]]] = [(age, [source]) for source, age in per_source.items()]
        passes.append((self.settings.retention_ms, others))
        return passes

    def run_cleanup(self, max_age_ms: Optional[int] = None, stop_event: Optional[threading.Event] = None) -> CleanupResult:
        """Delete expired signals, then devices left without signals.

        With no ``max_age_ms`` each source family ages out on its own retention;
        an explicit age applies to every source.
        """
        if max_age_ms is None:
            passes = self.retention_passes()
        else:
            passes = [(max_age_ms, None)]
        if any(age < 0 for age, _ in passes):
            raise ValueError("maxAge must not be negative")
        now = self.clock()
        result = CleanupResult()
        started = time.monotonic()

        with self._run_lock:
            for age, sources in passes:
                cutoff = now - age
                while True:
                    if self._should_stop(started, stop_event):
                        result.interrupted = True
                        break
                    deleted = self.backend.delete_signals_before(cutoff, self.settings.cleanup_chunk_size, sources)
                    if deleted == 0:
                        break
                    result.deleted_signals += deleted
                    result.chunks += 1
                    if deleted < self.settings.cleanup_chunk_size:
                        break
                if result.interrupted:
                    break
            result.deleted_devices, result.deleted_relationships = self.backend.delete_orphan_devices()

        result.duration_ms = int((time.monotonic() - started) * 1000)
        CLEANUP_DELETED.labels(kind="signals").inc(result.deleted_signals)
        CLEANUP_DELETED.labels(kind="devices").inc(result.deleted_devices)
        CLEANUP_DELETED.labels(kind="relationships").inc(result.deleted_relationships)
        max_ages = {",".join(sources) if sources else "all": age for age, sources in passes}
        logger.info("cleanup_finished", max_ages=max_ages, **result.model_dump())
        return result

    def run_aggregation(self, stop_event: Optional[threading.Event] = None) -> AggregationResult:
        now = self.clock()
        cutoff = now - self.settings.aggregate_after_ms
        result = AggregationResult()
        started = time.monotonic()
        touched = 0

        with self._run_lock:
            while True:
                if self._should_stop(started, stop_event):
                    result.interrupted = True
                    break
                signals, rollups = self.backend.rollup_chunk(
                    cutoff,
                    self.settings.cleanup_chunk_size,
                    self.settings.aggregate_bucket_ms,
                    self.settings.aggregate_delete_originals,
                    now,
                )
                if signals == 0:
                    break
                result.rolled_up_signals += signals
                touched += rollups
                result.chunks += 1
                if signals < self.settings.cleanup_chunk_size:
                    break
            if self.settings.aggregate_delete_originals:
                result.deleted_devices, _ = self.backend.delete_orphan_devices()

        # Rollup keys touched by several chunks are counted once per chunk.
        result.rollups_touched = touched
        result.duration_ms = int((time.monotonic() - started) * 1000)
        ROLLUP_SIGNALS.inc(result.rolled_up_signals)
        logger.info("aggregation_finished", cutoff=cutoff, **result.model_dump())
        return result

    def export_aggregated_data(self, start_time: int, end_time: int) -> AggregateExport:
        """Hourly totals, per-device days and heatmap cells whose bucket starts in the window."""
        if start_time > end_time:
            raise ValueError("startTime must not be after endTime")
        return AggregateExport(
            hourly_stats=self.backend.hourly_stats_between(start_time, end_time),
            daily_devices=self.backend.device_days_between(start_time, end_time),
            spatial_data=self.backend.rollups_between(start_time, end_time),
        )

    def export_recent_rollups(self, days: int) -> AggregateExport:
        now = self.clock()
        return self.export_aggregated_data(now - days * DAY_MS, now)

    def cleanup_aggregated_data(self, days_to_keep: Optional[int] = None) -> int:
        days_to_keep = self.settings.rollup_retention_days if days_to_keep is None else days_to_keep
        if days_to_keep < 0:
            raise ValueError("daysToKeep must not be negative")
        deleted = self.backend.delete_rollups_before(self.clock() - days_to_keep * DAY_MS)
        CLEANUP_DELETED.labels(kind="rollups").inc(deleted)
        logger.info("rollup_cleanup_finished", days_to_keep=days_to_keep, deleted=deleted)
        return deleted

    def get_stats(self) -> StoreStats:
        stats = self.backend.stats()
        SIGNALS_STORED.set(stats.signal_count)
        DEVICES_KNOWN.set(stats.device_count)
        ROLLUPS_STORED.set(stats.rollup_count)
        return stats

    def get_growth_trends(self, hours: int = 24) -> List[GrowthBucket]:
        if hours < 1:
            raise ValueError("hours must be at least 1")
        return self.backend.growth_trends(self.clock() - hours * HOUR_MS, HOUR_MS)

    def vacuum(self) -> VacuumResult:
        return self.backend.vacuum()

    def analyze(self) -> None:
        self.backend.analyze()

    def health_report(self) -> Dict[str, Any]:
        return self.backend.health_report()

    def index_report(self) -> Dict[str, Any]:
        return self.backend.index_report()

    def optimize(self) -> Dict[str, Any]:
        """Analyze then vacuum, returning the before/after sizes and a fresh health report."""
        self.analyze()
        vacuum = self.vacuum()
        return {"vacuum": vacuum.model_dump(by_alias=True), "health": self.health_report()}


Runner = Callable[..., Awaitable[Any]]


async def periodic(name: str, interval_seconds: float, job: Callable[[], Any], runner: Runner) -> None:
    """Run ``job`` on ``runner`` every ``interval_seconds`` until cancelled.

    Failures are logged and counted; the next cycle retries.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await runner(job)
        except asyncio.CancelledError:
            raise
        except Exception:
            MAINTENANCE_FAILURES.labels(task=name).inc()
            logger.exception("maintenance_failed", task=name)
