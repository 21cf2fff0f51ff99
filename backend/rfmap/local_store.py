"""In-process tier for single-node deployments (``STORAGE_MODE=local``).

Signals are kept in a dict plus a grid index (cell -> signal ids) using the
same ``GeoGrid`` as the durable tier, so a radius scan touches the same cells
either way. One store-wide lock covers commits and read snapshots.
"""

import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from . import rollups as rollup_math
from .config import DAY_MS
from .devices import band_key, fold_signal
from .geo import Cell, CellRange, GeoGrid, neighbourhood
from .logging_config import get_logger
from .notify import ChangeNotifier
from .schemas import (
    BoundingBox,
    Device,
    DeviceDailyStats,
    GrowthBucket,
    HourlyStats,
    Relationship,
    Rollup,
    Signal,
    SignalStatistics,
    StoreStats,
    TimeRange,
    VacuumResult,
)
from .store import SignalBackend

logger = get_logger("local_store")

# Rough per-record footprint used for the storage size estimate.
APPROX_SIGNAL_BYTES = 512
APPROX_DEVICE_BYTES = 384
APPROX_ROLLUP_BYTES = 96

EdgeKey = Tuple[str, str, str]


def _recency_key(signal: Signal) -> Tuple[int, str]:
    return -signal.timestamp, signal.id


class MemorySignalStore(SignalBackend):
    name = "local"

    def __init__(self, grid: GeoGrid, notifier: Optional[ChangeNotifier] = None) -> None:
        super().__init__(grid, notifier)
        self._lock = threading.RLock()
        self._signals: Dict[str, Signal] = {}
        self._cell_of: Dict[str, Cell] = {}
        self._cells: Dict[Cell, Set[str]] = {}
        self._rolled_up: Set[str] = set()
        self._devices: Dict[str, Device] = {}
        self._relationships: Dict[EdgeKey, Relationship] = {}
        self._rollups: Dict[rollup_math.RollupKey, Rollup] = {}
        self._hourly: Dict[int, HourlyStats] = {}
        self._device_days: Dict[rollup_math.DeviceDayKey, DeviceDailyStats] = {}
        logger.info("store_opened", backend=self.name, cell_meters=grid.cell_meters)

    def _live(self) -> Iterable[Signal]:
        return (signal for signal in self._signals.values() if signal.id not in self._rolled_up)

    def _drop_signal(self, signal_id: str) -> None:
        self._signals.pop(signal_id, None)
        self._rolled_up.discard(signal_id)
        cell = self._cell_of.pop(signal_id, None)
        if cell is not None:
            bucket = self._cells.get(cell)
            if bucket is not None:
                bucket.discard(signal_id)
                if not bucket:
                    del self._cells[cell]

    # Ingestion

    def _commit_batch(self, signals: List[Signal]) -> Set[str]:
        with self._lock:
            existing = {signal.id for signal in signals if signal.id in self._signals}
            aggregates: Dict[str, Device] = {}
            for signal in signals:
                if signal.id in existing:
                    continue
                cell = self.grid.cell_of(signal.lat, signal.lon)
                self._signals[signal.id] = signal
                self._cell_of[signal.id] = cell
                self._cells.setdefault(cell, set()).add(signal.id)
                device_id = signal.device_id
                if device_id:
                    current = aggregates.get(device_id) or self._devices.get(device_id)
                    aggregates[device_id] = fold_signal(current, signal)
            self._devices.update(aggregates)
        return existing

    # Reads

    def find_by_id(self, signal_id: str) -> Optional[Signal]:
        with self._lock:
            return self._signals.get(signal_id)

    def find_recent(self, limit: int) -> Iterator[Signal]:
        with self._lock:
            snapshot = sorted(self._live(), key=_recency_key)[:limit]
        yield from snapshot

    def scan_cells(self, cells: CellRange, start_time: int, end_time: int) -> Iterator[Signal]:
        with self._lock:
            ids = neighbourhood(self._cells, cells)
            snapshot = [
                self._signals[signal_id]
                for signal_id in ids
                if signal_id not in self._rolled_up and start_time <= self._signals[signal_id].timestamp <= end_time
            ]
        snapshot.sort(key=_recency_key)
        yield from snapshot

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._lock:
            return self._devices.get(device_id)

    def devices_in_bbox(self, bbox: BoundingBox) -> List[Device]:
        with self._lock:
            found = [
                device
                for device in self._devices.values()
                if bbox.contains(device.last_position.lat, device.last_position.lon)
            ]
        found.sort(key=lambda device: (-device.last_seen, device.device_id))
        return found

    def window_statistics(self, since: int, until: int, bbox: Optional[BoundingBox]) -> SignalStatistics:
        with self._lock:
            window = [
                signal
                for signal in self._live()
                if since <= signal.timestamp <= until and (bbox is None or bbox.contains(signal.lat, signal.lon))
            ]
        bands: Dict[str, int] = {}
        for signal in window:
            key = band_key(signal.frequency)
            bands[key] = bands.get(key, 0) + 1
        powers = [signal.power for signal in window]
        return SignalStatistics(
            total_signals=len(window),
            unique_devices=len({signal.device_id for signal in window if signal.device_id}),
            avg_power=sum(powers) / len(powers) if powers else 0.0,
            min_power=min(powers) if powers else 0.0,
            max_power=max(powers) if powers else 0.0,
            freq_bands=bands,
            time_range=TimeRange(start=since, end=until),
        )

    # Relationships

    def upsert_relationships(self, relationships: Iterable[Relationship]) -> int:
        written = 0
        with self._lock:
            for edge in relationships:
                key = (edge.device_a, edge.device_b, edge.kind)
                current = self._relationships.get(key)
                if current is not None:
                    edge = edge.model_copy(update={"last_observed": max(current.last_observed, edge.last_observed)})
                self._relationships[key] = edge
                written += 1
        return written

    def relationships(self, device_ids: Optional[Sequence[str]] = None, limit: int = 1000) -> List[Relationship]:
        wanted = set(device_ids or ())
        with self._lock:
            edges = [
                edge
                for edge in self._relationships.values()
                if not wanted or edge.device_a in wanted or edge.device_b in wanted
            ]
        edges.sort(key=lambda edge: -edge.last_observed)
        return edges[:limit]

    # Maintenance

    def delete_signals_before(self, cutoff: int, chunk_size: int, sources: Optional[Sequence[str]] = None) -> int:
        wanted = None if sources is None else set(sources)
        with self._lock:
            expired = sorted(
                (
                    signal
                    for signal in self._signals.values()
                    if signal.timestamp < cutoff and (wanted is None or signal.source.value in wanted)
                ),
                key=lambda signal: (signal.timestamp, signal.id),
            )[:chunk_size]
            for signal in expired:
                self._drop_signal(signal.id)
        return len(expired)

    def delete_orphan_devices(self) -> Tuple[int, int]:
        with self._lock:
            referenced = {signal.device_id for signal in self._signals.values() if signal.device_id}
            orphans = {device_id for device_id in self._devices if device_id not in referenced}
            for device_id in orphans:
                del self._devices[device_id]
            edges = [key for key in self._relationships if key[0] in orphans or key[1] in orphans]
            for key in edges:
                del self._relationships[key]
        return len(orphans), len(edges)

    def _merge_stats(self, batch: List[Signal], now: int) -> None:
        samples = [
            rollup_math.Sample(signal.timestamp, signal.lat, signal.lon, signal.power, signal.frequency, signal.device_id)
            for signal in batch
        ]
        for key, acc in rollup_math.accumulate_device_days(samples).items():
            self._device_days[key] = rollup_math.merge_device_day(self._device_days.get(key), key, acc, now)
        for hour_start, acc in rollup_math.accumulate_hourly(samples).items():
            merged = rollup_math.merge_hourly(self._hourly.get(hour_start), hour_start, acc, now)
            day = rollup_math.bucket_start(hour_start, DAY_MS)
            bit = rollup_math.hour_bit(hour_start)
            unique = sum(1 for (start, _), stats in self._device_days.items() if start == day and stats.hour_mask & bit)
            self._hourly[hour_start] = merged.model_copy(update={"unique_devices": unique})

    def rollup_chunk(self, cutoff: int, chunk_size: int, bucket_ms: int, delete_originals: bool, now: int) -> Tuple[int, int]:
        with self._lock:
            batch = sorted(
                (signal for signal in self._live() if signal.timestamp < cutoff),
                key=lambda signal: (signal.timestamp, signal.id),
            )[:chunk_size]
            if not batch:
                return 0, 0
            groups = rollup_math.accumulate(
                ((signal.timestamp, *self._cell_of[signal.id], signal.power) for signal in batch), bucket_ms
            )
            for key, acc in groups.items():
                current = self._rollups.get(key)
                existing = None
                if current is not None:
                    existing = (current.count, current.min_power, current.avg_power, current.max_power)
                count, min_power, avg_power, max_power = rollup_math.merge(existing, acc)
                self._rollups[key] = Rollup(
                    bucket_start=key[0],
                    grid_lat=key[1],
                    grid_lon=key[2],
                    count=count,
                    min_power=min_power,
                    avg_power=avg_power,
                    max_power=max_power,
                    created_at=current.created_at if current is not None else now,
                )
            self._merge_stats(batch, now)
            for signal in batch:
                if delete_originals:
                    self._drop_signal(signal.id)
                else:
                    self._rolled_up.add(signal.id)
        return len(batch), len(groups)

    def rollups_between(self, start_time: int, end_time: int) -> List[Rollup]:
        with self._lock:
            return [self._rollups[key] for key in sorted(self._rollups) if start_time <= key[0] <= end_time]

    def hourly_stats_between(self, start_time: int, end_time: int) -> List[HourlyStats]:
        with self._lock:
            return [self._hourly[hour] for hour in sorted(self._hourly) if start_time <= hour <= end_time]

    def device_days_between(self, start_time: int, end_time: int) -> List[DeviceDailyStats]:
        with self._lock:
            return [self._device_days[key] for key in sorted(self._device_days) if start_time <= key[0] <= end_time]

    def delete_rollups_before(self, cutoff: int) -> int:
        with self._lock:
            stale_cells = [key for key in self._rollups if key[0] < cutoff]
            stale_hours = [hour for hour in self._hourly if hour < cutoff]
            stale_days = [key for key in self._device_days if key[0] < cutoff]
            for key in stale_cells:
                del self._rollups[key]
            for hour in stale_hours:
                del self._hourly[hour]
            for key in stale_days:
                del self._device_days[key]
        return len(stale_cells) + len(stale_hours) + len(stale_days)

    def _storage_size(self) -> int:
        return (
            len(self._signals) * APPROX_SIGNAL_BYTES
            + len(self._devices) * APPROX_DEVICE_BYTES
            + (len(self._rollups) + len(self._hourly) + len(self._device_days)) * APPROX_ROLLUP_BYTES
        )

    def stats(self) -> StoreStats:
        with self._lock:
            timestamps = [signal.timestamp for signal in self._signals.values()]
            return StoreStats(
                signal_count=len(self._signals),
                device_count=len(self._devices),
                relationship_count=len(self._relationships),
                rollup_count=len(self._rollups),
                oldest_timestamp=min(timestamps) if timestamps else None,
                newest_timestamp=max(timestamps) if timestamps else None,
                storage_size=self._storage_size(),
            )

    def growth_trends(self, since: int, bucket_ms: int) -> List[GrowthBucket]:
        counts: Dict[int, int] = {}
        devices: Dict[int, Set[str]] = {}
        with self._lock:
            for signal in self._signals.values():
                if signal.timestamp < since:
                    continue
                bucket = rollup_math.bucket_start(signal.timestamp, bucket_ms)
                counts[bucket] = counts.get(bucket, 0) + 1
                if signal.device_id:
                    devices.setdefault(bucket, set()).add(signal.device_id)
        return [
            GrowthBucket(bucket_start=bucket, signal_count=counts[bucket], unique_devices=len(devices.get(bucket, ())))
            for bucket in sorted(counts, reverse=True)
        ]

    def vacuum(self) -> VacuumResult:
        with self._lock:
            size = self._storage_size()
        return VacuumResult(before=size, after=size, saved=0)

    def analyze(self) -> None:
        logger.info("store_analyzed", backend=self.name, cells=len(self._cells))

    def health_report(self) -> Dict[str, Any]:
        with self._lock:
            tables = [
                {"name": "signals", "rows": len(self._signals), "indexes": 1},
                {"name": "devices", "rows": len(self._devices), "indexes": 0},
                {"name": "relationships", "rows": len(self._relationships), "indexes": 0},
                {"name": "signal_rollups", "rows": len(self._rollups), "indexes": 0},
                {"name": "signal_stats_hourly", "rows": len(self._hourly), "indexes": 0},
                {"name": "device_stats_daily", "rows": len(self._device_days), "indexes": 0},
            ]
            size = self._storage_size()
            occupied = len(self._cells)
        recommendations: List[str] = []
        if tables[0]["rows"] > 1_000_000:
            recommendations.append("local store holds over 1M signals; consider STORAGE_MODE=server")
        return {
            "backend": self.name,
            "size": size,
            "integrity": "ok",
            "tables": tables,
            "pragmas": {},
            "occupiedCells": occupied,
            "recommendations": recommendations,
        }

    def index_report(self) -> Dict[str, Any]:
        with self._lock:
            occupied = len(self._cells)
            densest = max((len(bucket) for bucket in self._cells.values()), default=0)
        return {
            "backend": self.name,
            "indexes": {
                "signals": [
                    {
                        "name": "grid_cell",
                        "columns": ["grid_lat", "grid_lon"],
                        "unique": False,
                        "occupiedCells": occupied,
                        "densestCell": densest,
                    }
                ]
            },
            "pragmas": {},
        }
