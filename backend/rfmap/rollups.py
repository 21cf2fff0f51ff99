"""Bucket math for the three rollups built by aggregation.

- the spatial heatmap: (bucket, grid cell) -> power range;
- hourly totals across the whole store;
- per-device daily activity.

Each rollup merges count-weighted, so folding a chunk into a stored row
gives the same result as aggregating both sets at once.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, NamedTuple, Optional, Tuple

from .config import DAY_MS, HOUR_MS
from .geo import lon_offset, wrap_lon
from .schemas import DeviceDailyStats, HourlyStats

RollupKey = Tuple[int, int, int]  # (bucket_start, grid_lat, grid_lon)
DeviceDayKey = Tuple[int, str]  # (day_start, device_id)


class Sample(NamedTuple):
    timestamp: int
    lat: float
    lon: float
    power: float
    frequency: float
    device_id: Optional[str]


@dataclass
class RollupAccumulator:
    count: int = 0
    total_power: float = 0.0
    min_power: float = float("inf")
    max_power: float = float("-inf")

    def add(self, power: float) -> None:
        self.count += 1
        self.total_power += power
        self.min_power = min(self.min_power, power)
        self.max_power = max(self.max_power, power)

    @property
    def avg_power(self) -> float:
        return self.total_power / self.count if self.count else 0.0


@dataclass
class HourlyAccumulator(RollupAccumulator):
    total_frequency: float = 0.0
    min_lat: float = float("inf")
    max_lat: float = float("-inf")
    min_lon: float = float("inf")
    max_lon: float = float("-inf")

    def add_sample(self, sample: Sample) -> None:
        self.add(sample.power)
        self.total_frequency += sample.frequency
        self.min_lat = min(self.min_lat, sample.lat)
        self.max_lat = max(self.max_lat, sample.lat)
        self.min_lon = min(self.min_lon, sample.lon)
        self.max_lon = max(self.max_lon, sample.lon)


@dataclass
class DeviceDayAccumulator(RollupAccumulator):
    freq_min: float = float("inf")
    freq_max: float = float("-inf")
    hour_mask: int = 0
    total_lat: float = 0.0
    ref_lon: Optional[float] = None
    total_lon_offset: float = 0.0

    def add_sample(self, sample: Sample, day_start: int) -> None:
        self.add(sample.power)
        self.freq_min = min(self.freq_min, sample.frequency)
        self.freq_max = max(self.freq_max, sample.frequency)
        self.hour_mask |= 1 << hour_of_day(sample.timestamp, day_start)
        self.total_lat += sample.lat
        if self.ref_lon is None:
            self.ref_lon = sample.lon
        self.total_lon_offset += lon_offset(sample.lon, self.ref_lon)

    @property
    def avg_lon(self) -> float:
        return wrap_lon(self.ref_lon + self.total_lon_offset / self.count)


def bucket_start(timestamp: int, bucket_ms: int) -> int:
    return (timestamp // bucket_ms) * bucket_ms


def hour_of_day(timestamp: int, day_start: int) -> int:
    return (timestamp - day_start) // HOUR_MS


def accumulate(points: Iterable[Tuple[int, int, int, float]], bucket_ms: int) -> Dict[RollupKey, RollupAccumulator]:
    """Group ``(timestamp, grid_lat, grid_lon, power)`` tuples by time bucket and grid cell."""
    groups: Dict[RollupKey, RollupAccumulator] = {}
    for timestamp, grid_lat, grid_lon, power in points:
        key = (bucket_start(timestamp, bucket_ms), grid_lat, grid_lon)
        acc = groups.get(key)
        if acc is None:
            acc = groups[key] = RollupAccumulator()
        acc.add(power)
    return groups


def accumulate_hourly(samples: Iterable[Sample]) -> Dict[int, HourlyAccumulator]:
    groups: Dict[int, HourlyAccumulator] = {}
    for sample in samples:
        key = bucket_start(sample.timestamp, HOUR_MS)
        acc = groups.get(key)
        if acc is None:
            acc = groups[key] = HourlyAccumulator()
        acc.add_sample(sample)
    return groups


def accumulate_device_days(samples: Iterable[Sample]) -> Dict[DeviceDayKey, DeviceDayAccumulator]:
    """Per-device daily groups; samples without a device id are skipped."""
    groups: Dict[DeviceDayKey, DeviceDayAccumulator] = {}
    for sample in samples:
        if not sample.device_id:
            continue
        day = bucket_start(sample.timestamp, DAY_MS)
        key = (day, sample.device_id)
        acc = groups.get(key)
        if acc is None:
            acc = groups[key] = DeviceDayAccumulator()
        acc.add_sample(sample, day)
    return groups


def merge(
    existing: Optional[Tuple[int, float, float, float]], acc: RollupAccumulator
) -> Tuple[int, float, float, float]:
    """Combine a stored ``(count, min, avg, max)`` rollup with new points."""
    if existing is None:
        return acc.count, acc.min_power, acc.avg_power, acc.max_power
    count, min_power, avg_power, max_power = existing
    total = count + acc.count
    return (
        total,
        min(min_power, acc.min_power),
        (avg_power * count + acc.total_power) / total,
        max(max_power, acc.max_power),
    )


def merge_hourly(existing: Optional[HourlyStats], hour_start: int, acc: HourlyAccumulator, now: int) -> HourlyStats:
    """Fold new samples into an hour. ``unique_devices`` is left for the caller to recount."""
    if existing is None:
        return HourlyStats(
            hour_start=hour_start,
            total_signals=acc.count,
            unique_devices=0,
            avg_power=acc.avg_power,
            min_power=acc.min_power,
            max_power=acc.max_power,
            avg_frequency=acc.total_frequency / acc.count,
            min_lat=acc.min_lat,
            max_lat=acc.max_lat,
            min_lon=acc.min_lon,
            max_lon=acc.max_lon,
            created_at=now,
        )
    total = existing.total_signals + acc.count
    return existing.model_copy(
        update={
            "total_signals": total,
            "avg_power": (existing.avg_power * existing.total_signals + acc.total_power) / total,
            "min_power": min(existing.min_power, acc.min_power),
            "max_power": max(existing.max_power, acc.max_power),
            "avg_frequency": (existing.avg_frequency * existing.total_signals + acc.total_frequency) / total,
            "min_lat": min(existing.min_lat, acc.min_lat),
            "max_lat": max(existing.max_lat, acc.max_lat),
            "min_lon": min(existing.min_lon, acc.min_lon),
            "max_lon": max(existing.max_lon, acc.max_lon),
        }
    )


def merge_device_day(
    existing: Optional[DeviceDailyStats], key: DeviceDayKey, acc: DeviceDayAccumulator, now: int
) -> DeviceDailyStats:
    day_start, device_id = key
    if existing is None:
        return DeviceDailyStats(
            day_start=day_start,
            device_id=device_id,
            signal_count=acc.count,
            avg_power=acc.avg_power,
            freq_min=acc.freq_min,
            freq_max=acc.freq_max,
            hour_mask=acc.hour_mask,
            avg_lat=acc.total_lat / acc.count,
            avg_lon=acc.avg_lon,
            created_at=now,
        )
    count = existing.signal_count
    total = count + acc.count
    # Mean longitude moves toward the new samples along the short arc.
    shift = lon_offset(acc.avg_lon, existing.avg_lon) * acc.count / total
    return existing.model_copy(
        update={
            "signal_count": total,
            "avg_power": (existing.avg_power * count + acc.total_power) / total,
            "freq_min": min(existing.freq_min, acc.freq_min),
            "freq_max": max(existing.freq_max, acc.freq_max),
            "hour_mask": existing.hour_mask | acc.hour_mask,
            "avg_lat": (existing.avg_lat * count + acc.total_lat) / total,
            "avg_lon": wrap_lon(existing.avg_lon + shift),
        }
    )


def hour_bit(hour_start: int) -> int:
    """Bit of ``DeviceDailyStats.hour_mask`` covering the hour that starts at ``hour_start``."""
    return 1 << hour_of_day(hour_start, bucket_start(hour_start, DAY_MS))
