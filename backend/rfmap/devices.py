import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from .schemas import Device, GeoPoint, Signal

MHZ = 1_000_000.0


def detect_device_type(frequency_hz: float) -> str:
    """Coarse emitter class from the carrier frequency."""
    mhz = frequency_hz / MHZ
    if 2400 <= mhz <= 2500:
        return "wifi"
    if 5150 <= mhz <= 5850:
        return "wifi"
    if 824 <= mhz <= 894 or 1710 <= mhz <= 1990 or 2500 < mhz <= 2690:
        return "cellular"
    if 433 <= mhz <= 435 or 902 <= mhz <= 928:
        return "ism"
    return "unknown"


def fold_signal(device: Optional[Device], signal: Signal) -> Device:
    """Apply one observation to a device aggregate and return the new aggregate.

    The mean is updated incrementally: ``avg' = avg + (power - avg) / count'``.
    """
    meta = signal.metadata
    if device is None:
        return Device(
            device_id=signal.device_id,
            type=str(meta.get("deviceType") or detect_device_type(signal.frequency)),
            manufacturer=meta.get("manufacturer"),
            first_seen=signal.timestamp,
            last_seen=signal.timestamp,
            avg_power=signal.power,
            freq_min=signal.frequency,
            freq_max=signal.frequency,
            last_position=GeoPoint(lat=signal.lat, lon=signal.lon),
            signal_count=1,
            metadata={k: v for k, v in meta.items() if k != "deviceId"},
        )

    count = device.signal_count + 1
    newest = signal.timestamp >= device.last_seen
    metadata = dict(device.metadata)
    if newest:
        metadata.update({k: v for k, v in meta.items() if k != "deviceId"})
    return device.model_copy(
        update={
            "manufacturer": device.manufacturer or meta.get("manufacturer"),
            "first_seen": min(device.first_seen, signal.timestamp),
            "last_seen": max(device.last_seen, signal.timestamp),
            "avg_power": device.avg_power + (signal.power - device.avg_power) / count,
            "freq_min": min(device.freq_min, signal.frequency),
            "freq_max": max(device.freq_max, signal.frequency),
            "last_position": GeoPoint(lat=signal.lat, lon=signal.lon) if newest else device.last_position,
            "signal_count": count,
            "metadata": metadata,
        }
    )


class DeviceLocks:
    """Per-device critical sections for aggregate read-modify-write.

    Batches touching disjoint devices proceed in parallel. Locks are taken in
    sorted id order so two batches sharing devices cannot deadlock. A lock
    lives only while some batch holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, device_ids: List[str]) -> List[threading.Lock]:
        with self._guard:
            locks = []
            for device_id in device_ids:
                lock = self._locks.get(device_id)
                if lock is None:
                    lock = self._locks[device_id] = threading.Lock()
                self._users[device_id] = self._users.get(device_id, 0) + 1
                locks.append(lock)
            return locks

    def _checkin(self, device_ids: List[str]) -> None:
        with self._guard:
            for device_id in device_ids:
                remaining = self._users[device_id] - 1
                if remaining:
                    self._users[device_id] = remaining
                else:
                    del self._users[device_id]
                    del self._locks[device_id]

    @contextmanager
    def hold(self, device_ids: Iterable[str]) -> Iterator[None]:
        ordered = sorted(set(device_ids))
        locks = self._checkout(ordered)
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            self._checkin(ordered)


BAND_WIDTH_HZ = 100_000_000.0


def frequency_band(frequency_hz: float) -> float:
    """Nearest 100 MHz band centre (2.437 GHz -> 2.4 GHz, 5.18 GHz -> 5.2 GHz)."""
    # Half-up rounding, matched by the SQL store so both tiers agree on band edges.
    return int(frequency_hz / BAND_WIDTH_HZ + 0.5) * BAND_WIDTH_HZ


def band_key(frequency_hz: float) -> str:
    return str(int(frequency_band(frequency_hz)))
