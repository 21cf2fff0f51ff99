"""Contract shared by the durable (SQL) and local (in-process) signal stores.

Ingestion orchestration lives here so both tiers validate, serialize device
updates and report rejections identically; subclasses only provide the
storage primitives.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .devices import DeviceLocks
from .geo import CellRange, GeoGrid
from .ingest import RecordRejected, parse_signal
from .logging_config import get_logger
from .metrics import SIGNALS_INGESTED, SIGNALS_REJECTED
from .notify import ChangeNotifier
from .schemas import (
    BatchResult,
    BoundingBox,
    Device,
    DeviceDailyStats,
    GrowthBucket,
    HourlyStats,
    InsertOutcome,
    RejectedRecord,
    Relationship,
    Rollup,
    Signal,
    SignalStatistics,
    StoreStats,
    VacuumResult,
)

logger = get_logger("store")


class SignalBackend(ABC):
    name = "abstract"

    def __init__(self, grid: GeoGrid, notifier: Optional[ChangeNotifier] = None) -> None:
        self.grid = grid
        self.notifier = notifier or ChangeNotifier()
        self.device_locks = DeviceLocks()

    # Ingestion

    def insert_signal(self, record: Any) -> InsertOutcome:
        inserted, rejected = self._ingest([record])
        if rejected:
            return InsertOutcome(accepted=False, id=rejected[0].id, reason=rejected[0].reason)
        return InsertOutcome(accepted=True, id=inserted[0].id)

    def insert_signals_batch(self, records: Sequence[Any]) -> BatchResult:
        records = list(records)
        inserted, rejected = self._ingest(records)
        return BatchResult(inserted_count=len(inserted), total_received=len(records), rejected=rejected)

    def _ingest(self, records: List[Any]) -> Tuple[List[Signal], List[RejectedRecord]]:
        rejected: List[RejectedRecord] = []
        accepted: List[Tuple[int, Signal]] = []
        seen: Set[str] = set()
        for index, record in enumerate(records):
            try:
                signal = parse_signal(record)
            except RecordRejected as exc:
                rejected.append(RejectedRecord(index=index, id=exc.record_id, reason=exc.reason))
                continue
            if signal.id in seen:
                rejected.append(RejectedRecord(index=index, id=signal.id, reason="duplicate id in batch"))
                continue
            seen.add(signal.id)
            accepted.append((index, signal))

        inserted: List[Signal] = []
        if accepted:
            signals = [signal for _, signal in accepted]
            device_ids = {signal.device_id for signal in signals if signal.device_id}
            with self.device_locks.hold(device_ids):
                duplicates = self._commit_batch(signals)
            for index, signal in accepted:
                if signal.id in duplicates:
                    rejected.append(RejectedRecord(index=index, id=signal.id, reason="id already stored"))
                else:
                    inserted.append(signal)
            rejected.sort(key=lambda item: item.index)

        if rejected:
            SIGNALS_REJECTED.labels(backend=self.name).inc(len(rejected))
            logger.info(
                "signals_rejected",
                backend=self.name,
                rejected=len(rejected),
                reasons=sorted({item.reason for item in rejected}),
            )
        if inserted:
            SIGNALS_INGESTED.labels(backend=self.name).inc(len(inserted))
            self.notifier.publish(
                {
                    "type": "signals_committed",
                    "count": len(inserted),
                    "ids": [signal.id for signal in inserted],
                    "newest": max(signal.timestamp for signal in inserted),
                }
            )
        return inserted, rejected

    @abstractmethod
    def _commit_batch(self, signals: List[Signal]) -> Set[str]:
        """Persist ``signals`` and fold them into device aggregates in one atomic unit.

        Returns the ids skipped because they were already stored.
        """

    # Reads

    @abstractmethod
    def find_by_id(self, signal_id: str) -> Optional[Signal]:
        ...

    @abstractmethod
    def find_recent(self, limit: int) -> Iterator[Signal]:
        ...

    @abstractmethod
    def scan_cells(self, cells: CellRange, start_time: int, end_time: int) -> Iterator[Signal]:
        """Signals filed under ``cells`` within the time range, timestamp desc then id asc."""

    @abstractmethod
    def get_device(self, device_id: str) -> Optional[Device]:
        ...

    @abstractmethod
    def devices_in_bbox(self, bbox: BoundingBox) -> List[Device]:
        ...

    @abstractmethod
    def window_statistics(self, since: int, until: int, bbox: Optional[BoundingBox]) -> SignalStatistics:
        ...

    # Relationships

    @abstractmethod
    def upsert_relationships(self, relationships: Iterable[Relationship]) -> int:
        ...

    @abstractmethod
    def relationships(self, device_ids: Optional[Sequence[str]] = None, limit: int = 1000) -> List[Relationship]:
        ...

    # Maintenance primitives, each call is one independently committed unit

    @abstractmethod
    def delete_signals_before(self, cutoff: int, chunk_size: int, sources: Optional[Sequence[str]] = None) -> int:
        """Delete up to ``chunk_size`` of the oldest signals before ``cutoff``, optionally only from ``sources``."""

    @abstractmethod
    def delete_orphan_devices(self) -> Tuple[int, int]:
        """Remove devices with no remaining signals and their relationships: ``(devices, relationships)``."""

    @abstractmethod
    def rollup_chunk(self, cutoff: int, chunk_size: int, bucket_ms: int, delete_originals: bool, now: int) -> Tuple[int, int]:
        """Fold up to ``chunk_size`` signals older than ``cutoff`` into all three rollups: ``(signals, heatmap rollups)``."""

    @abstractmethod
    def rollups_between(self, start_time: int, end_time: int) -> List[Rollup]:
        ...

    @abstractmethod
    def hourly_stats_between(self, start_time: int, end_time: int) -> List[HourlyStats]:
        ...

    @abstractmethod
    def device_days_between(self, start_time: int, end_time: int) -> List[DeviceDailyStats]:
        ...

    @abstractmethod
    def delete_rollups_before(self, cutoff: int) -> int:
        """Drop heatmap, hourly and device-day rows whose bucket starts before ``cutoff``."""

    @abstractmethod
    def stats(self) -> StoreStats:
        ...

    @abstractmethod
    def growth_trends(self, since: int, bucket_ms: int) -> List[GrowthBucket]:
        ...

    @abstractmethod
    def vacuum(self) -> VacuumResult:
        ...

    @abstractmethod
    def analyze(self) -> None:
        ...

    @abstractmethod
    def health_report(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    def index_report(self) -> Dict[str, Any]:
        ...

    def close(self) -> None:
        logger.info("store_closed", backend=self.name)
