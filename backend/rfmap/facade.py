"""One read/write contract over whichever storage tier was chosen at startup.

The facade owns the chosen ``SignalBackend`` and applies the same device-id
and signal-type filters on top of either tier, so callers see identical
semantics in server and local mode. There is no replication between tiers.
"""

from typing import Any, Iterator, List, Optional, Sequence

from .clustering import cluster_signals
from .config import STORAGE_MODE_LOCAL, STORAGE_MODE_SERVER, Settings
from .db import SqlSignalStore
from .geo import GeoGrid
from .local_store import MemorySignalStore
from .logging_config import get_logger
from .notify import ChangeNotifier
from .retention import RetentionService
from .schemas import (
    BatchResult,
    BoundingBox,
    CleanupResult,
    Cluster,
    DataQuery,
    DensityCell,
    Device,
    GeoPoint,
    InsertOutcome,
    Relationship,
    Signal,
    SignalStatistics,
)
from .spatial import SignalPredicate, SpatialQueryEngine
from .store import SignalBackend

logger = get_logger("facade")


def open_backend(settings: Settings, notifier: Optional[ChangeNotifier] = None) -> SignalBackend:
    """Build the storage tier named by ``settings.storage_mode``."""
    grid = GeoGrid(settings.grid_cell_meters)
    if settings.storage_mode == STORAGE_MODE_SERVER:
        return SqlSignalStore(settings.database_url, grid, notifier)
    if settings.storage_mode == STORAGE_MODE_LOCAL:
        return MemorySignalStore(grid, notifier)
    raise ValueError(f"unknown storage mode: {settings.storage_mode!r}")


def make_filter(device_ids: Sequence[str] = (), signal_types: Sequence[str] = ()) -> Optional[SignalPredicate]:
    """Post-query filter shared by both tiers; ``None`` when nothing is filtered."""
    wanted_devices = set(device_ids)
    wanted_types = set(signal_types)
    if not wanted_devices and not wanted_types:
        return None

    def predicate(signal: Signal) -> bool:
        if wanted_devices and signal.device_id not in wanted_devices:
            return False
        if wanted_types and signal.signal_type not in wanted_types:
            return False
        return True

    return predicate


class SignalDataFacade:
    def __init__(
        self,
        backend: SignalBackend,
        settings: Settings,
        spatial: Optional[SpatialQueryEngine] = None,
        retention: Optional[RetentionService] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.spatial = spatial or SpatialQueryEngine(backend, settings)
        self.retention = retention or RetentionService(backend, settings)

    @property
    def mode(self) -> str:
        return self.backend.name

    # Writes

    def store_signal(self, record: Any) -> InsertOutcome:
        return self.backend.insert_signal(record)

    def store_signals_batch(self, records: Sequence[Any]) -> BatchResult:
        return self.backend.insert_signals_batch(records)

    def store_relationships(self, edges: Sequence[Relationship]) -> int:
        return self.backend.upsert_relationships(edges)

    # Reads

    def query_signals(self, query: DataQuery) -> List[Signal]:
        return self.spatial.find_signals_in_radius(
            query.lat,
            query.lon,
            query.radius_meters,
            start_time=query.start_time,
            end_time=query.end_time,
            limit=query.limit,
            predicate=make_filter(query.device_ids, query.signal_types),
        )

    def find_by_id(self, signal_id: str) -> Optional[Signal]:
        return self.backend.find_by_id(signal_id)

    def find_recent(self, limit: int) -> Iterator[Signal]:
        if limit < 1 or limit > self.settings.max_query_limit:
            raise ValueError(f"limit must be between 1 and {self.settings.max_query_limit}")
        return self.backend.find_recent(limit)

    def get_device(self, device_id: str) -> Optional[Device]:
        return self.backend.get_device(device_id)

    def get_devices_in_area(self, bbox: BoundingBox) -> List[Device]:
        return self.spatial.get_devices_in_area(bbox)

    def find_signals_along_path(
        self,
        points: Sequence[GeoPoint],
        radius_meters: float,
        device_ids: Sequence[str] = (),
        signal_types: Sequence[str] = (),
    ) -> List[Signal]:
        return self.spatial.find_signals_along_path(
            points, radius_meters, predicate=make_filter(device_ids, signal_types)
        )

    def get_signal_density(self, bbox: BoundingBox, grid_size: int) -> List[DensityCell]:
        return self.spatial.get_signal_density(bbox, grid_size)

    def get_statistics(self, time_window_ms: int, bbox: Optional[BoundingBox] = None) -> SignalStatistics:
        return self.spatial.get_statistics(time_window_ms, bbox)

    def cluster_signals(self, query: DataQuery, radius_meters: float, min_cluster_size: int = 1) -> List[Cluster]:
        return cluster_signals(self.query_signals(query), radius_meters, min_cluster_size)

    def get_relationships(self, device_ids: Optional[Sequence[str]] = None, limit: int = 1000) -> List[Relationship]:
        return self.backend.relationships(device_ids, limit)

    # Maintenance

    def cleanup_old_data(self, max_age_ms: Optional[int] = None) -> CleanupResult:
        return self.retention.run_cleanup(max_age_ms)

    def close(self) -> None:
        self.backend.close()
        logger.info("facade_closed", mode=self.mode)
