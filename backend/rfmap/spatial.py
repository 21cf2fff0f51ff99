import time
from contextlib import closing
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import Settings
from .geo import haversine_meters
from .logging_config import get_logger
from .metrics import QUERIES_REJECTED, QUERY_LATENCY_MS
from .schemas import BoundingBox, DensityCell, Device, GeoPoint, Signal, SignalStatistics, now_ms
from .store import SignalBackend

logger = get_logger("spatial")

SignalPredicate = Callable[[Signal], bool]


class QueryLimitError(ValueError):
    """A query asked for more than the configured caps allow."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def bbox_radius_meters(bbox: BoundingBox) -> float:
    """Distance from the box centre to its farthest corner."""
    center = bbox.center
    corners = (
        (bbox.min_lat, bbox.min_lon),
        (bbox.min_lat, bbox.max_lon),
        (bbox.max_lat, bbox.min_lon),
        (bbox.max_lat, bbox.max_lon),
    )
    return max(haversine_meters(center.lat, center.lon, lat, lon) for lat, lon in corners)


class SpatialQueryEngine:
    """Radius, area, path, density and window-statistics queries over one backend."""

    def __init__(self, backend: SignalBackend, settings: Settings, clock: Callable[[], int] = now_ms) -> None:
        self.backend = backend
        self.settings = settings
        self.clock = clock

    def _reject(self, kind: str, message: str) -> None:
        QUERIES_REJECTED.labels(kind=kind).inc()
        logger.info("query_rejected", kind=kind, reason=message)
        raise QueryLimitError(kind, message)

    def _observe(self, kind: str, started: float) -> None:
        QUERY_LATENCY_MS.labels(kind=kind).observe((time.perf_counter() - started) * 1000.0)

    def _check_radius(self, kind: str, radius_meters: float) -> None:
        if radius_meters <= 0:
            raise ValueError("radiusMeters must be positive")
        if radius_meters > self.settings.max_radius_meters:
            self._reject(kind, f"radiusMeters exceeds maximum of {self.settings.max_radius_meters:g}")

    def _check_limit(self, kind: str, limit: Optional[int]) -> int:
        if limit is None:
            return min(self.settings.default_query_limit, self.settings.max_query_limit)
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if limit > self.settings.max_query_limit:
            self._reject(kind, f"limit exceeds maximum of {self.settings.max_query_limit}")
        return limit

    def _radius_scan(
        self,
        lat: float,
        lon: float,
        radius_meters: float,
        start_time: int,
        end_time: int,
        limit: int,
        predicate: Optional[SignalPredicate],
    ) -> List[Signal]:
        cells = self.backend.grid.cells_for_radius(lat, lon, radius_meters)
        found: List[Signal] = []
        with closing(self.backend.scan_cells(cells, start_time, end_time)) as candidates:
            for signal in candidates:
                if haversine_meters(lat, lon, signal.lat, signal.lon) > radius_meters:
                    continue
                if predicate is not None and not predicate(signal):
                    continue
                found.append(signal)
                if len(found) >= limit:
                    break
        return found

    def find_signals_in_radius(
        self,
        lat: float,
        lon: float,
        radius_meters: float,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: Optional[int] = None,
        predicate: Optional[SignalPredicate] = None,
    ) -> List[Signal]:
        """Signals within ``radius_meters`` of the point, newest first (id breaks ties).

        ``predicate`` is applied before the limit so filtered queries still fill it.
        """
        started = time.perf_counter()
        if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
            raise ValueError("lat/lon out of range")
        self._check_radius("radius", radius_meters)
        limit = self._check_limit("radius", limit)
        start = 0 if start_time is None else start_time
        end = self.clock() if end_time is None else end_time

        found = self._radius_scan(lat, lon, radius_meters, start, end, limit, predicate)
        self._observe("radius", started)
        return found

    def get_devices_in_area(self, bbox: BoundingBox) -> List[Device]:
        started = time.perf_counter()
        devices = self.backend.devices_in_bbox(bbox)
        self._observe("area", started)
        return devices

    def find_signals_along_path(
        self,
        points: Sequence[GeoPoint],
        radius_meters: float,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        predicate: Optional[SignalPredicate] = None,
    ) -> List[Signal]:
        """Union of per-point radius queries, oldest first, for track reconstruction.

        Both the number of points and the size of the union are capped.
        """
        started = time.perf_counter()
        if not points:
            raise ValueError("points must not be empty")
        if len(points) > self.settings.max_path_points:
            self._reject("path", f"points exceed maximum of {self.settings.max_path_points}")
        self._check_radius("path", radius_meters)
        start = 0 if start_time is None else start_time
        end = self.clock() if end_time is None else end_time

        cap = self.settings.max_query_limit
        by_id: Dict[str, Signal] = {}
        for point in points:
            for signal in self._radius_scan(point.lat, point.lon, radius_meters, start, end, cap + 1, predicate):
                by_id.setdefault(signal.id, signal)
            if len(by_id) > cap:
                self._reject("path", f"path matches more than {cap} signals")
        ordered = sorted(by_id.values(), key=lambda signal: (signal.timestamp, signal.id))
        self._observe("path", started)
        return ordered

    def get_signal_density(self, bbox: BoundingBox, grid_size: int) -> List[DensityCell]:
        """Signal counts on a ``grid_size`` x ``grid_size`` partition of ``bbox``, non-empty cells only."""
        started = time.perf_counter()
        if grid_size < 1:
            raise ValueError("gridSize must be at least 1")
        if grid_size > self.settings.max_density_grid:
            self._reject("density", f"gridSize exceeds maximum of {self.settings.max_density_grid}")
        if bbox_radius_meters(bbox) > self.settings.max_radius_meters:
            self._reject("density", "bounds exceed the maximum query radius")

        lat_span = bbox.max_lat - bbox.min_lat
        lon_span = bbox.lon_span
        lat_step = lat_span / grid_size
        lon_step = lon_span / grid_size

        # The box lies inside its circumscribing radius, so scanning its own cells
        # covers everything a radius query over the box would return.
        cells = self.backend.grid.cells_for_bbox(bbox.min_lat, bbox.max_lat, bbox.min_lon, bbox.max_lon)
        counts: Dict[Tuple[int, int], int] = {}
        with closing(self.backend.scan_cells(cells, 0, self.clock())) as candidates:
            for signal in candidates:
                if not bbox.contains(signal.lat, signal.lon):
                    continue
                lon_offset = signal.lon - bbox.min_lon
                if bbox.crosses_antimeridian:
                    lon_offset %= 360.0
                row = min(int((signal.lat - bbox.min_lat) / lat_step), grid_size - 1) if lat_step > 0 else 0
                col = min(int(lon_offset / lon_step), grid_size - 1) if lon_step > 0 else 0
                counts[(row, col)] = counts.get((row, col), 0) + 1

        density: List[DensityCell] = []
        for (row, col), count in sorted(counts.items()):
            lon = bbox.min_lon + (col + 0.5) * lon_step
            if lon > 180.0:
                lon -= 360.0
            density.append(DensityCell(lat=bbox.min_lat + (row + 0.5) * lat_step, lon=lon, density=count))
        self._observe("density", started)
        return density

    def get_statistics(self, time_window_ms: int, bbox: Optional[BoundingBox] = None) -> SignalStatistics:
        started = time.perf_counter()
        if time_window_ms <= 0:
            raise ValueError("timeWindow must be positive")
        if time_window_ms > self.settings.max_time_window_ms:
            self._reject("statistics", f"timeWindow exceeds maximum of {self.settings.max_time_window_ms} ms")
        until = self.clock()
        stats = self.backend.window_statistics(until - time_window_ms, until, bbox)
        self._observe("statistics", started)
        return stats
