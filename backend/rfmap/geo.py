"""Great-circle helpers and the uniform lat/lon grid used to bound spatial scans.

Every signal is filed under an integer ``(row, col)`` cell. A radius query
turns its circle into the exact great-circle bounding box, then into the
row range and (possibly wrapped) column ranges that box touches. With a radius
no larger than the cell edge that is the query cell plus at most its 8
neighbours, so the scan cost tracks local density instead of store size.
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Set, Tuple

EARTH_RADIUS_METERS = 6_371_000.0
METERS_PER_DEGREE = EARTH_RADIUS_METERS * math.pi / 180.0

Cell = Tuple[int, int]


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def lon_offset(lon: float, reference: float) -> float:
    """Signed east-west offset from ``reference``, the short way round the antimeridian."""
    offset = lon - reference
    if offset > 180.0:
        offset -= 360.0
    elif offset < -180.0:
        offset += 360.0
    return offset


def wrap_lon(lon: float) -> float:
    if lon > 180.0:
        return lon - 360.0
    if lon < -180.0:
        return lon + 360.0
    return lon


def radius_bounds(lat: float, lon: float, radius_meters: float) -> Tuple[float, float, float, float, bool]:
    """Bounding box of a great-circle disc: ``(min_lat, max_lat, min_lon, max_lon, full_lon)``.

    ``full_lon`` is set when the disc reaches a pole and every longitude is in range.
    The longitude bounds are unwrapped and may fall outside [-180, 180].
    """
    angular = radius_meters / EARTH_RADIUS_METERS
    d_lat = math.degrees(angular)
    min_lat = lat - d_lat
    max_lat = lat + d_lat
    if min_lat <= -90.0 or max_lat >= 90.0:
        return max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0, True

    cos_lat = math.cos(math.radians(lat))
    ratio = math.sin(angular) / cos_lat
    if ratio >= 1.0:
        return min_lat, max_lat, -180.0, 180.0, True
    d_lon = math.degrees(math.asin(ratio))
    return min_lat, max_lat, lon - d_lon, lon + d_lon, False



@dataclass(frozen=True)
class CellRange:
    rows: Tuple[int, int]
    cols: Tuple[Tuple[int, int], ...]

    def contains(self, cell: Cell) -> bool:
        row, col = cell
        if not self.rows[0] <= row <= self.rows[1]:
            return False
        return any(lo <= col <= hi for lo, hi in self.cols)

    def cell_count(self) -> int:
        rows = self.rows[1] - self.rows[0] + 1
        return rows * sum(hi - lo + 1 for lo, hi in self.cols)

    def cells(self) -> Iterable[Cell]:
        for row in range(self.rows[0], self.rows[1] + 1):
            for lo, hi in self.cols:
                for col in range(lo, hi + 1):
                    yield row, col


class GeoGrid:
    """Uniform grid whose cell edge is about ``cell_meters`` along a meridian.

    The degree steps are adjusted so rows tile 180 degrees and columns tile 360
    degrees exactly; column indices then wrap cleanly at the antimeridian.
    """

    def __init__(self, cell_meters: float) -> None:
        if cell_meters <= 0:
            raise ValueError("cell_meters must be positive")
        self.cell_meters = cell_meters
        step = cell_meters / METERS_PER_DEGREE
        self.row_count = max(1, int(math.ceil(180.0 / step)))
        self.col_count = max(1, int(math.ceil(360.0 / step)))
        self.lat_step = 180.0 / self.row_count
        self.lon_step = 360.0 / self.col_count

    def row_of(self, lat: float) -> int:
        return min(int(math.floor((lat + 90.0) / self.lat_step)), self.row_count - 1)

    def col_of(self, lon: float) -> int:
        return int(math.floor((lon + 180.0) / self.lon_step)) % self.col_count

    def cell_of(self, lat: float, lon: float) -> Cell:
        return self.row_of(lat), self.col_of(lon)

    def _col_ranges(self, min_lon: float, max_lon: float) -> List[Tuple[int, int]]:
        lo = int(math.floor((min_lon + 180.0) / self.lon_step))
        hi = int(math.floor((max_lon + 180.0) / self.lon_step))
        if hi - lo + 1 >= self.col_count:
            return [(0, self.col_count - 1)]
        lo_w = lo % self.col_count
        hi_w = hi % self.col_count
        if lo_w <= hi_w:
            return [(lo_w, hi_w)]
        return [(lo_w, self.col_count - 1), (0, hi_w)]

    def cells_for_radius(self, lat: float, lon: float, radius_meters: float) -> CellRange:
        min_lat, max_lat, min_lon, max_lon, full_lon = radius_bounds(lat, lon, radius_meters)
        rows = (self.row_of(max(min_lat, -90.0)), self.row_of(min(max_lat, 90.0)))
        if full_lon:
            return CellRange(rows=rows, cols=((0, self.col_count - 1),))
        return CellRange(rows=rows, cols=tuple(self._col_ranges(min_lon, max_lon)))

    def cells_for_bbox(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> CellRange:
        rows = (self.row_of(min_lat), self.row_of(max_lat))
        if min_lon > max_lon:
            max_lon += 360.0
        return CellRange(rows=rows, cols=tuple(self._col_ranges(min_lon, max_lon)))


def neighbourhood(index: dict, cells: CellRange) -> Set:
    """Union of the ``index`` buckets (cell -> set of keys) inside ``cells``.

    Walks the requested cells when that is cheaper than walking the occupied ones.
    """
    found: Set = set()
    if cells.cell_count() <= len(index):
        for cell in cells.cells():
            bucket = index.get(cell)
            if bucket:
                found.update(bucket)
    else:
        for cell, bucket in index.items():
            if cells.contains(cell):
                found.update(bucket)
    return found

