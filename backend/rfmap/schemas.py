import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


class SignalSource(str, Enum):
    SWEEP_SENSOR = "sweep_sensor"
    DEVICE_SCAN = "device_scan"
    MANUAL = "manual"
    OTHER_RF = "other_rf"
    UNKNOWN = "unknown"


class CamelModel(BaseModel):
    """Base for every payload that crosses the HTTP boundary (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeoPoint(CamelModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)


class BoundingBox(CamelModel):
    """Axis-aligned lat/lon box. ``min_lon > max_lon`` means the box crosses the antimeridian."""

    min_lat: float = Field(ge=-90.0, le=90.0)
    max_lat: float = Field(ge=-90.0, le=90.0)
    min_lon: float = Field(ge=-180.0, le=180.0)
    max_lon: float = Field(ge=-180.0, le=180.0)

    @model_validator(mode="after")
    def _check_order(self) -> "BoundingBox":
        if self.min_lat > self.max_lat:
            raise ValueError("minLat must not exceed maxLat")
        return self

    @property
    def crosses_antimeridian(self) -> bool:
        return self.min_lon > self.max_lon

    @property
    def lon_span(self) -> float:
        if self.crosses_antimeridian:
            return (180.0 - self.min_lon) + (self.max_lon + 180.0)
        return self.max_lon - self.min_lon

    @property
    def center(self) -> GeoPoint:
        lon = self.min_lon + self.lon_span / 2.0
        if lon > 180.0:
            lon -= 360.0
        return GeoPoint(lat=(self.min_lat + self.max_lat) / 2.0, lon=lon)

    def contains(self, lat: float, lon: float) -> bool:
        if not self.min_lat <= lat <= self.max_lat:
            return False
        if self.crosses_antimeridian:
            return lon >= self.min_lon or lon <= self.max_lon
        return self.min_lon <= lon <= self.max_lon


class Signal(CamelModel):
    """A stored detection. Never modified after it is persisted."""

    model_config = ConfigDict(frozen=True)

    id: str
    lat: float
    lon: float
    altitude: Optional[float] = None
    power: float  # dBm
    frequency: float  # Hz
    bandwidth: Optional[float] = None
    modulation: Optional[str] = None
    timestamp: int  # epoch ms
    source: SignalSource = SignalSource.UNKNOWN
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def device_id(self) -> Optional[str]:
        value = self.metadata.get("deviceId")
        return str(value) if value not in (None, "") else None

    @property
    def signal_type(self) -> Optional[str]:
        value = self.metadata.get("signalType") or self.metadata.get("type")
        return str(value) if value else None


class Device(CamelModel):
    device_id: str
    type: str
    manufacturer: Optional[str] = None
    first_seen: int
    last_seen: int
    avg_power: float
    freq_min: float
    freq_max: float
    last_position: GeoPoint
    signal_count: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Relationship(CamelModel):
    device_a: str
    device_b: str
    kind: str
    weight: float = 1.0
    last_observed: int = Field(default_factory=now_ms)


class RejectedRecord(CamelModel):
    index: int
    id: Optional[str] = None
    reason: str


class InsertOutcome(CamelModel):
    accepted: bool
    id: Optional[str] = None
    reason: Optional[str] = None


class BatchResult(CamelModel):
    inserted_count: int
    total_received: int
    rejected: List[RejectedRecord] = Field(default_factory=list)

    @computed_field(alias="validCount")
    @property
    def valid_count(self) -> int:
        return self.total_received - len(self.rejected)


class TimeRange(CamelModel):
    start: int
    end: int


class ClusterStats(CamelModel):
    count: int
    avg_power: float
    min_power: float
    max_power: float
    dominant_frequency_band: float
    signal_type_histogram: Dict[str, int]
    time_range: TimeRange


class Cluster(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    centroid: GeoPoint
    bounding_box: BoundingBox
    member_ids: List[str]
    stats: ClusterStats


class DensityCell(CamelModel):
    lat: float
    lon: float
    density: int


class Rollup(CamelModel):
    bucket_start: int
    grid_lat: int
    grid_lon: int
    count: int
    min_power: float
    avg_power: float
    max_power: float
    created_at: int


class HourlyStats(CamelModel):
    hour_start: int
    total_signals: int
    unique_devices: int
    avg_power: float
    min_power: float
    max_power: float
    avg_frequency: float
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float
    created_at: int

    @computed_field(alias="coverageAreaKm2")
    @property
    def coverage_area_km2(self) -> float:
        """Area of the lat/lon extent at 111 km per degree; a coarse spread indicator."""
        return (self.max_lat - self.min_lat) * (self.max_lon - self.min_lon) * 111.0 * 111.0


class DeviceDailyStats(CamelModel):
    day_start: int
    device_id: str
    signal_count: int
    avg_power: float
    freq_min: float
    freq_max: float
    hour_mask: int
    avg_lat: float
    avg_lon: float
    created_at: int

    def _hours(self) -> List[int]:
        return [hour for hour in range(24) if self.hour_mask >> hour & 1]

    @computed_field(alias="firstHour")
    @property
    def first_hour(self) -> Optional[int]:
        hours = self._hours()
        return hours[0] if hours else None

    @computed_field(alias="lastHour")
    @property
    def last_hour(self) -> Optional[int]:
        hours = self._hours()
        return hours[-1] if hours else None

    @computed_field(alias="activeHours")
    @property
    def active_hours(self) -> int:
        return len(self._hours())


class AggregateExport(CamelModel):
    hourly_stats: List[HourlyStats] = Field(default_factory=list)
    daily_devices: List[DeviceDailyStats] = Field(default_factory=list)
    spatial_data: List[Rollup] = Field(default_factory=list)


class StoreStats(CamelModel):
    signal_count: int
    device_count: int
    relationship_count: int
    rollup_count: int
    oldest_timestamp: Optional[int] = None
    newest_timestamp: Optional[int] = None
    storage_size: int


class GrowthBucket(CamelModel):
    bucket_start: int
    signal_count: int
    unique_devices: int


class SignalStatistics(CamelModel):
    total_signals: int
    unique_devices: int
    avg_power: float
    min_power: float
    max_power: float
    freq_bands: Dict[str, int]
    time_range: TimeRange


class CleanupResult(CamelModel):
    deleted_signals: int = 0
    deleted_devices: int = 0
    deleted_relationships: int = 0
    chunks: int = 0
    duration_ms: int = 0
    interrupted: bool = False


class AggregationResult(CamelModel):
    rolled_up_signals: int = 0
    rollups_touched: int = 0
    deleted_devices: int = 0
    chunks: int = 0
    duration_ms: int = 0
    interrupted: bool = False


class VacuumResult(CamelModel):
    before: int
    after: int
    saved: int


class DataQuery(CamelModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)
    radius_meters: float = Field(gt=0)
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    limit: Optional[int] = Field(default=None, ge=1)
    device_ids: List[str] = Field(default_factory=list)
    signal_types: List[str] = Field(default_factory=list)


# Request bodies


class SignalBatchIn(BaseModel):
    signals: List[Dict[str, Any]]


class AreaQuery(CamelModel):
    bounds: BoundingBox


class PathQuery(CamelModel):
    points: List[GeoPoint] = Field(min_length=1)
    radius_meters: float = Field(default=50.0, gt=0)


class DensityQuery(CamelModel):
    bounds: BoundingBox
    grid_size: int = Field(default=100, ge=1)


class ClusterQuery(DataQuery):
    cluster_radius_meters: float = Field(default=50.0, gt=0)
    min_cluster_size: int = Field(default=1, ge=1)


class CleanupRequest(CamelModel):
    max_age: Optional[int] = Field(default=None, ge=0)


class RelationshipsIn(CamelModel):
    edges: List[Relationship]


class MaintenanceRequest(CamelModel):
    action: str
    days_to_keep: int = Field(default=30, ge=0)


# Response bodies


class SignalCreated(CamelModel):
    id: str


class SignalList(CamelModel):
    signals: List[Signal]


class DeviceList(CamelModel):
    devices: List[Device]


class ClusterList(CamelModel):
    clusters: List[Cluster]


class DensityList(CamelModel):
    cells: List[DensityCell]


class RelationshipList(CamelModel):
    relationships: List[Relationship]


class StoredCount(CamelModel):
    stored: int


class SignalCleanupOut(CamelModel):
    deleted: int
    deleted_devices: int
    deleted_relationships: int
    interrupted: bool
