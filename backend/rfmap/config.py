import os
from dataclasses import dataclass

# Default keeps local development simple (SQLite file). Override for a shared server database.
DEFAULT_DATABASE_URL = "sqlite:///rfmap.db"

STORAGE_MODE_SERVER = "server"
STORAGE_MODE_LOCAL = "local"

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    storage_mode: str = STORAGE_MODE_SERVER

    # Grid edge should track the typical query radius.
    grid_cell_meters: float = 100.0

    max_radius_meters: float = 50_000.0
    max_query_limit: int = 10_000
    default_query_limit: int = 1_000
    max_time_window_ms: int = 30 * DAY_MS
    max_density_grid: int = 500
    max_path_points: int = 1_000

    # Sweep sensors report dense, short-lived spectrum samples; device scans are kept longer.
    sweep_retention_ms: int = HOUR_MS
    device_scan_retention_ms: int = 7 * DAY_MS
    retention_ms: int = 7 * DAY_MS
    cleanup_chunk_size: int = 500
    cleanup_max_runtime_ms: int = 20_000
    cleanup_interval_seconds: int = 3600

    aggregate_after_ms: int = HOUR_MS
    aggregate_bucket_ms: int = HOUR_MS
    aggregate_delete_originals: bool = True
    aggregate_interval_seconds: int = 600
    rollup_retention_days: int = 30

    worker_pool_size: int = 8
    schedule_maintenance: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=get_database_url(),
            storage_mode=os.getenv("STORAGE_MODE", STORAGE_MODE_SERVER).lower(),
            grid_cell_meters=_env_float("GRID_CELL_METERS", cls.grid_cell_meters),
            max_radius_meters=_env_float("MAX_RADIUS_METERS", cls.max_radius_meters),
            max_query_limit=_env_int("MAX_QUERY_LIMIT", cls.max_query_limit),
            default_query_limit=_env_int("DEFAULT_QUERY_LIMIT", cls.default_query_limit),
            max_time_window_ms=_env_int("MAX_TIME_WINDOW_MS", cls.max_time_window_ms),
            max_density_grid=_env_int("MAX_DENSITY_GRID", cls.max_density_grid),
            max_path_points=_env_int("MAX_PATH_POINTS", cls.max_path_points),
            sweep_retention_ms=_env_int("SWEEP_RETENTION_MS", cls.sweep_retention_ms),
            device_scan_retention_ms=_env_int("DEVICE_SCAN_RETENTION_MS", cls.device_scan_retention_ms),
            retention_ms=_env_int("RETENTION_MS", cls.retention_ms),
            cleanup_chunk_size=_env_int("CLEANUP_CHUNK_SIZE", cls.cleanup_chunk_size),
            cleanup_max_runtime_ms=_env_int("CLEANUP_MAX_RUNTIME_MS", cls.cleanup_max_runtime_ms),
            cleanup_interval_seconds=_env_int("CLEANUP_INTERVAL_SECONDS", cls.cleanup_interval_seconds),
            aggregate_after_ms=_env_int("AGGREGATE_AFTER_MS", cls.aggregate_after_ms),
            aggregate_bucket_ms=_env_int("AGGREGATE_BUCKET_MS", cls.aggregate_bucket_ms),
            aggregate_delete_originals=_env_bool("AGGREGATE_DELETE_ORIGINALS", cls.aggregate_delete_originals),
            aggregate_interval_seconds=_env_int("AGGREGATE_INTERVAL_SECONDS", cls.aggregate_interval_seconds),
            rollup_retention_days=_env_int("ROLLUP_RETENTION_DAYS", cls.rollup_retention_days),
            worker_pool_size=_env_int("WORKER_POOL_SIZE", cls.worker_pool_size),
            schedule_maintenance=_env_bool("SCHEDULE_MAINTENANCE", cls.schedule_maintenance),
        )
