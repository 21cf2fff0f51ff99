import threading
from contextlib import nullcontext
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import Integer, cast, create_engine, delete, event, exists, func, inspect, or_, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from . import rollups as rollup_math
from .config import DAY_MS
from .devices import BAND_WIDTH_HZ, fold_signal
from .geo import CellRange, GeoGrid
from .logging_config import get_logger
from .models import (
    Base,
    DeviceDailyStatsModel,
    DeviceModel,
    HourlyStatsModel,
    RelationshipModel,
    SignalModel,
    SignalRollupModel,
)
from .notify import ChangeNotifier
from .schemas import (
    BoundingBox,
    Device,
    DeviceDailyStats,
    GeoPoint,
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

logger = get_logger("db")

# Keep IN (...) lists under SQLite's bound-parameter limit.
IN_CHUNK = 500
SCAN_BATCH = 500


def _chunks(items: Sequence, size: int = IN_CHUNK) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def is_memory_url(database_url: str) -> bool:
    return database_url.startswith("sqlite") and (
        database_url.endswith(":memory:") or database_url in ("sqlite://", "sqlite:///")
    )


def make_engine(database_url: str):
    engine_kwargs: Dict[str, Any] = {"future": True}
    is_sqlite = database_url.startswith("sqlite")
    in_memory = is_memory_url(database_url)

    # SQLite needs thread override for the worker pool; in-memory gets StaticPool.
    if is_sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if in_memory:
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_kwargs)

    if is_sqlite and not in_memory:

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            # WAL lets readers keep a consistent snapshot while a batch commits.
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return engine


def _signal_row(signal: Signal, grid: GeoGrid) -> SignalModel:
    grid_lat, grid_lon = grid.cell_of(signal.lat, signal.lon)
    return SignalModel(
        signal_id=signal.id,
        device_id=signal.device_id,
        timestamp=signal.timestamp,
        latitude=signal.lat,
        longitude=signal.lon,
        altitude=signal.altitude,
        power=signal.power,
        frequency=signal.frequency,
        bandwidth=signal.bandwidth,
        modulation=signal.modulation,
        source=signal.source.value,
        metadata_json=dict(signal.metadata),
        grid_lat=grid_lat,
        grid_lon=grid_lon,
        rolled_up=False,
    )


def _row_signal(row: SignalModel) -> Signal:
    return Signal(
        id=row.signal_id,
        lat=row.latitude,
        lon=row.longitude,
        altitude=row.altitude,
        power=row.power,
        frequency=row.frequency,
        bandwidth=row.bandwidth,
        modulation=row.modulation,
        timestamp=row.timestamp,
        source=row.source,
        metadata=row.metadata_json or {},
    )


def _row_device(row: DeviceModel) -> Device:
    return Device(
        device_id=row.device_id,
        type=row.type,
        manufacturer=row.manufacturer,
        first_seen=row.first_seen,
        last_seen=row.last_seen,
        avg_power=row.avg_power,
        freq_min=row.freq_min,
        freq_max=row.freq_max,
        last_position=GeoPoint(lat=row.last_lat, lon=row.last_lon),
        signal_count=row.signal_count,
        metadata=row.metadata_json or {},
    )


def _apply_device(row: DeviceModel, device: Device) -> None:
    row.type = device.type
    row.manufacturer = device.manufacturer
    row.first_seen = device.first_seen
    row.last_seen = device.last_seen
    row.avg_power = device.avg_power
    row.freq_min = device.freq_min
    row.freq_max = device.freq_max
    row.last_lat = device.last_position.lat
    row.last_lon = device.last_position.lon
    row.signal_count = device.signal_count
    row.metadata_json = dict(device.metadata)


def _row_relationship(row: RelationshipModel) -> Relationship:
    return Relationship(
        device_a=row.device_a,
        device_b=row.device_b,
        kind=row.kind,
        weight=row.weight,
        last_observed=row.last_observed,
    )


def _row_rollup(row: SignalRollupModel) -> Rollup:
    return Rollup(
        bucket_start=row.bucket_start,
        grid_lat=row.grid_lat,
        grid_lon=row.grid_lon,
        count=row.count,
        min_power=row.min_power,
        avg_power=row.avg_power,
        max_power=row.max_power,
        created_at=row.created_at,
    )


_HOURLY_FIELDS = (
    "total_signals",
    "unique_devices",
    "avg_power",
    "min_power",
    "max_power",
    "avg_frequency",
    "min_lat",
    "max_lat",
    "min_lon",
    "max_lon",
)
_DEVICE_DAY_FIELDS = ("signal_count", "avg_power", "freq_min", "freq_max", "hour_mask", "avg_lat", "avg_lon")


def _row_hourly(row: HourlyStatsModel) -> HourlyStats:
    return HourlyStats(
        hour_start=row.hour_start,
        created_at=row.created_at,
        **{name: getattr(row, name) for name in _HOURLY_FIELDS},
    )


def _row_device_day(row: DeviceDailyStatsModel) -> DeviceDailyStats:
    return DeviceDailyStats(
        day_start=row.day_start,
        device_id=row.device_id,
        created_at=row.created_at,
        **{name: getattr(row, name) for name in _DEVICE_DAY_FIELDS},
    )


def _apply_fields(row, stats, names: Sequence[str]) -> None:
    for name in names:
        setattr(row, name, getattr(stats, name))


def _bbox_filters(lat_col, lon_col, bbox: BoundingBox) -> list:
    filters = [lat_col >= bbox.min_lat, lat_col <= bbox.max_lat]
    if bbox.crosses_antimeridian:
        filters.append(or_(lon_col >= bbox.min_lon, lon_col <= bbox.max_lon))
    else:
        filters.extend([lon_col >= bbox.min_lon, lon_col <= bbox.max_lon])
    return filters


class SqlSignalStore(SignalBackend):
    """Durable tier on SQLAlchemy. Each public call runs in its own session."""

    name = "server"

    def __init__(self, database_url: str, grid: GeoGrid, notifier: Optional[ChangeNotifier] = None) -> None:
        super().__init__(grid, notifier)
        self.database_url = database_url
        self.engine = make_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False, future=True)
        # SQLite allows one writer; serialising here avoids busy-snapshot failures under WAL.
        self._write_lock = threading.Lock() if self.is_sqlite else nullcontext()
        # An in-memory database is one shared connection with no snapshot isolation
        # between sessions, so reads queue behind writes as well.
        self._read_lock = nullcontext()
        if is_memory_url(database_url):
            self._write_lock = self._read_lock = threading.RLock()
        Base.metadata.create_all(self.engine)
        logger.info("store_opened", backend=self.name, url=self.engine.url.render_as_string(hide_password=True))

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == "sqlite"

    # Ingestion

    def _commit_batch(self, signals: List[Signal]) -> Set[str]:
        ids = [signal.id for signal in signals]
        with self._write_lock, self.SessionLocal() as session:
            try:
                existing: Set[str] = set()
                for chunk in _chunks(ids):
                    existing.update(
                        session.scalars(select(SignalModel.signal_id).where(SignalModel.signal_id.in_(chunk)))
                    )
                fresh = [signal for signal in signals if signal.id not in existing]
                session.add_all([_signal_row(signal, self.grid) for signal in fresh])

                device_ids = sorted({signal.device_id for signal in fresh if signal.device_id})
                rows: Dict[str, DeviceModel] = {}
                for chunk in _chunks(device_ids):
                    for row in session.scalars(select(DeviceModel).where(DeviceModel.device_id.in_(chunk))):
                        rows[row.device_id] = row

                aggregates = {device_id: _row_device(row) for device_id, row in rows.items()}
                for signal in fresh:
                    if signal.device_id:
                        aggregates[signal.device_id] = fold_signal(aggregates.get(signal.device_id), signal)

                for device_id in device_ids:
                    row = rows.get(device_id)
                    if row is None:
                        row = DeviceModel(device_id=device_id)
                        session.add(row)
                    _apply_device(row, aggregates[device_id])

                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("signal_batch_commit_failed", count=len(ids), first_id=ids[0], last_id=ids[-1])
                raise
        return existing

    # Reads

    def find_by_id(self, signal_id: str) -> Optional[Signal]:
        with self._read_lock, self.SessionLocal() as session:
            row = session.get(SignalModel, signal_id)
            return _row_signal(row) if row is not None else None

    def find_recent(self, limit: int) -> Iterator[Signal]:
        query = (
            select(SignalModel)
            .where(SignalModel.rolled_up.is_(False))
            .order_by(SignalModel.timestamp.desc(), SignalModel.signal_id.asc())
            .limit(limit)
            .execution_options(yield_per=SCAN_BATCH)
        )
        with self._read_lock, self.SessionLocal() as session:
            for row in session.scalars(query):
                yield _row_signal(row)

    def scan_cells(self, cells: CellRange, start_time: int, end_time: int) -> Iterator[Signal]:
        col_filters = [SignalModel.grid_lon.between(lo, hi) for lo, hi in cells.cols]
        query = (
            select(SignalModel)
            .where(
                SignalModel.grid_lat.between(cells.rows[0], cells.rows[1]),
                or_(*col_filters),
                SignalModel.timestamp >= start_time,
                SignalModel.timestamp <= end_time,
                SignalModel.rolled_up.is_(False),
            )
            .order_by(SignalModel.timestamp.desc(), SignalModel.signal_id.asc())
            .execution_options(yield_per=SCAN_BATCH)
        )
        with self._read_lock, self.SessionLocal() as session:
            for row in session.scalars(query):
                yield _row_signal(row)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._read_lock, self.SessionLocal() as session:
            row = session.get(DeviceModel, device_id)
            return _row_device(row) if row is not None else None

    def devices_in_bbox(self, bbox: BoundingBox) -> List[Device]:
        query = (
            select(DeviceModel)
            .where(*_bbox_filters(DeviceModel.last_lat, DeviceModel.last_lon, bbox))
            .order_by(DeviceModel.last_seen.desc(), DeviceModel.device_id.asc())
        )
        with self._read_lock, self.SessionLocal() as session:
            return [_row_device(row) for row in session.scalars(query)]

    def window_statistics(self, since: int, until: int, bbox: Optional[BoundingBox]) -> SignalStatistics:
        filters = [
            SignalModel.timestamp >= since,
            SignalModel.timestamp <= until,
            SignalModel.rolled_up.is_(False),
        ]
        if bbox is not None:
            filters.extend(_bbox_filters(SignalModel.latitude, SignalModel.longitude, bbox))

        # Half-up rounding to the 100 MHz band, same as devices.frequency_band.
        band = cast(SignalModel.frequency / BAND_WIDTH_HZ + 0.5, Integer).label("band")
        with self._read_lock, self.SessionLocal() as session:
            total, unique, avg_power, min_power, max_power = session.execute(
                select(
                    func.count(SignalModel.signal_id),
                    func.count(func.distinct(SignalModel.device_id)),
                    func.avg(SignalModel.power),
                    func.min(SignalModel.power),
                    func.max(SignalModel.power),
                ).where(*filters)
            ).one()
            band_rows = session.execute(select(band, func.count()).where(*filters).group_by(band)).all()

        return SignalStatistics(
            total_signals=total or 0,
            unique_devices=unique or 0,
            avg_power=float(avg_power) if avg_power is not None else 0.0,
            min_power=float(min_power) if min_power is not None else 0.0,
            max_power=float(max_power) if max_power is not None else 0.0,
            freq_bands={str(int(int(b) * BAND_WIDTH_HZ)): count for b, count in band_rows},
            time_range=TimeRange(start=since, end=until),
        )

    # Relationships

    def upsert_relationships(self, relationships: Iterable[Relationship]) -> int:
        written = 0
        with self._write_lock, self.SessionLocal() as session:
            try:
                for edge in relationships:
                    row = session.scalars(
                        select(RelationshipModel).where(
                            RelationshipModel.device_a == edge.device_a,
                            RelationshipModel.device_b == edge.device_b,
                            RelationshipModel.kind == edge.kind,
                        )
                    ).first()
                    if row is None:
                        session.add(
                            RelationshipModel(
                                device_a=edge.device_a,
                                device_b=edge.device_b,
                                kind=edge.kind,
                                weight=edge.weight,
                                last_observed=edge.last_observed,
                            )
                        )
                        session.flush()
                    else:
                        row.weight = edge.weight
                        row.last_observed = max(row.last_observed, edge.last_observed)
                    written += 1
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("relationship_upsert_failed", written=written)
                raise
        return written

    def relationships(self, device_ids: Optional[Sequence[str]] = None, limit: int = 1000) -> List[Relationship]:
        query = select(RelationshipModel)
        if device_ids:
            query = query.where(
                or_(RelationshipModel.device_a.in_(device_ids), RelationshipModel.device_b.in_(device_ids))
            )
        query = query.order_by(RelationshipModel.last_observed.desc(), RelationshipModel.id.asc()).limit(limit)
        with self._read_lock, self.SessionLocal() as session:
            return [_row_relationship(row) for row in session.scalars(query)]

    # Maintenance

    def delete_signals_before(self, cutoff: int, chunk_size: int, sources: Optional[Sequence[str]] = None) -> int:
        filters = [SignalModel.timestamp < cutoff]
        if sources is not None:
            filters.append(SignalModel.source.in_(list(sources)))
        with self._write_lock, self.SessionLocal() as session:
            ids = session.scalars(
                select(SignalModel.signal_id)
                .where(*filters)
                .order_by(SignalModel.timestamp.asc(), SignalModel.signal_id.asc())
                .limit(chunk_size)
            ).all()
            if not ids:
                return 0
            session.execute(delete(SignalModel).where(SignalModel.signal_id.in_(ids)))
            session.commit()
        return len(ids)

    def delete_orphan_devices(self) -> Tuple[int, int]:
        orphans = select(DeviceModel.device_id).where(
            ~exists().where(SignalModel.device_id == DeviceModel.device_id)
        )
        deleted_devices = 0
        deleted_relationships = 0
        with self._write_lock, self.SessionLocal() as session:
            ids = list(session.scalars(orphans))
            for chunk in _chunks(ids):
                result = session.execute(
                    delete(RelationshipModel).where(
                        or_(RelationshipModel.device_a.in_(chunk), RelationshipModel.device_b.in_(chunk))
                    )
                )
                deleted_relationships += result.rowcount or 0
                result = session.execute(delete(DeviceModel).where(DeviceModel.device_id.in_(chunk)))
                deleted_devices += result.rowcount or 0
            session.commit()
        return deleted_devices, deleted_relationships

    def _merge_stats(self, session, samples: List[rollup_math.Sample], now: int) -> None:
        days = rollup_math.accumulate_device_days(samples)
        for key, acc in days.items():
            row = session.get(DeviceDailyStatsModel, key)
            current = _row_device_day(row) if row is not None else None
            merged = rollup_math.merge_device_day(current, key, acc, now)
            if row is None:
                row = DeviceDailyStatsModel(day_start=key[0], device_id=key[1], created_at=now)
                session.add(row)
            _apply_fields(row, merged, _DEVICE_DAY_FIELDS)
        session.flush()

        for hour_start, acc in rollup_math.accumulate_hourly(samples).items():
            row = session.get(HourlyStatsModel, hour_start)
            current = _row_hourly(row) if row is not None else None
            merged = rollup_math.merge_hourly(current, hour_start, acc, now)
            # Recount from the device-day masks so devices seen in earlier chunks count once.
            unique = session.scalar(
                select(func.count())
                .select_from(DeviceDailyStatsModel)
                .where(
                    DeviceDailyStatsModel.day_start == rollup_math.bucket_start(hour_start, DAY_MS),
                    DeviceDailyStatsModel.hour_mask.op("&")(rollup_math.hour_bit(hour_start)) != 0,
                )
            )
            if row is None:
                row = HourlyStatsModel(hour_start=hour_start, created_at=now)
                session.add(row)
            _apply_fields(row, merged.model_copy(update={"unique_devices": unique or 0}), _HOURLY_FIELDS)

    def rollup_chunk(self, cutoff: int, chunk_size: int, bucket_ms: int, delete_originals: bool, now: int) -> Tuple[int, int]:
        with self._write_lock, self.SessionLocal() as session:
            try:
                rows = session.execute(
                    select(
                        SignalModel.signal_id,
                        SignalModel.timestamp,
                        SignalModel.grid_lat,
                        SignalModel.grid_lon,
                        SignalModel.power,
                        SignalModel.latitude,
                        SignalModel.longitude,
                        SignalModel.frequency,
                        SignalModel.device_id,
                    )
                    .where(SignalModel.timestamp < cutoff, SignalModel.rolled_up.is_(False))
                    .order_by(SignalModel.timestamp.asc(), SignalModel.signal_id.asc())
                    .limit(chunk_size)
                ).all()
                if not rows:
                    return 0, 0

                groups = rollup_math.accumulate(
                    ((row.timestamp, row.grid_lat, row.grid_lon, row.power) for row in rows), bucket_ms
                )
                for (bucket, grid_lat, grid_lon), acc in groups.items():
                    row = session.get(SignalRollupModel, (bucket, grid_lat, grid_lon))
                    if row is None:
                        count, min_power, avg_power, max_power = rollup_math.merge(None, acc)
                        session.add(
                            SignalRollupModel(
                                bucket_start=bucket,
                                grid_lat=grid_lat,
                                grid_lon=grid_lon,
                                count=count,
                                min_power=min_power,
                                avg_power=avg_power,
                                max_power=max_power,
                                created_at=now,
                            )
                        )
                    else:
                        row.count, row.min_power, row.avg_power, row.max_power = rollup_math.merge(
                            (row.count, row.min_power, row.avg_power, row.max_power), acc
                        )

                samples = [
                    rollup_math.Sample(row.timestamp, row.latitude, row.longitude, row.power, row.frequency, row.device_id)
                    for row in rows
                ]
                self._merge_stats(session, samples, now)

                ids = [row.signal_id for row in rows]
                if delete_originals:
                    session.execute(delete(SignalModel).where(SignalModel.signal_id.in_(ids)))
                else:
                    session.execute(
                        update(SignalModel).where(SignalModel.signal_id.in_(ids)).values(rolled_up=True)
                    )
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("rollup_chunk_failed", cutoff=cutoff, chunk_size=chunk_size)
                raise
        return len(rows), len(groups)

    def rollups_between(self, start_time: int, end_time: int) -> List[Rollup]:
        query = (
            select(SignalRollupModel)
            .where(SignalRollupModel.bucket_start >= start_time, SignalRollupModel.bucket_start <= end_time)
            .order_by(
                SignalRollupModel.bucket_start.asc(),
                SignalRollupModel.grid_lat.asc(),
                SignalRollupModel.grid_lon.asc(),
            )
        )
        with self._read_lock, self.SessionLocal() as session:
            return [_row_rollup(row) for row in session.scalars(query)]

    def hourly_stats_between(self, start_time: int, end_time: int) -> List[HourlyStats]:
        query = (
            select(HourlyStatsModel)
            .where(HourlyStatsModel.hour_start >= start_time, HourlyStatsModel.hour_start <= end_time)
            .order_by(HourlyStatsModel.hour_start.asc())
        )
        with self._read_lock, self.SessionLocal() as session:
            return [_row_hourly(row) for row in session.scalars(query)]

    def device_days_between(self, start_time: int, end_time: int) -> List[DeviceDailyStats]:
        query = (
            select(DeviceDailyStatsModel)
            .where(DeviceDailyStatsModel.day_start >= start_time, DeviceDailyStatsModel.day_start <= end_time)
            .order_by(DeviceDailyStatsModel.day_start.asc(), DeviceDailyStatsModel.device_id.asc())
        )
        with self._read_lock, self.SessionLocal() as session:
            return [_row_device_day(row) for row in session.scalars(query)]

    def delete_rollups_before(self, cutoff: int) -> int:
        deleted = 0
        with self._write_lock, self.SessionLocal() as session:
            for model, start in (
                (SignalRollupModel, SignalRollupModel.bucket_start),
                (HourlyStatsModel, HourlyStatsModel.hour_start),
                (DeviceDailyStatsModel, DeviceDailyStatsModel.day_start),
            ):
                result = session.execute(delete(model).where(start < cutoff))
                deleted += result.rowcount or 0
            session.commit()
        return deleted

    def _storage_size(self, session) -> int:
        if self.is_sqlite:
            page_count = session.execute(text("PRAGMA page_count")).scalar() or 0
            page_size = session.execute(text("PRAGMA page_size")).scalar() or 0
            return int(page_count) * int(page_size)
        if self.engine.dialect.name == "postgresql":
            return int(session.execute(text("SELECT pg_database_size(current_database())")).scalar() or 0)
        return 0

    def stats(self) -> StoreStats:
        with self._read_lock, self.SessionLocal() as session:
            signal_count, oldest, newest = session.execute(
                select(func.count(SignalModel.signal_id), func.min(SignalModel.timestamp), func.max(SignalModel.timestamp))
            ).one()
            return StoreStats(
                signal_count=signal_count or 0,
                device_count=session.scalar(select(func.count()).select_from(DeviceModel)) or 0,
                relationship_count=session.scalar(select(func.count()).select_from(RelationshipModel)) or 0,
                rollup_count=session.scalar(select(func.count()).select_from(SignalRollupModel)) or 0,
                oldest_timestamp=oldest,
                newest_timestamp=newest,
                storage_size=self._storage_size(session),
            )

    def growth_trends(self, since: int, bucket_ms: int) -> List[GrowthBucket]:
        bucket = ((SignalModel.timestamp // bucket_ms) * bucket_ms).label("bucket")
        query = (
            select(bucket, func.count(SignalModel.signal_id), func.count(func.distinct(SignalModel.device_id)))
            .where(SignalModel.timestamp >= since)
            .group_by(bucket)
            .order_by(bucket.desc())
        )
        with self._read_lock, self.SessionLocal() as session:
            rows = session.execute(query).all()
        return [
            GrowthBucket(bucket_start=int(start), signal_count=count, unique_devices=devices)
            for start, count, devices in rows
        ]

    def _size_now(self) -> int:
        with self._read_lock, self.SessionLocal() as session:
            return self._storage_size(session)

    def vacuum(self) -> VacuumResult:
        before = self._size_now()
        # VACUUM cannot run inside a transaction.
        with self._write_lock, self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.exec_driver_sql("VACUUM")
        after = self._size_now()
        logger.info("store_vacuumed", backend=self.name, before=before, after=after)
        return VacuumResult(before=before, after=after, saved=max(0, before - after))

    def analyze(self) -> None:
        with self._write_lock, self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.exec_driver_sql("ANALYZE")
        logger.info("store_analyzed", backend=self.name)

    def _pragmas(self, session) -> Dict[str, Any]:
        if not self.is_sqlite:
            return {}
        return {
            name: session.execute(text(f"PRAGMA {name}")).scalar()
            for name in ("journal_mode", "synchronous", "cache_size", "page_size")
        }

    def health_report(self) -> Dict[str, Any]:
        inspector = inspect(self.engine)
        tables: List[Dict[str, Any]] = []
        with self._read_lock, self.SessionLocal() as session:
            size = self._storage_size(session)
            integrity = "ok"
            if self.is_sqlite:
                integrity = session.execute(text("PRAGMA integrity_check")).scalar()
            for table in Base.metadata.sorted_tables:
                rows = session.scalar(select(func.count()).select_from(table)) or 0
                tables.append(
                    {"name": table.name, "rows": rows, "indexes": len(inspector.get_indexes(table.name))}
                )
            pragmas = self._pragmas(session)

        recommendations: List[str] = []
        if size > 100 * 1024 * 1024:
            recommendations.append("database is over 100MB; shorten retention or aggregate sooner")
        for table in tables:
            if table["rows"] > 100_000 and table["indexes"] < 2:
                recommendations.append(f"table {table['name']} is large with few indexes")
        if self.is_sqlite and pragmas.get("journal_mode") != "wal":
            recommendations.append("enable WAL journal mode for concurrent readers")

        return {
            "backend": self.name,
            "size": size,
            "integrity": integrity,
            "tables": tables,
            "pragmas": pragmas,
            "recommendations": recommendations,
        }

    def index_report(self) -> Dict[str, Any]:
        inspector = inspect(self.engine)
        indexes = {
            table.name: [
                {"name": index["name"], "columns": list(index["column_names"]), "unique": bool(index["unique"])}
                for index in inspector.get_indexes(table.name)
            ]
            for table in Base.metadata.sorted_tables
        }
        with self._read_lock, self.SessionLocal() as session:
            pragmas = self._pragmas(session)
        return {"backend": self.name, "indexes": indexes, "pragmas": pragmas}

    def close(self) -> None:
        self.engine.dispose()
        super().close()
