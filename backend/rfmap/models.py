from sqlalchemy import BigInteger, Boolean, Column, Float, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class SignalModel(Base):
    __tablename__ = "signals"

    signal_id = Column(String, primary_key=True)
    device_id = Column(String, index=True, nullable=True)
    timestamp = Column(BigInteger, index=True, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    altitude = Column(Float, nullable=True)
    power = Column(Float, nullable=False)
    frequency = Column(Float, nullable=False)
    bandwidth = Column(Float, nullable=True)
    modulation = Column(String, nullable=True)
    source = Column(String, nullable=False)
    metadata_json = Column(JSON, nullable=False, default=dict)
    grid_lat = Column(Integer, nullable=False)
    grid_lon = Column(Integer, nullable=False)
    # Set instead of deleting when rollups keep the originals.
    rolled_up = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_signals_grid_cell", "grid_lat", "grid_lon", "timestamp"),
        Index("ix_signals_source_timestamp", "source", "timestamp"),
    )


class DeviceModel(Base):
    __tablename__ = "devices"

    device_id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    manufacturer = Column(String, nullable=True)
    first_seen = Column(BigInteger, nullable=False)
    last_seen = Column(BigInteger, index=True, nullable=False)
    avg_power = Column(Float, nullable=False)
    freq_min = Column(Float, nullable=False)
    freq_max = Column(Float, nullable=False)
    last_lat = Column(Float, nullable=False)
    last_lon = Column(Float, nullable=False)
    signal_count = Column(Integer, nullable=False, default=0)
    metadata_json = Column(JSON, nullable=False, default=dict)

    __table_args__ = (Index("ix_devices_last_position", "last_lat", "last_lon"),)


class RelationshipModel(Base):
    __tablename__ = "relationships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_a = Column(String, index=True, nullable=False)
    device_b = Column(String, index=True, nullable=False)
    kind = Column(String, nullable=False)
    weight = Column(Float, nullable=False, default=1.0)
    last_observed = Column(BigInteger, nullable=False)

    __table_args__ = (UniqueConstraint("device_a", "device_b", "kind", name="uq_relationship_edge"),)


class SignalRollupModel(Base):
    __tablename__ = "signal_rollups"

    bucket_start = Column(BigInteger, primary_key=True)
    grid_lat = Column(Integer, primary_key=True)
    grid_lon = Column(Integer, primary_key=True)
    count = Column(Integer, nullable=False)
    min_power = Column(Float, nullable=False)
    avg_power = Column(Float, nullable=False)
    max_power = Column(Float, nullable=False)
    created_at = Column(BigInteger, nullable=False)


class HourlyStatsModel(Base):
    __tablename__ = "signal_stats_hourly"

    hour_start = Column(BigInteger, primary_key=True)
    total_signals = Column(Integer, nullable=False)
    unique_devices = Column(Integer, nullable=False)
    avg_power = Column(Float, nullable=False)
    min_power = Column(Float, nullable=False)
    max_power = Column(Float, nullable=False)
    avg_frequency = Column(Float, nullable=False)
    min_lat = Column(Float, nullable=False)
    max_lat = Column(Float, nullable=False)
    min_lon = Column(Float, nullable=False)
    max_lon = Column(Float, nullable=False)
    created_at = Column(BigInteger, nullable=False)


class DeviceDailyStatsModel(Base):
    __tablename__ = "device_stats_daily"

    day_start = Column(BigInteger, primary_key=True)
    device_id = Column(String, primary_key=True)
    signal_count = Column(Integer, nullable=False)
    avg_power = Column(Float, nullable=False)
    freq_min = Column(Float, nullable=False)
    freq_max = Column(Float, nullable=False)
    # Bit h set when the device was heard during UTC hour h of the day.
    hour_mask = Column(Integer, nullable=False)
    avg_lat = Column(Float, nullable=False)
    avg_lon = Column(Float, nullable=False)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_device_stats_daily_device", "device_id", "day_start"),)
