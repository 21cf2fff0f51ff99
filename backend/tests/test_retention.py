import threading

import pytest

from conftest import NOW, signal_record
from rfmap.config import HOUR_MS, Settings
from rfmap.retention import RetentionService
from rfmap.schemas import Relationship
from rfmap.spatial import SpatialQueryEngine


def service(backend, **overrides):
    return RetentionService(backend, Settings(**overrides), clock=lambda: NOW)


def test_cleanup_respects_the_cutoff(backend):
    backend.insert_signals_batch(
        [
            signal_record("old", timestamp=NOW - 2 * HOUR_MS, deviceId="gone"),
            signal_record("edge", timestamp=NOW - HOUR_MS, deviceId="kept"),
            signal_record("new", timestamp=NOW - 60_000, deviceId="kept"),
        ]
    )
    backend.upsert_relationships(
        [
            Relationship(device_a="gone", device_b="kept", kind="co-located", last_observed=NOW),
            Relationship(device_a="kept", device_b="other", kind="co-located", last_observed=NOW),
        ]
    )

    result = service(backend).run_cleanup(HOUR_MS)

    assert result.deleted_signals == 1
    assert result.deleted_devices == 1
    assert result.deleted_relationships == 1
    assert not result.interrupted
    assert backend.find_by_id("old") is None
    assert backend.find_by_id("edge") is not None
    assert backend.get_device("gone") is None
    assert backend.get_device("kept").signal_count == 2
    assert [(e.device_a, e.device_b) for e in backend.relationships()] == [("kept", "other")]


def test_cleanup_runs_in_chunks(backend):
    backend.insert_signals_batch([signal_record(f"o{i}", timestamp=NOW - 2 * HOUR_MS - i) for i in range(5)])

    result = service(backend, cleanup_chunk_size=2).run_cleanup(HOUR_MS)

    assert result.deleted_signals == 5
    assert result.chunks == 3
    assert backend.stats().signal_count == 0


def test_cleanup_stops_when_asked(backend):
    backend.insert_signals_batch([signal_record(f"o{i}", timestamp=NOW - 2 * HOUR_MS, deviceId="dev") for i in range(3)])
    stop = threading.Event()
    stop.set()

    result = service(backend, cleanup_chunk_size=1).run_cleanup(HOUR_MS, stop_event=stop)

    assert result.interrupted
    assert result.deleted_signals == 0
    assert backend.get_device("dev") is not None


def test_cleanup_rejects_negative_age(backend):
    with pytest.raises(ValueError):
        service(backend).run_cleanup(-1)


def test_aggregation_rolls_up_and_deletes_originals(backend):
    bucket = (NOW - 3 * HOUR_MS) // HOUR_MS * HOUR_MS
    backend.insert_signals_batch(
        [
            signal_record("r1", power=-50.0, timestamp=bucket + 1, deviceId="dev"),
            signal_record("r2", power=-70.0, timestamp=bucket + 2, deviceId="dev"),
            signal_record("r3", power=-60.0, timestamp=bucket + 3, lat=40.80),
            signal_record("fresh", timestamp=NOW - 60_000),
        ]
    )

    result = service(backend, cleanup_chunk_size=2).run_aggregation()

    assert result.rolled_up_signals == 3
    assert result.chunks == 2
    assert result.deleted_devices == 1
    rollups = backend.rollups_between(0, NOW)
    assert sum(r.count for r in rollups) == 3
    near = next(r for r in rollups if r.count == 2)
    assert near.bucket_start == bucket
    assert near.avg_power == pytest.approx(-60.0)
    assert (near.min_power, near.max_power) == (-70.0, -50.0)
    assert near.created_at == NOW
    assert backend.find_by_id("r1") is None
    assert backend.find_by_id("fresh") is not None


def test_aggregation_merges_into_existing_rollups(backend):
    bucket = (NOW - 3 * HOUR_MS) // HOUR_MS * HOUR_MS
    backend.insert_signals_batch([signal_record("m1", power=-40.0, timestamp=bucket + 10)])
    service(backend).run_aggregation()
    backend.insert_signals_batch([signal_record("m2", power=-80.0, timestamp=bucket + 20), signal_record("m3", power=-60.0, timestamp=bucket + 30)])
    service(backend).run_aggregation()

    (rollup,) = backend.rollups_between(0, NOW)
    assert rollup.count == 3
    assert rollup.avg_power == pytest.approx(-60.0)
    assert (rollup.min_power, rollup.max_power) == (-80.0, -40.0)


def test_mark_mode_keeps_originals_out_of_queries(backend):
    old = NOW - 3 * HOUR_MS
    backend.insert_signals_batch([signal_record("k1", timestamp=old, deviceId="dev"), signal_record("k2", timestamp=old + 1)])

    result = service(backend, aggregate_delete_originals=False).run_aggregation()
    again = service(backend, aggregate_delete_originals=False).run_aggregation()

    assert result.rolled_up_signals == 2
    assert again.rolled_up_signals == 0
    assert backend.find_by_id("k1") is not None
    assert backend.get_device("dev") is not None
    engine = SpatialQueryEngine(backend, Settings(), clock=lambda: NOW)
    assert engine.find_signals_in_radius(40.7128, -74.0060, 100.0) == []
    assert sum(r.count for r in backend.rollups_between(0, NOW)) == 2


def test_export_and_rollup_retention(backend):
    day = 24 * HOUR_MS
    backend.insert_signals_batch(
        [
            signal_record("ancient", timestamp=NOW - 40 * day),
            signal_record("recent", timestamp=NOW - 2 * day),
        ]
    )
    retention = service(backend)
    retention.run_aggregation()

    export = retention.export_aggregated_data(NOW - 50 * day, NOW)
    assert len(export.spatial_data) == 2
    assert len(export.hourly_stats) == 2
    assert export.daily_devices == []
    assert len(retention.export_recent_rollups(7).spatial_data) == 1

    # One heatmap cell and one hourly row age out.
    assert retention.cleanup_aggregated_data(30) == 2
    (left,) = retention.export_aggregated_data(0, NOW).spatial_data
    assert left.bucket_start >= NOW - 30 * day

    with pytest.raises(ValueError):
        retention.export_aggregated_data(NOW, 0)


def test_hourly_and_device_daily_rollups(backend):
    day_start = (NOW - 3 * 24 * HOUR_MS) // (24 * HOUR_MS) * (24 * HOUR_MS)
    nine = day_start + 9 * HOUR_MS
    backend.insert_signals_batch(
        [
            signal_record("h1", power=-50.0, frequency=2_412_000_000.0, lat=40.70, timestamp=nine + 1, deviceId="a"),
            signal_record("h2", power=-70.0, frequency=2_462_000_000.0, lat=40.72, timestamp=nine + 2, deviceId="a"),
            signal_record("h3", power=-60.0, timestamp=nine + 3, deviceId="b"),
            signal_record("h4", power=-60.0, timestamp=nine + 4),
            signal_record("h5", power=-40.0, timestamp=day_start + 14 * HOUR_MS, deviceId="a"),
        ]
    )

    # Chunks of two split device "a" across passes; the merged rows must match one pass.
    service(backend, cleanup_chunk_size=2).run_aggregation()
    export = service(backend).export_aggregated_data(day_start, day_start + 24 * HOUR_MS)

    morning, afternoon = export.hourly_stats
    assert morning.hour_start == nine
    assert morning.total_signals == 4
    assert morning.unique_devices == 2
    assert morning.avg_power == pytest.approx(-60.0)
    assert (morning.min_power, morning.max_power) == (-70.0, -50.0)
    assert (morning.min_lat, morning.max_lat) == (40.70, 40.72)
    assert morning.coverage_area_km2 == pytest.approx(0.0)
    assert afternoon.total_signals == 1
    assert afternoon.unique_devices == 1

    device_a, device_b = export.daily_devices
    assert device_a.device_id == "a"
    assert device_a.day_start == day_start
    assert device_a.signal_count == 3
    assert device_a.avg_power == pytest.approx(-160.0 / 3)
    assert (device_a.freq_min, device_a.freq_max) == (2_412_000_000.0, 2_462_000_000.0)
    assert (device_a.first_hour, device_a.last_hour, device_a.active_hours) == (9, 14, 2)
    assert device_a.avg_lat == pytest.approx((40.70 + 40.72 + 40.7128) / 3)
    assert device_a.avg_lon == pytest.approx(-74.0060)
    assert device_b.signal_count == 1


def test_scheduled_cleanup_ages_each_source_separately(backend):
    day = 24 * HOUR_MS
    sweep = {"source": "hackrf"}
    backend.insert_signals_batch(
        [
            dict(signal_record("sweep-old", timestamp=NOW - 2 * HOUR_MS), **sweep),
            dict(signal_record("sweep-new", timestamp=NOW - 30 * 60_000), **sweep),
            signal_record("scan-mid", timestamp=NOW - 2 * day),
            signal_record("scan-old", timestamp=NOW - 8 * day),
            dict(signal_record("manual-mid", timestamp=NOW - 2 * day), source="manual"),
        ]
    )
    retention = service(backend, retention_ms=day)

    result = retention.run_cleanup()

    assert result.deleted_signals == 3
    assert {s for s in ("sweep-old", "sweep-new", "scan-mid", "scan-old", "manual-mid") if backend.find_by_id(s)} == {
        "sweep-new",
        "scan-mid",
    }

    # An explicit age overrides the per-source windows.
    assert retention.run_cleanup(HOUR_MS).deleted_signals == 1
    assert backend.find_by_id("sweep-new") is not None


def test_stats_and_growth(backend):
    backend.insert_signals_batch(
        [
            signal_record("g1", timestamp=NOW - 30 * 60_000, deviceId="a"),
            signal_record("g2", timestamp=NOW - 31 * 60_000, deviceId="b"),
            signal_record("g3", timestamp=NOW - 3 * HOUR_MS, deviceId="a"),
        ]
    )
    retention = service(backend)

    stats = retention.get_stats()
    assert stats.signal_count == 3
    assert stats.device_count == 2
    assert stats.oldest_timestamp == NOW - 3 * HOUR_MS
    assert stats.newest_timestamp == NOW - 30 * 60_000
    assert stats.storage_size > 0

    trends = retention.get_growth_trends(24)
    assert sum(bucket.signal_count for bucket in trends) == 3
    assert trends == sorted(trends, key=lambda b: -b.bucket_start)
    assert all(bucket.bucket_start % HOUR_MS == 0 for bucket in trends)


def test_storage_reports(backend):
    backend.insert_signals_batch([signal_record("h1")])
    retention = service(backend)

    health = retention.health_report()
    assert health["integrity"] == "ok"
    assert {table["name"] for table in health["tables"]} >= {"signals", "devices", "relationships", "signal_rollups"}
    assert isinstance(health["recommendations"], list)

    vacuum = retention.vacuum()
    assert vacuum.saved == max(0, vacuum.before - vacuum.after)
    retention.analyze()

    report = retention.index_report()
    assert "signals" in report["indexes"]
    optimized = retention.optimize()
    assert set(optimized) == {"vacuum", "health"}
