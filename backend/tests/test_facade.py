from itertools import islice

import pytest

from conftest import BASE_TS, NOW, signal_record
from rfmap.config import Settings
from rfmap.db import SqlSignalStore
from rfmap.facade import SignalDataFacade, make_filter, open_backend
from rfmap.local_store import MemorySignalStore
from rfmap.retention import RetentionService
from rfmap.schemas import BoundingBox, DataQuery, GeoPoint
from rfmap.spatial import SpatialQueryEngine

RECORDS = [
    signal_record("f1", power=-50.0, deviceId="dev-a", signalType="wifi", timestamp=BASE_TS + 1),
    signal_record("f2", power=-55.0, lat=40.7129, deviceId="dev-b", signalType="bluetooth", timestamp=BASE_TS + 2),
    signal_record("f3", power=-60.0, lon=-74.0061, deviceId="dev-a", signalType="bluetooth", timestamp=BASE_TS + 3),
    signal_record("f4", power=-65.0, lat=40.7127, type="wifi", timestamp=BASE_TS + 4),
    signal_record("f5", power=-70.0, lat=40.7300, deviceId="dev-c", timestamp=BASE_TS + 5),
]


def facade_for(backend):
    settings = Settings()
    return SignalDataFacade(
        backend,
        settings,
        SpatialQueryEngine(backend, settings, clock=lambda: NOW),
        RetentionService(backend, settings, clock=lambda: NOW),
    )


@pytest.fixture
def both(tmp_path):
    settings = Settings(database_url=f"sqlite:///{tmp_path / 'facade.db'}")
    facades = [
        facade_for(open_backend(settings)),
        facade_for(open_backend(Settings(storage_mode="local"))),
    ]
    for facade in facades:
        facade.store_signals_batch(RECORDS)
    yield facades
    for facade in facades:
        facade.close()


def test_open_backend_selects_the_tier(tmp_path):
    server = open_backend(Settings(database_url=f"sqlite:///{tmp_path / 'x.db'}"))
    local = open_backend(Settings(storage_mode="local"))
    try:
        assert isinstance(server, SqlSignalStore)
        assert isinstance(local, MemorySignalStore)
        assert (server.name, local.name) == ("server", "local")
    finally:
        server.close()
        local.close()

    with pytest.raises(ValueError):
        open_backend(Settings(storage_mode="browser"))


@pytest.mark.parametrize(
    "device_ids, signal_types, expected",
    [
        ([], [], ["f4", "f3", "f2", "f1"]),
        (["dev-a"], [], ["f3", "f1"]),
        ([], ["bluetooth"], ["f3", "f2"]),
        (["dev-a"], ["wifi"], ["f1"]),
        ([], ["wifi"], ["f4", "f1"]),
        (["nobody"], [], []),
    ],
)
def test_filters_behave_the_same_on_both_tiers(both, device_ids, signal_types, expected):
    query = DataQuery(lat=40.7128, lon=-74.0060, radius_meters=100.0, device_ids=device_ids, signal_types=signal_types)
    for facade in both:
        assert [signal.id for signal in facade.query_signals(query)] == expected, facade.mode


def test_filters_apply_before_the_limit(both):
    query = DataQuery(lat=40.7128, lon=-74.0060, radius_meters=100.0, limit=1, device_ids=["dev-a"])
    for facade in both:
        assert [signal.id for signal in facade.query_signals(query)] == ["f3"]


def test_make_filter_without_criteria_is_none():
    assert make_filter([], []) is None


def test_every_read_matches_across_tiers(both):
    server, local = both
    bbox = BoundingBox(min_lat=40.70, max_lat=40.72, min_lon=-74.01, max_lon=-74.00)
    query = DataQuery(lat=40.7128, lon=-74.0060, radius_meters=3_000.0)

    assert server.find_by_id("f2") == local.find_by_id("f2")
    assert list(islice(server.find_recent(3), 3)) == list(islice(local.find_recent(3), 3))
    assert server.get_devices_in_area(bbox) == local.get_devices_in_area(bbox)
    assert server.get_device("dev-a") == local.get_device("dev-a")
    points = [GeoPoint(lat=40.7128, lon=-74.0060), GeoPoint(lat=40.7300, lon=-74.0060)]
    assert server.find_signals_along_path(points, 50.0) == local.find_signals_along_path(points, 50.0)
    assert server.get_signal_density(bbox, 5) == local.get_signal_density(bbox, 5)
    assert server.get_statistics(3_600_000) == local.get_statistics(3_600_000)
    assert server.cluster_signals(query, 50.0) == local.cluster_signals(query, 50.0)


def test_clusters_through_the_facade(both):
    query = DataQuery(lat=40.7128, lon=-74.0060, radius_meters=3_000.0)
    for facade in both:
        clusters = facade.cluster_signals(query, 50.0, min_cluster_size=2)
        assert sorted(len(c.member_ids) for c in clusters) == [1, 4]


def test_cleanup_through_the_facade(both):
    for facade in both:
        result = facade.cleanup_old_data(0)
        assert result.deleted_signals == len(RECORDS)
        assert result.deleted_devices == 3
        assert facade.get_device("dev-a") is None


def test_find_recent_limit_is_checked(both):
    with pytest.raises(ValueError):
        both[0].find_recent(0)
