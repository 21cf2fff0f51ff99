import random

import pytest

from rfmap.clustering import centroid_weight, cluster_signals
from rfmap.schemas import Signal


def make(signal_id, lat, lon, power, timestamp=1_000, frequency=2_437_000_000.0, **metadata):
    return Signal(id=signal_id, lat=lat, lon=lon, power=power, frequency=frequency, timestamp=timestamp, metadata=metadata)


def test_nearby_signals_merge_and_distant_one_stays_alone():
    signals = [
        make("a", 40.7128, -74.0060, -60.0, timestamp=1),
        make("b", 40.7129, -74.0061, -65.0, timestamp=2),
        make("c", 40.7130, -74.0062, -70.0, timestamp=3),
        make("d", 40.7200, -74.0100, -55.0, timestamp=4),
    ]

    clusters = cluster_signals(signals, 50.0)

    assert len(clusters) == 2
    merged, single = clusters
    assert merged.member_ids == ["a", "b", "c"]
    assert merged.stats.count == 3
    assert merged.stats.avg_power == pytest.approx(-65.0)
    assert merged.stats.min_power == -70.0
    assert merged.stats.max_power == -60.0
    assert merged.stats.time_range.start == 1
    assert merged.stats.time_range.end == 3
    assert merged.id == "cluster-a"
    assert single.member_ids == ["d"]
    assert single.stats.count == 1
    assert single.stats.avg_power == -55.0


def test_small_groups_degrade_to_singletons():
    far_apart = [make("x", 40.7128, -74.0060, -60.0), make("y", 40.7850, -74.0060, -62.0)]
    clusters = cluster_signals(far_apart, 50.0, min_cluster_size=3)
    assert [c.member_ids for c in clusters] == [["x"], ["y"]]
    assert all(c.stats.count == 1 for c in clusters)

    pair = [make("p", 40.7128, -74.0060, -60.0, timestamp=1), make("q", 40.71285, -74.0060, -62.0, timestamp=2)]
    clusters = cluster_signals(pair, 50.0, min_cluster_size=3)
    assert [c.member_ids for c in clusters] == [["p"], ["q"]]


def test_output_is_a_partition_and_order_independent():
    rng = random.Random(11)
    signals = [
        make(f"s{i}", 40.7 + rng.uniform(-0.002, 0.002), -74.0 + rng.uniform(-0.002, 0.002), rng.uniform(-90, -40), timestamp=rng.randint(0, 20))
        for i in range(300)
    ]

    clusters = cluster_signals(signals, 40.0, min_cluster_size=2)
    members = [member for cluster in clusters for member in cluster.member_ids]
    assert sorted(members) == sorted(s.id for s in signals)
    assert len(members) == len(set(members))

    shuffled = list(signals)
    rng.shuffle(shuffled)
    assert cluster_signals(shuffled, 40.0, min_cluster_size=2) == clusters


def test_members_lie_within_radius_of_seed():
    rng = random.Random(3)
    signals = [make(f"s{i}", 10 + rng.uniform(-0.001, 0.001), 20 + rng.uniform(-0.001, 0.001), -60.0, timestamp=i) for i in range(100)]
    by_id = {s.id: s for s in signals}

    from rfmap.geo import haversine_meters

    for cluster in cluster_signals(signals, 25.0):
        seed = by_id[cluster.member_ids[0]]
        assert all(haversine_meters(seed.lat, seed.lon, by_id[m].lat, by_id[m].lon) <= 25.0 for m in cluster.member_ids)


def test_centroid_is_power_weighted():
    assert centroid_weight(-100.0) == 1.0
    assert centroid_weight(-150.0) == 1.0
    assert centroid_weight(-50.0) == 50.0

    strong = make("strong", 0.0, 0.0001, -50.0, timestamp=1)
    weak = make("weak", 0.0, 0.0, -100.0, timestamp=2)
    (cluster,) = cluster_signals([strong, weak], 50.0)
    assert cluster.centroid.lon == pytest.approx(0.0001 * 50 / 51)
    assert cluster.bounding_box.min_lon == 0.0
    assert cluster.bounding_box.max_lon == 0.0001


def test_band_and_signal_type_summary():
    signals = [
        make("a", 0.0, 0.0, -60.0, timestamp=1, frequency=5_180_000_000.0, signalType="wifi"),
        make("b", 0.0, 0.0, -60.0, timestamp=2, frequency=2_437_000_000.0, signalType="wifi"),
        make("c", 0.0, 0.0, -60.0, timestamp=3, frequency=2_412_000_000.0),
        make("d", 0.0, 0.0, -60.0, timestamp=4, frequency=5_200_000_000.0, signalType="bluetooth"),
    ]
    (cluster,) = cluster_signals(signals, 10.0)
    # Two signals each in the 2.4 GHz and 5.2 GHz bands; ties go to the lower band.
    assert cluster.stats.dominant_frequency_band == 2_400_000_000.0
    assert cluster.stats.signal_type_histogram == {"wifi": 2, "unknown": 1, "bluetooth": 1}


def test_empty_input_and_bad_arguments():
    assert cluster_signals([], 50.0) == []
    with pytest.raises(ValueError):
        cluster_signals([make("a", 0, 0, -60)], 0.0)
    with pytest.raises(ValueError):
        cluster_signals([make("a", 0, 0, -60)], 10.0, min_cluster_size=0)


def test_cluster_straddling_antimeridian_stays_on_its_side():
    east = make("east", 0.0, 179.9999, -60.0, timestamp=1)
    west = make("west", 0.0, -179.9999, -60.0, timestamp=2)

    (cluster,) = cluster_signals([east, west], 50.0)

    assert cluster.member_ids == ["east", "west"]
    assert abs(cluster.centroid.lon) == pytest.approx(180.0)
    box = cluster.bounding_box
    assert box.crosses_antimeridian
    assert box.min_lon == 179.9999
    assert box.max_lon == -179.9999
    assert box.contains(0.0, 180.0)
    assert not box.contains(0.0, 0.0)


def test_histogram_uses_the_same_type_as_the_filter():
    signals = [
        make("a", 0.0, 0.0, -60.0, timestamp=1, type="wifi"),
        make("b", 0.0, 0.0, -60.0, timestamp=2, signalType="wifi"),
    ]
    (cluster,) = cluster_signals(signals, 10.0)
    assert cluster.stats.signal_type_histogram == {"wifi": 2}
