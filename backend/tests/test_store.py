import threading
import time
from concurrent.futures import ThreadPoolExecutor

from conftest import BASE_TS, signal_record


def test_batch_counts_add_up(backend):
    records = [
        signal_record("s-1"),
        {"id": "s-2", "lat": 40.0, "lon": -74.0, "frequency": 915e6, "timestamp": BASE_TS},
        signal_record("s-3", lat=40.7129),
        "garbage",
        signal_record("s-4", lat=95.0),
        signal_record("s-5", lon=-74.0061),
    ]

    result = backend.insert_signals_batch(records)

    assert result.total_received == 6
    assert result.inserted_count == 3
    assert result.inserted_count + len(result.rejected) == result.total_received
    assert [item.index for item in result.rejected] == [1, 3, 4]
    assert result.rejected[0].reason == "missing required fields: power"
    assert result.rejected[0].id == "s-2"
    assert result.valid_count == 3
    assert backend.find_by_id("s-2") is None
    assert backend.find_by_id("s-5") is not None


def test_bad_timestamps_never_sink_the_batch(backend):
    records = [
        signal_record("good"),
        signal_record("inf", timestamp="inf"),
        signal_record("huge", timestamp=1e20),
        signal_record("negative", timestamp="-5"),
        signal_record("late", timestamp=BASE_TS + 1),
    ]

    result = backend.insert_signals_batch(records)

    assert result.inserted_count == 2
    assert [(item.index, item.reason) for item in result.rejected] == [
        (1, "timestamp must be finite"),
        (2, "timestamp out of range"),
        (3, "timestamp must be positive"),
    ]
    assert backend.find_by_id("good") is not None
    assert backend.find_by_id("late") is not None
    assert backend.find_by_id("huge") is None


def test_round_trip_is_field_for_field(backend):
    record = signal_record("s-rt", power=-71.25, deviceId="dev-1", signalType="wifi", snr=12)
    record.update({"altitude": 30.0, "bandwidth": 20e6, "modulation": "OFDM"})

    outcome = backend.insert_signal(record)
    assert outcome.accepted
    assert outcome.id == "s-rt"

    stored = backend.find_by_id("s-rt")
    assert stored is not None
    assert stored.model_dump() == {
        "id": "s-rt",
        "lat": 40.7128,
        "lon": -74.0060,
        "altitude": 30.0,
        "power": -71.25,
        "frequency": 2_437_000_000.0,
        "bandwidth": 20e6,
        "modulation": "OFDM",
        "timestamp": BASE_TS,
        "source": "device_scan",
        "metadata": {"deviceId": "dev-1", "signalType": "wifi", "snr": 12},
    }


def test_server_assigns_missing_ids(backend):
    record = signal_record(None)
    del record["id"]
    outcome = backend.insert_signal(record)
    assert outcome.accepted
    assert backend.find_by_id(outcome.id).power == -60.0


def test_rejected_single_insert_reports_reason(backend):
    outcome = backend.insert_signal({"id": "bad", "lat": 1.0})
    assert not outcome.accepted
    assert outcome.id == "bad"
    assert outcome.reason.startswith("missing required fields")


def test_duplicate_ids_are_rejected(backend):
    result = backend.insert_signals_batch([signal_record("dup"), signal_record("dup", power=-40.0)])
    assert result.inserted_count == 1
    assert result.rejected[0].reason == "duplicate id in batch"

    again = backend.insert_signals_batch([signal_record("dup", power=-30.0), signal_record("fresh")])
    assert again.inserted_count == 1
    assert again.rejected[0].index == 0
    assert again.rejected[0].reason == "id already stored"
    assert backend.find_by_id("dup").power == -60.0


def test_device_mean_is_incremental(backend):
    backend.insert_signal(signal_record("a", power=-50.0, deviceId="dev-1"))
    backend.insert_signal(signal_record("b", power=-70.0, deviceId="dev-1", frequency=5_180_000_000.0))

    device = backend.get_device("dev-1")
    assert device.avg_power == -60.0
    assert device.signal_count == 2
    assert device.freq_min == 2_437_000_000.0
    assert device.freq_max == 5_180_000_000.0
    assert device.type == "wifi"


def test_device_position_follows_newest_timestamp(backend):
    backend.insert_signal(signal_record("new", lat=40.8, deviceId="dev-2", timestamp=BASE_TS + 1000))
    backend.insert_signal(signal_record("old", lat=40.6, deviceId="dev-2", timestamp=BASE_TS - 1000))

    device = backend.get_device("dev-2")
    assert device.last_position.lat == 40.8
    assert device.first_seen == BASE_TS - 1000
    assert device.last_seen == BASE_TS + 1000
    assert device.last_seen >= device.first_seen


def test_concurrent_batches_keep_device_mean(backend):
    def ingest(worker):
        batch = [
            signal_record(f"w{worker}-{i}", power=-40.0 - (worker * 10 + i) % 50, deviceId="shared")
            for i in range(10)
        ]
        return backend.insert_signals_batch(batch).inserted_count

    with ThreadPoolExecutor(max_workers=8) as pool:
        inserted = sum(pool.map(ingest, range(16)))

    powers = [-40.0 - (worker * 10 + i) % 50 for worker in range(16) for i in range(10)]
    device = backend.get_device("shared")
    assert inserted == 160
    assert device.signal_count == 160
    assert abs(device.avg_power - sum(powers) / len(powers)) < 1e-9


def test_find_recent_newest_first(backend):
    backend.insert_signals_batch(
        [
            signal_record("b", timestamp=BASE_TS),
            signal_record("c", timestamp=BASE_TS + 5),
            signal_record("a", timestamp=BASE_TS),
        ]
    )

    recent = backend.find_recent(10)
    assert [signal.id for signal in recent] == ["c", "a", "b"]
    assert list(recent) == []
    assert [signal.id for signal in backend.find_recent(1)] == ["c"]


def test_commit_publishes_change_event(backend):
    events = []
    backend.notifier.subscribe(events.append)

    backend.insert_signals_batch([signal_record("n-1", timestamp=BASE_TS), signal_record("n-2", timestamp=BASE_TS + 1)])
    backend.insert_signals_batch(["garbage"])

    assert events == [{"type": "signals_committed", "count": 2, "ids": ["n-1", "n-2"], "newest": BASE_TS + 1}]


def test_relationships_upsert_on_edge_key(backend):
    from rfmap.schemas import Relationship

    backend.upsert_relationships(
        [
            Relationship(device_a="a", device_b="b", kind="co-located", weight=1.0, last_observed=10),
            Relationship(device_a="a", device_b="c", kind="co-located", weight=2.0, last_observed=20),
        ]
    )
    backend.upsert_relationships([Relationship(device_a="a", device_b="b", kind="co-located", weight=5.0, last_observed=30)])

    edges = backend.relationships()
    assert [(edge.device_b, edge.weight, edge.last_observed) for edge in edges] == [("b", 5.0, 30), ("c", 2.0, 20)]
    assert [edge.device_b for edge in backend.relationships(["c"])] == ["c"]


def test_device_locks_are_released_with_their_last_holder(backend):
    backend.insert_signals_batch([signal_record(f"l{i}", deviceId=f"dev-{i}") for i in range(50)])
    assert len(backend.device_locks) == 0

    def ingest(worker):
        batch = [signal_record(f"lw{worker}-{i}", deviceId=f"dev-{i % 5}") for i in range(5)]
        return backend.insert_signals_batch(batch).inserted_count

    with ThreadPoolExecutor(max_workers=4) as pool:
        assert sum(pool.map(ingest, range(8))) == 40
    assert len(backend.device_locks) == 0
    assert backend.get_device("dev-0").signal_count == 9


def test_device_locks_exclude_concurrent_holders():
    from rfmap.devices import DeviceLocks

    locks = DeviceLocks()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def first():
        with locks.hold(["b", "a"]):
            entered.set()
            release.wait(5)
            order.append("first")

    thread = threading.Thread(target=first)
    thread.start()
    entered.wait(5)
    assert len(locks) == 2

    def second():
        with locks.hold(["a"]):
            order.append("second")

    with ThreadPoolExecutor(max_workers=1) as pool:
        pending = pool.submit(second)
        release.set()
        pending.result(5)
    thread.join(5)

    assert order == ["first", "second"]
    assert len(locks) == 0


def test_in_memory_database_reads_wait_for_the_commit(monkeypatch):
    import rfmap.db as db
    from rfmap.geo import GeoGrid

    store = db.SqlSignalStore("sqlite://", GeoGrid(100.0))
    entered = threading.Event()
    real_fold = db.fold_signal

    def slow_fold(device, signal):
        entered.set()
        time.sleep(0.2)
        return real_fold(device, signal)

    monkeypatch.setattr(db, "fold_signal", slow_fold)
    writer = threading.Thread(target=store.insert_signals_batch, args=([signal_record("mem-1", deviceId="dev")],))
    writer.start()
    assert entered.wait(5)

    seen = store.find_by_id("mem-1")
    writer.join(5)
    store.close()

    assert seen is not None
    assert seen.device_id == "dev"
