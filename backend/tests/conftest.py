from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from rfmap.config import Settings
from rfmap.db import SqlSignalStore
from rfmap.geo import GeoGrid
from rfmap.local_store import MemorySignalStore
from rfmap.main import create_app

# Fixed "now" for tests that depend on ages; well after every fixture timestamp.
NOW = 1_700_000_000_000
BASE_TS = NOW - 10 * 60 * 1000


def signal_record(signal_id, lat=40.7128, lon=-74.0060, power=-60.0, frequency=2_437_000_000.0, timestamp=BASE_TS, **metadata):
    record = {
        "id": signal_id,
        "lat": lat,
        "lon": lon,
        "power": power,
        "frequency": frequency,
        "timestamp": timestamp,
        "source": "kismet",
    }
    if metadata:
        record["metadata"] = metadata
    return record


@pytest.fixture(params=["server", "local"])
def backend(request, tmp_path):
    grid = GeoGrid(100.0)
    if request.param == "server":
        store = SqlSignalStore(f"sqlite:///{tmp_path / 'signals.db'}", grid)
    else:
        store = MemorySignalStore(grid)
    yield store
    store.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'rfmap.db'}",
        schedule_maintenance=False,
        worker_pool_size=4,
    )


@pytest.fixture(params=["server", "local"])
def client(request, settings):
    app = create_app(replace(settings, storage_mode=request.param))
    with TestClient(app) as test_client:
        yield test_client
