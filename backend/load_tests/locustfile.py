import random
import time

from locust import HttpUser, between, task

# Lower Manhattan; keeps generated traffic inside a few grid cells so radius queries hit data.
CENTER_LAT = 40.7128
CENTER_LON = -74.0060


def _detection(device_id: str) -> dict:
    return {
        "lat": CENTER_LAT + random.uniform(-0.002, 0.002),
        "lon": CENTER_LON + random.uniform(-0.002, 0.002),
        "power": random.uniform(-95.0, -40.0),
        "frequency": random.choice([915_000_000.0, 2_437_000_000.0, 5_180_000_000.0]),
        "timestamp": int(time.time() * 1000),
        "source": random.choice(["hackrf", "kismet", "rtl-sdr"]),
        "metadata": {"deviceId": device_id, "signalType": random.choice(["wifi", "bluetooth", "unknown"])},
    }


class SignalMapUser(HttpUser):
    wait_time = between(0.1, 1.5)

    @task(3)
    def ingest_batch(self):
        payload = [_detection(f"dev-{random.randint(0, 50)}") for _ in range(25)]
        self.client.post("/signals/batch", json={"signals": payload})

    @task(2)
    def radius_query(self):
        self.client.get(
            f"/signals?lat={CENTER_LAT}&lon={CENTER_LON}&radiusMeters=100&limit=200",
            name="/signals?radius",
        )

    @task(1)
    def clusters(self):
        self.client.post(
            "/signals/clusters",
            json={"lat": CENTER_LAT, "lon": CENTER_LON, "radiusMeters": 250, "clusterRadiusMeters": 50},
        )

    @task(1)
    def health(self):
        self.client.get("/health")

    def on_start(self):
        self.client.get("/signals/statistics?timeWindow=3600000")
