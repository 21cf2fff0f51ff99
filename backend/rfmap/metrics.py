from prometheus_client import Counter, Gauge, Histogram

# Request-level metrics
REQUESTS_TOTAL = Counter(
    "rfmap_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status", "auth"),
)

REQUEST_LATENCY_MS = Histogram(
    "rfmap_request_latency_ms",
    "Request latency in milliseconds",
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2000, float("inf")),
    labelnames=("method", "path"),
)

REQUEST_ERRORS_TOTAL = Counter(
    "rfmap_request_errors_total",
    "Total HTTP requests resulting in error",
    labelnames=("method", "path", "status"),
)

# Ingestion
SIGNALS_INGESTED = Counter("rfmap_signals_ingested_total", "Signals committed to the store", labelnames=("backend",))
SIGNALS_REJECTED = Counter("rfmap_signals_rejected_total", "Signal records rejected by validation", labelnames=("backend",))

# Queries
QUERY_LATENCY_MS = Histogram(
    "rfmap_query_latency_ms",
    "Spatial query latency in milliseconds",
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, float("inf")),
    labelnames=("kind",),
)
QUERIES_REJECTED = Counter("rfmap_queries_rejected_total", "Queries rejected for exceeding a cap", labelnames=("kind",))

# Maintenance
CLEANUP_DELETED = Counter("rfmap_cleanup_deleted_total", "Records removed by retention", labelnames=("kind",))
ROLLUP_SIGNALS = Counter("rfmap_rollup_signals_total", "Signals folded into rollups")
MAINTENANCE_FAILURES = Counter("rfmap_maintenance_failures_total", "Background maintenance runs that failed", labelnames=("task",))

# Store state gauges
SIGNALS_STORED = Gauge("rfmap_signals_stored", "Signals currently stored")
DEVICES_KNOWN = Gauge("rfmap_devices_known", "Device aggregates currently stored")
ROLLUPS_STORED = Gauge("rfmap_rollups_stored", "Rollup rows currently stored")
