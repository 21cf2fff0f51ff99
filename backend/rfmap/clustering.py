"""Deterministic greedy clustering of a query result for map display.

Signals are visited in ``(timestamp, id)`` order. Each unassigned seed claims
every unassigned signal within the radius of the seed itself, so the output is
a partition of the input and is reproducible for the same input set.
"""

from typing import Dict, List, Sequence, Set

from .devices import frequency_band
from .geo import Cell, GeoGrid, haversine_meters, lon_offset, neighbourhood, wrap_lon
from .schemas import BoundingBox, Cluster, ClusterStats, GeoPoint, Signal, TimeRange

UNKNOWN_SIGNAL_TYPE = "unknown"


def centroid_weight(power_dbm: float) -> float:
    """Shift dBm onto a positive scale so stronger emitters pull the centroid harder."""
    return max(1.0, power_dbm + 100.0)


def _dominant_band(members: Sequence[Signal]) -> float:
    counts: Dict[float, int] = {}
    for signal in members:
        band = frequency_band(signal.frequency)
        counts[band] = counts.get(band, 0) + 1
    # Mode, ties resolved to the lowest band.
    return min(counts, key=lambda band: (-counts[band], band))


def summarize(members: Sequence[Signal], cluster_id: str) -> Cluster:
    """Stats for one cluster; ``members[0]`` is the seed.

    Longitudes are taken relative to the seed so a cluster straddling the
    antimeridian gets a centroid beside its members and a crossing bounding box.
    """
    weights = [centroid_weight(signal.power) for signal in members]
    total_weight = sum(weights)
    powers = [signal.power for signal in members]
    timestamps = [signal.timestamp for signal in members]

    reference = members[0].lon
    offsets = [lon_offset(signal.lon, reference) for signal in members]
    west = min(range(len(members)), key=lambda i: offsets[i])
    east = max(range(len(members)), key=lambda i: offsets[i])

    histogram: Dict[str, int] = {}
    for signal in members:
        key = signal.signal_type or UNKNOWN_SIGNAL_TYPE
        histogram[key] = histogram.get(key, 0) + 1

    return Cluster(
        id=cluster_id,
        centroid=GeoPoint(
            lat=sum(s.lat * w for s, w in zip(members, weights)) / total_weight,
            lon=wrap_lon(reference + sum(o * w for o, w in zip(offsets, weights)) / total_weight),
        ),
        bounding_box=BoundingBox(
            min_lat=min(s.lat for s in members),
            max_lat=max(s.lat for s in members),
            min_lon=members[west].lon,
            max_lon=members[east].lon,
        ),
        member_ids=[signal.id for signal in members],
        stats=ClusterStats(
            count=len(members),
            avg_power=sum(powers) / len(powers),
            min_power=min(powers),
            max_power=max(powers),
            dominant_frequency_band=_dominant_band(members),
            signal_type_histogram=histogram,
            time_range=TimeRange(start=min(timestamps), end=max(timestamps)),
        ),
    )


def cluster_signals(signals: Sequence[Signal], radius_meters: float, min_cluster_size: int = 1) -> List[Cluster]:
    """Partition ``signals`` into clusters of members within ``radius_meters`` of a seed.

    Groups smaller than ``min_cluster_size`` are emitted as singleton clusters
    instead of being dropped.
    """
    if radius_meters <= 0:
        raise ValueError("radius_meters must be positive")
    if min_cluster_size < 1:
        raise ValueError("min_cluster_size must be at least 1")

    ordered = sorted(signals, key=lambda signal: (signal.timestamp, signal.id))
    if not ordered:
        return []

    grid = GeoGrid(radius_meters)
    index: Dict[Cell, Set[int]] = {}
    for position, signal in enumerate(ordered):
        index.setdefault(grid.cell_of(signal.lat, signal.lon), set()).add(position)

    assigned = [False] * len(ordered)
    clusters: List[Cluster] = []
    for position, seed in enumerate(ordered):
        if assigned[position]:
            continue
        nearby = neighbourhood(index, grid.cells_for_radius(seed.lat, seed.lon, radius_meters))
        member_positions = [position] + sorted(
            other
            for other in nearby
            if other != position
            and not assigned[other]
            and haversine_meters(seed.lat, seed.lon, ordered[other].lat, ordered[other].lon) <= radius_meters
        )
        for other in member_positions:
            assigned[other] = True

        members = [ordered[other] for other in member_positions]
        if len(members) >= min_cluster_size:
            clusters.append(summarize(members, f"cluster-{seed.id}"))
        else:
            clusters.extend(summarize([member], f"cluster-{member.id}") for member in members)
    return clusters
