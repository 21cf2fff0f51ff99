from contextlib import closing
from itertools import islice
from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import require_admin_token
from ..runtime import Runtime, get_runtime
from ..schemas import (
    BatchResult,
    BoundingBox,
    CleanupRequest,
    ClusterList,
    ClusterQuery,
    DataQuery,
    DensityList,
    DensityQuery,
    PathQuery,
    Signal,
    SignalCleanupOut,
    SignalCreated,
    SignalList,
    SignalStatistics,
)

router = APIRouter()


@router.post("", response_model=SignalCreated)
async def create_signal(record: Any = Body(...), runtime: Runtime = Depends(get_runtime)) -> SignalCreated:
    """Store one detection. Validation failures come back as 422 with the reason."""

    outcome = await runtime.run(runtime.facade.store_signal, record)
    if not outcome.accepted:
        raise HTTPException(status_code=422, detail=outcome.reason)
    return SignalCreated(id=outcome.id)


@router.post("/batch", response_model=BatchResult)
async def create_signals_batch(payload: Any = Body(...), runtime: Runtime = Depends(get_runtime)) -> BatchResult:
    """Store a bare array of detections or ``{"signals": [...]}``.

    Invalid records are skipped and listed in ``rejected``; the rest commit together.
    """

    if isinstance(payload, dict) and isinstance(payload.get("signals"), list):
        records = payload["signals"]
    elif isinstance(payload, list):
        records = payload
    else:
        raise HTTPException(status_code=422, detail="expected an array of signals or {signals: [...]}")
    return await runtime.run(runtime.facade.store_signals_batch, records)


@router.get("", response_model=SignalList)
async def query_signals(
    lat: float = Query(..., ge=-90.0, le=90.0),
    lon: float = Query(..., ge=-180.0, le=180.0),
    radius_meters: float = Query(100.0, alias="radiusMeters", gt=0),
    start_time: Optional[int] = Query(None, alias="startTime"),
    end_time: Optional[int] = Query(None, alias="endTime"),
    limit: Optional[int] = Query(None, ge=1),
    device_ids: List[str] = Query([], alias="deviceId"),
    signal_types: List[str] = Query([], alias="signalType"),
    runtime: Runtime = Depends(get_runtime),
) -> SignalList:
    query = DataQuery(
        lat=lat,
        lon=lon,
        radius_meters=radius_meters,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
        device_ids=device_ids,
        signal_types=signal_types,
    )
    signals = await runtime.run(runtime.facade.query_signals, query)
    return SignalList(signals=signals)


@router.get("/recent", response_model=SignalList)
async def recent_signals(limit: int = Query(100, ge=1), runtime: Runtime = Depends(get_runtime)) -> SignalList:
    def collect() -> List[Signal]:
        with closing(runtime.facade.find_recent(limit)) as recent:
            return list(islice(recent, limit))

    return SignalList(signals=await runtime.run(collect))


@router.get("/statistics", response_model=SignalStatistics)
async def signal_statistics(
    time_window: int = Query(3_600_000, alias="timeWindow", gt=0),
    min_lat: Optional[float] = Query(None, alias="minLat"),
    max_lat: Optional[float] = Query(None, alias="maxLat"),
    min_lon: Optional[float] = Query(None, alias="minLon"),
    max_lon: Optional[float] = Query(None, alias="maxLon"),
    runtime: Runtime = Depends(get_runtime),
) -> SignalStatistics:
    corners = (min_lat, max_lat, min_lon, max_lon)
    bbox = None
    if any(value is not None for value in corners):
        if any(value is None for value in corners):
            raise HTTPException(status_code=400, detail="minLat, maxLat, minLon and maxLon must be given together")
        bbox = BoundingBox(min_lat=min_lat, max_lat=max_lat, min_lon=min_lon, max_lon=max_lon)
    return await runtime.run(runtime.facade.get_statistics, time_window, bbox)


@router.post("/path", response_model=SignalList)
async def signals_along_path(query: PathQuery, runtime: Runtime = Depends(get_runtime)) -> SignalList:
    signals = await runtime.run(runtime.facade.find_signals_along_path, query.points, query.radius_meters)
    return SignalList(signals=signals)


@router.post("/density", response_model=DensityList)
async def signal_density(query: DensityQuery, runtime: Runtime = Depends(get_runtime)) -> DensityList:
    cells = await runtime.run(runtime.facade.get_signal_density, query.bounds, query.grid_size)
    return DensityList(cells=cells)


@router.post("/clusters", response_model=ClusterList)
async def signal_clusters(query: ClusterQuery, runtime: Runtime = Depends(get_runtime)) -> ClusterList:
    clusters = await runtime.run(
        runtime.facade.cluster_signals, query, query.cluster_radius_meters, query.min_cluster_size
    )
    return ClusterList(clusters=clusters)


@router.post("/cleanup", response_model=SignalCleanupOut, dependencies=[Depends(require_admin_token)])
async def cleanup_signals(request: CleanupRequest, runtime: Runtime = Depends(get_runtime)) -> SignalCleanupOut:
    result = await runtime.run(runtime.facade.cleanup_old_data, request.max_age)
    return SignalCleanupOut(
        deleted=result.deleted_signals,
        deleted_devices=result.deleted_devices,
        deleted_relationships=result.deleted_relationships,
        interrupted=result.interrupted,
    )


@router.get("/{signal_id}", response_model=Signal)
async def get_signal(signal_id: str, runtime: Runtime = Depends(get_runtime)) -> Signal:
    signal = await runtime.run(runtime.facade.find_by_id, signal_id)
    if signal is None:
        raise HTTPException(status_code=404, detail="Signal not found")
    return signal
