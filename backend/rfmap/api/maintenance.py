from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import require_admin_token
from ..logging_config import get_logger
from ..runtime import Runtime, get_runtime
from ..schemas import MaintenanceRequest

router = APIRouter(dependencies=[Depends(require_admin_token)])
logger = get_logger("maintenance")

GET_ACTIONS = ("status", "manual-cleanup", "vacuum", "analyze", "optimize", "aggregate", "export", "indexes")
POST_ACTIONS = ("cleanup-aggregated",)


def _status(runtime: Runtime) -> Dict[str, Any]:
    retention = runtime.retention
    return {
        "mode": runtime.backend.name,
        "stats": retention.get_stats().model_dump(by_alias=True),
        "growth": [bucket.model_dump(by_alias=True) for bucket in retention.get_growth_trends(24)],
        "health": retention.health_report(),
    }


def _perform(runtime: Runtime, action: str, days: int) -> Dict[str, Any]:
    retention = runtime.retention
    if action == "status":
        return _status(runtime)
    if action == "manual-cleanup":
        return retention.run_cleanup().model_dump(by_alias=True)
    if action == "vacuum":
        return retention.vacuum().model_dump(by_alias=True)
    if action == "analyze":
        retention.analyze()
        return {"analyzed": True}
    if action == "optimize":
        return retention.optimize()
    if action == "aggregate":
        return retention.run_aggregation().model_dump(by_alias=True)
    if action == "export":
        return {"days": days, **retention.export_recent_rollups(days).model_dump(by_alias=True)}
    if action == "indexes":
        return retention.index_report()
    if action == "cleanup-aggregated":
        return {"daysToKeep": days, "deleted": retention.cleanup_aggregated_data(days)}
    raise ValueError(f"unknown action: {action}")


@router.get("/cleanup")
async def maintenance_get(
    action: str = Query("status"),
    days: int = Query(7, ge=0, le=3650),
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Storage administration: ``?action=status|manual-cleanup|vacuum|analyze|optimize|aggregate|export``."""

    if action not in GET_ACTIONS:
        raise HTTPException(status_code=400, detail=f"unknown action: {action}")
    logger.info("maintenance_requested", action=action)
    result = await runtime.run(_perform, runtime, action, days)
    return {"success": True, "action": action, "result": result}


@router.post("/cleanup")
async def maintenance_post(request: MaintenanceRequest, runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    if request.action not in POST_ACTIONS:
        raise HTTPException(status_code=400, detail=f"unknown action: {request.action}")
    logger.info("maintenance_requested", action=request.action)
    result = await runtime.run(_perform, runtime, request.action, request.days_to_keep)
    return {"success": True, "action": request.action, "result": result}
