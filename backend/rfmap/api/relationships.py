from typing import List

from fastapi import APIRouter, Depends, Query

from ..runtime import Runtime, get_runtime
from ..schemas import RelationshipList, RelationshipsIn, StoredCount

router = APIRouter()


@router.post("", response_model=StoredCount)
async def store_relationships(payload: RelationshipsIn, runtime: Runtime = Depends(get_runtime)) -> StoredCount:
    stored = await runtime.run(runtime.facade.store_relationships, payload.edges)
    return StoredCount(stored=stored)


@router.get("", response_model=RelationshipList)
async def list_relationships(
    device_ids: List[str] = Query([], alias="deviceId"),
    limit: int = Query(1000, ge=1, le=10_000),
    runtime: Runtime = Depends(get_runtime),
) -> RelationshipList:
    edges = await runtime.run(runtime.facade.get_relationships, device_ids or None, limit)
    return RelationshipList(relationships=edges)
