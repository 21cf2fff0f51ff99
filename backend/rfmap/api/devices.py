from fastapi import APIRouter, Depends, HTTPException

from ..runtime import Runtime, get_runtime
from ..schemas import AreaQuery, Device, DeviceList

router = APIRouter()


@router.post("/area", response_model=DeviceList)
async def devices_in_area(query: AreaQuery, runtime: Runtime = Depends(get_runtime)) -> DeviceList:
    """Devices whose last known position falls inside ``bounds``."""

    devices = await runtime.run(runtime.facade.get_devices_in_area, query.bounds)
    return DeviceList(devices=devices)


@router.get("/{device_id}", response_model=Device)
async def get_device(device_id: str, runtime: Runtime = Depends(get_runtime)) -> Device:
    device = await runtime.run(runtime.facade.get_device, device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device
