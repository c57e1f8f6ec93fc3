"""
api/routes/v1/devices.py -- Device management routes for the NetPulse REST API.

Routes:
  GET    /devices                -- list all devices with last observed state
  POST   /devices                -- register a device (admin/agent)
  GET    /devices/{device_id}    -- device detail
  PATCH  /devices/{device_id}    -- change configuration (admin/agent)
  DELETE /devices/{device_id}    -- remove a device (admin)

Observed state (status, last_seen, metrics) is read-only here. It is written
by the poller's reconciler only. DevicePatch forbids unknown fields, so a
client that sends "status" gets a 422.

PATCH and DELETE make the poller forget the device's SNMP session so the next
poll uses the new address or community string. A threshold patch only
replaces the metrics it names.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import DeviceCreate, DevicePatch, DeviceResponse, ErrorDetail
from auth.dependencies import get_current_user, require_admin, require_staff
from inventory.models import Device
from inventory.store import DeviceStore

router = APIRouter()


def _not_found(device_id: int) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="not_found", message=f"Device {device_id} not found.").model_dump(),
    )


def _conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail=ErrorDetail(
            code="duplicate_device",
            message="A device with this name or IP address already exists.",
        ).model_dump(),
    )


@router.get("/devices", response_model=list[DeviceResponse], dependencies=[Depends(get_current_user)])
def list_devices(request: Request) -> list[DeviceResponse]:
    store: DeviceStore = request.app.state.devices
    return [DeviceResponse.from_device(d) for d in store.list_devices()]


@router.post("/devices", response_model=DeviceResponse, status_code=201, dependencies=[Depends(require_staff)])
@limiter.limit("30/minute")
def create_device(request: Request, body: DeviceCreate) -> DeviceResponse:
    """Register a device. It starts offline and is picked up by the next poll cycle."""
    store: DeviceStore = request.app.state.devices
    device = Device(
        name=body.name,
        ip_address=body.ip_address,
        snmp_community=body.snmp_community,
        snmp_version=body.snmp_version.value,
        device_type=body.device_type.value,
        location=body.location,
        department=body.department,
        thresholds=body.thresholds.to_domain(),
        is_monitored=body.is_monitored,
    )
    try:
        device_id = store.create_device(device)
    except IntegrityError:
        raise _conflict()
    return DeviceResponse.from_device(store.get(device_id))


@router.get("/devices/{device_id}", response_model=DeviceResponse, dependencies=[Depends(get_current_user)])
def get_device(request: Request, device_id: int) -> DeviceResponse:
    store: DeviceStore = request.app.state.devices
    device = store.get(device_id)
    if device is None:
        raise _not_found(device_id)
    return DeviceResponse.from_device(device)


@router.patch("/devices/{device_id}", response_model=DeviceResponse, dependencies=[Depends(require_staff)])
async def update_device(request: Request, device_id: int, body: DevicePatch) -> DeviceResponse:
    store: DeviceStore = request.app.state.devices
    current = store.get(device_id)
    if current is None:
        raise _not_found(device_id)
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if "thresholds" in fields:
        # Metrics left out of the patch keep their stored limits.
        fields["thresholds"] = {**current.thresholds.to_dict(), **fields["thresholds"]}
    for key in ("snmp_version", "device_type"):
        if key in fields:
            fields[key] = getattr(body, key).value
    if fields:
        try:
            updated = store.update_device(device_id, **fields)
        except IntegrityError:
            raise _conflict()
        if not updated:
            raise _not_found(device_id)
    device = store.get(device_id)
    if device is None:
        raise _not_found(device_id)
    await request.app.state.poller.forget_device(device_id)
    return DeviceResponse.from_device(device)


@router.delete("/devices/{device_id}", status_code=204, dependencies=[Depends(require_admin)])
async def delete_device(request: Request, device_id: int) -> None:
    store: DeviceStore = request.app.state.devices
    if not store.delete_device(device_id):
        raise _not_found(device_id)
    await request.app.state.poller.forget_device(device_id)
