"""
api/routes/v1/monitoring.py -- Poller control routes.

Routes:
  GET  /monitoring/status  -- poller state, last cycle report, device counts
  POST /monitoring/start   -- start the periodic schedule
  POST /monitoring/stop    -- stop it and close every SNMP session
  POST /monitoring/cycle   -- run one cycle now

All routes require the admin role. /cycle answers 409 while another cycle is
in progress (skip-if-running applies to manual cycles too) and 503 if the
device registry cannot be read.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import CycleReportModel, ErrorDetail, MonitoringStatusResponse
from auth.dependencies import require_admin
from core.errors import SchedulerFatal
from core.poller import Poller

router = APIRouter(prefix="/monitoring", dependencies=[Depends(require_admin)])


def _status(request: Request) -> MonitoringStatusResponse:
    poller: Poller = request.app.state.poller
    return MonitoringStatusResponse(**poller.status(), device_counts=request.app.state.devices.status_counts())


@router.get("/status", response_model=MonitoringStatusResponse)
def monitoring_status(request: Request) -> MonitoringStatusResponse:
    return _status(request)


@router.post("/start", response_model=MonitoringStatusResponse)
async def start_monitoring(request: Request) -> MonitoringStatusResponse:
    """Start polling. Starting an already running poller is a no-op."""
    request.app.state.poller.start()
    return _status(request)


@router.post("/stop", response_model=MonitoringStatusResponse)
async def stop_monitoring(request: Request) -> MonitoringStatusResponse:
    await request.app.state.poller.stop()
    return _status(request)


@router.post("/cycle", response_model=CycleReportModel)
@limiter.limit("10/minute")
async def run_cycle(request: Request) -> CycleReportModel:
    poller: Poller = request.app.state.poller
    try:
        report = await poller.run_cycle()
    except SchedulerFatal as exc:
        raise HTTPException(
            status_code=503,
            detail=ErrorDetail(code="registry_unavailable", message="Device registry unavailable.", detail=str(exc)).model_dump(),
        )
    if report is None:
        raise HTTPException(
            status_code=409,
            detail=ErrorDetail(code="cycle_in_progress", message="A poll cycle is already running.").model_dump(),
        )
    return CycleReportModel(**report.to_dict())
