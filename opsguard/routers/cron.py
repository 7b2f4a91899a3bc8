"""Cron trigger router.

Lets an external cron drive the engine instead of (or alongside) the
internal APScheduler timer. Every route goes through the supervisor and
shares its guard, so a run requested while another is in flight returns
``{"skipped": true}``.
"""

from fastapi import APIRouter, Request

from opsguard.core.auth import CronAuth
from opsguard.logging_config import get_logger
from opsguard.schemas.scheduler import (
    EscalationRunResponse,
    SchedulerStatusResponse,
    SLACheckResponse,
    TickResponse,
    UnsnoozeResponse,
)
from opsguard.services.scheduler import SchedulerSupervisor

logger = get_logger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[CronAuth])

_BOTH = ["GET", "POST"]
_AUTH_RESPONSES = {
    401: {"description": "Missing or invalid cron secret"},
    500: {"description": "Cron secret not configured"},
}


def _get_supervisor(request: Request) -> SchedulerSupervisor:
    return request.app.state.supervisor


@router.api_route(
    "/tick",
    methods=_BOTH,
    response_model=TickResponse,
    responses=_AUTH_RESPONSES,
)
async def run_tick(request: Request) -> TickResponse:
    """Run one supervised pass.

    Returns ``{"skipped": true}`` when a pass is already in progress.
    """
    result = await _get_supervisor(request).tick()
    if result is None:
        return TickResponse(skipped=True)
    return TickResponse.model_validate(result, from_attributes=True)


@router.api_route(
    "/process-escalations",
    methods=_BOTH,
    response_model=EscalationRunResponse,
    responses=_AUTH_RESPONSES,
)
async def run_escalations(request: Request) -> EscalationRunResponse:
    """Run the escalation runner once under the supervisor guard."""
    result = await _get_supervisor(request).run_escalations()
    if result is None:
        return EscalationRunResponse(skipped=True)
    return EscalationRunResponse.model_validate(result)


@router.api_route(
    "/auto-unsnooze",
    methods=_BOTH,
    response_model=UnsnoozeResponse,
    responses=_AUTH_RESPONSES,
)
async def run_auto_unsnooze(request: Request) -> UnsnoozeResponse:
    """Reopen incidents whose snooze has expired."""
    result = await _get_supervisor(request).run_unsnooze()
    if result is None:
        return UnsnoozeResponse(skipped=True)
    return UnsnoozeResponse.model_validate(result)


@router.api_route(
    "/sla-check",
    methods=_BOTH,
    response_model=SLACheckResponse,
    responses=_AUTH_RESPONSES,
)
async def run_sla_check(request: Request) -> SLACheckResponse:
    """Run one SLA check cycle with the configured delivery options."""
    result = await _get_supervisor(request).run_sla_check()
    if result is None:
        return SLACheckResponse(skipped=True)
    return SLACheckResponse.model_validate(result)


@router.get(
    "/status",
    response_model=SchedulerStatusResponse,
    responses=_AUTH_RESPONSES,
)
async def get_status(request: Request) -> SchedulerStatusResponse:
    """Snapshot of the supervisor status."""
    return SchedulerStatusResponse.model_validate(_get_supervisor(request).status())
