"""Incident router: the interactive side of the incident lifecycle."""

import uuid
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.core.auth import ApiKeyAuth
from opsguard.database import get_db
from opsguard.models.incident import Incident
from opsguard.schemas.incident import IncidentCreate, IncidentResponse, SnoozeRequest
from opsguard.services.incident_actions import (
    IncidentNotFoundError,
    IncidentTransitionError,
    UnknownPolicyError,
    acknowledge_incident,
    resolve_incident,
    snooze_incident,
    suppress_incident,
    trigger_incident,
)

router = APIRouter(prefix="/api/incidents", tags=["incidents"], dependencies=[ApiKeyAuth])

_TRANSITION_RESPONSES = {
    404: {"description": "Incident not found"},
    409: {"description": "Incident is not in a status this action applies to"},
}


async def _run_transition(action: Callable[[], Awaitable[Incident]]) -> IncidentResponse:
    try:
        incident = await action()
    except IncidentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except IncidentTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return IncidentResponse.model_validate(incident)


@router.post(
    "",
    response_model=IncidentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"description": "Escalation policy not found"}},
)
async def create_incident(
    body: IncidentCreate,
    db: AsyncSession = Depends(get_db),
) -> IncidentResponse:
    """Trigger a new incident."""
    try:
        incident = await trigger_incident(
            db,
            title=body.title,
            description=body.description,
            urgency=body.urgency,
            policy_id=body.policy_id,
        )
    except UnknownPolicyError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return IncidentResponse.model_validate(incident)


@router.post(
    "/{incident_id}/acknowledge",
    response_model=IncidentResponse,
    responses=_TRANSITION_RESPONSES,
)
async def acknowledge(
    incident_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> IncidentResponse:
    return await _run_transition(lambda: acknowledge_incident(db, incident_id))


@router.post(
    "/{incident_id}/resolve",
    response_model=IncidentResponse,
    responses=_TRANSITION_RESPONSES,
)
async def resolve(
    incident_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> IncidentResponse:
    return await _run_transition(lambda: resolve_incident(db, incident_id))


@router.post(
    "/{incident_id}/snooze",
    response_model=IncidentResponse,
    responses=_TRANSITION_RESPONSES,
)
async def snooze(
    incident_id: uuid.UUID,
    body: SnoozeRequest,
    db: AsyncSession = Depends(get_db),
) -> IncidentResponse:
    """Snooze an incident; it reopens automatically when the window ends."""
    return await _run_transition(
        lambda: snooze_incident(
            db, incident_id, duration_minutes=body.duration_minutes, reason=body.reason
        )
    )


@router.post(
    "/{incident_id}/suppress",
    response_model=IncidentResponse,
    responses=_TRANSITION_RESPONSES,
)
async def suppress(
    incident_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> IncidentResponse:
    return await _run_transition(lambda: suppress_incident(db, incident_id))
