"""Escalation policy router."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.core.auth import ApiKeyAuth
from opsguard.database import get_db
from opsguard.schemas.escalation_policy import (
    MoveStepRequest,
    MoveStepResponse,
    PolicyCreate,
    PolicyResponse,
    StepResponse,
)
from opsguard.services.policy_store import (
    StepMoveError,
    StepNotFoundError,
    create_policy,
    get_policy,
    move_step,
)

router = APIRouter(prefix="/api/policies", tags=["policies"], dependencies=[ApiKeyAuth])


@router.post(
    "",
    response_model=PolicyResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_escalation_policy(
    body: PolicyCreate,
    db: AsyncSession = Depends(get_db),
) -> PolicyResponse:
    """Create a policy; steps fire in the order given."""
    policy = await create_policy(
        db,
        name=body.name,
        description=body.description,
        steps=[(step.delay_minutes, step.notification_targets) for step in body.steps],
    )
    return PolicyResponse.model_validate(policy)


@router.get(
    "/{policy_id}",
    response_model=PolicyResponse,
    responses={404: {"description": "Policy not found"}},
)
async def get_escalation_policy(
    policy_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> PolicyResponse:
    """Get a policy with its steps in firing order."""
    policy = await get_policy(db, policy_id)
    if policy is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Escalation policy not found",
        )
    return PolicyResponse.model_validate(policy)


@router.post(
    "/steps/{step_id}/move",
    response_model=MoveStepResponse,
    responses={
        400: {"description": "Step is already first or last"},
        404: {"description": "Step not found"},
    },
)
async def move_escalation_step(
    step_id: uuid.UUID,
    body: MoveStepRequest,
    db: AsyncSession = Depends(get_db),
) -> MoveStepResponse:
    """Swap a step with its neighbour.

    The delay belongs to the position: the moved step takes over its
    neighbour's delay and vice versa.
    """
    try:
        steps = await move_step(db, step_id, body.direction)
    except StepNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except StepMoveError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    return MoveStepResponse(
        policy_id=steps[0].policy_id,
        steps=[StepResponse.model_validate(step) for step in steps],
    )
