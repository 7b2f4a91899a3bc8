"""Escalation policy data access.

Reads ordered step definitions and performs the two-row step reorder.
"""

import enum
import uuid
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from opsguard.logging_config import get_logger
from opsguard.models.escalation_policy import EscalationPolicy, EscalationStep

logger = get_logger(__name__)


class MoveDirection(str, enum.Enum):
    """Direction for moving a step within its policy."""

    UP = "up"
    DOWN = "down"


class StepNotFoundError(Exception):
    """The escalation step does not exist."""


class StepMoveError(Exception):
    """The step cannot move further in the requested direction."""


async def get_policy(
    db: AsyncSession,
    policy_id: uuid.UUID,
) -> EscalationPolicy | None:
    """Load a policy with its steps in step_order.

    Args:
        db: Database session.
        policy_id: Policy UUID.

    Returns:
        The policy, or None if it does not exist.
    """
    result = await db.execute(
        select(EscalationPolicy)
        .where(EscalationPolicy.id == policy_id)
        .options(selectinload(EscalationPolicy.steps))
    )
    return result.scalar_one_or_none()


async def get_ordered_steps(
    db: AsyncSession,
    policy_id: uuid.UUID,
) -> list[EscalationStep]:
    """Return a policy's steps ordered by step_order (empty if none)."""
    result = await db.execute(
        select(EscalationStep)
        .where(EscalationStep.policy_id == policy_id)
        .order_by(EscalationStep.step_order)
    )
    return list(result.scalars().all())


async def create_policy(
    db: AsyncSession,
    name: str,
    steps: Sequence[tuple[int, list[str]]],
    description: str | None = None,
) -> EscalationPolicy:
    """Create a policy whose steps take step_order from their list position.

    Args:
        db: Database session.
        name: Policy name.
        steps: (delay_minutes, notification_targets) pairs in firing order.
        description: Optional description.

    Returns:
        The created policy with steps loaded.
    """
    policy = EscalationPolicy(name=name, description=description)
    policy.steps = [
        EscalationStep(
            step_order=index,
            delay_minutes=delay_minutes,
            notification_targets=list(targets),
        )
        for index, (delay_minutes, targets) in enumerate(steps)
    ]
    db.add(policy)
    await db.commit()

    logger.info(
        "Created escalation policy",
        policy_id=str(policy.id),
        step_count=len(policy.steps),
    )

    return await get_policy(db, policy.id)


async def move_step(
    db: AsyncSession,
    step_id: uuid.UUID,
    direction: MoveDirection,
) -> list[EscalationStep]:
    """Swap a step with its neighbour in one transaction.

    Both step_order and delay_minutes are exchanged, so the delay stays with
    the position while targets move with the step. Rows are locked
    ``FOR UPDATE`` where the backend supports it.

    Args:
        db: Database session.
        step_id: Step to move.
        direction: MoveDirection.UP (towards step 0) or DOWN.

    Returns:
        The policy's steps in their new order.

    Raises:
        StepNotFoundError: If the step does not exist.
        StepMoveError: If the step is already first (up) or last (down).
    """
    result = await db.execute(
        select(EscalationStep).where(EscalationStep.id == step_id).with_for_update()
    )
    step = result.scalar_one_or_none()
    if step is None:
        raise StepNotFoundError(f"Escalation step {step_id} not found")

    neighbour_order = step.step_order - 1 if direction == MoveDirection.UP else step.step_order + 1

    result = await db.execute(
        select(EscalationStep)
        .where(
            EscalationStep.policy_id == step.policy_id,
            EscalationStep.step_order == neighbour_order,
        )
        .with_for_update()
    )
    neighbour = result.scalar_one_or_none()
    if neighbour is None:
        await db.rollback()
        position = "first" if direction == MoveDirection.UP else "last"
        raise StepMoveError(f"Step is already {position} in its policy")

    step_order, step_delay = step.step_order, step.delay_minutes
    neighbour_order, neighbour_delay = neighbour.step_order, neighbour.delay_minutes

    # Park the moving step outside the permutation so the unique
    # (policy_id, step_order) constraint holds at every flush.
    step.step_order = -1
    await db.flush()

    neighbour.step_order = step_order
    neighbour.delay_minutes = step_delay
    await db.flush()

    step.step_order = neighbour_order
    step.delay_minutes = neighbour_delay
    await db.commit()

    logger.info(
        "Moved escalation step",
        step_id=str(step_id),
        policy_id=str(step.policy_id),
        direction=direction.value,
        new_order=step.step_order,
    )

    return await get_ordered_steps(db, step.policy_id)
