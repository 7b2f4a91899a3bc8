"""Incident data access.

All writes made by the background processors and the interactive actions are
conditional updates: the WHERE clause restates the state the caller observed,
and a zero row count means someone else changed the incident first.
"""

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.logging_config import get_logger
from opsguard.models.incident import (
    ACTIVE_STATUSES,
    Incident,
    IncidentEvent,
    IncidentStatus,
)

logger = get_logger(__name__)


async def get_incident(db: AsyncSession, incident_id: uuid.UUID) -> Incident | None:
    """Fetch a fresh copy of an incident."""
    result = await db.execute(
        select(Incident)
        .where(Incident.id == incident_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_escalatable_incident_ids(db: AsyncSession) -> list[uuid.UUID]:
    """IDs of active incidents that have an escalation policy assigned."""
    result = await db.execute(
        select(Incident.id)
        .where(
            Incident.status.in_(ACTIVE_STATUSES),
            Incident.policy_id.is_not(None),
        )
        .order_by(Incident.created_at)
    )
    return [row[0] for row in result.all()]


async def get_active_incidents(db: AsyncSession) -> list[Incident]:
    """All incidents whose SLA clock is running, oldest first."""
    result = await db.execute(
        select(Incident)
        .where(Incident.status.in_(ACTIVE_STATUSES))
        .order_by(Incident.created_at)
    )
    return list(result.scalars().all())


async def count_active_incidents(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count()).select_from(Incident).where(Incident.status.in_(ACTIVE_STATUSES))
    )
    return int(result.scalar_one())


async def get_expired_snooze_ids(db: AsyncSession, now: datetime) -> list[uuid.UUID]:
    """IDs of snoozed incidents whose snooze window has elapsed at ``now``."""
    result = await db.execute(
        select(Incident.id)
        .where(
            Incident.status == IncidentStatus.SNOOZED,
            Incident.snooze_until.is_not(None),
            Incident.snooze_until <= now,
        )
        .order_by(Incident.snooze_until)
    )
    return [row[0] for row in result.all()]


async def conditional_update(
    db: AsyncSession,
    incident_id: uuid.UUID,
    expected_statuses: Iterable[IncidentStatus],
    values: dict[str, Any],
    expected_step_index: int | None = None,
) -> bool:
    """Apply ``values`` only if the incident is still in an expected state.

    Does not commit; the caller owns the transaction.

    Args:
        db: Database session.
        incident_id: Incident to update.
        expected_statuses: Statuses the incident must currently have.
        values: Column values to set.
        expected_step_index: If given, current_step_index must also match.

    Returns:
        True if a row was updated, False if the guard matched nothing.
    """
    conditions = [
        Incident.id == incident_id,
        Incident.status.in_(list(expected_statuses)),
    ]
    if expected_step_index is not None:
        conditions.append(Incident.current_step_index == expected_step_index)

    result = await db.execute(
        update(Incident)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def add_incident_event(
    db: AsyncSession,
    incident_id: uuid.UUID,
    message: str,
    created_at: datetime | None = None,
) -> IncidentEvent:
    """Stage a timeline entry (caller commits)."""
    event = IncidentEvent(incident_id=incident_id, message=message)
    if created_at is not None:
        event.created_at = created_at
    db.add(event)
    return event


async def record_incident_event(
    db: AsyncSession,
    incident_id: uuid.UUID,
    message: str,
    created_at: datetime | None = None,
) -> bool:
    """Write a timeline entry in its own commit, best-effort.

    Failures are logged and swallowed so audit trouble never blocks a state
    transition that has already been committed.

    Returns:
        True if the entry was stored.
    """
    try:
        await add_incident_event(db, incident_id, message, created_at)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.warning(
            "Failed to record incident event",
            incident_id=str(incident_id),
            error=str(e),
        )
        return False
    return True
