"""Interactive incident actions.

Trigger, acknowledge, resolve, snooze and suppress. These race with the
background processors, so every transition is a conditional update on the
statuses it may start from. Snooze sets ``snooze_until``; leaving SNOOZED
always clears it.
"""

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.logging_config import get_logger
from opsguard.models.incident import (
    TERMINAL_STATUSES,
    Incident,
    IncidentStatus,
    IncidentUrgency,
)
from opsguard.services.incident_store import (
    add_incident_event,
    conditional_update,
    get_incident,
)
from opsguard.services.policy_store import get_policy

logger = get_logger(__name__)

MAX_SNOOZE_MINUTES = 7 * 24 * 60

_NON_TERMINAL = tuple(s for s in IncidentStatus if s not in TERMINAL_STATUSES)


class IncidentNotFoundError(Exception):
    """The incident does not exist."""


class IncidentTransitionError(Exception):
    """The incident is not in a status the action can start from."""


class UnknownPolicyError(Exception):
    """The referenced escalation policy does not exist."""


async def trigger_incident(
    db: AsyncSession,
    title: str,
    urgency: IncidentUrgency = IncidentUrgency.HIGH,
    policy_id: uuid.UUID | None = None,
    description: str | None = None,
    now: datetime | None = None,
) -> Incident:
    """Open a new incident with fresh escalation state.

    Raises:
        UnknownPolicyError: If ``policy_id`` does not reference a policy.
    """
    now = now or datetime.now(UTC)

    if policy_id is not None and await get_policy(db, policy_id) is None:
        raise UnknownPolicyError(f"Escalation policy {policy_id} not found")

    incident = Incident(
        title=title,
        description=description,
        urgency=urgency,
        status=IncidentStatus.OPEN,
        policy_id=policy_id,
        current_step_index=0,
        last_step_fired_at=None,
        created_at=now,
        updated_at=now,
    )
    db.add(incident)
    await db.flush()
    await add_incident_event(db, incident.id, "Incident triggered", created_at=now)
    await db.commit()

    logger.info(
        "Incident triggered",
        incident_id=str(incident.id),
        urgency=urgency.value,
        policy_id=str(policy_id) if policy_id else None,
    )
    return incident


async def _transition(
    db: AsyncSession,
    incident_id: uuid.UUID,
    allowed_from: tuple[IncidentStatus, ...],
    values: dict,
    event_message: str,
    now: datetime,
) -> Incident:
    changed = await conditional_update(db, incident_id, allowed_from, values)
    if not changed:
        await db.rollback()
        incident = await get_incident(db, incident_id)
        if incident is None:
            raise IncidentNotFoundError(f"Incident {incident_id} not found")
        raise IncidentTransitionError(
            f"Incident is {incident.status.value}; expected one of "
            f"{', '.join(s.value for s in allowed_from)}"
        )

    await add_incident_event(db, incident_id, event_message, created_at=now)
    await db.commit()

    incident = await get_incident(db, incident_id)
    logger.info(
        "Incident status changed",
        incident_id=str(incident_id),
        status=incident.status.value,
    )
    return incident


async def acknowledge_incident(
    db: AsyncSession,
    incident_id: uuid.UUID,
    now: datetime | None = None,
) -> Incident:
    """OPEN or SNOOZED -> ACKNOWLEDGED."""
    now = now or datetime.now(UTC)
    return await _transition(
        db,
        incident_id,
        (IncidentStatus.OPEN, IncidentStatus.SNOOZED),
        {
            "status": IncidentStatus.ACKNOWLEDGED,
            "acknowledged_at": now,
            "snooze_until": None,
            "snooze_reason": None,
            "updated_at": now,
        },
        "Incident acknowledged",
        now,
    )


async def resolve_incident(
    db: AsyncSession,
    incident_id: uuid.UUID,
    now: datetime | None = None,
) -> Incident:
    """Any non-terminal status -> RESOLVED. Escalation state freezes."""
    now = now or datetime.now(UTC)
    return await _transition(
        db,
        incident_id,
        _NON_TERMINAL,
        {
            "status": IncidentStatus.RESOLVED,
            "resolved_at": now,
            "snooze_until": None,
            "snooze_reason": None,
            "updated_at": now,
        },
        "Incident resolved",
        now,
    )


async def suppress_incident(
    db: AsyncSession,
    incident_id: uuid.UUID,
    now: datetime | None = None,
) -> Incident:
    """Any non-terminal status -> SUPPRESSED. Escalation state freezes."""
    now = now or datetime.now(UTC)
    return await _transition(
        db,
        incident_id,
        _NON_TERMINAL,
        {
            "status": IncidentStatus.SUPPRESSED,
            "snooze_until": None,
            "snooze_reason": None,
            "updated_at": now,
        },
        "Incident suppressed",
        now,
    )


async def snooze_incident(
    db: AsyncSession,
    incident_id: uuid.UUID,
    duration_minutes: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> Incident:
    """OPEN or ACKNOWLEDGED -> SNOOZED until ``now + duration_minutes``.

    Raises:
        ValueError: If the duration is not between 1 minute and 7 days.
    """
    if not 1 <= duration_minutes <= MAX_SNOOZE_MINUTES:
        raise ValueError(
            f"Snooze duration must be between 1 and {MAX_SNOOZE_MINUTES} minutes"
        )

    now = now or datetime.now(UTC)
    snooze_until = now + timedelta(minutes=duration_minutes)
    reason_note = f" (Reason: {reason})" if reason else ""

    return await _transition(
        db,
        incident_id,
        (IncidentStatus.OPEN, IncidentStatus.ACKNOWLEDGED),
        {
            "status": IncidentStatus.SNOOZED,
            "snooze_until": snooze_until,
            "snooze_reason": reason,
            "updated_at": now,
        },
        f"Incident snoozed until {snooze_until.isoformat()}{reason_note}",
        now,
    )
