"""Auto-unsnooze processor.

Returns incidents whose snooze window has elapsed to OPEN so escalation and
SLA tracking pick them up again. The write is keyed on status = SNOOZED: an
incident acknowledged or resolved in the meantime is left alone.

Once reopened, the responders of the last fired escalation step get a
best-effort notice. A failed notice is logged and never undoes the reopen.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.database import get_session_maker
from opsguard.logging_config import get_logger
from opsguard.models.incident import Incident, IncidentStatus
from opsguard.services.escalation_runner import dispatch_step
from opsguard.services.incident_store import (
    conditional_update,
    get_expired_snooze_ids,
    get_incident,
    record_incident_event,
)
from opsguard.services.policy_store import get_policy

logger = get_logger(__name__)

UNSNOOZE_EVENT_MESSAGE = "Incident auto-unsnoozed (snooze duration expired)"


@dataclass
class UnsnoozeResult:
    """Summary of one auto-unsnooze pass."""

    unsnoozed: int = 0
    errors: list[str] = field(default_factory=list)


def build_reactivation_message(incident: Incident) -> str:
    """Notice sent when a snoozed incident reopens.

    The first line doubles as the email subject.
    """
    lines = [
        f"[OpsGuard] Incident reopened: {incident.title}",
        "Snooze expired; the incident is open again",
        f"Urgency: {incident.urgency.value.upper()}",
        f"Incident ID: {incident.id}",
    ]
    return "\n".join(lines)


async def notify_reactivated(db: AsyncSession, incident_id: uuid.UUID) -> list[str]:
    """Tell the responders of the last fired step that the incident reopened.

    Nothing is sent when no step has fired yet; the escalation runner
    pages the first step when it comes due.

    Returns:
        Targets whose delivery failed.
    """
    incident = await get_incident(db, incident_id)
    if incident is None or incident.policy_id is None or incident.current_step_index == 0:
        return []

    policy = await get_policy(db, incident.policy_id)
    if policy is None:
        return []
    steps = list(policy.steps)
    step_index = min(incident.current_step_index, len(steps)) - 1
    if step_index < 0:
        return []

    return await dispatch_step(steps[step_index], build_reactivation_message(incident))


async def unsnooze_incident(
    db: AsyncSession,
    incident_id: uuid.UUID,
    now: datetime,
) -> bool:
    """Reopen one snoozed incident if it is still snoozed.

    Returns:
        True if this call reopened the incident, False if it had already
        left SNOOZED.
    """
    reopened = await conditional_update(
        db,
        incident_id,
        (IncidentStatus.SNOOZED,),
        {
            "status": IncidentStatus.OPEN,
            "snooze_until": None,
            "snooze_reason": None,
            "updated_at": now,
        },
    )
    if not reopened:
        await db.rollback()
        logger.debug(
            "Incident left SNOOZED before auto-unsnooze, skipping",
            incident_id=str(incident_id),
        )
        return False

    await db.commit()

    logger.info("Incident auto-unsnoozed", incident_id=str(incident_id))
    await record_incident_event(db, incident_id, UNSNOOZE_EVENT_MESSAGE, created_at=now)

    try:
        failed_targets = await notify_reactivated(db, incident_id)
    except Exception as e:
        logger.warning(
            "Reactivation notice failed",
            incident_id=str(incident_id),
            error=str(e),
        )
    else:
        if failed_targets:
            logger.warning(
                "Reactivation notice not delivered",
                incident_id=str(incident_id),
                failed_targets=failed_targets,
            )
    return True


async def process_auto_unsnooze(now: datetime | None = None) -> UnsnoozeResult:
    """Reopen every incident whose snooze_until is at or before ``now``.

    Args:
        now: Evaluation time (defaults to the current UTC time).

    Returns:
        UnsnoozeResult with the number of incidents reopened.
    """
    now = now or datetime.now(UTC)
    result = UnsnoozeResult()

    async with get_session_maker()() as db:
        incident_ids = await get_expired_snooze_ids(db, now)

    for incident_id in incident_ids:
        try:
            async with get_session_maker()() as db:
                if await unsnooze_incident(db, incident_id, now):
                    result.unsnoozed += 1
        except Exception as e:
            logger.error(
                "Auto-unsnooze failed for incident",
                incident_id=str(incident_id),
                error=str(e),
                exc_info=True,
            )
            result.errors.append(f"Incident {incident_id}: {e}")

    if incident_ids:
        logger.info(
            "Auto-unsnooze pass completed",
            candidates=len(incident_ids),
            unsnoozed=result.unsnoozed,
            errors=len(result.errors),
        )
    return result
