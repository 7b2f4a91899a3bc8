"""Escalation runner.

Advances each active incident through its escalation policy based on the
time elapsed since the previous step fired. Progress is committed before
notifications go out: a crash after the commit can at worst repeat a
notification on restart, never skip a step.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from itertools import accumulate

from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.database import get_session_maker
from opsguard.logging_config import get_logger
from opsguard.models.escalation_policy import EscalationStep
from opsguard.models.incident import ACTIVE_STATUSES, Incident
from opsguard.services import notification_dispatcher
from opsguard.services.incident_store import (
    conditional_update,
    get_escalatable_incident_ids,
    get_incident,
    record_incident_event,
)
from opsguard.services.notification_dispatcher import NotificationStatus
from opsguard.services.policy_store import get_policy

logger = get_logger(__name__)


class EscalationConfigError(Exception):
    """The incident's policy is missing or has no steps."""


@dataclass
class EscalationRunResult:
    """Summary of one escalation pass."""

    processed: int = 0
    fired: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class IncidentEscalationOutcome:
    """What happened to a single incident during a pass."""

    fired: int = 0
    errors: list[str] = field(default_factory=list)


def compute_due_at(incident: Incident, step: EscalationStep) -> datetime:
    """When ``step`` becomes due for ``incident``.

    The delay counts from the previous step firing, or from incident
    creation when nothing has fired yet.
    """
    anchor = incident.last_step_fired_at or incident.created_at
    return anchor + timedelta(minutes=step.delay_minutes)


def cumulative_fire_offsets(steps: list[EscalationStep]) -> list[timedelta]:
    """Offset from incident creation at which each step fires on time.

    Step k fires at the sum of the delays of steps 0..k.
    """
    ordered = sorted(steps, key=lambda s: s.step_order)
    return [
        timedelta(minutes=total)
        for total in accumulate(step.delay_minutes for step in ordered)
    ]


def build_escalation_message(
    incident: Incident,
    step_index: int,
    total_steps: int,
) -> str:
    """Build the notification text for a fired step.

    The first line doubles as the email subject.
    """
    level = step_index + 1
    headline = f"[OpsGuard] Incident: {incident.title}"
    if step_index > 0:
        headline += f" (Escalation Level {level})"

    lines = [
        headline,
        f"Urgency: {incident.urgency.value.upper()}",
        f"Status: {incident.status.value.upper()}",
        f"Escalation step {level} of {total_steps}",
        f"Incident ID: {incident.id}",
    ]
    if incident.description:
        lines.extend(["", incident.description])
    return "\n".join(lines)


async def dispatch_step(step: EscalationStep, message: str) -> list[str]:
    """Send ``message`` to every target of ``step`` concurrently.

    Returns:
        Targets whose delivery failed.
    """
    targets = list(step.notification_targets or [])
    if not targets:
        logger.warning("Escalation step has no notification targets", step_id=str(step.id))
        return []

    statuses = await asyncio.gather(
        *(notification_dispatcher.send(target, message) for target in targets),
        return_exceptions=True,
    )
    failed = []
    for target, status in zip(targets, statuses):
        if isinstance(status, asyncio.CancelledError):
            raise status
        if isinstance(status, Exception):
            logger.error(
                "Escalation delivery raised",
                step_id=str(step.id),
                target=target,
                error=f"{type(status).__name__}: {status}",
            )
            failed.append(target)
        elif status != NotificationStatus.SENT:
            failed.append(target)
    return failed


async def escalate_incident(
    db: AsyncSession,
    incident_id: uuid.UUID,
    now: datetime,
) -> IncidentEscalationOutcome:
    """Fire every step of one incident's policy that is due at ``now``.

    Zero-delay steps following a fired step fire in the same call, so a
    repeated call at the same instant fires nothing.

    Args:
        db: Database session dedicated to this incident.
        incident_id: Incident to evaluate.
        now: Evaluation time.

    Returns:
        IncidentEscalationOutcome with fired count and delivery errors.

    Raises:
        EscalationConfigError: If the assigned policy is missing or empty.
    """
    outcome = IncidentEscalationOutcome()

    incident = await get_incident(db, incident_id)
    if incident is None or incident.status not in ACTIVE_STATUSES:
        return outcome
    if incident.policy_id is None:
        return outcome
    # Local progress tracking below must never be flushed back
    db.expunge(incident)

    policy = await get_policy(db, incident.policy_id)
    if policy is None:
        raise EscalationConfigError(f"Escalation policy {incident.policy_id} not found")
    steps = list(policy.steps)
    if not steps:
        raise EscalationConfigError(f"Escalation policy {policy.id} has no steps")

    while incident.current_step_index < len(steps):
        step_index = incident.current_step_index
        step = steps[step_index]
        due_at = compute_due_at(incident, step)

        if now < due_at:
            logger.debug(
                "Escalation step not yet due",
                incident_id=str(incident_id),
                step=step_index,
                due_at=due_at.isoformat(),
            )
            break

        # Persist progress before dispatch
        advanced = await conditional_update(
            db,
            incident_id,
            ACTIVE_STATUSES,
            {
                "current_step_index": step_index + 1,
                "last_step_fired_at": now,
                "updated_at": now,
            },
            expected_step_index=step_index,
        )
        if not advanced:
            await db.rollback()
            logger.debug(
                "Escalation step already advanced or incident no longer active",
                incident_id=str(incident_id),
                step=step_index,
            )
            break
        await db.commit()

        incident.current_step_index = step_index + 1
        incident.last_step_fired_at = now
        outcome.fired += 1

        logger.info(
            "Escalation step fired",
            incident_id=str(incident_id),
            step=step_index,
            delay_minutes=step.delay_minutes,
            target_count=len(step.notification_targets or []),
        )

        message = build_escalation_message(incident, step_index, len(steps))
        failed_targets = await dispatch_step(step, message)
        for target in failed_targets:
            outcome.errors.append(
                f"Incident {incident_id}: delivery to {target} failed "
                f"(step {step_index + 1})"
            )

        delay_note = (
            f", after {step.delay_minutes} minute delay" if step.delay_minutes > 0 else ""
        )
        await record_incident_event(
            db,
            incident_id,
            f"Escalated to level {step_index + 1} of {len(steps)}{delay_note}; "
            f"{len(step.notification_targets or []) - len(failed_targets)} of "
            f"{len(step.notification_targets or [])} notifications delivered",
            created_at=now,
        )

    return outcome


async def advance_escalations(now: datetime | None = None) -> EscalationRunResult:
    """Run one escalation pass over all active incidents with a policy.

    Each incident is evaluated in its own session. A failure for one
    incident is recorded in ``errors`` and does not stop the pass.

    Args:
        now: Evaluation time (defaults to the current UTC time).

    Returns:
        EscalationRunResult with processed, fired and errors.
    """
    now = now or datetime.now(UTC)
    result = EscalationRunResult()

    async with get_session_maker()() as db:
        incident_ids = await get_escalatable_incident_ids(db)

    if not incident_ids:
        logger.debug("No incidents eligible for escalation")
        return result

    for incident_id in incident_ids:
        result.processed += 1
        try:
            async with get_session_maker()() as db:
                outcome = await escalate_incident(db, incident_id, now)
            result.fired += outcome.fired
            result.errors.extend(outcome.errors)
        except EscalationConfigError as e:
            logger.warning(
                "Escalation configuration error",
                incident_id=str(incident_id),
                error=str(e),
            )
            result.errors.append(f"Incident {incident_id}: {e}")
        except Exception as e:
            logger.error(
                "Unexpected error escalating incident",
                incident_id=str(incident_id),
                error=str(e),
                exc_info=True,
            )
            result.errors.append(f"Incident {incident_id}: {e}")

    logger.info(
        "Escalation pass completed",
        processed=result.processed,
        fired=result.fired,
        errors=len(result.errors),
    )
    return result
