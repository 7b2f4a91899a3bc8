"""SLA breach monitor.

Compares each active incident's age with the thresholds configured for its
urgency and reports every tier that has been crossed since the previous
check. Which tiers were already reported is remembered in
``sla_warning_records``, so a tier is warned about exactly once per incident
even with several checkers running.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.config import settings
from opsguard.database import get_session_maker
from opsguard.logging_config import get_logger
from opsguard.models.incident import Incident, IncidentUrgency
from opsguard.models.sla_warning import SLAWarningRecord
from opsguard.services import notification_dispatcher
from opsguard.services.incident_store import count_active_incidents, get_active_incidents
from opsguard.services.notification_dispatcher import NotificationStatus

logger = get_logger(__name__)

MS_PER_MINUTE = 60_000


class SLAConfigError(Exception):
    """No usable thresholds are configured for an urgency."""


@dataclass
class SLACheckOptions:
    """Delivery options for a check cycle."""

    notify_slack: bool = False
    notify_email: bool = False
    alert_email: str | None = None


@dataclass
class SLABreachWarning:
    """A threshold crossed by an incident; negative time means overdue."""

    incident_id: uuid.UUID
    breach_type: str
    title: str
    time_remaining_ms: int


@dataclass
class SLACheckResult:
    """Outcome of one SLA check cycle."""

    active_incident_count: int
    warning_count: int
    warnings: list[SLABreachWarning]
    checked_at: datetime
    errors: list[str] = field(default_factory=list)


def get_thresholds(
    urgency: IncidentUrgency,
    thresholds: dict[str, dict[str, int]] | None = None,
) -> list[tuple[str, int]]:
    """Tier thresholds for an urgency as (tier, minutes), earliest first.

    Args:
        urgency: Incident urgency.
        thresholds: Mapping of urgency -> tier -> minutes
            (defaults to ``settings.sla_thresholds``).

    Raises:
        SLAConfigError: If the urgency has no thresholds or one is negative.
    """
    table = settings.sla_thresholds if thresholds is None else thresholds
    tiers = table.get(urgency.value)
    if not tiers:
        raise SLAConfigError(f"No SLA thresholds configured for urgency {urgency.value}")

    for tier, minutes in tiers.items():
        if minutes < 0:
            raise SLAConfigError(
                f"SLA threshold {tier} for urgency {urgency.value} is negative"
            )
    return sorted(tiers.items(), key=lambda item: item[1])


def crossed_tiers(
    incident: Incident,
    tiers: list[tuple[str, int]],
    now: datetime,
) -> list[SLABreachWarning]:
    """Every tier whose threshold the incident's age has reached at ``now``."""
    elapsed_ms = int((now - incident.created_at).total_seconds() * 1000)
    return [
        SLABreachWarning(
            incident_id=incident.id,
            breach_type=tier,
            title=incident.title,
            time_remaining_ms=minutes * MS_PER_MINUTE - elapsed_ms,
        )
        for tier, minutes in tiers
        if elapsed_ms >= minutes * MS_PER_MINUTE
    ]


async def record_new_warnings(
    db: AsyncSession,
    incident_id: uuid.UUID,
    candidates: list[SLABreachWarning],
    now: datetime,
) -> list[SLABreachWarning]:
    """Keep only warnings not reported before and remember them.

    Returns:
        The newly recorded warnings; empty if another checker recorded the
        same tiers concurrently.
    """
    if not candidates:
        return []

    result = await db.execute(
        select(SLAWarningRecord.breach_type).where(
            SLAWarningRecord.incident_id == incident_id
        )
    )
    already_reported = {row[0] for row in result.all()}

    new_warnings = [w for w in candidates if w.breach_type not in already_reported]
    if not new_warnings:
        return []

    for warning in new_warnings:
        db.add(
            SLAWarningRecord(
                incident_id=incident_id,
                breach_type=warning.breach_type,
                detected_at=now,
            )
        )

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.debug(
            "SLA warning already recorded (race condition)",
            incident_id=str(incident_id),
        )
        return []

    return new_warnings


def format_warning_message(warning: SLABreachWarning) -> str:
    """Plain-text notification for a warning; first line is the subject."""
    remaining_min = round(warning.time_remaining_ms / MS_PER_MINUTE)
    if warning.time_remaining_ms < 0:
        timing = f"{abs(remaining_min)}m past the {warning.breach_type} threshold"
    else:
        timing = f"{remaining_min}m remaining"

    return "\n".join(
        [
            f"[OpsGuard] SLA {warning.breach_type.upper()}: {warning.title}",
            f"Incident ID: {warning.incident_id}",
            f"Timing: {timing}",
        ]
    )


async def deliver_warnings(
    warnings: list[SLABreachWarning],
    options: SLACheckOptions,
) -> int:
    """Forward warnings to the enabled channels.

    Returns:
        Number of failed deliveries (already logged by the dispatcher).
    """
    targets: list[str] = []
    if options.notify_slack:
        targets.append("slack:default")
    if options.notify_email:
        if options.alert_email:
            targets.append(f"email:{options.alert_email}")
        else:
            logger.warning("SLA email notification requested without an alert email")

    failures = 0
    for warning in warnings:
        message = format_warning_message(warning)
        for target in targets:
            # Warnings are already recorded; delivery must not abort the cycle
            try:
                status = await notification_dispatcher.send(target, message)
            except Exception as e:
                logger.error(
                    "SLA warning delivery failed",
                    incident_id=str(warning.incident_id),
                    target=target,
                    error=str(e),
                    exc_info=True,
                )
                status = NotificationStatus.FAILED
            if status != NotificationStatus.SENT:
                failures += 1
    return failures


async def check_sla_breaches(
    options: SLACheckOptions | None = None,
    now: datetime | None = None,
    thresholds: dict[str, dict[str, int]] | None = None,
) -> SLACheckResult:
    """Run one SLA check cycle.

    Args:
        options: Delivery options (no delivery by default).
        now: Evaluation time (defaults to the cycle start).
        thresholds: Threshold table override (defaults to settings).

    Returns:
        SLACheckResult. Warnings reflect detection, whatever happened to
        delivery.
    """
    options = options or SLACheckOptions()
    checked_at = datetime.now(UTC)
    now = now or checked_at

    async with get_session_maker()() as db:
        active_count = await count_active_incidents(db)
        incidents = await get_active_incidents(db)

    warnings: list[SLABreachWarning] = []
    errors: list[str] = []

    for incident in incidents:
        try:
            tiers = get_thresholds(incident.urgency, thresholds)
            candidates = crossed_tiers(incident, tiers, now)
            if not candidates:
                continue
            async with get_session_maker()() as db:
                warnings.extend(await record_new_warnings(db, incident.id, candidates, now))
        except SLAConfigError as e:
            logger.warning(
                "SLA configuration error",
                incident_id=str(incident.id),
                error=str(e),
            )
            errors.append(f"Incident {incident.id}: {e}")
        except Exception as e:
            logger.error(
                "Unexpected error checking SLA",
                incident_id=str(incident.id),
                error=str(e),
                exc_info=True,
            )
            errors.append(f"Incident {incident.id}: {e}")

    delivery_failures = 0
    if warnings:
        delivery_failures = await deliver_warnings(warnings, options)

    logger.info(
        "SLA check completed",
        active_incidents=active_count,
        warnings=len(warnings),
        delivery_failures=delivery_failures,
        errors=len(errors),
    )

    return SLACheckResult(
        active_incident_count=active_count,
        warning_count=len(warnings),
        warnings=warnings,
        checked_at=checked_at,
        errors=errors,
    )
