# Database Models
from opsguard.models.base import Base, TimestampMixin, UTCDateTime
from opsguard.models.escalation_policy import EscalationPolicy, EscalationStep
from opsguard.models.incident import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Incident,
    IncidentEvent,
    IncidentStatus,
    IncidentUrgency,
)
from opsguard.models.scheduler_lock import SchedulerLock
from opsguard.models.sla_warning import SLAWarningRecord

__all__ = [
    "ACTIVE_STATUSES",
    "Base",
    "EscalationPolicy",
    "EscalationStep",
    "Incident",
    "IncidentEvent",
    "IncidentStatus",
    "IncidentUrgency",
    "SLAWarningRecord",
    "SchedulerLock",
    "TERMINAL_STATUSES",
    "TimestampMixin",
    "UTCDateTime",
]
