"""Scheduler and processor result schemas for the cron surface."""

import uuid
from datetime import datetime

from pydantic import BaseModel


class SchedulerStatusResponse(BaseModel):
    """Snapshot of the supervisor status."""

    model_config = {"from_attributes": True}

    running: bool
    last_run_at: datetime | None
    last_success_at: datetime | None
    last_error: str | None
    schedule: str


class EscalationRunResponse(BaseModel):
    model_config = {"from_attributes": True}

    skipped: bool = False
    processed: int = 0
    fired: int = 0
    errors: list[str] = []


class SLABreachWarningResponse(BaseModel):
    model_config = {"from_attributes": True}

    incident_id: uuid.UUID
    breach_type: str
    title: str
    time_remaining_ms: int


class SLACheckResponse(BaseModel):
    """SLA cycle summary; only ``skipped`` is meaningful when it is true."""

    model_config = {"from_attributes": True}

    skipped: bool = False
    active_incident_count: int = 0
    warning_count: int = 0
    warnings: list[SLABreachWarningResponse] = []
    checked_at: datetime | None = None
    errors: list[str] = []


class UnsnoozeResponse(BaseModel):
    model_config = {"from_attributes": True}

    skipped: bool = False
    unsnoozed: int = 0
    errors: list[str] = []


class TickResponse(BaseModel):
    """Outcome of a supervised pass triggered over HTTP.

    ``skipped`` is true when another pass was already running; no other
    field is populated then.
    """

    skipped: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    escalation: EscalationRunResponse | None = None
    sla: SLACheckResponse | None = None
    unsnooze: UnsnoozeResponse | None = None
    error: str | None = None
