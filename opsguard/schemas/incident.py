"""Incident schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from opsguard.models.incident import IncidentStatus, IncidentUrgency
from opsguard.services.incident_actions import MAX_SNOOZE_MINUTES


class IncidentCreate(BaseModel):
    """Request schema for triggering an incident."""

    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = None
    urgency: IncidentUrgency = IncidentUrgency.HIGH
    policy_id: uuid.UUID | None = None


class SnoozeRequest(BaseModel):
    """Request schema for snoozing an incident."""

    duration_minutes: int = Field(
        ...,
        ge=1,
        le=MAX_SNOOZE_MINUTES,
        description="Snooze length in minutes (1 minute to 7 days).",
    )
    reason: str | None = Field(default=None, max_length=500)


class IncidentResponse(BaseModel):
    """Response schema for an incident."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    title: str
    description: str | None
    status: IncidentStatus
    urgency: IncidentUrgency
    policy_id: uuid.UUID | None
    current_step_index: int
    last_step_fired_at: datetime | None
    snooze_until: datetime | None
    snooze_reason: str | None
    acknowledged_at: datetime | None
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime
