"""Escalation policy schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from opsguard.services.notification_dispatcher import CHANNEL_SENDERS
from opsguard.services.policy_store import MoveDirection


class StepCreate(BaseModel):
    """One step of a new policy; position in the list sets its order."""

    delay_minutes: int = Field(
        default=0,
        ge=0,
        le=10080,
        description="Minutes after the previous step fired (0-10080).",
    )
    notification_targets: list[str] = Field(
        default_factory=list,
        description='Target references such as "email:oncall@example.com".',
    )

    @field_validator("notification_targets")
    @classmethod
    def validate_targets(cls, targets: list[str]) -> list[str]:
        """Each target must be ``<channel>:<address>`` with a known channel."""
        for target in targets:
            channel, sep, address = target.partition(":")
            if not sep or not address:
                raise ValueError(f"Invalid notification target {target!r}")
            if channel not in CHANNEL_SENDERS:
                raise ValueError(f"Unknown notification channel {channel!r}")
        return targets


class PolicyCreate(BaseModel):
    """Request schema for creating an escalation policy."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    steps: list[StepCreate] = Field(..., min_length=1)


class StepResponse(BaseModel):
    """Response schema for an escalation step."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    step_order: int
    delay_minutes: int
    notification_targets: list[str]


class PolicyResponse(BaseModel):
    """Response schema for an escalation policy with ordered steps."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    name: str
    description: str | None
    steps: list[StepResponse]
    created_at: datetime
    updated_at: datetime


class MoveStepRequest(BaseModel):
    """Request schema for moving a step within its policy."""

    direction: MoveDirection


class MoveStepResponse(BaseModel):
    """Steps of the affected policy after the move."""

    policy_id: uuid.UUID
    steps: list[StepResponse]
