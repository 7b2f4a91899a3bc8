"""Escalation policy and step models.

A policy is an ordered list of steps. Each step's delay is relative to the
previous step firing (or to incident creation for step 0), so the absolute
fire time of step k is the sum of the delays of steps 0..k.
"""

import uuid

from sqlalchemy import JSON, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsguard.models.base import Base, TimestampMixin


class EscalationPolicy(Base, TimestampMixin):
    """Named escalation policy assigned to incidents."""

    __tablename__ = "escalation_policies"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    steps: Mapped[list["EscalationStep"]] = relationship(
        back_populates="policy",
        order_by="EscalationStep.step_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<EscalationPolicy(id={self.id}, name={self.name!r})>"


class EscalationStep(Base, TimestampMixin):
    """One notification step within a policy.

    ``step_order`` values within a policy form a contiguous 0-based
    permutation; the unique constraint keeps two steps from sharing a slot.
    """

    __tablename__ = "escalation_steps"
    __table_args__ = (
        UniqueConstraint("policy_id", "step_order", name="uq_escalation_steps_policy_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("escalation_policies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    step_order: Mapped[int] = mapped_column(Integer, nullable=False)

    # Minutes after the previous step fired
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Target references such as "email:oncall@example.com" or "slack:default"
    notification_targets: Mapped[list[str]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=list,
    )

    policy: Mapped[EscalationPolicy] = relationship(back_populates="steps")

    def __repr__(self) -> str:
        return (
            f"<EscalationStep(policy={self.policy_id}, order={self.step_order}, "
            f"delay={self.delay_minutes}m, targets={len(self.notification_targets or [])})>"
        )
