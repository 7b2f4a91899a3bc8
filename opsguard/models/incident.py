"""Incident model and its timeline events."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from opsguard.models.base import Base, TimestampMixin, UTCDateTime, utcnow


class IncidentStatus(str, enum.Enum):
    """Lifecycle status of an incident."""

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    SNOOZED = "snoozed"
    SUPPRESSED = "suppressed"
    RESOLVED = "resolved"


class IncidentUrgency(str, enum.Enum):
    """Urgency tier; selects the SLA thresholds."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Statuses in which escalation advances and SLA clocks run
ACTIVE_STATUSES: tuple[IncidentStatus, ...] = (
    IncidentStatus.OPEN,
    IncidentStatus.ACKNOWLEDGED,
)

# Statuses that permanently freeze escalation state
TERMINAL_STATUSES: tuple[IncidentStatus, ...] = (
    IncidentStatus.RESOLVED,
    IncidentStatus.SUPPRESSED,
)


class Incident(Base, TimestampMixin):
    """An operational incident and its escalation progress.

    ``current_step_index`` and ``last_step_fired_at`` are written only by the
    escalation runner. ``snooze_until`` is non-null only while SNOOZED.
    """

    __tablename__ = "incidents"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    title: Mapped[str] = mapped_column(String(500), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[IncidentStatus] = mapped_column(
        Enum(
            IncidentStatus,
            name="incidentstatus",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=IncidentStatus.OPEN,
        index=True,
    )

    urgency: Mapped[IncidentUrgency] = mapped_column(
        Enum(
            IncidentUrgency,
            name="incidenturgency",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=IncidentUrgency.HIGH,
    )

    policy_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("escalation_policies.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    current_step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_step_fired_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    snooze_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True, index=True
    )

    snooze_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    acknowledged_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    events: Mapped[list["IncidentEvent"]] = relationship(
        back_populates="incident",
        order_by="IncidentEvent.created_at",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<Incident(id={self.id}, status={self.status.value}, "
            f"urgency={self.urgency.value}, step={self.current_step_index})>"
        )


class IncidentEvent(Base):
    """Timeline entry recorded against an incident."""

    __tablename__ = "incident_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    incident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("incidents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    message: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    incident: Mapped[Incident] = relationship(back_populates="events")
