"""SLA warning record model.

Remembers which SLA tiers have already been reported for an incident. The
unique constraint on (incident_id, breach_type) makes concurrent checkers
agree on a single winner.
"""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from opsguard.models.base import Base, UTCDateTime, utcnow


class SLAWarningRecord(Base):
    """One reported SLA tier crossing for an incident."""

    __tablename__ = "sla_warning_records"
    __table_args__ = (
        UniqueConstraint(
            "incident_id", "breach_type", name="uq_sla_warning_incident_type"
        ),
    )

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

    breach_type: Mapped[str] = mapped_column(String(50), nullable=False)

    detected_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<SLAWarningRecord(incident={self.incident_id}, type={self.breach_type})>"
