"""Persisted scheduler lock.

Coordinates the supervisor's IDLE/RUNNING guard across processes. A lock is
held while ``locked_until`` is in the future; an expired lease may be taken
over by any process.
"""

from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from opsguard.models.base import Base, UTCDateTime


class SchedulerLock(Base):
    """Named lease row."""

    __tablename__ = "scheduler_locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)

    holder: Mapped[str | None] = mapped_column(String(200), nullable=True)

    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<SchedulerLock(name={self.name!r}, holder={self.holder!r})>"
