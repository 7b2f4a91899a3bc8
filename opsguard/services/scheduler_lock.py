"""Persisted lease backing the supervisor guard across processes.

Used when more than one trigger source (internal timer plus an external cron
hitting the HTTP endpoint, or several replicas) can start a pass. The lease
is taken with a conditional write and expires after a TTL so a crashed
holder cannot block future passes forever.
"""

import os
import socket
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from opsguard.database import get_session_maker
from opsguard.logging_config import get_logger
from opsguard.models.scheduler_lock import SchedulerLock

logger = get_logger(__name__)

DEFAULT_LOCK_NAME = "opsguard-scheduler"


def default_holder_id() -> str:
    """Identify this process as ``host:pid:random``."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class DatabaseSchedulerLock:
    """Lease on a ``scheduler_locks`` row."""

    def __init__(
        self,
        ttl_seconds: int,
        name: str = DEFAULT_LOCK_NAME,
        holder: str | None = None,
    ) -> None:
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds)
        self.holder = holder or default_holder_id()

    async def _ensure_row(self) -> None:
        async with get_session_maker()() as db:
            if await db.get(SchedulerLock, self.name) is not None:
                return
            db.add(SchedulerLock(name=self.name))
            try:
                await db.commit()
            except IntegrityError:
                # Another process created it first
                await db.rollback()

    async def acquire(self, now: datetime | None = None) -> bool:
        """Take the lease if it is free, expired, or already ours.

        Returns:
            True if this holder now owns the lease.
        """
        now = now or datetime.now(UTC)
        await self._ensure_row()

        async with get_session_maker()() as db:
            result = await db.execute(
                update(SchedulerLock)
                .where(
                    SchedulerLock.name == self.name,
                    or_(
                        SchedulerLock.locked_until.is_(None),
                        SchedulerLock.locked_until <= now,
                        SchedulerLock.holder == self.holder,
                    ),
                )
                .values(holder=self.holder, locked_until=now + self.ttl)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        acquired = result.rowcount == 1
        if not acquired:
            logger.info("Scheduler lock held by another process", lock=self.name)
        return acquired

    async def release(self) -> None:
        """Give the lease back if we still hold it."""
        async with get_session_maker()() as db:
            await db.execute(
                update(SchedulerLock)
                .where(
                    SchedulerLock.name == self.name,
                    SchedulerLock.holder == self.holder,
                )
                .values(holder=None, locked_until=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
