"""Scheduler supervisor and background tick.

The supervisor owns the periodic pass: Escalation Runner, then SLA Monitor,
then Auto-Unsnooze. It has two states, IDLE and RUNNING. A tick that
arrives while RUNNING is rejected (not queued) and leaves the status
untouched. Single-processor runs from the cron surface take the same
guard. With ``scheduler_distributed_lock`` enabled the guard is also
backed by a persisted lease so separate processes do not overlap.

APScheduler provides the internal timer; the HTTP cron endpoint calls the
same supervisor.
"""

import asyncio
import dataclasses
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from opsguard.config import settings
from opsguard.logging_config import correlation_id_ctx, get_logger
from opsguard.services.auto_unsnooze import UnsnoozeResult, process_auto_unsnooze
from opsguard.services.escalation_runner import EscalationRunResult, advance_escalations
from opsguard.services.scheduler_lock import DatabaseSchedulerLock
from opsguard.services.sla_monitor import (
    SLACheckOptions,
    SLACheckResult,
    check_sla_breaches,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Global APScheduler instance
scheduler: AsyncIOScheduler | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SchedulerStatus:
    """Last-run telemetry for operational dashboards."""

    running: bool = False
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    schedule: str = ""


@dataclass
class TickResult:
    """Outcome of one supervised pass."""

    started_at: datetime
    finished_at: datetime | None = None
    escalation: EscalationRunResult | None = None
    sla: SLACheckResult | None = None
    unsnooze: UnsnoozeResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class SchedulerSupervisor:
    """Serializes passes and records their outcome.

    Processors are injectable so alternative stores or test doubles can be
    wired in; by default the real services are used.
    """

    def __init__(
        self,
        schedule: str,
        escalation_runner: Callable[[datetime], Awaitable[EscalationRunResult]] = advance_escalations,
        sla_monitor: Callable[..., Awaitable[SLACheckResult]] = check_sla_breaches,
        unsnooze_processor: Callable[[datetime], Awaitable[UnsnoozeResult]] = process_auto_unsnooze,
        sla_options: SLACheckOptions | None = None,
        distributed_lock: DatabaseSchedulerLock | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._status = SchedulerStatus(schedule=schedule)
        self._guard = asyncio.Lock()
        self._escalation_runner = escalation_runner
        self._sla_monitor = sla_monitor
        self._unsnooze_processor = unsnooze_processor
        self._sla_options = sla_options or SLACheckOptions()
        self._distributed_lock = distributed_lock
        self._clock = clock

    @property
    def sla_options(self) -> SLACheckOptions:
        return self._sla_options

    def status(self) -> SchedulerStatus:
        """Read-only snapshot of the current status."""
        return dataclasses.replace(self._status)

    @property
    def is_running(self) -> bool:
        return self._guard.locked()

    async def tick(self, now: datetime | None = None) -> TickResult | None:
        """Run one pass unless a pass is already running.

        Args:
            now: Evaluation time for the processors (defaults to the clock).

        Returns:
            TickResult, or None if the tick was rejected.
        """
        return await self.run_exclusive(self._run_pass, now)

    async def run_escalations(self, now: datetime | None = None) -> EscalationRunResult | None:
        """Run only the Escalation Runner under the supervisor guard."""
        return await self.run_exclusive(self._escalation_runner, now)

    async def run_sla_check(self, now: datetime | None = None) -> SLACheckResult | None:
        """Run only the SLA Monitor under the supervisor guard."""

        async def check(at: datetime) -> SLACheckResult:
            return await self._sla_monitor(self._sla_options, at)

        return await self.run_exclusive(check, now)

    async def run_unsnooze(self, now: datetime | None = None) -> UnsnoozeResult | None:
        """Run only Auto-Unsnooze under the supervisor guard."""
        return await self.run_exclusive(self._unsnooze_processor, now)

    async def run_exclusive(
        self,
        processor: Callable[[datetime], Awaitable[T]],
        now: datetime | None = None,
    ) -> T | None:
        """Await ``processor(now)`` while holding the pass guard.

        Full passes and single-processor runs share this guard, so none of
        them overlap. Only full passes update last_run_at, last_success_at
        and last_error.

        Returns:
            The processor result, or None if another run holds the guard.
        """
        # No await between the check and the acquire, so this is atomic
        # on the event loop.
        if self._guard.locked():
            logger.info("Run rejected: previous pass still running")
            return None

        async with self._guard:
            if self._distributed_lock is not None:
                try:
                    acquired = await self._distributed_lock.acquire(now)
                except Exception as e:
                    logger.error("Failed to acquire scheduler lock", error=str(e))
                    self._status.last_error = f"Scheduler lock unavailable: {e}"
                    return None
                if not acquired:
                    return None

            self._status.running = True
            try:
                return await processor(now or self._clock())
            finally:
                self._status.running = False
                if self._distributed_lock is not None:
                    try:
                        await self._distributed_lock.release()
                    except Exception as e:
                        logger.warning("Failed to release scheduler lock", error=str(e))

    async def _run_pass(self, now: datetime) -> TickResult:
        token = correlation_id_ctx.set(f"tick-{uuid.uuid4().hex[:12]}")
        self._status.last_run_at = now
        result = TickResult(started_at=now)

        logger.info("Scheduler pass started", started_at=now.isoformat())

        try:
            if settings.escalation_enabled:
                result.escalation = await self._escalation_runner(now)
            if settings.sla_check_enabled:
                result.sla = await self._sla_monitor(self._sla_options, now)
            if settings.auto_unsnooze_enabled:
                result.unsnooze = await self._unsnooze_processor(now)
        except Exception as e:
            result.error = f"{type(e).__name__}: {e}"
            logger.exception("Scheduler pass failed", error=result.error)
        finally:
            result.finished_at = self._clock()
            if result.error is None:
                self._status.last_success_at = result.finished_at
                self._status.last_error = None
            else:
                self._status.last_error = result.error
            correlation_id_ctx.reset(token)

        logger.info(
            "Scheduler pass completed",
            succeeded=result.succeeded,
            duration_ms=round(
                (result.finished_at - result.started_at).total_seconds() * 1000, 2
            ),
        )
        return result


def describe_schedule(interval_minutes: int) -> str:
    """Human-readable cadence for the status surface."""
    if interval_minutes == 1:
        return "every minute"
    return f"every {interval_minutes} minutes"


def create_supervisor() -> SchedulerSupervisor:
    """Build a supervisor wired to the configured processors and lock."""
    lock = None
    if settings.scheduler_distributed_lock:
        lock = DatabaseSchedulerLock(ttl_seconds=settings.scheduler_lock_ttl_seconds)

    return SchedulerSupervisor(
        schedule=describe_schedule(settings.scheduler_interval_minutes),
        sla_options=SLACheckOptions(
            notify_slack=settings.sla_notify_slack,
            notify_email=settings.sla_notify_email,
            alert_email=settings.sla_alert_email or None,
        ),
        distributed_lock=lock,
    )


def start_scheduler(supervisor: SchedulerSupervisor) -> AsyncIOScheduler | None:
    """Start the internal timer driving ``supervisor.tick``.

    Returns:
        The started scheduler, or None when the internal timer is disabled.
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    if not settings.scheduler_enabled:
        logger.info("Internal scheduler disabled (set SCHEDULER_ENABLED=true to enable)")
        return None

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        supervisor.tick,
        trigger=IntervalTrigger(minutes=settings.scheduler_interval_minutes),
        id="opsguard_tick",
        name="OpsGuard Engine Tick",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        "Background scheduler started",
        interval_minutes=settings.scheduler_interval_minutes,
    )

    return scheduler


def stop_scheduler() -> None:
    """Stop the internal timer."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    return scheduler
