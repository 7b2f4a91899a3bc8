"""Tests for the scheduler supervisor and internal timer."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from opsguard.models.incident import IncidentStatus, IncidentUrgency
from opsguard.services import scheduler as scheduler_module
from opsguard.services.auto_unsnooze import UnsnoozeResult
from opsguard.services.escalation_runner import EscalationRunResult
from opsguard.services.scheduler import (
    SchedulerSupervisor,
    create_supervisor,
    describe_schedule,
    start_scheduler,
    stop_scheduler,
)
from opsguard.services.scheduler_lock import DatabaseSchedulerLock
from opsguard.services.sla_monitor import SLACheckOptions, SLACheckResult

from .conftest import T0


def sla_result() -> SLACheckResult:
    return SLACheckResult(
        active_incident_count=0,
        warning_count=0,
        warnings=[],
        checked_at=T0,
    )


def make_supervisor(**overrides) -> SchedulerSupervisor:
    kwargs = {
        "schedule": "every 2 minutes",
        "escalation_runner": AsyncMock(return_value=EscalationRunResult()),
        "sla_monitor": AsyncMock(return_value=sla_result()),
        "unsnooze_processor": AsyncMock(return_value=UnsnoozeResult()),
        "clock": lambda: T0,
    }
    kwargs.update(overrides)
    return SchedulerSupervisor(**kwargs)


class TestSupervisorTick:
    @pytest.mark.asyncio
    async def test_runs_processors_in_order(self):
        calls: list[str] = []

        async def escalate(now):
            calls.append("escalation")
            return EscalationRunResult()

        async def check(options, now):
            calls.append("sla")
            return sla_result()

        async def unsnooze(now):
            calls.append("unsnooze")
            return UnsnoozeResult()

        supervisor = make_supervisor(
            escalation_runner=escalate, sla_monitor=check, unsnooze_processor=unsnooze
        )

        result = await supervisor.tick()

        assert calls == ["escalation", "sla", "unsnooze"]
        assert result.succeeded is True

    @pytest.mark.asyncio
    async def test_successful_pass_updates_status(self):
        supervisor = make_supervisor()

        await supervisor.tick()

        status = supervisor.status()
        assert status.running is False
        assert status.last_run_at == T0
        assert status.last_success_at == T0
        assert status.last_error is None
        assert status.schedule == "every 2 minutes"

    @pytest.mark.asyncio
    async def test_now_is_passed_to_processors(self):
        supervisor = make_supervisor()
        now = T0 + timedelta(hours=1)

        await supervisor.tick(now)

        supervisor._escalation_runner.assert_awaited_once_with(now)
        supervisor._unsnooze_processor.assert_awaited_once_with(now)
        assert supervisor.status().last_run_at == now

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_rejected(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_escalation(now):
            started.set()
            await release.wait()
            return EscalationRunResult()

        supervisor = make_supervisor(escalation_runner=slow_escalation)

        first = asyncio.create_task(supervisor.tick())
        await started.wait()

        assert supervisor.is_running is True
        assert supervisor.status().running is True
        assert await supervisor.tick(T0 + timedelta(minutes=5)) is None
        # The rejected tick leaves last_run_at alone
        assert supervisor.status().last_run_at == T0

        release.set()
        result = await first

        assert result is not None
        assert supervisor.is_running is False
        supervisor._sla_monitor.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_single_processor_run_shares_tick_guard(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_unsnooze(now):
            started.set()
            await release.wait()
            return UnsnoozeResult(unsnoozed=1)

        supervisor = make_supervisor(unsnooze_processor=slow_unsnooze)

        first = asyncio.create_task(supervisor.run_unsnooze())
        await started.wait()

        assert supervisor.status().running is True
        assert await supervisor.tick() is None
        assert await supervisor.run_escalations() is None
        supervisor._escalation_runner.assert_not_awaited()

        release.set()
        assert (await first).unsnoozed == 1
        status = supervisor.status()
        assert status.running is False
        # Single-processor runs do not count as passes
        assert status.last_run_at is None

    @pytest.mark.asyncio
    async def test_sla_run_uses_configured_options(self):
        supervisor = make_supervisor()

        result = await supervisor.run_sla_check(T0)

        assert result == sla_result()
        supervisor._sla_monitor.assert_awaited_once_with(supervisor.sla_options, T0)

    @pytest.mark.asyncio
    async def test_failure_records_error_and_skips_remaining(self):
        supervisor = make_supervisor()
        await supervisor.tick()

        supervisor._escalation_runner.side_effect = RuntimeError("database unreachable")
        result = await supervisor.tick(T0 + timedelta(minutes=2))

        assert result.succeeded is False
        status = supervisor.status()
        assert status.running is False
        assert "database unreachable" in status.last_error
        assert status.last_success_at == T0
        assert status.last_run_at == T0 + timedelta(minutes=2)
        assert supervisor._sla_monitor.await_count == 1
        assert supervisor._unsnooze_processor.await_count == 1

    @pytest.mark.asyncio
    async def test_next_success_clears_error(self):
        supervisor = make_supervisor()
        supervisor._sla_monitor.side_effect = RuntimeError("boom")
        await supervisor.tick()
        assert supervisor.status().last_error is not None

        supervisor._sla_monitor.side_effect = None
        await supervisor.tick()

        assert supervisor.status().last_error is None

    @pytest.mark.asyncio
    async def test_status_is_a_snapshot(self):
        supervisor = make_supervisor()
        snapshot = supervisor.status()

        snapshot.last_error = "tampered"

        assert supervisor.status().last_error is None

    @pytest.mark.asyncio
    async def test_disabled_processor_is_skipped(self):
        supervisor = make_supervisor()

        with patch.object(scheduler_module.settings, "sla_check_enabled", False):
            result = await supervisor.tick()

        supervisor._sla_monitor.assert_not_awaited()
        assert result.sla is None
        assert result.escalation is not None


class TestSupervisorDistributedLock:
    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_skips_pass(self):
        lock = MagicMock(spec=DatabaseSchedulerLock)
        lock.acquire = AsyncMock(return_value=False)
        lock.release = AsyncMock()
        supervisor = make_supervisor(distributed_lock=lock)

        assert await supervisor.tick() is None

        supervisor._escalation_runner.assert_not_awaited()
        lock.release.assert_not_awaited()
        assert supervisor.status().last_run_at is None

    @pytest.mark.asyncio
    async def test_lock_released_after_pass(self):
        lock = MagicMock(spec=DatabaseSchedulerLock)
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock()
        supervisor = make_supervisor(distributed_lock=lock)

        await supervisor.tick()

        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_two_holders_exclude_each_other(self, db_engine):
        first = DatabaseSchedulerLock(ttl_seconds=600, holder="host-a")
        second = DatabaseSchedulerLock(ttl_seconds=600, holder="host-b")

        assert await first.acquire(T0) is True
        assert await second.acquire(T0 + timedelta(minutes=1)) is False

        await first.release()
        assert await second.acquire(T0 + timedelta(minutes=1)) is True

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken_over(self, db_engine):
        first = DatabaseSchedulerLock(ttl_seconds=60, holder="host-a")
        second = DatabaseSchedulerLock(ttl_seconds=60, holder="host-b")

        assert await first.acquire(T0) is True
        assert await second.acquire(T0 + timedelta(minutes=2)) is True


class TestSupervisorWithStore:
    @pytest.mark.asyncio
    async def test_delivery_error_does_not_skip_auto_unsnooze(self, make_incident, load_incident):
        await make_incident(urgency=IncidentUrgency.HIGH, title="Checkout errors")
        snoozed = await make_incident(
            status=IncidentStatus.SNOOZED,
            snooze_until=T0 + timedelta(minutes=5),
            snooze_reason="Deploy in progress",
        )
        supervisor = SchedulerSupervisor(
            schedule="every minute",
            sla_options=SLACheckOptions(notify_slack=True),
            clock=lambda: T0 + timedelta(minutes=16),
        )

        with patch.object(scheduler_module.settings, "slack_webhook_url", "http://[::1"):
            result = await supervisor.tick()

        assert result.succeeded is True
        assert result.sla.warning_count == 1
        assert result.unsnooze.unsnoozed == 1
        assert (await load_incident(snoozed.id)).status == IncidentStatus.OPEN


class TestSchedulerTimer:
    def test_describe_schedule(self):
        assert describe_schedule(1) == "every minute"
        assert describe_schedule(5) == "every 5 minutes"

    def test_create_supervisor_uses_settings(self):
        with (
            patch.object(scheduler_module.settings, "scheduler_interval_minutes", 3),
            patch.object(scheduler_module.settings, "scheduler_distributed_lock", True),
        ):
            supervisor = create_supervisor()

        assert supervisor.status().schedule == "every 3 minutes"
        assert isinstance(supervisor._distributed_lock, DatabaseSchedulerLock)

    def test_disabled_timer_does_not_start(self):
        with patch.object(scheduler_module.settings, "scheduler_enabled", False):
            assert start_scheduler(make_supervisor()) is None

    def test_timer_registers_single_instance_job(self):
        supervisor = make_supervisor()
        fake_scheduler = MagicMock()

        with (
            patch.object(scheduler_module.settings, "scheduler_enabled", True),
            patch.object(scheduler_module, "AsyncIOScheduler", return_value=fake_scheduler),
        ):
            started = start_scheduler(supervisor)
            try:
                assert started is fake_scheduler
                _, kwargs = fake_scheduler.add_job.call_args
                assert kwargs["max_instances"] == 1
                assert kwargs["id"] == "opsguard_tick"
                fake_scheduler.start.assert_called_once()
            finally:
                stop_scheduler()

        fake_scheduler.shutdown.assert_called_once_with(wait=False)
        assert scheduler_module.get_scheduler() is None
