"""Tests for the auto-unsnooze processor."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from opsguard.database import get_session_maker
from opsguard.models.incident import IncidentEvent, IncidentStatus
from opsguard.services.auto_unsnooze import (
    UNSNOOZE_EVENT_MESSAGE,
    process_auto_unsnooze,
    unsnooze_incident,
)
from opsguard.services.incident_actions import acknowledge_incident
from opsguard.services.notification_dispatcher import NotificationStatus

from .conftest import T0

SNOOZE_END = T0 + timedelta(minutes=30)


async def make_snoozed(make_incident, **fields):
    return await make_incident(
        status=IncidentStatus.SNOOZED,
        snooze_until=SNOOZE_END,
        snooze_reason="Waiting on vendor",
        **fields,
    )


class TestProcessAutoUnsnooze:
    @pytest.mark.asyncio
    async def test_nothing_happens_before_snooze_ends(self, make_incident, load_incident):
        incident = await make_snoozed(make_incident)

        result = await process_auto_unsnooze(SNOOZE_END - timedelta(seconds=1))

        assert result.unsnoozed == 0
        assert (await load_incident(incident.id)).status == IncidentStatus.SNOOZED

    @pytest.mark.asyncio
    async def test_reopens_at_snooze_end(self, make_incident, load_incident):
        incident = await make_snoozed(make_incident)

        result = await process_auto_unsnooze(SNOOZE_END)

        assert result.unsnoozed == 1
        assert result.errors == []
        stored = await load_incident(incident.id)
        assert stored.status == IncidentStatus.OPEN
        assert stored.snooze_until is None
        assert stored.snooze_reason is None

    @pytest.mark.asyncio
    async def test_second_pass_finds_nothing(self, make_incident):
        await make_snoozed(make_incident)

        assert (await process_auto_unsnooze(SNOOZE_END)).unsnoozed == 1
        assert (await process_auto_unsnooze(SNOOZE_END)).unsnoozed == 0

    @pytest.mark.asyncio
    async def test_only_snoozed_incidents_are_considered(self, make_incident, load_incident):
        open_incident = await make_incident(status=IncidentStatus.OPEN)

        result = await process_auto_unsnooze(SNOOZE_END + timedelta(days=1))

        assert result.unsnoozed == 0
        assert (await load_incident(open_incident.id)).status == IncidentStatus.OPEN

    @pytest.mark.asyncio
    async def test_records_timeline_event(self, make_incident):
        incident = await make_snoozed(make_incident)

        await process_auto_unsnooze(SNOOZE_END)

        async with get_session_maker()() as db:
            result = await db.execute(
                select(IncidentEvent.message).where(IncidentEvent.incident_id == incident.id)
            )
            messages = [row[0] for row in result.all()]

        assert messages == [UNSNOOZE_EVENT_MESSAGE]

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_block_transition(self, make_incident, load_incident):
        incident = await make_snoozed(make_incident)

        with patch(
            "opsguard.services.incident_store.add_incident_event",
            new_callable=AsyncMock,
            side_effect=RuntimeError("audit store down"),
        ):
            result = await process_auto_unsnooze(SNOOZE_END)

        assert result.unsnoozed == 1
        assert (await load_incident(incident.id)).status == IncidentStatus.OPEN


class TestUnsnoozeRace:
    @pytest.mark.asyncio
    async def test_acknowledged_before_unsnooze_is_left_alone(
        self, make_incident, load_incident
    ):
        incident = await make_snoozed(make_incident)

        # User acknowledges after the candidate list was read
        async with get_session_maker()() as db:
            await acknowledge_incident(db, incident.id, now=SNOOZE_END)

        async with get_session_maker()() as db:
            reopened = await unsnooze_incident(db, incident.id, SNOOZE_END)

        assert reopened is False
        stored = await load_incident(incident.id)
        assert stored.status == IncidentStatus.ACKNOWLEDGED
        assert stored.snooze_until is None


class TestReactivationNotice:
    @pytest.mark.asyncio
    async def test_last_fired_step_is_notified(self, make_policy, make_incident):
        policy = await make_policy(
            [(0, ["email:oncall@example.com"]), (10, ["slack:default", "telegram:42"])]
        )
        await make_snoozed(
            make_incident, policy_id=policy.id, current_step_index=2, title="Queue backlog"
        )

        with patch(
            "opsguard.services.notification_dispatcher.send",
            new_callable=AsyncMock,
            return_value=NotificationStatus.SENT,
        ) as mock_send:
            result = await process_auto_unsnooze(SNOOZE_END)

        assert result.unsnoozed == 1
        targets = sorted(call.args[0] for call in mock_send.await_args_list)
        assert targets == ["slack:default", "telegram:42"]
        message = mock_send.await_args.args[1]
        assert message.startswith("[OpsGuard] Incident reopened: Queue backlog")

    @pytest.mark.asyncio
    async def test_no_notice_before_first_step(self, make_policy, make_incident):
        policy = await make_policy([(5, ["email:oncall@example.com"])])
        await make_snoozed(make_incident, policy_id=policy.id)

        with patch(
            "opsguard.services.notification_dispatcher.send", new_callable=AsyncMock
        ) as mock_send:
            assert (await process_auto_unsnooze(SNOOZE_END)).unsnoozed == 1

        mock_send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notice_failure_does_not_block_reopen(
        self, make_policy, make_incident, load_incident
    ):
        policy = await make_policy([(0, ["slack:default"])])
        incident = await make_snoozed(make_incident, policy_id=policy.id, current_step_index=1)

        with patch(
            "opsguard.services.auto_unsnooze.notify_reactivated",
            new_callable=AsyncMock,
            side_effect=RuntimeError("policy store down"),
        ):
            result = await process_auto_unsnooze(SNOOZE_END)

        assert result.unsnoozed == 1
        assert result.errors == []
        assert (await load_incident(incident.id)).status == IncidentStatus.OPEN
