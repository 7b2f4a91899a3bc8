"""Pytest configuration and shared fixtures.

Every test that touches the database gets a fresh in-memory SQLite engine
installed as the application engine, so the services under test open their
own sessions against it exactly as they do in production.
"""

import os
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

# Configure the environment BEFORE importing the app
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["API_KEY"] = "test-api-key"
os.environ["LOG_FORMAT"] = "text"

from opsguard.config import settings

settings.testing = True

from opsguard.database import build_engine, close_database, get_session_maker, set_engine
from opsguard.main import app
from opsguard.models import (
    Base,
    EscalationPolicy,
    Incident,
    IncidentStatus,
    IncidentUrgency,
)
from opsguard.services.incident_store import get_incident
from opsguard.services.policy_store import create_policy

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}
API_HEADERS = {"X-API-Key": "test-api-key"}


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory schema for one test."""
    engine = build_engine("sqlite+aiosqlite://")
    set_engine(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await close_database()


@pytest_asyncio.fixture
async def make_policy(
    db_engine,
) -> Callable[..., Awaitable[EscalationPolicy]]:
    """Factory: ``await make_policy([(delay, [targets]), ...])``."""

    async def _make(
        steps: list[tuple[int, list[str]]],
        name: str = "Primary on-call",
    ) -> EscalationPolicy:
        async with get_session_maker()() as db:
            return await create_policy(db, name=name, steps=steps)

    return _make


@pytest_asyncio.fixture
async def make_incident(db_engine) -> Callable[..., Awaitable[Incident]]:
    """Factory for incidents with explicit timestamps and state."""

    async def _make(
        created_at: datetime = T0,
        status: IncidentStatus = IncidentStatus.OPEN,
        urgency: IncidentUrgency = IncidentUrgency.HIGH,
        policy_id: uuid.UUID | None = None,
        title: str = "Database latency",
        **fields,
    ) -> Incident:
        incident = Incident(
            title=title,
            status=status,
            urgency=urgency,
            policy_id=policy_id,
            current_step_index=fields.pop("current_step_index", 0),
            created_at=created_at,
            updated_at=created_at,
            **fields,
        )
        async with get_session_maker()() as db:
            db.add(incident)
            await db.commit()
        return incident

    return _make


@pytest_asyncio.fixture
async def load_incident(db_engine) -> Callable[[uuid.UUID], Awaitable[Incident | None]]:
    """Re-read an incident in a fresh session."""

    async def _load(incident_id: uuid.UUID) -> Incident | None:
        async with get_session_maker()() as db:
            return await get_incident(db, incident_id)

    return _load


@pytest_asyncio.fixture
async def client(db_engine) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

