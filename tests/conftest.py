"""
Shared fixtures for SLA engine tests.

Every test gets a fresh SQLite database file (aiosqlite driver) with the
full schema, and an SLAEngine wired to a recording notification channel.
"""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from slaengine.config import Settings, StartTrigger, TicketStatus
from slaengine.core import ExternalServiceException
from slaengine.infrastructure.database import build_session_maker, create_tables
from slaengine.sla.application.interfaces import INotificationChannel
from slaengine.sla.domain import PolicyTerms, SLAConfig, SLAEvent
from slaengine.sla.infrastructure.external import SLAConfigManager
from slaengine.sla.services import SLAEngine

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    """Instant `minutes` after T0."""
    return T0 + timedelta(minutes=minutes)


class RecordingChannel(INotificationChannel):
    """Notification channel that keeps delivered events in memory."""

    def __init__(self) -> None:
        self.delivered: List[SLAEvent] = []
        self.failing_tickets: set = set()
        self.closed = False

    async def deliver(self, event: SLAEvent) -> None:
        if event.ticket_id in self.failing_tickets:
            raise ExternalServiceException("recording", "receiver unavailable")
        self.delivered.append(event)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="development",
        sweep_workers=2,
        sweep_deadline_seconds=5.0,
        reporting_timezone="UTC",
        event_webhook_url=None,
    )


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sla.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_maker(db_engine)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
async def sla_engine(session_factory, channel, test_settings):
    engine = SLAEngine(
        session_factory,
        SLAConfigManager(SLAConfig()),
        notifier=channel,
        settings=test_settings,
    )
    yield engine
    await engine.close()


@pytest.fixture
def housekeeping_terms() -> PolicyTerms:
    return PolicyTerms.parse(30, 10, 15, StartTrigger.ON_ASSIGN)


@pytest.fixture
async def department(sla_engine, housekeeping_terms):
    """HOUSEKEEPING department of hotel H1 with a 30/10/15 ON_ASSIGN policy."""
    async with sla_engine.unit_of_work() as uow:
        department, _ = await sla_engine.policies(uow).register_department(
            hotel_id="H1",
            code="HOUSEKEEPING",
            name="Housekeeping",
            terms=housekeeping_terms,
            department_id="hk",
            now=T0 - timedelta(days=1),
        )
    return department


async def register(engine: SLAEngine, ticket_id: str, department_id: str = "hk",
                   created_at: datetime = T0, **kwargs):
    async with engine.unit_of_work() as uow:
        return await engine.lifecycle(uow).register_ticket(
            ticket_id=ticket_id,
            department_id=department_id,
            service_key="EXTRA_TOWELS",
            created_at=created_at,
            now=created_at,
            **kwargs,
        )


async def move(engine: SLAEngine, ticket_id: str, to_status: TicketStatus,
               when: datetime, **kwargs):
    async with engine.unit_of_work() as uow:
        return await engine.lifecycle(uow).transition(
            ticket_id, to_status, at=when, now=when, **kwargs
        )


async def assigned_ticket(engine: SLAEngine, ticket_id: str, department_id: str = "hk",
                          assigned_at: datetime = T0):
    """Ticket created and assigned at `assigned_at`, clock running under ON_ASSIGN."""
    await register(engine, ticket_id, department_id, created_at=assigned_at)
    return await move(engine, ticket_id, TicketStatus.ASSIGNED, assigned_at, assignee="maria")
