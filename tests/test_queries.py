"""Tests for the dashboard queries."""

import pytest

from slaengine.config import TicketStatus
from slaengine.core import ResourceNotFoundException

from tests.conftest import T0, assigned_ticket, at, move


async def in_progress(sla_engine, ticket_id, assigned_at=T0):
    await assigned_ticket(sla_engine, ticket_id, assigned_at=assigned_at)
    await move(sla_engine, ticket_id, TicketStatus.IN_PROGRESS, assigned_at)


class TestBlockedTickets:
    async def test_longest_blocked_first(self, sla_engine, department):
        await in_progress(sla_engine, "HK-1")
        await in_progress(sla_engine, "HK-2")
        await in_progress(sla_engine, "HK-3")
        await move(sla_engine, "HK-1", TicketStatus.BLOCKED, at(10), block_reason="GUEST_INSIDE")
        await move(sla_engine, "HK-2", TicketStatus.BLOCKED, at(4), block_reason="SUPPLIES_UNAVAILABLE")

        async with sla_engine.unit_of_work() as uow:
            views = await sla_engine.queries(uow).blocked_tickets("hk", now=at(20))

        assert [v.ticket_id for v in views] == ["HK-2", "HK-1"]
        assert views[0].blocked_seconds == 16 * 60
        assert views[0].block_reason == "SUPPLIES_UNAVAILABLE"
        assert views[0].assignee == "maria"

    async def test_grouped_by_reason_code(self, sla_engine, department):
        for ticket_id in ("HK-1", "HK-2", "HK-3"):
            await in_progress(sla_engine, ticket_id)
        await move(sla_engine, "HK-1", TicketStatus.BLOCKED, at(10), block_reason="GUEST_INSIDE")
        await move(sla_engine, "HK-2", TicketStatus.BLOCKED, at(4), block_reason="SUPPLIES_UNAVAILABLE")
        await move(sla_engine, "HK-3", TicketStatus.BLOCKED, at(12), block_reason="SUPPLIES_UNAVAILABLE")

        async with sla_engine.unit_of_work() as uow:
            groups = await sla_engine.queries(uow).blocked_by_reason("hk", now=at(20))

        assert [(g.reason_code, g.ticket_count) for g in groups] == [
            ("SUPPLIES_UNAVAILABLE", 2),
            ("GUEST_INSIDE", 1),
        ]
        assert groups[0].label == "Supplies unavailable"
        assert groups[0].longest_blocked_seconds == 16 * 60
        assert groups[0].ticket_ids == ["HK-2", "HK-3"]

    async def test_unknown_department(self, sla_engine):
        async with sla_engine.unit_of_work() as uow:
            with pytest.raises(ResourceNotFoundException):
                await sla_engine.queries(uow).blocked_tickets("nope")


class TestAtRiskTickets:
    async def test_only_at_risk_closest_deadline_first(self, sla_engine, department):
        await in_progress(sla_engine, "HK-LATE", assigned_at=T0)       # breached at T+35
        await in_progress(sla_engine, "HK-SOON", assigned_at=at(9))    # deadline T+39
        await in_progress(sla_engine, "HK-LATER", assigned_at=at(12))  # deadline T+42
        await in_progress(sla_engine, "HK-FRESH", assigned_at=at(30))  # deadline T+60

        async with sla_engine.unit_of_work() as uow:
            views = await sla_engine.queries(uow).at_risk_tickets("hk", now=at(35))

        assert [v.ticket_id for v in views] == ["HK-SOON", "HK-LATER"]
        assert views[0].remaining_seconds == 4 * 60
        assert views[0].target_seconds == 1800


class TestExceptionQuery:
    async def test_filter_by_category(self, sla_engine, department):
        await assigned_ticket(sla_engine, "HK-1")
        await assigned_ticket(sla_engine, "HK-2")

        async with sla_engine.unit_of_work() as uow:
            lifecycle = sla_engine.lifecycle(uow)
            await lifecycle.grant_exception("HK-1", "VENDOR_DELAY", at=at(5), now=at(5))
        async with sla_engine.unit_of_work() as uow:
            lifecycle = sla_engine.lifecycle(uow)
            await lifecycle.grant_exception("HK-2", "GUEST_UNAVAILABLE", at=at(6), now=at(6))

        async with sla_engine.unit_of_work() as uow:
            queries = sla_engine.queries(uow)
            everything = await queries.exceptions("hk", days=30, now=at(60))
            vendor = await queries.exceptions("hk", days=30, category="EXTERNAL_DEPENDENCY", now=at(60))

        assert [v.ticket_id for v in everything] == ["HK-2", "HK-1"]
        assert [v.ticket_id for v in vendor] == ["HK-1"]
        assert vendor[0].reason_code == "VENDOR_DELAY"
        assert vendor[0].exception_occurred_at == at(5)

    async def test_window_excludes_old_exceptions(self, sla_engine, department):
        await assigned_ticket(sla_engine, "HK-1")
        async with sla_engine.unit_of_work() as uow:
            await sla_engine.lifecycle(uow).grant_exception("HK-1", "VENDOR_DELAY", at=at(5), now=at(5))

        async with sla_engine.unit_of_work() as uow:
            views = await sla_engine.queries(uow).exceptions("hk", days=1, now=at(5 + 3 * 24 * 60))

        assert views == []
