"""Tests for the ticket lifecycle state machine and clock start."""

import pytest

from slaengine.config import SLAClassification, StartTrigger, TicketStatus
from slaengine.core import (
    InvalidTransitionException, ResourceNotFoundException, ValidationException
)
from slaengine.sla.domain import PolicyTerms, Ticket, TicketStateMachine

from tests.conftest import T0, assigned_ticket, at, move, register


def new_ticket(status=TicketStatus.CREATED) -> Ticket:
    return Ticket(
        id="HK-7",
        department_id="hk",
        service_key="EXTRA_PILLOWS",
        status=status,
        created_at=T0,
        updated_at=T0,
    )


class TestStateMachine:
    """Pure transition rules."""

    @pytest.mark.parametrize("from_status,to_status", [
        (TicketStatus.CREATED, TicketStatus.IN_PROGRESS),
        (TicketStatus.CREATED, TicketStatus.COMPLETED),
        (TicketStatus.ASSIGNED, TicketStatus.BLOCKED),
        (TicketStatus.BLOCKED, TicketStatus.COMPLETED),
        (TicketStatus.COMPLETED, TicketStatus.IN_PROGRESS),
        (TicketStatus.CANCELLED, TicketStatus.ASSIGNED),
    ])
    def test_disallowed_transitions(self, from_status, to_status):
        assert not TicketStateMachine.can_transition(from_status, to_status)

    def test_rejected_transition_leaves_ticket_unchanged(self):
        ticket = new_ticket()

        with pytest.raises(InvalidTransitionException):
            TicketStateMachine.transition(ticket, TicketStatus.COMPLETED, at(5))

        assert ticket.status == TicketStatus.CREATED
        assert ticket.completed_at is None
        assert ticket.updated_at == T0

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_block_requires_reason(self, reason):
        ticket = new_ticket(TicketStatus.IN_PROGRESS)

        with pytest.raises(ValidationException):
            TicketStateMachine.transition(ticket, TicketStatus.BLOCKED, at(5), block_reason=reason)

        assert ticket.status == TicketStatus.IN_PROGRESS
        assert ticket.block_intervals == []

    def test_block_and_unblock_record_interval(self):
        ticket = new_ticket(TicketStatus.IN_PROGRESS)

        TicketStateMachine.transition(ticket, TicketStatus.BLOCKED, at(5), block_reason="GUEST_INSIDE")
        assert ticket.open_block is not None
        assert ticket.block_reason == "GUEST_INSIDE"

        TicketStateMachine.transition(ticket, TicketStatus.IN_PROGRESS, at(12))
        assert ticket.open_block is None
        assert ticket.block_reason is None
        assert ticket.total_paused_seconds == 420

    def test_cancel_while_blocked_closes_interval(self):
        ticket = new_ticket(TicketStatus.IN_PROGRESS)
        TicketStateMachine.transition(ticket, TicketStatus.BLOCKED, at(5), block_reason="SUPPLIES_UNAVAILABLE")

        TicketStateMachine.transition(ticket, TicketStatus.CANCELLED, at(9))

        assert ticket.status == TicketStatus.CANCELLED
        assert ticket.cancelled_at == at(9)
        assert ticket.block_intervals[0].ended_at == at(9)

    def test_out_of_order_timestamp_rejected(self):
        ticket = new_ticket()
        TicketStateMachine.transition(ticket, TicketStatus.ASSIGNED, at(10))

        with pytest.raises(ValidationException):
            TicketStateMachine.transition(ticket, TicketStatus.IN_PROGRESS, at(5))
        assert ticket.status == TicketStatus.ASSIGNED


class TestClockStart:
    """The clock starts once the policy's trigger stage is reached."""

    async def use_trigger(self, sla_engine, trigger: StartTrigger):
        async with sla_engine.unit_of_work() as uow:
            await sla_engine.policies(uow).set_policy(
                "hk", PolicyTerms.parse(30, 10, 15, trigger), now=T0
            )

    async def test_on_create(self, sla_engine, department):
        await self.use_trigger(sla_engine, StartTrigger.ON_CREATE)

        ticket, clock = await register(sla_engine, "HK-1")

        assert ticket.clock_started_at == T0
        assert clock.classification == SLAClassification.ON_TRACK

    async def test_on_assign(self, sla_engine, department):
        ticket, clock = await register(sla_engine, "HK-1")
        assert ticket.clock_started_at is None
        assert clock.classification == SLAClassification.NOT_STARTED

        ticket, clock = await move(sla_engine, "HK-1", TicketStatus.ASSIGNED, at(3))
        assert ticket.clock_started_at == at(3)
        assert clock.deadline_at == at(33)

    async def test_on_accept(self, sla_engine, department):
        await self.use_trigger(sla_engine, StartTrigger.ON_ACCEPT)
        await register(sla_engine, "HK-1")

        ticket, _ = await move(sla_engine, "HK-1", TicketStatus.ASSIGNED, at(3))
        assert ticket.clock_started_at is None

        ticket, _ = await move(sla_engine, "HK-1", TicketStatus.IN_PROGRESS, at(8))
        assert ticket.clock_started_at == at(8)

    async def test_clock_start_captures_current_policy(self, sla_engine, department):
        ticket, _ = await assigned_ticket(sla_engine, "HK-1")

        async with sla_engine.unit_of_work() as uow:
            current = await sla_engine.policies(uow).get_current_policy("hk")

        assert ticket.sla_policy_id == current.id


class TestLifecycleService:
    async def test_register_is_idempotent(self, sla_engine, department):
        first, _ = await register(sla_engine, "HK-1", title="Extra towels")
        again, _ = await register(sla_engine, "HK-1", title="Changed title")

        assert again.title == "Extra towels"
        assert again.created_at == first.created_at

    async def test_register_unknown_department(self, sla_engine):
        with pytest.raises(ResourceNotFoundException):
            await register(sla_engine, "HK-1", department_id="nope")

    async def test_invalid_transition_persists_nothing(self, sla_engine, department):
        await register(sla_engine, "HK-1")

        with pytest.raises(InvalidTransitionException):
            await move(sla_engine, "HK-1", TicketStatus.COMPLETED, at(5))

        async with sla_engine.unit_of_work() as uow:
            ticket = await uow.tickets.get("HK-1")
        assert ticket.status == TicketStatus.CREATED
        assert ticket.completed_at is None

    async def test_block_without_reason_persists_nothing(self, sla_engine, department):
        await assigned_ticket(sla_engine, "HK-1")
        await move(sla_engine, "HK-1", TicketStatus.IN_PROGRESS, at(2))

        with pytest.raises(ValidationException):
            await move(sla_engine, "HK-1", TicketStatus.BLOCKED, at(5))

        async with sla_engine.unit_of_work() as uow:
            ticket = await uow.tickets.get("HK-1")
        assert ticket.status == TicketStatus.IN_PROGRESS

    async def test_block_reason_must_be_in_catalog(self, sla_engine, department):
        await assigned_ticket(sla_engine, "HK-1")
        await move(sla_engine, "HK-1", TicketStatus.IN_PROGRESS, at(2))

        with pytest.raises(ValidationException, match="Invalid block reason"):
            await move(sla_engine, "HK-1", TicketStatus.BLOCKED, at(5), block_reason="guest asleep")

        async with sla_engine.unit_of_work() as uow:
            ticket = await uow.tickets.get("HK-1")
        assert ticket.status == TicketStatus.IN_PROGRESS
        assert ticket.block_intervals == []

        ticket, _ = await move(
            sla_engine, "HK-1", TicketStatus.BLOCKED, at(6), block_reason=" ROOM_LOCKED "
        )
        assert ticket.block_reason == "ROOM_LOCKED"

    async def test_block_intervals_round_trip(self, sla_engine, department):
        await assigned_ticket(sla_engine, "HK-1")
        await move(sla_engine, "HK-1", TicketStatus.IN_PROGRESS, at(2))
        await move(sla_engine, "HK-1", TicketStatus.BLOCKED, at(20), block_reason="GUEST_INSIDE")
        await move(sla_engine, "HK-1", TicketStatus.IN_PROGRESS, at(40))
        ticket, clock = await move(
            sla_engine, "HK-1", TicketStatus.BLOCKED, at(42), block_reason="SUPPLIES_UNAVAILABLE"
        )

        assert clock.classification == SLAClassification.BLOCKED

        async with sla_engine.unit_of_work() as uow:
            stored = await uow.tickets.get("HK-1")
        assert [(b.reason, b.started_at, b.ended_at) for b in stored.block_intervals] == [
            ("GUEST_INSIDE", at(20), at(40)),
            ("SUPPLIES_UNAVAILABLE", at(42), None),
        ]
        assert stored.total_paused_seconds == 1200

    async def test_transition_unknown_ticket(self, sla_engine, department):
        with pytest.raises(ResourceNotFoundException):
            await move(sla_engine, "HK-404", TicketStatus.ASSIGNED, at(1))


class TestExceptions:
    async def test_grant_exempts_ticket(self, sla_engine, department):
        await assigned_ticket(sla_engine, "HK-1")

        async with sla_engine.unit_of_work() as uow:
            ticket, clock = await sla_engine.lifecycle(uow).grant_exception(
                "HK-1", "VENDOR_DELAY", at=at(10), now=at(10)
            )

        assert clock.classification == SLAClassification.EXEMPT
        assert ticket.exception_category == "EXTERNAL_DEPENDENCY"
        assert ticket.sla_exempted_at == at(10)

    async def test_unknown_reason_rejected(self, sla_engine, department):
        await assigned_ticket(sla_engine, "HK-1")

        async with sla_engine.unit_of_work() as uow:
            with pytest.raises(ValidationException):
                await sla_engine.lifecycle(uow).grant_exception("HK-1", "TOO_BUSY", at=at(10))

    async def test_terminal_ticket_cannot_be_exempted(self, sla_engine, department):
        await register(sla_engine, "HK-1")
        await move(sla_engine, "HK-1", TicketStatus.CANCELLED, at(1))

        async with sla_engine.unit_of_work() as uow:
            with pytest.raises(InvalidTransitionException):
                await sla_engine.lifecycle(uow).grant_exception("HK-1", "VENDOR_DELAY", at=at(2))

    async def test_granting_twice_keeps_first_grant(self, sla_engine, department):
        await assigned_ticket(sla_engine, "HK-1")

        async with sla_engine.unit_of_work() as uow:
            await sla_engine.lifecycle(uow).grant_exception("HK-1", "VENDOR_DELAY", at=at(5), now=at(5))
        async with sla_engine.unit_of_work() as uow:
            ticket, _ = await sla_engine.lifecycle(uow).grant_exception(
                "HK-1", "GUEST_UNAVAILABLE", at=at(6), now=at(6)
            )

        assert ticket.exception_reason_code == "VENDOR_DELAY"
        assert ticket.sla_exempted_at == at(5)
