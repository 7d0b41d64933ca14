"""
Ticket Lifecycle State Machine
==============================

CREATED -> ASSIGNED -> IN_PROGRESS -> (BLOCKED <-> IN_PROGRESS) -> COMPLETED

Any open state may be CANCELLED. Terminal states never transition again.
Each transition stamps its timestamp on the ticket; blocking opens a pause
interval and unblocking closes it.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from slaengine.config import StartTrigger, TicketStatus
from slaengine.core import InvalidTransitionException, ValidationException
from slaengine.sla.domain.entities import BlockInterval, SLAPolicy, Ticket


ALLOWED_TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    TicketStatus.CREATED: frozenset({TicketStatus.ASSIGNED, TicketStatus.CANCELLED}),
    TicketStatus.ASSIGNED: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.CANCELLED}),
    TicketStatus.IN_PROGRESS: frozenset({
        TicketStatus.BLOCKED, TicketStatus.COMPLETED, TicketStatus.CANCELLED
    }),
    TicketStatus.BLOCKED: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.CANCELLED}),
    TicketStatus.COMPLETED: frozenset(),
    TicketStatus.CANCELLED: frozenset(),
}

# Lifecycle stage each start trigger waits for
TRIGGER_STAGE: Dict[StartTrigger, int] = {
    StartTrigger.ON_CREATE: 0,
    StartTrigger.ON_ASSIGN: 1,
    StartTrigger.ON_ACCEPT: 2,
}

STATUS_STAGE: Dict[TicketStatus, int] = {
    TicketStatus.CREATED: 0,
    TicketStatus.ASSIGNED: 1,
    TicketStatus.IN_PROGRESS: 2,
    TicketStatus.BLOCKED: 2,
}


class TicketStateMachine:
    """Applies lifecycle transitions to Ticket entities."""

    @staticmethod
    def can_transition(from_status: TicketStatus, to_status: TicketStatus) -> bool:
        return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())

    @staticmethod
    def transition(
        ticket: Ticket,
        to_status: TicketStatus,
        at: datetime,
        block_reason: Optional[str] = None,
        assignee: Optional[str] = None
    ) -> Ticket:
        """
        Move the ticket to `to_status` at instant `at`.

        Validation happens before any field is touched, so a rejected
        transition leaves the ticket unchanged.

        Raises:
            InvalidTransitionException: transition not allowed from the current status
            ValidationException: missing block reason, or `at` precedes the last update
        """
        if not TicketStateMachine.can_transition(ticket.status, to_status):
            raise InvalidTransitionException(ticket.id, ticket.status.value, to_status.value)

        reason = (block_reason or "").strip()
        if to_status == TicketStatus.BLOCKED and not reason:
            raise ValidationException(
                "block_reason is required to block a ticket",
                details={"ticket_id": ticket.id}
            )
        if at < ticket.updated_at:
            raise ValidationException(
                "Transition timestamp precedes the ticket's last update",
                details={
                    "ticket_id": ticket.id,
                    "at": at.isoformat(),
                    "updated_at": ticket.updated_at.isoformat()
                }
            )

        if ticket.status == TicketStatus.BLOCKED:
            TicketStateMachine._close_block(ticket, at)

        if to_status == TicketStatus.ASSIGNED:
            ticket.assigned_at = at
            if assignee:
                ticket.assignee = assignee
        elif to_status == TicketStatus.IN_PROGRESS:
            if ticket.accepted_at is None:
                ticket.accepted_at = at
        elif to_status == TicketStatus.BLOCKED:
            ticket.blocked_at = at
            ticket.block_reason = reason
            ticket.block_intervals.append(BlockInterval(reason=reason, started_at=at))
        elif to_status == TicketStatus.COMPLETED:
            ticket.completed_at = at
        elif to_status == TicketStatus.CANCELLED:
            ticket.cancelled_at = at

        ticket.status = to_status
        ticket.updated_at = at
        return ticket

    @staticmethod
    def _close_block(ticket: Ticket, at: datetime) -> None:
        interval = ticket.open_block
        if interval is not None:
            interval.ended_at = at
        ticket.blocked_at = None
        ticket.block_reason = None

    @staticmethod
    def should_start_clock(ticket: Ticket, policy: Optional[SLAPolicy]) -> bool:
        """True when the clock is not running yet and the policy's trigger has been reached."""
        if policy is None or ticket.clock_started or not ticket.is_open:
            return False
        stage = STATUS_STAGE.get(ticket.status)
        return stage is not None and stage >= TRIGGER_STAGE[policy.start_trigger]

    @staticmethod
    def start_clock(ticket: Ticket, policy: SLAPolicy, at: datetime) -> None:
        """Capture the policy version and clock-start instant; never moved afterwards."""
        if ticket.clock_started:
            return
        ticket.clock_started_at = at
        ticket.sla_policy_id = policy.id
