"""
SLA Query Service
==================

Read-side answers for operations dashboards. Clocks are computed on
demand from the stored ticket and its captured policy version.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from slaengine.config import SLAClassification, TicketStatus
from slaengine.core import ResourceNotFoundException
from slaengine.shared.time import utc_now
from slaengine.sla.application.interfaces import ISLAConfigProvider, IUnitOfWork
from slaengine.sla.domain import SLAClock, SLAClockState, SLAEvent, Ticket


@dataclass
class BlockedTicketView:
    ticket_id: str
    display_id: Optional[str]
    title: Optional[str]
    assignee: Optional[str]
    blocked_seconds: float
    block_reason: Optional[str]
    blocked_at: Optional[datetime]


@dataclass
class BlockReasonGroupView:
    reason_code: Optional[str]
    label: Optional[str]
    ticket_count: int
    longest_blocked_seconds: float
    ticket_ids: List[str]


@dataclass
class AtRiskTicketView:
    ticket_id: str
    display_id: Optional[str]
    title: Optional[str]
    assignee: Optional[str]
    status: TicketStatus
    remaining_seconds: float
    target_seconds: int
    deadline_at: datetime


@dataclass
class ExceptionTicketView:
    ticket_id: str
    display_id: Optional[str]
    title: Optional[str]
    status: TicketStatus
    reason_code: Optional[str]
    category: Optional[str]
    exception_occurred_at: datetime


class SLAQueryService:
    """Service for SLA read models."""

    def __init__(self, uow: IUnitOfWork, config_provider: Optional[ISLAConfigProvider] = None):
        self._uow = uow
        self._config_provider = config_provider

    async def _require_department(self, department_id: str) -> None:
        if await self._uow.departments.get(department_id) is None:
            raise ResourceNotFoundException("Department", department_id)

    async def _require_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._uow.tickets.get(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        return ticket

    async def blocked_tickets(
        self,
        department_id: str,
        now: Optional[datetime] = None
    ) -> List[BlockedTicketView]:
        """Currently blocked tickets, longest blocked first."""
        await self._require_department(department_id)
        now = now or utc_now()

        tickets = await self._uow.tickets.list_by_status(department_id, TicketStatus.BLOCKED)
        views = [
            BlockedTicketView(
                ticket_id=t.id,
                display_id=t.display_id,
                title=t.title,
                assignee=t.assignee,
                blocked_seconds=t.blocked_seconds(now),
                block_reason=t.block_reason,
                blocked_at=t.blocked_at,
            )
            for t in tickets
        ]
        views.sort(key=lambda v: v.blocked_seconds, reverse=True)
        return views

    async def blocked_by_reason(
        self,
        department_id: str,
        now: Optional[datetime] = None
    ) -> List[BlockReasonGroupView]:
        """Blocked tickets grouped by block reason code, largest group first."""
        views = await self.blocked_tickets(department_id, now)
        config = self._config_provider.get_config() if self._config_provider else None

        groups: Dict[Optional[str], BlockReasonGroupView] = {}
        for view in views:
            group = groups.get(view.block_reason)
            if group is None:
                reason = config.get_block_reason(view.block_reason) if config and view.block_reason else None
                group = groups[view.block_reason] = BlockReasonGroupView(
                    reason_code=view.block_reason,
                    label=reason.label if reason else None,
                    ticket_count=0,
                    longest_blocked_seconds=0.0,
                    ticket_ids=[],
                )
            group.ticket_count += 1
            group.longest_blocked_seconds = max(group.longest_blocked_seconds, view.blocked_seconds)
            group.ticket_ids.append(view.ticket_id)

        return sorted(
            groups.values(),
            key=lambda g: (-g.ticket_count, -g.longest_blocked_seconds)
        )

    async def at_risk_tickets(
        self,
        department_id: str,
        now: Optional[datetime] = None
    ) -> List[AtRiskTicketView]:
        """Open tickets inside their warning window, closest deadline first."""
        await self._require_department(department_id)
        now = now or utc_now()

        tickets = await self._uow.tickets.list_open(department_id)
        policies = await self._uow.policies.get_many(t.sla_policy_id for t in tickets)

        views = []
        for ticket in tickets:
            clock = SLAClock.compute_clock(ticket, policies.get(ticket.sla_policy_id), now)
            if clock.classification != SLAClassification.AT_RISK:
                continue
            views.append(AtRiskTicketView(
                ticket_id=ticket.id,
                display_id=ticket.display_id,
                title=ticket.title,
                assignee=ticket.assignee,
                status=ticket.status,
                remaining_seconds=clock.remaining_seconds,
                target_seconds=clock.target_seconds,
                deadline_at=clock.deadline_at,
            ))
        views.sort(key=lambda v: v.remaining_seconds)
        return views

    async def exceptions(
        self,
        department_id: str,
        days: int,
        category: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[ExceptionTicketView]:
        """SLA exceptions granted in the last `days` days, newest first."""
        await self._require_department(department_id)
        since = (now or utc_now()) - timedelta(days=days)

        tickets = await self._uow.tickets.list_exceptions(department_id, since, category)
        return [
            ExceptionTicketView(
                ticket_id=t.id,
                display_id=t.display_id,
                title=t.title,
                status=t.status,
                reason_code=t.exception_reason_code,
                category=t.exception_category,
                exception_occurred_at=t.sla_exempted_at,
            )
            for t in tickets
        ]

    async def ticket_clock(self, ticket_id: str, now: Optional[datetime] = None) -> SLAClockState:
        ticket = await self._require_ticket(ticket_id)
        policy = None
        if ticket.sla_policy_id:
            policy = await self._uow.policies.get_by_id(ticket.sla_policy_id)
        return SLAClock.compute_clock(ticket, policy, now or utc_now())

    async def ticket_events(self, ticket_id: str) -> List[SLAEvent]:
        await self._require_ticket(ticket_id)
        return await self._uow.events.list_for_ticket(ticket_id)
