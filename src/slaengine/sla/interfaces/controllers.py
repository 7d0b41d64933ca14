"""
SLA Controllers (API Routes)
=============================

FastAPI routes for the SLA engine.

Controllers are thin - they delegate to application services built by
the SLAEngine stored on `app.state`. Application exceptions are mapped
to HTTP responses by the handler registered in main.py.
"""

from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from slaengine.shared.infrastructure.logging import get_logger
from slaengine.sla.application.dto import (
    AtRiskTicketResponse,
    BlockReasonGroupResponse,
    BlockedTicketResponse,
    ClockResponse,
    DepartmentCreateRequest,
    DepartmentRegisteredResponse,
    DepartmentResponse,
    EventResponse,
    ExceptionGrantRequest,
    ExceptionTicketResponse,
    ImpactResponse,
    PolicyResponse,
    PolicyUpdateRequest,
    SweepResponse,
    TicketCreateRequest,
    TicketResponse,
    TransitionRequest,
    TrendDayResponse,
)
from slaengine.sla.infrastructure.repositories import SQLAlchemyUnitOfWork
from slaengine.sla.services import SLAEngine

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Engine"])


# ========== Example payloads for Swagger ==========

POLICY_RESPONSE_EXAMPLE = {
    "id": "5b0c6a52-2f53-4d0f-9d0a-6f1f7c2b9e11",
    "department_id": "hk-grand-plaza",
    "version": 2,
    "target_minutes": 30,
    "warn_minutes": 10,
    "escalate_minutes": 15,
    "start_trigger": "ON_ASSIGN",
    "valid_from": "2024-01-15T10:00:00Z",
    "valid_to": None,
    "is_current": True
}

CLOCK_RESPONSE_EXAMPLE = {
    "ticket_id": "HK-1042",
    "classification": "AT_RISK",
    "evaluated_at": "2024-01-15T10:25:00Z",
    "policy_id": "5b0c6a52-2f53-4d0f-9d0a-6f1f7c2b9e11",
    "clock_started_at": "2024-01-15T10:00:00Z",
    "deadline_at": "2024-01-15T10:30:00Z",
    "warn_at": "2024-01-15T10:20:00Z",
    "escalate_at": "2024-01-15T10:45:00Z",
    "target_seconds": 1800,
    "paused_seconds": 0.0,
    "blocked_seconds": 0.0,
    "elapsed_seconds": 1500.0,
    "remaining_seconds": 300.0
}


# ========== Dependencies ==========

def get_sla_engine(request: Request) -> SLAEngine:
    """SLA engine created during application startup."""
    return request.app.state.sla_engine


async def get_unit_of_work(
    engine: SLAEngine = Depends(get_sla_engine)
) -> AsyncIterator[SQLAlchemyUnitOfWork]:
    """Unit of work for one request."""
    async with engine.unit_of_work() as uow:
        yield uow


# ========== Departments & Policies ==========

@router.post(
    "/departments",
    response_model=DepartmentRegisteredResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a department",
    description="""
    Register a department and its first SLA policy version.

    When `policy` is omitted the first version is seeded from the
    department code's template (HOUSEKEEPING, ENGINEERING, FRONT_OFFICE, ...).
    """
)
async def register_department(
    body: DepartmentCreateRequest,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    terms = body.policy.to_terms() if body.policy else None
    department, policy = await engine.policies(uow).register_department(
        hotel_id=body.hotel_id,
        code=body.code,
        name=body.name,
        terms=terms,
        department_id=body.department_id,
    )
    return DepartmentRegisteredResponse(
        department=DepartmentResponse.from_domain(department),
        policy=PolicyResponse.from_domain(policy),
    )


@router.get(
    "/departments/{department_id}/policy",
    response_model=PolicyResponse,
    summary="Get current SLA policy",
    responses={
        200: {"content": {"application/json": {"example": POLICY_RESPONSE_EXAMPLE}}},
        404: {"description": "Department or policy not found"}
    }
)
async def get_current_policy(
    department_id: str,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    policy = await engine.policies(uow).get_current_policy(department_id)
    return PolicyResponse.from_domain(policy)


@router.put(
    "/departments/{department_id}/policy",
    response_model=PolicyResponse,
    summary="Set SLA policy",
    description="""
    Supersede the current policy with a new version.

    Tickets whose clock already started keep the version they captured.
    Pass `expected_current_id` to fail with 409 instead of overwriting a
    version you have not seen.
    """,
    responses={
        409: {"description": "Concurrent policy write"},
        422: {"description": "Invalid policy terms"}
    }
)
async def set_policy(
    department_id: str,
    body: PolicyUpdateRequest,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    policy = await engine.policies(uow).set_policy(
        department_id,
        body.to_terms(),
        expected_current_id=body.expected_current_id,
    )
    return PolicyResponse.from_domain(policy)


@router.get(
    "/departments/{department_id}/policy/history",
    response_model=List[PolicyResponse],
    summary="List SLA policy versions, newest first"
)
async def get_policy_history(
    department_id: str,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    history = await engine.policies(uow).policy_history(department_id)
    return [PolicyResponse.from_domain(p) for p in history]


# ========== Tickets ==========

@router.post(
    "/tickets",
    response_model=TicketResponse,
    summary="Register a ticket",
    description="Ticket-created event from the ticketing system. Idempotent on `ticket_id`."
)
async def register_ticket(
    body: TicketCreateRequest,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    ticket, clock = await engine.lifecycle(uow).register_ticket(
        ticket_id=body.ticket_id,
        department_id=body.department_id,
        service_key=body.service_key,
        created_at=body.created_at,
        display_id=body.display_id,
        title=body.title,
        assignee=body.assignee,
    )
    return TicketResponse.from_domain(ticket, clock)


@router.post(
    "/tickets/{ticket_id}/transitions",
    response_model=TicketResponse,
    summary="Apply a lifecycle transition",
    description="""
    CREATED → ASSIGNED → IN_PROGRESS → (BLOCKED ⇄ IN_PROGRESS) → COMPLETED.
    Any open ticket may be CANCELLED. Blocking requires a `block_reason` code
    from the configured catalog.
    """,
    responses={
        404: {"description": "Ticket not found"},
        409: {"description": "Transition not allowed"},
        422: {"description": "Missing or unknown block reason, or out-of-order timestamp"}
    }
)
async def transition_ticket(
    ticket_id: str,
    body: TransitionRequest,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    ticket, clock = await engine.lifecycle(uow).transition(
        ticket_id,
        body.to_status,
        at=body.at,
        block_reason=body.block_reason,
        assignee=body.assignee,
    )
    return TicketResponse.from_domain(ticket, clock)


@router.post(
    "/tickets/{ticket_id}/exception",
    response_model=TicketResponse,
    summary="Grant an SLA exception"
)
async def grant_exception(
    ticket_id: str,
    body: ExceptionGrantRequest,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    ticket, clock = await engine.lifecycle(uow).grant_exception(
        ticket_id, body.reason_code, at=body.at
    )
    return TicketResponse.from_domain(ticket, clock)


@router.get(
    "/tickets/{ticket_id}/clock",
    response_model=ClockResponse,
    summary="Get the SLA clock of a ticket",
    responses={
        200: {"content": {"application/json": {"example": CLOCK_RESPONSE_EXAMPLE}}},
        404: {"description": "Ticket not found"}
    }
)
async def get_ticket_clock(
    ticket_id: str,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    clock = await engine.queries(uow).ticket_clock(ticket_id)
    return ClockResponse.from_domain(clock)


@router.get(
    "/tickets/{ticket_id}/events",
    response_model=List[EventResponse],
    summary="List the SLA events of a ticket"
)
async def get_ticket_events(
    ticket_id: str,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    events = await engine.queries(uow).ticket_events(ticket_id)
    return [EventResponse.from_domain(e) for e in events]


# ========== Department queries ==========

@router.get(
    "/departments/{department_id}/blocked",
    response_model=List[BlockedTicketResponse],
    summary="Currently blocked tickets"
)
async def get_blocked_tickets(
    department_id: str,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    views = await engine.queries(uow).blocked_tickets(department_id)
    return [BlockedTicketResponse.from_view(v) for v in views]


@router.get(
    "/departments/{department_id}/blocked/by-reason",
    response_model=List[BlockReasonGroupResponse],
    summary="Blocked tickets grouped by block reason"
)
async def get_blocked_by_reason(
    department_id: str,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    groups = await engine.queries(uow).blocked_by_reason(department_id)
    return [BlockReasonGroupResponse.from_view(g) for g in groups]


@router.get(
    "/departments/{department_id}/at-risk",
    response_model=List[AtRiskTicketResponse],
    summary="Tickets inside their warning window"
)
async def get_at_risk_tickets(
    department_id: str,
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    views = await engine.queries(uow).at_risk_tickets(department_id)
    return [AtRiskTicketResponse.from_view(v) for v in views]


@router.get(
    "/departments/{department_id}/exceptions",
    response_model=List[ExceptionTicketResponse],
    summary="SLA exceptions granted recently"
)
async def get_exceptions(
    department_id: str,
    category: Optional[str] = Query(None, description="Filter by reason category"),
    days: int = Query(30, ge=1, le=366),
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    views = await engine.queries(uow).exceptions(department_id, days, category)
    return [ExceptionTicketResponse.from_view(v) for v in views]


# ========== Hotel reporting ==========

@router.get(
    "/hotels/{hotel_id}/compliance-trend",
    response_model=List[TrendDayResponse],
    summary="Daily compliance counts, oldest day first"
)
async def get_compliance_trend(
    hotel_id: str,
    days: int = Query(7, ge=1, le=366),
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    buckets = await engine.compliance(uow).trend(hotel_id, days)
    return [TrendDayResponse.from_bucket(b) for b in buckets]


@router.get(
    "/hotels/{hotel_id}/impact",
    response_model=ImpactResponse,
    summary="Compliance loss per department"
)
async def get_impact_breakdown(
    hotel_id: str,
    days: Optional[int] = Query(None, ge=1, le=366, description="Defaults to the configured window"),
    engine: SLAEngine = Depends(get_sla_engine),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work)
):
    breakdown = await engine.compliance(uow).impact(
        hotel_id, days or engine.settings.impact_window_days
    )
    return ImpactResponse.from_domain(breakdown)


# ========== Operations ==========

@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run an SLA sweep now",
    description=(
        "Classify all open tickets, fold completed ones and deliver pending events. "
        "Returns `skipped: true` without doing anything when a sweep is already running."
    )
)
async def run_sweep(engine: SLAEngine = Depends(get_sla_engine)):
    summary = await engine.run_sweep()
    return SweepResponse(
        evaluated=summary.evaluated,
        changed=summary.changed,
        events_emitted=summary.events_emitted,
        failed_ticket_ids=summary.failed_ticket_ids,
        folded=summary.folded,
        delivered=summary.delivered,
        delivery_failed=summary.delivery_failed,
        deferred=summary.deferred,
        duration_ms=summary.duration_ms,
        skipped=summary.skipped,
    )


sla_router = router
