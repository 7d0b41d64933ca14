"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from slaengine.config import SLAClassification, SLAEventType, StartTrigger, TicketStatus
from slaengine.sla.application.compliance import DepartmentImpact, ImpactBreakdown
from slaengine.sla.application.queries import (
    AtRiskTicketView, BlockedTicketView, BlockReasonGroupView, ExceptionTicketView
)
from slaengine.sla.domain import (
    ComplianceBucket, Department, PolicyTerms, SLAClockState, SLAEvent, SLAPolicy, Ticket
)


# ========== Request DTOs ==========

class PolicyTermsDTO(BaseModel):
    """SLA policy terms as submitted by the administration UI."""
    target_minutes: int = Field(..., description="Minutes allowed from clock start to completion")
    warn_minutes: int = Field(default=0, description="At-risk window before the deadline")
    escalate_minutes: int = Field(default=0, description="Minutes past the deadline before escalation")
    start_trigger: str = Field(
        default=StartTrigger.ON_ASSIGN.value,
        description="ON_CREATE, ON_ASSIGN or ON_ACCEPT"
    )

    def to_terms(self) -> PolicyTerms:
        """Validate into domain terms (raises ValidationException)."""
        return PolicyTerms.parse(
            self.target_minutes, self.warn_minutes,
            self.escalate_minutes, self.start_trigger
        )


class PolicyUpdateRequest(PolicyTermsDTO):
    """Request model for superseding a department's policy."""
    expected_current_id: Optional[str] = Field(
        None,
        description="Fail with 409 unless this is still the current version"
    )


class DepartmentCreateRequest(BaseModel):
    """Request model for registering a department."""
    hotel_id: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, max_length=64, description="e.g. HOUSEKEEPING")
    name: str = Field(..., min_length=1)
    department_id: Optional[str] = Field(None, description="Defaults to a generated UUID")
    policy: Optional[PolicyTermsDTO] = Field(
        None,
        description="Initial policy; the department code's template when omitted"
    )


class TicketCreateRequest(BaseModel):
    """Ticket-created event from the ticketing system."""
    ticket_id: str = Field(..., min_length=1)
    department_id: str = Field(..., min_length=1)
    service_key: str = Field(..., min_length=1, description="Requested service, e.g. EXTRA_TOWELS")
    created_at: Optional[datetime] = Field(None, description="Defaults to now")
    display_id: Optional[str] = None
    title: Optional[str] = None
    assignee: Optional[str] = None


class TransitionRequest(BaseModel):
    """Lifecycle event from the ticketing system."""
    to_status: TicketStatus
    at: Optional[datetime] = Field(None, description="Transition instant, defaults to now")
    block_reason: Optional[str] = Field(
        None,
        description="Block reason code from the configured catalog, required when to_status is BLOCKED",
        examples=["GUEST_INSIDE"]
    )
    assignee: Optional[str] = None


class ExceptionGrantRequest(BaseModel):
    """Request model for granting an SLA exception."""
    reason_code: str = Field(..., min_length=1, description="Code from the exception reason catalog")
    at: Optional[datetime] = None


# ========== Response DTOs ==========

class DepartmentResponse(BaseModel):
    id: str
    hotel_id: str
    code: str
    name: str
    is_active: bool

    @classmethod
    def from_domain(cls, department: Department) -> "DepartmentResponse":
        return cls(
            id=department.id,
            hotel_id=department.hotel_id,
            code=department.code,
            name=department.name,
            is_active=department.is_active,
        )


class PolicyResponse(BaseModel):
    """Response model for one policy version."""
    id: str
    department_id: str
    version: int
    target_minutes: int
    warn_minutes: int
    escalate_minutes: int
    start_trigger: StartTrigger
    valid_from: datetime
    valid_to: Optional[datetime] = None
    is_current: bool

    @classmethod
    def from_domain(cls, policy: SLAPolicy) -> "PolicyResponse":
        return cls(
            id=policy.id,
            department_id=policy.department_id,
            version=policy.version,
            target_minutes=policy.target_minutes,
            warn_minutes=policy.warn_minutes,
            escalate_minutes=policy.escalate_minutes,
            start_trigger=policy.start_trigger,
            valid_from=policy.valid_from,
            valid_to=policy.valid_to,
            is_current=policy.is_current,
        )


class DepartmentRegisteredResponse(BaseModel):
    department: DepartmentResponse
    policy: PolicyResponse


class ClockResponse(BaseModel):
    """Derived SLA clock of a ticket."""
    ticket_id: str
    classification: SLAClassification
    evaluated_at: datetime
    policy_id: Optional[str] = None
    clock_started_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = Field(None, description="None while blocked or not started")
    warn_at: Optional[datetime] = None
    escalate_at: Optional[datetime] = None
    target_seconds: Optional[int] = None
    paused_seconds: float = 0.0
    blocked_seconds: float = 0.0
    elapsed_seconds: Optional[float] = None
    remaining_seconds: Optional[float] = None

    @classmethod
    def from_domain(cls, clock: SLAClockState) -> "ClockResponse":
        return cls(
            ticket_id=clock.ticket_id,
            classification=clock.classification,
            evaluated_at=clock.evaluated_at,
            policy_id=clock.policy_id,
            clock_started_at=clock.clock_started_at,
            deadline_at=clock.deadline_at,
            warn_at=clock.warn_at,
            escalate_at=clock.escalate_at,
            target_seconds=clock.target_seconds,
            paused_seconds=clock.paused_seconds,
            blocked_seconds=clock.blocked_seconds,
            elapsed_seconds=clock.elapsed_seconds,
            remaining_seconds=clock.remaining_seconds,
        )


class TicketResponse(BaseModel):
    """Ticket with its SLA clock at response time."""
    id: str
    department_id: str
    service_key: str
    status: TicketStatus
    display_id: Optional[str] = None
    title: Optional[str] = None
    assignee: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    clock_started_at: Optional[datetime] = None
    sla_policy_id: Optional[str] = None
    block_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    exception_reason_code: Optional[str] = None
    exception_category: Optional[str] = None
    sla: ClockResponse

    @classmethod
    def from_domain(cls, ticket: Ticket, clock: SLAClockState) -> "TicketResponse":
        return cls(
            id=ticket.id,
            department_id=ticket.department_id,
            service_key=ticket.service_key,
            status=ticket.status,
            display_id=ticket.display_id,
            title=ticket.title,
            assignee=ticket.assignee,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            clock_started_at=ticket.clock_started_at,
            sla_policy_id=ticket.sla_policy_id,
            block_reason=ticket.block_reason,
            completed_at=ticket.completed_at,
            cancelled_at=ticket.cancelled_at,
            exception_reason_code=ticket.exception_reason_code,
            exception_category=ticket.exception_category,
            sla=ClockResponse.from_domain(clock),
        )


class BlockedTicketResponse(BaseModel):
    ticket_id: str
    display_id: Optional[str] = None
    title: Optional[str] = None
    assignee: Optional[str] = None
    blocked_seconds: float
    block_reason: Optional[str] = None
    blocked_at: Optional[datetime] = None

    @classmethod
    def from_view(cls, view: BlockedTicketView) -> "BlockedTicketResponse":
        return cls(**vars(view))


class BlockReasonGroupResponse(BaseModel):
    """Blocked tickets sharing one block reason."""
    reason_code: Optional[str] = None
    label: Optional[str] = None
    ticket_count: int
    longest_blocked_seconds: float
    ticket_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_view(cls, view: BlockReasonGroupView) -> "BlockReasonGroupResponse":
        return cls(**vars(view))


class AtRiskTicketResponse(BaseModel):
    ticket_id: str
    display_id: Optional[str] = None
    title: Optional[str] = None
    assignee: Optional[str] = None
    status: TicketStatus
    remaining_seconds: float
    target_seconds: int
    deadline_at: datetime

    @classmethod
    def from_view(cls, view: AtRiskTicketView) -> "AtRiskTicketResponse":
        return cls(**vars(view))


class ExceptionTicketResponse(BaseModel):
    ticket_id: str
    display_id: Optional[str] = None
    title: Optional[str] = None
    status: TicketStatus
    reason_code: Optional[str] = None
    category: Optional[str] = None
    exception_occurred_at: datetime

    @classmethod
    def from_view(cls, view: ExceptionTicketView) -> "ExceptionTicketResponse":
        return cls(**vars(view))


class TrendDayResponse(BaseModel):
    """Hotel-wide compliance counts for one reporting day."""
    day: date
    completed_within_sla: int
    breached_sla: int
    sla_exempted: int
    compliance_percent: Optional[float] = Field(None, description="None when nothing was counted")

    @classmethod
    def from_bucket(cls, bucket: ComplianceBucket) -> "TrendDayResponse":
        return cls(
            day=bucket.bucket_date,
            completed_within_sla=bucket.completed_within_sla,
            breached_sla=bucket.breached_sla,
            sla_exempted=bucket.sla_exempted,
            compliance_percent=bucket.compliance_percent,
        )


class DepartmentImpactResponse(BaseModel):
    department_id: str
    code: str
    name: str
    completed_within_sla: int
    breached_count: int
    sla_exempted: int
    impact_percent: float

    @classmethod
    def from_domain(cls, impact: DepartmentImpact) -> "DepartmentImpactResponse":
        return cls(**vars(impact))


class ImpactResponse(BaseModel):
    """Compliance loss per department over the window."""
    hotel_id: str
    start_date: date
    end_date: date
    total_counted: int
    compliance_percent: Optional[float] = None
    departments: List[DepartmentImpactResponse]

    @classmethod
    def from_domain(cls, breakdown: ImpactBreakdown) -> "ImpactResponse":
        return cls(
            hotel_id=breakdown.hotel_id,
            start_date=breakdown.start_date,
            end_date=breakdown.end_date,
            total_counted=breakdown.total_counted,
            compliance_percent=breakdown.compliance_percent,
            departments=[DepartmentImpactResponse.from_domain(d) for d in breakdown.departments],
        )


class EventResponse(BaseModel):
    id: str
    ticket_id: str
    department_id: str
    event_type: SLAEventType
    old_classification: Optional[SLAClassification] = None
    new_classification: SLAClassification
    occurred_at: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)
    delivered_at: Optional[datetime] = None
    attempts: int = 0

    @classmethod
    def from_domain(cls, event: SLAEvent) -> "EventResponse":
        return cls(
            id=event.id,
            ticket_id=event.ticket_id,
            department_id=event.department_id,
            event_type=event.event_type,
            old_classification=event.old_classification,
            new_classification=event.new_classification,
            occurred_at=event.occurred_at,
            payload=event.payload,
            delivered_at=event.delivered_at,
            attempts=event.attempts,
        )


class SweepResponse(BaseModel):
    """Summary of one evaluation sweep."""
    evaluated: int
    changed: int
    events_emitted: int
    failed_ticket_ids: List[str] = Field(default_factory=list)
    folded: int
    delivered: int
    delivery_failed: int
    deferred: int
    duration_ms: float
    skipped: bool = False
