"""
SLA Value Objects
==================

Immutable value objects and pure calculations for the SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from slaengine.config import (
    ComplianceOutcome, SLAClassification, StartTrigger, TicketStatus,
    VALID_START_TRIGGERS
)
from slaengine.core import ValidationException
from slaengine.shared.time import local_date
from slaengine.sla.domain.entities import (
    BlockReason, ComplianceBucket, ComplianceFold, ExceptionReason,
    SLAClockState, SLAPolicy, Ticket
)


@dataclass(frozen=True)
class PolicyTerms:
    """
    Validated terms of an SLA policy, independent of any version.

    Use `PolicyTerms.parse` to build from untrusted input; it raises
    ValidationException and never returns a partially valid object.
    """

    target_minutes: int
    warn_minutes: int
    escalate_minutes: int
    start_trigger: StartTrigger

    @classmethod
    def parse(
        cls,
        target_minutes: int,
        warn_minutes: int = 0,
        escalate_minutes: int = 0,
        start_trigger: "StartTrigger | str" = StartTrigger.ON_ASSIGN
    ) -> "PolicyTerms":
        errors: Dict[str, str] = {}

        if target_minutes is None or target_minutes < 0:
            errors["target_minutes"] = "must be >= 0"
        if warn_minutes is None or warn_minutes < 0:
            errors["warn_minutes"] = "must be >= 0"
        elif target_minutes is not None and warn_minutes > target_minutes:
            errors["warn_minutes"] = "cannot exceed target_minutes"
        if escalate_minutes is None or escalate_minutes < 0:
            errors["escalate_minutes"] = "must be >= 0"

        trigger_value = start_trigger.value if isinstance(start_trigger, StartTrigger) else start_trigger
        if trigger_value not in VALID_START_TRIGGERS:
            errors["start_trigger"] = f"must be one of {VALID_START_TRIGGERS}"

        if errors:
            raise ValidationException("Invalid SLA policy", details=errors)

        return cls(
            target_minutes=target_minutes,
            warn_minutes=warn_minutes,
            escalate_minutes=escalate_minutes,
            start_trigger=StartTrigger(trigger_value),
        )


class SLAClock:
    """
    Pure functions for SLA clock calculations.

    Given the same ticket snapshot, policy version and instant, the result
    is always the same; there is no hidden state.
    """

    @staticmethod
    def compute_clock(
        ticket: Ticket,
        policy: Optional[SLAPolicy],
        now: datetime
    ) -> SLAClockState:
        """
        Compute the SLA clock of a ticket.

        Terminal tickets are evaluated at their terminal instant so the
        result stays fixed after completion.

        Raises:
            ValueError: when the ticket references a policy that was not supplied
        """
        if ticket.sla_policy_id is not None and policy is None:
            raise ValueError(f"policy {ticket.sla_policy_id} missing for ticket {ticket.id}")
        if policy is not None and ticket.sla_policy_id != policy.id:
            raise ValueError(
                f"ticket {ticket.id} captured policy {ticket.sla_policy_id}, got {policy.id}"
            )

        at = ticket.terminal_at if ticket.is_terminal and ticket.terminal_at else now
        paused = ticket.total_paused_seconds
        blocked = ticket.blocked_seconds(at)

        if ticket.is_exempted or ticket.status == TicketStatus.CANCELLED:
            return SLAClockState(
                ticket_id=ticket.id,
                classification=SLAClassification.EXEMPT,
                evaluated_at=at,
                policy_id=ticket.sla_policy_id,
                clock_started_at=ticket.clock_started_at,
                paused_seconds=paused,
                blocked_seconds=blocked,
            )

        if ticket.is_blocked:
            return SLAClockState(
                ticket_id=ticket.id,
                classification=SLAClassification.BLOCKED,
                evaluated_at=at,
                policy_id=ticket.sla_policy_id,
                clock_started_at=ticket.clock_started_at,
                target_seconds=policy.target_seconds if policy else None,
                paused_seconds=paused,
                blocked_seconds=blocked,
            )

        if policy is None or ticket.clock_started_at is None:
            return SLAClockState(
                ticket_id=ticket.id,
                classification=SLAClassification.NOT_STARTED,
                evaluated_at=at,
            )

        deadline_at = ticket.clock_started_at + timedelta(
            minutes=policy.target_minutes, seconds=paused
        )
        warn_at = deadline_at - timedelta(minutes=policy.warn_minutes)
        escalate_at = deadline_at + timedelta(minutes=policy.escalate_minutes)

        elapsed = max(0.0, (at - ticket.clock_started_at).total_seconds() - paused)
        remaining = max(0.0, (deadline_at - at).total_seconds())

        return SLAClockState(
            ticket_id=ticket.id,
            classification=SLAClock.classify(at, deadline_at, warn_at, escalate_at),
            evaluated_at=at,
            policy_id=policy.id,
            clock_started_at=ticket.clock_started_at,
            deadline_at=deadline_at,
            warn_at=warn_at,
            escalate_at=escalate_at,
            target_seconds=policy.target_seconds,
            paused_seconds=paused,
            elapsed_seconds=elapsed,
            remaining_seconds=remaining,
        )

    @staticmethod
    def classify(
        at: datetime,
        deadline_at: datetime,
        warn_at: datetime,
        escalate_at: datetime
    ) -> SLAClassification:
        """Classify a running (not blocked, not exempt) clock."""
        if at > deadline_at:
            if at > escalate_at:
                return SLAClassification.ESCALATED
            return SLAClassification.BREACHED
        if at >= warn_at:
            return SLAClassification.AT_RISK
        return SLAClassification.ON_TRACK


class ComplianceRules:
    """Pure rules for folding terminal tickets into compliance buckets."""

    @staticmethod
    def outcome_for(ticket: Ticket, policy: Optional[SLAPolicy]) -> ComplianceOutcome:
        """
        Outcome of a terminal ticket.

        Cancelled, exempted and never-started tickets are exempted; completed
        tickets are within SLA when completed_at <= deadline_at (pauses included).
        """
        if not ticket.is_terminal:
            raise ValueError(f"ticket {ticket.id} is not terminal")

        if ticket.status == TicketStatus.CANCELLED or ticket.is_exempted:
            return ComplianceOutcome.EXEMPTED

        clock = SLAClock.compute_clock(ticket, policy, ticket.completed_at)
        if clock.deadline_at is None:
            return ComplianceOutcome.EXEMPTED
        if ticket.completed_at <= clock.deadline_at:
            return ComplianceOutcome.WITHIN_SLA
        return ComplianceOutcome.BREACHED

    @staticmethod
    def fold_for(
        ticket: Ticket,
        policy: Optional[SLAPolicy],
        folded_at: datetime,
        tz_name: str
    ) -> ComplianceFold:
        return ComplianceFold(
            ticket_id=ticket.id,
            department_id=ticket.department_id,
            bucket_date=local_date(ticket.terminal_at, tz_name),
            outcome=ComplianceRules.outcome_for(ticket, policy),
            folded_at=folded_at,
        )

    @staticmethod
    def impact_percent(breached_count: int, total_counted: int) -> float:
        """Share of the window's SLA-counted tickets lost to one department's breaches."""
        if total_counted <= 0:
            return 0.0
        return breached_count / total_counted * 100

    @staticmethod
    def merge_by_date(buckets: List[ComplianceBucket], days: List[date]) -> List[ComplianceBucket]:
        """Sum buckets across departments per day, zero-filling missing days."""
        merged = {day: ComplianceBucket(department_id="*", bucket_date=day) for day in days}
        for bucket in buckets:
            if bucket.bucket_date in merged:
                merged[bucket.bucket_date].add(bucket)
        return [merged[day] for day in days]


# ========== Configuration value objects (YAML) ==========

class PolicyTemplate(BaseModel):
    """Default SLA terms for a department code."""
    target_minutes: int = Field(ge=0)
    warn_minutes: int = Field(default=0, ge=0)
    escalate_minutes: int = Field(default=0, ge=0)
    start_trigger: StartTrigger = StartTrigger.ON_ASSIGN

    def to_terms(self) -> PolicyTerms:
        return PolicyTerms.parse(
            self.target_minutes, self.warn_minutes,
            self.escalate_minutes, self.start_trigger
        )


class ExceptionReasonConfig(BaseModel):
    """SLA exception reason as configured."""
    code: str = Field(min_length=1)
    label: str
    category: str = Field(min_length=1)
    description: Optional[str] = None
    is_active: bool = True

    def to_domain(self) -> ExceptionReason:
        return ExceptionReason(
            code=self.code,
            label=self.label,
            category=self.category,
            description=self.description,
            is_active=self.is_active,
        )


class BlockReasonConfig(BaseModel):
    """Reason a ticket can be blocked with."""
    code: str = Field(min_length=1)
    label: str
    description: Optional[str] = None
    is_active: bool = True

    def to_domain(self) -> BlockReason:
        return BlockReason(
            code=self.code,
            label=self.label,
            description=self.description,
            is_active=self.is_active,
        )


DEFAULT_DEPARTMENT_TEMPLATES: Dict[str, Dict[str, object]] = {
    "HOUSEKEEPING": {"target_minutes": 30, "warn_minutes": 10, "escalate_minutes": 15},
    "ENGINEERING": {"target_minutes": 60, "warn_minutes": 15, "escalate_minutes": 30},
    "FRONT_OFFICE": {"target_minutes": 25, "warn_minutes": 5, "escalate_minutes": 15},
    "SECURITY": {"target_minutes": 20, "warn_minutes": 5, "escalate_minutes": 10},
    "IT_SUPPORT": {"target_minutes": 60, "warn_minutes": 15, "escalate_minutes": 30},
    "CONCIERGE": {"target_minutes": 40, "warn_minutes": 10, "escalate_minutes": 20},
    "MAINTENANCE": {"target_minutes": 45, "warn_minutes": 10, "escalate_minutes": 25},
    "LAUNDRY": {"target_minutes": 40, "warn_minutes": 10, "escalate_minutes": 20},
}

DEFAULT_EXCEPTION_REASONS: List[Dict[str, object]] = [
    {"code": "VENDOR_DELAY", "label": "Vendor delay", "category": "EXTERNAL_DEPENDENCY"},
    {"code": "SAFETY_OR_COMPLIANCE", "label": "Safety or compliance requirement", "category": "POLICY"},
    {"code": "STRUCTURAL_OR_INFRA_ISSUE", "label": "Structural or infrastructure issue",
     "category": "INFRASTRUCTURE"},
    {"code": "GUEST_UNAVAILABLE", "label": "Guest unavailable", "category": "GUEST_DEPENDENCY"},
    {"code": "WEATHER_OR_FORCE_MAJEURE", "label": "Weather or force majeure", "category": "FORCE_MAJEURE"},
    {"code": "MANAGEMENT_OVERRIDE", "label": "Management override", "category": "MANAGEMENT"},
]

DEFAULT_BLOCK_REASONS: List[Dict[str, object]] = [
    {"code": "GUEST_INSIDE", "label": "Guest inside the room"},
    {"code": "ROOM_LOCKED", "label": "Room locked"},
    {"code": "SUPPLIES_UNAVAILABLE", "label": "Supplies unavailable"},
    {"code": "WAITING_MAINTENANCE", "label": "Waiting for maintenance"},
    {"code": "SUPERVISOR_APPROVAL", "label": "Waiting for supervisor approval"},
]


class SLAConfig(BaseModel):
    """
    SLA configuration loaded from YAML.

    Holds department templates used to seed a new department's first
    policy and the catalogs of SLA exception and block reasons.
    """
    model_config = ConfigDict(validate_default=True)

    default_template: PolicyTemplate = Field(
        default_factory=lambda: PolicyTemplate(target_minutes=30, warn_minutes=10, escalate_minutes=15),
        description="Template for department codes without their own entry"
    )
    department_templates: Dict[str, PolicyTemplate] = Field(
        default_factory=dict,
        description="Policy templates by department code"
    )
    exception_reasons: List[ExceptionReasonConfig] = Field(
        default_factory=list,
        description="Catalog of SLA exception reasons"
    )
    block_reasons: List[BlockReasonConfig] = Field(
        default_factory=list,
        description="Catalog of reasons a ticket can be blocked with"
    )

    @field_validator("department_templates", mode="before")
    @classmethod
    def fill_department_templates(cls, v: Optional[dict]) -> dict:
        """Seed templates for the standard hotel departments."""
        templates = {code.upper(): tmpl for code, tmpl in (v or {}).items()}
        for code, defaults in DEFAULT_DEPARTMENT_TEMPLATES.items():
            templates.setdefault(code, defaults)
        return templates

    @field_validator("exception_reasons", mode="before")
    @classmethod
    def fill_exception_reasons(cls, v: Optional[list]) -> list:
        """Fall back to the standard reason catalog when none is configured."""
        return v if v else list(DEFAULT_EXCEPTION_REASONS)

    @field_validator("block_reasons", mode="before")
    @classmethod
    def fill_block_reasons(cls, v: Optional[list]) -> list:
        return v if v else list(DEFAULT_BLOCK_REASONS)

    def template_for(self, department_code: str) -> PolicyTemplate:
        return self.department_templates.get(department_code.upper(), self.default_template)

    def get_exception_reason(self, code: str) -> Optional[ExceptionReason]:
        for reason in self.exception_reasons:
            if reason.code == code:
                return reason.to_domain()
        return None

    def get_block_reason(self, code: str) -> Optional[BlockReason]:
        for reason in self.block_reasons:
            if reason.code == code:
                return reason.to_domain()
        return None
