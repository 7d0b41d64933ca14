"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from slaengine.config import (
    OPEN_STATUSES, TERMINAL_STATUSES,
    ComplianceOutcome, SLAClassification, SLAEventType,
    StartTrigger, TicketStatus
)
from slaengine.shared.time import seconds_between


@dataclass
class Department:
    """Operational department owning exactly one current SLA policy."""

    id: str
    hotel_id: str
    code: str
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class SLAPolicy:
    """
    One version of a department's SLA policy.

    Policies are immutable: an edit creates a new version and stamps
    `valid_to` on the previous one, so tickets keep the deadline semantics
    of the version they captured.
    """

    id: str
    department_id: str
    version: int
    target_minutes: int
    warn_minutes: int
    escalate_minutes: int
    start_trigger: StartTrigger
    valid_from: datetime
    valid_to: Optional[datetime] = None

    @property
    def is_current(self) -> bool:
        return self.valid_to is None

    @property
    def target_seconds(self) -> int:
        return self.target_minutes * 60

    @classmethod
    def new_version(
        cls,
        department_id: str,
        version: int,
        target_minutes: int,
        warn_minutes: int,
        escalate_minutes: int,
        start_trigger: StartTrigger,
        valid_from: datetime
    ) -> "SLAPolicy":
        return cls(
            id=str(uuid4()),
            department_id=department_id,
            version=version,
            target_minutes=target_minutes,
            warn_minutes=warn_minutes,
            escalate_minutes=escalate_minutes,
            start_trigger=start_trigger,
            valid_from=valid_from,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department_id": self.department_id,
            "version": self.version,
            "target_minutes": self.target_minutes,
            "warn_minutes": self.warn_minutes,
            "escalate_minutes": self.escalate_minutes,
            "start_trigger": self.start_trigger.value,
            "valid_from": self.valid_from.isoformat(),
            "valid_to": self.valid_to.isoformat() if self.valid_to else None,
        }


@dataclass
class BlockInterval:
    """A period during which the ticket was blocked and its clock paused."""

    reason: str
    started_at: datetime
    ended_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def duration_seconds(self, now: Optional[datetime] = None) -> float:
        """Length of the interval; open intervals are measured up to `now`."""
        end = self.ended_at or now
        if end is None:
            return 0.0
        return seconds_between(self.started_at, end)


@dataclass
class Ticket:
    """
    Operational ticket (housekeeping, front desk, kitchen request).

    Lifecycle fields are driven by the external ticketing collaborator;
    SLA fields are owned by this engine. `sla_policy_id` is captured once
    when the clock starts and never recomputed.
    """

    id: str
    department_id: str
    service_key: str
    status: TicketStatus
    created_at: datetime
    updated_at: datetime

    display_id: Optional[str] = None
    title: Optional[str] = None
    assignee: Optional[str] = None

    # Lifecycle timestamps
    assigned_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    blocked_at: Optional[datetime] = None
    block_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    # SLA tracking
    clock_started_at: Optional[datetime] = None
    sla_policy_id: Optional[str] = None
    block_intervals: List[BlockInterval] = field(default_factory=list)

    # SLA exception
    sla_exempted_at: Optional[datetime] = None
    exception_reason_code: Optional[str] = None
    exception_category: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_blocked(self) -> bool:
        return self.status == TicketStatus.BLOCKED

    @property
    def is_exempted(self) -> bool:
        return self.sla_exempted_at is not None

    @property
    def clock_started(self) -> bool:
        return self.clock_started_at is not None

    @property
    def open_block(self) -> Optional[BlockInterval]:
        if self.block_intervals and self.block_intervals[-1].is_open:
            return self.block_intervals[-1]
        return None

    @property
    def total_paused_seconds(self) -> float:
        """Sum of completed block intervals; an open interval is not included."""
        return sum(
            interval.duration_seconds()
            for interval in self.block_intervals
            if not interval.is_open
        )

    @property
    def terminal_at(self) -> Optional[datetime]:
        return self.completed_at or self.cancelled_at

    @property
    def revision(self) -> tuple:
        """Fields any lifecycle change moves; equal revisions mean an unchanged ticket."""
        return (
            self.updated_at,
            self.status,
            self.clock_started_at,
            len(self.block_intervals),
            self.sla_exempted_at,
        )

    def blocked_seconds(self, now: datetime) -> float:
        """Length of the current block, 0 when not blocked."""
        interval = self.open_block
        return interval.duration_seconds(now) if interval else 0.0


@dataclass(frozen=True)
class SLAClockState:
    """
    Derived SLA clock of a ticket at `evaluated_at`.

    Never persisted as source of truth; recomputed on demand. While the
    ticket is blocked the deadline fields are None because the open pause
    makes the effective deadline indeterminate.
    """

    ticket_id: str
    classification: SLAClassification
    evaluated_at: datetime
    policy_id: Optional[str] = None
    clock_started_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    warn_at: Optional[datetime] = None
    escalate_at: Optional[datetime] = None
    target_seconds: Optional[int] = None
    paused_seconds: float = 0.0
    blocked_seconds: float = 0.0
    elapsed_seconds: Optional[float] = None
    remaining_seconds: Optional[float] = None

    @property
    def is_breached(self) -> bool:
        return self.classification in (SLAClassification.BREACHED, SLAClassification.ESCALATED)

    def to_dict(self) -> dict:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "ticket_id": self.ticket_id,
            "classification": self.classification.value,
            "evaluated_at": iso(self.evaluated_at),
            "policy_id": self.policy_id,
            "clock_started_at": iso(self.clock_started_at),
            "deadline_at": iso(self.deadline_at),
            "warn_at": iso(self.warn_at),
            "escalate_at": iso(self.escalate_at),
            "target_seconds": self.target_seconds,
            "paused_seconds": self.paused_seconds,
            "blocked_seconds": self.blocked_seconds,
            "elapsed_seconds": self.elapsed_seconds,
            "remaining_seconds": self.remaining_seconds,
        }


@dataclass
class SLAObservation:
    """Last classification the evaluator reported for a ticket."""

    ticket_id: str
    department_id: str
    classification: SLAClassification
    observed_at: datetime
    breached_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None


@dataclass
class SLAEvent:
    """
    Externally visible SLA event.

    Stored in an outbox and delivered to the notification collaborator.
    """

    ticket_id: str
    department_id: str
    event_type: SLAEventType
    occurred_at: datetime
    new_classification: SLAClassification
    old_classification: Optional[SLAClassification] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))

    # Delivery bookkeeping
    delivered_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def is_delivery_pending(self) -> bool:
        return self.delivered_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "department_id": self.department_id,
            "event_type": self.event_type.value,
            "old_classification": self.old_classification.value if self.old_classification else None,
            "new_classification": self.new_classification.value,
            "at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


@dataclass(frozen=True)
class ComplianceFold:
    """Record that a terminal ticket's outcome was counted exactly once."""

    ticket_id: str
    department_id: str
    bucket_date: date
    outcome: ComplianceOutcome
    folded_at: datetime


@dataclass
class ComplianceBucket:
    """Daily SLA outcome counts for one department."""

    department_id: str
    bucket_date: date
    completed_within_sla: int = 0
    breached_sla: int = 0
    sla_exempted: int = 0

    @property
    def counted(self) -> int:
        """Tickets that count towards the compliance percentage."""
        return self.completed_within_sla + self.breached_sla

    @property
    def compliance_percent(self) -> Optional[float]:
        if self.counted == 0:
            return None
        return self.completed_within_sla / self.counted * 100

    def add(self, other: "ComplianceBucket") -> None:
        self.completed_within_sla += other.completed_within_sla
        self.breached_sla += other.breached_sla
        self.sla_exempted += other.sla_exempted


@dataclass(frozen=True)
class ExceptionReason:
    """Canonical reason for granting an SLA exception."""

    code: str
    label: str
    category: str
    description: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class BlockReason:
    """Catalog entry a ticket is blocked with."""

    code: str
    label: str
    description: Optional[str] = None
    is_active: bool = True
