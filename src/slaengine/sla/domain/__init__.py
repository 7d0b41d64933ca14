"""
SLA Domain Layer
================

Domain layer for the SLA engine.

Contains:
- Entities: Department, SLAPolicy, Ticket, SLAClockState, SLAEvent, ComplianceBucket
- Value Objects: PolicyTerms, SLAConfig
- Domain Services: SLAClock, TicketStateMachine, ComplianceRules

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from slaengine.sla.domain.entities import (
    BlockReason,
    BlockInterval,
    ComplianceBucket,
    ComplianceFold,
    Department,
    ExceptionReason,
    SLAClockState,
    SLAEvent,
    SLAObservation,
    SLAPolicy,
    Ticket,
)
from slaengine.sla.domain.lifecycle import ALLOWED_TRANSITIONS, TicketStateMachine
from slaengine.sla.domain.value_objects import (
    BlockReasonConfig,
    ComplianceRules,
    ExceptionReasonConfig,
    PolicyTemplate,
    PolicyTerms,
    SLAClock,
    SLAConfig,
)

__all__ = [
    # Entities
    "BlockInterval",
    "BlockReason",
    "ComplianceBucket",
    "ComplianceFold",
    "Department",
    "ExceptionReason",
    "SLAClockState",
    "SLAEvent",
    "SLAObservation",
    "SLAPolicy",
    "Ticket",
    # Value Objects & Services
    "ALLOWED_TRANSITIONS",
    "BlockReasonConfig",
    "ComplianceRules",
    "ExceptionReasonConfig",
    "PolicyTemplate",
    "PolicyTerms",
    "SLAClock",
    "SLAConfig",
    "TicketStateMachine",
]
