"""
SLA Application Layer
======================

Application layer for the SLA engine.

Contains:
- Interfaces: Repository, unit-of-work and collaborator abstractions
- Services: Policy store, lifecycle, evaluation, compliance and queries
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from slaengine.sla.application.compliance import (
    ComplianceAggregator,
    DepartmentImpact,
    ImpactBreakdown,
)
from slaengine.sla.application.evaluation import (
    DispatchReport,
    EscalationEvaluator,
    SLAEventDispatcher,
    SweepReport,
    plan_emission,
)
from slaengine.sla.application.interfaces import (
    IComplianceRepository,
    IDepartmentRepository,
    IEventRepository,
    INotificationChannel,
    IObservationRepository,
    IPolicyRepository,
    ISLAConfigProvider,
    ITicketRepository,
    IUnitOfWork,
)
from slaengine.sla.application.queries import SLAQueryService
from slaengine.sla.application.services import LifecycleService, PolicyService

__all__ = [
    # Services
    "ComplianceAggregator",
    "EscalationEvaluator",
    "LifecycleService",
    "PolicyService",
    "SLAEventDispatcher",
    "SLAQueryService",
    # Results
    "DepartmentImpact",
    "DispatchReport",
    "ImpactBreakdown",
    "SweepReport",
    "plan_emission",
    # Interfaces
    "IComplianceRepository",
    "IDepartmentRepository",
    "IEventRepository",
    "INotificationChannel",
    "IObservationRepository",
    "IPolicyRepository",
    "ISLAConfigProvider",
    "ITicketRepository",
    "IUnitOfWork",
]
