"""
SLA Engine
==========

Bounded context for hotel operations service-level agreements.

Responsibilities:
- Versioned per-department SLA policies
- Ticket SLA clocks with blocked-time pauses
- Lifecycle state machine and clock-start capture
- Escalation evaluation and event delivery
- Daily compliance snapshots, trend and impact breakdown
"""

__version__ = "1.0.0"
