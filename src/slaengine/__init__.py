"""
Hotel Operations SLA Engine
===========================

Tracks operational tickets against versioned per-department SLA policies,
emits classification and escalation events, and reports daily compliance.
"""

__version__ = "1.0.0"
