"""
Shared Kernel Module
====================

Generic infrastructure used by the SLA bounded context: logging, keyed
locks, time helpers and HTTP middleware.

DO NOT add SLA business logic to the shared kernel.
"""

__version__ = "1.0.0"
