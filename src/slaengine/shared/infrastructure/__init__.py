"""
Infrastructure Layer
=====================

Low-level technical concerns:
- Structured logging
- Per-key asyncio locks
"""
