"""
Outbox Relay Core Package

Database access, the outbox store and dispatch loop, broker adapters and
observability.
"""

from . import database
from . import outbox

__all__ = ["database", "outbox"]
