"""
Outbox Relay

Transactional outbox: producers append events in their own database
transaction, a relay delivers them to a broker with at-least-once
semantics.
"""

__version__ = "0.1.0"
