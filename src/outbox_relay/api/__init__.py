"""Operator HTTP API for the outbox relay."""
