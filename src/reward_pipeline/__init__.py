"""Durable job queue and staged worker for event-driven reward issuance."""

__version__ = "0.1.0"
