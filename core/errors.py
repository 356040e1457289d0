"""
Error taxonomy for the ticket pipeline.

Nothing here is process-fatal. Callers degrade (skip, fall back, log)
instead of aborting a cycle.
"""
from __future__ import annotations


class TicketPipelineError(Exception):
    """Base class for pipeline errors."""


class TransientIOError(TicketPipelineError):
    """Queue or cache network failure / timeout. Not retried inside the core."""

    def __init__(self, message: str, backend: str = "", operation: str = ""):
        super().__init__(message)
        self.backend = backend
        self.operation = operation


class DeserializationError(TicketPipelineError):
    """A queue payload could not be decoded into a Ticket."""

    def __init__(self, message: str, message_id: str = ""):
        super().__init__(message)
        self.message_id = message_id


class ConsistencyError(TicketPipelineError):
    """An ack handle was expected but not found in the tracker."""

    def __init__(self, ticket_id: str, tier: str):
        super().__init__(f"No ack handle for ticket {ticket_id} ({tier})")
        self.ticket_id = ticket_id
        self.tier = tier
