"""
Abstract Ticket Store — Interface for all cache backends.

Implementations:
  - RedisTicketStore    (durable primary, TTL on payloads)
  - InMemoryTicketStore (process-local secondary, no TTL)
  - FailoverTicketStore (primary → secondary with a sticky degraded flag)

Every backend keeps three structures per ticket consistent:
  {prefix}ticket:{id}                  payload (Ticket JSON)
  {prefix}open-tickets / closed-tickets status set (exactly one)
  {prefix}priority:{tier}-tickets      priority set (exactly one)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Optional

from models.schemas import Ticket, TicketPriority, TicketStatus


class CacheKeys:
    """Key namespace shared by every backend."""

    def __init__(self, prefix: str = "TicketSystem:"):
        self.prefix = prefix

    def ticket(self, ticket_id: str) -> str:
        return f"{self.prefix}ticket:{ticket_id}"

    @property
    def open_set(self) -> str:
        return f"{self.prefix}open-tickets"

    @property
    def closed_set(self) -> str:
        return f"{self.prefix}closed-tickets"

    def status_set(self, status: TicketStatus) -> str:
        return self.closed_set if status == TicketStatus.CLOSED else self.open_set

    def priority_set(self, tier: TicketPriority) -> str:
        return f"{self.prefix}priority:{tier.value}-tickets"

    def all_priority_sets(self) -> list[str]:
        return [self.priority_set(tier) for tier in TicketPriority]


class BaseTicketStore(ABC):
    """Interface that all ticket cache backends must implement."""

    name: str = "base"

    @abstractmethod
    async def put(self, ticket: Ticket) -> Ticket:
        """
        Idempotent upsert of payload + status set + priority set.

        An open ticket never replaces a cached closed one: the write is
        refused and the closed copy is returned. Otherwise returns ticket.
        """
        ...

    @abstractmethod
    async def get(self, ticket_id: str) -> Optional[Ticket]:
        ...

    @abstractmethod
    async def close(self, ticket_id: str, actor: str) -> Optional[Ticket]:
        """Mark a ticket closed. Returns the closed ticket, None if not cached."""
        ...

    @abstractmethod
    async def list_open(self) -> list[Ticket]:
        ...

    @abstractmethod
    async def list_by_priority(self, tier: TicketPriority) -> list[Ticket]:
        ...

    @abstractmethod
    async def sweep(self, retention: timedelta) -> list[Ticket]:
        """Remove closed tickets older than retention and return them."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def stats(self) -> dict[str, Any]:
        return {"backend": self.name}

    async def close_connection(self) -> None:
        """Release backend connections. Default: nothing to release."""
        return None
