"""
InMemoryTicketStore — Dict-backed ticket cache.

Features:
  - Zero dependencies (no Redis)
  - Same interface and key namespace as RedisTicketStore
  - Every operation holds one lock, so payload and set membership
    change together
  - No TTL: entries live until swept or the process exits

Used as the failover secondary and for local development / tests.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from database.store_base import BaseTicketStore, CacheKeys
from models.schemas import Ticket, TicketPriority, TicketStatus

logger = structlog.get_logger()


class InMemoryTicketStore(BaseTicketStore):

    name = "memory"

    def __init__(self, key_prefix: str = "TicketSystem:"):
        self.keys = CacheKeys(key_prefix)
        self._payloads: dict[str, str] = {}            # key → Ticket JSON
        self._sets: dict[str, set[str]] = {
            self.keys.open_set: set(),
            self.keys.closed_set: set(),
            **{k: set() for k in self.keys.all_priority_sets()},
        }
        self._lock = asyncio.Lock()
        logger.info("inmemory_ticket_store_initialized")

    # ── Writes ────────────────────────────────────────────

    async def put(self, ticket: Ticket) -> Ticket:
        async with self._lock:
            current = self._read(ticket.id)
            if current is not None and current.is_closed and not ticket.is_closed:
                logger.warning("ticket_reopen_refused", ticket_id=ticket.id, backend=self.name)
                return current
            self._write(ticket)
        logger.debug("ticket_cached", ticket_id=ticket.id, backend=self.name)
        return ticket

    def _write(self, ticket: Ticket) -> None:
        self._payloads[self.keys.ticket(ticket.id)] = ticket.to_json()
        self._sets[self.keys.open_set].discard(ticket.id)
        self._sets[self.keys.closed_set].discard(ticket.id)
        self._sets[self.keys.status_set(ticket.status)].add(ticket.id)
        for key in self.keys.all_priority_sets():
            self._sets[key].discard(ticket.id)
        self._sets[self.keys.priority_set(ticket.priority)].add(ticket.id)

    def _read(self, ticket_id: str) -> Optional[Ticket]:
        payload = self._payloads.get(self.keys.ticket(ticket_id))
        return Ticket.from_json(payload) if payload else None

    async def close(self, ticket_id: str, actor: str) -> Optional[Ticket]:
        async with self._lock:
            ticket = self._read(ticket_id)
            if ticket is None:
                logger.warning("ticket_not_cached", ticket_id=ticket_id, backend=self.name)
                return None
            closed = ticket.close(actor)
            self._write(closed)
        logger.info("ticket_closed", ticket_id=ticket_id, actor=actor, backend=self.name)
        return closed

    async def sweep(self, retention: timedelta) -> list[Ticket]:
        now = datetime.now(timezone.utc)
        removed = []
        async with self._lock:
            for ticket_id in list(self._sets[self.keys.closed_set]):
                ticket = self._read(ticket_id)
                if ticket is None:
                    self._sets[self.keys.closed_set].discard(ticket_id)
                    continue
                if ticket.status != TicketStatus.CLOSED or ticket.age(now) <= retention.total_seconds():
                    continue
                self._payloads.pop(self.keys.ticket(ticket_id), None)
                for members in self._sets.values():
                    members.discard(ticket_id)
                removed.append(ticket)
        logger.info("tickets_swept", count=len(removed), backend=self.name)
        return removed

    # ── Reads ─────────────────────────────────────────────

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        async with self._lock:
            return self._read(ticket_id)

    async def list_open(self) -> list[Ticket]:
        return await self._list(self.keys.open_set)

    async def list_by_priority(self, tier: TicketPriority) -> list[Ticket]:
        return await self._list(self.keys.priority_set(tier))

    async def _list(self, set_key: str) -> list[Ticket]:
        async with self._lock:
            tickets = [self._read(tid) for tid in self._sets[set_key]]
        return [t for t in tickets if t is not None]

    # ── Health ────────────────────────────────────────────

    async def ping(self) -> bool:
        return True

    async def stats(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "backend": self.name,
                "tickets": len(self._payloads),
                **{key.removeprefix(self.keys.prefix): len(members)
                   for key, members in self._sets.items()},
            }
