"""
FailoverTicketStore — Durable primary with an in-memory secondary.

State machine (sticky):

    HEALTHY ──first TransientIOError from primary──▶ DEGRADED
       ▲                                               │
       └──────────────── reset() (manual) ◀────────────┘

While HEALTHY every operation goes to the primary; the operation that
fails is re-run on the secondary. While DEGRADED the primary is never
touched. There is no background health check: only an operator reset
returns to the primary.

Gaps while DEGRADED:
  - the secondary does not expire entries (no TTL)
  - tickets written to the primary before the failure are not visible,
    and tickets written to the secondary are not copied back on reset
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from core.errors import TransientIOError
from database.store_base import BaseTicketStore
from models.schemas import Ticket, TicketPriority

logger = structlog.get_logger()


class CacheHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class FailoverTicketStore(BaseTicketStore):

    name = "failover"

    def __init__(
        self,
        primary: BaseTicketStore,
        secondary: BaseTicketStore,
        start_degraded: bool = False,
    ):
        self.primary = primary
        self.secondary = secondary
        self._lock = asyncio.Lock()
        self._state = CacheHealth.DEGRADED if start_degraded else CacheHealth.HEALTHY
        self._degraded_at: Optional[datetime] = None
        self._last_error: str = ""
        if start_degraded:
            self._degraded_at = datetime.now(timezone.utc)
            self._last_error = "primary not configured"
            logger.warning("cache_started_degraded", primary=primary.name)

    # ── State machine ─────────────────────────────────────

    @property
    def state(self) -> CacheHealth:
        return self._state

    @property
    def degraded(self) -> bool:
        return self.state == CacheHealth.DEGRADED

    async def _degrade(self, error: TransientIOError) -> None:
        async with self._lock:
            if self._state == CacheHealth.DEGRADED:
                return
            self._state = CacheHealth.DEGRADED
            self._degraded_at = datetime.now(timezone.utc)
            self._last_error = str(error)
        logger.error("cache_failover_degraded",
                     primary=self.primary.name,
                     secondary=self.secondary.name,
                     operation=error.operation,
                     error=str(error))

    async def reset(self) -> CacheHealth:
        """Administrative reset: route the next operation to the primary again."""
        async with self._lock:
            previous = self._state
            self._state = CacheHealth.HEALTHY
            self._degraded_at = None
            self._last_error = ""
        logger.info("cache_failover_reset", previous=previous.value)
        return previous

    async def _route(self, operation: str, *args):
        if not self.degraded:
            try:
                return await getattr(self.primary, operation)(*args)
            except TransientIOError as e:
                await self._degrade(e)
        return await getattr(self.secondary, operation)(*args)

    # ── BaseTicketStore ───────────────────────────────────

    async def put(self, ticket: Ticket) -> Ticket:
        return await self._route("put", ticket)

    async def get(self, ticket_id: str) -> Optional[Ticket]:
        return await self._route("get", ticket_id)

    async def close(self, ticket_id: str, actor: str) -> Optional[Ticket]:
        return await self._route("close", ticket_id, actor)

    async def list_open(self) -> list[Ticket]:
        return await self._route("list_open")

    async def list_by_priority(self, tier: TicketPriority) -> list[Ticket]:
        return await self._route("list_by_priority", tier)

    async def sweep(self, retention: timedelta) -> list[Ticket]:
        return await self._route("sweep", retention)

    async def ping(self) -> bool:
        return await self._route("ping")

    async def stats(self) -> dict[str, Any]:
        async with self._lock:
            state = {
                "state": self._state.value,
                "degraded_at": self._degraded_at.isoformat() if self._degraded_at else None,
                "last_error": self._last_error,
            }
        active = await self._route("stats")
        return {"backend": self.name, **state, "active": active}

    async def close_connection(self) -> None:
        await self.primary.close_connection()
        await self.secondary.close_connection()
