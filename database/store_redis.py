"""
RedisTicketStore — Durable primary ticket cache.

- Payloads are strings with a fixed expiry (default 7 days)
- put / sweep run as MULTI/EXEC pipelines, so payload and set
  membership are never observed half-written
- put WATCHes the payload key and never turns a closed ticket back open
- sweep also prunes index members whose payload already expired by TTL
- Every redis, socket or timeout failure surfaces as TransientIOError;
  the failover store decides what to do with it
"""
from __future__ import annotations

import asyncio
import functools
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from core.errors import TransientIOError
from database.store_base import BaseTicketStore, CacheKeys
from models.schemas import Ticket, TicketPriority, TicketStatus

logger = structlog.get_logger()


def _transient(operation: str):
    """Translate backend failures of the wrapped coroutine into TransientIOError."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            except (RedisError, ConnectionError, OSError, asyncio.TimeoutError) as e:
                raise TransientIOError(str(e) or type(e).__name__,
                                       backend=self.name, operation=operation) from e
        return wrapper
    return decorator


class RedisTicketStore(BaseTicketStore):

    name = "redis"
    WATCH_RETRIES = 5

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "TicketSystem:",
        ttl: timedelta = timedelta(days=7),
        socket_timeout: float = 5.0,
        client=None,
    ):
        self.keys = CacheKeys(key_prefix)
        self.ttl = ttl
        self._redis_url = redis_url
        self._socket_timeout = socket_timeout
        self._redis = client

    def _client(self):
        # Connection is lazy: from_url does not touch the network
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        return self._redis

    async def close_connection(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    # ── Writes ────────────────────────────────────────────

    def _queue_write(self, pipe, ticket: Ticket) -> None:
        status_key = self.keys.status_set(ticket.status)
        other_status = (self.keys.open_set if status_key == self.keys.closed_set
                        else self.keys.closed_set)

        pipe.set(self.keys.ticket(ticket.id), ticket.to_json(),
                 ex=int(self.ttl.total_seconds()))
        pipe.srem(other_status, ticket.id)
        pipe.sadd(status_key, ticket.id)
        for key in self.keys.all_priority_sets():
            if key != self.keys.priority_set(ticket.priority):
                pipe.srem(key, ticket.id)
        pipe.sadd(self.keys.priority_set(ticket.priority), ticket.id)

    @_transient("put")
    async def put(self, ticket: Ticket) -> Ticket:
        key = self.keys.ticket(ticket.id)
        pipe = self._client().pipeline(transaction=True)
        try:
            for _ in range(self.WATCH_RETRIES):
                try:
                    # A close landing between the read and EXEC aborts the write
                    await pipe.watch(key)
                    current = self._decode(ticket.id, await pipe.get(key))
                    if current is not None and current.is_closed and not ticket.is_closed:
                        logger.warning("ticket_reopen_refused", ticket_id=ticket.id, backend=self.name)
                        return current
                    pipe.multi()
                    self._queue_write(pipe, ticket)
                    await pipe.execute()
                    logger.debug("ticket_cached", ticket_id=ticket.id, backend=self.name)
                    return ticket
                except WatchError:
                    logger.info("ticket_put_retry", ticket_id=ticket.id, backend=self.name)
            raise WatchError(f"ticket {ticket.id} kept changing during put")
        finally:
            await pipe.reset()

    @_transient("close")
    async def close(self, ticket_id: str, actor: str) -> Optional[Ticket]:
        ticket = await self._get(ticket_id)
        if ticket is None:
            logger.warning("ticket_not_cached", ticket_id=ticket_id, backend=self.name)
            return None
        closed = ticket.close(actor)
        pipe = self._client().pipeline(transaction=True)
        self._queue_write(pipe, closed)
        await pipe.execute()
        logger.info("ticket_closed", ticket_id=ticket_id, actor=actor, backend=self.name)
        return closed

    @_transient("sweep")
    async def sweep(self, retention: timedelta) -> list[Ticket]:
        now = datetime.now(timezone.utc)
        client = self._client()
        index_sets = [self.keys.open_set, self.keys.closed_set, *self.keys.all_priority_sets()]
        closed_ids = set()
        indexed_ids = set()
        for set_key in index_sets:
            members = set(await client.smembers(set_key))
            indexed_ids |= members
            if set_key == self.keys.closed_set:
                closed_ids = members

        ids = sorted(indexed_ids)
        payloads = await client.mget([self.keys.ticket(tid) for tid in ids]) if ids else []
        # Set member without payload = expired by TTL
        dangling = [tid for tid, payload in zip(ids, payloads) if not payload]
        tickets = [self._decode(tid, payload)
                   for tid, payload in zip(ids, payloads) if tid in closed_ids and payload]

        expired = [t for t in tickets
                   if t is not None and t.status == TicketStatus.CLOSED
                   and t.age(now) > retention.total_seconds()]
        if not expired and not dangling:
            logger.info("tickets_swept", count=0, backend=self.name)
            return []

        # One transaction: either every expired ticket goes, or none does
        pipe = client.pipeline(transaction=True)
        for ticket in expired:
            pipe.delete(self.keys.ticket(ticket.id))
        for ticket_id in [t.id for t in expired] + dangling:
            for set_key in index_sets:
                pipe.srem(set_key, ticket_id)
        await pipe.execute()

        if dangling:
            logger.info("dangling_index_members_pruned", count=len(dangling), backend=self.name)
        logger.info("tickets_swept", count=len(expired), backend=self.name)
        return expired

    # ── Reads ─────────────────────────────────────────────

    @_transient("get")
    async def get(self, ticket_id: str) -> Optional[Ticket]:
        return await self._get(ticket_id)

    async def _get(self, ticket_id: str) -> Optional[Ticket]:
        payload = await self._client().get(self.keys.ticket(ticket_id))
        return self._decode(ticket_id, payload)

    async def _get_many(self, ticket_ids) -> list[Ticket]:
        ids = sorted(ticket_ids)
        if not ids:
            return []
        payloads = await self._client().mget([self.keys.ticket(tid) for tid in ids])
        tickets = [self._decode(tid, payload) for tid, payload in zip(ids, payloads)]
        # Set member without payload = expired by TTL
        return [t for t in tickets if t is not None]

    def _decode(self, ticket_id: str, payload: Optional[str]) -> Optional[Ticket]:
        if not payload:
            return None
        try:
            return Ticket.from_json(payload)
        except (ValidationError, ValueError) as e:
            logger.error("cached_ticket_corrupt", ticket_id=ticket_id, error=str(e))
            return None

    @_transient("list_open")
    async def list_open(self) -> list[Ticket]:
        ids = await self._client().smembers(self.keys.open_set)
        return await self._get_many(ids)

    @_transient("list_by_priority")
    async def list_by_priority(self, tier: TicketPriority) -> list[Ticket]:
        ids = await self._client().smembers(self.keys.priority_set(tier))
        return await self._get_many(ids)

    # ── Health ────────────────────────────────────────────

    @_transient("ping")
    async def ping(self) -> bool:
        return bool(await self._client().ping())

    @_transient("stats")
    async def stats(self) -> dict[str, Any]:
        client = self._client()
        counts = {
            "open-tickets": await client.scard(self.keys.open_set),
            "closed-tickets": await client.scard(self.keys.closed_set),
        }
        for tier in TicketPriority:
            counts[f"priority:{tier.value}-tickets"] = await client.scard(
                self.keys.priority_set(tier)
            )
        return {"backend": self.name, **counts}
