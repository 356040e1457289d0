"""
Message Broker — Priority-partitioned pull/ack queue with Redis Streams
and in-memory backends.

Topology (one subscription per priority tier):
  {topic}-high-sub     — filter: attributes.priority == "high"
  {topic}-medium-sub   — filter: attributes.priority == "medium"
  {topic}-low-sub      — filter: attributes.priority == "low"

A publish fans out to every subscription of the topic whose filter matches.
A pull leases messages for the ack deadline; a lease that expires without an
acknowledge makes the message deliverable again (at-least-once).

Message Schema:
  {
      "message_id":   broker-assigned id (same across redeliveries),
      "data":         Ticket JSON,
      "attributes":   {"priority": "high|medium|low", "ticketId": "..."},
      "publish_time": ISO timestamp,
  }
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from models.schemas import Ticket

logger = structlog.get_logger()


def _tier_value(tier: Any) -> str:
    return getattr(tier, "value", tier)


# ──────────────────────────────────────────────────────────────
#  Message Model
# ──────────────────────────────────────────────────────────────

@dataclass
class ReceivedMessage:
    """One delivery of a message. `ack_id` is only valid for this lease."""
    ack_id: str
    message_id: str
    data: str
    attributes: dict[str, str] = field(default_factory=dict)
    delivery_attempt: int = 1
    publish_time: str = ""


# ──────────────────────────────────────────────────────────────
#  Subscription Names
# ──────────────────────────────────────────────────────────────

class Subscriptions:
    @staticmethod
    def name(topic: str, tier: Any) -> str:
        return f"{topic}-{_tier_value(tier)}-sub"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageBroker(ABC):
    """Abstract pull/ack broker interface."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the broker backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def ensure_subscription(self, topic: str, tier: Any) -> str:
        """Create the tier's filtered subscription if missing. Returns its name."""
        ...

    @abstractmethod
    async def publish(self, topic: str, data: str, attributes: dict[str, str]) -> str:
        """Publish to every matching subscription. Returns the message id."""
        ...

    @abstractmethod
    async def pull(self, subscription: str, max_messages: int = 10) -> list[ReceivedMessage]:
        """Lease up to max_messages deliverable messages."""
        ...

    @abstractmethod
    async def acknowledge(self, subscription: str, ack_ids: list[str]) -> int:
        """Remove leased messages. Unknown or stale ack ids are skipped.

        Returns how many messages were actually acknowledged.
        """
        ...

    @abstractmethod
    async def release(self, subscription: str, ack_ids: list[str]) -> None:
        """Give up leases so the messages are redelivered right away."""
        ...

    @abstractmethod
    async def pending_count(self, subscription: str) -> int:
        """Messages not yet acknowledged (leased or not)."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisStreamsBroker(MessageBroker):
    """
    Production broker backed by Redis Streams.

    - Each subscription is a stream with one consumer group
    - Subscription filters live in a hash per topic
    - XAUTOCLAIM with min-idle = ack deadline redelivers expired leases
    - Acknowledge = XACK + XDEL, so XLEN is the outstanding backlog
    """

    GROUP = "ticket-processors"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        ack_deadline_seconds: int = 60,
        consumer_name: str = "",
        socket_timeout: float = 10.0,
    ):
        self._redis_url = redis_url
        self._redis = None
        self._ack_deadline_ms = int(ack_deadline_seconds * 1000)
        self._consumer = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self._socket_timeout = socket_timeout

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )
        await self._redis.ping()
        logger.info("redis_broker_connected", url=self._redis_url, consumer=self._consumer)

    async def close(self):
        if self._redis:
            await self._redis.aclose()

    @staticmethod
    def _registry_key(topic: str) -> str:
        return f"broker:{topic}:subscriptions"

    async def ensure_subscription(self, topic: str, tier: Any) -> str:
        from redis.exceptions import ResponseError

        name = Subscriptions.name(topic, tier)
        await self._redis.hset(self._registry_key(topic), name, _tier_value(tier))
        try:
            await self._redis.xgroup_create(name, self.GROUP, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        return name

    async def publish(self, topic: str, data: str, attributes: dict[str, str]) -> str:
        message_id = uuid.uuid4().hex
        fields = {
            "message_id": message_id,
            "data": data,
            "attributes": json.dumps(attributes),
            "publish_time": datetime.now(timezone.utc).isoformat(),
        }
        filters = await self._redis.hgetall(self._registry_key(topic))
        targets = [sub for sub, tier in filters.items()
                   if attributes.get("priority") == tier]

        if targets:
            pipe = self._redis.pipeline()
            for sub in targets:
                pipe.xadd(sub, fields)
            await pipe.execute()

        logger.info("message_published",
                    topic=topic,
                    message_id=message_id,
                    subscriptions=targets,
                    priority=attributes.get("priority"))
        return message_id

    async def pull(self, subscription: str, max_messages: int = 10) -> list[ReceivedMessage]:
        entries: list[tuple[str, Optional[dict[str, str]], int]] = []

        # Leases that outlived the ack deadline come back first
        claimed = await self._redis.xautoclaim(
            subscription, self.GROUP, self._consumer,
            min_idle_time=self._ack_deadline_ms,
            start_id="0-0",
            count=max_messages,
        )
        reclaimed = claimed[1] if claimed else []
        attempts = await self._delivery_counts(subscription, [entry_id for entry_id, _ in reclaimed])
        for entry_id, fields in reclaimed:
            entries.append((entry_id, fields, attempts.get(entry_id, 2)))

        remaining = max_messages - len(entries)
        if remaining > 0:
            fresh = await self._redis.xreadgroup(
                groupname=self.GROUP,
                consumername=self._consumer,
                streams={subscription: ">"},
                count=remaining,
            )
            for _, stream_messages in fresh or []:
                for entry_id, fields in stream_messages:
                    entries.append((entry_id, fields, 1))

        messages = []
        for entry_id, fields, attempt in entries:
            if not fields:
                continue  # trimmed while pending
            try:
                attributes = json.loads(fields.get("attributes") or "{}")
            except ValueError:
                attributes = {}
            messages.append(ReceivedMessage(
                ack_id=entry_id,
                message_id=fields.get("message_id", entry_id),
                data=fields.get("data", ""),
                attributes=attributes,
                delivery_attempt=attempt,
                publish_time=fields.get("publish_time", ""),
            ))
        return messages

    async def _delivery_counts(self, subscription: str, entry_ids: list[str]) -> dict[str, int]:
        """XPENDING delivery counter per entry (XAUTOCLAIM has already bumped it)."""
        if not entry_ids:
            return {}
        pipe = self._redis.pipeline()
        for entry_id in entry_ids:
            pipe.xpending_range(subscription, self.GROUP, min=entry_id, max=entry_id, count=1)
        counts = {}
        for pending in await pipe.execute():
            for info in pending or []:
                counts[info["message_id"]] = int(info["times_delivered"])
        return counts

    async def acknowledge(self, subscription: str, ack_ids: list[str]) -> int:
        if not ack_ids:
            return 0
        pipe = self._redis.pipeline()
        pipe.xack(subscription, self.GROUP, *ack_ids)
        pipe.xdel(subscription, *ack_ids)
        acked, _ = await pipe.execute()
        logger.debug("messages_acked", subscription=subscription, count=acked)
        return acked

    async def release(self, subscription: str, ack_ids: list[str]) -> None:
        if not ack_ids:
            return
        # Mark the entries as idle past the deadline so the next XAUTOCLAIM takes them
        await self._redis.xclaim(
            subscription, self.GROUP, self._consumer,
            min_idle_time=0,
            message_ids=ack_ids,
            idle=self._ack_deadline_ms,
            justid=True,
        )

    async def pending_count(self, subscription: str) -> int:
        return await self._redis.xlen(subscription)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _Envelope:
    message_id: str
    data: str
    attributes: dict[str, str]
    publish_time: str
    ack_id: Optional[str] = None
    lease_expires: float = 0.0
    delivery_attempt: int = 0


class InMemoryBroker(MessageBroker):
    """
    Development/test broker. Single-process, no persistence.
    Implements the same lease/redelivery semantics as the Redis backend.
    """

    def __init__(self, ack_deadline_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self._ack_deadline = ack_deadline_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._filters: dict[str, dict[str, str]] = {}                   # topic → {sub: tier}
        self._messages: dict[str, OrderedDict[str, _Envelope]] = {}     # sub → message_id → envelope
        self._leases: dict[str, dict[str, str]] = {}                    # sub → ack_id → message_id

    async def connect(self):
        logger.info("inmemory_broker_connected")

    async def close(self):
        pass

    async def ensure_subscription(self, topic: str, tier: Any) -> str:
        name = Subscriptions.name(topic, tier)
        async with self._lock:
            self._filters.setdefault(topic, {})[name] = _tier_value(tier)
            self._messages.setdefault(name, OrderedDict())
            self._leases.setdefault(name, {})
        return name

    async def publish(self, topic: str, data: str, attributes: dict[str, str]) -> str:
        message_id = uuid.uuid4().hex
        publish_time = datetime.now(timezone.utc).isoformat()
        targets = []
        async with self._lock:
            for sub, tier in self._filters.get(topic, {}).items():
                if attributes.get("priority") != tier:
                    continue
                self._messages[sub][message_id] = _Envelope(
                    message_id=message_id,
                    data=data,
                    attributes=dict(attributes),
                    publish_time=publish_time,
                )
                targets.append(sub)
        logger.info("message_published",
                    topic=topic,
                    message_id=message_id,
                    subscriptions=targets,
                    priority=attributes.get("priority"))
        return message_id

    async def pull(self, subscription: str, max_messages: int = 10) -> list[ReceivedMessage]:
        delivered = []
        async with self._lock:
            envelopes = self._messages.get(subscription)
            if envelopes is None:
                return []
            leases = self._leases[subscription]
            now = self._clock()
            for env in envelopes.values():
                if len(delivered) >= max_messages:
                    break
                if env.ack_id and env.lease_expires > now:
                    continue  # leased to someone else
                if env.ack_id:
                    leases.pop(env.ack_id, None)  # expired lease, old ack id goes stale
                env.ack_id = uuid.uuid4().hex
                env.lease_expires = now + self._ack_deadline
                env.delivery_attempt += 1
                leases[env.ack_id] = env.message_id
                delivered.append(ReceivedMessage(
                    ack_id=env.ack_id,
                    message_id=env.message_id,
                    data=env.data,
                    attributes=dict(env.attributes),
                    delivery_attempt=env.delivery_attempt,
                    publish_time=env.publish_time,
                ))
        return delivered

    async def acknowledge(self, subscription: str, ack_ids: list[str]) -> int:
        acked = 0
        async with self._lock:
            leases = self._leases.get(subscription, {})
            envelopes = self._messages.get(subscription, {})
            for ack_id in ack_ids:
                message_id = leases.pop(ack_id, None)
                if message_id is not None and envelopes.pop(message_id, None) is not None:
                    acked += 1
        return acked

    async def release(self, subscription: str, ack_ids: list[str]) -> None:
        async with self._lock:
            leases = self._leases.get(subscription, {})
            envelopes = self._messages.get(subscription, {})
            for ack_id in ack_ids:
                message_id = leases.pop(ack_id, None)
                env = envelopes.get(message_id) if message_id else None
                if env:
                    env.ack_id = None
                    env.lease_expires = 0.0

    async def pending_count(self, subscription: str) -> int:
        async with self._lock:
            return len(self._messages.get(subscription, {}))


# ──────────────────────────────────────────────────────────────
#  Producer Helper
# ──────────────────────────────────────────────────────────────

class TicketPublisher:
    """Publishes tickets with the attributes the tier subscriptions filter on."""

    def __init__(self, broker: MessageBroker, topic: str):
        self.broker = broker
        self.topic = topic

    async def publish_ticket(self, ticket: Ticket) -> str:
        message_id = await self.broker.publish(
            self.topic, ticket.to_json(), ticket.message_attributes()
        )
        logger.info("ticket_published",
                    ticket_id=ticket.id,
                    priority=ticket.priority.value,
                    message_id=message_id)
        return message_id


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_broker(queue_config: dict[str, Any] = None) -> MessageBroker:
    """Factory: create the appropriate broker backend."""
    config = queue_config or {}
    backend = config.get("backend", "memory")
    deadline = config.get("ack_deadline_seconds", 60)

    if backend == "redis":
        return RedisStreamsBroker(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            ack_deadline_seconds=deadline,
            socket_timeout=config.get("io_timeout_seconds", 10.0),
        )
    return InMemoryBroker(ack_deadline_seconds=deadline)
