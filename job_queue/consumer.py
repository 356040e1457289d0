"""
Ticket Consumer — Pulls tier-filtered tickets and tracks their ack handles.

Acknowledgment is deferred: a delivery stays leased (and is redelivered
after the ack deadline) until the ticket is closed. The handle table is
process-local, so a restart loses it; recover() compensates by re-pulling
the tier and acking the matching delivery.

Topology:
  ┌────────────┐  pull(tier)  ┌───────────────┐  register   ┌────────────┐
  │ Subscription│────────────▶│ TicketConsumer │───────────▶│ AckTracker │
  │ {topic}-    │             └───────┬───────┘             └─────┬──────┘
  │ {tier}-sub  │◀──── ack ───────────┘◀──── pop on close ────────┘
  └────────────┘        (or recover: bounded re-pull + match)
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from core.errors import ConsistencyError, DeserializationError, TransientIOError
from job_queue.message_queue import MessageBroker, ReceivedMessage, Subscriptions
from models.schemas import CASCADE_ORDER, Ticket, TicketPriority

logger = structlog.get_logger()


@dataclass
class Delivery:
    """A decoded ticket plus the handle that acknowledges its delivery."""
    ticket: Ticket
    ack_handle: str
    message_id: str = ""
    delivery_attempt: int = 1


# ──────────────────────────────────────────────────────────────
#  Ack Tracker
# ──────────────────────────────────────────────────────────────

class AckTracker:
    """
    (tier, ticket_id) → ack handle.

    pop() is the only way a handle leaves the table, so two concurrent
    acknowledgers can never both obtain the same handle.
    """

    def __init__(self):
        self._handles: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def register(self, ticket_id: str, tier: TicketPriority, handle: str) -> Optional[str]:
        """Store a handle. Returns the handle it replaced, if any."""
        async with self._lock:
            previous = self._handles.get((tier.value, ticket_id))
            self._handles[(tier.value, ticket_id)] = handle
            return previous

    async def pop(self, ticket_id: str, tier: TicketPriority) -> Optional[str]:
        async with self._lock:
            return self._handles.pop((tier.value, ticket_id), None)

    async def take(self, ticket_id: str, tier: TicketPriority) -> str:
        """Like pop(), but a missing handle raises ConsistencyError."""
        handle = await self.pop(ticket_id, tier)
        if handle is None:
            raise ConsistencyError(ticket_id, tier.value)
        return handle

    def get(self, ticket_id: str, tier: TicketPriority) -> Optional[str]:
        return self._handles.get((tier.value, ticket_id))

    def __len__(self) -> int:
        return len(self._handles)


# ──────────────────────────────────────────────────────────────
#  Consumer
# ──────────────────────────────────────────────────────────────

class TicketConsumer:
    """
    Pulls tickets per priority tier and owns the ack-handle table.

    Usage:
        consumer = TicketConsumer(broker, topic="tickets-topic")
        await consumer.ensure_subscriptions()
        deliveries = await consumer.fetch(TicketPriority.HIGH, 10)
        await consumer.register(d.ticket.id, TicketPriority.HIGH, d.ack_handle)
        ...
        await consumer.acknowledge(ticket_id, TicketPriority.HIGH)   # on close
    """

    def __init__(
        self,
        broker: MessageBroker,
        topic: str = "tickets-topic",
        recover_batch_size: int = 100,
        io_timeout: float = 10.0,
    ):
        self.broker = broker
        self.topic = topic
        self.recover_batch_size = recover_batch_size
        self.io_timeout = io_timeout
        self.tracker = AckTracker()
        self._recovering: set[tuple[str, str]] = set()
        self._recovering_lock = asyncio.Lock()

    def subscription(self, tier: TicketPriority) -> str:
        return Subscriptions.name(self.topic, tier)

    async def ensure_subscriptions(self) -> list[str]:
        names = []
        for tier in CASCADE_ORDER:
            names.append(await self.broker.ensure_subscription(self.topic, tier))
        logger.info("subscriptions_ready", topic=self.topic, subscriptions=names)
        return names

    async def _call(self, operation: str, coro):
        """Bound a broker call by io_timeout; surface failures as TransientIOError."""
        try:
            return await asyncio.wait_for(coro, timeout=self.io_timeout)
        except asyncio.TimeoutError as e:
            raise TransientIOError(
                f"{operation} timed out after {self.io_timeout}s",
                backend="broker", operation=operation,
            ) from e
        except (RedisError, ConnectionError, OSError) as e:
            raise TransientIOError(str(e), backend="broker", operation=operation) from e

    # ── Fetch ─────────────────────────────────────────────────

    async def fetch(self, tier: TicketPriority, max_batch: int = 10) -> list[Delivery]:
        """
        Pull up to max_batch messages from the tier's subscription.

        Malformed payloads and priority mismatches are logged and excluded.
        They stay unacknowledged, so the broker redelivers them.
        Raises TransientIOError if the broker cannot be reached.
        """
        subscription = self.subscription(tier)
        messages = await self._call("pull", self.broker.pull(subscription, max_batch))

        deliveries = []
        for message in messages:
            try:
                ticket = self._decode(message)
            except DeserializationError as e:
                logger.warning("ticket_payload_malformed",
                               subscription=subscription,
                               message_id=e.message_id,
                               error=str(e))
                continue

            if ticket.priority != tier:
                logger.warning("ticket_priority_mismatch",
                               ticket_id=ticket.id,
                               expected=tier.value,
                               actual=ticket.priority.value,
                               message_id=message.message_id)
                continue

            deliveries.append(Delivery(
                ticket=ticket,
                ack_handle=message.ack_id,
                message_id=message.message_id,
                delivery_attempt=message.delivery_attempt,
            ))

        logger.info("tier_fetched",
                    tier=tier.value,
                    pulled=len(messages),
                    accepted=len(deliveries))
        return deliveries

    @staticmethod
    def _decode(message: ReceivedMessage) -> Ticket:
        try:
            return Ticket.from_json(message.data)
        except (ValidationError, ValueError) as e:
            raise DeserializationError(str(e), message_id=message.message_id) from e

    # ── Handles ───────────────────────────────────────────────

    async def register(self, ticket_id: str, tier: TicketPriority, handle: str) -> None:
        previous = await self.tracker.register(ticket_id, tier, handle)
        if previous and previous != handle:
            logger.info("ack_handle_replaced", ticket_id=ticket_id, tier=tier.value)
        else:
            logger.debug("ack_handle_registered", ticket_id=ticket_id, tier=tier.value)

    async def acknowledge(self, ticket_id: str, tier: TicketPriority) -> bool:
        """
        Release the delivery for ticket_id exactly once.

        Falls back to recover() when no handle is tracked (e.g. after a
        restart) or the broker no longer knows the tracked one. Never raises;
        returns whether the broker actually released a delivery.
        """
        try:
            handle = await self.tracker.take(ticket_id, tier)
        except ConsistencyError as e:
            logger.warning("ack_handle_missing", ticket_id=ticket_id, tier=tier.value, error=str(e))
            return await self.recover(ticket_id, tier)

        try:
            acked = await self._call("acknowledge",
                                     self.broker.acknowledge(self.subscription(tier), [handle]))
        except TransientIOError as e:
            logger.error("ack_failed", ticket_id=ticket_id, tier=tier.value, error=str(e))
            return False

        if not acked:
            # Lease expired and the message was redelivered under a new handle
            logger.warning("ack_handle_stale", ticket_id=ticket_id, tier=tier.value)
            return await self.recover(ticket_id, tier)

        logger.info("ticket_acknowledged", ticket_id=ticket_id, tier=tier.value)
        return True

    # ── Recovery ──────────────────────────────────────────────

    async def recover(self, ticket_id: str, tier: TicketPriority) -> bool:
        """
        Re-pull a bounded batch from the tier and ack the first delivery whose
        ticketId attribute or decoded payload matches. Other pulled messages
        are released back to the broker immediately.
        """
        key = (tier.value, ticket_id)
        async with self._recovering_lock:
            if key in self._recovering:
                logger.info("recovery_already_running", ticket_id=ticket_id, tier=tier.value)
                return False
            self._recovering.add(key)

        subscription = self.subscription(tier)
        try:
            messages = await self._call(
                "pull", self.broker.pull(subscription, self.recover_batch_size)
            )
            match = next((m for m in messages if self._matches(m, ticket_id)), None)
            others = [m.ack_id for m in messages if m is not match]

            if others:
                try:
                    await self._call("release", self.broker.release(subscription, others))
                except TransientIOError as e:
                    # Leases simply run out at the ack deadline
                    logger.warning("recovery_release_failed", count=len(others), error=str(e))

            if match is None:
                logger.warning("recovery_exhausted",
                               ticket_id=ticket_id,
                               tier=tier.value,
                               searched=len(messages))
                return False

            acked = await self._call("acknowledge", self.broker.acknowledge(subscription, [match.ack_id]))
            if not acked:
                logger.warning("recovery_ack_lost", ticket_id=ticket_id, tier=tier.value)
                return False
            logger.info("ticket_recovered_and_acknowledged",
                        ticket_id=ticket_id,
                        tier=tier.value,
                        message_id=match.message_id)
            return True

        except TransientIOError as e:
            logger.error("recovery_failed", ticket_id=ticket_id, tier=tier.value, error=str(e))
            return False
        finally:
            async with self._recovering_lock:
                self._recovering.discard(key)

    @staticmethod
    def _matches(message: ReceivedMessage, ticket_id: str) -> bool:
        if message.attributes.get("ticketId") == ticket_id:
            return True
        try:
            return Ticket.from_json(message.data).id == ticket_id
        except (ValidationError, ValueError):
            return False
