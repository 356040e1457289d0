"""
Priority Cascade Dispatcher — One processing cycle per external trigger.

Cascade:
  high ──empty──▶ medium ──empty──▶ low ──empty──▶ no_work
   │                │                 │
   └── batch ───────┴──── batch ──────┴──▶ process batch, stop

Per ticket (batch processed concurrently, bounded by a semaphore):
  1. already in flight in this process  → skip, leave unacknowledged
  2. cached and closed                  → acknowledge the redelivery, skip
  3. upsert into the cache              → on failure stop, broker redelivers;
                                          closed meanwhile → same as 2
  4. register the ack handle            (on_read mode: acknowledge now)
  5. first sighting only                → notify technicians

Notifier failures are recorded on the ticket's outcome and never stop the
rest of the batch. There is no scheduling loop here; cadence belongs to
whoever calls run_cycle().
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from channels.base import Notifier
from core.errors import TransientIOError
from database.store_base import BaseTicketStore
from job_queue.consumer import Delivery, TicketConsumer
from models.schemas import CASCADE_ORDER, TicketPriority

logger = structlog.get_logger()


class AckMode(str, Enum):
    ON_CLOSE = "on_close"       # deferred: acknowledge when the ticket is closed
    ON_READ = "on_read"         # early: acknowledge once cached (lossy on crash)


class CycleOutcome(str, Enum):
    PROCESSED = "processed"
    NO_WORK = "no_work"


@dataclass
class TicketOutcome:
    ticket_id: str
    tier: str = ""
    delivery_attempt: int = 1
    cached: bool = False
    first_sighting: bool = False
    notified: bool = False
    acknowledged: bool = False
    skipped: str = ""           # "in_flight" | "already_closed"
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CycleResult:
    outcome: CycleOutcome
    tier: Optional[TicketPriority] = None
    tickets: list[TicketOutcome] = field(default_factory=list)
    fetch_errors: dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: float = 0.0

    @property
    def processed(self) -> int:
        return sum(1 for t in self.tickets if t.cached)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "tier": self.tier.value if self.tier else None,
            "processed": self.processed,
            "tickets": [t.to_dict() for t in self.tickets],
            "fetch_errors": dict(self.fetch_errors),
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 1),
        }


class PriorityCascadeDispatcher:
    """
    Drains the highest-priority non-empty tier, one tier per cycle.

    Usage:
        dispatcher = PriorityCascadeDispatcher(consumer, store, notifier)
        result = await dispatcher.run_cycle()
        result.outcome   # processed | no_work
    """

    def __init__(
        self,
        consumer: TicketConsumer,
        store: BaseTicketStore,
        notifier: Notifier,
        max_batch: int = 10,
        concurrency: int = 5,
        notify_timeout: float = 15.0,
        ack_mode: AckMode = AckMode.ON_CLOSE,
    ):
        self.consumer = consumer
        self.store = store
        self.notifier = notifier
        self.max_batch = max_batch
        self.notify_timeout = notify_timeout
        self.ack_mode = AckMode(ack_mode)
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._in_flight: set[str] = set()
        self._in_flight_lock = asyncio.Lock()

        if self.ack_mode == AckMode.ON_READ:
            logger.warning("early_ack_enabled",
                           detail="tickets are acknowledged before closure; "
                                  "a crash after ack loses them")

    # ── Cycle ─────────────────────────────────────────────────

    async def run_cycle(self) -> CycleResult:
        result = CycleResult(outcome=CycleOutcome.NO_WORK)
        start = time.monotonic()

        for tier in CASCADE_ORDER:
            try:
                deliveries = await self.consumer.fetch(tier, self.max_batch)
            except TransientIOError as e:
                logger.error("tier_fetch_failed", tier=tier.value, error=str(e))
                result.fetch_errors[tier.value] = str(e)
                continue

            if not deliveries:
                logger.debug("tier_empty", tier=tier.value)
                continue

            result.outcome = CycleOutcome.PROCESSED
            result.tier = tier
            result.tickets = await self._process_batch(tier, deliveries)
            break

        result.duration_ms = (time.monotonic() - start) * 1000
        logger.info("dispatch_cycle_complete",
                    outcome=result.outcome.value,
                    tier=result.tier.value if result.tier else None,
                    tickets=len(result.tickets),
                    processed=result.processed,
                    fetch_errors=len(result.fetch_errors),
                    duration_ms=round(result.duration_ms, 1))
        return result

    async def _process_batch(self, tier: TicketPriority, deliveries: list[Delivery]) -> list[TicketOutcome]:
        results = await asyncio.gather(
            *(self._process_one(tier, d) for d in deliveries),
            return_exceptions=True,
        )
        outcomes = []
        for delivery, result in zip(deliveries, results):
            if isinstance(result, BaseException):
                logger.error("ticket_processing_crashed",
                             ticket_id=delivery.ticket.id,
                             tier=tier.value,
                             error=str(result),
                             error_type=type(result).__name__)
                result = TicketOutcome(ticket_id=delivery.ticket.id, tier=tier.value,
                                       delivery_attempt=delivery.delivery_attempt,
                                       error=str(result) or type(result).__name__)
            outcomes.append(result)
        return outcomes

    # ── Per ticket ────────────────────────────────────────────

    async def _claim(self, ticket_id: str) -> bool:
        async with self._in_flight_lock:
            if ticket_id in self._in_flight:
                return False
            self._in_flight.add(ticket_id)
            return True

    async def _release(self, ticket_id: str) -> None:
        async with self._in_flight_lock:
            self._in_flight.discard(ticket_id)

    async def _process_one(self, tier: TicketPriority, delivery: Delivery) -> TicketOutcome:
        ticket = delivery.ticket
        outcome = TicketOutcome(ticket_id=ticket.id, tier=tier.value,
                                delivery_attempt=delivery.delivery_attempt)

        if not await self._claim(ticket.id):
            logger.info("ticket_already_in_flight", ticket_id=ticket.id, tier=tier.value)
            outcome.skipped = "in_flight"
            return outcome

        try:
            with structlog.contextvars.bound_contextvars(correlation_id=ticket.id):
                async with self._semaphore:
                    await self._handle(tier, delivery, outcome)
        finally:
            await self._release(ticket.id)
        return outcome

    async def _handle(self, tier: TicketPriority, delivery: Delivery, outcome: TicketOutcome) -> None:
        ticket = delivery.ticket

        try:
            cached = await self.store.get(ticket.id)
        except TransientIOError as e:
            logger.error("ticket_lookup_failed", tier=tier.value, error=str(e))
            outcome.error = str(e)
            return

        if cached is not None and cached.is_closed:
            # Redelivery of a ticket that was closed after its ack failed or was lost
            await self._settle_closed(tier, delivery, outcome)
            return

        try:
            stored = await self.store.put(ticket)
        except TransientIOError as e:
            logger.error("ticket_cache_failed", tier=tier.value, error=str(e))
            outcome.error = str(e)
            return
        if stored.is_closed:
            # Closed between the lookup and the write; the store kept the closed copy
            await self._settle_closed(tier, delivery, outcome)
            return
        outcome.cached = True

        await self.consumer.register(ticket.id, tier, delivery.ack_handle)
        if self.ack_mode == AckMode.ON_READ:
            outcome.acknowledged = await self.consumer.acknowledge(ticket.id, tier)

        if cached is None:
            outcome.first_sighting = True
            outcome.notified, outcome.error = await self._notify(delivery)
        else:
            logger.info("ticket_redelivered_open", delivery_attempt=delivery.delivery_attempt)

        logger.info("ticket_processed",
                    tier=tier.value,
                    first_sighting=outcome.first_sighting,
                    notified=outcome.notified,
                    acknowledged=outcome.acknowledged)

    async def _settle_closed(self, tier: TicketPriority, delivery: Delivery, outcome: TicketOutcome) -> None:
        ticket_id = delivery.ticket.id
        await self.consumer.register(ticket_id, tier, delivery.ack_handle)
        outcome.acknowledged = await self.consumer.acknowledge(ticket_id, tier)
        outcome.skipped = "already_closed"
        logger.info("closed_ticket_redelivered",
                    acknowledged=outcome.acknowledged,
                    delivery_attempt=delivery.delivery_attempt)

    async def _notify(self, delivery: Delivery) -> tuple[bool, str]:
        try:
            result = await asyncio.wait_for(
                self.notifier.send(delivery.ticket), timeout=self.notify_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("notification_timed_out", timeout=self.notify_timeout)
            return False, f"notification timed out after {self.notify_timeout}s"
        except Exception as e:
            logger.error("notification_error", error=str(e), error_type=type(e).__name__)
            return False, str(e) or type(e).__name__

        if not result.success:
            logger.warning("notification_failed", error=result.error)
            return False, result.error
        return True, ""
