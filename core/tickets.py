"""
Ticket Service — Operations driven by people rather than by the queue.

  close_ticket       technician closes a ticket → cache close + queue ack
  dashboard          open-ticket counts per priority + most recent open tickets
  list_for_user      a submitter's own open tickets
  check_cache        cache connectivity report
  notify_ticket      resend the technician notification for a cached ticket
  sweep_and_archive  drop retention-expired closed tickets, hand them to the archiver
  submit_ticket      publish a new ticket onto the topic (producer helper)
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from channels.base import Archiver, NotificationResult, Notifier
from core.dispatcher import AckMode
from core.errors import TransientIOError
from database.store_base import BaseTicketStore
from job_queue.consumer import TicketConsumer
from job_queue.message_queue import TicketPublisher
from models.schemas import Ticket, TicketPriority

logger = structlog.get_logger()


@dataclass
class CloseResult:
    ticket_id: str
    found: bool = False
    already_closed: bool = False
    acknowledged: bool = False
    ticket: Optional[Ticket] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "found": self.found,
            "already_closed": self.already_closed,
            "acknowledged": self.acknowledged,
            "ticket": self.ticket.model_dump(mode="json") if self.ticket else None,
        }


@dataclass
class SweepResult:
    retention_days: int
    swept: list[str] = field(default_factory=list)
    archived: list[str] = field(default_factory=list)
    archive_failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "retention_days": self.retention_days,
            "swept": len(self.swept),
            "archived": len(self.archived),
            "archive_failed": list(self.archive_failed),
            "ticket_ids": list(self.swept),
        }


class TicketService:

    def __init__(
        self,
        store: BaseTicketStore,
        consumer: TicketConsumer,
        notifier: Notifier,
        archiver: Optional[Archiver] = None,
        publisher: Optional[TicketPublisher] = None,
        retention_days: int = 7,
        ack_mode: AckMode = AckMode.ON_CLOSE,
        recent_limit: int = 5,
    ):
        self.store = store
        self.consumer = consumer
        self.notifier = notifier
        self.archiver = archiver
        self.publisher = publisher
        self.retention_days = retention_days
        self.ack_mode = AckMode(ack_mode)
        self.recent_limit = recent_limit

    # ── Reads ─────────────────────────────────────────────────

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        return await self.store.get(ticket_id)

    async def list_open(self) -> list[Ticket]:
        tickets = await self.store.list_open()
        return sorted(tickets, key=lambda t: t.date_uploaded, reverse=True)

    async def list_by_priority(self, priority: str | TicketPriority) -> list[Ticket]:
        """Raises ValueError for an unknown priority."""
        tier = TicketPriority.parse(priority)
        tickets = await self.store.list_by_priority(tier)
        return sorted(tickets, key=lambda t: t.date_uploaded, reverse=True)

    async def list_for_user(self, user_email: str) -> list[Ticket]:
        """Open tickets submitted by user_email (case-insensitive), newest first."""
        wanted = user_email.strip().lower()
        tickets = [t for t in await self.list_open() if t.user_email.lower() == wanted]
        logger.info("user_tickets_listed", user_email=user_email, count=len(tickets))
        return tickets

    async def dashboard(self) -> dict[str, Any]:
        tickets = await self.list_open()
        counts = {"total": len(tickets)}
        for tier in TicketPriority:
            counts[tier.value] = sum(1 for t in tickets if t.priority == tier)
        return {
            "ticket_counts": counts,
            "recent_tickets": tickets[:self.recent_limit],
        }

    async def check_cache(self) -> dict[str, Any]:
        """
        Ping the cache. A failover store that is (or just became) degraded
        reports as not connected, since reads are served in-memory.
        """
        error = ""
        try:
            reachable = await self.store.ping()
        except TransientIOError as e:
            reachable, error = False, str(e)
        connected = reachable and not getattr(self.store, "degraded", False)

        if connected:
            logger.info("cache_connection_ok", backend=self.store.name)
            message = "Cache connection successful"
        else:
            logger.warning("cache_connection_unavailable", backend=self.store.name, error=error)
            message = "Cache connection not available, using in-memory fallback instead"
        return {
            "connected": connected,
            "backend": self.store.name,
            "message": message,
            "error": error,
        }

    # ── Producer ──────────────────────────────────────────────

    async def submit_ticket(self, ticket: Ticket) -> str:
        if self.publisher is None:
            raise RuntimeError("No publisher configured")
        return await self.publisher.publish_ticket(ticket)

    # ── Close ─────────────────────────────────────────────────

    async def close_ticket(self, ticket_id: str, actor: str) -> CloseResult:
        """
        Close a cached ticket and release its queue delivery.

        Closing an already-closed ticket is a no-op: its delivery was
        released by the first close (or is acked on redelivery). In on_read
        mode the delivery was released when it was cached, so nothing is acked.
        """
        result = CloseResult(ticket_id=ticket_id)
        existing = await self.store.get(ticket_id)
        if existing is None:
            logger.warning("close_ticket_not_found", ticket_id=ticket_id, actor=actor)
            return result

        result.found = True
        if existing.is_closed:
            result.already_closed = True
            result.ticket = existing
            logger.info("close_ticket_already_closed", ticket_id=ticket_id,
                        closed_by=existing.closed_by)
            return result

        closed = await self.store.close(ticket_id, actor)
        if closed is None:
            # Expired between the read and the close
            result.found = False
            return result

        result.ticket = closed
        if self.ack_mode == AckMode.ON_CLOSE:
            result.acknowledged = await self.consumer.acknowledge(ticket_id, closed.priority)
        logger.info("ticket_close_complete",
                    ticket_id=ticket_id,
                    actor=actor,
                    tier=closed.priority.value,
                    acknowledged=result.acknowledged)
        return result

    # ── Notify ────────────────────────────────────────────────

    async def notify_ticket(self, ticket_id: str) -> Optional[NotificationResult]:
        ticket = await self.store.get(ticket_id)
        if ticket is None:
            return None
        return await self.notifier.send(ticket)

    # ── Sweep ─────────────────────────────────────────────────

    async def sweep_and_archive(self, retention_days: Optional[int] = None) -> SweepResult:
        days = self.retention_days if retention_days is None else retention_days
        result = SweepResult(retention_days=days)

        swept = await self.store.sweep(timedelta(days=days))
        result.swept = [t.id for t in swept]

        for ticket in swept:
            if self.archiver is None:
                continue
            if await self.archiver.archive(ticket, ticket.closed_by or ""):
                result.archived.append(ticket.id)
            else:
                result.archive_failed.append(ticket.id)
                # Already gone from the cache: the log line is the last copy
                logger.error("swept_ticket_not_archived",
                             ticket_id=ticket.id,
                             payload=ticket.to_json())

        logger.info("sweep_complete",
                    retention_days=days,
                    swept=len(result.swept),
                    archived=len(result.archived),
                    archive_failed=len(result.archive_failed))
        return result
