"""
Core data models for the ticket pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TicketPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: str) -> TicketPriority:
        """Case-insensitive lookup ("High", "HIGH", "high" → HIGH)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid priority {value!r}. Valid values are high, medium, low."
            ) from None


# Strict cascade order: the dispatcher drains tiers in this sequence.
CASCADE_ORDER: tuple[TicketPriority, ...] = (
    TicketPriority.HIGH,
    TicketPriority.MEDIUM,
    TicketPriority.LOW,
)


class TicketStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


# ──────────────────────────────────────────────────────────────
#  Ticket: a support request submitted by a user
# ──────────────────────────────────────────────────────────────

class Ticket(BaseModel):
    """
    A support ticket.

    `id` and `priority` are frozen: assigning to them raises a
    ValidationError. `status` only moves open → closed, via close().
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    title: str
    description: str = ""
    user_email: str = ""                      # submitter identity
    priority: TicketPriority = Field(default=TicketPriority.LOW, frozen=True)
    status: TicketStatus = TicketStatus.OPEN
    image_urls: list[str] = []                # attachment references
    date_uploaded: datetime = Field(default_factory=_utcnow)
    closed_by: Optional[str] = None
    closed_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.status == TicketStatus.CLOSED

    def close(self, actor: str, at: Optional[datetime] = None) -> Ticket:
        """Return a closed copy. Closing twice keeps the first closer."""
        if self.is_closed:
            return self
        return self.model_copy(update={
            "status": TicketStatus.CLOSED,
            "closed_by": actor,
            "closed_at": at or _utcnow(),
        })

    def age(self, now: Optional[datetime] = None) -> float:
        """Seconds since creation."""
        now = now or _utcnow()
        created = self.date_uploaded
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds()

    # ── Wire format ───────────────────────────────────────────

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, payload: str | bytes) -> Ticket:
        return cls.model_validate_json(payload)

    def message_attributes(self) -> dict[str, str]:
        """Attributes the broker filters and recovery matches on."""
        return {"priority": self.priority.value, "ticketId": self.id}
