"""
SQLAlchemy ORM models for the ticket archive — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

  - JSON type instead of PostgreSQL-specific JSONB
  - String primary keys (the ticket id): no database-specific sequences
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import String, DateTime, Text, Index, JSON
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import Ticket


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Archived Tickets
# ──────────────────────────────────────────────────────────────

class ArchivedTicketRow(Base):
    __tablename__ = "archived_tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    user_email: Mapped[str] = mapped_column(String(256), default="")
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    image_urls: Mapped[Any] = mapped_column(JSON, default=list)

    date_uploaded: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[str] = mapped_column(String(256), default="")
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_archived_tickets_priority", "priority"),
        Index("ix_archived_tickets_closed_by", "closed_by"),
    )

    @classmethod
    def from_ticket(cls, ticket: Ticket, closed_by: str) -> ArchivedTicketRow:
        return cls(
            id=ticket.id,
            title=ticket.title,
            description=ticket.description,
            user_email=ticket.user_email,
            priority=ticket.priority.value,
            status=ticket.status.value,
            image_urls=list(ticket.image_urls),
            date_uploaded=ticket.date_uploaded,
            closed_at=ticket.closed_at,
            closed_by=closed_by,
            archived_at=_utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "title": self.title, "description": self.description,
            "user_email": self.user_email, "priority": self.priority,
            "status": self.status, "image_urls": self.image_urls,
            "date_uploaded": self.date_uploaded.isoformat() if self.date_uploaded else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "closed_by": self.closed_by,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }
