"""
Downstream collaborators — what happens to a ticket after the pipeline.

Provides:
- NotificationResult: outcome of one technician notification
- Notifier: abstract base for "tell the technicians about this ticket"
- Archiver: abstract base for "persist a swept ticket somewhere durable"

Neither collaborator is allowed to break a dispatch cycle: notifiers
report failure through NotificationResult instead of raising.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html import escape
from typing import Any

from models.schemas import Ticket


@dataclass
class NotificationResult:
    success: bool
    channel: str = ""
    recipients: list[str] = field(default_factory=list)
    provider_message_id: str = ""
    status_code: int = 0
    error: str = ""
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "channel": self.channel,
            "recipients": self.recipients,
            "provider_message_id": self.provider_message_id,
            "status_code": self.status_code,
            "error": self.error,
            "sent_at": self.sent_at.isoformat(),
        }


class Notifier(abc.ABC):
    """Base class for technician notification channels."""

    name: str = "notifier"

    @abc.abstractmethod
    async def send(self, ticket: Ticket) -> NotificationResult:
        ...

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None


class Archiver(abc.ABC):
    """Base class for long-term storage of swept tickets."""

    name: str = "archiver"

    @abc.abstractmethod
    async def archive(self, ticket: Ticket, closed_by: str) -> bool:
        """Persist the ticket. Returns False (never raises) on failure."""
        ...

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None


# ──────────────────────────────────────────────────────────────
#  Email content
# ──────────────────────────────────────────────────────────────

def render_subject(ticket: Ticket) -> str:
    return f"New {ticket.priority.value.capitalize()} Priority Ticket: {ticket.title}"


def render_html(ticket: Ticket) -> str:
    return (
        f"<h2>New Ticket: {escape(ticket.title)}</h2>\n"
        f"<p><strong>Priority:</strong> {escape(ticket.priority.value.capitalize())}</p>\n"
        f"<p><strong>Reported by:</strong> {escape(ticket.user_email)}</p>\n"
        f"<p><strong>Description:</strong></p>\n"
        f"<p>{escape(ticket.description)}</p>\n"
        f"<p>Please log in to the system to handle this ticket.</p>\n"
    )
