"""
SqlArchiver — Writes swept tickets to the archived_tickets table.

Re-archiving the same ticket id overwrites the row (merge by primary key),
so a sweep that is retried after a partial failure is harmless.
"""
from __future__ import annotations

import structlog

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from channels.base import Archiver
from database.models import ArchivedTicketRow
from database.session import ArchiveDatabase
from models.schemas import Ticket

logger = structlog.get_logger()


class SqlArchiver(Archiver):

    name = "sql"

    def __init__(self, db: ArchiveDatabase):
        self.db = db

    async def init(self) -> None:
        await self.db.init()

    async def archive(self, ticket: Ticket, closed_by: str) -> bool:
        try:
            async with self.db.session() as session:
                await session.merge(ArchivedTicketRow.from_ticket(ticket, closed_by))
        except SQLAlchemyError as e:
            logger.error("ticket_archive_failed", ticket_id=ticket.id, error=str(e))
            return False
        logger.info("ticket_archived", ticket_id=ticket.id, closed_by=closed_by)
        return True

    async def get(self, ticket_id: str) -> ArchivedTicketRow | None:
        async with self.db.session() as session:
            return await session.get(ArchivedTicketRow, ticket_id)

    async def count(self) -> int:
        async with self.db.session() as session:
            result = await session.execute(select(func.count()).select_from(ArchivedTicketRow))
            return int(result.scalar_one())

    async def close(self) -> None:
        await self.db.close()
