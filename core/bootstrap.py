"""
Composition root — builds every pipeline component exactly once.

    settings ─▶ broker ─▶ consumer ─┐
             ─▶ store (failover) ───┼─▶ dispatcher
             ─▶ notifier ───────────┤
             ─▶ archiver ───────────┴─▶ ticket service

Components are passed by handle; nothing here is a module-level singleton.
The HTTP app and the CLI each build their own Pipeline.
"""
from __future__ import annotations

import structlog
from dataclasses import asdict, dataclass
from typing import Optional

from channels.archiver import SqlArchiver
from channels.base import Archiver, Notifier
from channels.email_notifier import create_notifier
from config.settings import Settings, get_settings
from core.dispatcher import AckMode, PriorityCascadeDispatcher
from core.tickets import TicketService
from database.session import ArchiveDatabase
from database.store_base import BaseTicketStore
from database.store_factory import create_store
from job_queue.consumer import TicketConsumer
from job_queue.message_queue import MessageBroker, TicketPublisher, create_broker

logger = structlog.get_logger()


@dataclass
class Pipeline:
    settings: Settings
    broker: MessageBroker
    consumer: TicketConsumer
    store: BaseTicketStore
    notifier: Notifier
    archiver: Archiver
    publisher: TicketPublisher
    dispatcher: PriorityCascadeDispatcher
    service: TicketService

    async def start(self, init_archive: bool = True) -> None:
        await self.broker.connect()
        await self.consumer.ensure_subscriptions()
        if init_archive:
            await self.archiver.init()
        logger.info("pipeline_started",
                    queue=self.settings.queue.backend,
                    cache=self.settings.cache.backend,
                    notifier=self.notifier.name,
                    ack_mode=self.dispatcher.ack_mode.value)

    async def shutdown(self) -> None:
        await self.broker.close()
        await self.store.close_connection()
        await self.notifier.close()
        await self.archiver.close()
        logger.info("pipeline_stopped")


def build_pipeline(
    settings: Optional[Settings] = None,
    *,
    broker: Optional[MessageBroker] = None,
    store: Optional[BaseTicketStore] = None,
    notifier: Optional[Notifier] = None,
    archiver: Optional[Archiver] = None,
) -> Pipeline:
    """Wire the pipeline from settings. Any component can be injected (tests)."""
    settings = settings or get_settings()
    q = settings.queue

    broker = broker or create_broker(asdict(q))
    consumer = TicketConsumer(
        broker,
        topic=q.topic,
        recover_batch_size=q.recover_batch_size,
        io_timeout=q.io_timeout_seconds,
    )
    store = store or create_store(asdict(settings.cache))
    notifier = notifier or create_notifier(settings.notifier)
    archiver = archiver or SqlArchiver(ArchiveDatabase(settings.archive.url))
    publisher = TicketPublisher(broker, q.topic)

    dispatcher = PriorityCascadeDispatcher(
        consumer,
        store,
        notifier,
        max_batch=q.max_batch,
        concurrency=settings.dispatch.concurrency,
        notify_timeout=settings.dispatch.notify_timeout_seconds,
        ack_mode=AckMode(q.ack_mode),
    )
    service = TicketService(
        store,
        consumer,
        notifier,
        archiver=archiver,
        publisher=publisher,
        retention_days=settings.archive.retention_days,
        ack_mode=AckMode(q.ack_mode),
    )
    return Pipeline(
        settings=settings, broker=broker, consumer=consumer, store=store,
        notifier=notifier, archiver=archiver, publisher=publisher,
        dispatcher=dispatcher, service=service,
    )
