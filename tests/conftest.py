"""Shared test fixtures for the ticket pipeline."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from channels.base import Archiver, NotificationResult, Notifier
from database.store_memory import InMemoryTicketStore
from job_queue.consumer import TicketConsumer
from job_queue.message_queue import InMemoryBroker, TicketPublisher
from models.schemas import Ticket, TicketPriority

TOPIC = "tickets-topic"


class FakeClock:
    """Manually advanced monotonic clock for lease expiry."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingNotifier(Notifier):
    """Notifier double: records sends, fails or raises for chosen ticket ids."""

    name = "recording"

    def __init__(self, fail_ids=(), raise_ids=(), delay: float = 0.0):
        self.sent: list[str] = []
        self.fail_ids = set(fail_ids)
        self.raise_ids = set(raise_ids)
        self.delay = delay

    async def send(self, ticket: Ticket) -> NotificationResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if ticket.id in self.raise_ids:
            raise RuntimeError(f"smtp exploded for {ticket.id}")
        if ticket.id in self.fail_ids:
            return NotificationResult(success=False, channel=self.name, error="rejected")
        self.sent.append(ticket.id)
        return NotificationResult(success=True, channel=self.name)


class FakeArchiver(Archiver):
    name = "fake"

    def __init__(self, fail_ids=()):
        self.archived: dict[str, str] = {}
        self.fail_ids = set(fail_ids)
        self.initialized = False
        self.closed = False

    async def init(self) -> None:
        self.initialized = True

    async def archive(self, ticket: Ticket, closed_by: str) -> bool:
        if ticket.id in self.fail_ids:
            return False
        self.archived[ticket.id] = closed_by
        return True

    async def close(self) -> None:
        self.closed = True


def make_ticket(priority=TicketPriority.HIGH, age_days: float = 0, **kwargs) -> Ticket:
    kwargs.setdefault("title", f"{priority.value} printer jam")
    kwargs.setdefault("description", "Paper stuck in tray 2")
    kwargs.setdefault("user_email", "alice@example.com")
    return Ticket(
        priority=priority,
        date_uploaded=datetime.now(timezone.utc) - timedelta(days=age_days),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(clock):
    return InMemoryBroker(ack_deadline_seconds=60, clock=clock)


@pytest_asyncio.fixture
async def consumer(broker):
    consumer = TicketConsumer(broker, topic=TOPIC, recover_batch_size=100, io_timeout=1.0)
    await consumer.ensure_subscriptions()
    return consumer


@pytest.fixture
def publisher(broker):
    return TicketPublisher(broker, TOPIC)


@pytest.fixture
def store():
    return InMemoryTicketStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def archiver():
    return FakeArchiver()
