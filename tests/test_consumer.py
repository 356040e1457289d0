"""
Tests for the queue consumer and ack tracker.

Covers:
  - fetch: decoding, malformed payloads, priority mismatches, broker failures
  - register / acknowledge: exactly-once release, stale handles
  - recover: restart without handles, release of unrelated leases, dedupe
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import TOPIC, make_ticket
from core.errors import ConsistencyError, TransientIOError
from job_queue.consumer import AckTracker, TicketConsumer
from models.schemas import TicketPriority

HIGH = TicketPriority.HIGH
HIGH_SUB = f"{TOPIC}-high-sub"


class TestAckTracker:
    @pytest.mark.asyncio
    async def test_register_and_pop(self):
        tracker = AckTracker()
        assert await tracker.register("t1", HIGH, "ack-1") is None
        assert len(tracker) == 1
        assert await tracker.pop("t1", HIGH) == "ack-1"
        assert await tracker.pop("t1", HIGH) is None
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_register_overwrites(self):
        tracker = AckTracker()
        await tracker.register("t1", HIGH, "ack-1")
        assert await tracker.register("t1", HIGH, "ack-2") == "ack-1"
        assert tracker.get("t1", HIGH) == "ack-2"
        assert len(tracker) == 1

    @pytest.mark.asyncio
    async def test_keys_include_tier(self):
        tracker = AckTracker()
        await tracker.register("t1", HIGH, "ack-high")
        assert tracker.get("t1", TicketPriority.LOW) is None

    @pytest.mark.asyncio
    async def test_take_missing_raises(self):
        with pytest.raises(ConsistencyError) as exc:
            await AckTracker().take("t1", HIGH)
        assert exc.value.ticket_id == "t1"
        assert exc.value.tier == "high"


class TestFetch:
    @pytest.mark.asyncio
    async def test_fetch_decodes_tickets(self, consumer, publisher):
        tickets = [make_ticket(HIGH) for _ in range(3)]
        for t in tickets:
            await publisher.publish_ticket(t)

        deliveries = await consumer.fetch(HIGH, 10)

        assert [d.ticket.id for d in deliveries] == [t.id for t in tickets]
        assert all(d.ack_handle for d in deliveries)
        assert all(d.delivery_attempt == 1 for d in deliveries)

    @pytest.mark.asyncio
    async def test_fetch_only_sees_its_tier(self, consumer, publisher):
        await publisher.publish_ticket(make_ticket(TicketPriority.LOW))
        assert await consumer.fetch(HIGH, 10) == []
        assert len(await consumer.fetch(TicketPriority.LOW, 10)) == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_skipped_and_left_unacked(self, consumer, broker, clock):
        await broker.publish(TOPIC, "{definitely not a ticket", {"priority": "high"})

        assert await consumer.fetch(HIGH, 10) == []
        assert await broker.pending_count(HIGH_SUB) == 1
        clock.advance(61)
        [redelivered] = await broker.pull(HIGH_SUB)
        assert redelivered.delivery_attempt == 2

    @pytest.mark.asyncio
    async def test_priority_mismatch_excluded(self, consumer, broker):
        low = make_ticket(TicketPriority.LOW)
        await broker.publish(TOPIC, low.to_json(), {"priority": "high", "ticketId": low.id})

        assert await consumer.fetch(HIGH, 10) == []
        assert await broker.pending_count(HIGH_SUB) == 1

    @pytest.mark.asyncio
    async def test_broker_failure_raises_transient(self, consumer, broker):
        broker.pull = AsyncMock(side_effect=ConnectionError("broker unreachable"))
        with pytest.raises(TransientIOError) as exc:
            await consumer.fetch(HIGH, 10)
        assert exc.value.operation == "pull"

    @pytest.mark.asyncio
    async def test_broker_timeout_raises_transient(self, broker):
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        consumer = TicketConsumer(broker, topic=TOPIC, io_timeout=0.01)
        broker.pull = hang
        with pytest.raises(TransientIOError, match="timed out"):
            await consumer.fetch(HIGH, 10)


class TestAcknowledge:
    @pytest.mark.asyncio
    async def test_register_then_acknowledge_acks_once_with_handle(self, consumer, broker, publisher):
        ticket = make_ticket(HIGH)
        await publisher.publish_ticket(ticket)
        [delivery] = await consumer.fetch(HIGH, 10)
        await consumer.register(ticket.id, HIGH, delivery.ack_handle)

        broker.acknowledge = AsyncMock(wraps=broker.acknowledge)
        assert await consumer.acknowledge(ticket.id, HIGH) is True

        broker.acknowledge.assert_awaited_once_with(HIGH_SUB, [delivery.ack_handle])
        assert await broker.pending_count(HIGH_SUB) == 0
        assert len(consumer.tracker) == 0

    @pytest.mark.asyncio
    async def test_second_acknowledge_does_not_reuse_handle(self, consumer, broker, publisher):
        ticket = make_ticket(HIGH)
        await publisher.publish_ticket(ticket)
        [delivery] = await consumer.fetch(HIGH, 10)
        await consumer.register(ticket.id, HIGH, delivery.ack_handle)

        broker.acknowledge = AsyncMock(wraps=broker.acknowledge)
        assert await consumer.acknowledge(ticket.id, HIGH) is True
        assert await consumer.acknowledge(ticket.id, HIGH) is False
        assert broker.acknowledge.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_acknowledge_releases_once(self, consumer, broker, publisher):
        ticket = make_ticket(HIGH)
        await publisher.publish_ticket(ticket)
        [delivery] = await consumer.fetch(HIGH, 10)
        await consumer.register(ticket.id, HIGH, delivery.ack_handle)

        broker.acknowledge = AsyncMock(wraps=broker.acknowledge)
        results = await asyncio.gather(*(consumer.acknowledge(ticket.id, HIGH) for _ in range(5)))

        assert results.count(True) == 1
        assert broker.acknowledge.await_count == 1

    @pytest.mark.asyncio
    async def test_ack_failure_returns_false_and_drops_handle(self, consumer, broker, publisher):
        ticket = make_ticket(HIGH)
        await publisher.publish_ticket(ticket)
        [delivery] = await consumer.fetch(HIGH, 10)
        await consumer.register(ticket.id, HIGH, delivery.ack_handle)

        broker.acknowledge = AsyncMock(side_effect=ConnectionError("reset by peer"))
        assert await consumer.acknowledge(ticket.id, HIGH) is False
        assert consumer.tracker.get(ticket.id, HIGH) is None

    @pytest.mark.asyncio
    async def test_acknowledge_without_handle_never_raises(self, consumer):
        assert await consumer.acknowledge("unknown-ticket", HIGH) is False

    @pytest.mark.asyncio
    async def test_stale_handle_falls_back_to_recover(self, consumer, broker, publisher, clock):
        ticket = make_ticket(HIGH)
        await publisher.publish_ticket(ticket)
        [delivery] = await consumer.fetch(HIGH, 10)
        await consumer.register(ticket.id, HIGH, delivery.ack_handle)

        # Lease runs out and the message goes out again under a new handle
        clock.advance(61)
        [redelivered] = await TicketConsumer(broker, topic=TOPIC).fetch(HIGH, 10)
        assert redelivered.ack_handle != delivery.ack_handle
        clock.advance(61)

        assert await consumer.acknowledge(ticket.id, HIGH) is True
        assert await broker.pending_count(HIGH_SUB) == 0

    @pytest.mark.asyncio
    async def test_stale_handle_reports_false_while_redelivery_is_leased(self, consumer, broker, publisher, clock):
        ticket = make_ticket(HIGH)
        await publisher.publish_ticket(ticket)
        [delivery] = await consumer.fetch(HIGH, 10)
        await consumer.register(ticket.id, HIGH, delivery.ack_handle)

        clock.advance(61)
        await TicketConsumer(broker, topic=TOPIC).fetch(HIGH, 10)

        assert await consumer.acknowledge(ticket.id, HIGH) is False
        assert await broker.pending_count(HIGH_SUB) == 1


class TestRecover:
    @pytest.mark.asyncio
    async def test_recover_after_restart(self, consumer, broker, publisher, clock):
        ticket = make_ticket(HIGH)
        await publisher.publish_ticket(ticket)
        first = TicketConsumer(broker, topic=TOPIC)
        await first.fetch(HIGH, 10)

        # New process: empty tracker, lease still held by the old one until it expires
        restarted = TicketConsumer(broker, topic=TOPIC)
        clock.advance(61)
        assert await restarted.acknowledge(ticket.id, HIGH) is True
        assert await broker.pending_count(HIGH_SUB) == 0

    @pytest.mark.asyncio
    async def test_recover_releases_unrelated_messages(self, consumer, broker, publisher):
        wanted, other = make_ticket(HIGH), make_ticket(HIGH)
        await publisher.publish_ticket(other)
        await publisher.publish_ticket(wanted)

        assert await consumer.recover(wanted.id, HIGH) is True

        # No clock advance needed: the unrelated lease was released
        [remaining] = await consumer.fetch(HIGH, 10)
        assert remaining.ticket.id == other.id

    @pytest.mark.asyncio
    async def test_recover_matches_on_payload_without_attribute(self, consumer, broker):
        ticket = make_ticket(HIGH)
        await broker.publish(TOPIC, ticket.to_json(), {"priority": "high"})
        assert await consumer.recover(ticket.id, HIGH) is True
        assert await broker.pending_count(HIGH_SUB) == 0

    @pytest.mark.asyncio
    async def test_recover_exhausted(self, consumer, broker, publisher):
        other = make_ticket(HIGH)
        await publisher.publish_ticket(other)

        assert await consumer.recover("missing", HIGH) is False
        assert await broker.pending_count(HIGH_SUB) == 1

    @pytest.mark.asyncio
    async def test_recover_is_bounded(self, broker, publisher, clock):
        consumer = TicketConsumer(broker, topic=TOPIC, recover_batch_size=2)
        tickets = [make_ticket(HIGH) for _ in range(3)]
        for t in tickets:
            await publisher.publish_ticket(t)

        assert await consumer.recover(tickets[2].id, HIGH) is False

    @pytest.mark.asyncio
    async def test_concurrent_recovery_deduplicated(self, consumer, broker):
        consumer._recovering.add(("high", "t1"))
        broker.pull = AsyncMock(wraps=broker.pull)

        assert await consumer.recover("t1", HIGH) is False
        broker.pull.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recover_broker_failure_returns_false(self, consumer, broker):
        broker.pull = AsyncMock(side_effect=OSError("no route to host"))
        assert await consumer.recover("t1", HIGH) is False
        assert consumer._recovering == set()
