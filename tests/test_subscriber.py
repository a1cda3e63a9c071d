"""Tests for the Subscriber — ordering, error-channel reclassification, lifecycle."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from topicledger.client import LedgerClient
from topicledger.errors import SubscriptionFault
from topicledger.log.memory import InMemoryLog
from topicledger.log.service import TransportClosed, TransportMessage
from topicledger.models.message import FROM_TOPIC_START, DeliveredMessage
from topicledger.models.record import OwnershipCertificate, PlainText
from topicledger.submitter import Submitter
from topicledger.subscriber import Subscriber, SubscriptionState, TransitionError


def _transport(sequence: int, body: bytes = b"x") -> TransportMessage:
    return TransportMessage(
        sequence_number=sequence,
        contents=body,
        consensus_timestamp=datetime.now(timezone.utc),
        running_hash=b"\x01" * 48,
    )


class _Collector:
    def __init__(self) -> None:
        self.messages: list[DeliveredMessage] = []
        self.faults: list[SubscriptionFault] = []

    def on_message(self, message: DeliveredMessage) -> None:
        self.messages.append(message)

    def on_fault(self, fault: SubscriptionFault) -> None:
        self.faults.append(fault)

    @property
    def sequences(self) -> list[int]:
        return [m.sequence_number for m in self.messages]


class TestDelivery:
    @pytest.mark.asyncio
    async def test_replays_from_topic_start_in_order(self, client: LedgerClient, wait_until) -> None:
        topic_id = await client.create_topic("replay")
        submitter = Submitter(client)
        for body in ("a", "b", "c"):
            await submitter.submit(topic_id, PlainText(body=body))

        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, FROM_TOPIC_START, collector.on_message, collector.on_fault,
        )
        await wait_until(lambda: len(collector.messages) == 3)
        assert collector.sequences == [1, 2, 3]
        assert [m.record for m in collector.messages] == [
            PlainText(body="a"), PlainText(body="b"), PlainText(body="c"),
        ]
        assert subscription.state is SubscriptionState.ACTIVE
        assert subscription.missed == []
        subscription.unsubscribe()
        await subscription.wait_closed()

    @pytest.mark.asyncio
    async def test_follows_new_appends(self, client: LedgerClient, wait_until) -> None:
        topic_id = await client.create_topic("live")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, FROM_TOPIC_START, collector.on_message,
        )
        certificate = OwnershipCertificate(owner="A", device="X", serial_number="S1")
        await Submitter(client).submit(topic_id, certificate)
        await wait_until(lambda: len(collector.messages) == 1)

        delivered = collector.messages[0]
        assert delivered.topic_id == topic_id
        assert delivered.sequence_number == 1
        assert delivered.record == certificate
        assert delivered.consensus_time.tzinfo is not None
        assert len(delivered.running_digest_hex) == 96
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_start_time_filters_history(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("window")
        await Submitter(client).submit(topic_id, PlainText(body="old"))
        cutoff = log.messages(topic_id)[0].consensus_timestamp + timedelta(microseconds=1)

        collector = _Collector()
        subscription = await Subscriber(client).subscribe(topic_id, cutoff, collector.on_message)
        await Submitter(client).submit(topic_id, PlainText(body="new"))
        await wait_until(lambda: len(collector.messages) == 1)
        assert collector.sequences == [2]
        assert subscription.missed == []
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_async_handler(self, client: LedgerClient, wait_until) -> None:
        topic_id = await client.create_topic("async")
        seen: list[int] = []

        async def handler(message: DeliveredMessage) -> None:
            await asyncio.sleep(0)
            seen.append(message.sequence_number)

        subscription = await Subscriber(client).subscribe(topic_id, FROM_TOPIC_START, handler)
        await Submitter(client).submit(topic_id, PlainText(body="a"))
        await wait_until(lambda: seen == [1])
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_stop_delivery(self, client: LedgerClient, wait_until) -> None:
        topic_id = await client.create_topic("boom")
        seen: list[int] = []

        def handler(message: DeliveredMessage) -> None:
            seen.append(message.sequence_number)
            if message.sequence_number == 1:
                raise RuntimeError("handler bug")

        subscription = await Subscriber(client).subscribe(topic_id, FROM_TOPIC_START, handler)
        submitter = Submitter(client)
        await submitter.submit(topic_id, PlainText(body="a"))
        await submitter.submit(topic_id, PlainText(body="b"))
        await wait_until(lambda: seen == [1, 2])
        assert subscription.state is SubscriptionState.ACTIVE
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_naive_start_time_rejected(self, client: LedgerClient) -> None:
        topic_id = await client.create_topic("naive")
        with pytest.raises(ValueError):
            await Subscriber(client).subscribe(topic_id, datetime(2024, 1, 1), lambda m: None)


class TestErrorChannel:
    @pytest.mark.asyncio
    async def test_message_on_error_channel_is_delivered(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("quirk")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, datetime.now(timezone.utc), collector.on_message, collector.on_fault,
        )
        log.push(topic_id, _transport(1, b"Hello World"), channel="error")
        await wait_until(lambda: len(collector.messages) == 1)

        assert collector.messages[0].record == PlainText(body="Hello World")
        assert collector.faults == []
        assert subscription.reclassified_count == 1
        assert subscription.state is SubscriptionState.ACTIVE
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_dict_shaped_error_item_is_delivered(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("quirk")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, datetime.now(timezone.utc), collector.on_message, collector.on_fault,
        )
        item = {
            "sequence_number": 4,
            "contents": "hi",
            "consensus_timestamp": datetime.now(timezone.utc),
        }
        log.push(topic_id, item, channel="error")
        await wait_until(lambda: len(collector.messages) == 1)
        assert collector.sequences == [4]
        assert collector.messages[0].payload == b"hi"
        assert collector.faults == []
        subscription.unsubscribe()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("item", [
        {"sequence_number": "abc", "contents": b"x", "consensus_timestamp": 1.0},
        {"sequence_number": 1, "contents": 42, "consensus_timestamp": 1.0},
        {"sequence_number": 1, "contents": b"x"},
        {"sequence_number": 0, "contents": b"x", "consensus_timestamp": 1.0},
    ])
    async def test_malformed_message_is_a_fault(self, client: LedgerClient, log: InMemoryLog, wait_until, item) -> None:
        topic_id = await client.create_topic("malformed")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, datetime.now(timezone.utc), collector.on_message, collector.on_fault,
        )
        log.push(topic_id, item, channel="error")
        await wait_until(lambda: len(collector.faults) == 1)
        assert not collector.faults[0].terminal
        assert isinstance(collector.faults[0].cause, (TypeError, ValueError))
        assert collector.messages == []
        assert subscription.state is SubscriptionState.ERRORING

        log.push(topic_id, _transport(2))
        await wait_until(lambda: len(collector.messages) == 1)
        assert collector.sequences == [2]
        assert subscription.state is SubscriptionState.ACTIVE
        subscription.unsubscribe()
        await subscription.wait_closed()

    @pytest.mark.asyncio
    async def test_malformed_item_on_message_channel(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("malformed")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, datetime.now(timezone.utc), collector.on_message, collector.on_fault,
        )
        log.push(topic_id, {"sequence_number": 1, "contents": b"no time"})
        log.push(topic_id, _transport(1))
        await wait_until(lambda: len(collector.messages) == 1)
        assert len(collector.faults) == 1
        assert collector.messages[0].payload == b"x"
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_transient_fault_then_recovery(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("flaky")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, FROM_TOPIC_START, collector.on_message, collector.on_fault,
        )
        log.push(topic_id, ConnectionError("stream reset"), channel="error")
        await wait_until(lambda: len(collector.faults) == 1)

        fault = collector.faults[0]
        assert not fault.terminal
        assert isinstance(fault.cause, ConnectionError)
        assert fault.topic_id == topic_id
        assert subscription.state is SubscriptionState.ERRORING

        await Submitter(client).submit(topic_id, PlainText(body="after"))
        await wait_until(lambda: len(collector.messages) == 1)
        assert subscription.state is SubscriptionState.ACTIVE
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_terminal_fault_closes(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("dead")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, FROM_TOPIC_START, collector.on_message, collector.on_fault,
        )
        log.push(topic_id, TransportClosed("permission denied"), channel="error")
        await subscription.wait_closed()

        assert subscription.state is SubscriptionState.CLOSED
        assert len(collector.faults) == 1
        assert collector.faults[0].terminal
        assert collector.faults[0].cause == "permission denied"
        assert log.subscription_count == 0

    @pytest.mark.asyncio
    async def test_unknown_topic_closes(self, client: LedgerClient) -> None:
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            "0.0.9999", FROM_TOPIC_START, collector.on_message, collector.on_fault,
        )
        await subscription.wait_closed()
        assert subscription.state is SubscriptionState.CLOSED
        assert collector.faults and collector.faults[0].terminal

    @pytest.mark.asyncio
    async def test_fault_without_handler_is_logged(self, client: LedgerClient, log: InMemoryLog, wait_until, caplog) -> None:
        topic_id = await client.create_topic("quiet")
        subscription = await Subscriber(client).subscribe(topic_id, FROM_TOPIC_START, lambda m: None)
        log.push(topic_id, ConnectionError("reset"), channel="error")
        await wait_until(lambda: subscription.fault_count == 1)
        assert "transient subscription fault" in caplog.text
        subscription.unsubscribe()


class TestOrdering:
    @pytest.mark.asyncio
    async def test_gap_is_recorded_and_delivered(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("gap")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, datetime.now(timezone.utc), collector.on_message,
        )
        log.push(topic_id, _transport(5))
        log.push(topic_id, _transport(7))
        await wait_until(lambda: len(collector.messages) == 2)
        assert collector.sequences == [5, 7]
        assert subscription.missed == [(6, 6)]
        assert subscription.last_sequence_number == 7
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_gap_from_topic_start(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("gap")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, FROM_TOPIC_START, collector.on_message,
        )
        log.push(topic_id, _transport(3))
        await wait_until(lambda: len(collector.messages) == 1)
        assert subscription.missed == [(1, 2)]
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_duplicates_and_stale_dropped(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("dup")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, datetime.now(timezone.utc), collector.on_message,
        )
        for sequence in (1, 2, 2, 1, 3):
            log.push(topic_id, _transport(sequence))
        await wait_until(lambda: subscription.dropped_count == 2)
        await wait_until(lambda: len(collector.messages) == 3)
        assert collector.sequences == [1, 2, 3]
        subscription.unsubscribe()

    @pytest.mark.asyncio
    async def test_push_from_another_thread(self, client: LedgerClient, log: InMemoryLog, wait_until) -> None:
        topic_id = await client.create_topic("threads")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, datetime.now(timezone.utc), collector.on_message,
        )
        for sequence in (1, 2, 3):
            await asyncio.to_thread(log.push, topic_id, _transport(sequence))
        await wait_until(lambda: len(collector.messages) == 3)
        assert collector.sequences == [1, 2, 3]
        subscription.unsubscribe()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self, client: LedgerClient, log: InMemoryLog) -> None:
        topic_id = await client.create_topic("stop")
        subscription = await Subscriber(client).subscribe(topic_id, FROM_TOPIC_START, lambda m: None)
        assert log.subscription_count == 1
        subscription.unsubscribe()
        subscription.unsubscribe()
        await subscription.wait_closed()
        assert subscription.state is SubscriptionState.CLOSED
        assert log.subscription_count == 0

    @pytest.mark.asyncio
    async def test_no_delivery_after_unsubscribe(self, client: LedgerClient, log: InMemoryLog) -> None:
        topic_id = await client.create_topic("stop")
        collector = _Collector()
        subscription = await Subscriber(client).subscribe(
            topic_id, datetime.now(timezone.utc), collector.on_message,
        )
        subscription.unsubscribe()
        subscription.on_transport_message(_transport(1))
        await subscription.wait_closed()
        assert collector.messages == []

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, client: LedgerClient) -> None:
        topic_id = await client.create_topic("ctx")
        async with await Subscriber(client).subscribe(topic_id, FROM_TOPIC_START, lambda m: None) as subscription:
            assert subscription.state is SubscriptionState.ACTIVE
        assert subscription.state is SubscriptionState.CLOSED

    @pytest.mark.asyncio
    async def test_illegal_transition_rejected(self, client: LedgerClient) -> None:
        topic_id = await client.create_topic("fsm")
        subscription = await Subscriber(client).subscribe(topic_id, FROM_TOPIC_START, lambda m: None)
        subscription.unsubscribe()
        with pytest.raises(TransitionError):
            subscription._transition(SubscriptionState.ACTIVE)
