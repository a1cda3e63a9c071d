"""Tests for the in-memory log service."""

import pytest

from topicledger.errors import CreateError, SubmitError, SubmitFailure
from topicledger.log.memory import InMemoryLog
from topicledger.log.service import LogService, TransportClosed
from topicledger.models.message import FROM_TOPIC_START, SubmitStatus


class TestTopics:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryLog(), LogService)

    @pytest.mark.asyncio
    async def test_topic_ids_are_sequential(self) -> None:
        log = InMemoryLog()
        assert await log.create_topic("a") == "0.0.1001"
        assert await log.create_topic("b") == "0.0.1002"
        assert log.topic_memo("0.0.1001") == "a"

    @pytest.mark.asyncio
    async def test_create_refused_without_credentials(self) -> None:
        with pytest.raises(CreateError):
            await InMemoryLog(authorized=False).create_topic("a")

    @pytest.mark.asyncio
    async def test_create_refused_after_close(self) -> None:
        log = InMemoryLog()
        await log.close()
        with pytest.raises(CreateError):
            await log.create_topic("a")


class TestAppend:
    @pytest.mark.asyncio
    async def test_sequence_numbers_per_topic(self) -> None:
        log = InMemoryLog()
        first = await log.create_topic("a")
        second = await log.create_topic("b")
        assert (await log.append_message(first, b"1", "m")).sequence_number == 1
        assert (await log.append_message(first, b"2", "m")).sequence_number == 2
        assert (await log.append_message(second, b"1", "m")).sequence_number == 1

    @pytest.mark.asyncio
    async def test_consensus_time_and_running_hash(self) -> None:
        log = InMemoryLog()
        topic_id = await log.create_topic("a")
        for body in (b"x", b"x", b"y"):
            await log.append_message(topic_id, body, "m")
        messages = log.messages(topic_id)
        times = [m.consensus_timestamp for m in messages]
        assert times == sorted(times)
        assert len(set(times)) == 3
        hashes = [m.running_hash for m in messages]
        assert len(set(hashes)) == 3
        assert all(len(h) == 48 for h in hashes)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload, code", [
        (b"", "INVALID_TOPIC_MESSAGE"),
        (b"x" * 2000, "MESSAGE_SIZE_TOO_LARGE"),
    ])
    async def test_rejected_payloads(self, payload: bytes, code: str) -> None:
        log = InMemoryLog()
        topic_id = await log.create_topic("a")
        receipt = await log.append_message(topic_id, payload, "m")
        assert receipt.status is SubmitStatus.REJECTED
        assert receipt.detail == code
        assert log.messages(topic_id) == []

    @pytest.mark.asyncio
    async def test_closed_log_is_network_failure(self) -> None:
        log = InMemoryLog()
        topic_id = await log.create_topic("a")
        await log.close()
        with pytest.raises(SubmitError) as info:
            await log.append_message(topic_id, b"x", "m")
        assert info.value.reason is SubmitFailure.NETWORK

    @pytest.mark.asyncio
    async def test_injected_failure_applies_once(self) -> None:
        log = InMemoryLog()
        topic_id = await log.create_topic("a")
        log.fail_next_append(SubmitError(SubmitFailure.NETWORK, "reset"))
        with pytest.raises(SubmitError):
            await log.append_message(topic_id, b"x", "m")
        assert (await log.append_message(topic_id, b"x", "m")).sequence_number == 1
        assert log.append_attempts == 2


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_replay_then_follow(self) -> None:
        log = InMemoryLog()
        topic_id = await log.create_topic("a")
        await log.append_message(topic_id, b"old", "m")
        received = []
        handle = log.open_subscription(topic_id, FROM_TOPIC_START, received.append, received.append)
        await log.append_message(topic_id, b"new", "m")
        assert [m.contents for m in received] == [b"old", b"new"]

        handle.unsubscribe()
        handle.unsubscribe()
        await log.append_message(topic_id, b"late", "m")
        assert len(received) == 2
        assert log.subscription_count == 0

    @pytest.mark.asyncio
    async def test_push_routes_by_channel(self) -> None:
        log = InMemoryLog()
        topic_id = await log.create_topic("a")
        messages, errors = [], []
        log.open_subscription(topic_id, FROM_TOPIC_START, messages.append, errors.append)
        log.push(topic_id, "m1")
        log.push(topic_id, "e1", channel="error")
        log.push("0.0.42", "elsewhere")
        assert messages == ["m1"]
        assert errors == ["e1"]

    def test_unknown_topic_reports_closed(self) -> None:
        log = InMemoryLog()
        errors = []
        handle = log.open_subscription("0.0.5", FROM_TOPIC_START, lambda m: None, errors.append)
        assert len(errors) == 1
        assert isinstance(errors[0], TransportClosed)
        handle.unsubscribe()
        assert log.subscription_count == 0
