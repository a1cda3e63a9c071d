"""In-memory log service — a process-local stand-in for a consensus network.

Behaves like the real log where it matters to callers: sequence numbers
start at 1 per topic, consensus times never go backwards, every message
carries a chained running hash, and subscriptions replay history from their
start time before following new appends.

Test hooks let a caller force the failure modes of a real network:
rejected credentials, transport errors, oversized payloads, latency, and
raw pushes onto a subscription's message or error channel.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from topicledger.errors import CreateError, SubmitError, SubmitFailure
from topicledger.log.service import TransportCallback, TransportClosed, TransportMessage
from topicledger.models.message import AppendReceipt, SubmitStatus


MAX_PAYLOAD_BYTES = 1024
_RUNNING_HASH_SEED = b"\x00" * 48


@dataclass
class _Topic:
    topic_id: str
    memo: str
    messages: list[TransportMessage] = field(default_factory=list)
    memos: list[str] = field(default_factory=list)
    running_hash: bytes = _RUNNING_HASH_SEED


class _MemorySubscription:
    def __init__(
        self,
        log: InMemoryLog,
        topic_id: str,
        start_time: datetime,
        on_message: TransportCallback,
        on_error: TransportCallback,
    ) -> None:
        self._log = log
        self.topic_id = topic_id
        self.start_time = start_time
        self.on_message = on_message
        self.on_error = on_error
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._log._subscriptions.remove(self)


class InMemoryLog:
    """Log service held in process memory.

    Usage:
        log = InMemoryLog()
        topic_id = await log.create_topic("demo")
        receipt = await log.append_message(topic_id, b"hello", "Ext_Id: ABCDE")
        assert receipt.sequence_number == 1
    """

    def __init__(
        self,
        network: str = "local",
        authorized: bool = True,
        latency: float = 0.0,
        max_payload: int = MAX_PAYLOAD_BYTES,
        first_topic_num: int = 1001,
    ) -> None:
        self._network = network
        self.authorized = authorized
        self.latency = latency
        self.max_payload = max_payload
        self._topics: dict[str, _Topic] = {}
        self._next_topic_num = first_topic_num
        self._subscriptions: list[_MemorySubscription] = []
        self._pending_failures: list[SubmitError] = []
        self._last_time = datetime.fromtimestamp(0, tz=timezone.utc)
        self.append_attempts = 0
        self.closed = False

    @property
    def network(self) -> str:
        return self._network

    # ------------------------------------------------------------------
    # LogService
    # ------------------------------------------------------------------

    async def create_topic(self, memo: str) -> str:
        if self.closed:
            raise CreateError("client is closed")
        if not self.authorized:
            raise CreateError("INVALID_SIGNATURE")
        await asyncio.sleep(self.latency)
        topic_id = f"0.0.{self._next_topic_num}"
        self._next_topic_num += 1
        self._topics[topic_id] = _Topic(topic_id=topic_id, memo=memo)
        return topic_id

    async def append_message(
        self,
        topic_id: str,
        payload: bytes,
        external_memo: str,
    ) -> AppendReceipt:
        self.append_attempts += 1
        if self.closed:
            raise SubmitError(SubmitFailure.NETWORK, "client is closed")
        await asyncio.sleep(self.latency)
        if self._pending_failures:
            raise self._pending_failures.pop(0)
        if not self.authorized:
            raise SubmitError(SubmitFailure.AUTHENTICATION, "INVALID_SIGNATURE")

        topic = self._topics.get(topic_id)
        if topic is None:
            return self._rejected("INVALID_TOPIC_ID")
        if not payload:
            return self._rejected("INVALID_TOPIC_MESSAGE")
        if len(payload) > self.max_payload:
            return self._rejected("MESSAGE_SIZE_TOO_LARGE")

        sequence_number = len(topic.messages) + 1
        consensus_time = self._next_consensus_time()
        topic.running_hash = hashlib.sha384(
            topic.running_hash
            + topic_id.encode("ascii")
            + sequence_number.to_bytes(8, "big")
            + consensus_time.isoformat().encode("ascii")
            + payload
        ).digest()
        message = TransportMessage(
            sequence_number=sequence_number,
            contents=payload,
            consensus_timestamp=consensus_time,
            running_hash=topic.running_hash,
        )
        topic.messages.append(message)
        topic.memos.append(external_memo)

        for sub in list(self._subscriptions):
            if sub.topic_id == topic_id and consensus_time >= sub.start_time:
                sub.on_message(message)

        return AppendReceipt(
            sequence_number=sequence_number,
            transaction_ref=f"0.0.2@{consensus_time.timestamp():.9f}",
            status=SubmitStatus.ACCEPTED,
        )

    def open_subscription(
        self,
        topic_id: str,
        start_time: datetime,
        on_message: TransportCallback,
        on_error: TransportCallback,
    ) -> _MemorySubscription:
        sub = _MemorySubscription(self, topic_id, start_time, on_message, on_error)
        topic = self._topics.get(topic_id)
        if topic is None:
            sub.active = False
            on_error(TransportClosed(f"topic {topic_id} not found"))
            return sub
        self._subscriptions.append(sub)
        for message in list(topic.messages):
            if message.consensus_timestamp >= start_time:
                on_message(message)
        return sub

    async def close(self) -> None:
        self.closed = True
        for sub in list(self._subscriptions):
            sub.unsubscribe()

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------

    def fail_next_append(self, error: SubmitError) -> None:
        """Make the next append raise ``error`` instead of appending."""
        self._pending_failures.append(error)

    def push(self, topic_id: str, item: Any, channel: str = "message") -> None:
        """Push a raw item to every subscription on a topic.

        ``channel`` is 'message' or 'error'. Nothing is appended to the topic.
        """
        for sub in list(self._subscriptions):
            if sub.topic_id != topic_id:
                continue
            if channel == "error":
                sub.on_error(item)
            else:
                sub.on_message(item)

    def messages(self, topic_id: str) -> list[TransportMessage]:
        return list(self._topics[topic_id].messages)

    def memos(self, topic_id: str) -> list[str]:
        return list(self._topics[topic_id].memos)

    def topic_memo(self, topic_id: str) -> str:
        return self._topics[topic_id].memo

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _next_consensus_time(self) -> datetime:
        now = datetime.now(timezone.utc)
        if now <= self._last_time:
            now = self._last_time + timedelta(microseconds=1)
        self._last_time = now
        return now

    @staticmethod
    def _rejected(code: str) -> AppendReceipt:
        return AppendReceipt(
            sequence_number=0,
            transaction_ref="",
            status=SubmitStatus.REJECTED,
            detail=code,
        )
