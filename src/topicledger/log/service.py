"""Log service contract — the consensus network as seen by this package.

The network is an external collaborator. Everything this package needs
from it fits in four operations: create a topic, append a payload, open a
subscription, and close the connection. Submitter and Subscriber never talk
to a network SDK directly. They talk to this Protocol, so a topic hosted on
Hedera and one held in memory for tests are interchangeable.

Subscription callbacks receive transport objects, not DeliveredMessage.
A transport message exposes ``sequence_number``, ``contents``,
``consensus_timestamp`` and ``running_hash``. Callbacks may fire on any
thread. Normalisation and ordering are the Subscriber's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol, runtime_checkable

from topicledger.models.message import AppendReceipt


TransportCallback = Callable[[Any], None]


@dataclass(frozen=True)
class TransportMessage:
    """A message as pushed by a transport, before normalisation."""
    sequence_number: int
    contents: bytes
    consensus_timestamp: datetime
    running_hash: bytes


class TransportClosed(Exception):
    """Passed on the error channel when the transport ends a subscription.

    Any other error-channel payload is transient: the transport keeps the
    stream open and retries on its own.
    """

    def __init__(self, cause: Any = None) -> None:
        self.cause = cause
        super().__init__(f"subscription closed by transport: {cause!r}")


@runtime_checkable
class SubscriptionHandle(Protocol):
    """Cancellation handle for an open subscription."""

    def unsubscribe(self) -> None:
        """Stop the stream. Must be safe to call more than once."""
        ...


@runtime_checkable
class LogService(Protocol):
    """Append-only ordered log hosting topics.

    The log, not the caller, assigns sequence numbers, and it serialises
    concurrent appends from every producer.
    """

    @property
    def network(self) -> str:
        """Network name used for explorer links (e.g. 'testnet')."""
        ...

    async def create_topic(self, memo: str) -> str:
        """Create a topic and return its id. Raises CreateError."""
        ...

    async def append_message(
        self,
        topic_id: str,
        payload: bytes,
        external_memo: str,
    ) -> AppendReceipt:
        """Append one payload. Exactly one attempt. Raises SubmitError."""
        ...

    def open_subscription(
        self,
        topic_id: str,
        start_time: datetime,
        on_message: TransportCallback,
        on_error: TransportCallback,
    ) -> SubscriptionHandle:
        """Start pushing messages at or after ``start_time``."""
        ...

    async def close(self) -> None:
        """Release the network connection."""
        ...
