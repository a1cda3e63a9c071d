"""Subscriber — long-lived, ordered delivery from a topic.

A subscription is a standing background task. Transport callbacks (which
may fire on any thread) only enqueue; a single dispatcher task on the
event loop normalises, orders and hands messages to the consumer, so
handlers never run concurrently with each other.

Two channels feed the dispatcher:

- the message channel, carrying deliveries;
- the error channel, which carries genuine faults but also, as a known
  quirk of the upstream mirror-node client, a well-formed message from
  time to time. Anything on the error channel that has a sequence number
  and contents is reclassified and delivered as a message.

Lifecycle (fail-closed, like every transition table in this package):

    OPENING → ACTIVE → ACTIVE      (each delivery)
                     → ERRORING    (transient fault; transport retries)
                     → CLOSED      (unsubscribe or terminal fault)
    ERRORING → ACTIVE | ERRORING | CLOSED

Sequence numbers delivered to the consumer strictly increase. Stale or
duplicate numbers (a transport replaying after a reconnect) are dropped.
Gaps are delivered through but recorded in ``Subscription.missed``.
A message-shaped item that cannot be normalised (no consensus timestamp,
non-integer sequence number, non-byte contents) is reported as a transient
fault, never delivered.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from topicledger import codec
from topicledger.client import LedgerClient
from topicledger.errors import SubscriptionFault
from topicledger.log.service import SubscriptionHandle, TransportClosed
from topicledger.models.message import FROM_TOPIC_START, DeliveredMessage


logger = logging.getLogger(__name__)

MessageHandler = Callable[[DeliveredMessage], Union[None, Awaitable[None]]]
FaultHandler = Callable[[SubscriptionFault], Union[None, Awaitable[None]]]


class SubscriptionState(str, enum.Enum):
    OPENING = "opening"
    ACTIVE = "active"
    ERRORING = "erroring"
    CLOSED = "closed"


_TRANSITIONS: set[tuple[SubscriptionState, SubscriptionState]] = {
    (SubscriptionState.OPENING, SubscriptionState.ACTIVE),
    (SubscriptionState.OPENING, SubscriptionState.CLOSED),
    (SubscriptionState.ACTIVE, SubscriptionState.ERRORING),
    (SubscriptionState.ACTIVE, SubscriptionState.CLOSED),
    (SubscriptionState.ERRORING, SubscriptionState.ACTIVE),
    (SubscriptionState.ERRORING, SubscriptionState.ERRORING),
    (SubscriptionState.ERRORING, SubscriptionState.CLOSED),
}


class TransitionError(Exception):
    """Raised when a subscription state transition is not allowed."""


_MESSAGE = "message"
_ERROR = "error"
_STOP = "stop"


class Subscription:
    """Handle for one open subscription. Create through Subscriber.subscribe."""

    def __init__(
        self,
        topic_id: str,
        start_time: datetime,
        on_message: MessageHandler,
        on_fault: Optional[FaultHandler],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.topic_id = topic_id
        self.start_time = start_time
        self._on_message = on_message
        self._on_fault = on_fault
        self._loop = loop
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._state = SubscriptionState.OPENING
        self._handle: Optional[SubscriptionHandle] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._last_sequence: Optional[int] = None
        self._missed: list[tuple[int, int]] = []
        self.delivered_count = 0
        self.reclassified_count = 0
        self.dropped_count = 0
        self.fault_count = 0

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def last_sequence_number(self) -> Optional[int]:
        return self._last_sequence

    @property
    def missed(self) -> list[tuple[int, int]]:
        """Inclusive (first, last) ranges of sequence numbers never delivered."""
        return list(self._missed)

    def unsubscribe(self) -> None:
        """Stop the subscription. Idempotent.

        After return no new delivery starts. A handler call already in
        progress runs to completion.
        """
        if self._state is SubscriptionState.CLOSED:
            return
        self._transition(SubscriptionState.CLOSED)
        self._release()
        self._post(_STOP, None)
        logger.info("Unsubscribed from topic %s", self.topic_id)

    async def wait_closed(self) -> None:
        """Wait for the dispatcher task to finish."""
        if self._task is not None:
            await self._task

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unsubscribe()
        await self.wait_closed()

    # ------------------------------------------------------------------
    # Transport callbacks (any thread)
    # ------------------------------------------------------------------

    def on_transport_message(self, item: Any) -> None:
        self._post(_MESSAGE, item)

    def on_transport_error(self, item: Any) -> None:
        self._post(_ERROR, item)

    def _post(self, kind: str, item: Any) -> None:
        if kind != _STOP and self._state is SubscriptionState.CLOSED:
            return
        if self._loop.is_closed():
            logger.debug("Dropping %s for topic %s: event loop closed", kind, self.topic_id)
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (kind, item))

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def _attach(self, handle: SubscriptionHandle) -> None:
        self._handle = handle
        self._transition(SubscriptionState.ACTIVE)
        self._task = self._loop.create_task(self._run())

    async def _run(self) -> None:
        while True:
            kind, item = await self._queue.get()
            if kind == _STOP or self._state is SubscriptionState.CLOSED:
                break
            try:
                await self._dispatch(kind, item)
            except Exception:
                logger.exception(
                    "Topic %s: dispatcher failed on %s item; subscription continues",
                    self.topic_id, kind,
                )

    async def _dispatch(self, kind: str, item: Any) -> None:
        if kind == _ERROR and _is_message_shaped(item):
            self.reclassified_count += 1
            logger.debug(
                "Topic %s: message on error channel treated as delivery",
                self.topic_id,
            )
            await self._deliver(item)
        elif kind == _ERROR:
            await self._fault(item)
        elif _is_message_shaped(item):
            await self._deliver(item)
        else:
            await self._fault(item)

    async def _deliver(self, item: Any) -> None:
        try:
            message = _to_delivered(self.topic_id, item)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.warning("Topic %s: malformed message: %s", self.topic_id, exc)
            await self._fault(exc)
            return
        sequence = message.sequence_number
        last = self._last_sequence

        if last is not None and sequence <= last:
            self.dropped_count += 1
            logger.debug(
                "Topic %s: dropping sequence %d (already at %d)",
                self.topic_id, sequence, last,
            )
            return

        if last is not None:
            expected: Optional[int] = last + 1
        elif self.start_time <= FROM_TOPIC_START:
            expected = 1
        else:
            expected = None
        if expected is not None and sequence > expected:
            self._missed.append((expected, sequence - 1))
            logger.warning(
                "Topic %s: missed sequence %d..%d",
                self.topic_id, expected, sequence - 1,
            )

        self._last_sequence = sequence
        if self._state is SubscriptionState.ERRORING:
            self._transition(SubscriptionState.ACTIVE)
        self.delivered_count += 1
        await _invoke(self._on_message, message, self.topic_id)

    async def _fault(self, item: Any) -> None:
        terminal = isinstance(item, TransportClosed)
        cause = item.cause if terminal else item
        fault = SubscriptionFault(self.topic_id, cause, terminal=terminal)
        self.fault_count += 1

        if terminal:
            self._transition(SubscriptionState.CLOSED)
        else:
            self._transition(SubscriptionState.ERRORING)

        if self._on_fault is not None:
            await _invoke(self._on_fault, fault, self.topic_id)
        else:
            logger.warning("%s", fault)

        if terminal:
            self._release()
            self._post(_STOP, None)

    def _release(self) -> None:
        if self._handle is not None:
            self._handle.unsubscribe()

    def _transition(self, target: SubscriptionState) -> None:
        if (self._state, target) not in _TRANSITIONS:
            raise TransitionError(
                f"Illegal subscription transition: {self._state.value} → {target.value}"
            )
        self._state = target


class Subscriber:
    """Opens subscriptions on topics through a shared LedgerClient.

    Usage:
        subscriber = Subscriber(client)
        subscription = await subscriber.subscribe(topic_id, FROM_TOPIC_START, handle)
        ...
        subscription.unsubscribe()
    """

    def __init__(self, client: LedgerClient) -> None:
        self._client = client

    async def subscribe(
        self,
        topic_id: str,
        start_time: datetime,
        on_message: MessageHandler,
        on_fault: Optional[FaultHandler] = None,
    ) -> Subscription:
        """Open a subscription delivering messages at or after ``start_time``.

        ``start_time`` is FROM_TOPIC_START or a timezone-aware datetime.
        Handlers may be plain functions or coroutine functions.
        """
        if start_time.tzinfo is None:
            raise ValueError("start_time must be timezone-aware")

        subscription = Subscription(
            topic_id,
            start_time,
            on_message,
            on_fault,
            asyncio.get_running_loop(),
        )
        try:
            handle = self._client.log.open_subscription(
                topic_id,
                start_time,
                subscription.on_transport_message,
                subscription.on_transport_error,
            )
        except Exception as exc:
            subscription._transition(SubscriptionState.CLOSED)
            raise SubscriptionFault(topic_id, exc, terminal=True) from exc

        subscription._attach(handle)
        logger.info("Subscribed to topic %s from %s", topic_id, start_time.isoformat())
        return subscription


# ----------------------------------------------------------------------
# Normalisation of transport objects
# ----------------------------------------------------------------------

def _get(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def _is_message_shaped(item: Any) -> bool:
    return _get(item, "sequence_number") is not None and _get(item, "contents") is not None


def _to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError:
            return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"running_hash must be bytes or str, got {type(value).__name__}")


def _to_datetime(value: Any) -> datetime:
    """Consensus time as an aware datetime. Raises ValueError if absent."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    for converter in ("to_datetime", "to_date"):
        if hasattr(value, converter):
            return _to_datetime(getattr(value, converter)())
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    raise ValueError(f"no usable consensus timestamp: {value!r}")


def _to_sequence_number(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("sequence_number must be an integer, got bool")
    number = int(value)
    if number < 1:
        raise ValueError(f"sequence_number must be at least 1, got {number}")
    return number


def _to_delivered(topic_id: str, item: Any) -> DeliveredMessage:
    """Normalise a transport item. Raises TypeError or ValueError if malformed."""
    contents = _get(item, "contents")
    if isinstance(contents, str):
        payload = contents.encode("utf-8")
    elif isinstance(contents, (bytes, bytearray, memoryview)):
        payload = bytes(contents)
    else:
        raise TypeError(f"contents must be bytes or str, got {type(contents).__name__}")
    return DeliveredMessage(
        topic_id=topic_id,
        sequence_number=_to_sequence_number(_get(item, "sequence_number")),
        consensus_time=_to_datetime(_get(item, "consensus_timestamp")),
        payload=payload,
        running_digest=_to_bytes(_get(item, "running_hash")),
        record=codec.decode(payload),
    )


async def _invoke(handler: Callable[[Any], Any], argument: Any, topic_id: str) -> None:
    try:
        result = handler(argument)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Handler for topic %s raised; subscription continues", topic_id)
