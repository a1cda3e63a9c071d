"""Message models — what the log hands back on append and on delivery.

Both are ephemeral, created per round trip, and owned by the consumer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from topicledger.models.record import RawBytes, Record


# Subscription start sentinel: read from topic creation.
FROM_TOPIC_START = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SubmitStatus(str, enum.Enum):
    """Log verdict on an append."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AppendReceipt:
    """Raw receipt returned by a log service for one append."""
    sequence_number: int
    transaction_ref: str
    status: SubmitStatus
    detail: str = ""


@dataclass(frozen=True)
class SubmittedMessage:
    """A record accepted by the log.

    ``sequence_number`` is assigned by the log, starts at 1, and increases
    per topic.
    """
    topic_id: str
    sequence_number: int
    transaction_ref: str
    status: SubmitStatus
    external_ref: str


@dataclass(frozen=True)
class DeliveredMessage:
    """A message delivered by a subscription.

    ``running_digest`` is the log's chained hash over all prior messages in
    the topic. It is reported, never recomputed here.
    """
    topic_id: str
    sequence_number: int
    consensus_time: datetime
    payload: bytes
    running_digest: bytes
    record: Optional[Union[Record, RawBytes]] = None

    @property
    def running_digest_hex(self) -> str:
        return self.running_digest.hex()
