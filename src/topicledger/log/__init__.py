"""Log service backends — the ordered topic log behind Submitter and Subscriber."""

from topicledger.log.service import (
    LogService,
    SubscriptionHandle,
    TransportClosed,
    TransportMessage,
)
from topicledger.log.memory import InMemoryLog
from topicledger.log.hedera import HederaLog

__all__ = [
    "LogService",
    "SubscriptionHandle",
    "TransportClosed",
    "TransportMessage",
    "InMemoryLog",
    "HederaLog",
]
