"""Core data models for topic ledger records and messages."""

from topicledger.models.record import (
    HashCommitment,
    OwnershipCertificate,
    PaymentInstruction,
    PlainText,
    RawBytes,
    Record,
)
from topicledger.models.message import (
    FROM_TOPIC_START,
    AppendReceipt,
    DeliveredMessage,
    SubmitStatus,
    SubmittedMessage,
)

__all__ = [
    "HashCommitment",
    "OwnershipCertificate",
    "PaymentInstruction",
    "PlainText",
    "RawBytes",
    "Record",
    "FROM_TOPIC_START",
    "AppendReceipt",
    "DeliveredMessage",
    "SubmitStatus",
    "SubmittedMessage",
]
