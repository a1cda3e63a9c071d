"""Application record models — the logical units written to a topic.

Four variants share one trait: an ``external_ref`` correlation tag. The tag
travels as the append's memo, never inside the payload, so it is excluded
from equality and from the commitment hash. Two records that differ only in
``external_ref`` are the same record.

Records are plain values. Field validation happens at encode time
(see topicledger.codec), so a malformed record can be constructed
but cannot be written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Union


@dataclass(frozen=True)
class PlainText:
    """A free-text message, written as its UTF-8 bytes."""
    body: str
    external_ref: str = field(default="", compare=False)


@dataclass(frozen=True)
class PaymentInstruction:
    """A structured payment instruction. Amounts are Decimal, never float."""
    payer: str
    payee: str
    amount: Decimal
    currency: str
    description: str
    invoice_ref: str
    external_ref: str = field(default="", compare=False)


@dataclass(frozen=True)
class OwnershipCertificate:
    """Proof that an owner holds a device with a given serial number."""
    owner: str
    device: str
    serial_number: str
    external_ref: str = field(default="", compare=False)


@dataclass(frozen=True)
class HashCommitment:
    """SHA-256 digest (64 lower-case hex chars) of another record's encoding."""
    digest_hex: str
    external_ref: str = field(default="", compare=False)


@dataclass(frozen=True)
class RawBytes:
    """A payload that matches no known record shape.

    Topics are shared; other producers may write other schemas.
    """
    payload: bytes


Record = Union[PlainText, PaymentInstruction, OwnershipCertificate, HashCommitment]
