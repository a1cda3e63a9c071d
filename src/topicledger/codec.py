"""Record codec — canonical byte form of records, and their digests.

Canonical form:
- PlainText is its UTF-8 body, unframed.
- Every other variant is compact JSON (no whitespace, UTF-8, non-ASCII
  preserved) with keys emitted in the order declared here. Key order is
  fixed by this module, not by the caller and not alphabetically, so
  any implementation following the same table hashes identically.
- Amounts are written as decimal strings in normalised fixed-point form,
  so equal Decimals always encode to the same bytes.

Decoding is best-effort and never raises: topics are shared, and a payload
that matches no known shape comes back as RawBytes.
"""

from __future__ import annotations

import hashlib
import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from topicledger.errors import EncodeError
from topicledger.models.record import (
    HashCommitment,
    OwnershipCertificate,
    PaymentInstruction,
    PlainText,
    RawBytes,
    Record,
)


PAYMENT_KEY = "paymentInstruction"
CERTIFICATE_KEY = "ownershipCertificate"
COMMITMENT_KEY = "hashCommitment"

_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


class _ShapeError(Exception):
    """Internal: payload does not fit a record shape."""


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------

def encode(record: Record) -> bytes:
    """Serialize a record to its canonical bytes.

    Raises EncodeError if a required field is absent or malformed.
    """
    if isinstance(record, PlainText):
        _check_plain_text(record)
        return record.body.encode("utf-8")

    if isinstance(record, PaymentInstruction):
        _check_payment(record)
        return _dump({
            PAYMENT_KEY: {
                "payer": record.payer,
                "payee": record.payee,
                "amount": _amount_text(record.amount),
                "currency": record.currency,
                "description": record.description,
                "invoice": record.invoice_ref,
            },
        })

    if isinstance(record, OwnershipCertificate):
        _check_certificate(record)
        return _dump({
            CERTIFICATE_KEY: {
                "owner": record.owner,
                "device": record.device,
                "serialNumber": record.serial_number,
            },
        })

    if isinstance(record, HashCommitment):
        _check_commitment(record)
        return _dump({COMMITMENT_KEY: {"sha256": record.digest_hex}})

    raise EncodeError(f"Not an encodable record: {type(record).__name__}")


def digest(record: Record) -> str:
    """SHA-256 over encode(record): 64 lower-case hex chars, no prefix."""
    return hashlib.sha256(encode(record)).hexdigest()


def _dump(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _amount_text(amount: Decimal) -> str:
    if amount == 0:
        return "0"
    return format(amount.normalize(), "f")


def _require_text(owner: str, name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise EncodeError(f"{owner}: {name} must be a non-empty string")
    _require_utf8(owner, name, value)


def _require_utf8(owner: str, name: str, value: str) -> None:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise EncodeError(f"{owner}: {name} is not valid UTF-8 text: {exc.reason}") from exc


def _check_plain_text(record: PlainText) -> None:
    _require_text("PlainText", "body", record.body)
    # A body that is itself a JSON object would decode as a structured
    # record (or RawBytes), not as the same PlainText.
    try:
        parsed = json.loads(record.body)
    except ValueError:
        return
    if isinstance(parsed, dict):
        raise EncodeError("PlainText: body must not be a JSON object")


def _check_payment(record: PaymentInstruction) -> None:
    for name in ("payer", "payee", "currency", "invoice_ref"):
        _require_text("PaymentInstruction", name, getattr(record, name))
    if not isinstance(record.description, str):
        raise EncodeError("PaymentInstruction: description must be a string")
    _require_utf8("PaymentInstruction", "description", record.description)
    amount = record.amount
    if not isinstance(amount, Decimal):
        raise EncodeError(
            f"PaymentInstruction: amount must be Decimal, got {type(amount).__name__}"
        )
    if not amount.is_finite():
        raise EncodeError(f"PaymentInstruction: amount must be finite, got {amount}")
    if amount < 0:
        raise EncodeError(f"PaymentInstruction: amount must not be negative, got {amount}")


def _check_certificate(record: OwnershipCertificate) -> None:
    for name in ("owner", "device", "serial_number"):
        _require_text("OwnershipCertificate", name, getattr(record, name))


def _check_commitment(record: HashCommitment) -> None:
    if not isinstance(record.digest_hex, str) or not _DIGEST_RE.match(record.digest_hex):
        raise EncodeError(
            "HashCommitment: digest_hex must be 64 lower-case hex characters"
        )


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------

def decode(payload: bytes) -> Union[Record, RawBytes]:
    """Parse bytes back into a record, or wrap them as RawBytes.

    Also accepts the shapes written by earlier producers: a top-level
    ``invoice`` or ``memo`` next to the record body, and a commitment
    written as ``{"ownershipCertificate": {"hash": ...}}``.
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        return RawBytes(payload)

    try:
        parsed = json.loads(text, parse_float=Decimal)
    except ValueError:
        parsed = None

    if not isinstance(parsed, dict):
        record: Record = PlainText(body=text)
        return record if _is_valid(record) else RawBytes(payload)

    try:
        record = _from_object(parsed)
    except _ShapeError:
        return RawBytes(payload)
    return record if _is_valid(record) else RawBytes(payload)


def _from_object(obj: dict[str, Any]) -> Record:
    memo = obj.get("memo")
    ref = memo if isinstance(memo, str) else ""

    if PAYMENT_KEY in obj:
        body = _body(obj, PAYMENT_KEY)
        invoice = body.get("invoice", obj.get("invoice"))
        return PaymentInstruction(
            payer=_field(body, "payer"),
            payee=_field(body, "payee"),
            amount=_parse_amount(body.get("amount")),
            currency=_field(body, "currency"),
            description=_field(body, "description"),
            invoice_ref=_text(invoice),
            external_ref=ref,
        )

    if CERTIFICATE_KEY in obj:
        body = _body(obj, CERTIFICATE_KEY)
        if "hash" in body and "owner" not in body:
            return HashCommitment(digest_hex=_field(body, "hash"), external_ref=ref)
        return OwnershipCertificate(
            owner=_field(body, "owner"),
            device=_field(body, "device"),
            serial_number=_field(body, "serialNumber"),
            external_ref=ref,
        )

    if COMMITMENT_KEY in obj:
        body = _body(obj, COMMITMENT_KEY)
        return HashCommitment(digest_hex=_field(body, "sha256"), external_ref=ref)

    raise _ShapeError("unknown record shape")


def _body(obj: dict[str, Any], key: str) -> dict[str, Any]:
    body = obj[key]
    if not isinstance(body, dict):
        raise _ShapeError(f"{key} is not an object")
    return body


def _field(body: dict[str, Any], key: str) -> str:
    return _text(body.get(key))


def _text(value: Any) -> str:
    if not isinstance(value, str):
        raise _ShapeError(f"expected string, got {type(value).__name__}")
    return value


def _parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise _ShapeError("amount is a boolean")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, str)):
        try:
            return Decimal(value)
        except InvalidOperation as exc:
            raise _ShapeError(f"bad amount {value!r}") from exc
    raise _ShapeError(f"bad amount type {type(value).__name__}")


def _is_valid(record: Record) -> bool:
    try:
        encode(record)
    except EncodeError:
        return False
    return True
