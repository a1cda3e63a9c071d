"""Commitment verifier — hash commitments over records published to a topic.

A commitment is the SHA-256 of a record's canonical encoding. It can be
published before the record (commit-then-reveal: prove later that the
plaintext existed without disclosing it now) or after it
(reveal-then-commit: bind a later message to an earlier one).

Comparison is plain string equality. The log is public; this is an
integrity check, not a secret comparison.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from topicledger import codec
from topicledger.errors import EncodeError, VerifyError
from topicledger.models.record import (
    HashCommitment,
    OwnershipCertificate,
    PaymentInstruction,
    PlainText,
    Record,
)


def commit(record: Record, external_ref: str = "") -> HashCommitment:
    """Build the commitment for a record.

    Raises EncodeError if the record is malformed.
    """
    return HashCommitment(digest_hex=codec.digest(record), external_ref=external_ref)


def verify(record: Record, commitment: HashCommitment) -> bool:
    """True if ``commitment`` is the digest of ``record``.

    Returns False on mismatch. Raises VerifyError only when ``record``
    cannot be encoded.
    """
    try:
        expected = codec.digest(record)
    except EncodeError as exc:
        raise VerifyError(f"Cannot verify commitment: {exc}") from exc
    return expected == commitment.digest_hex


@dataclass(frozen=True)
class CommitmentMatch:
    """A revealed record paired with the commitment that covers it."""
    record: Record
    record_sequence: int
    commitment: HashCommitment
    commitment_sequence: int

    @property
    def committed_first(self) -> bool:
        """True for commit-then-reveal, False for reveal-then-commit."""
        return self.commitment_sequence < self.record_sequence


class CommitmentTracker:
    """Pairs records and commitments observed on a topic, in either order.

    Usage:
        tracker = CommitmentTracker()
        for message in delivered:
            match = tracker.observe(message.sequence_number, message.record)
            if match is not None:
                ...

    Unmatched entries are held until their counterpart arrives.
    """

    def __init__(self) -> None:
        self._records: dict[str, tuple[int, Record]] = {}
        self._commitments: dict[str, tuple[int, HashCommitment]] = {}
        self._matches: list[CommitmentMatch] = []

    def observe(self, sequence_number: int, record: object) -> Optional[CommitmentMatch]:
        """Feed one delivered record. Returns a match if this completes a pair.

        Records that cannot be encoded (RawBytes, None) are ignored.
        """
        if isinstance(record, HashCommitment):
            revealed = self._records.pop(record.digest_hex, None)
            if revealed is None:
                self._commitments[record.digest_hex] = (sequence_number, record)
                return None
            record_sequence, plain = revealed
            return self._matched(plain, record_sequence, record, sequence_number)

        if not isinstance(record, (PlainText, PaymentInstruction, OwnershipCertificate)):
            return None
        try:
            key = codec.digest(record)
        except EncodeError:
            return None
        pending = self._commitments.pop(key, None)
        if pending is None:
            self._records[key] = (sequence_number, record)
            return None
        commitment_sequence, commitment = pending
        return self._matched(record, sequence_number, commitment, commitment_sequence)

    def _matched(
        self,
        record: Record,
        record_sequence: int,
        commitment: HashCommitment,
        commitment_sequence: int,
    ) -> CommitmentMatch:
        match = CommitmentMatch(
            record=record,
            record_sequence=record_sequence,
            commitment=commitment,
            commitment_sequence=commitment_sequence,
        )
        self._matches.append(match)
        return match

    @property
    def matches(self) -> list[CommitmentMatch]:
        return list(self._matches)

    @property
    def pending_commitments(self) -> list[HashCommitment]:
        """Commitments whose record has not been revealed yet."""
        return [c for _, c in self._commitments.values()]
