"""Submitter — turns a record into exactly one append on a topic.

One call, one append attempt. Nothing here retries: resubmitting the same
record creates a second log entry with a new sequence number, so whether
and when to retry is the caller's decision (SubmitError.retryable says
whether it can help).

Records that must appear in a given order (a certificate, then its
commitment) must be submitted one after another, awaiting each result.
Concurrent submissions from one producer have no guaranteed relative
order. ``submit_sequence`` does the sequential form and reports every
message's outcome separately: partial success is normal.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from topicledger import codec
from topicledger.client import LedgerClient
from topicledger.errors import EncodeError, SubmitError, SubmitFailure
from topicledger.ids import next_id
from topicledger.models.message import SubmitStatus, SubmittedMessage
from topicledger.models.record import Record


logger = logging.getLogger(__name__)

MEMO_PREFIX = "Ext_Id: "

_EXTERNAL_REF_RE = re.compile(r"^[A-Z0-9]{5,15}$")


def external_memo(external_ref: str) -> str:
    """The transaction memo that carries a record's correlation reference."""
    return f"{MEMO_PREFIX}{external_ref}"


def check_external_ref(external_ref: str) -> None:
    """Raise EncodeError unless the ref is 5-15 characters of A-Z0-9."""
    if not isinstance(external_ref, str) or not _EXTERNAL_REF_RE.match(external_ref):
        raise EncodeError(
            f"external_ref must be 5-15 characters of A-Z0-9, got {external_ref!r}"
        )


@dataclass(frozen=True)
class SubmitOutcome:
    """The result of one message in a sequence: a message or an error."""
    topic_id: str
    external_ref: str
    record: Record
    message: Optional[SubmittedMessage] = None
    error: Optional[Union[SubmitError, EncodeError]] = None

    @property
    def ok(self) -> bool:
        return self.message is not None

    @property
    def sequence_number(self) -> Optional[int]:
        return self.message.sequence_number if self.message else None


class Submitter:
    """Appends records to topics through a shared LedgerClient.

    Usage:
        submitter = Submitter(client, timeout=30.0)
        message = await submitter.submit(topic_id, record)
        print(message.sequence_number)
    """

    def __init__(self, client: LedgerClient, timeout: Optional[float] = None) -> None:
        self._client = client
        self._timeout = timeout

    async def submit(
        self,
        topic_id: str,
        record: Record,
        timeout: Optional[float] = None,
    ) -> SubmittedMessage:
        """Append ``record`` to ``topic_id`` and return the log's receipt.

        A record without an external_ref is given a fresh one.

        Raises EncodeError before any append if the record or its
        external_ref is malformed, and SubmitError if the append fails.
        On TIMEOUT the record may or may not have been appended.
        """
        if not record.external_ref:
            record = dataclasses.replace(record, external_ref=next_id())
        ref = record.external_ref
        check_external_ref(ref)
        payload = codec.encode(record)
        limit = timeout if timeout is not None else self._timeout

        try:
            receipt = await asyncio.wait_for(
                self._client.log.append_message(topic_id, payload, external_memo(ref)),
                timeout=limit,
            )
        except asyncio.TimeoutError as exc:
            error = SubmitError(
                SubmitFailure.TIMEOUT,
                f"no receipt within {limit}s, outcome unknown",
                topic_id,
                ref,
            )
            logger.warning("Submission timed out: %s", error)
            raise error from exc
        except SubmitError as exc:
            error = exc.with_context(topic_id, ref)
            logger.warning("Submission failed: %s", error)
            raise error from exc

        if receipt.status is not SubmitStatus.ACCEPTED:
            error = SubmitError(SubmitFailure.REJECTED, receipt.detail, topic_id, ref)
            logger.warning("Submission rejected: %s", error)
            raise error

        message = SubmittedMessage(
            topic_id=topic_id,
            sequence_number=receipt.sequence_number,
            transaction_ref=receipt.transaction_ref,
            status=receipt.status,
            external_ref=ref,
        )
        logger.info(
            "Appended to topic %s: sequence %d, ref %s, tx %s",
            topic_id, message.sequence_number, ref, message.transaction_ref,
        )
        return message

    async def submit_sequence(
        self,
        topic_id: str,
        records: Iterable[Record],
        timeout: Optional[float] = None,
        stop_on_error: bool = False,
    ) -> list[SubmitOutcome]:
        """Submit records strictly one after another, in order.

        Every attempted record gets an outcome. With ``stop_on_error`` the
        first failure ends the run and later records are not attempted.
        """
        outcomes: list[SubmitOutcome] = []
        for record in records:
            if not record.external_ref:
                record = dataclasses.replace(record, external_ref=next_id())
            try:
                message = await self.submit(topic_id, record, timeout=timeout)
            except (SubmitError, EncodeError) as exc:
                outcomes.append(SubmitOutcome(
                    topic_id=topic_id,
                    external_ref=record.external_ref,
                    record=record,
                    error=exc,
                ))
                if stop_on_error:
                    break
                continue
            outcomes.append(SubmitOutcome(
                topic_id=topic_id,
                external_ref=record.external_ref,
                record=record,
                message=message,
            ))
        return outcomes
