"""topicledger CLI — create a topic, submit the demo messages, or listen.

Usage:
    python -m topicledger.cli create-topic
    python -m topicledger.cli submit-demo
    python -m topicledger.cli listen

Commands take no flags. Credentials and the topic come from the
environment or a .env file (see topicledger.config).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Union

from topicledger.client import LedgerClient
from topicledger.commitment import CommitmentTracker, commit
from topicledger.config import LedgerConfig
from topicledger.errors import SubscriptionFault, TopicLedgerError
from topicledger.ids import SERIAL_LENGTH, next_id
from topicledger.models.message import FROM_TOPIC_START, DeliveredMessage
from topicledger.models.record import (
    HashCommitment,
    OwnershipCertificate,
    PaymentInstruction,
    PlainText,
    RawBytes,
    Record,
)
from topicledger.submitter import SubmitOutcome, Submitter
from topicledger.subscriber import Subscriber, Subscription


LISTEN_LOOKBACK = timedelta(seconds=30)
SUBMIT_TIMEOUT = 60.0


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL") or "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _make_client(config: LedgerConfig) -> LedgerClient:
    return LedgerClient.from_config(config)


# ----------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------

def describe(record: Union[Record, RawBytes, None]) -> str:
    """One-line human description of a decoded record."""
    if isinstance(record, PlainText):
        return f"'{record.body}'"
    if isinstance(record, PaymentInstruction):
        return (
            f"payment {record.amount} {record.currency} from {record.payer} "
            f"to {record.payee}: {record.description} (invoice {record.invoice_ref})"
        )
    if isinstance(record, OwnershipCertificate):
        return (
            f"certificate: {record.owner} owns {record.device} "
            f"(serial {record.serial_number})"
        )
    if isinstance(record, HashCommitment):
        return f"commitment sha256:{record.digest_hex}"
    if isinstance(record, RawBytes):
        return f"<{len(record.payload)} opaque bytes>"
    return "<undecoded>"


def report_outcome(client: LedgerClient, outcome: SubmitOutcome) -> None:
    head = f"topic {outcome.topic_id} | ref {outcome.external_ref}"
    if outcome.message is None:
        print(f"FAILED  {head} | {outcome.error}", file=sys.stderr)
        return
    message = outcome.message
    print(
        f"OK      {head} | sequence {message.sequence_number} "
        f"| status {message.status.value} | {describe(outcome.record)}"
    )
    tx_url = client.transaction_url(message.transaction_ref)
    if tx_url:
        print(f"        {tx_url}")


def report_delivery(message: DeliveredMessage) -> None:
    print(f"\nNew message on topic {message.topic_id}:")
    print(f"- Sequence: {message.sequence_number}")
    print(f"- Timestamp: {message.consensus_time.isoformat()}")
    print(f"- Contents: {describe(message.record)}")
    print(f"- Running Hash: {message.running_digest_hex}")


def report_fault(fault: SubscriptionFault) -> None:
    print(f"Subscription error: {fault}", file=sys.stderr)


# ----------------------------------------------------------------------
# Scripts
# ----------------------------------------------------------------------

async def create_topic(client: LedgerClient) -> str:
    """Create a topic with a memo carrying a fresh correlation id."""
    memo = f"Programmatically created topic - {next_id()}"
    topic_id = await client.create_topic(memo)
    print(f"Created topic {topic_id} (memo: {memo})")
    print(f"  {client.topic_url(topic_id)}")
    return topic_id


def demo_records(external_ref: str) -> list[Record]:
    """The demo script: greeting, payment, certificate, then its commitment.

    The commitment must follow the certificate, so the list is submitted
    in order.
    """
    certificate = OwnershipCertificate(
        owner="Alice",
        device="iPhone 16",
        serial_number=next_id(SERIAL_LENGTH),
        external_ref=external_ref,
    )
    return [
        PlainText(body="Hello World", external_ref=external_ref),
        PaymentInstruction(
            payer="Alice",
            payee="Bob",
            amount=Decimal("100"),
            currency="CHF",
            description="Payment for Swiss chocolates",
            invoice_ref=next_id(),
            external_ref=external_ref,
        ),
        certificate,
        commit(certificate, external_ref=external_ref),
    ]


async def submit_demo(client: LedgerClient, topic_id: str) -> list[SubmitOutcome]:
    external_ref = next_id()
    print(f"Submitting demo messages to topic {topic_id} (ref {external_ref})")
    print(f"  {client.topic_url(topic_id)}")
    submitter = Submitter(client, timeout=SUBMIT_TIMEOUT)
    outcomes = await submitter.submit_sequence(topic_id, demo_records(external_ref))
    for outcome in outcomes:
        report_outcome(client, outcome)
    return outcomes


async def listen(
    client: LedgerClient,
    topic_id: str,
    start_time: datetime,
    duration: Optional[float] = None,
) -> Subscription:
    """Print every message on a topic until ``duration`` elapses or cancelled.

    Commitments are paired with the records they cover as both arrive.
    """
    tracker = CommitmentTracker()

    def on_message(message: DeliveredMessage) -> None:
        report_delivery(message)
        match = tracker.observe(message.sequence_number, message.record)
        if match is not None:
            print(
                f"- Commitment at sequence {match.commitment_sequence} verifies "
                f"record at sequence {match.record_sequence}"
            )

    subscription = await Subscriber(client).subscribe(
        topic_id, start_time, on_message, report_fault,
    )
    print(f"Listening on topic {topic_id} (Ctrl+C to exit)")
    try:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        subscription.unsubscribe()
        await subscription.wait_closed()
    return subscription


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_create_topic(args: argparse.Namespace) -> int:
    async def run(config: LedgerConfig) -> None:
        async with _make_client(config) as client:
            await create_topic(client)

    return _run(run)


def cmd_submit_demo(args: argparse.Namespace) -> int:
    async def run(config: LedgerConfig) -> bool:
        topic_id = config.require_topic()
        async with _make_client(config) as client:
            outcomes = await submit_demo(client, topic_id)
        return all(o.ok for o in outcomes)

    return _run(run)


def cmd_listen(args: argparse.Namespace) -> int:
    async def run(config: LedgerConfig) -> None:
        topic_id = config.require_topic()
        if config.listen_from_start:
            start_time = FROM_TOPIC_START
        else:
            start_time = datetime.now(timezone.utc) - LISTEN_LOOKBACK
        async with _make_client(config) as client:
            await listen(client, topic_id, start_time, config.listen_seconds)

    return _run(run)


def _run(script: Callable[[LedgerConfig], Awaitable[object]]) -> int:
    try:
        config = LedgerConfig.from_env()
        result = asyncio.run(script(config))
    except KeyboardInterrupt:
        return 0
    except TopicLedgerError as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1
    return 1 if result is False else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="topicledger",
        description="Submit and read hash-committed records on a consensus topic",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("create-topic", help="Create a new topic")
    sub.add_parser("submit-demo", help="Submit the demo messages to TOPIC_ID")
    sub.add_parser("listen", help="Print messages arriving on TOPIC_ID")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging()

    commands = {
        "create-topic": cmd_create_topic,
        "submit-demo": cmd_submit_demo,
        "listen": cmd_listen,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
