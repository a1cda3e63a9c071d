"""Hedera Consensus Service backend for the log service contract.

Topics are HCS topics; appends are signed TopicMessageSubmitTransactions;
subscriptions are mirror-node TopicMessageQuery streams. The SDK is
blocking, so every network round trip runs in a worker thread and the
calling task only suspends. Subscription callbacks arrive on SDK threads
and are handed through unchanged: the Subscriber does the thread hop.

The SDK is imported on first construction, so importing this package does
not require it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from topicledger.errors import CreateError, SubmitError, SubmitFailure
from topicledger.log.service import TransportCallback, TransportClosed
from topicledger.models.message import AppendReceipt, SubmitStatus


logger = logging.getLogger(__name__)

# Receipt and precheck codes that mean the signing credential was refused.
AUTHENTICATION_CODES = frozenset({
    "INVALID_SIGNATURE",
    "INVALID_PAYER_SIGNATURE",
    "INVALID_PAYER_ACCOUNT_ID",
    "PAYER_ACCOUNT_NOT_FOUND",
    "INVALID_ACCOUNT_ID",
    "KEY_PREFIX_MISMATCH",
    "UNAUTHORIZED",
})

# Codes that mean the node was busy or unreachable, not that the
# transaction itself was refused.
TRANSIENT_CODES = frozenset({
    "BUSY",
    "PLATFORM_NOT_ACTIVE",
    "PLATFORM_TRANSACTION_NOT_CREATED",
    "UNKNOWN",
})

# Mirror-node stream errors after which the stream will not recover.
TERMINAL_STREAM_CODES = frozenset({
    "NOT_FOUND",
    "INVALID_ARGUMENT",
    "PERMISSION_DENIED",
    "UNAUTHENTICATED",
})


class _HederaSubscription:
    def __init__(self, handle: Any) -> None:
        self._handle = handle
        self._cancelled = False

    def unsubscribe(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._handle.cancel()


class HederaLog:
    """Log service backed by a Hedera network.

    Usage:
        log = HederaLog("0.0.1234", "302e...", network="testnet")
        topic_id = await log.create_topic("orders")
        receipt = await log.append_message(topic_id, b"hello", "Ext_Id: ABCDE")
        await log.close()
    """

    def __init__(
        self,
        account_id: str,
        private_key: str,
        network: str = "testnet",
    ) -> None:
        from hiero_sdk_python import AccountId, Client, Network, PrivateKey

        self._network = network
        self._operator_id = AccountId.from_string(account_id)
        self._operator_key = PrivateKey.from_string_ed25519(private_key)
        self._client = Client(Network(network=network))
        self._client.set_operator(self._operator_id, self._operator_key)

    @property
    def network(self) -> str:
        return self._network

    async def create_topic(self, memo: str) -> str:
        try:
            receipt = await asyncio.to_thread(self._create_topic_sync, memo)
        except Exception as exc:
            raise CreateError(f"Topic creation failed: {exc}") from exc
        status = _status_name(receipt.status)
        if status != "SUCCESS":
            raise CreateError(f"Topic creation failed: {status}")
        return str(receipt.topic_id)

    async def append_message(
        self,
        topic_id: str,
        payload: bytes,
        external_memo: str,
    ) -> AppendReceipt:
        try:
            transaction_ref, receipt = await asyncio.to_thread(
                self._append_sync, topic_id, payload, external_memo,
            )
        except SubmitError:
            raise
        except Exception as exc:
            raise _classify_exception(exc) from exc

        status = _status_name(receipt.status)
        if status in AUTHENTICATION_CODES:
            raise SubmitError(SubmitFailure.AUTHENTICATION, status)
        if status != "SUCCESS":
            return AppendReceipt(
                sequence_number=0,
                transaction_ref=transaction_ref,
                status=SubmitStatus.REJECTED,
                detail=status,
            )
        return AppendReceipt(
            sequence_number=_sequence_number(receipt),
            transaction_ref=transaction_ref,
            status=SubmitStatus.ACCEPTED,
        )

    def open_subscription(
        self,
        topic_id: str,
        start_time: datetime,
        on_message: TransportCallback,
        on_error: TransportCallback,
    ) -> _HederaSubscription:
        from hiero_sdk_python import TopicId, TopicMessageQuery

        def _on_error(error: Any) -> None:
            if _stream_code(error) in TERMINAL_STREAM_CODES:
                on_error(TransportClosed(error))
            else:
                on_error(error)

        query = TopicMessageQuery(
            topic_id=TopicId.from_string(topic_id),
            start_time=start_time,
            chunking_enabled=True,
        )
        handle = query.subscribe(self._client, on_message=on_message, on_error=_on_error)
        return _HederaSubscription(handle)

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)

    # ------------------------------------------------------------------
    # Blocking SDK calls (run in worker threads)
    # ------------------------------------------------------------------

    def _create_topic_sync(self, memo: str) -> Any:
        from hiero_sdk_python import TopicCreateTransaction

        transaction = (
            TopicCreateTransaction(memo=memo, admin_key=self._operator_key.public_key())
            .freeze_with(self._client)
            .sign(self._operator_key)
        )
        return transaction.execute(self._client)

    def _append_sync(self, topic_id: str, payload: bytes, memo: str) -> tuple[str, Any]:
        from hiero_sdk_python import TopicId, TopicMessageSubmitTransaction

        transaction = TopicMessageSubmitTransaction(
            topic_id=TopicId.from_string(topic_id),
            message=payload.decode("utf-8"),
        )
        transaction.set_transaction_memo(memo)
        transaction.freeze_with(self._client)
        transaction.sign(self._operator_key)
        transaction_ref = str(transaction.transaction_id)
        logger.debug("Executing %s on topic %s", transaction_ref, topic_id)
        return transaction_ref, transaction.execute(self._client)


def _status_name(status: Any) -> str:
    from hiero_sdk_python.response_code import ResponseCode

    try:
        return ResponseCode(status).name
    except ValueError:
        return str(status)


def _sequence_number(receipt: Any) -> int:
    number = getattr(receipt, "topic_sequence_number", None)
    if number is None:
        # Older SDK releases expose it only on the protobuf receipt.
        number = receipt._receipt_proto.topicSequenceNumber
    return int(number)


def _classify_exception(exc: Exception) -> SubmitError:
    """Map an SDK exception to a SubmitError reason."""
    status = getattr(exc, "status", None)
    if status is not None:
        name = _status_name(status)
        if name in AUTHENTICATION_CODES:
            return SubmitError(SubmitFailure.AUTHENTICATION, name)
        if name in TRANSIENT_CODES:
            return SubmitError(SubmitFailure.NETWORK, name)
        return SubmitError(SubmitFailure.REJECTED, name)
    return SubmitError(SubmitFailure.NETWORK, f"{type(exc).__name__}: {exc}")


def _stream_code(error: Any) -> str:
    code = getattr(error, "code", None)
    if callable(code):
        code = code()
    return getattr(code, "name", "") or ""
