"""Ledger client — the one shared, explicitly owned connection to the log.

A process builds one LedgerClient, hands it to every Submitter and
Subscriber, and closes it once on the way out:

    async with LedgerClient.from_config(config) as client:
        submitter = Submitter(client)
        ...

``close()`` is idempotent, so an error path that closes early and the
context manager exit never close the connection twice.
"""

from __future__ import annotations

from typing import Optional

from topicledger.config import LedgerConfig
from topicledger.log.service import LogService


HASHSCAN_URL = "https://hashscan.io"


class LedgerClient:
    """Owns a LogService handle for the lifetime of a process."""

    def __init__(self, log: LogService) -> None:
        self._log = log
        self._closed = False

    @classmethod
    def from_config(cls, config: LedgerConfig) -> LedgerClient:
        from topicledger.log.hedera import HederaLog

        return cls(HederaLog(config.account_id, config.private_key, network=config.network))

    @property
    def log(self) -> LogService:
        if self._closed:
            raise RuntimeError("LedgerClient is closed")
        return self._log

    @property
    def network(self) -> str:
        return self._log.network

    @property
    def closed(self) -> bool:
        return self._closed

    async def create_topic(self, memo: str) -> str:
        """Create a topic on the log. Raises CreateError."""
        return await self.log.create_topic(memo)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._log.close()

    async def __aenter__(self) -> LedgerClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Explorer links
    # ------------------------------------------------------------------

    def topic_url(self, topic_id: str) -> str:
        return f"{HASHSCAN_URL}/{self.network}/topic/{topic_id}"

    def transaction_url(self, transaction_ref: str) -> Optional[str]:
        if not transaction_ref:
            return None
        return f"{HASHSCAN_URL}/{self.network}/tx/{transaction_ref}"
