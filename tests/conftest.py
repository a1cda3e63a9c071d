"""Shared fixtures: an in-memory log and a client that owns it."""

import asyncio
from typing import Callable

import pytest

from topicledger.client import LedgerClient
from topicledger.log.memory import InMemoryLog


@pytest.fixture
def log() -> InMemoryLog:
    return InMemoryLog(network="testnet")


@pytest.fixture
def client(log: InMemoryLog) -> LedgerClient:
    return LedgerClient(log)


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds or time runs out."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
