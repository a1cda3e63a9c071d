"""Runtime configuration — operator credentials and topic selection.

Values come from the process environment, with a ``.env`` file loaded
first when present. Recognised names:

    ACCOUNT_ID         operator account, e.g. 0.0.1234        (required)
    PRIVATE_KEY        ED25519 private key, hex or DER hex    (required)
    TOPIC_ID           existing topic to write to / read from (optional)
    HEDERA_NETWORK     testnet | previewnet | mainnet         (default testnet)
    LISTEN_FROM_START  any non-empty value: listen from topic creation
    LISTEN_SECONDS     stop listening after this many seconds

The MY_ACCOUNT_ID / MY_PRIVATE_KEY / MY_TOPIC_ID names used by earlier
scripts are read as fallbacks. A missing required value is fatal.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from topicledger.errors import ConfigError


NETWORKS = ("testnet", "previewnet", "mainnet")

_ENTITY_ID_RE = re.compile(r"^\d+\.\d+\.\d+$")
_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")


@dataclass(frozen=True)
class LedgerConfig:
    """Validated operator configuration. The private key is never repr'd."""

    account_id: str
    private_key: str = field(repr=False)
    topic_id: Optional[str] = None
    network: str = "testnet"
    listen_from_start: bool = False
    listen_seconds: Optional[float] = None

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Path] = None,
    ) -> LedgerConfig:
        """Build a config from ``env`` (default: os.environ after .env load).

        Raises ConfigError if a required value is missing or malformed.
        """
        if env is None:
            load_dotenv(dotenv_path or find_dotenv(usecwd=True))
            env = os.environ

        account_id = _read(env, "ACCOUNT_ID")
        private_key = _read(env, "PRIVATE_KEY")
        topic_id = _read(env, "TOPIC_ID") or None
        network = (env.get("HEDERA_NETWORK") or "testnet").strip().lower()

        missing = [
            name for name, value in (("ACCOUNT_ID", account_id), ("PRIVATE_KEY", private_key))
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
        if not _ENTITY_ID_RE.match(account_id):
            raise ConfigError(f"ACCOUNT_ID must look like 0.0.1234, got {account_id!r}")
        if not _HEX_RE.match(private_key):
            raise ConfigError("PRIVATE_KEY must be a hex-encoded ED25519 key")
        if topic_id is not None and not _ENTITY_ID_RE.match(topic_id):
            raise ConfigError(f"TOPIC_ID must look like 0.0.1234, got {topic_id!r}")
        if network not in NETWORKS:
            raise ConfigError(
                f"HEDERA_NETWORK must be one of {', '.join(NETWORKS)}, got {network!r}"
            )

        listen_seconds = None
        raw_seconds = (env.get("LISTEN_SECONDS") or "").strip()
        if raw_seconds:
            try:
                listen_seconds = float(raw_seconds)
            except ValueError as exc:
                raise ConfigError(f"LISTEN_SECONDS must be a number, got {raw_seconds!r}") from exc

        return cls(
            account_id=account_id,
            private_key=private_key,
            topic_id=topic_id,
            network=network,
            listen_from_start=bool((env.get("LISTEN_FROM_START") or "").strip()),
            listen_seconds=listen_seconds,
        )

    def require_topic(self) -> str:
        """Return the configured topic id or raise ConfigError."""
        if not self.topic_id:
            raise ConfigError("Missing required configuration: TOPIC_ID")
        return self.topic_id


def _read(env: Mapping[str, str], name: str) -> str:
    value = env.get(name) or env.get(f"MY_{name}") or ""
    return value.strip()
