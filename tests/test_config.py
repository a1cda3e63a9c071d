"""Tests for environment-driven configuration."""

import pytest

from topicledger.config import LedgerConfig
from topicledger.errors import ConfigError

KEY = "ab" * 32

BASE = {"ACCOUNT_ID": "0.0.1234", "PRIVATE_KEY": KEY}


class TestFromEnv:
    def test_minimal(self) -> None:
        config = LedgerConfig.from_env(BASE)
        assert config.account_id == "0.0.1234"
        assert config.private_key == KEY
        assert config.topic_id is None
        assert config.network == "testnet"
        assert not config.listen_from_start
        assert config.listen_seconds is None

    def test_legacy_names_are_fallbacks(self) -> None:
        config = LedgerConfig.from_env({
            "MY_ACCOUNT_ID": "0.0.7",
            "MY_PRIVATE_KEY": KEY,
            "MY_TOPIC_ID": "0.0.99",
        })
        assert config.account_id == "0.0.7"
        assert config.topic_id == "0.0.99"

    def test_primary_names_win(self) -> None:
        config = LedgerConfig.from_env({**BASE, "MY_ACCOUNT_ID": "0.0.7"})
        assert config.account_id == "0.0.1234"

    def test_listen_options(self) -> None:
        config = LedgerConfig.from_env({
            **BASE,
            "LISTEN_FROM_START": "1",
            "LISTEN_SECONDS": "2.5",
            "HEDERA_NETWORK": "Mainnet",
        })
        assert config.listen_from_start
        assert config.listen_seconds == 2.5
        assert config.network == "mainnet"

    def test_key_not_in_repr(self) -> None:
        assert KEY not in repr(LedgerConfig.from_env(BASE))

    def test_reads_dotenv_file(self, tmp_path, monkeypatch) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text(f"ACCOUNT_ID=0.0.55\nPRIVATE_KEY={KEY}\nTOPIC_ID=0.0.66\n")
        # load_dotenv writes into os.environ; setenv first so teardown removes them.
        for name in ("ACCOUNT_ID", "PRIVATE_KEY", "TOPIC_ID"):
            monkeypatch.setenv(name, "")
            monkeypatch.delenv(name)
        config = LedgerConfig.from_env(dotenv_path=env_file)
        assert config.account_id == "0.0.55"
        assert config.topic_id == "0.0.66"


class TestValidation:
    def test_missing_both(self) -> None:
        with pytest.raises(ConfigError, match="ACCOUNT_ID, PRIVATE_KEY"):
            LedgerConfig.from_env({})

    def test_blank_counts_as_missing(self) -> None:
        with pytest.raises(ConfigError, match="PRIVATE_KEY"):
            LedgerConfig.from_env({"ACCOUNT_ID": "0.0.1", "PRIVATE_KEY": "   "})

    @pytest.mark.parametrize("overrides, fragment", [
        ({"ACCOUNT_ID": "1234"}, "ACCOUNT_ID"),
        ({"PRIVATE_KEY": "not-hex"}, "PRIVATE_KEY"),
        ({"TOPIC_ID": "topic"}, "TOPIC_ID"),
        ({"HEDERA_NETWORK": "devnet"}, "HEDERA_NETWORK"),
        ({"LISTEN_SECONDS": "soon"}, "LISTEN_SECONDS"),
    ])
    def test_malformed_values(self, overrides: dict, fragment: str) -> None:
        with pytest.raises(ConfigError, match=fragment):
            LedgerConfig.from_env({**BASE, **overrides})

    def test_require_topic(self) -> None:
        with pytest.raises(ConfigError, match="TOPIC_ID"):
            LedgerConfig.from_env(BASE).require_topic()
        assert LedgerConfig.from_env({**BASE, "TOPIC_ID": "0.0.9"}).require_topic() == "0.0.9"
