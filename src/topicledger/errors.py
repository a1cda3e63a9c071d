"""Error taxonomy for topic ledger operations.

Every failure a caller can see is one of these classes:

- ConfigError: missing or invalid credentials, raised before any network use.
- CreateError: the log refused to create a topic.
- EncodeError / VerifyError: local data bugs; abort the current operation.
- SubmitError: an append failed. The ``reason`` tells the caller whether
  resubmitting makes sense (NETWORK) or not (AUTHENTICATION, REJECTED).
  TIMEOUT means the outcome is unknown.
- SubscriptionFault: a fault on a live subscription. Transient unless
  ``terminal`` is set.
"""

from __future__ import annotations

import enum
from typing import Any, Optional


class TopicLedgerError(Exception):
    """Base class for all topic ledger failures."""


class ConfigError(TopicLedgerError):
    """Raised when required configuration is absent or malformed."""


class CreateError(TopicLedgerError):
    """Raised when topic creation fails."""


class EncodeError(TopicLedgerError, ValueError):
    """Raised when a record has a missing or malformed field."""


class VerifyError(TopicLedgerError):
    """Raised when a commitment cannot be checked because the record is invalid."""


class SubmitFailure(str, enum.Enum):
    """Why an append did not produce a sequence number."""
    AUTHENTICATION = "authentication"  # signing credential rejected
    NETWORK = "network"  # transport error, caller may retry
    REJECTED = "rejected"  # log-level validation failure
    TIMEOUT = "timeout"  # outcome unknown

    @property
    def retryable(self) -> bool:
        return self is SubmitFailure.NETWORK


class SubmitError(TopicLedgerError):
    """Raised when a single append attempt fails.

    ``topic_id`` and ``external_ref`` are filled in by the Submitter so that
    failures can be traced against the same identifiers as successes.
    """

    def __init__(
        self,
        reason: SubmitFailure,
        detail: str = "",
        topic_id: Optional[str] = None,
        external_ref: Optional[str] = None,
    ) -> None:
        self.reason = reason
        self.detail = detail
        self.topic_id = topic_id
        self.external_ref = external_ref
        super().__init__(self._describe())

    @property
    def retryable(self) -> bool:
        return self.reason.retryable

    @property
    def outcome_unknown(self) -> bool:
        """True when the record may or may not have been appended."""
        return self.reason is SubmitFailure.TIMEOUT

    def _describe(self) -> str:
        text = f"{self.reason.value}"
        if self.detail:
            text += f": {self.detail}"
        if self.topic_id:
            text += f" (topic {self.topic_id}"
            if self.external_ref:
                text += f", ref {self.external_ref}"
            text += ")"
        return text

    def with_context(self, topic_id: str, external_ref: str) -> SubmitError:
        """Return a copy carrying the topic and correlation reference."""
        return SubmitError(self.reason, self.detail, topic_id, external_ref)


class SubscriptionFault(TopicLedgerError):
    """A genuine fault surfaced on a subscription's error channel."""

    def __init__(
        self,
        topic_id: str,
        cause: Any = None,
        terminal: bool = False,
    ) -> None:
        self.topic_id = topic_id
        self.cause = cause
        self.terminal = terminal
        kind = "terminal" if terminal else "transient"
        super().__init__(f"{kind} subscription fault on topic {topic_id}: {cause!r}")
