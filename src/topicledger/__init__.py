"""topicledger — hash-committed records on an ordered consensus topic."""

from topicledger.client import LedgerClient
from topicledger.commitment import CommitmentTracker, commit, verify
from topicledger.config import LedgerConfig
from topicledger.submitter import SubmitOutcome, Submitter
from topicledger.subscriber import Subscriber, Subscription, SubscriptionState

__all__ = [
    "LedgerClient",
    "CommitmentTracker",
    "commit",
    "verify",
    "LedgerConfig",
    "SubmitOutcome",
    "Submitter",
    "Subscriber",
    "Subscription",
    "SubscriptionState",
]
