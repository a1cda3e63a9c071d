"""Correlation id generator — short random references for off-system tracing.

Ids are memo and invoice references, not commitments, so the
non-cryptographic ``random`` module is enough. No registry of issued ids is
kept: at length 5 the space is 36**5 (about 60M) and callers accept the
collision risk in exchange for stateless, non-blocking generation.
"""

from __future__ import annotations

import random
import string

ALPHABET = string.ascii_uppercase + string.digits

DEFAULT_LENGTH = 5
SERIAL_LENGTH = 15


def next_id(length: int = DEFAULT_LENGTH) -> str:
    """Return ``length`` characters drawn uniformly from A-Z0-9."""
    if length < 1:
        raise ValueError(f"Id length must be at least 1, got {length}")
    return "".join(random.choices(ALPHABET, k=length))
