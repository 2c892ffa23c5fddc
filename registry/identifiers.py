"""
registry/identifiers.py

Identifier generation for the two record families.

- Tracking Token (TT): random UUID4, opaque, used only while a case is active.
- Archive ID (AID):    random UUID4, internal audit cross-reference.
- Registry ID:         ``NSN-XXXX-XXXX-XXXX`` drawn from a 32-symbol alphabet
                       with no 0/O or 1/I, so staff can copy it onto paper
                       and EHR records without transcription errors.

All functions are safe to call concurrently.  Randomness comes from the OS
CSPRNG (``uuid.uuid4`` / ``secrets``); a failing entropy source raises and is
not retried.
"""

from __future__ import annotations

import re
import secrets
import uuid
from typing import Callable

REGISTRY_PREFIX = "NSN"
REGISTRY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_GROUPS = 3
_GROUP_LEN = 4

REGISTRY_ID_PATTERN = re.compile(
    rf"^{REGISTRY_PREFIX}(-[{REGISTRY_ALPHABET}]{{{_GROUP_LEN}}}){{{_GROUPS}}}$"
)

MAX_REGISTRY_ID_ATTEMPTS = 5


def new_tracking_token() -> str:
    return str(uuid.uuid4())


def new_archive_id() -> str:
    return str(uuid.uuid4())


def new_registry_id() -> str:
    """Return a fresh ``NSN-XXXX-XXXX-XXXX`` candidate (not yet checked for collision)."""
    groups = (
        "".join(secrets.choice(REGISTRY_ALPHABET) for _ in range(_GROUP_LEN))
        for _ in range(_GROUPS)
    )
    return "-".join([REGISTRY_PREFIX, *groups])


def is_registry_id(value: str) -> bool:
    """Return ``True`` if *value* has the exact Registry ID shape."""
    return isinstance(value, str) and REGISTRY_ID_PATTERN.fullmatch(value) is not None


def registry_id_candidates(
    is_taken: Callable[[str], bool],
    max_attempts: int = MAX_REGISTRY_ID_ATTEMPTS,
    generate: Callable[[], str] = new_registry_id,
):
    """
    Yield up to *max_attempts* Registry IDs not reported taken by *is_taken*.

    The caller writes the candidate under its own transaction and asks for
    the next one if the write still collides.  When the generator is
    exhausted the caller gives up.
    """
    for _ in range(max_attempts):
        candidate = generate()
        if not is_taken(candidate):
            yield candidate
