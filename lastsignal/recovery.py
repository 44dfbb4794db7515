# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
"""
Recovery codes: an offline secret that stops delivery without email access.

Codes are 16 characters from A-Z0-9, shown as XXXX-XXXX-XXXX-XXXX.
Only the SHA-256 digest is stored.
"""
import secrets
import string
from datetime import datetime

from .lifecycle import TransitionResult, emergency_stop
from .models import User
from .tokens import digest_token, digests_match

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 16
GROUP_SIZE = 4

# Compared against when the email is unknown so both paths do the same work
_DUMMY_DIGEST = digest_token("0" * CODE_LENGTH)


def format_code(raw: str) -> str:
    return "-".join(raw[i:i + GROUP_SIZE] for i in range(0, len(raw), GROUP_SIZE))


def normalize(code: str | None) -> str:
    if not code:
        return ""
    return "".join(ch for ch in code if ch.isalnum()).upper()


def generate(user: User) -> str:
    """Rotate the user's recovery code and return it formatted for display."""
    raw = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    user.recovery_code_digest = digest_token(raw)
    user.recovery_code_viewed_at = None
    return format_code(raw)


def verify(user: User | None, code: str | None) -> bool:
    normalized = normalize(code)
    if user is None or not user.recovery_code_digest:
        digests_match(normalized or "-", _DUMMY_DIGEST)
        return False
    if len(normalized) != CODE_LENGTH:
        digests_match(normalized or "-", _DUMMY_DIGEST)
        return False
    return digests_match(normalized, user.recovery_code_digest)


def use(user: User | None, code: str | None, now: datetime) -> tuple[str, TransitionResult] | None:
    """Emergency stop, then rotate so the consumed code cannot be replayed.

    Returns the new code and the stop result, or None on any mismatch.
    """
    if not verify(user, code):
        return None
    result = emergency_stop(user, now)
    return generate(user), result


def mark_viewed(user: User, now: datetime) -> bool:
    if user.recovery_code_viewed_at is not None:
        return False
    user.recovery_code_viewed_at = now
    return True
