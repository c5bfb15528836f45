"""
Creation preconditions for pastes.

These are pure functions: they look only at their arguments and never touch
storage, so a failing check can never leave a partially created paste behind.
"""
from __future__ import annotations

import time
from typing import Optional

from zkpaste.domain.errors import ErrorCode

IV_MIN_BYTES = 12
IV_MAX_BYTES = 64


def check_ciphertext_size(ciphertext: bytes, max_size_bytes: int) -> Optional[ErrorCode]:
    if not 0 < len(ciphertext) <= max_size_bytes:
        return ErrorCode.SIZE_INVALID
    return None


def check_iv_size(iv: bytes) -> Optional[ErrorCode]:
    if not IV_MIN_BYTES <= len(iv) <= IV_MAX_BYTES:
        return ErrorCode.SIZE_INVALID
    return None


def check_expiry(
    expire_ts: int,
    min_ttl_seconds: int,
    now: Optional[float] = None,
) -> Optional[ErrorCode]:
    """Exactly ``min_ttl_seconds`` in the future is accepted."""
    if now is None:
        now = time.time()
    if expire_ts < now + min_ttl_seconds:
        return ErrorCode.EXPIRY_TOO_SOON
    return None


def validate_new_paste(
    *,
    ciphertext: bytes,
    iv: bytes,
    expire_ts: int,
    max_size_bytes: int,
    min_ttl_seconds: int,
    now: Optional[float] = None,
) -> Optional[ErrorCode]:
    """Return the first failing check's code, or ``None`` when all pass."""

    return (
        check_ciphertext_size(ciphertext, max_size_bytes)
        or check_iv_size(iv)
        or check_expiry(expire_ts, min_ttl_seconds, now)
    )
