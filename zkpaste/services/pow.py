"""Proof-of-work challenges guarding paste creation.

A challenge is a random token the client must extend with a nonce such that
``sha256(f"{token}:{nonce}")`` starts with at least ``difficulty`` zero bits.
Challenges live in process memory, expire after a ttl and can be verified
exactly once, whatever the outcome of that attempt.
"""
from __future__ import annotations

import enum
import hashlib
import logging
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from zkpaste.observability import get_correlation_id

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24
DEFAULT_MAX_OUTSTANDING = 100_000


class PowVerdict(str, enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    INSUFFICIENT_WORK = "insufficient_work"


@dataclass
class PowChallenge:
    token: str
    difficulty: int
    issued_at: float
    expires_at: float
    used: bool = False


def leading_zero_bits(digest: bytes) -> int:
    """Count leading zero bits, most significant byte first."""
    zeros = 0
    for byte in digest:
        if byte == 0:
            zeros += 8
            continue
        zeros += 8 - byte.bit_length()
        break
    return zeros


def pow_digest(token: str, nonce: int) -> bytes:
    return hashlib.sha256(f"{token}:{nonce}".encode("utf-8")).digest()


def solve(token: str, difficulty: int, max_attempts: int = 10_000_000) -> Optional[int]:
    """Brute-force a nonce for ``token``; used by tests and reference clients."""
    for nonce in range(max_attempts):
        if leading_zero_bits(pow_digest(token, nonce)) >= difficulty:
            return nonce
    return None


class PowChallengeIssuer:
    """
    Mints and verifies single-use, time-boxed challenges.

    All state sits in one dict guarded by one lock; ``verify`` checks and
    marks a challenge used under that lock, so concurrent attempts on the
    same token see exactly one winner.

    Used challenges are kept until they expire so that a replay is reported
    as ``ALREADY_USED``. Expired ones are purged while issuing, at most once
    per ``purge_interval`` seconds, and the map is capped at
    ``max_outstanding`` entries (oldest evicted first).
    """

    def __init__(
        self,
        difficulty: int,
        ttl_seconds: int,
        *,
        max_outstanding: int = DEFAULT_MAX_OUTSTANDING,
        purge_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.difficulty = difficulty
        self.ttl_seconds = ttl_seconds
        self._max_outstanding = max_outstanding
        self._purge_interval = ttl_seconds if purge_interval is None else purge_interval
        self._clock = clock
        self._challenges: dict[str, PowChallenge] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)

    def issue(self) -> PowChallenge:
        now = self._clock()
        challenge = PowChallenge(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            difficulty=self.difficulty,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            if now - self._last_purge >= self._purge_interval:
                self._purge_expired_locked(now)
            while len(self._challenges) >= self._max_outstanding:
                # dicts keep insertion order, so the first key is the oldest.
                del self._challenges[next(iter(self._challenges))]
            self._challenges[challenge.token] = challenge
        return challenge

    def verify(self, token: str, nonce: int) -> PowVerdict:
        now = self._clock()
        with self._lock:
            challenge = self._challenges.get(token)
            if challenge is None:
                verdict = PowVerdict.NOT_FOUND
            elif challenge.used:
                verdict = PowVerdict.ALREADY_USED
            else:
                challenge.used = True
                if now > challenge.expires_at:
                    verdict = PowVerdict.EXPIRED
                elif leading_zero_bits(pow_digest(token, nonce)) >= challenge.difficulty:
                    verdict = PowVerdict.OK
                else:
                    verdict = PowVerdict.INSUFFICIENT_WORK

        if verdict is not PowVerdict.OK:
            logger.info(
                "Proof-of-work rejected",
                extra={
                    "event": "pow_rejected",
                    "pow_verdict": verdict.value,
                    "correlation_id": get_correlation_id(),
                },
            )
        return verdict

    def purge_expired(self, now: Optional[float] = None) -> int:
        if now is None:
            now = self._clock()
        with self._lock:
            return self._purge_expired_locked(now)

    def _purge_expired_locked(self, now: float) -> int:
        stale = [t for t, c in self._challenges.items() if now > c.expires_at]
        for token in stale:
            del self._challenges[token]
        self._last_purge = now
        return len(stale)
