from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, Union

from zkpaste.domain.errors import ErrorCode, Rejection
from zkpaste.domain.validation import validate_new_paste
from zkpaste.observability import get_correlation_id
from zkpaste.repositories.paste_store import DeleteOutcome, PastePayload, PasteStore
from zkpaste.services.helpers import generate_delete_token
from zkpaste.services.pow import PowChallenge, PowChallengeIssuer, PowVerdict
from zkpaste.services.rate_limiter import RateLimiter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PasteMeta:
    expire_ts: int
    views_allowed: Optional[int] = None
    mime: Optional[str] = None
    single_view: bool = False


@dataclass(frozen=True)
class PowSubmission:
    challenge: str
    nonce: int


@dataclass(frozen=True)
class CreatedPaste:
    id: str
    delete_token: str


CreateResult = Union[CreatedPaste, Rejection]


@dataclass
class PasteService:
    """
    Application service coordinating paste-related use cases.

    Creation passes the admission gates in a fixed order: rate limiter,
    proof of work, field validation, then the store. Reads and deletes go
    straight to the store. ``rate_limiter`` / ``pow_issuer`` are ``None``
    when the corresponding gate is disabled.

    Expected refusals come back as ``Rejection`` values; only storage
    failures raise.
    """

    store: PasteStore
    max_size_bytes: int
    min_ttl_seconds: int
    rate_limiter: Optional[RateLimiter] = None
    pow_issuer: Optional[PowChallengeIssuer] = None
    clock: Callable[[], float] = time.time

    # -------------------------------------------------------------------------
    # Proof of work
    # -------------------------------------------------------------------------
    def issue_challenge(self) -> Optional[PowChallenge]:
        if self.pow_issuer is None:
            return None
        return self.pow_issuer.issue()

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------
    def create_paste(
        self,
        *,
        client_key: str,
        ciphertext: bytes,
        iv: bytes,
        meta: PasteMeta,
        pow: Optional[PowSubmission] = None,
    ) -> CreateResult:
        if self.rate_limiter is not None and not self.rate_limiter.try_acquire(client_key):
            return self._reject(ErrorCode.RATE_LIMITED)

        if self.pow_issuer is not None:
            if pow is None:
                return self._reject(ErrorCode.POW_REQUIRED)
            verdict = self.pow_issuer.verify(pow.challenge, pow.nonce)
            if verdict is not PowVerdict.OK:
                return self._reject(ErrorCode.POW_INVALID, pow_verdict=verdict.value)

        code = validate_new_paste(
            ciphertext=ciphertext,
            iv=iv,
            expire_ts=meta.expire_ts,
            max_size_bytes=self.max_size_bytes,
            min_ttl_seconds=self.min_ttl_seconds,
            now=self.clock(),
        )
        if code is not None:
            return self._reject(code)

        delete_token = generate_delete_token()
        paste_id = self.store.create(
            ciphertext=ciphertext,
            iv=iv,
            expire_ts=meta.expire_ts,
            raw_delete_token=delete_token,
            views_allowed=meta.views_allowed,
            single_view=meta.single_view,
            mime=meta.mime,
        )
        return CreatedPaste(id=paste_id, delete_token=delete_token)

    # -------------------------------------------------------------------------
    # Retrieval / deletion
    # -------------------------------------------------------------------------
    def retrieve_paste(self, paste_id: str) -> Optional[PastePayload]:
        return self.store.consume_view(paste_id, now=self.clock())

    def delete_paste(self, paste_id: str, token: str) -> DeleteOutcome:
        return self.store.delete_if_token_matches(paste_id, token)

    def _reject(self, code: ErrorCode, *, pow_verdict: Optional[str] = None) -> Rejection:
        logger.warning(
            "Paste creation rejected",
            extra={
                "event": "paste_create_rejected",
                "error_code": code.value,
                "pow_verdict": pow_verdict,
                "correlation_id": get_correlation_id(),
            },
        )
        return Rejection(code)
