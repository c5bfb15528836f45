from __future__ import annotations

import base64
import binascii
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def b64url_decode(value: str) -> bytes:
    """Decode base64url, tolerating missing padding but not stray characters."""
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PasteMetaIn(_CamelModel):
    expire_ts: int = Field(..., alias="expireTs", description="Absolute expiry, epoch seconds")
    views_allowed: Optional[int] = Field(
        default=None,
        alias="viewsAllowed",
        ge=1,
        description="Maximum successful reads; omitted means unlimited",
    )
    mime: Optional[str] = Field(default=None, max_length=255)
    single_view: Optional[bool] = Field(default=None, alias="singleView")


class PowSubmissionIn(_CamelModel):
    challenge: str = Field(..., min_length=1)
    nonce: int = Field(..., ge=0)


class PasteCreateRequest(_CamelModel):
    ct: str = Field(..., description="Ciphertext, base64url")
    iv: str = Field(..., description="Initialisation vector, base64url")
    meta: PasteMetaIn
    pow: Optional[PowSubmissionIn] = None

    @field_validator("ct", "iv")
    @classmethod
    def _must_be_base64url(cls, value: str) -> str:
        try:
            b64url_decode(value)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("must be base64url encoded") from exc
        return value


class PasteCreateResponse(_CamelModel):
    id: str
    delete_token: str = Field(..., alias="deleteToken")


class PasteMetaOut(_CamelModel):
    expire_ts: int = Field(..., alias="expireTs")
    views_allowed: Optional[int] = Field(default=None, alias="viewsAllowed")
    mime: Optional[str] = None
    single_view: bool = Field(default=False, alias="singleView")


class PastePayloadResponse(_CamelModel):
    ct: str
    iv: str
    meta: PasteMetaOut
    views_left: Optional[int] = Field(default=None, alias="viewsLeft")


class PowChallengeResponse(_CamelModel):
    challenge: str
    difficulty: int
    expires_at: int = Field(..., alias="expiresAt")


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str = "ok"
