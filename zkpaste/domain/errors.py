from __future__ import annotations

import enum
from dataclasses import dataclass
from http import HTTPStatus


class ErrorCode(str, enum.Enum):
    """Stable, client-facing error codes."""

    RATE_LIMITED = "rate_limited"
    POW_REQUIRED = "pow_required"
    POW_INVALID = "pow_invalid"
    SIZE_INVALID = "size_invalid"
    EXPIRY_TOO_SOON = "expiry_too_soon"
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    NOT_FOUND = "not_found"
    INVALID_JSON = "invalid_json"
    STORAGE_ERROR = "storage_error"


HTTP_STATUS_BY_CODE: dict[ErrorCode, HTTPStatus] = {
    ErrorCode.RATE_LIMITED: HTTPStatus.TOO_MANY_REQUESTS,
    ErrorCode.POW_REQUIRED: HTTPStatus.BAD_REQUEST,
    ErrorCode.POW_INVALID: HTTPStatus.BAD_REQUEST,
    ErrorCode.SIZE_INVALID: HTTPStatus.BAD_REQUEST,
    ErrorCode.EXPIRY_TOO_SOON: HTTPStatus.BAD_REQUEST,
    ErrorCode.MISSING_TOKEN: HTTPStatus.BAD_REQUEST,
    ErrorCode.INVALID_TOKEN: HTTPStatus.FORBIDDEN,
    ErrorCode.NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorCode.INVALID_JSON: HTTPStatus.BAD_REQUEST,
    ErrorCode.STORAGE_ERROR: HTTPStatus.INTERNAL_SERVER_ERROR,
}


@dataclass(frozen=True)
class Rejection:
    """An expected, client-recoverable refusal to carry out a request."""

    code: ErrorCode

    @property
    def http_status(self) -> HTTPStatus:
        return HTTP_STATUS_BY_CODE[self.code]


class PasteError(Exception):
    """Base class for paste-related errors."""


class StorageError(PasteError):
    """Raised when the underlying store fails (I/O, constraint, corruption)."""


class IdCollisionError(StorageError):
    """Raised when no free paste id could be generated."""


class PasteSizeError(PasteError, ValueError):
    """Raised when a ciphertext larger than the store accepts reaches create()."""
