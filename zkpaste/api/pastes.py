from __future__ import annotations

import logging
from http import HTTPStatus

from flask import Blueprint, current_app, request
from pydantic import ValidationError

from zkpaste.api.schemas import (
    ErrorResponse,
    HealthResponse,
    PasteCreateRequest,
    PasteCreateResponse,
    PasteMetaOut,
    PastePayloadResponse,
    PowChallengeResponse,
    b64url_decode,
    b64url_encode,
)
from zkpaste.config import PasteSettings
from zkpaste.domain.errors import HTTP_STATUS_BY_CODE, ErrorCode, Rejection, StorageError
from zkpaste.observability import get_correlation_id
from zkpaste.repositories.paste_store import DeleteOutcome
from zkpaste.services.paste_service import PasteMeta, PasteService, PowSubmission

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


def _service() -> PasteService:
    return current_app.extensions["zkpaste"]["service"]


def _settings() -> PasteSettings:
    return current_app.extensions["zkpaste"]["settings"]


def _error(code: ErrorCode) -> tuple[dict, int]:
    return ErrorResponse(error=code.value).model_dump(), HTTP_STATUS_BY_CODE[code]


def client_key() -> str:
    """
    Key used for rate limiting: the peer address, or the first
    ``X-Forwarded-For`` hop when the peer is a trusted proxy.
    """
    remote = request.remote_addr or "unknown"
    if remote in _settings().trusted_proxies:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return remote


@api_bp.errorhandler(StorageError)
def _storage_error(exc: StorageError) -> tuple[dict, int]:
    logger.error(
        "Request failed on storage error",
        exc_info=exc,
        extra={
            "event": "request_storage_error",
            "error_type": type(exc).__name__,
            "correlation_id": get_correlation_id(),
        },
    )
    return _error(ErrorCode.STORAGE_ERROR)


@api_bp.route("/health", methods=["GET"])
def health() -> tuple[dict, int]:
    """Simple health check endpoint."""

    body = HealthResponse().model_dump()
    return body, HTTPStatus.OK


@api_bp.route("/pow", methods=["GET"])
def issue_pow():
    """Hand out a proof-of-work challenge; 204 when PoW is switched off."""
    challenge = _service().issue_challenge()
    if challenge is None:
        return "", HTTPStatus.NO_CONTENT

    body = PowChallengeResponse(
        challenge=challenge.token,
        difficulty=challenge.difficulty,
        expires_at=int(challenge.expires_at),
    )
    return body.model_dump(by_alias=True), HTTPStatus.OK


@api_bp.route("/pastes", methods=["POST"])
def create_paste() -> tuple[dict, int]:
    """
    Create a new paste.

    Request shape is checked by Pydantic; admission and business rules by
    the service layer.
    """
    raw = request.get_json(silent=True)
    if not isinstance(raw, dict):
        return _error(ErrorCode.INVALID_JSON)
    try:
        payload = PasteCreateRequest.model_validate(raw)
    except ValidationError:
        return _error(ErrorCode.INVALID_JSON)

    pow_submission = None
    if payload.pow is not None:
        pow_submission = PowSubmission(
            challenge=payload.pow.challenge,
            nonce=payload.pow.nonce,
        )

    result = _service().create_paste(
        client_key=client_key(),
        ciphertext=b64url_decode(payload.ct),
        iv=b64url_decode(payload.iv),
        meta=PasteMeta(
            expire_ts=payload.meta.expire_ts,
            views_allowed=payload.meta.views_allowed,
            mime=payload.meta.mime,
            single_view=bool(payload.meta.single_view),
        ),
        pow=pow_submission,
    )
    if isinstance(result, Rejection):
        return _error(result.code)

    body = PasteCreateResponse(id=result.id, delete_token=result.delete_token)
    return body.model_dump(by_alias=True), HTTPStatus.CREATED


@api_bp.route("/pastes/<paste_id>", methods=["GET"])
def get_paste(paste_id: str) -> tuple[dict, int]:
    """Serve one view of a paste. Absent, expired and used-up all look the same."""
    paste = _service().retrieve_paste(paste_id)
    if paste is None:
        return _error(ErrorCode.NOT_FOUND)

    body = PastePayloadResponse(
        ct=b64url_encode(paste.ciphertext),
        iv=b64url_encode(paste.iv),
        meta=PasteMetaOut(
            expire_ts=paste.expire_ts,
            views_allowed=paste.views_allowed,
            mime=paste.mime,
            single_view=paste.single_view,
        ),
        views_left=paste.views_left,
    )
    return body.model_dump(by_alias=True), HTTPStatus.OK


@api_bp.route("/pastes/<paste_id>", methods=["DELETE"])
def delete_paste(paste_id: str):
    """
    Delete a paste early using the token handed out at creation.

    A wrong token and an unknown id both answer 403.
    """
    token = request.args.get("token")
    if not token:
        return _error(ErrorCode.MISSING_TOKEN)

    outcome = _service().delete_paste(paste_id, token)
    if outcome is DeleteOutcome.DELETED:
        return "", HTTPStatus.NO_CONTENT
    return _error(ErrorCode.INVALID_TOKEN)
