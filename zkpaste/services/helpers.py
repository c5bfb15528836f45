from __future__ import annotations

import hashlib
import hmac
import secrets
import string

import bcrypt

ID_ALPHABET = string.ascii_letters + string.digits
DELETE_TOKEN_BYTES = 18  # 24 url-safe characters


def generate_paste_id(length: int) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def generate_delete_token() -> str:
    return secrets.token_urlsafe(DELETE_TOKEN_BYTES)


def _prehash(token: str, pepper: str) -> bytes:
    # bcrypt truncates at 72 bytes; feed it a fixed-size keyed digest instead.
    digest = hmac.new(pepper.encode("utf-8"), token.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest().encode("utf-8")


def hash_delete_token(raw_token: str, pepper: str, rounds: int = 12) -> str:
    hashed = bcrypt.hashpw(_prehash(raw_token, pepper), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_delete_token(raw_token: str, hashed: str, pepper: str) -> bool:
    """Recompute the salted hash and compare it in constant time."""
    stored = hashed.encode("utf-8")
    try:
        candidate = bcrypt.hashpw(_prehash(raw_token, pepper), stored)
    except ValueError:
        return False
    return hmac.compare_digest(candidate, stored)
