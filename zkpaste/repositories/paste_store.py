from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Delete, Select, Update, delete, false, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from zkpaste.domain.errors import IdCollisionError, PasteSizeError, StorageError
from zkpaste.domain.models import Paste
from zkpaste.observability import get_correlation_id
from zkpaste.services.helpers import (
    generate_delete_token,
    generate_paste_id,
    hash_delete_token,
    verify_delete_token,
)


logger = logging.getLogger(__name__)

DEFAULT_MAX_ID_ATTEMPTS = 5


class DeleteOutcome(str, enum.Enum):
    DELETED = "deleted"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class PastePayload:
    """What a successful read hands back; ``views_left`` counts this read."""

    id: str
    ciphertext: bytes
    iv: bytes
    expire_ts: int
    views_allowed: Optional[int]
    single_view: bool
    mime: Optional[str]
    views_left: Optional[int]


class PasteStore:
    """
    Durable store for Paste rows with consumption semantics.

    Owns session lifecycle: opens a session per operation, commits on success,
    rolls back on failure and always closes. Any SQLAlchemy failure surfaces
    as ``StorageError``. No ORM entities escape this class.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        pepper: str,
        id_length: int = 10,
        max_size_bytes: int = 1024 * 1024,
        hash_rounds: int = 12,
        max_id_attempts: int = DEFAULT_MAX_ID_ATTEMPTS,
        clock: Callable[[], float] = time.time,
        serialize: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._pepper = pepper
        self._id_length = id_length
        self._max_size_bytes = max_size_bytes
        self._hash_rounds = hash_rounds
        self._max_id_attempts = max_id_attempts
        self._clock = clock
        # One shared connection (in-memory SQLite) gives no transaction
        # isolation between threads, so operations must take turns.
        self._serial_lock = threading.RLock() if serialize else None
        # Hashed against when the id is unknown, so both paths cost the same.
        self._dummy_hash = hash_delete_token(generate_delete_token(), pepper, hash_rounds)

    @contextmanager
    def _session_scope(self, operation: str) -> Iterator[Session]:
        guard: AbstractContextManager = self._serial_lock or nullcontext()
        with guard:
            session = self._session_factory()
            try:
                yield session
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error(
                    "Paste storage failure",
                    exc_info=True,
                    extra={
                        "event": "paste_storage_error",
                        "error_type": type(exc).__name__,
                        "correlation_id": get_correlation_id(),
                    },
                )
                raise StorageError(f"{operation} failed: {exc}") from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------
    def create(
        self,
        *,
        ciphertext: bytes,
        iv: bytes,
        expire_ts: int,
        raw_delete_token: str,
        views_allowed: Optional[int] = None,
        single_view: bool = False,
        mime: Optional[str] = None,
    ) -> str:
        """
        Persist a new paste under a freshly generated id and return the id.

        Fields are expected to have passed validation already. The deletion
        token is hashed here; only the hash is stored. A colliding id is
        retried with a new one, never overwritten.
        """
        if len(ciphertext) > self._max_size_bytes:
            raise PasteSizeError(
                f"ciphertext is {len(ciphertext)} bytes; limit is {self._max_size_bytes}."
            )
        if views_allowed is not None and views_allowed < 1:
            raise ValueError("views_allowed must be >= 1 when given.")

        token_hash = hash_delete_token(raw_delete_token, self._pepper, self._hash_rounds)

        for attempt in range(1, self._max_id_attempts + 1):
            paste_id = generate_paste_id(self._id_length)
            with self._session_scope("create") as session:
                session.add(
                    Paste(
                        id=paste_id,
                        ciphertext=ciphertext,
                        iv=iv,
                        expire_ts=expire_ts,
                        views_allowed=views_allowed,
                        views_used=0,
                        single_view=single_view,
                        mime=mime,
                        delete_token_hash=token_hash,
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    taken = session.execute(
                        select(Paste.id).where(Paste.id == paste_id)
                    ).first()
                    if taken is None:
                        # Some other constraint failed; a new id won't help.
                        raise
                    logger.warning(
                        "Paste id collision; retrying",
                        extra={
                            "event": "paste_id_collision",
                            "correlation_id": get_correlation_id(),
                        },
                    )
                    continue

            logger.info(
                "Paste created",
                extra={
                    "event": "paste_created",
                    "paste_id": paste_id,
                    "correlation_id": get_correlation_id(),
                },
            )
            return paste_id

        raise IdCollisionError(
            f"Could not allocate a free paste id in {self._max_id_attempts} attempts."
        )

    # -------------------------------------------------------------------------
    # Retrieval / viewing
    # -------------------------------------------------------------------------
    def consume_view(
        self,
        paste_id: str,
        now: Optional[float] = None,
    ) -> Optional[PastePayload]:
        """
        Atomically consume one view of a paste.

        A single guarded ``UPDATE ... RETURNING`` both checks availability
        (present, not expired, views remaining) and takes the view, so two
        callers racing for the last view cannot both win. It is the first
        statement of the transaction, which makes it take the write lock
        before anything is read.

        ``views_left`` is reported as it stood *before* this read, i.e. it
        includes the view being served. The row is deleted in the same
        transaction once the limit is reached or after a single-view read.

        Returns ``None`` when the paste is absent, expired or used up.
        """
        if now is None:
            now = self._clock()

        with self._session_scope("consume_view") as session:
            stmt: Update = (
                update(Paste)
                .where(
                    Paste.id == paste_id,
                    Paste.expire_ts > now,
                    or_(
                        Paste.views_allowed.is_(None),
                        Paste.views_used < Paste.views_allowed,
                    ),
                    or_(Paste.single_view == false(), Paste.views_used == 0),
                )
                .values(views_used=Paste.views_used + 1)
                .returning(
                    Paste.ciphertext,
                    Paste.iv,
                    Paste.expire_ts,
                    Paste.views_allowed,
                    Paste.views_used,
                    Paste.single_view,
                    Paste.mime,
                )
                .execution_options(synchronize_session=False)
            )
            row = session.execute(stmt).one_or_none()

            if row is None:
                expired: Delete = delete(Paste).where(
                    Paste.id == paste_id,
                    Paste.expire_ts <= now,
                )
                purged = session.execute(
                    expired.execution_options(synchronize_session=False)
                ).rowcount
                session.commit()
                if purged:
                    logger.info(
                        "Expired paste removed on read",
                        extra={
                            "event": "paste_expired_on_read",
                            "paste_id": paste_id,
                            "correlation_id": get_correlation_id(),
                        },
                    )
                return None

            views_used = int(row.views_used)
            views_allowed = row.views_allowed
            views_left = None if views_allowed is None else views_allowed - (views_used - 1)

            exhausted = bool(row.single_view) or (
                views_allowed is not None and views_used >= views_allowed
            )
            if exhausted:
                session.execute(
                    delete(Paste)
                    .where(Paste.id == paste_id)
                    .execution_options(synchronize_session=False)
                )
            session.commit()

        logger.info(
            "Paste view consumed",
            extra={
                "event": "paste_view_consumed",
                "paste_id": paste_id,
                "correlation_id": get_correlation_id(),
            },
        )
        if exhausted:
            logger.info(
                "Paste consumed and deleted",
                extra={
                    "event": "paste_consumed_deleted",
                    "paste_id": paste_id,
                    "correlation_id": get_correlation_id(),
                },
            )

        return PastePayload(
            id=paste_id,
            ciphertext=bytes(row.ciphertext),
            iv=bytes(row.iv),
            expire_ts=int(row.expire_ts),
            views_allowed=views_allowed,
            single_view=bool(row.single_view),
            mime=row.mime,
            views_left=views_left,
        )

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------
    def delete_if_token_matches(self, paste_id: str, raw_token: str) -> DeleteOutcome:
        """
        Delete a paste if ``raw_token`` hashes to the stored deletion hash.

        An unknown id, a wrong token and losing a race against a concurrent
        delete all yield ``FORBIDDEN``; callers cannot tell them apart.
        """
        with self._session_scope("delete_if_token_matches") as session:
            lookup: Select[tuple[str]] = select(Paste.delete_token_hash).where(
                Paste.id == paste_id
            )
            stored = session.execute(lookup).scalar_one_or_none()
            # Release the read before the write so SQLite never has to upgrade
            # a shared lock while another writer holds the reserved one.
            session.rollback()

            if stored is None:
                verify_delete_token(raw_token, self._dummy_hash, self._pepper)
                return DeleteOutcome.FORBIDDEN

            if not verify_delete_token(raw_token, stored, self._pepper):
                logger.info(
                    "Paste delete rejected",
                    extra={
                        "event": "paste_delete_forbidden",
                        "paste_id": paste_id,
                        "correlation_id": get_correlation_id(),
                    },
                )
                return DeleteOutcome.FORBIDDEN

            # Compare-and-delete: only the row whose hash we just verified.
            stmt: Delete = (
                delete(Paste)
                .where(Paste.id == paste_id, Paste.delete_token_hash == stored)
                .execution_options(synchronize_session=False)
            )
            deleted = session.execute(stmt).rowcount
            session.commit()

        if not deleted:
            return DeleteOutcome.FORBIDDEN

        logger.info(
            "Paste deleted",
            extra={
                "event": "paste_deleted",
                "paste_id": paste_id,
                "correlation_id": get_correlation_id(),
            },
        )
        return DeleteOutcome.DELETED

    def delete(self, paste_id: str) -> int:
        """Unconditionally delete a paste; returns the number of rows removed."""
        with self._session_scope("delete") as session:
            deleted = session.execute(
                delete(Paste)
                .where(Paste.id == paste_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            session.commit()
        return int(deleted or 0)

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """
        Delete every paste with ``expire_ts <= now`` and return how many went.

        Safe to run alongside reads and deletes: rows already gone are simply
        not counted.
        """
        if now is None:
            now = self._clock()

        with self._session_scope("sweep_expired") as session:
            deleted = session.execute(
                delete(Paste)
                .where(Paste.expire_ts <= now)
                .execution_options(synchronize_session=False)
            ).rowcount
            session.commit()
        return int(deleted or 0)
