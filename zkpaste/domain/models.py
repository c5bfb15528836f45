from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    LargeBinary,
    String,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from zkpaste.db import Base


class Paste(Base):
    """
    Encrypted paste persisted via SQLAlchemy.

    Rows are deleted outright once consumed or expired; there is no status
    column and no tombstone.
    """

    __tablename__ = "pastes"
    __table_args__ = (
        CheckConstraint(
            "views_allowed IS NULL OR views_allowed >= 1",
            name="ck_pastes_views_allowed_min_1",
        ),
        CheckConstraint(
            "views_used >= 0",
            name="ck_pastes_views_used_non_negative",
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    iv: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    expire_ts: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    views_allowed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    views_used: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    single_view: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )
    mime: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    delete_token_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    @validates("ciphertext", "iv")
    def _validate_immutable_payload(self, key: str, value: bytes) -> bytes:
        """
        Enforce that the encrypted payload is immutable after creation.

        The value can be set on new instances, but any subsequent attempt to
        change it will raise an error.
        """

        current = getattr(self, key, None)
        if current is not None and current != value:
            raise ValueError(f"Paste {key} is immutable and cannot be modified.")
        return value
