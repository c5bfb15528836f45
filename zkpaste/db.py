from __future__ import annotations

import typing as t
from pathlib import Path

from flask import Flask
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool


Base = declarative_base()

_engine: Engine | None = None
SessionLocal: scoped_session = scoped_session(
    sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)
)


def get_engine() -> Engine:
    """
    Return the global SQLAlchemy engine.

    This expects that ``init_db(app)`` has been called during application
    startup to configure the engine from Flask config.
    """
    if _engine is None:  # type: ignore[truthy-function]
        raise RuntimeError("Database engine is not initialized. Call init_db(app) first.")
    return t.cast(Engine, _engine)


def build_engine(database_uri: str, *, echo: bool = False) -> Engine:
    """
    Create an engine for ``database_uri``.

    SQLite needs a little help: in-memory databases must share one connection
    across threads, and file databases need their parent directory to exist.
    """
    url = make_url(database_uri)
    kwargs: dict[str, t.Any] = {"echo": echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(url, **kwargs)


def uses_single_connection(engine: Engine) -> bool:
    """True when every session shares one DBAPI connection (in-memory SQLite)."""
    return isinstance(engine.pool, StaticPool)


def init_db(app: Flask) -> None:
    """
    Initialize the SQLAlchemy engine and session factory for the Flask app.

    Reads the database URL from ``app.config['SQLALCHEMY_DATABASE_URI']``.
    When ``AUTO_CREATE_SCHEMA`` is set the tables are created directly;
    otherwise the schema is expected to come from the Alembic migrations.
    """
    global _engine

    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI")
    if not database_uri:
        raise RuntimeError(
            "SQLALCHEMY_DATABASE_URI is not configured on the Flask app."
        )

    _engine = build_engine(
        database_uri,
        echo=app.config.get("SQLALCHEMY_ECHO", False),
    )
    # configure() does not reach sessions already in the registry.
    SessionLocal.remove()
    SessionLocal.configure(bind=_engine)

    if app.config.get("AUTO_CREATE_SCHEMA", True):
        # Import models so that Base.metadata is populated.
        from zkpaste.domain import models as _models  # noqa: F401

        Base.metadata.create_all(_engine)

    @app.teardown_appcontext
    def remove_session(_exc: BaseException | None) -> None:  # type: ignore[unused-variable]
        """Remove the scoped session at the end of the request."""

        SessionLocal.remove()
