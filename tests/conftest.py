from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Generator

import pytest
from flask import Flask
from sqlalchemy.engine import Engine

from zkpaste import create_app
from zkpaste.db import Base, build_engine
from zkpaste.domain import models as _models  # noqa: F401
from zkpaste.repositories.paste_store import PasteStore

from tests.support import TEST_PEPPER, FakeClock, make_store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture(scope="function")
def engine() -> Generator[Engine, None, None]:
    """
    Create a fresh in-memory SQLite engine for each test function.

    This keeps tests focused on store behavior while using a real database
    session for every operation.
    """

    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def file_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """File-backed SQLite so concurrent threads get real, separate connections."""

    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'pastes.db'}")
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def store(engine: Engine, clock: FakeClock) -> PasteStore:
    return make_store(engine, clock)


# ---------------------------------------------------------------------------
# Flask app
# ---------------------------------------------------------------------------


@pytest.fixture
def make_app() -> Callable[..., Flask]:
    """Build a testing app; keyword arguments override config keys."""

    def _make(**overrides: Any) -> Flask:
        config = {
            "SQLALCHEMY_DATABASE_URI": "sqlite+pysqlite:///:memory:",
            "DELETION_TOKEN_PEPPER": TEST_PEPPER,
            "DELETION_TOKEN_ROUNDS": 4,
            "POW_ENABLED": False,
            "RL_ENABLED": False,
            "TRUSTED_PROXIES": "",
        }
        config.update(overrides)
        return create_app("testing", overrides=config)

    return _make
