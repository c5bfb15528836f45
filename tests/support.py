from __future__ import annotations

import time
from typing import Any, Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from zkpaste.db import uses_single_connection
from zkpaste.repositories.paste_store import PasteStore

TEST_PEPPER = "test-pepper-12345"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_store(engine: Engine, clock: Callable[[], float] = time.time, **kwargs: Any) -> PasteStore:
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    kwargs.setdefault("hash_rounds", 4)
    kwargs.setdefault("serialize", uses_single_connection(engine))
    return PasteStore(session_factory, pepper=TEST_PEPPER, clock=clock, **kwargs)
