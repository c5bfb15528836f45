from __future__ import annotations

import os
import threading
import time
from collections import Counter
from typing import Callable

import pytest
from flask import Flask
from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from zkpaste.db import Base
from zkpaste.domain.errors import IdCollisionError, PasteSizeError, StorageError
from zkpaste.domain.models import Paste
from zkpaste.repositories.paste_store import DeleteOutcome, PasteStore

from tests.support import FakeClock, make_store


def _create(store: PasteStore, clock: FakeClock, **kwargs) -> str:
    kwargs.setdefault("ciphertext", b"ciphertext-bytes")
    kwargs.setdefault("iv", os.urandom(12))
    kwargs.setdefault("expire_ts", int(clock.now) + 3600)
    kwargs.setdefault("raw_delete_token", "delete-me-please-000000")
    return store.create(**kwargs)


def _row_count(engine: Engine) -> int:
    with Session(engine) as s:
        return s.execute(select(func.count()).select_from(Paste)).scalar_one()


def _run_concurrently(*targets: Callable[[], object]) -> tuple[list, list]:
    """Start every target behind one barrier; return (results, exceptions)."""
    barrier = threading.Barrier(len(targets))
    results: list = []
    errors: list = []
    lock = threading.Lock()

    def run(target: Callable[[], object]) -> None:
        barrier.wait()
        try:
            value = target()
        except Exception as exc:  # surfaced to the caller
            with lock:
                errors.append(exc)
            return
        with lock:
            results.append(value)

    threads = [threading.Thread(target=run, args=(t,)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_round_trip_is_byte_exact(store: PasteStore, clock: FakeClock) -> None:
    ct = bytes(range(256)) * 3
    iv = os.urandom(16)
    paste_id = _create(store, clock, ciphertext=ct, iv=iv, mime="application/x-thing")

    payload = store.consume_view(paste_id)

    assert payload is not None
    assert payload.ciphertext == ct
    assert payload.iv == iv
    assert payload.mime == "application/x-thing"


def test_id_uses_configured_length(engine: Engine, clock: FakeClock) -> None:
    store = make_store(engine, clock, id_length=16)
    paste_id = _create(store, clock)
    assert len(paste_id) == 16
    assert paste_id.isalnum()


def test_raw_delete_token_is_not_persisted(store: PasteStore, clock: FakeClock, engine: Engine) -> None:
    paste_id = _create(store, clock, raw_delete_token="raw-secret-token")
    with Session(engine) as s:
        row = s.get(Paste, paste_id)
    assert row is not None
    assert "raw-secret-token" not in row.delete_token_hash


def test_oversize_ciphertext_is_refused(engine: Engine, clock: FakeClock) -> None:
    store = make_store(engine, clock, max_size_bytes=8)
    with pytest.raises(PasteSizeError):
        _create(store, clock, ciphertext=b"123456789")


def test_id_collision_is_retried_not_overwritten(
    store: PasteStore,
    clock: FakeClock,
    engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    ids = iter(["dupe000000", "dupe000000", "fresh00000"])
    monkeypatch.setattr(
        "zkpaste.repositories.paste_store.generate_paste_id",
        lambda _length: next(ids),
    )

    first = _create(store, clock, ciphertext=b"first")
    second = _create(store, clock, ciphertext=b"second")

    assert first == "dupe000000"
    assert second == "fresh00000"
    assert store.consume_view(first).ciphertext == b"first"
    assert _row_count(engine) == 2


def test_id_collision_gives_up_after_max_attempts(
    engine: Engine,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store = make_store(engine, clock, max_id_attempts=3)
    monkeypatch.setattr(
        "zkpaste.repositories.paste_store.generate_paste_id",
        lambda _length: "always-same",
    )
    _create(store, clock)

    with pytest.raises(IdCollisionError):
        _create(store, clock)


def test_other_integrity_failures_are_not_retried(
    store: PasteStore,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    issued: list[str] = []

    def _next_id(_length: int) -> str:
        issued.append(f"id{len(issued):08d}")
        return issued[-1]

    monkeypatch.setattr("zkpaste.repositories.paste_store.generate_paste_id", _next_id)

    # NOT NULL on iv fails; the id itself is free.
    with pytest.raises(StorageError) as excinfo:
        _create(store, clock, iv=None)

    assert not isinstance(excinfo.value, IdCollisionError)
    assert issued == ["id00000000"]


# ---------------------------------------------------------------------------
# View consumption
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("views_allowed", [1, 2, 3, 5])
def test_views_left_counts_down_including_current_read(
    store: PasteStore,
    clock: FakeClock,
    views_allowed: int,
) -> None:
    paste_id = _create(store, clock, views_allowed=views_allowed)

    reported = []
    for _ in range(views_allowed):
        payload = store.consume_view(paste_id)
        assert payload is not None
        reported.append(payload.views_left)

    assert reported == list(range(views_allowed, 0, -1))
    assert store.consume_view(paste_id) is None


def test_unlimited_paste_reports_no_views_left_and_survives(
    store: PasteStore,
    clock: FakeClock,
) -> None:
    paste_id = _create(store, clock)

    for _ in range(10):
        payload = store.consume_view(paste_id)
        assert payload is not None
        assert payload.views_left is None


def test_single_view_paste_is_served_once(store: PasteStore, clock: FakeClock, engine: Engine) -> None:
    paste_id = _create(store, clock, single_view=True, ciphertext=b"burn after reading")

    first = store.consume_view(paste_id)
    assert first is not None
    assert first.ciphertext == b"burn after reading"
    assert first.single_view is True

    assert store.consume_view(paste_id) is None
    assert _row_count(engine) == 0


def test_unknown_id_is_not_found(store: PasteStore) -> None:
    assert store.consume_view("does-not-exist") is None


def test_expiry_boundary(store: PasteStore, clock: FakeClock) -> None:
    now = clock.now
    at_now = _create(store, clock, expire_ts=int(now))
    one_later = _create(store, clock, expire_ts=int(now) + 1)

    assert store.consume_view(at_now, now=now) is None
    assert store.consume_view(one_later, now=now) is not None
    assert store.consume_view(one_later, now=now + 0.999) is not None
    assert store.consume_view(one_later, now=now + 1) is None


def test_expired_row_is_deleted_when_read(store: PasteStore, clock: FakeClock, engine: Engine) -> None:
    paste_id = _create(store, clock, expire_ts=int(clock.now) + 5)
    clock.advance(10)

    assert store.consume_view(paste_id) is None
    assert _row_count(engine) == 0


def test_concurrent_reads_never_exceed_view_limit(file_engine: Engine) -> None:
    store = make_store(file_engine)
    views_allowed, readers = 3, 12
    paste_id = store.create(
        ciphertext=b"contended",
        iv=os.urandom(12),
        expire_ts=2_000_000_000,
        raw_delete_token="token",
        views_allowed=views_allowed,
    )

    barrier = threading.Barrier(readers)
    results: list = []
    errors: list = []
    lock = threading.Lock()

    def reader() -> None:
        barrier.wait()
        try:
            payload = store.consume_view(paste_id)
        except Exception as exc:  # surfaced below
            with lock:
                errors.append(exc)
            return
        with lock:
            results.append(payload)

    threads = [threading.Thread(target=reader) for _ in range(readers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    successes = [r for r in results if r is not None]
    assert len(successes) == views_allowed
    assert len(results) - len(successes) == readers - views_allowed
    assert Counter(p.views_left for p in successes) == Counter([1, 2, 3])
    assert _row_count(file_engine) == 0


def test_concurrent_reads_on_in_memory_app_database(make_app: Callable[..., Flask]) -> None:
    store = make_app().extensions["zkpaste"]["store"]

    for _ in range(5):
        paste_id = store.create(
            ciphertext=b"contended",
            iv=os.urandom(12),
            expire_ts=int(time.time()) + 3600,
            raw_delete_token="token",
            views_allowed=3,
        )

        results, errors = _run_concurrently(
            *[lambda: store.consume_view(paste_id) for _ in range(20)]
        )

        assert errors == []
        successes = [r for r in results if r is not None]
        assert sorted(p.views_left for p in successes) == [1, 2, 3]
        assert store.consume_view(paste_id) is None


def test_deletes_and_sweep_overlapping_reads(file_engine: Engine) -> None:
    store = make_store(file_engine)

    for _ in range(5):
        now = int(time.time())
        for _ in range(3):
            store.create(
                ciphertext=b"stale",
                iv=os.urandom(12),
                expire_ts=now - 1,
                raw_delete_token="other",
            )
        paste_id = store.create(
            ciphertext=b"contended",
            iv=os.urandom(12),
            expire_ts=now + 3600,
            raw_delete_token="owner-token",
            views_allowed=10,
        )

        def read() -> tuple:
            started = time.monotonic()
            return ("read", started, store.consume_view(paste_id))

        def remove() -> tuple:
            outcome = store.delete_if_token_matches(paste_id, "owner-token")
            return ("delete", time.monotonic(), outcome)

        def sweep() -> tuple:
            return ("sweep", None, store.sweep_expired())

        results, errors = _run_concurrently(*[read] * 5, remove, remove, sweep)

        assert errors == []
        deletes = [(at, outcome) for kind, at, outcome in results if kind == "delete"]
        assert sorted(outcome.value for _, outcome in deletes) == ["deleted", "forbidden"]
        assert [n for kind, _, n in results if kind == "sweep"] == [3]

        deleted_at = next(at for at, outcome in deletes if outcome is DeleteOutcome.DELETED)
        served = [(started, p) for kind, started, p in results if kind == "read" and p is not None]
        assert all(started < deleted_at for started, _ in served)
        assert len({p.views_left for _, p in served}) == len(served)

        assert store.consume_view(paste_id) is None
        assert _row_count(file_engine) == 0


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


def test_delete_with_correct_token(store: PasteStore, clock: FakeClock) -> None:
    paste_id = _create(store, clock, raw_delete_token="correct-token")

    assert store.delete_if_token_matches(paste_id, "correct-token") is DeleteOutcome.DELETED
    assert store.consume_view(paste_id) is None


def test_wrong_token_and_unknown_id_look_the_same(store: PasteStore, clock: FakeClock) -> None:
    paste_id = _create(store, clock, raw_delete_token="correct-token")

    wrong = store.delete_if_token_matches(paste_id, "wrong-token")
    unknown = store.delete_if_token_matches("nonexistent", "correct-token")

    assert wrong is DeleteOutcome.FORBIDDEN
    assert unknown is DeleteOutcome.FORBIDDEN
    assert store.consume_view(paste_id) is not None


def test_second_delete_is_forbidden(store: PasteStore, clock: FakeClock) -> None:
    paste_id = _create(store, clock, raw_delete_token="correct-token")

    assert store.delete_if_token_matches(paste_id, "correct-token") is DeleteOutcome.DELETED
    assert store.delete_if_token_matches(paste_id, "correct-token") is DeleteOutcome.FORBIDDEN


def test_unconditional_delete_returns_row_count(store: PasteStore, clock: FakeClock) -> None:
    paste_id = _create(store, clock)

    assert store.delete(paste_id) == 1
    assert store.delete(paste_id) == 0


# ---------------------------------------------------------------------------
# Sweeping
# ---------------------------------------------------------------------------


def test_sweep_deletes_all_and_only_expired(store: PasteStore, clock: FakeClock, engine: Engine) -> None:
    now = int(clock.now)
    _create(store, clock, expire_ts=now - 7200)
    _create(store, clock, expire_ts=now - 1)
    _create(store, clock, expire_ts=now)
    survivor = _create(store, clock, expire_ts=now + 1)

    assert store.sweep_expired(now=now) == 3
    assert store.sweep_expired(now=now) == 0
    assert _row_count(engine) == 1
    assert store.consume_view(survivor, now=now) is not None


def test_sweep_on_empty_store(store: PasteStore) -> None:
    assert store.sweep_expired() == 0


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------


def test_storage_failures_surface_as_storage_error(store: PasteStore, engine: Engine) -> None:
    Base.metadata.drop_all(engine)

    with pytest.raises(StorageError):
        store.consume_view("anything")
    with pytest.raises(StorageError):
        store.sweep_expired()
