from __future__ import annotations

import logging
import threading
from typing import Optional

from flask import Flask

from zkpaste.domain.errors import StorageError
from zkpaste.repositories.paste_store import PasteStore


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600.0
_CORRELATION_ID = "expiry-reaper"

_reaper_lock = threading.Lock()


class ExpiryReaper:
    """
    Background thread that sweeps expired pastes on a fixed interval.

    Reads already refuse expired pastes on their own; the reaper only
    reclaims space. A failing run is logged and the loop carries on with
    the next interval. ``stop()`` wakes the sleeping thread immediately.
    """

    def __init__(
        self,
        store: PasteStore,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Optional[int]:
        """Run a single sweep; returns the count, or ``None`` if it failed."""
        try:
            deleted = self._store.sweep_expired()
        except StorageError:
            logger.warning(
                "Expiry reaper: storage error; retrying next interval",
                exc_info=True,
                extra={
                    "event": "expiry_reaper_storage_error",
                    "correlation_id": _CORRELATION_ID,
                },
            )
            return None
        except Exception:  # pragma: no cover - keep the loop alive
            logger.exception(
                "Error in expiry reaper run",
                extra={
                    "event": "expiry_reaper_error",
                    "correlation_id": _CORRELATION_ID,
                },
            )
            return None

        logger.info(
            "Expiry reaper: swept expired pastes",
            extra={
                "event": "expiry_reaper_swept",
                "deleted_count": deleted,
                "correlation_id": _CORRELATION_ID,
            },
        )
        return deleted

    def _loop(self) -> None:
        # Event.wait returns True as soon as stop() is called.
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="expiry-reaper",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def start_expiry_reaper(app: Flask) -> ExpiryReaper:
    """
    Start the expiry reaper for ``app`` in a background thread.

    This function is idempotent and will only start a single reaper per app.
    """

    ext = app.extensions["zkpaste"]
    with _reaper_lock:
        reaper: Optional[ExpiryReaper] = ext.get("reaper")
        if reaper is None:
            reaper = ExpiryReaper(
                ext["store"],
                interval_seconds=ext["settings"].reaper_interval_seconds,
            )
            ext["reaper"] = reaper
        reaper.start()
    return reaper
