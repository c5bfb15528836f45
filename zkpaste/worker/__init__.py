from __future__ import annotations

"""
Worker-related setup.

The expiry reaper normally runs as a thread inside the web process. This
module lets it run on its own, e.g. when the web tier is scaled to several
processes and exactly one of them should reclaim expired pastes.
"""

import signal
import threading

from flask import Flask


def create_worker_app() -> Flask:
    """
    Create a Flask application instance suitable for the reaper process.

    The web-side reaper is left off; ``run_worker`` starts it explicitly.
    """
    from zkpaste import create_app  # local import to avoid circular dependency

    return create_app(start_reaper=False)


def run_worker() -> None:
    """Run the expiry reaper in the foreground until SIGINT/SIGTERM."""
    from zkpaste.worker.expiry_worker import start_expiry_reaper

    app = create_worker_app()
    reaper = start_expiry_reaper(app)
    stopped = threading.Event()

    def _shutdown(_signum: int, _frame: object) -> None:
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    reaper.run_once()
    stopped.wait()
    reaper.stop()


if __name__ == "__main__":
    run_worker()
