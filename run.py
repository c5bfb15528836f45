from __future__ import annotations

import os

from zkpaste import create_app


def main() -> None:
    env = os.getenv("APP_ENV", "development")
    app = create_app(env)

    host = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    port = int(os.getenv("FLASK_RUN_PORT", "8080"))

    try:
        app.run(host=host, port=port)
    finally:
        reaper = app.extensions["zkpaste"]["reaper"]
        if reaper is not None:
            reaper.stop()


if __name__ == "__main__":
    main()
