from __future__ import annotations

import os
from typing import Any, Mapping, Optional

from flask import Flask
from flask_cors import CORS

from .config import PasteSettings, get_config
from .db import SessionLocal, get_engine, init_db, uses_single_connection
from .observability import init_observability
from .api.pastes import api_bp
from .repositories.paste_store import PasteStore
from .services.paste_service import PasteService
from .services.pow import PowChallengeIssuer
from .services.rate_limiter import RateLimiter
from .worker.expiry_worker import start_expiry_reaper


def _build_services(app: Flask) -> None:
    """
    Build the long-lived services once per app and hang them off
    ``app.extensions``; request handlers look them up from there.
    """
    settings = PasteSettings.from_mapping(app.config)

    store = PasteStore(
        SessionLocal,
        pepper=settings.deletion_pepper,
        id_length=settings.id_length,
        max_size_bytes=settings.max_size_bytes,
        hash_rounds=settings.deletion_rounds,
        serialize=uses_single_connection(get_engine()),
    )
    rate_limiter = (
        RateLimiter(settings.rl_capacity, settings.rl_refill_per_minute)
        if settings.rl_enabled
        else None
    )
    pow_issuer = (
        PowChallengeIssuer(settings.pow_difficulty, settings.pow_ttl_seconds)
        if settings.pow_enabled
        else None
    )
    service = PasteService(
        store=store,
        max_size_bytes=settings.max_size_bytes,
        min_ttl_seconds=settings.min_ttl_seconds,
        rate_limiter=rate_limiter,
        pow_issuer=pow_issuer,
    )

    app.extensions["zkpaste"] = {
        "settings": settings,
        "store": store,
        "rate_limiter": rate_limiter,
        "pow_issuer": pow_issuer,
        "service": service,
        "reaper": None,
    }


def create_app(
    env_name: str | None = None,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    start_reaper: Optional[bool] = None,
) -> Flask:
    """
    Application factory for the paste server.

    The configuration is selected based on the provided ``env_name`` or,
    if not given, the ``APP_ENV`` environment variable (falling back to
    ``development``). ``overrides`` is applied on top, which is mostly
    useful in tests.
    """
    if env_name is None:
        env_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__)
    app_config = get_config(env_name)
    app.config.from_object(app_config)
    if overrides:
        app.config.update(overrides)

    CORS(
        app,
        resources={r"/api/*": {"origins": "*"}},
        expose_headers=["X-Correlation-ID"],
    )

    # Initialize infrastructure layers
    init_observability(app)
    init_db(app)
    _build_services(app)

    # Register API blueprints
    app.register_blueprint(api_bp)

    # Start background expiry reaper (disabled in testing)
    if start_reaper is None:
        start_reaper = not app.config.get("TESTING", False)
    if start_reaper:
        start_expiry_reaper(app)

    return app
