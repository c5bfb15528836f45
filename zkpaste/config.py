from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping


BASE_DIR = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class BaseConfig:
    """Base application configuration shared across environments."""

    APP_NAME: str = "zkpaste"

    # Database
    SQLALCHEMY_DATABASE_URI: str = os.getenv(
        "DATABASE_URL",
        f"sqlite+pysqlite:///{BASE_DIR / 'data' / 'pastes.db'}",
    )
    SQLALCHEMY_ECHO: bool = False
    SQLALCHEMY_FUTURE: bool = True
    AUTO_CREATE_SCHEMA: bool = _env_bool("AUTO_CREATE_SCHEMA", True)

    # Alembic
    ALEMBIC_CONFIG: str = os.getenv(
        "ALEMBIC_CONFIG",
        str(BASE_DIR / "alembic.ini"),
    )

    # Proof of work
    POW_ENABLED: bool = _env_bool("POW_ENABLED", True)
    POW_DIFFICULTY: int = _env_int("POW_DIFFICULTY", 10)
    POW_TTL_SECONDS: int = _env_int("POW_TTL_SECONDS", 180)

    # Rate limiting
    RL_ENABLED: bool = _env_bool("RL_ENABLED", True)
    RL_CAPACITY: int = _env_int("RL_CAPACITY", 30)
    RL_REFILL_PER_MINUTE: int = _env_int("RL_REFILL_PER_MINUTE", 30)
    TRUSTED_PROXIES: str = os.getenv("TRUSTED_PROXIES", "")

    # Paste limits
    MAX_SIZE_BYTES: int = _env_int("MAX_SIZE_BYTES", 1024 * 1024)
    ID_LENGTH: int = _env_int("ID_LENGTH", 10)
    MIN_TTL_SECONDS: int = _env_int("MIN_TTL_SECONDS", 10)

    # Deletion tokens
    DELETION_TOKEN_PEPPER: str | None = os.getenv("DELETION_TOKEN_PEPPER")
    DELETION_TOKEN_ROUNDS: int = _env_int("DELETION_TOKEN_ROUNDS", 12)

    # Background reaper
    REAPER_INTERVAL_SECONDS: int = _env_int("REAPER_INTERVAL_SECONDS", 3600)

    TESTING: bool = False
    DEBUG: bool = False
    REQUIRE_PEPPER: bool = False


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    SQLALCHEMY_ECHO = False


class ProductionConfig(BaseConfig):
    DEBUG = False
    REQUIRE_PEPPER = True


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_ECHO = False

    SQLALCHEMY_DATABASE_URI: str = os.getenv(
        "TEST_DATABASE_URL",
        "sqlite+pysqlite:///:memory:",
    )
    DELETION_TOKEN_PEPPER = "test-pepper"
    DELETION_TOKEN_ROUNDS = 4
    POW_DIFFICULTY = 8


CONFIG_BY_NAME = {
    "development": DevelopmentConfig,
    "dev": DevelopmentConfig,
    "production": ProductionConfig,
    "prod": ProductionConfig,
    "testing": TestingConfig,
    "test": TestingConfig,
}


def get_config(env_name: str | None) -> type[BaseConfig]:
    """Return a config class for the given environment name."""
    if not env_name:
        return DevelopmentConfig
    return CONFIG_BY_NAME.get(env_name, DevelopmentConfig)


@dataclass(frozen=True)
class PasteSettings:
    """
    Immutable snapshot of the settings the paste services consume.

    Built once by the application factory; services never read the Flask
    config directly.
    """

    pow_enabled: bool
    pow_difficulty: int
    pow_ttl_seconds: int
    rl_enabled: bool
    rl_capacity: int
    rl_refill_per_minute: int
    max_size_bytes: int
    id_length: int
    min_ttl_seconds: int
    deletion_pepper: str
    deletion_rounds: int
    reaper_interval_seconds: int
    trusted_proxies: frozenset[str] = frozenset()

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "PasteSettings":
        pepper = config.get("DELETION_TOKEN_PEPPER")
        if not pepper:
            if config.get("REQUIRE_PEPPER", False):
                raise RuntimeError(
                    "DELETION_TOKEN_PEPPER must be set in production."
                )
            pepper = secrets.token_urlsafe(32)
            logger.warning(
                "DELETION_TOKEN_PEPPER not set; using a per-process pepper",
                extra={"event": "config_generated_pepper"},
            )

        proxies = config.get("TRUSTED_PROXIES") or ""
        if isinstance(proxies, str):
            proxies = [p.strip() for p in proxies.split(",")]

        return cls(
            pow_enabled=bool(config.get("POW_ENABLED", True)),
            pow_difficulty=int(config.get("POW_DIFFICULTY", 10)),
            pow_ttl_seconds=int(config.get("POW_TTL_SECONDS", 180)),
            rl_enabled=bool(config.get("RL_ENABLED", True)),
            rl_capacity=int(config.get("RL_CAPACITY", 30)),
            rl_refill_per_minute=int(config.get("RL_REFILL_PER_MINUTE", 30)),
            max_size_bytes=int(config.get("MAX_SIZE_BYTES", 1024 * 1024)),
            id_length=int(config.get("ID_LENGTH", 10)),
            min_ttl_seconds=int(config.get("MIN_TTL_SECONDS", 10)),
            deletion_pepper=str(pepper),
            deletion_rounds=int(config.get("DELETION_TOKEN_ROUNDS", 12)),
            reaper_interval_seconds=int(config.get("REAPER_INTERVAL_SECONDS", 3600)),
            trusted_proxies=frozenset(p for p in proxies if p),
        )
