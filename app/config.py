"""Application configuration helpers and defaults."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.engine.url import make_url


class InvalidDatabaseURL(RuntimeError):
    """Raised when DATABASE_URL does not meet the expected requirements."""


def _normalize_db_url(raw_url: str) -> str:
    """Return a normalised connection URL.

    Legacy ``postgres://`` URLs are converted to the SQLAlchemy-compliant
    ``postgresql+psycopg://`` scheme and get an ``sslmode`` default. SQLite
    URLs are passed through untouched; they are only meant for local runs and
    the test-suite, where row locks are not available.
    """

    if not raw_url:
        raise InvalidDatabaseURL("DATABASE_URL is required and must not be empty")

    candidate = raw_url.strip()
    if candidate.startswith("postgres://"):
        candidate = "postgresql://" + candidate[len("postgres://") :]

    try:
        url = make_url(candidate)
    except Exception as exc:  # pragma: no cover - formatting delegated to SQLAlchemy
        raise InvalidDatabaseURL(f"Invalid DATABASE_URL provided: {candidate!r}") from exc

    driver = url.drivername or ""
    if driver.startswith("sqlite"):
        return candidate

    if driver in {"postgres", "postgresql"}:
        url = url.set(drivername="postgresql+psycopg")
    elif driver.startswith("postgresql+") and driver != "postgresql+psycopg":
        url = url.set(drivername="postgresql+psycopg")

    query = dict(url.query)
    if not query.get("sslmode"):
        query["sslmode"] = os.getenv("DB_SSLMODE", "require")
        url = url.set(query=query)

    return url.render_as_string(hide_password=False)


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as exc:  # pragma: no cover - validated during configuration load
        raise RuntimeError(f"Environment variable {name} must be an integer") from exc


def _float_from_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as exc:  # pragma: no cover
        raise RuntimeError(f"Environment variable {name} must be a number") from exc


def _decimal_from_env(name: str, default: str) -> Decimal:
    value = os.getenv(name) or default
    try:
        return Decimal(value)
    except InvalidOperation as exc:  # pragma: no cover
        raise RuntimeError(f"Environment variable {name} must be a decimal amount") from exc


def _bool_from_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


@dataclass
class AppConfig:
    """Collection of configuration defaults applied to the Flask app."""

    database_url: str = field(default_factory=lambda: _normalize_db_url(os.getenv("DATABASE_URL", "")))
    secret_key: str = field(
        default_factory=lambda: os.getenv("SESSION_SECRET")
        or os.getenv("SECRET_KEY")
        or "dev-secret-key-change-me"
    )
    engine_options: Dict[str, Any] = field(
        default_factory=lambda: {
            "pool_size": _int_from_env("DB_POOL_SIZE", 10),
            "max_overflow": _int_from_env("DB_MAX_OVERFLOW", 5),
            "pool_recycle": _int_from_env("DB_POOL_RECYCLE", 1800),
            "pool_pre_ping": _bool_from_env("DB_POOL_PRE_PING", True),
        }
    )

    # Commission and payout policy
    base_currency: str = field(default_factory=lambda: os.getenv("BASE_CURRENCY", "USD").upper())
    volume_window_days: int = field(default_factory=lambda: _int_from_env("COMMISSION_VOLUME_WINDOW_DAYS", 30))
    default_minimum_payout: Decimal = field(
        default_factory=lambda: _decimal_from_env("DEFAULT_MINIMUM_PAYOUT", "25.00")
    )

    # Supplier APIs
    supplier_http_timeout: float = field(default_factory=lambda: _float_from_env("SUPPLIER_HTTP_TIMEOUT", 15.0))
    supplier_auth_interval: float = field(default_factory=lambda: _float_from_env("SUPPLIER_AUTH_INTERVAL", 300.0))
    supplier_data_interval: float = field(default_factory=lambda: _float_from_env("SUPPLIER_DATA_INTERVAL", 1.1))
    redis_url: Optional[str] = field(default_factory=lambda: os.getenv("REDIS_URL") or None)

    # Outgoing mail for shipment notifications
    smtp_host: Optional[str] = field(default_factory=lambda: os.getenv("SMTP_HOST"))
    smtp_port: int = field(default_factory=lambda: _int_from_env("SMTP_PORT", 587))
    smtp_user: Optional[str] = field(default_factory=lambda: os.getenv("SMTP_USER"))
    smtp_password: Optional[str] = field(default_factory=lambda: os.getenv("SMTP_PASSWORD"))
    from_email: Optional[str] = field(default_factory=lambda: os.getenv("FROM_EMAIL"))

    log_dir: Optional[str] = field(default_factory=lambda: os.getenv("LOG_DIR"))
    testing: bool = field(default_factory=lambda: _bool_from_env("TESTING", False))

    def init_app(self, app) -> None:
        app.secret_key = self.secret_key
        app.config.setdefault("SQLALCHEMY_DATABASE_URI", self.database_url)
        if self.database_url.startswith("sqlite"):
            # scheduler threads and tests share the file across threads
            app.config.setdefault(
                "SQLALCHEMY_ENGINE_OPTIONS", {"connect_args": {"check_same_thread": False, "timeout": 30}}
            )
        else:
            app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", self.engine_options)
        app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)
        app.config["TESTING"] = self.testing

        app.config.setdefault("BASE_CURRENCY", self.base_currency)
        app.config.setdefault("COMMISSION_VOLUME_WINDOW_DAYS", self.volume_window_days)
        app.config.setdefault("DEFAULT_MINIMUM_PAYOUT", self.default_minimum_payout)

        app.config.setdefault("SUPPLIER_HTTP_TIMEOUT", self.supplier_http_timeout)
        app.config.setdefault("SUPPLIER_AUTH_INTERVAL", self.supplier_auth_interval)
        app.config.setdefault("SUPPLIER_DATA_INTERVAL", self.supplier_data_interval)
        app.config.setdefault("REDIS_URL", self.redis_url)

        app.config.setdefault("SMTP_HOST", self.smtp_host)
        app.config.setdefault("SMTP_PORT", self.smtp_port)
        app.config.setdefault("SMTP_USER", self.smtp_user)
        app.config.setdefault("SMTP_PASSWORD", self.smtp_password)
        app.config.setdefault("FROM_EMAIL", self.from_email or self.smtp_user)

        if self.log_dir:
            app.config.setdefault("LOG_DIR", self.log_dir)


__all__ = [
    "AppConfig",
    "InvalidDatabaseURL",
    "_normalize_db_url",
]
