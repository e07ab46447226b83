"""Alembic environment for the marketplace commission and dropshipping schema."""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
import os
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from flask import current_app, has_app_context
from sqlalchemy import engine_from_config, pool

from extensions import db

config = context.config
target_metadata = db.metadata

logger = logging.getLogger("alembic.env")


def _configure_logging() -> None:
    candidates = []
    if config.config_file_name:
        candidates.append(Path(config.config_file_name))
    candidates.append(Path(__file__).resolve().parent / "alembic.ini")
    for candidate in candidates:
        if candidate and candidate.exists():
            fileConfig(str(candidate))
            break


def _escape_percent(url: str) -> str:
    if "%" not in url:
        return url
    return url.replace("%", "%%").replace("%%%%", "%%")


def _convert_postgres_url(url: str) -> str:
    """Use the psycopg 3 driver for plain PostgreSQL URLs."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _get_url() -> str:
    env_url = os.getenv("ALEMBIC_DATABASE_URL")
    if env_url:
        url = _convert_postgres_url(env_url)
    elif has_app_context():
        # flask db upgrade: reuse the app's engine URL
        url = current_app.config["SQLALCHEMY_DATABASE_URI"]
    else:
        url = config.get_main_option("sqlalchemy.url") or ""
    if not url:
        raise RuntimeError("No database URL available for Alembic")
    config.set_main_option("sqlalchemy.url", _escape_percent(url))
    return url


def _ensure_models_loaded() -> None:
    import models  # noqa: F401


def run_migrations_offline() -> None:
    context.configure(
        url=_get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = dict(config.get_section(config.config_ini_section) or {})
    section["sqlalchemy.url"] = _get_url()

    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        future=True,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


def main() -> None:
    _configure_logging()
    _ensure_models_loaded()
    if context.is_offline_mode():
        run_migrations_offline()
    else:
        run_migrations_online()


main()
