"""Database helpers: engine construction and the cross-process run lock (Postgres only)."""

from __future__ import annotations

import logging
from contextlib import contextmanager, suppress
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine, make_url

from .errors import RunConfigError
from .logging import event_fields
from .settings import Settings

logger = logging.getLogger(__name__)

MIGRATION_LOCK_KEY = 0xC0DE5EED  # stable Postgres advisory lock key for migration runs.


def postgres_url(database_url: str | URL) -> URL:
    """Parse ``database_url``, accepting the ``postgres://`` alias as ``postgresql://``."""
    url = make_url(database_url if isinstance(database_url, URL) else str(database_url))
    if url.drivername == "postgres" or url.drivername.startswith("postgres+"):
        url = url.set(drivername="postgresql" + url.drivername[len("postgres") :])
    if url.get_backend_name() != "postgresql":
        raise ValueError("Unsupported database backend. Use postgresql+psycopg://.")
    return url


def build_engine(settings: Settings) -> Engine:
    url = postgres_url(settings.database_url)
    if url.drivername == "postgresql":
        url = url.set(drivername="postgresql+psycopg")

    connect_args: dict[str, object] = {}
    if settings.database_connect_timeout_seconds is not None:
        connect_args["connect_timeout"] = int(settings.database_connect_timeout_seconds)

    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


@contextmanager
def migration_lock(settings: Settings) -> Iterator[None]:
    """Hold a session advisory lock so only one runner migrates the database at a time."""
    try:
        engine = build_engine(settings)
    except ValueError as exc:
        raise RunConfigError(str(exc)) from exc
    try:
        with engine.connect() as base_conn:
            conn = base_conn.execution_options(isolation_level="AUTOCOMMIT")
            conn.execute(text("SET statement_timeout = 0"))
            logger.info("lock.acquiring", extra=event_fields(lock_key=MIGRATION_LOCK_KEY))
            conn.execute(text("SELECT pg_advisory_lock(:key)"), {"key": MIGRATION_LOCK_KEY})
            try:
                yield
            finally:
                with suppress(Exception):
                    conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": MIGRATION_LOCK_KEY})
                logger.info("lock.released", extra=event_fields(lock_key=MIGRATION_LOCK_KEY))
    finally:
        engine.dispose()


__all__ = ["MIGRATION_LOCK_KEY", "build_engine", "migration_lock", "postgres_url"]
