"""Database configuration helpers.

The relational backend is chosen once at process start.  A Postgres server is
preferred; when it cannot be reached within a short probe timeout the
application falls back to an embedded SQLite file with the same schema.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict
from urllib.parse import quote_plus

import structlog
from sqlalchemy.engine import make_url

from medportal.config import data_dir, get_float_env, get_int_env

logger = structlog.get_logger(__name__)

SQLITE_FILENAME = "patient_records.db"
BACKEND_CHOICES = {"auto", "postgres", "sqlite"}


@dataclass(frozen=True)
class DatabaseSettings:
    """Resolved database configuration for the application."""

    url: str
    echo: bool = False
    fell_back: bool = False

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo, "future": True}
        connect_args: Dict[str, object] = {}
        if self.is_sqlite:
            connect_args["check_same_thread"] = False
            sqlite_timeout = get_int_env("SQLITE_BUSY_TIMEOUT")
            if sqlite_timeout is not None:
                connect_args["timeout"] = sqlite_timeout
        elif self.is_postgres:
            options["pool_pre_ping"] = True
            pool_size = get_int_env("DB_POOL_SIZE")
            if pool_size is not None:
                options["pool_size"] = pool_size
            max_overflow = get_int_env("DB_MAX_OVERFLOW")
            if max_overflow is not None:
                options["max_overflow"] = max_overflow
            options["pool_timeout"] = get_int_env("DB_POOL_TIMEOUT", 10)
            connect_args["connect_timeout"] = get_int_env("PGCONNECT_TIMEOUT", 5)
            statements = ["timezone=UTC"]
            statement_timeout = get_int_env("STATEMENT_TIMEOUT_MS")
            if statement_timeout is not None:
                statements.append(f"statement_timeout={statement_timeout}")
            connect_args["options"] = " ".join(f"-c {value}" for value in statements)
        if connect_args:
            options["connect_args"] = connect_args
        return options

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgresql") or self.url.startswith("postgres")

    @property
    def backend(self) -> str:
        return "sqlite" if self.is_sqlite else "postgres"


def normalise_postgres_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def postgres_url_from_env() -> str:
    """Return the Postgres URL from ``DATABASE_URL`` or the discrete ``DB_*`` variables."""

    url = os.getenv("MEDPORTAL_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return normalise_postgres_url(url)
    user = quote_plus(os.getenv("DB_USER", "postgres"))
    password = quote_plus(os.getenv("DB_PASSWORD", "password"))
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "patient_records")
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{name}"


def sqlite_url_from_env() -> str:
    override = os.getenv("MEDPORTAL_DB_PATH")
    if override:
        path = Path(override).expanduser()
        if path.is_dir():
            path = path / SQLITE_FILENAME
        path.parent.mkdir(parents=True, exist_ok=True)
    else:
        path = data_dir() / SQLITE_FILENAME
    return f"sqlite:///{path}"


def probe_tcp(host: str, port: int, timeout: float) -> bool:
    """Return ``True`` when a TCP connection to ``host:port`` succeeds within ``timeout``."""

    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def postgres_reachable(url: str, timeout: float, probe: Callable[[str, int, float], bool] = probe_tcp) -> bool:
    parsed = make_url(url)
    return probe(parsed.host or "localhost", int(parsed.port or 5432), timeout)


def resolve_database_settings(
    probe: Callable[[str, int, float], bool] = probe_tcp,
) -> DatabaseSettings:
    """Select the backend for this process.

    ``MEDPORTAL_DB_BACKEND`` forces ``postgres`` or ``sqlite``; the default
    ``auto`` probes the Postgres host and falls back to SQLite when it is
    unreachable.
    """

    echo = os.getenv("DB_ECHO", "").lower() in {"1", "true", "yes"}
    choice = os.getenv("MEDPORTAL_DB_BACKEND", "auto").strip().lower()
    if choice not in BACKEND_CHOICES:
        raise ValueError(
            f"MEDPORTAL_DB_BACKEND must be one of {sorted(BACKEND_CHOICES)}; got {choice!r}"
        )

    if choice == "sqlite":
        settings = DatabaseSettings(url=sqlite_url_from_env(), echo=echo)
    else:
        pg_url = postgres_url_from_env()
        if pg_url.startswith("sqlite"):
            settings = DatabaseSettings(url=pg_url, echo=echo)
        elif choice == "postgres":
            settings = DatabaseSettings(url=pg_url, echo=echo)
        elif postgres_reachable(pg_url, get_float_env("DB_PROBE_TIMEOUT", 2.0), probe):
            settings = DatabaseSettings(url=pg_url, echo=echo)
        else:
            settings = DatabaseSettings(url=sqlite_url_from_env(), echo=echo, fell_back=True)

    logger.info(
        "database_backend_selected",
        backend=settings.backend,
        fell_back=settings.fell_back,
        requested=choice,
    )
    return settings


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the active database settings derived from the environment."""

    return resolve_database_settings()


__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "normalise_postgres_url",
    "postgres_reachable",
    "postgres_url_from_env",
    "probe_tcp",
    "resolve_database_settings",
    "sqlite_url_from_env",
]
