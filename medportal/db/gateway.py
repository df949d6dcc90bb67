"""Persistence gateway over a SQLAlchemy engine.

Callers hand over SQLAlchemy Core statements (or ``text()`` with named
``:param`` binds) and get plain dictionaries back.  The placeholder style of
the underlying driver, the backend identity and SQLAlchemy's exception
hierarchy stay inside this module: integrity failures surface as
:class:`~medportal.errors.ConstraintViolationError`, values a column cannot
hold as :class:`~medportal.errors.ValidationError` and connectivity problems
as :class:`~medportal.errors.BackendUnavailableError`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

import sqlalchemy as sa
import structlog
from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.base import Executable

from medportal.db.config import DatabaseSettings
from medportal.db.models import metadata
from medportal.errors import BackendUnavailableError, ConstraintViolationError, ValidationError

logger = structlog.get_logger(__name__)

Statement = Union[str, Executable]
Params = Optional[Mapping[str, Any]]

_UNREACHABLE_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
)


def _coerce(statement: Statement) -> Executable:
    if isinstance(statement, str):
        return sa.text(statement)
    return statement


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map SQLAlchemy failures onto the application error taxonomy."""

    try:
        yield
    except sa_exc.IntegrityError as exc:
        logger.info("database_constraint_violation", error=str(exc.orig))
        raise ConstraintViolationError() from exc
    except (sa_exc.DataError, OverflowError) as exc:
        logger.info("database_value_rejected", error=str(exc))
        raise ValidationError("Value out of range for storage") from exc
    except _UNREACHABLE_ERRORS as exc:
        logger.error("database_unreachable", error=str(exc))
        raise BackendUnavailableError() from exc


class Transaction:
    """Statement executor bound to a single open connection."""

    def __init__(self, connection: Connection) -> None:
        self._conn = connection

    def _run(self, statement: Statement, params: Params) -> sa.CursorResult:
        with translate_errors():
            return self._conn.execute(_coerce(statement), dict(params or {}))

    def query_many(self, statement: Statement, params: Params = None) -> List[Dict[str, Any]]:
        result = self._run(statement, params)
        return [dict(row) for row in result.mappings()]

    def query_one(self, statement: Statement, params: Params = None) -> Optional[Dict[str, Any]]:
        result = self._run(statement, params)
        row = result.mappings().first()
        return dict(row) if row is not None else None

    def execute(self, statement: Statement, params: Params = None) -> int:
        """Run an INSERT/UPDATE/DELETE and return the affected row count."""

        return self._run(statement, params).rowcount

    def insert(self, statement: Statement, params: Params = None) -> int:
        """Run an INSERT and return the new primary key."""

        result = self._run(statement, params)
        key = None
        try:
            key = result.inserted_primary_key
        except sa_exc.InvalidRequestError:
            pass
        if key and key[0] is not None:
            return int(key[0])
        return int(result.lastrowid)


class Database:
    """Uniform query interface over the configured relational backend.

    One instance is created at startup and passed to the request handlers;
    the engine's pool is the only shared mutable state.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        if engine.dialect.name == "sqlite":
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "Database":
        engine = sa.create_engine(settings.url, **settings.engine_options())
        return cls(engine)

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> "Database":
        return cls(sa.create_engine(url, **engine_kwargs))

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def backend(self) -> str:
        return "sqlite" if self._engine.dialect.name == "sqlite" else "postgres"

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Yield a :class:`Transaction` committed on success and rolled back on error."""

        with translate_errors():
            with self._engine.begin() as conn:
                yield Transaction(conn)

    def query_many(self, statement: Statement, params: Params = None) -> List[Dict[str, Any]]:
        with self.transaction() as tx:
            return tx.query_many(statement, params)

    def query_one(self, statement: Statement, params: Params = None) -> Optional[Dict[str, Any]]:
        with self.transaction() as tx:
            return tx.query_one(statement, params)

    def execute(self, statement: Statement, params: Params = None) -> int:
        with self.transaction() as tx:
            return tx.execute(statement, params)

    def insert(self, statement: Statement, params: Params = None) -> int:
        with self.transaction() as tx:
            return tx.insert(statement, params)

    def ping(self) -> bool:
        try:
            self.query_one("SELECT 1")
        except BackendUnavailableError:
            return False
        return True

    def create_schema(self) -> None:
        with translate_errors():
            metadata.create_all(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


__all__ = ["Database", "Transaction", "translate_errors"]
