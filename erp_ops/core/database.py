"""Thin connection-pool wrapper shared by every operational command.

Each target database gets one cached SQLAlchemy engine. Callers work with
plain SQL strings and positional parameters (``?`` or ``$1`` style) and get
rows back as dicts. Multi-statement changes go through
:meth:`Database.transaction`, which commits on success and rolls back on any
exception before re-raising it.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import DBAPIError

from erp_ops.config import (
    CONNECT_TIMEOUT_SECONDS,
    IGNORABLE_DDL_CODES,
    IGNORABLE_DDL_MESSAGES,
    LOCAL_HOSTS,
    POOL_MAX_OVERFLOW,
    POOL_RECYCLE_SECONDS,
    POOL_SIZE,
    PRODUCTION_INDICATORS,
)

logger = logging.getLogger(__name__)

_databases: Dict[str, "Database"] = {}

# Single-quoted literals (with '' escapes) and double-quoted identifiers
_QUOTED = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")")
_PLACEHOLDER = re.compile(r"\?|\$(\d+)")


# ---------------------------------------------------------------------------
# Placeholder conversion
# ---------------------------------------------------------------------------

def convert_placeholders(sql: str) -> Tuple[str, int]:
    """Rewrite ``?`` and ``$n`` placeholders as SQLAlchemy named binds.

    Quoted literals and identifiers are left untouched. A ``::type`` cast
    directly after a placeholder is escaped so ``text()`` does not read it
    as another bind.

    Args:
        sql: SQL with positional placeholders

    Returns:
        Tuple of (converted_sql, parameter_count)

    Raises:
        ValueError: If ``?`` and ``$n`` styles are mixed
    """
    parts = _QUOTED.split(sql)
    counter = 0
    highest = 0
    styles = set()

    def replace(match: re.Match) -> str:
        nonlocal counter, highest
        if match.group(1):
            styles.add("dollar")
            index = int(match.group(1))
            highest = max(highest, index)
        else:
            styles.add("qmark")
            counter += 1
            index = counter
        return f":p{index}"

    converted = []
    for i, part in enumerate(parts):
        if i % 2 == 1:
            converted.append(part)
            continue
        part = _PLACEHOLDER.sub(replace, part)
        part = re.sub(r"(:p\d+)::", r"\1\\:\\:", part)
        converted.append(part)

    if len(styles) > 1:
        raise ValueError("Cannot mix '?' and '$n' placeholders in one statement")
    return "".join(converted), max(counter, highest)


def prepare_statement(sql: str, params: Sequence[Any]):
    """Build a ``text()`` clause and bind dict from positional or named params.

    A single dict argument is passed through as named binds (``:name``).
    A single list/tuple argument is expanded as the positional values.
    """
    if len(params) == 1 and isinstance(params[0], dict):
        return text(sql), params[0]
    if len(params) == 1 and isinstance(params[0], (list, tuple)):
        params = tuple(params[0])

    converted, expected = convert_placeholders(sql)
    if expected != len(params):
        raise ValueError(
            f"Statement expects {expected} parameter(s), got {len(params)}"
        )
    binds = {f"p{i + 1}": value for i, value in enumerate(params)}
    return text(converted), binds


def quote_identifier(name: str) -> str:
    """Double-quote a table or column name."""
    return '"' + str(name).replace('"', '""') + '"'


def is_ignorable_ddl_error(error: DBAPIError) -> bool:
    """True for "already exists" style failures that make DDL idempotent."""
    code = getattr(error.orig, "pgcode", None)
    if code in IGNORABLE_DDL_CODES:
        return True
    message = str(error.orig).lower()
    return any(fragment in message for fragment in IGNORABLE_DDL_MESSAGES)


# ---------------------------------------------------------------------------
# Target description
# ---------------------------------------------------------------------------

def describe_target(url: str) -> Dict[str, Any]:
    """Describe a connection string for banners and safety checks.

    Returns:
        Dict with 'driver', 'host', 'database', 'is_local', 'is_production'
        and 'display' (URL with the password masked)
    """
    parsed = make_url(url)
    host = parsed.host or ""
    database = parsed.database or ""
    haystack = f"{host} {database}".lower()
    return {
        "driver": parsed.get_backend_name(),
        "host": host or "localhost",
        "database": database,
        "is_local": host in LOCAL_HOSTS,
        "is_production": any(word in haystack for word in PRODUCTION_INDICATORS),
        "display": parsed.render_as_string(hide_password=True),
    }


def build_engine(url: str) -> Engine:
    """Create the engine for *url* with pool and SSL settings.

    PostgreSQL hosts other than localhost get ``sslmode=require`` unless
    the URL already chooses an sslmode.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "postgresql":
        return create_engine(url, pool_pre_ping=True)

    connect_args: Dict[str, Any] = {"connect_timeout": CONNECT_TIMEOUT_SECONDS}
    if (parsed.host or "") not in LOCAL_HOSTS and "sslmode" not in parsed.query:
        connect_args["sslmode"] = "require"

    return create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=POOL_MAX_OVERFLOW,
        pool_recycle=POOL_RECYCLE_SECONDS,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


# ---------------------------------------------------------------------------
# Query API
# ---------------------------------------------------------------------------

class _QueryRunner:
    """Shared query helpers; subclasses decide which connection runs them."""

    dialect_name: str = ""

    def _run(self, sql: str, params: Sequence[Any], handler: Callable):
        raise NotImplementedError

    @property
    def is_postgresql(self) -> bool:
        return self.dialect_name == "postgresql"

    def fetch_all(self, sql: str, *params) -> List[Dict[str, Any]]:
        """Run a query and return every row as a dict."""
        return self._run(sql, params, lambda result: [dict(row) for row in result.mappings()])

    def fetch_one(self, sql: str, *params) -> Optional[Dict[str, Any]]:
        """Run a query and return the first row as a dict, or None."""
        def first(result):
            row = result.mappings().first()
            return dict(row) if row is not None else None

        return self._run(sql, params, first)

    def fetch_value(self, sql: str, *params) -> Any:
        """Run a query and return the first column of the first row."""
        return self._run(sql, params, lambda result: result.scalar())

    def execute(self, sql: str, *params) -> int:
        """Run a statement and return the affected row count."""
        return self._run(sql, params, lambda result: result.rowcount)


class Transaction(_QueryRunner):
    """Query API bound to one open connection inside BEGIN ... COMMIT."""

    def __init__(self, connection: Connection):
        self.connection = connection
        self.dialect_name = connection.dialect.name

    def _run(self, sql, params, handler):
        statement, binds = prepare_statement(sql, params)
        return handler(self.connection.execute(statement, binds))

    def execute_ddl(self, sql: str) -> bool:
        """Run DDL inside the transaction, tolerating "already exists".

        PostgreSQL aborts the whole transaction on error, so each statement
        runs under a savepoint there.

        Returns:
            True if the statement ran, False if it was already applied
        """
        try:
            if self.is_postgresql:
                with self.connection.begin_nested():
                    self.connection.execute(text(sql))
            else:
                self.connection.execute(text(sql))
            return True
        except DBAPIError as e:
            if is_ignorable_ddl_error(e):
                logger.info("Skipping already-applied DDL: %s", e.orig)
                return False
            raise


class Database(_QueryRunner):
    """Pool wrapper for one target database."""

    def __init__(self, url: str, engine: Optional[Engine] = None):
        """Initialize the wrapper.

        Args:
            url: SQLAlchemy connection string
            engine: Pre-built engine (built from *url* when omitted)
        """
        self.url = url
        self.engine = engine or build_engine(url)
        self.dialect_name = self.engine.dialect.name

    @property
    def target(self) -> Dict[str, Any]:
        return describe_target(self.url)

    def _run(self, sql, params, handler):
        statement, binds = prepare_statement(sql, params)
        with self.engine.begin() as conn:
            return handler(conn.execute(statement, binds))

    def execute_raw(self, sql: str) -> int:
        """Run a statement verbatim, without bind-parameter parsing."""
        with self.engine.begin() as conn:
            return conn.execution_options(no_parameters=True).exec_driver_sql(sql).rowcount

    def execute_ddl(self, sql: str) -> bool:
        """Run a DDL statement on its own, tolerating "already exists".

        Returns:
            True if the statement ran, False if it was already applied
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(text(sql))
            return True
        except DBAPIError as e:
            if is_ignorable_ddl_error(e):
                logger.info("Skipping already-applied DDL: %s", e.orig)
                return False
            raise

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Run a block atomically.

        Yields:
            Transaction exposing the same query API on one connection

        Any exception rolls back every statement of the block and is re-raised.
        """
        with self.engine.connect() as conn:
            trans = conn.begin()
            logger.debug("BEGIN")
            try:
                yield Transaction(conn)
            except Exception:
                trans.rollback()
                logger.warning("Transaction rolled back")
                raise
            trans.commit()
            logger.debug("COMMIT")

    def test_connection(self) -> Dict[str, Any]:
        """Check connectivity.

        Returns:
            Dict with 'success' and either 'database' / 'version' or 'error'
        """
        try:
            if self.is_postgresql:
                row = self.fetch_one(
                    "SELECT current_database() AS database, version() AS version"
                )
            else:
                row = {"database": self.engine.url.database, "version": self.fetch_value(
                    "SELECT sqlite_version()"
                )}
            return {"success": True, **row}
        except DBAPIError as e:
            logger.error("Connection test failed: %s", e)
            return {"success": False, "error": str(e.orig)}

    def close(self) -> None:
        """Dispose the pool."""
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Cached access
# ---------------------------------------------------------------------------

def get_database(env: Optional[str] = None, url: Optional[str] = None) -> Database:
    """Return the cached :class:`Database` for an environment or URL.

    Args:
        env: Environment name (local, test, demo, prod); default picked by config
        url: Explicit connection string, overrides *env*

    Raises:
        ConfigurationError: If no connection string resolves
    """
    if url is None:
        from config import resolve_database_url

        url = resolve_database_url(env)

    database = _databases.get(url)
    if database is None:
        database = Database(url)
        _databases[url] = database
        logger.info("Connected pool for %s", database.target["display"])
    return database


def close_all() -> None:
    """Dispose every cached engine."""
    for database in _databases.values():
        database.close()
    _databases.clear()
