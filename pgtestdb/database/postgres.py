"""
PostgreSQL support for pgtestdb.

PgBackend implements the provisioning primitives on top of asyncpg, using
advisory locks for cross-process mutual exclusion and ``CREATE DATABASE ...
TEMPLATE`` for cloning. PgDatabase is the handle given to tests.
"""

import asyncio
import logging
import re
import zlib
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import asyncpg

from .error_handler import ErrorHook, error_hook as default_error_hook
from .errors import (
    CloneError,
    ConnectivityError,
    InvalidIdentifierError,
    NoRowsError,
    QueryError,
    TestDatabaseError,
)
from .interfaces import Lifecycle, Migrator
from .migration_manager import NoopMigrator
from .provisioner import Provisioner

logger = logging.getLogger(__name__)

# Letters, digits and underscore only; names are interpolated into statements.
PG_NAME_PATTERN = re.compile(r"[A-Za-z0-9_]+")

# NAMEDATALEN - 1. Longer names are silently truncated by the server.
PG_MAX_NAME_LENGTH = 63

DBNAME_KEYWORD_PATTERN = re.compile(r"(?<![\w])dbname\s*=\s*('(?:[^'\\]|\\.)*'|\S+)")

DEFAULT_CONNECT_TIMEOUT = 60

# Server-side statement failures and client-side failures such as a lost connection.
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError)


def verify_pg_name(name: str) -> str:
    """Return name unchanged if it is safe to embed in a statement."""
    if not name or not PG_NAME_PATTERN.fullmatch(name):
        raise InvalidIdentifierError(
            f"{name!r} as a DB name may be unsafe. letters, numbers and _ only"
        )
    if len(name.encode("utf-8")) > PG_MAX_NAME_LENGTH:
        raise InvalidIdentifierError(
            f"{name!r} is longer than {PG_MAX_NAME_LENGTH} bytes and would be truncated"
        )
    return name


def verify_table_name(table: str) -> str:
    """Validate a table name, allowing a single schema qualifier."""
    parts = table.split(".")
    if len(parts) > 2:
        raise InvalidIdentifierError(f"{table!r} is not a valid table name")
    for part in parts:
        verify_pg_name(part)
    return table


def mask_dsn(dsn: str) -> str:
    """Hide the password of a URL-style DSN for log output."""
    if "://" not in dsn:
        return re.sub(r"(?<![\w])password\s*=\s*\S+", "password=***", dsn)

    parts = urlsplit(dsn)
    if parts.password is None:
        return dsn
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


def database_name(dsn: str) -> str:
    """Extract the database name from a URL or keyword/value DSN."""
    if "://" in dsn:
        name = urlsplit(dsn).path.lstrip("/")
    else:
        match = DBNAME_KEYWORD_PATTERN.search(dsn)
        name = match.group(1).strip("'") if match else ""

    if not name:
        raise InvalidIdentifierError(
            f"invalid DSN provided, cannot find database name in `{mask_dsn(dsn)}`"
        )
    return name


def replace_database(dsn: str, new_name: str) -> str:
    """Return dsn pointing at new_name, keeping every other connection parameter."""
    verify_pg_name(new_name)
    # Raises for DSNs without a database component.
    database_name(dsn)

    if "://" in dsn:
        parts = urlsplit(dsn)
        return urlunsplit(parts._replace(path=f"/{new_name}"))

    return DBNAME_KEYWORD_PATTERN.sub(f"dbname={new_name}", dsn, count=1)


def lock_key(name: str) -> int:
    """Advisory lock key for a database name."""
    return zlib.crc32(name.encode("utf-8"))


def rows_affected(status: str) -> int:
    """Parse the row count out of a command status such as ``UPDATE 3``."""
    last = status.rsplit(" ", 1)[-1] if status else ""
    return int(last) if last.isdigit() else 0


async def connect(dsn: str, timeout: Optional[float] = None) -> asyncpg.Connection:
    """
    Open a connection, translating driver failures into ConnectivityError.

    Args:
        dsn: Connection string
        timeout: Connection timeout in seconds

    Raises:
        ConnectivityError: If the server is unreachable or refuses the credentials
    """
    masked = mask_dsn(dsn)
    try:
        return await asyncpg.connect(dsn, timeout=timeout or DEFAULT_CONNECT_TIMEOUT)
    except asyncpg.InvalidPasswordError as e:
        raise ConnectivityError(f"Invalid password for {masked}: {e}") from e
    except asyncpg.InvalidCatalogNameError as e:
        raise ConnectivityError(f"Database does not exist at {masked}: {e}") from e
    except asyncio.TimeoutError as e:
        raise ConnectivityError(f"Connection timeout for {masked}") from e
    except OSError as e:
        raise ConnectivityError(f"Cannot connect to {masked}: {e}") from e
    except DRIVER_ERRORS as e:
        raise ConnectivityError(f"PostgreSQL connection error for {masked}: {e}") from e


@dataclass
class ExecResult:
    """Outcome of PgDatabase.exec."""

    rows_affected: int


class PgDatabase:
    """
    A fully migrated, isolated PostgreSQL database handed to a single test.

    Connections are opened lazily and reused for the lifetime of the handle.
    Every failure is reported through the error hook.
    """

    def __init__(
        self,
        name: str,
        dsn: str,
        root_dsn: str,
        backend: "PgBackend",
        error_hook: Optional[ErrorHook] = None
    ):
        self._name = name
        self._dsn = dsn
        self._root_dsn = root_dsn
        self._backend = backend
        self.error_hook = error_hook or default_error_hook
        self._conns: Dict[str, asyncpg.Connection] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def dsn(self) -> str:
        return self._dsn

    def __repr__(self) -> str:
        return f"PgDatabase(name={self._name!r})"

    async def _connect(self) -> asyncpg.Connection:
        existing = self._conns.get(self._dsn)
        if existing is not None and not existing.is_closed():
            return existing

        conn = await connect(self._dsn, timeout=self._backend.connect_timeout)
        self._conns[self._dsn] = conn
        return conn

    async def insert(self, table: str, *rows: Mapping[str, Any]) -> None:
        """
        Insert rows into table, one statement per row.

        Each row is a column => value mapping. Rows are not wrapped in a
        shared transaction; a failing row leaves earlier rows in place.
        """
        try:
            verify_table_name(table)
            conn = await self._connect()

            for row in rows:
                columns = [verify_pg_name(column) for column in row]
                placeholders = [f"${i}" for i in range(1, len(columns) + 1)]
                query = f"INSERT INTO {table}({','.join(columns)}) VALUES({','.join(placeholders)})"

                try:
                    await conn.execute(query, *row.values())
                except DRIVER_ERRORS as e:
                    raise QueryError(f"Insert into {table} failed: {e}") from e
        except TestDatabaseError as e:
            self.error_hook.report(e)

    async def query_value(self, sql: str, *args: Any) -> Any:
        """Run sql and return the first column of its single row."""
        row = await self._fetch_one(sql, args, "test database query for a single value returned 0 rows")
        return row[0]

    async def query_row(self, sql: str, *args: Any) -> asyncpg.Record:
        """Run sql and return its single row."""
        return await self._fetch_one(sql, args, "test database query for a single row returned 0 rows")

    async def _fetch_one(self, sql: str, args, empty_message: str) -> asyncpg.Record:
        try:
            conn = await self._connect()
            try:
                row = await conn.fetchrow(sql, *args)
            except DRIVER_ERRORS as e:
                raise QueryError(f"Query failed: {e}") from e

            if row is None:
                raise NoRowsError(empty_message)
            return row
        except TestDatabaseError as e:
            self.error_hook.report(e)

    async def exec(self, sql: str, *args: Any) -> ExecResult:
        """Run a statement that returns no rows."""
        try:
            conn = await self._connect()
            try:
                status = await conn.execute(sql, *args)
            except DRIVER_ERRORS as e:
                raise QueryError(f"Statement failed: {e}") from e
            return ExecResult(rows_affected=rows_affected(status))
        except TestDatabaseError as e:
            self.error_hook.report(e)

    async def drop(self) -> None:
        """Close this handle's connections and forcefully remove the database."""
        for conn in self._conns.values():
            if not conn.is_closed():
                await conn.close()
        self._conns = {}

        try:
            root = await self._backend.connect(self._root_dsn)
            try:
                await self._backend.remove(root, self._name)
            finally:
                await self._backend.close(root)
        except TestDatabaseError as e:
            self.error_hook.report(e)

        logger.info(f"Dropped test database {self._name}")


class PgBackend:
    """Provisioning primitives for PostgreSQL."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        error_hook: Optional[ErrorHook] = None
    ):
        """
        Initialize PgBackend.

        Args:
            connect_timeout: Connection timeout in seconds
            error_hook: Failure sink handed to the database handles this backend creates
        """
        self.connect_timeout = connect_timeout
        self.error_hook = error_hook

    async def connect(self, dsn: str) -> asyncpg.Connection:
        return await connect(dsn, timeout=self.connect_timeout)

    async def close(self, conn: asyncpg.Connection) -> None:
        if not conn.is_closed():
            await conn.close()

    async def _execute(self, conn: asyncpg.Connection, query: str, *args: Any) -> str:
        try:
            return await conn.execute(query, *args)
        except DRIVER_ERRORS as e:
            raise QueryError(f"{query.strip()} failed: {e}") from e

    async def lock(self, conn: asyncpg.Connection, name: str) -> None:
        await self._execute(conn, "SELECT pg_advisory_lock($1)", lock_key(name))

    async def unlock(self, conn: asyncpg.Connection, name: str) -> None:
        await self._execute(conn, "SELECT pg_advisory_unlock($1)", lock_key(name))

    async def exists(self, conn: asyncpg.Connection, name: str) -> bool:
        try:
            row = await conn.fetchrow("SELECT true FROM pg_database WHERE datname = $1", name)
        except DRIVER_ERRORS as e:
            raise QueryError(f"Checking for database {name} failed: {e}") from e
        return row is not None

    async def is_ready(self, conn: asyncpg.Connection, name: str) -> bool:
        # Templates are only flagged IS_TEMPLATE after their migrations succeed.
        try:
            ready = await conn.fetchval("SELECT datistemplate FROM pg_database WHERE datname = $1", name)
        except DRIVER_ERRORS as e:
            raise QueryError(f"Checking readiness of {name} failed: {e}") from e
        return bool(ready)

    async def mark_ready(self, conn: asyncpg.Connection, name: str) -> None:
        await self._execute(conn, f'ALTER DATABASE "{verify_pg_name(name)}" IS_TEMPLATE true')

    async def create(self, conn: asyncpg.Connection, name: str) -> None:
        await self._execute(conn, f'CREATE DATABASE "{verify_pg_name(name)}"')

    async def create_from_template(self, conn: asyncpg.Connection, template: str, name: str) -> None:
        query = f'CREATE DATABASE "{verify_pg_name(name)}" TEMPLATE "{verify_pg_name(template)}"'
        try:
            await conn.execute(query)
        except DRIVER_ERRORS as e:
            raise CloneError(f"Creating {name} from template {template} failed: {e}") from e

    async def remove(self, conn: asyncpg.Connection, name: str) -> None:
        verify_pg_name(name)
        if not await self.exists(conn, name):
            return

        await self._execute(
            conn,
            """
            SELECT pg_terminate_backend(pg_stat_activity.pid)
            FROM pg_stat_activity
            WHERE pg_stat_activity.datname = $1
              AND pg_stat_activity.pid <> pg_backend_pid()
            """,
            name,
        )
        # Template databases cannot be dropped until the flag is cleared.
        await self._execute(conn, f'ALTER DATABASE "{name}" IS_TEMPLATE false')
        await self._execute(conn, f'DROP DATABASE IF EXISTS "{name}"')

    def derive_target(self, base: str, new_name: str) -> str:
        target = replace_database(base, new_name)
        logger.debug(f"Derived {mask_dsn(target)} from {mask_dsn(base)}")
        return target

    def wrap_handle(self, root_dsn: str, dsn: str) -> PgDatabase:
        return PgDatabase(
            name=verify_pg_name(database_name(dsn)),
            dsn=dsn,
            root_dsn=root_dsn,
            backend=self,
            error_hook=self.error_hook,
        )


async def new_pg(
    lifecycle: Lifecycle,
    dsn: str,
    migrator: Optional[Migrator] = None,
    error_hook: Optional[ErrorHook] = None,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
) -> PgDatabase:
    """
    Provision a new PostgreSQL test database.

    dsn must be a connection string with permission to create databases. The
    returned database is fully migrated, isolated from every other test, and
    dropped when lifecycle ends. Pass no migrator to get a blank database.
    """
    backend = PgBackend(connect_timeout=connect_timeout, error_hook=error_hook)
    provisioner = Provisioner(error_hook=error_hook)
    return await provisioner.provision(dsn, backend, migrator or NoopMigrator(), lifecycle)
