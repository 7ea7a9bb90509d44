"""
Capability contracts for pgtestdb.

The provisioner only ever talks to these protocols. Supporting another
database engine means writing a new Backend; supporting another migration
tool means writing a new Migrator. Neither requires touching the provisioner.
"""

from typing import Any, Awaitable, Callable, Mapping, Protocol


class Database(Protocol):
    """A live, isolated, fully migrated test database."""

    @property
    def name(self) -> str: ...

    @property
    def dsn(self) -> str: ...

    async def insert(self, table: str, *rows: Mapping[str, Any]) -> None:
        """Insert each column => value mapping as its own row."""
        ...

    async def query_value(self, sql: str, *args: Any) -> Any:
        """Return the first column of the single row produced by sql."""
        ...

    async def query_row(self, sql: str, *args: Any) -> Any:
        """Return the single row produced by sql."""
        ...

    async def drop(self) -> None:
        """Forcefully remove the database. Called once per handle."""
        ...


class Migrator(Protocol):
    """Fingerprints and applies a set of migration definitions."""

    async def fingerprint(self) -> str:
        """
        Digest of the current migration definitions.

        Must change whenever the definitions change and must only contain
        letters, digits and underscores, since it becomes part of a database name.
        """
        ...

    async def apply(self, dsn: str) -> None:
        """Apply every migration to the database at dsn."""
        ...


class Backend(Protocol):
    """Engine-specific primitives used by the provisioner."""

    async def connect(self, dsn: str) -> Any:
        """Open an administrative connection to dsn."""
        ...

    async def close(self, conn: Any) -> None: ...

    async def lock(self, conn: Any, name: str) -> None:
        """
        Acquire a server-wide lock keyed by name, waiting until it is free.

        The lock must be visible to other processes connected to the same
        server, not only to other tasks in this process.
        """
        ...

    async def unlock(self, conn: Any, name: str) -> None: ...

    async def exists(self, conn: Any, name: str) -> bool: ...

    async def is_ready(self, conn: Any, name: str) -> bool:
        """True once mark_ready has completed for the database name."""
        ...

    async def mark_ready(self, conn: Any, name: str) -> None: ...

    async def create(self, conn: Any, name: str) -> None: ...

    async def create_from_template(self, conn: Any, template: str, name: str) -> None: ...

    async def remove(self, conn: Any, name: str) -> None:
        """Drop name, terminating any other sessions connected to it first."""
        ...

    def derive_target(self, base: str, new_name: str) -> str:
        """Return base with its database name replaced by new_name."""
        ...

    def wrap_handle(self, root_dsn: str, dsn: str) -> Database: ...


class Lifecycle(Protocol):
    """The caller's scope; runs registered teardowns when the scope ends."""

    def add_cleanup(self, callback: Callable[[], Awaitable[None]]) -> None: ...
