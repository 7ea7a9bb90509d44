"""
Migration sources for pgtestdb.

A migration source fingerprints a set of migration definitions and applies
them to a database. Three are provided:

- SqlDirMigrator applies ``NNN_name.sql`` files itself over asyncpg
- CliMigrator shells out to the golang-migrate ``migrate`` CLI
- NoopMigrator applies nothing, producing blank databases
"""

import asyncio
import hashlib
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import asyncpg

from .error_handler import ErrorHook, error_hook as default_error_hook
from .errors import MigrationError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def fingerprint_files(paths: Iterable[Path]) -> str:
    """
    MD5 digest over the names and contents of paths, in sorted order.

    Stable for unchanged files, different as soon as any file is added,
    removed, renamed or edited.
    """
    digest = hashlib.md5()
    for path in sorted(paths, key=lambda p: p.name):
        digest.update(path.name.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hashlib.md5(path.read_bytes()).hexdigest().encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def migration_files(directory: Path, pattern: str = "*") -> List[Path]:
    """Regular, non-hidden files in directory matching pattern."""
    return [
        path for path in directory.glob(pattern)
        if path.is_file() and not path.name.startswith(".")
    ]


class NoopMigrator:
    """Migration source with no migrations; provisions blank databases."""

    async def fingerprint(self) -> str:
        return fingerprint_files([])

    async def apply(self, dsn: str) -> None:
        return None


class CliMigrator:
    """
    Applies migrations with the golang-migrate CLI.

    Assumes ``migrate`` is installed: https://github.com/golang-migrate/migrate#cli-usage
    """

    def __init__(
        self,
        directory: PathLike,
        binary: str = "migrate",
        error_hook: Optional[ErrorHook] = None
    ):
        self.directory = Path(directory)
        self.binary = binary
        self.error_hook = error_hook or default_error_hook

        try:
            os.listdir(self.directory)
        except OSError as e:
            self.error_hook.report(
                MigrationError(f"Cannot read migrations directory {self.directory}: {e}")
            )

    async def fingerprint(self) -> str:
        try:
            return fingerprint_files(migration_files(self.directory))
        except OSError as e:
            raise MigrationError(f"Cannot fingerprint {self.directory}: {e}") from e

    async def apply(self, dsn: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                "-database", dsn,
                "-path", str(self.directory),
                "up",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise MigrationError(f"Cannot run {self.binary}: {e}") from e

        _, stderr = await process.communicate()

        if process.returncode != 0:
            output = stderr.decode("utf-8", errors="replace").strip()
            raise MigrationError(
                f"failed to migrate test DB (exit code: {process.returncode}): {output}",
                exit_code=process.returncode,
                stderr=output,
            )

        logger.info(f"Applied migrations from {self.directory} with {self.binary}")


class SqlDirMigrator:
    """Applies versioned ``.sql`` files, recording each one in a migrations table."""

    def __init__(self, directory: PathLike, connect_timeout: float = 60):
        self.migrations_dir = Path(directory)
        self.connect_timeout = connect_timeout

    async def fingerprint(self) -> str:
        """Digest of exactly the files apply() would run."""
        try:
            return fingerprint_files(path for _, _, path in self.get_available_migrations())
        except OSError as e:
            raise MigrationError(f"Cannot fingerprint {self.migrations_dir}: {e}") from e

    def get_available_migrations(self) -> List[Tuple[int, str, Path]]:
        """Get list of available migration files."""
        migrations = []

        if not self.migrations_dir.exists():
            return migrations

        for file_path in migration_files(self.migrations_dir, "*.sql"):
            if file_path.name.startswith("__"):
                continue

            # Extract version number from filename (e.g., 001_initial_schema.sql)
            try:
                version_str = file_path.name.split('_')[0]
                version = int(version_str)
                name = file_path.stem.replace(f"{version_str}_", "", 1)
                migrations.append((version, name, file_path))
            except (ValueError, IndexError):
                logger.warning(f"Invalid migration filename format: {file_path.name}")
                continue

        return sorted(migrations, key=lambda x: x[0])

    async def initialize_migrations_table(self, conn: asyncpg.Connection) -> None:
        """Create the migrations table if it doesn't exist."""
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS migrations (
                id SERIAL PRIMARY KEY,
                version INTEGER NOT NULL UNIQUE,
                name VARCHAR(255) NOT NULL,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                checksum VARCHAR(64)
            )
        """)

    async def get_applied_migrations(self, conn: asyncpg.Connection) -> List[int]:
        """Get list of already applied migration versions."""
        rows = await conn.fetch("SELECT version FROM migrations ORDER BY version")
        return [row['version'] for row in rows]

    async def apply_migration(self, conn: asyncpg.Connection, version: int, name: str, file_path: Path) -> None:
        """Apply a single migration inside its own transaction."""
        try:
            sql_content = file_path.read_text(encoding='utf-8')
        except OSError as e:
            raise MigrationError(f"Cannot read migration {file_path}: {e}") from e

        if not sql_content.strip():
            logger.warning(f"Migration {version} ({name}) is empty, skipping")
            return

        checksum = hashlib.sha256(sql_content.encode('utf-8')).hexdigest()

        try:
            async with conn.transaction():
                await conn.execute(sql_content)
                await conn.execute(
                    """
                    INSERT INTO migrations (version, name, applied_at, checksum)
                    VALUES ($1, $2, $3, $4)
                    """,
                    version, name, datetime.now(), checksum
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.error(f"❌ Failed to apply migration {version} ({name}): {e}")
            raise MigrationError(f"Failed to apply migration {version} ({name}): {e}") from e

        logger.info(f"✅ Applied migration {version}: {name}")

    async def apply(self, dsn: str) -> None:
        """Run all pending migrations against dsn."""
        try:
            conn = await asyncpg.connect(dsn, timeout=self.connect_timeout)
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise MigrationError(f"Cannot connect to migrate test DB: {e}") from e

        try:
            try:
                await self.initialize_migrations_table(conn)
                applied_versions = await self.get_applied_migrations(conn)
            except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                raise MigrationError(f"Failed to read migrations table: {e}") from e

            available_migrations = self.get_available_migrations()
            logger.debug(f"Found {len(applied_versions)} applied and {len(available_migrations)} available migrations")

            applied_count = 0
            for version, name, file_path in available_migrations:
                if version in applied_versions:
                    logger.debug(f"Migration {version} already applied, skipping")
                    continue
                await self.apply_migration(conn, version, name, file_path)
                applied_count += 1

            logger.info(f"Applied {applied_count} migrations from {self.migrations_dir}")
        finally:
            await conn.close()
