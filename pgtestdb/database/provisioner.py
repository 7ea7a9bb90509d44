"""
Test Database Provisioner

Hands out brand new, fully migrated databases to tests without re-running
migrations for every test. Migrations are applied once into a template
database named after a fingerprint of the migration definitions; every test
then receives its own clone of that template.

Concurrent callers (asyncio tasks or separate processes such as pytest-xdist
workers) are serialised per template by a server-wide named lock, so a given
fingerprint is migrated at most once per server.
"""

import logging
import uuid
from typing import Optional

from .error_handler import ErrorHook, error_hook as default_error_hook
from .errors import ProvisioningError, TestDatabaseError
from .interfaces import Backend, Database, Lifecycle, Migrator

logger = logging.getLogger(__name__)

TEMPLATE_PREFIX = "test_template_"
INSTANCE_PREFIX = "test_db_"


def template_name(fingerprint: str) -> str:
    """Name of the template database cached for a migration fingerprint."""
    return f"{TEMPLATE_PREFIX}{fingerprint}"


def instance_name() -> str:
    """Fresh, unique name for a per-test database."""
    return f"{INSTANCE_PREFIX}{uuid.uuid4().hex}"


class Provisioner:
    """
    Builds or reuses template databases and clones isolated instances from them.

    Failures from the backend or the migrator are never retried; they are
    reported through the error hook, which is expected to halt the caller.
    """

    def __init__(self, error_hook: Optional[ErrorHook] = None):
        """
        Initialize Provisioner.

        Args:
            error_hook: Failure sink; defaults to the process-wide hook
        """
        self.error_hook = error_hook or default_error_hook

    async def provision(
        self,
        dsn: str,
        backend: Backend,
        migrator: Migrator,
        lifecycle: Lifecycle
    ) -> Database:
        """
        Provision a new isolated database on the server behind dsn.

        Args:
            dsn: Administrative connection string, allowed to create and drop databases
            backend: Engine primitives used to manage databases
            migrator: Source of the migrations every instance must carry
            lifecycle: Caller scope; the returned database is dropped when it ends

        Returns:
            Handle bound to a freshly cloned, fully migrated database
        """
        try:
            return await self._provision(dsn, backend, migrator, lifecycle)
        except TestDatabaseError as e:
            self.error_hook.report(e)
        except Exception as e:
            error = ProvisioningError(f"unexpected {type(e).__name__} while provisioning: {e}")
            error.__cause__ = e
            self.error_hook.report(error)

    async def _provision(
        self,
        dsn: str,
        backend: Backend,
        migrator: Migrator,
        lifecycle: Lifecycle
    ) -> Database:
        conn = await backend.connect(dsn)
        try:
            template = template_name(await migrator.fingerprint())

            logger.debug(f"Waiting for lock on {template}")
            await backend.lock(conn, template)
            logger.debug(f"Acquired lock on {template}")

            try:
                await self._ensure_template(conn, dsn, backend, migrator, template)

                name = instance_name()
                await backend.create_from_template(conn, template, name)
                logger.info(f"Created test database {name} from {template}")
            finally:
                # Released only once the clone exists, so the template cannot
                # vanish between the readiness check and the clone.
                await backend.unlock(conn, template)
                logger.debug(f"Released lock on {template}")
        finally:
            await backend.close(conn)

        database = backend.wrap_handle(dsn, backend.derive_target(dsn, name))
        lifecycle.add_cleanup(database.drop)

        return database

    async def _ensure_template(
        self,
        conn,
        dsn: str,
        backend: Backend,
        migrator: Migrator,
        template: str
    ) -> None:
        """Create and migrate template unless a ready copy already exists. Lock must be held."""
        if await backend.exists(conn, template):
            if await backend.is_ready(conn, template):
                logger.info(f"Reusing template database {template}")
                return

            # Left behind by a process that died before migrating it.
            logger.warning(f"Template database {template} was never marked ready, rebuilding it")
            await backend.remove(conn, template)

        logger.info(f"Building template database {template}")
        await backend.create(conn, template)

        migrated = False
        try:
            await migrator.apply(backend.derive_target(dsn, template))
            await backend.mark_ready(conn, template)
            migrated = True
        finally:
            if not migrated:
                logger.warning(f"Migration of {template} failed, removing it")
                try:
                    await backend.remove(conn, template)
                except TestDatabaseError as cleanup_error:
                    # The migration failure stays the reported cause.
                    logger.error(f"❌ Could not remove {template} after failed migration: {cleanup_error}")

        logger.info(f"✅ Template database {template} is ready")
