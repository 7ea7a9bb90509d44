"""
Database package for pgtestdb.

Provides the provisioner, its backend and migration contracts, the PostgreSQL
backend, and the failure hook shared by all of them.
"""

from .error_handler import ErrorHook, error_hook, fail_test
from .errors import (
    CloneError,
    ConnectivityError,
    InvalidIdentifierError,
    MigrationError,
    NoRowsError,
    ProvisioningError,
    QueryError,
    TestDatabaseError,
)
from .interfaces import Backend, Database, Lifecycle, Migrator
from .migration_manager import CliMigrator, NoopMigrator, SqlDirMigrator
from .postgres import ExecResult, PgBackend, PgDatabase, new_pg
from .provisioner import Provisioner

__all__ = [
    'Backend',
    'CliMigrator',
    'CloneError',
    'ConnectivityError',
    'Database',
    'ErrorHook',
    'ExecResult',
    'InvalidIdentifierError',
    'Lifecycle',
    'MigrationError',
    'Migrator',
    'NoRowsError',
    'NoopMigrator',
    'PgBackend',
    'PgDatabase',
    'ProvisioningError',
    'Provisioner',
    'QueryError',
    'SqlDirMigrator',
    'TestDatabaseError',
    'error_hook',
    'fail_test',
    'new_pg',
]
