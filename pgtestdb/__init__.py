"""
pgtestdb

Isolated, fully migrated PostgreSQL databases for tests, cloned from cached
template databases so migrations run once per schema version.
"""

from .database import (
    CliMigrator,
    ErrorHook,
    NoopMigrator,
    PgBackend,
    PgDatabase,
    Provisioner,
    SqlDirMigrator,
    error_hook,
    new_pg,
)
from .testing.lifecycle import CleanupScope

__version__ = "1.0.0"

__all__ = [
    'CleanupScope',
    'CliMigrator',
    'ErrorHook',
    'NoopMigrator',
    'PgBackend',
    'PgDatabase',
    'Provisioner',
    'SqlDirMigrator',
    'error_hook',
    'new_pg',
]
