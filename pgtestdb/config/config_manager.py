"""
Configuration Manager for pgtestdb

Resolves the administrative DSN, migration source and logging settings from
environment files and environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional

from pgtestdb.database.interfaces import Migrator
from pgtestdb.database.migration_manager import CliMigrator, NoopMigrator, SqlDirMigrator


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


class ConfigManager:
    """
    Central configuration for pgtestdb.

    Values are looked up in os.environ first, then in environment files
    loaded from config_dir (``.env``, overridden by ``.env.test``).
    """

    ENV_FILES = ['.env', '.env.test']

    MIGRATOR_KINDS = ('sql', 'cli')

    LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

    def __init__(self, config_dir: Optional[str] = None, validate: bool = False):
        """
        Initialize ConfigManager.

        Args:
            config_dir: Directory containing environment files
            validate: Whether to validate every setting eagerly
        """
        self.config_dir = Path(config_dir) if config_dir else Path.cwd()
        self._env_vars: Dict[str, str] = {}

        self._load_env_files()

        if validate:
            self.validate()

    def _load_env_files(self):
        """Load environment files in order; later files override earlier ones."""
        for env_file in self.ENV_FILES:
            env_path = self.config_dir / env_file
            if env_path.exists():
                self._load_env_file(env_path)

    def _load_env_file(self, env_path: Path):
        """Load a single environment file into our internal env_vars dict."""
        try:
            with open(env_path, 'r') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        self._env_vars[key.strip()] = value.strip()
        except OSError as e:
            raise ConfigValidationError(f"Cannot read environment file {env_path}: {e}")

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Look up key in os.environ, then in the loaded environment files."""
        return os.getenv(key) or self._env_vars.get(key) or default

    def validate(self):
        """Validate every setting, raising ConfigValidationError on the first problem."""
        self.dsn
        self.connect_timeout
        self.migrator_kind
        self.log_level
        if self.migrations_dir is not None and not self.migrations_dir.is_dir():
            raise ConfigValidationError(
                f"PGTESTDB_MIGRATIONS_DIR '{self.migrations_dir}' is not a directory"
            )

    @property
    def dsn(self) -> str:
        """Administrative connection string, allowed to create and drop databases."""
        dsn = self.get('PGTESTDB_DSN') or self.get('DATABASE_URL')
        if not dsn:
            raise ConfigValidationError("PGTESTDB_DSN or DATABASE_URL is required but not configured")
        return dsn

    @property
    def migrations_dir(self) -> Optional[Path]:
        value = self.get('PGTESTDB_MIGRATIONS_DIR')
        if not value:
            return None
        path = Path(value)
        return path if path.is_absolute() else self.config_dir / path

    @property
    def migrator_kind(self) -> str:
        kind = self.get('PGTESTDB_MIGRATOR', 'sql').lower()
        if kind not in self.MIGRATOR_KINDS:
            raise ConfigValidationError(
                f"Invalid PGTESTDB_MIGRATOR: '{kind}' - must be one of {', '.join(self.MIGRATOR_KINDS)}"
            )
        return kind

    @property
    def migrate_binary(self) -> str:
        return self.get('PGTESTDB_MIGRATE_BIN', 'migrate')

    @property
    def connect_timeout(self) -> int:
        value = self.get('PGTESTDB_CONNECT_TIMEOUT', '60')
        try:
            timeout = int(value)
        except ValueError:
            raise ConfigValidationError(
                f"Invalid PGTESTDB_CONNECT_TIMEOUT: '{value}' - must be a positive number of seconds"
            )
        if timeout <= 0:
            raise ConfigValidationError(
                f"Invalid PGTESTDB_CONNECT_TIMEOUT: '{value}' - must be a positive number of seconds"
            )
        return timeout

    @property
    def log_level(self) -> str:
        level = self.get('PGTESTDB_LOG_LEVEL', 'INFO').upper()
        if level not in self.LOG_LEVELS:
            raise ConfigValidationError(f"Invalid PGTESTDB_LOG_LEVEL: '{level}'")
        return level

    def configure_logging(self):
        """Apply the configured log level to the pgtestdb loggers."""
        logging.basicConfig(level=logging.WARNING, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        logging.getLogger('pgtestdb').setLevel(self.log_level)

    def build_migrator(self) -> Migrator:
        """Migration source described by the configuration."""
        migrations_dir = self.migrations_dir
        if migrations_dir is None:
            return NoopMigrator()

        if self.migrator_kind == 'cli':
            return CliMigrator(migrations_dir, binary=self.migrate_binary)
        return SqlDirMigrator(migrations_dir, connect_timeout=self.connect_timeout)
