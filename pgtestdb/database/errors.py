"""
Exceptions raised while provisioning or using a test database.
"""

from typing import Optional


class TestDatabaseError(Exception):
    """Base class for every failure raised by pgtestdb."""

    __test__ = False


class ConnectivityError(TestDatabaseError):
    """Raised when the database server cannot be reached or authenticated against."""
    pass


class InvalidIdentifierError(TestDatabaseError):
    """Raised when a database, table or column name is unsafe to interpolate."""
    pass


class MigrationError(TestDatabaseError):
    """Raised when migrations cannot be fingerprinted or applied."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class CloneError(TestDatabaseError):
    """Raised when a database cannot be created from its template."""
    pass


class NoRowsError(TestDatabaseError):
    """Raised when a single value or row was expected but the query returned nothing."""
    pass


class QueryError(TestDatabaseError):
    """Raised when any other statement fails."""
    pass


class ProvisioningError(TestDatabaseError):
    """Raised for unexpected failures from a backend or migrator; the original is chained."""
    pass
