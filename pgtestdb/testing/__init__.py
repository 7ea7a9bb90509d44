"""
pgtestdb Testing Infrastructure

Caller lifecycles, the pytest plugin, and Docker management for a throwaway
PostgreSQL server used by integration tests.
"""

from .lifecycle import CleanupScope

__all__ = ['CleanupScope']
