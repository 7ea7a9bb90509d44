"""
Failure reporting for pgtestdb.

Every failure raised while provisioning or using a test database is funnelled
through one ErrorHook. The default handler fails the running test immediately
with a descriptive message. Tests of pgtestdb itself swap the handler with
``error_hook.override(...)`` so they can assert on failures without the test
being failed for them.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, NoReturn, Optional

import pytest

from .errors import TestDatabaseError

logger = logging.getLogger(__name__)

ErrorHandler = Callable[..., None]


def fail_test(err: BaseException, *extra: Any) -> None:
    """Default handler: halt the current test with the failing cause."""
    details = " ".join(str(item) for item in extra)
    message = f"testdb initialisation failed: {err}"
    if details:
        message = f"{message} ({details})"

    logger.error(message)
    pytest.fail(message, pytrace=False)


class ErrorHook:
    """Overridable failure sink shared by the provisioner and database handles."""

    def __init__(self, handler: Optional[ErrorHandler] = None):
        self._handler: ErrorHandler = handler or fail_test

    @property
    def handler(self) -> ErrorHandler:
        return self._handler

    def install(self, handler: ErrorHandler) -> ErrorHandler:
        """Replace the active handler, returning the previous one."""
        previous = self._handler
        self._handler = handler
        return previous

    @contextmanager
    def override(self, handler: ErrorHandler) -> Iterator[ErrorHandler]:
        """Temporarily swap the handler, restoring the previous one on exit."""
        previous = self.install(handler)
        try:
            yield handler
        finally:
            self._handler = previous

    def report(self, err: TestDatabaseError, *extra: Any) -> NoReturn:
        """
        Hand err to the active handler.

        A handler is expected to halt the caller. If it returns instead, err is
        re-raised so no partially provisioned result is ever handed back.
        """
        self._handler(err, *extra)
        raise err


# Process-wide default used when no hook is injected explicitly.
error_hook = ErrorHook()
