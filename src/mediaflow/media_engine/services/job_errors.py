from __future__ import annotations

from mediaflow.exceptions.handlers import (
    NotFoundError,
    UnsupportedFormatError,
    ValidationError,
)


class JobFatalError(RuntimeError):
    """Non-retryable job failure (e.g., asset row gone)."""


# Failures a retry cannot change; the task is dead-lettered on first occurrence
FATAL_ERRORS = (JobFatalError, UnsupportedFormatError, NotFoundError, ValidationError)


def is_fatal(exc: BaseException) -> bool:
    return isinstance(exc, FATAL_ERRORS)
