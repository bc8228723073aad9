from mediaflow.exceptions.handlers import (
    ConfigurationError,
    InvalidStateError,
    MediaflowException,
    NotFoundError,
    PermissionError,
    TransientIOError,
    UnsupportedFormatError,
    ValidationError,
)

__all__ = [
    "MediaflowException",
    "ValidationError",
    "NotFoundError",
    "PermissionError",
    "InvalidStateError",
    "TransientIOError",
    "UnsupportedFormatError",
    "ConfigurationError",
]
