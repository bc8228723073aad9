from __future__ import annotations

from typing import Any, Dict, Optional


class MediaflowException(Exception):
    """
    Base exception for the media pipeline.

    Carries enough structure for the HTTP layer to render an error without
    leaking tracebacks: message/code/status_code/details/user_message and
    ``to_dict()``.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "MEDIAFLOW_ERROR",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(MediaflowException):
    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details,
            user_message=f"Validation failed: {message}",
        )


class NotFoundError(MediaflowException):
    def __init__(self, resource: str, identifier: Optional[str] = None, **kwargs: Any):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        details: Dict[str, Any] = {"resource": resource, "id": identifier}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details=details,
            user_message=f"{resource} not found",
        )


class PermissionError(MediaflowException):
    def __init__(self, action: str, resource: Optional[str] = None, **kwargs: Any):
        message = f"Permission denied for action: {action}"
        if resource:
            message += f" on resource: {resource}"
        details: Dict[str, Any] = {"action": action, "resource": resource}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="PERMISSION_DENIED",
            status_code=403,
            details=details,
            user_message="You don't have permission to perform this action",
        )


class InvalidStateError(MediaflowException):
    def __init__(
        self,
        message: str,
        *,
        current: Optional[str] = None,
        expected: Optional[str] = None,
        **kwargs: Any,
    ):
        details: Dict[str, Any] = {"current": current, "expected": expected}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="INVALID_STATE",
            status_code=409,
            details=details,
            user_message=message,
        )


class TransientIOError(MediaflowException):
    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            code="TRANSIENT_IO_ERROR",
            status_code=503,
            details=dict(kwargs),
            user_message="Storage temporarily unavailable",
        )


class UnsupportedFormatError(MediaflowException):
    def __init__(self, message: str, format: Optional[str] = None, **kwargs: Any):
        self.format = format
        details: Dict[str, Any] = {"format": format} if format else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="UNSUPPORTED_FORMAT",
            status_code=415,
            details=details,
            user_message=message,
        )


class ConfigurationError(MediaflowException):
    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"config_key": config_key} if config_key else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            status_code=500,
            details=details,
            user_message="System configuration error",
        )
