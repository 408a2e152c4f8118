import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class APIException(HTTPException):
    """Base exception class for API errors with consistent error handling."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        headers: Optional[Dict[str, Any]] = None,
        log_level: str = "warning",
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self._log_error(detail, log_level)

    def _log_error(self, detail: str, log_level: str):
        """Log the error with appropriate level."""
        log_func = getattr(logger, log_level, logger.warning)
        log_func(f"{self.__class__.__name__}: {detail}")


class ResourceNotFoundException(APIException):
    """Exception for when a requested resource is not found."""

    def __init__(self, resource_type: str, resource_id: str):
        detail = f"{resource_type} with ID {resource_id} not found"
        super().__init__(status.HTTP_404_NOT_FOUND, detail)


class UserNotFoundException(ResourceNotFoundException):
    """Exception for when a user is not found."""

    def __init__(self, user_id: str):
        super().__init__("User", user_id)


class AccessDeniedException(APIException):
    """Exception for access denied scenarios."""

    def __init__(self, resource_type: str = "resource", action: str = "access"):
        detail = f"Access denied: insufficient permissions to {action} {resource_type}"
        super().__init__(status.HTTP_403_FORBIDDEN, detail)


class ConflictException(APIException):
    """Exception for resource conflicts."""

    def __init__(self, detail: str):
        super().__init__(status.HTTP_409_CONFLICT, detail)


class UserNotApprovedException(APIException):
    """Exception for unapproved user access attempts."""

    def __init__(self):
        detail = "User account is not approved yet"
        super().__init__(status.HTTP_403_FORBIDDEN, detail)


class VMOperationException(APIException):
    """Exception for a VM start/stop the control plane rejected."""

    def __init__(self, operation: str, reason: str = ""):
        detail = f"Failed to {operation} game VM"
        if reason:
            detail += f": {reason}"
        super().__init__(
            status.HTTP_500_INTERNAL_SERVER_ERROR, detail, log_level="error"
        )


class VMNotConfiguredException(APIException):
    """Exception for when the panel context is not available yet."""

    def __init__(self):
        detail = "Game VM controller is not initialized"
        super().__init__(status.HTTP_503_SERVICE_UNAVAILABLE, detail, log_level="error")


# Errors raised inside the VM layer. They never escape the controller's
# public operations; callers get VMState.unknown or a failed result instead.


class VMControlPlaneError(Exception):
    """Transport or API error talking to the compute control plane."""

    def __init__(self, operation: str, reason: str = ""):
        self.operation = operation
        self.reason = reason
        message = f"Control plane {operation} failed"
        if reason:
            message += f": {reason}"
        super().__init__(message)


def validate_user_approved(user) -> None:
    """Validate if user is approved."""
    if not user.is_approved:
        raise UserNotApprovedException()
