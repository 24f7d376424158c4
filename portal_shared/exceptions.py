"""
Exception hierarchy for the Portal Client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so that signing, session storage and token lifecycle
failures are reported consistently.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the Portal Client."""

    # Authentication Errors (1000-1099)
    AUTH_INVALID_TOKEN = "AUTH_1001"
    AUTH_TOKEN_EXPIRED = "AUTH_1002"
    AUTH_SILENT_REFRESH_FAILED = "AUTH_1003"
    AUTH_INTERACTIVE_LOGIN_FAILED = "AUTH_1004"
    AUTH_REAUTHENTICATION_REQUIRED = "AUTH_1005"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"

    # Session Storage Errors (3000-3099)
    STORAGE_QUOTA_EXCEEDED = "STORAGE_3001"
    STORAGE_SERIALIZATION_FAILED = "STORAGE_3002"
    STORAGE_BACKEND_UNAVAILABLE = "STORAGE_3003"
    STORAGE_CORRUPTED = "STORAGE_3004"

    # Validation Errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    VALIDATION_MISSING_REQUIRED_FIELD = "VALIDATION_4002"

    # Configuration Errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_MISSING_REQUIRED_SETTING = "CONFIG_8003"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    REFRESH_TOKEN = "refresh_token"
    USER_INTERVENTION = "user_intervention"
    LOWER_SECURITY_TIER = "lower_security_tier"
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


class PortalError(Exception):
    """
    Base exception class for all Portal Client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class AuthenticationError(PortalError):
    """Token acquisition and validation errors."""

    def __init__(self, message: str, error_code: ErrorCode, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('recovery_actions', [RecoveryAction.REFRESH_TOKEN])
        super().__init__(message=message, error_code=error_code, **kwargs)


class ReauthenticationRequiredError(AuthenticationError):
    """
    Terminal token refresh failure.

    Raised when neither silent refresh nor the interactive fallback produced
    a token. Callers must send the user back through the login flow; the
    condition is not retryable.
    """

    USER_MESSAGE = "Token refresh failed. Please login again."

    def __init__(self, message: str = USER_MESSAGE, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_REAUTHENTICATION_REQUIRED,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            user_message=self.USER_MESSAGE,
            **kwargs
        )


class NetworkError(PortalError):
    """Network and communication related errors."""

    def __init__(self, message: str, error_code: ErrorCode, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF],
            **kwargs
        )


class StorageError(PortalError):
    """Session storage errors (quota, serialization, unavailable backend)."""

    def __init__(self, message: str, error_code: ErrorCode, key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if key is not None:
            context['key'] = key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE, RecoveryAction.LOWER_SECURITY_TIER],
            context=context,
            **kwargs
        )


class ValidationError(PortalError):
    """Input validation related errors."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )


class ConfigurationError(PortalError):
    """Configuration related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_MISSING_REQUIRED_SETTING,
        config_key: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION, RecoveryAction.CONTACT_ADMIN],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> PortalError:
    """
    Convert a generic exception to a structured PortalError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured PortalError
    """
    if isinstance(exception, PortalError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_CONNECTION_FAILED, NetworkError),
        TimeoutError: (ErrorCode.NETWORK_TIMEOUT, NetworkError),
        TypeError: (ErrorCode.STORAGE_SERIALIZATION_FAILED, StorageError),
        PermissionError: (ErrorCode.STORAGE_BACKEND_UNAVAILABLE, StorageError),
        FileNotFoundError: (ErrorCode.CONFIG_FILE_NOT_FOUND, ConfigurationError),
        ValueError: (ErrorCode.VALIDATION_INVALID_INPUT, ValidationError),
    }

    error_code, error_class = exception_mapping.get(
        type(exception),
        (default_error_code, PortalError)
    )

    return error_class(
        message=str(exception),
        error_code=error_code,
        context=context,
        cause=exception
    )
