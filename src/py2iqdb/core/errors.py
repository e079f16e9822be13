"""
Unified error handling framework for the IQDB client and gateway.

This module defines the standard error hierarchy used by the protocol
client, the query service and the HTTP gateway.

Error Code Ranges:
- 1000-1999: Connection errors (dial, write, read, connection lost)
- 2000-2999: Protocol and query errors (desync, daemon error responses)
- 6000-6999: Configuration errors
- 7000-7999: Validation errors
- 8000-8999: Timeout errors
- 9000-9999: Unknown/System errors
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
import traceback


class IqdbError(Exception):
    """
    Base exception for all IQDB client errors.

    Provides structured error information with context tracking.
    """

    # Base error code for unknown errors
    DEFAULT_CODE = 9000

    def __init__(
        self,
        message: str,
        error_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """
        Initialize an IQDB error.

        Args:
            message: Human-readable error description
            error_code: Numeric error code for categorization
            context: Additional context information (WHERE)
            cause: Original exception if this wraps another error
            suggestions: List of possible solutions or next steps
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.DEFAULT_CODE
        self.context = context or {}
        self.cause = cause
        self.suggestions = suggestions or []
        self.timestamp = datetime.now()

        self.stack_trace = traceback.format_exc() if cause else None

        if cause:
            self.context['original_error'] = str(cause)
            self.context['original_type'] = type(cause).__name__

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'error_type': self.__class__.__name__,
            'message': self.message,
            'code': self.error_code,
            'context': self.context,
            'suggestions': self.suggestions,
            'timestamp': self.timestamp.isoformat(),
            'cause': str(self.cause) if self.cause else None,
            'stack_trace': self.stack_trace
        }

    def format_log_message(self) -> str:
        """Format error for logging (with all details)."""
        parts = [
            f"[{self.error_code}] {self.__class__.__name__}: {self.message}"
        ]

        if self.context:
            parts.append(f"Context: {self.context}")

        if self.cause:
            parts.append(f"Caused by: {self.cause}")

        return " | ".join(parts)


class ConnectionError(IqdbError):
    """Transport failures: dial, write, read, or a connection that went away."""
    DEFAULT_CODE = 1001

    def __init__(self, message: str, address: Optional[str] = None, **kwargs):
        if 'context' not in kwargs or kwargs['context'] is None:
            kwargs['context'] = {}
        kwargs['context']['category'] = 'CONNECTION'
        if address:
            kwargs['context']['address'] = address
        super().__init__(message, **kwargs)


class ProtocolError(IqdbError):
    """Protocol desync: a response that is invalid where it appeared."""
    DEFAULT_CODE = 2004

    def __init__(self, message: str, response: Optional[Any] = None, **kwargs):
        if 'context' not in kwargs or kwargs['context'] is None:
            kwargs['context'] = {}
        kwargs['context']['category'] = 'PROTOCOL'
        if response is not None:
            kwargs['context']['response'] = repr(response)
        super().__init__(message, **kwargs)


class QueryError(IqdbError):
    """
    The daemon answered a query with an error, exception or fatal response.

    The three severities differ only in message text and in the
    ``severity`` context entry; callers handle them identically.
    """
    DEFAULT_CODE = 2001

    def __init__(self, message: str, severity: str = 'error', **kwargs):
        if 'context' not in kwargs or kwargs['context'] is None:
            kwargs['context'] = {}
        kwargs['context']['category'] = 'QUERY'
        kwargs['context']['severity'] = severity
        super().__init__(message, **kwargs)
        self.severity = severity


class ConfigurationError(IqdbError):
    """Errors related to gateway configuration and settings."""
    DEFAULT_CODE = 6001

    def __init__(self, message: str, setting_name: Optional[str] = None, **kwargs):
        if 'context' not in kwargs or kwargs['context'] is None:
            kwargs['context'] = {}
        kwargs['context']['category'] = 'CONFIGURATION'
        if setting_name:
            kwargs['context']['setting'] = setting_name
        super().__init__(message, **kwargs)


class ValidationError(IqdbError):
    """Errors related to input validation and parameter checking."""
    DEFAULT_CODE = 7001

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        if 'context' not in kwargs or kwargs['context'] is None:
            kwargs['context'] = {}
        kwargs['context']['category'] = 'VALIDATION'
        if field_name:
            kwargs['context']['field'] = field_name
        super().__init__(message, **kwargs)


class TimeoutError(IqdbError):
    """A handshake or query did not complete before its deadline."""
    DEFAULT_CODE = 8001

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        if 'context' not in kwargs or kwargs['context'] is None:
            kwargs['context'] = {}
        kwargs['context']['category'] = 'TIMEOUT'
        if timeout_seconds is not None:
            kwargs['context']['timeout_seconds'] = timeout_seconds
        super().__init__(message, **kwargs)


class ErrorCodes:
    """Standard error codes for common error scenarios."""

    # Connection errors (1000-1999)
    CONNECTION_REFUSED = 1001
    CONNECTION_TIMEOUT = 1002
    CONNECTION_LOST = 1003
    SOCKET_ERROR = 1004
    NOT_CONNECTED = 1005

    # Protocol / query errors (2000-2999)
    QUERY_ERROR = 2001
    QUERY_EXCEPTION = 2002
    QUERY_FATAL = 2003
    INVALID_RESPONSE = 2004
    HANDSHAKE_FAILED = 2005

    # Configuration errors (6000-6999)
    CONFIG_NOT_FOUND = 6001
    CONFIG_INVALID = 6002

    # Validation errors (7000-7999)
    INVALID_PARAMETER = 7001
    OUT_OF_RANGE = 7002
    MISSING_REQUIRED = 7003

    # Timeout errors (8000-8999)
    OPERATION_TIMEOUT = 8001
    RESPONSE_TIMEOUT = 8002
    HANDSHAKE_TIMEOUT = 8003

    # System errors (9000-9999)
    UNKNOWN_ERROR = 9000


def wrap_external_error(e: Exception, message: str, error_class=IqdbError, **context) -> IqdbError:
    """
    Wrap an external exception in an IqdbError.

    Args:
        e: The original exception
        message: Context-specific error message
        error_class: The IqdbError subclass to use
        **context: Additional context information

    Returns:
        An IqdbError instance wrapping the original exception
    """
    return error_class(
        message=message,
        cause=e,
        context=context
    )
