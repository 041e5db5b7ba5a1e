"""
Error handling for the exception rule engine.

Defines the application error base class, the rule engine error taxonomy
and helpers for wrapping repository failures and isolating callbacks.
"""

from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, TypeVar

from exception_rules.config.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class ErrorSeverity(Enum):
    """Severity levels for application errors."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AppError(Exception):
    """Base class for errors raised by the engine."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize the error.

        Args:
            message: Human-readable error message
            severity: How serious the error is
            cause: Underlying exception, if any
            details: Debug payload describing the inputs that caused the error
        """
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.cause = cause
        self.details = details or {}

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message} (caused by {type(self.cause).__name__}: {self.cause})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a dictionary."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None
        }


class ExceptionRuleError(Enum):
    """Kinds of failures raised by the rule engine."""

    RULE_NOT_FOUND = "RULE_NOT_FOUND"
    RULE_NAME_EXISTS = "RULE_NAME_EXISTS"
    INVALID_RULE_TYPE = "INVALID_RULE_TYPE"
    RULE_TYPE_MISMATCH = "RULE_TYPE_MISMATCH"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"


class ExceptionRuleException(AppError):
    """Error raised by rule engine operations."""

    def __init__(
        self,
        kind: ExceptionRuleError,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR
    ):
        super().__init__(message, severity=severity, cause=cause, details=details)
        self.kind = kind

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["kind"] = self.kind.value
        return result


@asynccontextmanager
async def storage_errors(operation: str, **details: Any) -> AsyncIterator[None]:
    """
    Wrap repository failures raised inside the block as STORAGE_ERROR.

    Engine exceptions pass through untouched. Nothing is retried.

    Args:
        operation: Description of the operation, used in the message
        **details: Inputs attached to the error as its debug payload
    """
    try:
        yield
    except ExceptionRuleException:
        raise
    except Exception as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise ExceptionRuleException(
            ExceptionRuleError.STORAGE_ERROR,
            f"Failed to {operation}",
            details=details,
            cause=e
        ) from e


def safe_execute(
    func: Callable[..., T],
    *args: Any,
    default: Optional[T] = None,
    error_message: str = "Error executing function",
    **kwargs: Any
) -> Optional[T]:
    """
    Call a function, logging and suppressing any exception it raises.

    Args:
        func: Function to call
        *args: Positional arguments for the function
        default: Value returned when the function raises
        error_message: Prefix for the logged error
        **kwargs: Keyword arguments for the function

    Returns:
        The function result, or ``default`` on failure
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.error(f"{error_message}: {e}", exc_info=True)
        return default
