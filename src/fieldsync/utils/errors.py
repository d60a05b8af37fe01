"""
Error handling framework for fieldsync.

This module provides:
- Hierarchical exception classes for the sync engine
- Error context preservation
- Structured error payloads for status events and the CLI
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager

from .logging import get_logger


logger = get_logger("fieldsync.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    NETWORK = "network"
    STORAGE = "storage"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    CONFIGURATION = "configuration"
    PROGRAMMING = "programming"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class FieldSyncError(Exception):
    """Base exception for all fieldsync errors."""

    code: str = "FIELDSYNC_ERROR"
    default_message: str = "An error occurred in the sync engine"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "entity_type": self.context.entity_type,
                    "entity_id": self.context.entity_id,
                    "metadata": self.context.metadata,
                },
            }
        }


class ConfigurationError(FieldSyncError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify FIELDSYNC_* environment variables",
        ]


class ValidationError(FieldSyncError):
    """Malformed input. Never retried, surfaced immediately."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


class RemoteValidationError(ValidationError):
    """The remote collaborator rejected a payload as malformed."""
    code = "REMOTE_VALIDATION_ERROR"

    def __init__(self, status: int, body: str = "", **kwargs):
        self.status = status
        self.body = body
        super().__init__("payload", body, f"rejected by remote with status {status}", **kwargs)


class IncompleteMergeError(ValidationError):
    """A manual merge left one or more conflicting fields undecided."""
    code = "INCOMPLETE_MERGE"

    def __init__(self, missing_fields: List[str], **kwargs):
        self.missing_fields = list(missing_fields)
        super().__init__(
            "manual_merge_data",
            self.missing_fields,
            f"no selection for conflicting fields: {', '.join(self.missing_fields)}",
            **kwargs
        )


class TransientNetworkError(FieldSyncError):
    """Network or remote failure that is worth retrying."""
    code = "TRANSIENT_NETWORK_ERROR"
    default_message = "Network error occurred"
    category = ErrorCategory.NETWORK
    is_retryable = True

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None, **kwargs):
        self.status = status
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            "Check your network connection",
            "The entry stays queued and is retried on the next drain",
        ]


class ConflictDetected(FieldSyncError):
    """The remote holds a diverging version of the entity."""
    code = "CONFLICT_DETECTED"
    default_message = "Remote reported a conflicting version"
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.WARNING

    def __init__(self, server_data: Optional[Dict[str, Any]] = None, **kwargs):
        self.server_data = server_data
        super().__init__(**kwargs)


class RetriesExhausted(FieldSyncError):
    """An entry failed its maximum number of attempts."""
    code = "RETRIES_EXHAUSTED"
    default_message = "Maximum sync attempts exceeded"
    category = ErrorCategory.NETWORK

    def __init__(self, attempts: int, last_error: Optional[str] = None, **kwargs):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}", **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            "Inspect the entry with 'fieldsync failed'",
            "Re-queue it with 'fieldsync retry-failed' once the cause is fixed",
        ]


class StorageUnavailable(FieldSyncError):
    """The local store could not complete an operation."""
    code = "STORAGE_UNAVAILABLE"
    default_message = "Local storage is unavailable"
    category = ErrorCategory.STORAGE
    severity = ErrorSeverity.CRITICAL


class MissingMergeData(FieldSyncError, ValueError):
    """Merge strategy requested without merge data."""
    code = "MISSING_MERGE_DATA"
    default_message = "Manual merge data required for merge strategy"
    category = ErrorCategory.PROGRAMMING


@contextmanager
def error_context(component: str, operation: str, **metadata):
    """
    Wrap foreign exceptions raised at a storage boundary.

    FieldSyncError instances pass through with their context filled in;
    anything else is logged and re-raised as StorageUnavailable.
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        metadata=metadata
    )

    try:
        yield context
    except FieldSyncError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        raise
    except Exception as e:
        logger.error(
            "storage_error",
            component=component,
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise StorageUnavailable(
            f"{operation} failed: {e}",
            context=context,
            cause=e
        ) from e


__all__ = [
    'FieldSyncError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'ValidationError',
    'RemoteValidationError',
    'IncompleteMergeError',
    'TransientNetworkError',
    'ConflictDetected',
    'RetriesExhausted',
    'StorageUnavailable',
    'MissingMergeData',
    'error_context',
]
