"""
Error taxonomy and per-run error tracking for the document broker.

Failures are split by how the caller must react to them:

- Whole-batch failures (``SourceFetchError``) abort a synchronization run and
  leave its checkpoint untouched.
- Per-item failures (``NotFoundError``, ``TransientTransportError``,
  ``DataIntegrityError`` and friends) are caught by the engine, reported to the
  ``ErrorTracker`` and added to the run's failed items.
- ``InvalidChangeTokenError`` tells the webhook pipeline to reset its cursor and
  resynchronize, and must never be confused with a transport failure.
- ``ForbiddenError`` propagates without retry.

Key Features:
- ErrorTracker: aggregates every error reported during a run.
- Severity Levels: WARNING, ERROR, CRITICAL.
- Reports: ``generate_report`` produces the payload sent to external monitors.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any


class ErrorSeverity(Enum):
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return ("WARNING", "ERROR", "CRITICAL").index(self.value)


@dataclass
class SyncError:
    """
    A structured object representing a single error that occurred during a run.
    """
    message: str
    source_id: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Dict[str, Any] = field(default_factory=dict)
    recovery_suggestion: Optional[str] = None

    def to_dict(self):
        return {
            "message": self.message,
            "source_id": self.source_id,
            "severity": self.severity.value,
            "details": self.details,
            "recovery_suggestion": self.recovery_suggestion
        }


class SyncException(Exception):
    """Base class for all broker exceptions."""
    def __init__(self, message: str, source_id: Optional[str] = None, recovery_suggestion: Optional[str] = None):
        self.message = message
        self.source_id = source_id
        self.recovery_suggestion = recovery_suggestion
        super().__init__(self.message)


class ConfigurationError(SyncException):
    """Indicates an error in the broker configuration file or environment."""
    pass


class SourceFetchError(SyncException):
    """The change feed could not be read; the whole batch is aborted."""
    pass


class ExternalServiceError(SyncException):
    """Indicates a failure with an external service (Graph, blob storage, callback)."""
    pass


class TransientTransportError(ExternalServiceError):
    """Timeout, throttling or 5xx from the repository. Safe to retry."""
    def __init__(self, message: str, source_id: Optional[str] = None, recovery_suggestion: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, source_id=source_id, recovery_suggestion=recovery_suggestion)
        # Seconds the server asked us to wait (Retry-After), if any
        self.retry_after = retry_after


class ForbiddenError(ExternalServiceError):
    """The repository refused the request (401/403)."""
    pass


class NotFoundError(SyncException):
    """A coordinate or record does not exist."""
    pass


class ContainerNotFoundError(NotFoundError):
    """The drive behind a site/list pair does not exist."""
    pass


class ItemNotFoundError(NotFoundError):
    """The item or drive item does not exist."""
    pass


class IdentityRecordNotFoundError(NotFoundError):
    """No identity record is stored for the given object id."""
    pass


class InvalidChangeTokenError(SyncException):
    """The stored change token is stale, out of range, malformed or belongs to another list."""
    pass


class DataIntegrityError(SyncException):
    """An identity record could not be created or is inconsistent."""
    pass


class DuplicateRecordError(DataIntegrityError):
    """An identity record with the same object id or natural key already exists."""
    pass


class MissingCoordinateError(DataIntegrityError):
    """A coordinate required to mint an object id is empty."""
    def __init__(self, field_name: str, source_id: Optional[str] = None):
        self.field_name = field_name
        super().__init__(
            f"Cannot mint object id: {field_name} is empty",
            source_id=source_id,
            recovery_suggestion=f"Make sure {field_name} can be resolved before registering the document",
        )


class ConcurrencyConflictError(SyncException):
    """A compare-and-set write lost against a concurrent writer."""
    pass


class SyncAlreadyRunningError(SyncException):
    """A run of the same feed type is already in progress."""
    pass


# Severity an exception is reported with when the caller does not choose one
DEFAULT_SEVERITIES = (
    (ForbiddenError, ErrorSeverity.CRITICAL),
    (ConfigurationError, ErrorSeverity.CRITICAL),
    (SourceFetchError, ErrorSeverity.CRITICAL),
    (NotFoundError, ErrorSeverity.WARNING),
)


def severity_for(exc: BaseException) -> ErrorSeverity:
    for exc_type, severity in DEFAULT_SEVERITIES:
        if isinstance(exc, exc_type):
            return severity
    return ErrorSeverity.ERROR


class ErrorTracker:
    """
    Collects the errors of one broker operation.

    Shared by the worker threads of a synchronisation run, so every access
    goes through a lock.
    """
    def __init__(self):
        self.errors: List[SyncError] = []
        self._lock = threading.Lock()

    def report(self, message: str, source_id: Optional[str] = None, severity: ErrorSeverity = ErrorSeverity.ERROR,
               details: Optional[Dict[str, Any]] = None, recovery_suggestion: Optional[str] = None):
        error = SyncError(
            message=message,
            source_id=source_id,
            severity=severity,
            details=details or {},
            recovery_suggestion=recovery_suggestion
        )
        with self._lock:
            self.errors.append(error)

    def report_exception(self, exc: BaseException, source_id: Optional[str] = None,
                         severity: Optional[ErrorSeverity] = None):
        """
        Report an exception. Broker exceptions keep their own source id and
        recovery suggestion; the severity defaults by exception type.
        """
        self.report(
            message=exc.message if isinstance(exc, SyncException) else str(exc),
            source_id=getattr(exc, 'source_id', None) or source_id,
            severity=severity or severity_for(exc),
            details={"type": type(exc).__name__},
            recovery_suggestion=getattr(exc, 'recovery_suggestion', None),
        )

    def get_errors(self, min_severity: ErrorSeverity = ErrorSeverity.WARNING) -> List[SyncError]:
        with self._lock:
            return [e for e in self.errors if e.severity.rank >= min_severity.rank]

    def has_critical_errors(self) -> bool:
        return bool(self.get_errors(ErrorSeverity.CRITICAL))

    def clear(self) -> None:
        with self._lock:
            self.errors = []

    def generate_report(self) -> Dict[str, Any]:
        errors = self.get_errors()
        by_type: Dict[str, int] = {}
        for error in errors:
            error_type = error.details.get("type", "unknown")
            by_type[error_type] = by_type.get(error_type, 0) + 1
        return {
            "total_errors": len(errors),
            "critical_count": sum(1 for e in errors if e.severity is ErrorSeverity.CRITICAL),
            "error_count": sum(1 for e in errors if e.severity is ErrorSeverity.ERROR),
            "warning_count": sum(1 for e in errors if e.severity is ErrorSeverity.WARNING),
            "by_type": by_type,
            "errors": [e.to_dict() for e in errors],
        }
