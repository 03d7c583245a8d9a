"""
Exception classes for Vector Sync Orchestrator

Errors raised by adapters, the sync engine and the scheduler. Adapter errors
carry a ``retryable`` flag that the retry executor consults before scheduling
another attempt.
"""

from typing import Optional, Dict, Any


class VectorSyncError(Exception):
    """Base exception for all vector sync errors."""

    retryable = False

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "details": self.details
        }


class JobNotFoundError(VectorSyncError):
    """Raised when a requested job is not registered."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} not found",
            error_code="JOB_NOT_FOUND",
            details={"job_id": job_id}
        )


class DuplicateSubmissionError(VectorSyncError):
    """Raised when a job is submitted while already queued or running."""

    def __init__(self, job_id: str, status: str):
        super().__init__(
            f"Job {job_id} is already {status}",
            error_code="DUPLICATE_SUBMISSION",
            details={"job_id": job_id, "status": status}
        )


class InvalidStateTransitionError(VectorSyncError):
    """Raised when a job status change is not allowed by the lifecycle."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {target}",
            error_code="INVALID_STATE_TRANSITION",
            details={"job_id": job_id, "current": current, "target": target}
        )


class ConfigurationError(VectorSyncError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class SchedulerError(VectorSyncError):
    """Raised when scheduler operations fail."""

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Scheduler operation '{operation}' failed: {message}",
            error_code="SCHEDULER_ERROR",
            details={"operation": operation}
        )


class AdapterError(VectorSyncError):
    """Base class for failures reported by source, vectorizer or vector store adapters."""

    def __init__(self, message: str, error_code: str = "ADAPTER_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, details=details)


class AdapterConnectionError(AdapterError):
    """Raised when an external system cannot be reached."""

    retryable = True

    def __init__(self, target: str, message: str):
        super().__init__(
            f"Connection to {target} failed: {message}",
            error_code="CONNECTION_ERROR",
            details={"target": target}
        )


class OperationTimeoutError(AdapterError):
    """Raised when an adapter call exceeds its timeout."""

    retryable = True

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"Operation '{operation}' timed out after {timeout_seconds} seconds",
            error_code="TIMEOUT_ERROR",
            details={"operation": operation, "timeout_seconds": timeout_seconds}
        )


class ValidationError(AdapterError):
    """Raised when a record cannot be synced as-is. Never retried."""

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class DimensionMismatchError(AdapterError):
    """Raised when an embedding does not match the collection dimension."""

    retryable = True

    def __init__(self, expected: int, actual: int, collection: Optional[str] = None):
        super().__init__(
            f"Vector dimension {actual} does not match expected {expected}",
            error_code="DIMENSION_MISMATCH",
            details={"expected": expected, "actual": actual, "collection": collection}
        )
        self.expected = expected
        self.actual = actual


class WriteRejectedError(AdapterError):
    """Raised when the vector store reports an unsuccessful write."""

    retryable = True

    def __init__(self, collection: str, operation: str):
        super().__init__(
            f"Vector store rejected {operation} on {collection}",
            error_code="WRITE_REJECTED",
            details={"collection": collection, "operation": operation}
        )


class ConsistencyError(VectorSyncError):
    """Raised inside a consistency check; always converted into a result object."""

    def __init__(self, job_id: str, message: str):
        super().__init__(
            message,
            error_code="CONSISTENCY_ERROR",
            details={"job_id": job_id}
        )


class RetryExhaustedError(VectorSyncError):
    """Raised when an operation failed on every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        super().__init__(
            f"Operation '{operation}' failed after {attempts} attempts: {last_error}",
            error_code="RETRY_EXHAUSTED",
            details={"operation": operation, "attempts": attempts}
        )
        self.attempts = attempts
        self.last_error = last_error


class ErrorRegistry:
    """Registry for tracking error counts by type."""

    def __init__(self):
        self.error_counts: Dict[str, int] = {}

    def record_error(self, error: Exception):
        """Record an error for analysis."""
        if isinstance(error, RetryExhaustedError):
            error = error.last_error
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": dict(self.error_counts),
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }
