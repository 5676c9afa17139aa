"""
Structured Error Handling for the suggestion engine

Provides a hierarchy of exceptions for the failure modes of the search
pipeline. None of them is fatal to a search request: callers catch them at
the seam where a degraded result is defined (empty source contribution,
keyword fallback, cache miss, neutral feature default).
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class SuggestionEngineError(Exception):
    """
    Base exception for the suggestion engine.

    All engine-specific errors should inherit from this class.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "ENGINE_ERROR",
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize engine error.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code for API responses
            severity: Error severity level
            context: Additional context for debugging
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses"""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code}: {self.message})"


class RetriableError(SuggestionEngineError):
    """Temporary failure (timeouts, unreachable dependency); may succeed later."""

    def __init__(self, message: str, error_code: str = "RETRIABLE_ERROR", **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        super().__init__(message, error_code, **kwargs)


class NonRetriableError(SuggestionEngineError):
    """Permanent failure such as bad configuration or malformed input."""

    def __init__(self, message: str, error_code: str = "NON_RETRIABLE_ERROR", **kwargs):
        super().__init__(message, error_code, severity=ErrorSeverity.HIGH, **kwargs)


# ============================================================================
# Specific Error Types
# ============================================================================


class ConfigurationError(NonRetriableError):
    """Invalid or missing configuration"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIG_ERROR", **kwargs)


class ValidationError(NonRetriableError):
    """Input validation failed"""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="VALIDATION_ERROR", **kwargs)
        self.field = field


class SourceUnavailableError(RetriableError):
    """A knowledge source failed to answer a query"""

    def __init__(self, message: str, system: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="SOURCE_UNAVAILABLE", **kwargs)
        self.system = system


class SourceTimeoutError(SourceUnavailableError):
    """A knowledge source did not answer within its timeout"""

    def __init__(self, message: str, system: Optional[str] = None, timeout_seconds: float = 0.0, **kwargs):
        super().__init__(message, system=system, **kwargs)
        self.error_code = "SOURCE_TIMEOUT"
        self.timeout_seconds = timeout_seconds


class EmbeddingProviderError(RetriableError):
    """Embedding provider failed or timed out"""

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="EMBEDDING_ERROR", **kwargs)
        self.provider = provider


class CacheCorruptError(SuggestionEngineError):
    """A cached payload could not be decoded"""

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CACHE_CORRUPT", severity=ErrorSeverity.LOW, **kwargs)
        self.key = key


class IndexingError(RetriableError):
    """Chunking, embedding or storing a document failed"""

    def __init__(self, message: str, owner_id: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="INDEXING_ERROR", **kwargs)
        self.owner_id = owner_id


# ============================================================================
# Error Utilities
# ============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if error should be retried"""
    return isinstance(error, RetriableError)


def get_error_severity(error: Exception) -> ErrorSeverity:
    """Get severity level of error"""
    if isinstance(error, SuggestionEngineError):
        return error.severity
    return ErrorSeverity.HIGH


def format_error_for_logging(error: Exception, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Format error for structured logging"""
    result: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "message": str(error),
    }

    if request_id:
        result["request_id"] = request_id

    if isinstance(error, SuggestionEngineError):
        result.update(error.to_dict())

    if error.__cause__:
        result["caused_by"] = {
            "type": type(error.__cause__).__name__,
            "message": str(error.__cause__),
        }

    return result
