"""
Structured error types for allotment.

Every error raised by allotment itself extends :class:`AllotmentError` so
callers get a category, an explicit retry flag and structured context for
logging.  Native driver errors (``sqlite3.Error``, ``psycopg2.Error``) raised
by a statement are *not* wrapped: they reach the caller unmodified after a
best-effort rollback, so the real cause is never hidden behind a generic
wrapper.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       AllotmentError                            │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  TransientError          DatabaseError        AllocationError   │
        │  (retryable=True)        (DATABASE)           (ALLOCATION)      │
        │       │                       │                    │            │
        │  BusyError               QueryError           NoInstancesError  │
        │  DatabaseConnectionError IntegrityError                         │
        │                                                                 │
        │  ConfigError             EngineClosedError    QueueClosedError  │
        │  (CONFIG)                (ENGINE)             (ENGINE)          │
        │       │                                                         │
        │  InvalidConfigError      TransactionClosedError                 │
        └─────────────────────────────────────────────────────────────────┘

Taxonomy:
    - **Transient/retryable:** a busy/locked store.  Absorbed by the retry
      loop in :mod:`allotment.engine.transaction`, never surfaced.
    - **Domain:** ``NoInstancesError`` when ``allocate`` finds no available
      instance.  Surfaced after the transaction is rolled back.
    - **Connection:** ``DatabaseConnectionError`` from ``Allocator.open()``
      and the ``error`` lifecycle event.
    - **Unexpected storage error:** the native driver error, verbatim.

Examples:
    >>> error = NoInstancesError()
    >>> error.message
    'no instances'
    >>> error.retryable
    False
    >>> BusyError("database is locked").retryable
    True
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    DATABASE = "DATABASE"         # Locking, connection, query failures

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"             # Unknown backend, invalid settings

    # Application errors
    ALLOCATION = "ALLOCATION"     # Job placement failures
    ENGINE = "ENGINE"             # Engine/queue lifecycle misuse

    # Internal errors
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"           # Uncategorized errors


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error for logging.

    Attributes:
        operation: Engine operation that failed (``allocate``, ``available``...)
        job_id: Job involved, if any
        instance_id: Instance involved, if any
        backend: Storage backend name (``sqlite``, ``postgresql``)
        metadata: Additional key-value pairs
    """

    operation: str | None = None
    job_id: str | None = None
    instance_id: str | None = None
    backend: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["operation", "job_id", "instance_id", "backend"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class AllotmentError(Exception):
    """
    Base exception for all allotment errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    raising sites only pass what differs from the defaults.

    Examples:
        >>> error = AllotmentError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(operation="allocate", job_id="bar").context.job_id
        'bar'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> AllotmentError:
        """
        Add context to this error (fluent API).

        Usage:
            raise NoInstancesError().with_context(operation="allocate", job_id=job_id)
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(AllotmentError):
    """Temporary error that may succeed on retry."""

    default_category = ErrorCategory.DATABASE
    default_retryable = True


class BusyError(TransientError):
    """The store is locked by another writer.

    Raised only where a busy condition has to be reported as a typed error
    (see :func:`classify_storage_error`); the engine itself retries the
    native error without wrapping it.
    """

    default_category = ErrorCategory.DATABASE


class DatabaseConnectionError(TransientError):
    """Opening or keeping the connection/session failed."""

    default_category = ErrorCategory.DATABASE


# =============================================================================
# DATABASE ERRORS
# =============================================================================


class DatabaseError(AllotmentError):
    """Database query or transaction error."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class QueryError(DatabaseError):
    """SQL query error."""
    pass


class IntegrityError(DatabaseError):
    """Database integrity constraint violation."""
    pass


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(AllotmentError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.  Raised synchronously at
    construction time.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


# =============================================================================
# ALLOCATION ERRORS
# =============================================================================


class AllocationError(AllotmentError):
    """Job allocation failed for a domain reason."""

    default_category = ErrorCategory.ALLOCATION
    default_retryable = False


class NoInstancesError(AllocationError):
    """No instance is available to receive a job."""

    def __init__(self, message: str = "no instances", **kwargs: Any):
        super().__init__(message, **kwargs)


# =============================================================================
# ENGINE ERRORS
# =============================================================================


class EngineClosedError(AllotmentError):
    """Operation attempted on an allocator that is not open."""

    default_category = ErrorCategory.ENGINE
    default_retryable = False


class QueueClosedError(EngineClosedError):
    """Work submitted to (or pending in) a closed task queue."""
    pass


class TransactionClosedError(AllotmentError):
    """Statement issued on a transaction that already committed or rolled back."""

    default_category = ErrorCategory.ENGINE
    default_retryable = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def categorize_error(error: BaseException) -> ErrorCategory:
    """Categorize any exception, including native driver errors."""
    if isinstance(error, AllotmentError):
        return error.category

    module = type(error).__module__ or ""
    if module.startswith(("sqlite3", "psycopg2")):
        return ErrorCategory.DATABASE

    return ErrorCategory.UNKNOWN


def classify_storage_error(error: BaseException, *, busy: bool) -> AllotmentError:
    """Wrap a native storage error in the matching typed error.

    Args:
        error: Native driver exception
        busy: Whether the adapter recognised it as a busy/locked condition
    """
    if busy:
        return BusyError(str(error), cause=error)

    name = type(error).__name__
    if "Integrity" in name or "UniqueViolation" in name or "ForeignKey" in name:
        return IntegrityError(str(error), cause=error)
    return QueryError(str(error), cause=error)


__all__ = [
    # Base
    "ErrorCategory",
    "ErrorContext",
    "AllotmentError",
    # Transient
    "TransientError",
    "BusyError",
    "DatabaseConnectionError",
    # Database
    "DatabaseError",
    "QueryError",
    "IntegrityError",
    # Config
    "ConfigError",
    "InvalidConfigError",
    # Allocation
    "AllocationError",
    "NoInstancesError",
    # Engine
    "EngineClosedError",
    "QueueClosedError",
    "TransactionClosedError",
    # Utilities
    "categorize_error",
    "classify_storage_error",
]
