"""
Custom exceptions for the ETL engine with structured error context.

This module provides the exception hierarchy used throughout pipeline
compilation, connector sessions, transformation and loading. Each
exception includes context information for debugging and monitoring,
and an ``error_kind`` that is surfaced to callers in failed
execution results.

Exception Hierarchy:
    ETLException (base)
    ├── PipelineValidationError
    │   ├── InvalidIdentifier
    │   ├── UnsupportedOperator
    │   ├── CyclicPipeline
    │   ├── UnresolvedReference
    │   ├── InvalidPipeline
    │   └── RuleTypeError
    ├── TransformationError
    │   └── CastError
    ├── ConnectorError
    │   ├── ConnectionTimeout
    │   ├── AuthFailed
    │   ├── HostUnreachable
    │   ├── ConnectionRefused
    │   ├── QueryError
    │   └── UnsupportedDialect
    ├── SecretError
    │   ├── EncryptionKeyMissing
    │   └── DecryptionError
    ├── LoadError
    ├── SpreadsheetError
    ├── RunStateConflict
    └── StaleTimeout
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all ETL-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (node id, dialect, etc.)
        original_exception: The original exception that was caught (if any)
    """

    error_kind: Optional[str] = None

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    @property
    def kind(self) -> str:
        """Taxonomy name reported to callers."""
        return self.error_kind or self.__class__.__name__

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "error_kind": self.kind,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Compile-time validation errors
# ============================================================================

class PipelineValidationError(ETLException):
    """
    Base exception for errors detected before any connector is opened.

    These are surfaced verbatim to the caller and never retried.
    """
    pass


class InvalidIdentifier(PipelineValidationError):
    """
    Raised when a table, schema or column name cannot be quoted safely.

    Context should include:
        - identifier: The offending name (repr)
        - dialect: Target SQL dialect
    """
    pass


class UnsupportedOperator(PipelineValidationError):
    """Raised for filter, join or arithmetic operators outside the allow-lists."""
    pass


class CyclicPipeline(PipelineValidationError):
    """
    Raised when the node graph contains a cycle.

    Context should include:
        - nodes: Ids of the nodes that could not be ordered
    """
    pass


class UnresolvedReference(PipelineValidationError):
    """
    Raised when a node references a column no ancestor produces.

    Context should include:
        - node_id: Node holding the reference
        - column: The unresolved column reference
    """
    pass


class InvalidPipeline(PipelineValidationError):
    """Raised for graph shape errors (sink count, fan-out, unknown nodes)."""
    pass


class RuleTypeError(PipelineValidationError):
    """Raised when a rule's literals do not fit its declared output type."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for row-level transformation failures."""
    pass


class CastError(TransformationError):
    """
    Raised when a value cannot be converted to the requested type.

    Context should include:
        - column: Column being converted
        - value: The value that failed (repr, truncated)
        - target_type: Requested type
    """
    pass


# ============================================================================
# Connector Errors
# ============================================================================

class ConnectorError(ETLException):
    """
    Base exception for external source failures.

    Adapters translate native driver errors into one of the subclasses;
    anything they cannot classify stays a plain ConnectorError.

    Attributes:
        hint: Localized, user-facing guidance
    """

    error_kind = "Unknown"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        hint: Optional[str] = None
    ):
        super().__init__(message, context, original_exception)
        self.hint = hint or message

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["hint"] = self.hint
        return data


class ConnectionTimeout(ConnectorError):
    """Connect did not finish within the configured timeout."""
    error_kind = "ConnectionTimeout"


class AuthFailed(ConnectorError):
    """The server rejected the supplied credentials."""
    error_kind = "AuthFailed"


class HostUnreachable(ConnectorError):
    """Host name did not resolve or there is no route to it."""
    error_kind = "HostUnreachable"


class ConnectionRefused(ConnectorError):
    """The host answered but nothing accepted the connection on that port."""
    error_kind = "ConnectionRefused"


class QueryError(ConnectorError):
    """The server rejected or failed a statement."""
    error_kind = "QueryError"


class UnsupportedDialect(ConnectorError):
    """No adapter exists for the descriptor's dialect."""
    error_kind = "UnsupportedDialect"


# ============================================================================
# Secret Errors
# ============================================================================

class SecretError(ETLException):
    """Base exception for the connection secret codec."""
    pass


class EncryptionKeyMissing(SecretError):
    """ENCRYPTION_KEY is absent or too short at the point of use."""
    pass


class DecryptionError(SecretError):
    """Stored ciphertext is corrupt or was produced with another key."""
    pass


# ============================================================================
# Load / Run State Errors
# ============================================================================

class LoadError(ETLException):
    """
    Raised when writing to the warehouse fails.

    Context should include:
        - table_name: Target table
        - rows_written: Rows committed before the failure
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        rows_written: int = 0
    ):
        super().__init__(message, context, original_exception)
        self.rows_written = rows_written
        self.context["rows_written"] = rows_written


class SpreadsheetError(ETLException):
    """An uploaded CSV or Excel file is missing or cannot be parsed."""
    pass


class RunStateConflict(ETLException):
    """The run record is missing or not in a state that allows the transition."""
    pass


class StaleTimeout(ETLException):
    """A non-terminal run exceeded the staleness threshold and was reaped."""
    pass
