"""
Custom exceptions for the database operator.

This module defines all custom exceptions used throughout the operator
for consistent error classification. Reconciliation workers decide between
"surface and stop" and "retry with backoff" using the ``retryable`` flag.
"""
from typing import Optional, Dict, Any, List


class OperatorError(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    retryable: bool = False
    reason: str = "Failed"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(OperatorError):
    """
    Raised when a database spec is invalid or incomplete.

    Fatal: the database moves to phase Failed and is not retried until
    its spec changes.
    """

    reason = "Invalid"


class VersionNotFoundError(ValidationError):
    """Raised when the referenced engine version metadata does not exist."""

    def __init__(self, version: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"MongoDBVersion '{version}' not found",
            details=details or {"version": version},
        )


class NamingCollisionError(OperatorError):
    """
    Raised when an object this operator must manage already exists
    without this database's ownership labels.
    """

    reason = "NamingCollision"

    def __init__(self, kind: str, namespace: str, name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f'intended {kind} "{namespace}/{name}" already exists',
            details=details or {"kind": kind, "namespace": namespace, "name": name},
        )


class TransientStoreError(OperatorError):
    """
    Raised when talking to the object store fails in a way that may
    succeed on retry (network errors, conflicts, throttling).
    """

    retryable = True
    reason = "StoreError"

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.status = status
        super().__init__(
            message=f"Object store error: {message}",
            details=details or ({"status": status} if status else {}),
        )

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


class ReadinessTimeout(OperatorError):
    """Raised when a workload does not become ready within the poll bound."""

    retryable = True
    reason = "ReadinessTimeout"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)


class TerminationDeniedError(OperatorError):
    """Raised when deletion reaches a database whose policy forbids termination."""

    reason = "TerminationDenied"


class AdmissionDeniedError(OperatorError):
    """
    Raised by the admission contract when a create, update or delete
    request must be rejected.
    """

    reason = "AdmissionDenied"

    def __init__(self, message: str, violations: Optional[List[str]] = None):
        super().__init__(
            message=message,
            details={"violations": violations} if violations else {},
        )


# Export all exceptions
__all__ = [
    "OperatorError",
    "ValidationError",
    "VersionNotFoundError",
    "NamingCollisionError",
    "TransientStoreError",
    "ReadinessTimeout",
    "TerminationDeniedError",
    "AdmissionDeniedError",
]
