"""
Error taxonomy for directory reconciliation.

Directory-side rejections of a mutation are reported as ``ErrorKind`` values
on an operation result rather than raised, so callers can match on
"already exists" or "not found" without catching exceptions. The exception
classes below are used where an operation cannot produce a result at all.
"""

from enum import Enum


class ErrorKind(Enum):
    """Classification of a failed directory operation."""

    UNAVAILABLE = 'unavailable'
    PROTOCOL = 'protocol'
    OBJECT_NOT_FOUND = 'object_not_found'
    ALREADY_EXISTS = 'already_exists'
    CONSTRAINT_VIOLATION = 'constraint_violation'
    VALIDATION = 'validation'


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""
    pass


class DirectoryError(ReconcileError):
    """Base exception for failures reported by the directory service."""

    kind = ErrorKind.PROTOCOL

    def __init__(self, message: str, result_code: int = None):
        self.result_code = result_code
        super().__init__(message)


class DirectoryUnavailable(DirectoryError):
    """Raised when the directory connection cannot be (re)established."""

    kind = ErrorKind.UNAVAILABLE


class ProtocolError(DirectoryError):
    """Raised when the directory rejects an operation for an unclassified reason."""

    kind = ErrorKind.PROTOCOL


class ObjectNotFound(DirectoryError):
    """Raised when the target entry does not exist."""

    kind = ErrorKind.OBJECT_NOT_FOUND


class AlreadyExists(DirectoryError):
    """Raised when the entry or value being added is already present."""

    kind = ErrorKind.ALREADY_EXISTS


class ConstraintViolation(DirectoryError):
    """Raised when an operation would break a structural rule of the directory."""

    kind = ErrorKind.CONSTRAINT_VIOLATION


class ValidationError(ReconcileError):
    """Raised when a desired identity is malformed. Caught before any protocol call."""
    pass


class CollisionUnresolved(ReconcileError):
    """Raised when a unique key collision could not be given a free suffix."""
    pass


_EXCEPTIONS_BY_KIND = {
    ErrorKind.UNAVAILABLE: DirectoryUnavailable,
    ErrorKind.PROTOCOL: ProtocolError,
    ErrorKind.OBJECT_NOT_FOUND: ObjectNotFound,
    ErrorKind.ALREADY_EXISTS: AlreadyExists,
    ErrorKind.CONSTRAINT_VIOLATION: ConstraintViolation,
}


def exception_for(kind: ErrorKind, message: str, result_code: int = None) -> DirectoryError:
    """Build the exception matching an error kind."""
    exc_class = _EXCEPTIONS_BY_KIND.get(kind, ProtocolError)
    return exc_class(message, result_code)
