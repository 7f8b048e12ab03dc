"""
Error Taxonomy Module

Every failure raised by the ledger carries an ErrorKind so callers can tell a
missing row apart from a failed transaction without comparing sentinels.
"""

from enum import Enum


class ErrorKind(Enum):
    """Kinds of ledger failures"""
    NOT_FOUND = "not_found"                      # Referenced row does not exist
    TRANSACTION_FAILURE = "transaction_failure"  # Persistence failure, rolled back
    VALIDATION = "validation"                    # Caller supplied invalid input
    PERMISSION_DENIED = "permission_denied"      # Caller does not own the resource
    OTHER = "other"


class LedgerError(Exception):
    """Base class for all ledger errors"""
    kind = ErrorKind.OTHER


class NotFoundError(LedgerError):
    """Raised when an account, entry, transfer or user does not exist"""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, key):
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} {key} not found")


class ValidationFailure(LedgerError):
    kind = ErrorKind.VALIDATION


class PermissionDenied(LedgerError):
    kind = ErrorKind.PERMISSION_DENIED


class TransactionFailure(LedgerError):
    """Persistence-layer failure; the enclosing transaction was rolled back"""
    kind = ErrorKind.TRANSACTION_FAILURE


class ConstraintViolation(TransactionFailure):
    pass


class ForeignKeyViolation(ConstraintViolation):
    pass


class UniqueViolation(ConstraintViolation):
    pass


class LockTimeout(TransactionFailure):
    """Row lock could not be acquired in time"""
    pass


class TransactionCancelled(TransactionFailure):
    """Caller cancelled the transaction or its deadline passed"""
    pass


def error_kind(exc: BaseException) -> ErrorKind:
    """Get the ErrorKind of any exception (OTHER for non-ledger errors)"""
    if isinstance(exc, LedgerError):
        return exc.kind
    return ErrorKind.OTHER
