"""
Custom exceptions for the progress core.
Remote failures are decoded once, at the persistence boundary, into this closed set.
"""
from typing import Optional


class ProgressCoreException(Exception):
    """Base exception for the progress core"""
    pass


class ValidationException(ProgressCoreException):
    """Raised when local validation fails, before any remote call"""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"Validation error for {field}: {message}")


class NotAuthenticatedException(ProgressCoreException):
    """Raised when no owner is signed in"""
    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class ConflictException(ProgressCoreException):
    """Raised on a uniqueness violation"""
    def __init__(self, message: str):
        super().__init__(message)


class PermissionDeniedException(ProgressCoreException):
    """Raised when a remote policy rejects the operation"""
    def __init__(self, message: str):
        super().__init__(message)


class NotFoundException(ProgressCoreException):
    """Raised when a requested entity or aggregate does not exist"""
    def __init__(self, collection: str, key: Optional[str] = None):
        self.collection = collection
        self.key = key
        if key is None:
            super().__init__(f"No matching {collection} entry")
        else:
            super().__init__(f"{collection} entry {key} not found")


class UnknownRemoteException(ProgressCoreException):
    """Raised for any unclassified remote failure"""
    def __init__(self, code: Optional[str], details: str):
        self.code = code
        self.details = details
        super().__init__(f"Remote operation failed ({code or 'no code'}): {details}")


class RemoteError(Exception):
    """
    Raw failure reported by a persistence collaborator.

    Carries the machine-readable code the remote returned and, when known,
    the collection and key of the row the failing write targeted. Never
    surfaced to callers of the core; see decode_remote_error.
    """
    def __init__(
        self,
        code: Optional[str],
        message: str,
        collection: Optional[str] = None,
        key: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.collection = collection
        self.key = key
        super().__init__(f"[{code}] {message}")


CODE_UNIQUE_VIOLATION = "23505"
CODE_INSUFFICIENT_PRIVILEGE = "42501"
CODE_UNDEFINED_TABLE = "42P01"
CODE_NO_ROWS = "PGRST116"
CODE_JWT_MISSING = "PGRST301"
CODE_UNAUTHORIZED = "401"


def decode_remote_error(
    error: RemoteError,
    collection: str,
    key: Optional[str] = None
) -> ProgressCoreException:
    """
    Map a raw remote error onto the exception taxonomy.

    Args:
        error: Error raised by the persistence service
        collection: Collection the operation targeted
        key: Entity key, when the operation targeted a single entity

    Returns:
        Typed exception (not raised)
    """
    code = error.code
    if code == CODE_UNIQUE_VIOLATION:
        return ConflictException(error.message)
    if code == CODE_INSUFFICIENT_PRIVILEGE:
        return PermissionDeniedException(error.message)
    if code == CODE_NO_ROWS:
        return NotFoundException(collection, key)
    if code in (CODE_JWT_MISSING, CODE_UNAUTHORIZED):
        return NotAuthenticatedException(error.message)
    return UnknownRemoteException(code, error.message)
