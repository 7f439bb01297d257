"""
Error taxonomy shared by every repository backend.

Callers (the manager and the HTTP layer) only ever need to distinguish these
classes; backend-specific exceptions (psycopg, OSError) are wrapped in
`BackendError` with the original attached as `__cause__`.

A duplicate insert has no class here: it is reported through the
`duplicate` flag on `CreateResult` / `BatchCreateResult`.
"""

__all__ = [
    "RepositoryError",
    "NotFoundError",
    "DeletedError",
    "TypeMismatchError",
    "DeadlineExceededError",
    "OperationCanceledError",
    "UnsupportedOperationError",
    "BackendError",
]


class RepositoryError(Exception):
    """Base repository error."""


class NotFoundError(RepositoryError):
    """Raised when the requested id does not exist."""


class DeletedError(RepositoryError):
    """Raised when the requested id exists but has been soft-deleted."""


class TypeMismatchError(RepositoryError, TypeError):
    """Raised when a stored or supplied value does not have the expected shape."""


class DeadlineExceededError(RepositoryError, TimeoutError):
    """Raised when an operation outlives its deadline."""


class OperationCanceledError(RepositoryError):
    """Raised when the caller cancels an operation before it completes."""


class UnsupportedOperationError(RepositoryError, NotImplementedError):
    """Raised when a backend does not implement an operation at all."""


class BackendError(RepositoryError):
    """Raised when the underlying storage (file, database) fails."""
