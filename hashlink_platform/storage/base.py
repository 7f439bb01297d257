"""
Repository contracts for Hashlink Platform.

Purpose:
    Define the two narrow, typed contracts (URL records and user id-lists)
    that every storage backend implements, so the manager and the HTTP layer
    never know whether data lives in process memory or in PostgreSQL.

Conventions:
    - Every operation is a coroutine and accepts an optional keyword-only
      `token` (`CancelToken`) bounding how long the caller waits.
    - Creating a URL that already exists is not an error: the result carries
      the existing id and `duplicate=True`.
    - Errors come from `storage.errors`; nothing backend-specific leaks.

Testing & Coverage:
    Abstract methods are annotated with `# pragma: no cover`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from .errors import TypeMismatchError
from .rendezvous import CancelToken

__all__ = [
    "CreateResult",
    "BatchCreateResult",
    "URLRepository",
    "UserRepository",
    "check_url",
    "check_id_list",
]


@dataclass(frozen=True)
class CreateResult:
    id: str
    duplicate: bool = False


@dataclass(frozen=True)
class BatchCreateResult:
    ids: List[str]
    duplicate: bool = False


def check_url(value: Any) -> str:
    """Reject anything but a URL string before it reaches a backend."""
    if not isinstance(value, str):
        raise TypeMismatchError(f"expected URL string, got {type(value).__name__}")
    return value


def check_id_list(value: Any) -> List[str]:
    """Normalize a user's URL-id list; None means empty."""
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise TypeMismatchError(f"expected list of ids, got {type(value).__name__}")
    if not all(isinstance(item, str) for item in value):
        raise TypeMismatchError("expected list of string ids")
    return list(value)


class URLRepository(ABC):
    """Abstract store of id -> original URL."""

    #: False on backends whose `delete` raises UnsupportedOperationError.
    supports_delete = True

    @abstractmethod  # pragma: no cover
    async def create(self, url: str, *, token: Optional[CancelToken] = None) -> CreateResult:
        """
        Store `url` under its hash id.

        Returns:
            CreateResult: id plus `duplicate=True` if the id was already taken.
        """
        raise NotImplementedError

    @abstractmethod  # pragma: no cover
    async def create_array(self, urls: Sequence[str], *, token: Optional[CancelToken] = None) -> BatchCreateResult:
        """
        Store several URLs at once.

        Returns:
            BatchCreateResult: ids in input order, `duplicate=True` if any row existed.
        """
        raise NotImplementedError

    @abstractmethod  # pragma: no cover
    async def read(self, id: str, *, token: Optional[CancelToken] = None) -> str:
        """
        Return the original URL for `id`.

        Raises:
            NotFoundError, DeletedError, TypeMismatchError.
        """
        raise NotImplementedError

    @abstractmethod  # pragma: no cover
    async def update(self, id: str, url: str, *, token: Optional[CancelToken] = None) -> None:
        """Overwrite the URL stored under `id`."""
        raise NotImplementedError

    @abstractmethod  # pragma: no cover
    async def delete(self, *ids: str, token: Optional[CancelToken] = None) -> None:
        """
        Soft-delete every id in `ids`.

        Raises:
            UnsupportedOperationError: On backends without soft-delete.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""


class UserRepository(ABC):
    """Abstract store of user id -> ordered list of owned URL ids."""

    @abstractmethod  # pragma: no cover
    async def create(self, initial: Optional[Sequence[str]] = None, *, token: Optional[CancelToken] = None) -> str:
        """Create a user with `initial` URL ids (default empty) and return its id."""
        raise NotImplementedError

    @abstractmethod  # pragma: no cover
    async def create_array(self, lists: Sequence[Sequence[str]], *, token: Optional[CancelToken] = None) -> List[str]:
        """Create one user per list; ids are returned in input order."""
        raise NotImplementedError

    @abstractmethod  # pragma: no cover
    async def read(self, id: str, *, token: Optional[CancelToken] = None) -> List[str]:
        """Return a copy of the user's URL ids. Raises NotFoundError."""
        raise NotImplementedError

    @abstractmethod  # pragma: no cover
    async def update(self, id: str, url_ids: Sequence[str], *, token: Optional[CancelToken] = None) -> None:
        """Replace the user's URL ids."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
