"""
Storage module for Hashlink Platform (in-memory implementation).

Responsibilities:
    - Map short ids to original URLs (content-addressed, first writer wins)
    - Write every newly created URL through to an optional backup log
    - Keep per-user ordered lists of owned URL ids with sequential user ids

Design:
    - The maps are plain dicts. `dict.setdefault` is the atomic load-or-store
      primitive, so concurrent creates of the same id resolve to exactly one
      winner without an external lock.
    - Every stored URL is wrapped in a fresh `URLRecord`; the winner is the
      caller whose record object came back from `setdefault`.
    - The backup log and the user-id counter each have their own lock; there
      is no repository-wide lock.
    - Each operation runs through `run_detached`, so a caller whose token
      fires stops waiting immediately.
    - Soft-delete is not supported here; `delete` raises
      `UnsupportedOperationError`.

LLM Prompt Example:
    "Explain how an in-memory store can give compare-and-set semantics with
    dict.setdefault, and how to write-through to an append-only journal
    without holding a global lock."
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..manager.strategies import BaseStrategy, SHA1Strategy
from .backup import BackupLog
from .base import BatchCreateResult, CreateResult, URLRepository, UserRepository, check_id_list, check_url
from .errors import BackendError, NotFoundError, TypeMismatchError, UnsupportedOperationError
from .rendezvous import CancelToken, run_detached

__all__ = ["URLRecord", "InMemoryURLRepository", "InMemoryUserRepository"]

log = logging.getLogger("hashlink.storage")


@dataclass(frozen=True, eq=False)
class URLRecord:
    original_url: str


def _first_error(results: List[Any]) -> List[Any]:
    # gather(return_exceptions=True) keeps every sibling outcome retrieved.
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


class InMemoryURLRepository(URLRepository):
    supports_delete = False

    def __init__(self, backup: Optional[BackupLog] = None, strategy: Optional[BaseStrategy] = None) -> None:
        """
        Initialize an empty URL map.

        Internal schema:
            self._urls = { short_id: URLRecord(original_url) }
        """
        self._urls: Dict[str, Any] = {}
        self._backup = backup
        self._strategy = strategy or SHA1Strategy()

    # ---- Seeding ----------------------------------------------------------

    def load(self, key: str, url: str) -> None:
        """Store a replayed backup record as-is (last write wins)."""
        self._urls[key] = URLRecord(url)

    def __len__(self) -> int:
        return len(self._urls)

    # ---- Contract methods -------------------------------------------------

    async def create(self, url: str, *, token: Optional[CancelToken] = None) -> CreateResult:
        url = check_url(url)
        return await run_detached(self._store, url, token=token)

    async def create_array(self, urls: Sequence[str], *, token: Optional[CancelToken] = None) -> BatchCreateResult:
        """
        Store each URL in its own background job and collect the ids in input order.

        Any single failure fails the batch; records already stored stay stored.
        """
        checked = [check_url(url) for url in urls]
        if not checked:
            return BatchCreateResult(ids=[], duplicate=False)
        results = _first_error(await asyncio.gather(
            *(run_detached(self._store, url, token=token) for url in checked),
            return_exceptions=True,
        ))
        return BatchCreateResult(
            ids=[r.id for r in results],
            duplicate=any(r.duplicate for r in results),
        )

    async def read(self, id: str, *, token: Optional[CancelToken] = None) -> str:
        return await run_detached(self._load, id, token=token)

    async def update(self, id: str, url: str, *, token: Optional[CancelToken] = None) -> None:
        url = check_url(url)
        await run_detached(self._overwrite, id, url, token=token)

    async def delete(self, *ids: str, token: Optional[CancelToken] = None) -> None:
        raise UnsupportedOperationError("in-memory URL repository does not support delete")

    async def close(self) -> None:
        if self._backup is not None:
            self._backup.close()

    # ---- Background work --------------------------------------------------

    def _store(self, url: str) -> CreateResult:
        key = self._strategy.generate(url)
        record = URLRecord(url)
        if self._urls.setdefault(key, record) is not record:
            return CreateResult(id=key, duplicate=True)

        if self._backup is not None:
            try:
                self._backup.append(key, url)
            except OSError as exc:
                # The map entry stays; the journal is now missing this record.
                log.warning("backup append failed for %s: %s", key, exc)
                raise BackendError(f"backup append failed for {key}") from exc
        return CreateResult(id=key, duplicate=False)

    def _load(self, id: str) -> str:
        value = self._urls.get(id)
        if value is None:
            raise NotFoundError(f"no url for id {id!r}")
        if not isinstance(value, URLRecord):
            raise TypeMismatchError(f"unexpected {type(value).__name__} stored under {id!r}")
        return value.original_url

    def _overwrite(self, id: str, url: str) -> None:
        self._urls[id] = URLRecord(url)


class InMemoryUserRepository(UserRepository):
    def __init__(self) -> None:
        """
        Initialize an empty user map.

        Internal schema:
            self._users = { "0": ["3f1a9", "b72c0"], "1": [], ... }
        """
        self._users: Dict[str, Any] = {}
        self._counter_lock = threading.Lock()
        self._last_id = 0

    async def create(self, initial: Optional[Sequence[str]] = None, *, token: Optional[CancelToken] = None) -> str:
        url_ids = check_id_list(initial)
        return await run_detached(self._insert, url_ids, token=token)

    async def create_array(self, lists: Sequence[Sequence[str]], *, token: Optional[CancelToken] = None) -> List[str]:
        checked = [check_id_list(url_ids) for url_ids in lists]
        if not checked:
            return []
        return _first_error(await asyncio.gather(
            *(run_detached(self._insert, url_ids, token=token) for url_ids in checked),
            return_exceptions=True,
        ))

    async def read(self, id: str, *, token: Optional[CancelToken] = None) -> List[str]:
        return await run_detached(self._load, id, token=token)

    async def update(self, id: str, url_ids: Sequence[str], *, token: Optional[CancelToken] = None) -> None:
        checked = check_id_list(url_ids)
        await run_detached(self._overwrite, id, checked, token=token)

    def _insert(self, url_ids: List[str]) -> str:
        with self._counter_lock:
            user_id = str(self._last_id)
            self._last_id += 1
        self._users[user_id] = url_ids
        return user_id

    def _load(self, id: str) -> List[str]:
        value = self._users.get(id)
        if value is None:
            raise NotFoundError(f"no user with id {id!r}")
        if not isinstance(value, list):
            raise TypeMismatchError(f"unexpected {type(value).__name__} stored for user {id!r}")
        return list(value)

    def _overwrite(self, id: str, url_ids: List[str]) -> None:
        self._users[id] = url_ids
