"""
DB repositories – PostgreSQL-backed storage for Hashlink Platform
=================================================================

This module provides the relational backend. It implements the same
`URLRepository` / `UserRepository` contracts as the in-memory store (see
`storage.py`), so the manager and API never change when the backend does.

Key Design Points
-----------------
- **Content-addressed inserts**: `INSERT ... ON CONFLICT DO NOTHING RETURNING`
  tells a fresh insert (one row back) from an existing id (no row back). The
  latter is reported as `duplicate=True`, never as an error.
- **Batches**: `create_array` runs every insert in one transaction. Conflicts do
  not roll anything back; a failed commit fails the whole batch.
- **Soft-delete**: rows are flagged `isDeleted = true` and never removed, so ids
  stay stable. Reads of a flagged row raise `DeletedError`, not `NotFoundError`.
- **Delete pipeline**: a bounded pool of workers pulls ids from one queue and
  turns each into statement parameters; a single aggregator flushes them with
  `executemany` every `delete_batch_size` statements and once more on drain.
- **Connections**: one `psycopg.AsyncConnection` in autocommit mode is shared
  by both repositories; a shared `asyncio.Lock` keeps transactions from
  interleaving with other callers' statements.

Schema
------
    url   (shortenHash text primary key, unShortenURL text, isDeleted boolean default false)
    users (id serial primary key, urls text[])

Tables are checked once at startup and created if absent (`ensure_schema`).

Example
-------
>>> conn = await psycopg.AsyncConnection.connect(dsn, autocommit=True)
>>> await ensure_schema(conn)
>>> urls = DBURLRepository(conn)
>>> (await urls.create("https://example.com/a")).id
'8a5d3'
"""

import asyncio
import logging
from typing import Any, List, Optional, Sequence, Tuple

import psycopg

from ..manager.strategies import BaseStrategy, SHA1Strategy
from .base import BatchCreateResult, CreateResult, URLRepository, UserRepository, check_id_list, check_url
from .errors import BackendError, DeletedError, NotFoundError
from .rendezvous import CancelToken, await_detached

__all__ = ["ensure_schema", "DBURLRepository", "DBUserRepository"]

log = logging.getLogger("hashlink.db")

TABLE_EXISTS_SQL = "SELECT EXISTS (SELECT FROM pg_tables WHERE schemaname = 'public' AND tablename = %s)"
CREATE_URL_TABLE_SQL = (
    "CREATE TABLE url (shortenHash text PRIMARY KEY, unShortenURL text, isDeleted boolean DEFAULT false)"
)
CREATE_USERS_TABLE_SQL = "CREATE TABLE users (id serial PRIMARY KEY, urls text[])"

INSERT_URL_SQL = (
    "INSERT INTO url (shortenHash, unShortenURL) VALUES (%s, %s) "
    "ON CONFLICT DO NOTHING RETURNING shortenHash"
)
SELECT_URL_SQL = "SELECT unShortenURL, isDeleted FROM url WHERE shortenHash = %s"
UPDATE_URL_SQL = "UPDATE url SET unShortenURL = %s WHERE shortenHash = %s"
SOFT_DELETE_SQL = "UPDATE url SET isDeleted = true WHERE shortenHash = %s"

INSERT_USER_SQL = "INSERT INTO users (urls) VALUES (%s) RETURNING id"
SELECT_USER_SQL = "SELECT urls FROM users WHERE id = %s"
UPDATE_USER_SQL = "UPDATE users SET urls = %s WHERE id = %s"

DEFAULT_DELETE_WORKERS = 20
DEFAULT_DELETE_BATCH_SIZE = 3

_DRAINED = object()


async def ensure_schema(conn: Any) -> None:
    """Create the `url` and `users` tables if they do not exist yet."""
    try:
        for table, ddl in (("url", CREATE_URL_TABLE_SQL), ("users", CREATE_USERS_TABLE_SQL)):
            cur = await conn.execute(TABLE_EXISTS_SQL, (table,))
            row = await cur.fetchone()
            if row and row[0]:
                continue
            log.info("creating table %s", table)
            await conn.execute(ddl)
    except psycopg.Error as exc:
        raise BackendError(f"schema bootstrap failed: {exc}") from exc


class _DBRepository:
    """Shared plumbing: one connection, one lock, psycopg errors wrapped."""

    def __init__(self, conn: Any, lock: Optional[asyncio.Lock] = None) -> None:
        self._conn = conn
        self._lock = lock or asyncio.Lock()

    async def _fetchone(self, sql: str, params: Tuple[Any, ...]) -> Optional[Tuple[Any, ...]]:
        async with self._lock:
            try:
                cur = await self._conn.execute(sql, params, prepare=True)
                return await cur.fetchone()
            except psycopg.Error as exc:
                raise BackendError(str(exc)) from exc

    async def _execute(self, sql: str, params: Tuple[Any, ...]) -> None:
        async with self._lock:
            try:
                await self._conn.execute(sql, params, prepare=True)
            except psycopg.Error as exc:
                raise BackendError(str(exc)) from exc


class DBURLRepository(_DBRepository, URLRepository):
    """PostgreSQL implementation of the URL repository contract.

    Parameters
    ----------
    conn : psycopg.AsyncConnection
        Open connection, autocommit enabled.
    lock : asyncio.Lock, optional
        Lock shared with other repositories using the same connection.
    delete_workers : int
        Upper bound on concurrent workers in the soft-delete pipeline.
    delete_batch_size : int
        Statements accumulated before each `executemany` flush.
    """

    def __init__(
        self,
        conn: Any,
        lock: Optional[asyncio.Lock] = None,
        strategy: Optional[BaseStrategy] = None,
        delete_workers: int = DEFAULT_DELETE_WORKERS,
        delete_batch_size: int = DEFAULT_DELETE_BATCH_SIZE,
    ) -> None:
        super().__init__(conn, lock)
        self._strategy = strategy or SHA1Strategy()
        self.delete_workers = max(1, delete_workers)
        self.delete_batch_size = max(1, delete_batch_size)

    # ---- Contract methods -------------------------------------------------

    async def create(self, url: str, *, token: Optional[CancelToken] = None) -> CreateResult:
        check_url(url)
        return await await_detached(self._insert(url), token)

    async def create_array(self, urls: Sequence[str], *, token: Optional[CancelToken] = None) -> BatchCreateResult:
        for url in urls:
            check_url(url)
        if not urls:
            return BatchCreateResult(ids=[], duplicate=False)
        return await await_detached(self._insert_many(list(urls)), token)

    async def read(self, id: str, *, token: Optional[CancelToken] = None) -> str:
        row = await await_detached(self._fetchone(SELECT_URL_SQL, (id,)), token)
        if row is None:
            raise NotFoundError(f"no url for id {id!r}")
        original_url, is_deleted = row
        if is_deleted:
            raise DeletedError(f"url {id!r} has been deleted")
        return original_url

    async def update(self, id: str, url: str, *, token: Optional[CancelToken] = None) -> None:
        check_url(url)
        await await_detached(self._execute(UPDATE_URL_SQL, (url, id)), token)

    async def delete(self, *ids: str, token: Optional[CancelToken] = None) -> None:
        """
        Soft-delete `ids` through the worker pipeline.

        A failing flush aborts the remaining work and raises `BackendError`;
        batches flushed before it stay applied (soft-delete is idempotent,
        so retrying the whole call is safe).
        """
        if not ids:
            return
        await await_detached(self._soft_delete(list(ids)), token)

    async def ping(self, *, token: Optional[CancelToken] = None) -> None:
        await await_detached(self._fetchone("SELECT 1", ()), token)

    # ---- Internal helpers -------------------------------------------------

    async def _insert(self, url: str) -> CreateResult:
        key = self._strategy.generate(url)
        row = await self._fetchone(INSERT_URL_SQL, (key, url))
        return CreateResult(id=key, duplicate=row is None)

    async def _insert_many(self, urls: List[str]) -> BatchCreateResult:
        ids: List[str] = []
        duplicate = False
        async with self._lock:
            try:
                async with self._conn.transaction():
                    for url in urls:
                        key = self._strategy.generate(url)
                        cur = await self._conn.execute(INSERT_URL_SQL, (key, url), prepare=True)
                        if await cur.fetchone() is None:
                            duplicate = True
                        ids.append(key)
            except psycopg.Error as exc:
                raise BackendError(f"batch insert failed: {exc}") from exc
        return BatchCreateResult(ids=ids, duplicate=duplicate)

    async def _soft_delete(self, ids: List[str]) -> None:
        work: asyncio.Queue = asyncio.Queue()
        for short_id in ids:
            work.put_nowait(short_id)
        statements: asyncio.Queue = asyncio.Queue(maxsize=1)

        async def worker() -> None:
            while True:
                try:
                    short_id = work.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await statements.put((short_id,))

        workers = [asyncio.ensure_future(worker()) for _ in range(min(len(ids), self.delete_workers))]

        async def close_when_drained() -> None:
            await asyncio.gather(*workers)
            await statements.put(_DRAINED)

        closer = asyncio.ensure_future(close_when_drained())
        try:
            batch: List[Tuple[str]] = []
            while True:
                item = await statements.get()
                if item is _DRAINED:
                    break
                batch.append(item)
                if len(batch) >= self.delete_batch_size:
                    await self._flush(batch)
                    batch = []
            if batch:
                await self._flush(batch)
        finally:
            pending = [t for t in workers + [closer] if not t.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*workers, closer, return_exceptions=True)

    async def _flush(self, batch: List[Tuple[str]]) -> None:
        async with self._lock:
            try:
                async with self._conn.cursor() as cur:
                    await cur.executemany(SOFT_DELETE_SQL, batch)
            except psycopg.Error as exc:
                log.error("soft-delete flush of %d ids failed: %s", len(batch), exc)
                raise BackendError(f"soft-delete failed: {exc}") from exc
        log.debug("soft-deleted %d ids", len(batch))


class DBUserRepository(_DBRepository, UserRepository):
    """PostgreSQL implementation of the user repository contract (serial ids, text[] of URL ids)."""

    async def create(self, initial: Optional[Sequence[str]] = None, *, token: Optional[CancelToken] = None) -> str:
        url_ids = check_id_list(initial)
        row = await await_detached(self._fetchone(INSERT_USER_SQL, (url_ids,)), token)
        if row is None:
            raise BackendError("user insert returned no id")
        return str(row[0])

    async def create_array(self, lists: Sequence[Sequence[str]], *, token: Optional[CancelToken] = None) -> List[str]:
        checked = [check_id_list(url_ids) for url_ids in lists]
        if not checked:
            return []
        return await await_detached(self._insert_many(checked), token)

    async def read(self, id: str, *, token: Optional[CancelToken] = None) -> List[str]:
        user_id = _user_pk(id)
        row = await await_detached(self._fetchone(SELECT_USER_SQL, (user_id,)), token)
        if row is None:
            raise NotFoundError(f"no user with id {id!r}")
        return list(row[0] or [])

    async def update(self, id: str, url_ids: Sequence[str], *, token: Optional[CancelToken] = None) -> None:
        checked = check_id_list(url_ids)
        user_id = _user_pk(id)
        await await_detached(self._execute(UPDATE_USER_SQL, (checked, user_id)), token)

    async def _insert_many(self, lists: List[List[str]]) -> List[str]:
        ids: List[str] = []
        async with self._lock:
            try:
                async with self._conn.transaction():
                    for url_ids in lists:
                        cur = await self._conn.execute(INSERT_USER_SQL, (url_ids,), prepare=True)
                        row = await cur.fetchone()
                        if row is None:
                            raise BackendError("user insert returned no id")
                        ids.append(str(row[0]))
            except psycopg.Error as exc:
                raise BackendError(f"batch user insert failed: {exc}") from exc
        return ids


def _user_pk(id: str) -> int:
    try:
        return int(id)
    except (TypeError, ValueError):
        raise NotFoundError(f"no user with id {id!r}") from None
