"""
Storage factory – pick the repository backend once at startup
=============================================================

This module centralizes selection of the repository backend (in-memory vs
PostgreSQL) so the rest of the app stays ignorant of where data lives.

Rules
-----
- A live connection (or a DSN to open one) selects PostgreSQL: both tables
  are verified/created and the DB repositories are bound to that connection.
- Otherwise the in-memory repositories are used. When a backup path is
  given, the log is opened, every record is replayed into the URL map, and
  the same handle is attached for future appends.
- The decision is made once per process; there is no hot-swapping.

The DB module is imported only when the database path is taken, so the
in-memory backend works without a PostgreSQL client library present.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .backup import BackupLog
from .base import URLRepository, UserRepository
from .errors import BackendError
from .storage import InMemoryURLRepository, InMemoryUserRepository

__all__ = ["Repositories", "init_repositories"]

log = logging.getLogger("hashlink.storage")


@dataclass
class Repositories:
    """The (URL repository, user repository) pair plus what is needed to shut it down."""
    urls: URLRepository
    users: UserRepository
    backend: str
    db: Optional[Any] = None
    owns_db: bool = False

    async def aclose(self) -> None:
        await self.urls.close()
        await self.users.close()
        if self.db is not None and self.owns_db:
            await self.db.close()


async def init_repositories(
    backup_path: Optional[str] = None,
    dsn: Optional[str] = None,
    conn: Optional[Any] = None,
    delete_workers: Optional[int] = None,
    delete_batch_size: Optional[int] = None,
) -> Repositories:
    """
    Build the repository pair for this process.

    Parameters
    ----------
    backup_path : str, optional
        Backup log for the in-memory backend. Empty/None disables backup.
    dsn : str, optional
        PostgreSQL DSN; used only when `conn` is not supplied.
    conn : psycopg.AsyncConnection, optional
        Already-open connection. The caller keeps ownership of it.
    delete_workers, delete_batch_size : int, optional
        Soft-delete pipeline tuning for the DB backend.

    Raises
    ------
    BackendError
        If the database cannot be reached or bootstrapped, or the backup log
        cannot be opened.
    """
    owns_db = False
    if conn is None and dsn:
        # Local import to avoid a hard dependency when running in-memory
        import psycopg

        try:
            conn = await psycopg.AsyncConnection.connect(dsn, autocommit=True)
        except psycopg.Error as exc:
            raise BackendError(f"cannot connect to database: {exc}") from exc
        owns_db = True

    if conn is not None:
        from .db_storage import DBURLRepository, DBUserRepository, ensure_schema

        try:
            await ensure_schema(conn)
        except BackendError:
            if owns_db:
                await conn.close()
            raise
        lock = asyncio.Lock()
        tuning = {}
        if delete_workers is not None:
            tuning["delete_workers"] = delete_workers
        if delete_batch_size is not None:
            tuning["delete_batch_size"] = delete_batch_size
        log.info("repository backend: postgres")
        return Repositories(
            urls=DBURLRepository(conn, lock=lock, **tuning),
            users=DBUserRepository(conn, lock=lock),
            backend="postgres",
            db=conn,
            owns_db=owns_db,
        )

    backup = None
    if backup_path:
        try:
            backup = BackupLog(backup_path)
        except OSError as exc:
            log.error("cannot open backup log %s: %s", backup_path, exc)
            raise BackendError(f"cannot open backup log {backup_path}") from exc

    urls = InMemoryURLRepository(backup=backup)
    if backup is not None:
        try:
            records = backup.replay()
        except OSError as exc:
            backup.close()
            log.error("cannot replay backup log %s: %s", backup_path, exc)
            raise BackendError(f"cannot replay backup log {backup_path}") from exc
        for record in records:
            urls.load(record.key, record.value)
        log.info("replayed %d records from backup log %s", len(records), backup_path)

    log.info("repository backend: memory")
    return Repositories(urls=urls, users=InMemoryUserRepository(), backend="memory")
