"""
URLManager module for Hashlink Platform.

Responsibilities:
    - Validate and canonicalize incoming URLs before they reach storage
    - Delegate persistence to the injected URL / user repositories
    - Keep each user's list of owned ids in creation order, without duplicates
    - Apply a short per-operation deadline to every repository call
    - Build absolute short URLs from the configured base URL

Design notes:
    - The manager computes nothing itself; ids come from the repository's
      hashing strategy, so both backends agree on them.
    - A duplicate create is a normal outcome (`duplicate=True`), reported back
      so the HTTP layer can answer 409 with the existing short URL.
    - When a duplicate id resolves to a *different* URL (a 5-hex-char
      collision), the first stored URL keeps the id and a warning is logged.
    - User bookkeeping is best-effort: the URL table and the user table are
      not updated atomically.

LLM Prompt Example:
    "Explain how a thin orchestration layer can layer per-call deadlines on
    top of caller cancellation and keep a per-user list free of duplicates."
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Dict, List, MutableMapping, Optional, Sequence

from ..storage.base import URLRepository, UserRepository
from ..storage.errors import BackendError, DeletedError, NotFoundError, UnsupportedOperationError
from ..storage.rendezvous import CancelToken
from .strategies import canonical_url

__all__ = ["ShortenResult", "BatchShortenResult", "URLManager"]

log = logging.getLogger("hashlink.manager")

DEFAULT_TIMEOUT = 2.0


@dataclass(frozen=True)
class ShortenResult:
    short_url: str
    duplicate: bool = False


@dataclass(frozen=True)
class BatchShortenResult:
    short_urls: List[str]
    duplicate: bool = False


class URLManager:
    """
    Coordinates shortening, resolution and per-user bookkeeping.

    Args:
        urls (URLRepository): URL store.
        users (UserRepository): User store.
        tokens: Signer with `create_token` / `get_id_from_token` (see `auth.service`).
        base_url (str): Prefix for returned short URLs.
        timeout (float): Seconds allowed per repository call.
    """

    def __init__(
        self,
        urls: URLRepository,
        users: UserRepository,
        tokens,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.urls = urls
        self.users = users
        self.tokens = tokens
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        # entries vanish once no coroutine holds or waits on the lock
        self._user_locks: MutableMapping[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------
    def short_url(self, id: str) -> str:
        return self.base_url + id

    def _deadline(self, cancel: Optional[CancelToken]) -> CancelToken:
        return (cancel or CancelToken()).with_timeout(self.timeout)

    async def _check_collision(self, id: str, url: str, cancel: Optional[CancelToken]) -> None:
        try:
            stored = await self.urls.read(id, token=self._deadline(cancel))
        except DeletedError:
            return
        if stored != url:
            log.warning("id %s already maps to %s; keeping it, %s not stored", id, stored, url)

    async def _remember(self, user_token: str, ids: Sequence[str], cancel: Optional[CancelToken]) -> None:
        """Append `ids` to the user's list, skipping ones already present."""
        user_id = self.tokens.get_id_from_token(user_token)
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            try:
                owned = await self.users.read(user_id, token=self._deadline(cancel))
            except NotFoundError:
                owned = []
            updated = list(owned)
            for id in ids:
                if id not in updated:
                    updated.append(id)
            if updated != owned:
                await self.users.update(user_id, updated, token=self._deadline(cancel))

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    async def shorten(
        self, raw_url: str, user_token: Optional[str] = None, *, cancel: Optional[CancelToken] = None
    ) -> ShortenResult:
        """
        Shorten one URL and record it for the user.

        Raises:
            ValueError: If the URL is malformed.
            RepositoryError: On storage failure or deadline.
        """
        url = canonical_url(raw_url)
        result = await self.urls.create(url, token=self._deadline(cancel))
        if result.duplicate:
            await self._check_collision(result.id, url, cancel)
        if user_token:
            await self._remember(user_token, [result.id], cancel)
        return ShortenResult(short_url=self.short_url(result.id), duplicate=result.duplicate)

    async def shorten_batch(
        self, raw_urls: Sequence[str], user_token: Optional[str] = None, *, cancel: Optional[CancelToken] = None
    ) -> BatchShortenResult:
        """Shorten several URLs at once; short URLs come back in input order."""
        urls = [canonical_url(raw) for raw in raw_urls]
        if not urls:
            return BatchShortenResult(short_urls=[], duplicate=False)
        result = await self.urls.create_array(urls, token=self._deadline(cancel))
        if user_token:
            await self._remember(user_token, result.ids, cancel)
        return BatchShortenResult(
            short_urls=[self.short_url(id) for id in result.ids],
            duplicate=result.duplicate,
        )

    async def resolve(self, id: str, *, cancel: Optional[CancelToken] = None) -> str:
        """Return the original URL for `id` (NotFoundError / DeletedError propagate)."""
        return await self.urls.read(id, token=self._deadline(cancel))

    async def create_user(self, *, cancel: Optional[CancelToken] = None) -> str:
        """Create an empty user and return its signed token."""
        user_id = await self.users.create(token=self._deadline(cancel))
        return self.tokens.create_token(user_id)

    async def user_urls(self, user_token: str, *, cancel: Optional[CancelToken] = None) -> List[Dict[str, str]]:
        """
        List the user's URLs in creation order.

        Ids that no longer resolve (deleted, or lost with an in-memory
        restart) are left out.
        """
        user_id = self.tokens.get_id_from_token(user_token)
        try:
            owned = await self.users.read(user_id, token=self._deadline(cancel))
        except NotFoundError:
            return []

        items: List[Dict[str, str]] = []
        for id in owned:
            try:
                original = await self.urls.read(id, token=self._deadline(cancel))
            except (NotFoundError, DeletedError):
                continue
            items.append({"short_url": self.short_url(id), "original_url": original})
        return items

    async def delete_user_urls(
        self, user_token: str, ids: Sequence[str], *, cancel: Optional[CancelToken] = None
    ) -> int:
        """
        Soft-delete the ids in `ids` that belong to the user; others are ignored.

        Returns:
            int: Number of ids handed to the repository.

        Raises:
            UnsupportedOperationError: On a backend without soft-delete.
        """
        if not self.urls.supports_delete:
            raise UnsupportedOperationError("delete requires the database backend")
        user_id = self.tokens.get_id_from_token(user_token)
        try:
            owned = set(await self.users.read(user_id, token=self._deadline(cancel)))
        except NotFoundError:
            return 0
        targets = list(dict.fromkeys(id for id in ids if id in owned))
        if targets:
            await self.urls.delete(*targets, token=self._deadline(cancel))
            log.info("soft-deleted %d urls for user %s", len(targets), user_id)
        return len(targets)

    async def ping(self, *, cancel: Optional[CancelToken] = None) -> None:
        """Check the database connection. Raises BackendError without one."""
        pinger = getattr(self.urls, "ping", None)
        if pinger is None:
            raise BackendError("no database configured")
        await pinger(token=self._deadline(cancel))
