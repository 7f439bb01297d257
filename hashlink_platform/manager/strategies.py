"""
Short-id derivation for hashlink_platform.

Provided strategies:
- SHA1Strategy: deterministic SHA-1(canonical url) -> lowercase hex -> first 5 chars

Common helpers:
- canonical_url: structural parse/validate of an absolute http(s) URL
- url_hash: module-level shortcut for the default strategy

Notes:
- 5 hex chars give 20 bits (~1M ids). Collisions are possible and
  are handled by the repositories (the first stored URL keeps the id).
- Strategies are stateless, so one instance can be shared by every repository.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import urlsplit

from ..storage.errors import RepositoryError

DEFAULT_ID_LENGTH = 5


def canonical_url(url: str) -> str:
    """
    Validate that a URL has an http/https scheme and a host, and return its
    canonical string form (the exact text the hash is computed over).

    Raises:
        ValueError: If the URL is malformed.
    """
    if not isinstance(url, str):
        raise ValueError("Invalid URL format")
    try:
        parts = urlsplit(url.strip())
    except ValueError as exc:
        raise ValueError("Invalid URL format") from exc
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ValueError("Invalid URL format")
    return parts.geturl()


class BaseStrategy(ABC):
    """Abstract base for id derivation strategies."""

    @abstractmethod
    def generate(self, url: str) -> str:  # pragma: no cover
        """Return the short id for `url`. Must be a pure function of `url`."""
        raise NotImplementedError


@dataclass(frozen=True)
class SHA1Strategy(BaseStrategy):
    """Deterministic SHA-1 -> hex -> truncate strategy."""

    length: int = DEFAULT_ID_LENGTH

    def generate(self, url: str) -> str:
        digest = hashlib.sha1()
        try:
            digest.update(url.encode("utf-8"))
        except UnicodeEncodeError as exc:
            raise RepositoryError(f"cannot hash url: {exc}") from exc
        return digest.hexdigest()[: self.length]


_default_strategy = SHA1Strategy()


def url_hash(url: str) -> str:
    """Facade used by callers that do not inject a strategy."""
    return _default_strategy.generate(url)
