"""
URLManager: short URL building, per-user bookkeeping, deadlines, error flow.
"""

import gc
import logging
import time

import pytest

from hashlink_platform.manager.strategies import BaseStrategy, url_hash
from hashlink_platform.manager.url_manager import URLManager
from hashlink_platform.storage.db_storage import DBURLRepository, DBUserRepository
from hashlink_platform.storage.errors import (
    BackendError,
    DeadlineExceededError,
    DeletedError,
    NotFoundError,
    UnsupportedOperationError,
)
from hashlink_platform.storage.storage import InMemoryURLRepository

pytestmark = pytest.mark.anyio

BASE = "http://localhost:8080/"


class ConstantStrategy(BaseStrategy):
    """Maps every URL to the same id, to force collisions."""

    def generate(self, url: str) -> str:
        return "aaaaa"


class SlowStrategy(BaseStrategy):
    def generate(self, url: str) -> str:
        time.sleep(0.3)
        return "bbbbb"


async def test_shorten_returns_base_url_plus_id(manager):
    result = await manager.shorten("https://example.com/a")
    assert result.short_url == BASE + url_hash("https://example.com/a")
    assert result.duplicate is False

    again = await manager.shorten("https://example.com/a")
    assert again.short_url == result.short_url
    assert again.duplicate is True


async def test_shorten_rejects_malformed_url(manager):
    with pytest.raises(ValueError):
        await manager.shorten("not a url")


async def test_user_list_has_creation_order_and_no_duplicates(manager, user_repo):
    token = await manager.create_user()
    urls = ["https://example.com/1", "https://example.com/2", "https://example.com/3"]
    for url in urls:
        await manager.shorten(url, token)
    await manager.shorten(urls[1], token)

    user_id = manager.tokens.get_id_from_token(token)
    assert await user_repo.read(user_id) == [url_hash(u) for u in urls]


async def test_per_user_locks_are_released_after_use(manager):
    tokens = [await manager.create_user() for _ in range(5)]
    for i, token in enumerate(tokens):
        await manager.shorten(f"https://example.com/{i}", token)

    gc.collect()
    assert len(manager._user_locks) == 0


async def test_batch_records_ids_for_user(manager):
    token = await manager.create_user()
    result = await manager.shorten_batch(["https://example.com/x", "https://example.com/y"], token)

    assert result.short_urls == [BASE + url_hash("https://example.com/x"), BASE + url_hash("https://example.com/y")]
    assert result.duplicate is False
    listed = await manager.user_urls(token)
    assert [item["original_url"] for item in listed] == ["https://example.com/x", "https://example.com/y"]


async def test_batch_with_one_bad_url_stores_nothing(manager, url_repo):
    with pytest.raises(ValueError):
        await manager.shorten_batch(["https://example.com/x", "nope"])
    assert len(url_repo) == 0


async def test_user_urls_lists_short_and_original(manager):
    token = await manager.create_user()
    await manager.shorten("https://example.com/a", token)

    assert await manager.user_urls(token) == [
        {"short_url": BASE + url_hash("https://example.com/a"), "original_url": "https://example.com/a"}
    ]


async def test_user_urls_of_unknown_user_is_empty(manager):
    token = manager.tokens.create_token("12345")
    assert await manager.user_urls(token) == []


async def test_resolve_unknown_is_not_found(manager):
    with pytest.raises(NotFoundError):
        await manager.resolve("zzzzz")


async def test_collision_keeps_first_url_and_warns(user_repo, tokens, caplog):
    urls = InMemoryURLRepository(strategy=ConstantStrategy())
    manager = URLManager(urls=urls, users=user_repo, tokens=tokens, base_url=BASE)
    caplog.set_level(logging.WARNING, logger="hashlink.manager")

    await manager.shorten("https://example.com/first")
    second = await manager.shorten("https://example.com/second")

    assert second.duplicate is True
    assert await manager.resolve("aaaaa") == "https://example.com/first"
    assert "already maps to https://example.com/first" in caplog.text


async def test_slow_repository_hits_the_deadline(user_repo, tokens):
    urls = InMemoryURLRepository(strategy=SlowStrategy())
    manager = URLManager(urls=urls, users=user_repo, tokens=tokens, base_url=BASE, timeout=0.05)

    started = time.monotonic()
    with pytest.raises(DeadlineExceededError):
        await manager.shorten("https://example.com/slow")
    assert time.monotonic() - started < 0.25


async def test_delete_unsupported_in_memory(manager):
    token = await manager.create_user()
    with pytest.raises(UnsupportedOperationError):
        await manager.delete_user_urls(token, ["aaaaa"])


async def test_ping_without_database_is_backend_error(manager):
    with pytest.raises(BackendError, match="no database"):
        await manager.ping()


# ---------------------------------------------------------------------
# Relational backend
# ---------------------------------------------------------------------

@pytest.fixture
def db_manager(fake_conn, tokens):
    return URLManager(
        urls=DBURLRepository(fake_conn),
        users=DBUserRepository(fake_conn),
        tokens=tokens,
        base_url=BASE,
    )


async def test_delete_only_touches_urls_owned_by_user(db_manager, fake_conn):
    owner = await db_manager.create_user()
    other = await db_manager.create_user()
    mine = await db_manager.shorten("https://example.com/mine", owner)
    theirs = await db_manager.shorten("https://example.com/theirs", other)
    mine_id = mine.short_url.rsplit("/", 1)[1]
    theirs_id = theirs.short_url.rsplit("/", 1)[1]

    deleted = await db_manager.delete_user_urls(owner, [mine_id, theirs_id, mine_id])

    assert deleted == 1
    assert fake_conn.soft_deleted == [mine_id]
    with pytest.raises(DeletedError):
        await db_manager.resolve(mine_id)
    assert await db_manager.resolve(theirs_id) == "https://example.com/theirs"


async def test_deleted_urls_drop_out_of_user_listing(db_manager):
    token = await db_manager.create_user()
    kept = await db_manager.shorten("https://example.com/kept", token)
    gone = await db_manager.shorten("https://example.com/gone", token)

    await db_manager.delete_user_urls(token, [gone.short_url.rsplit("/", 1)[1]])

    assert [item["short_url"] for item in await db_manager.user_urls(token)] == [kept.short_url]


async def test_ping_with_database(db_manager, fake_conn):
    await db_manager.ping()
    assert ("SELECT 1", ()) in fake_conn.statements
