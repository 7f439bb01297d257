"""
Global pytest fixtures for the Hashlink Platform test suite.

Responsibilities:
    - Run async tests on asyncio through the anyio pytest plugin
    - Provide a scripted fake of `psycopg.AsyncConnection` that keeps the
      `url` / `users` tables in dicts, so the relational backend is tested
      without a database server
    - Provide fresh in-memory repositories and a URLManager wired to them
    - Provide TestClients built by the app factory for both backends

Why an app factory?
    Using `create_app()` ensures each test gets fresh state; the lifespan runs
    inside `with TestClient(...)`, so repositories are created and closed per test.
"""

import copy

import psycopg
import pytest
from fastapi.testclient import TestClient

from auth.service import TokenBuilder
from hashlink_platform.config import load_settings
from hashlink_platform.manager.url_manager import URLManager
from hashlink_platform.storage import db_storage as sql
from hashlink_platform.storage.storage import InMemoryURLRepository, InMemoryUserRepository
from main import create_app

TEST_SECRET = "test-secret"
TEST_BASE_URL = "http://localhost:8080/"


# ---------------------------------------------------------------------
# Fake psycopg connection
# ---------------------------------------------------------------------

class FakeCursor:
    def __init__(self, conn, rows=None):
        self._conn = conn
        self._rows = list(rows or [])

    async def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    async def executemany(self, query, params_seq):
        batch = list(params_seq)
        self._conn.executemany_calls.append(batch)
        if self._conn.fail_executemany_at == len(self._conn.executemany_calls):
            raise psycopg.OperationalError("executemany failed")
        for params in batch:
            await self._conn.execute(query, params)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeTransaction:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        self._conn.transactions += 1
        self._snapshot = (copy.deepcopy(self._conn.url_rows), copy.deepcopy(self._conn.user_rows))
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None and self._conn.fail_commit is not None:
            self._conn.url_rows, self._conn.user_rows = self._snapshot
            raise self._conn.fail_commit
        if exc_type is not None:
            self._conn.url_rows, self._conn.user_rows = self._snapshot
        return False


class FakeAsyncConnection:
    """
    In-process stand-in for `psycopg.AsyncConnection`.

    Only the statements issued by `db_storage` are understood; anything else
    fails the test. Set `fail[SQL] = exc` to make a statement raise,
    `fail_commit` to make a transaction's commit raise, and
    `fail_executemany_at = n` to make the n-th executemany call raise.
    """

    def __init__(self, tables=()):
        self.existing_tables = set(tables)
        self.url_rows = {}
        self.user_rows = {}
        self._next_user = 1
        self.statements = []
        self.executemany_calls = []
        self.soft_deleted = []
        self.transactions = 0
        self.fail = {}
        self.fail_commit = None
        self.fail_executemany_at = None
        self.closed = False

    async def execute(self, query, params=None, prepare=None):
        self.statements.append((query, params))
        if query in self.fail:
            raise self.fail[query]

        if query == sql.TABLE_EXISTS_SQL:
            return FakeCursor(self, [(params[0] in self.existing_tables,)])
        if query == sql.CREATE_URL_TABLE_SQL:
            self.existing_tables.add("url")
            return FakeCursor(self)
        if query == sql.CREATE_USERS_TABLE_SQL:
            self.existing_tables.add("users")
            return FakeCursor(self)

        if query == sql.INSERT_URL_SQL:
            key, url = params
            if key in self.url_rows:
                return FakeCursor(self)
            self.url_rows[key] = [url, False]
            return FakeCursor(self, [(key,)])
        if query == sql.SELECT_URL_SQL:
            row = self.url_rows.get(params[0])
            return FakeCursor(self, [tuple(row)] if row else [])
        if query == sql.UPDATE_URL_SQL:
            url, key = params
            if key in self.url_rows:
                self.url_rows[key][0] = url
            return FakeCursor(self)
        if query == sql.SOFT_DELETE_SQL:
            key = params[0]
            self.soft_deleted.append(key)
            if key in self.url_rows:
                self.url_rows[key][1] = True
            return FakeCursor(self)

        if query == sql.INSERT_USER_SQL:
            user_id = self._next_user
            self._next_user += 1
            self.user_rows[user_id] = list(params[0])
            return FakeCursor(self, [(user_id,)])
        if query == sql.SELECT_USER_SQL:
            urls = self.user_rows.get(params[0])
            return FakeCursor(self, [(list(urls),)] if urls is not None else [])
        if query == sql.UPDATE_USER_SQL:
            urls, user_id = params
            if user_id in self.user_rows:
                self.user_rows[user_id] = list(urls)
            return FakeCursor(self)

        if query == "SELECT 1":
            return FakeCursor(self, [(1,)])
        raise AssertionError(f"unexpected SQL: {query}")

    def transaction(self):
        return FakeTransaction(self)

    def cursor(self):
        return FakeCursor(self)

    async def close(self):
        self.closed = True


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def anyio_backend():
    # run_detached relies on the asyncio default executor
    return "asyncio"


@pytest.fixture
def fake_conn() -> FakeAsyncConnection:
    return FakeAsyncConnection(tables=("url", "users"))


@pytest.fixture
def empty_conn() -> FakeAsyncConnection:
    """Connection to a database where neither table exists yet."""
    return FakeAsyncConnection()


@pytest.fixture
def tokens() -> TokenBuilder:
    return TokenBuilder(TEST_SECRET)


@pytest.fixture
def url_repo() -> InMemoryURLRepository:
    return InMemoryURLRepository()


@pytest.fixture
def user_repo() -> InMemoryUserRepository:
    return InMemoryUserRepository()


@pytest.fixture
def manager(url_repo, user_repo, tokens) -> URLManager:
    """URLManager over fresh in-memory repositories."""
    return URLManager(urls=url_repo, users=user_repo, tokens=tokens, base_url=TEST_BASE_URL)


@pytest.fixture
def app_settings(monkeypatch):
    """Settings read from a controlled environment (in-memory backend, no backup)."""
    monkeypatch.delenv("DATABASE_DSN", raising=False)
    monkeypatch.delenv("FILE_STORAGE_PATH", raising=False)
    monkeypatch.setenv("BASE_URL", TEST_BASE_URL)
    monkeypatch.setenv("SECRET_KEY", TEST_SECRET)
    return load_settings()


@pytest.fixture
def client(app_settings):
    """TestClient over the in-memory backend; lifespan runs inside the `with`."""
    with TestClient(create_app(app_settings)) as test_client:
        yield test_client


@pytest.fixture
def db_client(app_settings, fake_conn):
    """TestClient over the relational backend, bound to `fake_conn`."""
    with TestClient(create_app(app_settings, db_connection=fake_conn)) as test_client:
        yield test_client
