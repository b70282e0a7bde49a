import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from campusvote import security
from campusvote.database import Database
from campusvote.security import Role, Session

ELECTION_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_ELECTION_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
LIST_A = uuid.UUID("aaaaaaaa-0000-0000-0000-000000000001")
LIST_B = uuid.UUID("aaaaaaaa-0000-0000-0000-000000000002")
VOTER_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")
ADMIN_ID = uuid.UUID("44444444-4444-4444-4444-444444444444")
NOW = datetime(2026, 5, 4, 10, 30, tzinfo=timezone.utc)

_DEFAULTS = {"fetch": [], "fetchrow": None, "fetchval": None, "execute": "OK"}


def pg_error(error_cls, constraint_name):
    """An asyncpg error as raised by the server for ``constraint_name``."""
    exc = error_cls(f"violates constraint {constraint_name}")
    exc.constraint_name = constraint_name
    return exc


def _normalise(sql: str) -> str:
    return " ".join(sql.split())


class FakeTransaction:
    def __init__(self, conn, options):
        self.conn = conn
        self.options = options

    async def __aenter__(self):
        self.conn.transactions.append(self.options)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.conn.rollbacks += 1
        return False


class FakeConnection:
    """Scripted stand-in for an asyncpg connection.

    ``on(method, fragment, result)`` answers the first query whose SQL contains
    ``fragment``. ``result`` may be a value, an exception instance (raised) or
    a callable receiving the query arguments.
    """

    def __init__(self):
        self.responses = []
        self.calls = []
        self.transactions = []
        self.rollbacks = 0

    def on(self, method, fragment, result):
        self.responses.append((method, fragment, result))
        return self

    def transaction(self, **options):
        return FakeTransaction(self, options)

    def queries(self, method=None):
        return [sql for m, sql, _ in self.calls if method is None or m == method]

    def executed(self, fragment):
        return [(sql, args) for _, sql, args in self.calls if fragment in sql]

    async def _answer(self, method, sql, args):
        sql = _normalise(sql)
        self.calls.append((method, sql, args))
        for m, fragment, result in self.responses:
            if m == method and fragment in sql:
                if isinstance(result, BaseException):
                    raise result
                if callable(result):
                    return result(*args)
                return result
        return _DEFAULTS[method]

    async def fetch(self, sql, *args):
        return await self._answer("fetch", sql, args)

    async def fetchrow(self, sql, *args):
        return await self._answer("fetchrow", sql, args)

    async def fetchval(self, sql, *args):
        return await self._answer("fetchval", sql, args)

    async def execute(self, sql, *args):
        return await self._answer("execute", sql, args)


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def patched_db(monkeypatch, conn):
    """Route ``Database.connection()`` to the fake connection."""

    @asynccontextmanager
    async def connection():
        yield conn

    monkeypatch.setattr(Database, "connection", connection)
    return conn


@pytest.fixture
def student():
    return Session(user_id=VOTER_ID)


@pytest.fixture
def admin():
    return Session(user_id=ADMIN_ID, roles=frozenset({Role.STUDENT, Role.ADMINISTRATOR}))


@pytest.fixture
def committee():
    return Session(
        user_id=uuid.uuid4(),
        roles=frozenset({Role.STUDENT, Role.ELECTORAL_COMMITTEE}),
    )


def make_token(user_id=VOTER_ID, roles=(), expires_in=3600, **claims):
    payload = {
        "sub": str(user_id),
        "aud": security.JWT_AUDIENCE,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        "app_metadata": {"roles": list(roles)},
        **claims,
    }
    return jwt.encode(payload, security.JWT_SECRET, algorithm=security.JWT_ALGORITHM)


def auth_header(user_id=VOTER_ID, roles=()):
    return {"Authorization": f"Bearer {make_token(user_id, roles)}"}
