"""Shared fixtures: an in-memory stand-in for the db module and auth overrides."""
import os

# Must be set before the app (and its rate limiter) is imported.
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["RATE_LIMIT_RPM"] = "0"

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from src.claims_api import db
from src.claims_api.auth_utils import get_current_user
from src.claims_api.main import app

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

ADMIN = {"id": 1, "email": "admin@example.com", "first_name": "Ada", "last_name": "Admin", "role": "admin",
         "is_active": True, "created_at": NOW, "updated_at": NOW}
USER = {"id": 2, "email": "user@example.com", "first_name": "Uma", "last_name": "User", "role": "user",
        "is_active": True, "created_at": NOW, "updated_at": NOW}


def _normalize(query: str) -> str:
    return " ".join(query.split())


class FakeDB:
    """
    Answers queries from rules registered with on().

    A rule is (fragment, result): the first rule whose fragment occurs in the
    whitespace-normalized SQL wins. result may be a callable taking params.
    Every call is recorded in .calls as (sql, params).
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, list]] = []
        self._rules: List[Tuple[str, Any]] = []

    def on(self, fragment: str, result: Any) -> "FakeDB":
        self._rules.append((_normalize(fragment), result))
        return self

    def _answer(self, query: str, params: Optional[list], default: Any) -> Any:
        sql = _normalize(query)
        params = list(params or [])
        self.calls.append((sql, params))
        for fragment, result in self._rules:
            if fragment in sql:
                return result(params) if callable(result) else result
        return default

    def executed(self, fragment: str) -> List[Tuple[str, list]]:
        fragment = _normalize(fragment)
        return [call for call in self.calls if fragment in call[0]]

    def fetch_one(self, query, params=None):
        return self._answer(query, params, None)

    def fetch_all(self, query, params=None):
        return self._answer(query, params, [])

    def fetch_value(self, query, params=None):
        return self._answer(query, params, None)

    def execute(self, query, params=None):
        return self._answer(query, params, 1)

    def execute_returning_one(self, query, params=None):
        row = self._answer(query, params, None)
        if row is None:
            raise RuntimeError("Expected one row returned, got none.")
        return row

    @contextmanager
    def transaction(self):
        yield _FakeCursor(self)


class _FakeCursor:
    def __init__(self, fake: FakeDB) -> None:
        self._fake = fake
        self._last: Any = None

    def execute(self, query, params=None):
        self._last = self._fake._answer(query, params, None)

    def fetchone(self):
        return self._last


@pytest.fixture
def fake_db(monkeypatch) -> FakeDB:
    fake = FakeDB()
    for name in ("fetch_one", "fetch_all", "fetch_value", "execute", "execute_returning_one", "transaction"):
        monkeypatch.setattr(db, name, getattr(fake, name))
    return fake


@pytest.fixture
def client() -> TestClient:
    # Not used as a context manager, so the startup hook never opens a real pool.
    return TestClient(app)


def _login_as(user: dict) -> Callable[[], dict]:
    return lambda: dict(user)


@pytest.fixture
def as_admin():
    app.dependency_overrides[get_current_user] = _login_as(ADMIN)
    yield ADMIN
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture
def as_user():
    app.dependency_overrides[get_current_user] = _login_as(USER)
    yield USER
    app.dependency_overrides.pop(get_current_user, None)
