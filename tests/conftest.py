from __future__ import annotations

import sys
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

import jwt
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from hyumane import create_app

JWT_SECRET = "test-verification-secret"

_ENV_TO_CLEAR = (
    "SUPABASE_URL",
    "SUPABASE_URL_SECRET",
    "SUPABASE_PROJECT_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_ANON_KEY_SECRET",
    "SUPABASE_API_KEY",
    "SUPABASE_DB_POOL_URL",
    "REDIS_URL",
    "UPSTASH_REDIS_URL",
    "VERCEL",
    "VERCEL_ENV",
    "DATABASE_SSLMODE",
)


@pytest.fixture
def app_env(tmp_path, monkeypatch):
    for name in _ENV_TO_CLEAR:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FLASK_ENV", "development")
    monkeypatch.setenv("FLASK_SECRET_KEY", "testing-secret")
    monkeypatch.setenv("LOCAL_DATABASE_URI", f"sqlite:///{tmp_path / 'hyumane.db'}")
    monkeypatch.setenv("STORAGE_DATA_DIR", str(tmp_path / "media"))
    monkeypatch.setenv("VERIFICATION_JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("STREAM_KEEPALIVE_SECONDS", "0.05")
    return tmp_path


@pytest.fixture
def app(app_env):
    app = create_app()
    app.config.update(TESTING=True)
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


def make_token(sub: str = "user-1", secret: str = JWT_SECRET, expires_in: int = 300, **claims: Any) -> str:
    payload = {"sub": sub, "exp": int(time.time()) + expires_in}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def login(client, user_id: str, name: str = "Test Person"):
    return client.post("/verify", data={"token": make_token(user_id, name=name)})


def make_profile(app, user_id: str, username: str, bio: str = "") -> Dict[str, Any]:
    return app.profile_service.create_profile(
        username=username,
        bio=bio,
        interests="",
        verified_user_id=user_id,
    )


# --- Fake Supabase client -------------------------------------------------


class FakeQuery:
    """Records the builder chain and replays a queued response on ``execute``."""

    def __init__(self, client: "FakeSupabase", name: str) -> None:
        self.client = client
        self.name = name
        self.calls: List[tuple] = []

    def _record(self, method: str, *args: Any, **kwargs: Any) -> "FakeQuery":
        self.calls.append((method, args, kwargs))
        return self

    def select(self, *args, **kwargs):
        return self._record("select", *args, **kwargs)

    def insert(self, *args, **kwargs):
        return self._record("insert", *args, **kwargs)

    def update(self, *args, **kwargs):
        return self._record("update", *args, **kwargs)

    def delete(self, *args, **kwargs):
        return self._record("delete", *args, **kwargs)

    def eq(self, *args, **kwargs):
        return self._record("eq", *args, **kwargs)

    def neq(self, *args, **kwargs):
        return self._record("neq", *args, **kwargs)

    def in_(self, *args, **kwargs):
        return self._record("in_", *args, **kwargs)

    def or_(self, *args, **kwargs):
        return self._record("or_", *args, **kwargs)

    def order(self, *args, **kwargs):
        return self._record("order", *args, **kwargs)

    def limit(self, *args, **kwargs):
        return self._record("limit", *args, **kwargs)

    def execute(self):
        queued = self.client.responses.get(self.name) or []
        result = queued.pop(0) if queued else SimpleNamespace(data=[], count=0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeBucket:
    def __init__(self, name: str) -> None:
        self.name = name
        self.uploads: List[tuple] = []

    def upload(self, path, data, file_options=None):
        self.uploads.append((path, data, file_options))
        return SimpleNamespace(path=path)

    def get_public_url(self, path):
        return f"https://cdn.example.com/storage/v1/object/public/{self.name}/{path}?"


class FakeStorage:
    def __init__(self) -> None:
        self.buckets: Dict[str, FakeBucket] = {}

    def from_(self, name):
        return self.buckets.setdefault(name, FakeBucket(name))


class FakeSupabase:
    def __init__(self) -> None:
        self.responses: Dict[str, List[Any]] = {}
        self.queries: List[FakeQuery] = []
        self.storage = FakeStorage()

    def respond(self, name: str, *results: Any) -> None:
        self.responses.setdefault(name, []).extend(results)

    def table(self, name):
        query = FakeQuery(self, name)
        self.queries.append(query)
        return query

    def rpc(self, name, params):
        query = FakeQuery(self, f"rpc:{name}")
        query.calls.append(("rpc", (name, params), {}))
        self.queries.append(query)
        return query

    def calls_for(self, name: str) -> List[List[tuple]]:
        return [query.calls for query in self.queries if query.name == name]


def response(data=None, count=None) -> SimpleNamespace:
    return SimpleNamespace(data=data if data is not None else [], count=count)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()
