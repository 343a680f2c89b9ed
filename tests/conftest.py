"""
Pytest configuration and fixtures for rbac-store tests.

This module provides shared fixtures used across unit and integration
tests. Redis is replaced by fakeredis; every test gets its own fake server.
"""

import tempfile
from pathlib import Path
from typing import Generator

import fakeredis
import pytest

from rbacstore.adapters import Adapter, RedisAdapter, SQLAdapter
from rbacstore.model import PolicyModel
from rbacstore.store import PolicyStore

# (ptype, values) pairs of the reference RBAC scenario.
SCENARIO_RULES = [
    ("p", ["alice", "data1", "read"]),
    ("p", ["bob", "data2", "write"]),
    ("p", ["data2_admin", "data2", "read"]),
    ("p", ["data2_admin", "data2", "write"]),
]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    """Path of a fresh SQLite database file."""
    return temp_dir / "rbac.db"


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    """A fake Redis client with a private server."""
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def sql_adapter(db_path: Path) -> Generator[SQLAdapter, None, None]:
    """SQLAdapter on a temporary database file."""
    adapter = SQLAdapter(str(db_path))
    yield adapter
    adapter.close()


@pytest.fixture
def kv_adapter(redis_client: fakeredis.FakeRedis) -> RedisAdapter:
    """RedisAdapter on a fake Redis server."""
    return RedisAdapter(client=redis_client)


@pytest.fixture(params=["sql", "redis"])
def adapter(request: pytest.FixtureRequest, temp_dir: Path) -> Generator[Adapter, None, None]:
    """Each backend in turn."""
    if request.param == "sql":
        backend: Adapter = SQLAdapter(str(temp_dir / "rbac.db"))
    else:
        client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        backend = RedisAdapter(client=client)
    yield backend
    backend.close()


@pytest.fixture
def model() -> PolicyModel:
    """Empty default RBAC model."""
    return PolicyModel.default()


@pytest.fixture
def scenario_model() -> PolicyModel:
    """Default RBAC model holding the reference scenario rules."""
    policy_model = PolicyModel.default()
    for ptype, rule in SCENARIO_RULES:
        policy_model.add_policy(ptype[:1], ptype, rule)
    return policy_model


@pytest.fixture
def store(adapter: Adapter) -> PolicyStore:
    """Auto-saving store over each backend in turn."""
    return PolicyStore(adapter)
