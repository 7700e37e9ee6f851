"""
Shared test configuration

Environment variables are set before any application module is imported so
the settings object points at a throwaway SQLite database, a temporary upload
directory and the in-memory cache.
"""
import os
import tempfile
from pathlib import Path

import pytest

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="docsearch-tests-"))

os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'app.db'}"
os.environ["UPLOAD_DIR"] = str(_TEST_ROOT / "uploads")
os.environ["REDIS_URL"] = ""
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["REQUIRE_AUTH"] = "false"
os.environ["ENABLE_AUDIT_LOG"] = "true"
os.environ["LOG_LEVEL"] = "WARNING"


@pytest.fixture
def storage(tmp_path):
    """Storage backed by a fresh SQLite file"""
    from storage import Storage

    store = Storage(f"sqlite:///{tmp_path / 'documents.db'}")
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def cache():
    from cache_manager import CacheManager

    manager = CacheManager(redis_url=None, ttl=60, max_memory_cache=100)
    yield manager
    manager.close()


@pytest.fixture
def service(storage, cache, tmp_path):
    from document_service import DocumentService

    return DocumentService(storage, cache, upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def client():
    """TestClient running the application lifespan"""
    from fastapi.testclient import TestClient
    from app import app

    with TestClient(app) as test_client:
        yield test_client


class InMemoryRedis:
    """Redis server stand-in shared by several clients in one process"""

    def __init__(self):
        self.data = {}
        self.revisions = {}
        self.down = False
        # Called once by the next pipeline between WATCH and EXEC
        self.on_next_exec = None

    def _check(self):
        from redis.exceptions import ConnectionError as RedisConnectionError

        if self.down:
            raise RedisConnectionError("Connection refused")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.revisions[key] = self.revisions.get(key, 0) + 1
        return True

    def info(self, section=None):
        self._check()
        return {"used_memory_human": "1K"}

    def close(self):
        pass

    def pipeline(self):
        return _InMemoryPipeline(self)


class _InMemoryPipeline:

    def __init__(self, server):
        self.server = server
        self.watched = {}
        self.queued = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.reset()

    def reset(self):
        self.watched = {}
        self.queued = None

    def watch(self, key):
        self.server._check()
        self.watched[key] = self.server.revisions.get(key, 0)

    def unwatch(self):
        self.watched = {}

    def get(self, key):
        return self.server.get(key)

    def multi(self):
        self.queued = []

    def set(self, key, value, ex=None):
        self.queued.append((key, value, ex))

    def execute(self):
        from redis.exceptions import WatchError

        hook, self.server.on_next_exec = self.server.on_next_exec, None
        if hook:
            hook()

        changed = any(
            self.server.revisions.get(key, 0) != revision
            for key, revision in self.watched.items()
        )
        queued = self.queued or []
        self.reset()
        if changed:
            raise WatchError("Watched variable changed.")

        return [self.server.set(key, value, ex=ex) for key, value, ex in queued]


@pytest.fixture
def redis_server():
    return InMemoryRedis()


@pytest.fixture
def redis_cache(redis_server):
    """Text cache of one worker backed by the shared Redis stand-in"""
    from cache_manager import CacheManager

    manager = CacheManager(redis_client=redis_server, ttl=60)
    yield manager
    manager.close()
