"""
Pytest configuration and shared fixtures.
"""

import os

# Settings are cached on first use, so the test environment must be in place
# before any application module is imported.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("QUEUE_MODE", "memory")
os.environ.setdefault("CACHE_SHARED_ENABLED", "false")
os.environ.setdefault("API_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_FORMAT", "console")

from collections.abc import AsyncGenerator, Callable  # noqa: E402
from typing import Any  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from prometheus_client import CollectorRegistry  # noqa: E402

from memorymesh.api.auth import create_access_token  # noqa: E402
from memorymesh.api.main import create_app  # noqa: E402
from memorymesh.cache.store import TieredCache, reset_cache  # noqa: E402
from memorymesh.config import Environment, QueueMode, Settings  # noqa: E402
from memorymesh.errors import OutboxItemFailed  # noqa: E402
from memorymesh.observability.metrics import MetricsCollector  # noqa: E402
from memorymesh.queues.registry import QueueRegistry  # noqa: E402

# Nothing listens here; connections are refused immediately.
UNREACHABLE_REDIS_URL = "redis://127.0.0.1:1/0"


class FakeClock:
    """Epoch-milliseconds clock advanced by hand."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class MonotonicClock:
    """Seconds clock for the cache's local tier."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSharedStore:
    """In-memory shared tier with call counters and failure switches."""

    def __init__(self, fail_connect: bool = False):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail_connect = fail_connect
        self.fail_ops = False
        self.connect_calls = 0
        self.get_calls = 0
        self.set_calls = 0
        self.flush_calls = 0
        self.closed = False

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise ConnectionError("shared store unreachable")

    def _check(self) -> None:
        if self.fail_ops:
            raise ConnectionError("shared store went away")

    async def get(self, key: str) -> str | None:
        self.get_calls += 1
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.set_calls += 1
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl_seconds

    async def delete(self, key: str) -> None:
        self._check()
        self.data.pop(key, None)

    async def flush(self) -> None:
        self.flush_calls += 1
        self._check()
        self.data.clear()

    async def close(self) -> None:
        self.closed = True


class FakeSyncBackend:
    """Records backend writes. ``fail_if`` decides which inserts are rejected."""

    def __init__(self):
        self.records: list[tuple[str, dict[str, Any]]] = []
        self.uploads: list[tuple[str, str, bytes, str]] = []
        self.fail_if: Callable[[str, dict[str, Any]], bool] = lambda table, record: False
        self.fail_uploads = False

    async def insert_record(self, table: str, record: dict[str, Any]) -> None:
        if self.fail_if(table, record):
            raise OutboxItemFailed(f"rejected insert into {table}")
        self.records.append((table, record))

    async def upload_blob(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        if self.fail_uploads:
            raise OutboxItemFailed(f"rejected upload to {bucket}/{path}")
        self.uploads.append((bucket, path, content, content_type))
        return f"https://backend.test/storage/v1/object/public/{bucket}/{path}"


@pytest.fixture(autouse=True)
def _reset_process_cache():
    """Each test starts without a process-wide cache."""
    reset_cache()
    yield
    reset_cache()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        environment=Environment.TEST,
        queue_mode=QueueMode.MEMORY,
        api_secret_key="test-secret-key",
        log_level="DEBUG",
        log_format="console",
        worker_poll_interval_seconds=0.01,
        reaper_interval_seconds=1,
        cache_shared_enabled=False,
    )


@pytest.fixture
def production_settings() -> Settings:
    """Production settings pointing at a broker that is not there."""
    return Settings(
        environment=Environment.PRODUCTION,
        queue_mode=QueueMode.REDIS,
        broker_url=UNREACHABLE_REDIS_URL,
        broker_connect_timeout_seconds=0.5,
        api_secret_key="test-secret-key",
    )


@pytest.fixture
def development_settings() -> Settings:
    """Development settings pointing at a broker that is not there."""
    return Settings(
        environment=Environment.DEVELOPMENT,
        queue_mode=QueueMode.REDIS,
        broker_url=UNREACHABLE_REDIS_URL,
        broker_connect_timeout_seconds=0.5,
        api_secret_key="test-secret-key",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector on its own registry so tests do not share counters."""
    return MetricsCollector(registry=metrics_registry)


@pytest_asyncio.fixture
async def registry(
    test_settings: Settings,
    clock: FakeClock,
    metrics: MetricsCollector,
) -> AsyncGenerator[QueueRegistry]:
    """Initialized registry of memory queues driven by the fake clock."""
    registry = QueueRegistry(test_settings, mode=QueueMode.MEMORY, clock=clock, metrics=metrics)
    await registry.initialize()
    yield registry
    await registry.close()


@pytest.fixture
def shared_store() -> FakeSharedStore:
    return FakeSharedStore()


@pytest.fixture
def mono_clock() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def cache(
    shared_store: FakeSharedStore,
    mono_clock: MonotonicClock,
    metrics: MetricsCollector,
) -> TieredCache:
    return TieredCache(shared_store, clock=mono_clock, metrics=metrics)


@pytest.fixture
def sync_backend() -> FakeSyncBackend:
    return FakeSyncBackend()


@pytest_asyncio.fixture
async def app(registry: QueueRegistry, cache: TieredCache) -> AsyncGenerator[FastAPI]:
    """Create a FastAPI app wired to the memory registry."""
    yield create_app(registry=registry, cache=cache)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_client_id() -> str:
    """Generate a test client ID."""
    return f"test-client-{uuid4().hex[:8]}"


@pytest.fixture
def auth_headers(test_client_id: str) -> dict[str, str]:
    """Create authentication headers for testing."""
    token = create_access_token(client_id=test_client_id)
    return {
        "Authorization": f"Bearer {token}",
    }
