"""Shared pytest fixtures and configuration."""

import random

import fakeredis
import pytest

from mediator_sim.agents.delivery import DeliveryTracker
from mediator_sim.agents.pool import AgentPool
from mediator_sim.agents.simulated import SimulatedIdentityProvider
from mediator_sim.config import Settings
from mediator_sim.infrastructure.ledger_store import LedgerStore


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as requiring external services (Redis, etc.)"
    )


def _redis_available():
    """Check if Redis is available."""
    import socket
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(('localhost', 6379))
        sock.close()
        return result == 0
    except OSError:
        return False


def pytest_collection_modifyitems(config, items):
    """Skip integration tests if Redis is not available."""
    if _redis_available():
        return
    skip_integration = pytest.mark.skip(reason="Redis not available")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture
def fast_settings(tmp_path):
    """Settings with every lifecycle pause shrunk for tests."""
    return Settings(
        _env_file=None,
        redis_url="redis://localhost:6379",
        cleanup_delay_ms=0,
        agent_ready_delay_ms=0,
        mesh_settle_delay_ms=0,
        connection_retry_delay_ms=10,
        connection_timeout_ms=1000,
        delivery_lookup_attempts=5,
        delivery_lookup_delay_ms=10,
        scan_batch_size=50,
        reports_dir=tmp_path / "reports",
    )


@pytest.fixture
async def redis_client():
    """In-memory Redis speaking the redis.asyncio API."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def store(redis_client):
    """Ledger store over the fake Redis client."""
    return LedgerStore(client=redis_client)


@pytest.fixture
def provider():
    """Fast, deterministic simulated identity provider."""
    return SimulatedIdentityProvider(
        create_latency_ms=(0, 1),
        connect_latency_ms=(0, 1),
        send_latency_ms=(0, 1),
        delivery_latency_ms=(1, 5),
        seed=42,
    )


@pytest.fixture
def tracker(store, fast_settings):
    return DeliveryTracker(
        store,
        lookup_attempts=fast_settings.delivery_lookup_attempts,
        lookup_delay_ms=fast_settings.delivery_lookup_delay_ms,
    )


@pytest.fixture
def pool(provider, tracker):
    return AgentPool(provider, tracker=tracker, rng=random.Random(7))
