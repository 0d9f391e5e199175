"""
Shared test fixtures.

Everything runs against ``kmt.testing.MockClientFactory`` with budgets
scaled down so timeouts resolve in a few hundred milliseconds.
"""

import asyncio

import pytest
import pytest_asyncio

from kmt.config import Settings, reset_settings
from kmt.coordinator import BrokerOperationsCoordinator
from kmt.events import EventSink
from kmt.executor import AsyncOperationExecutor
from kmt.models import BrokerConfig, TopicConfig
from kmt.registry import ConnectionRegistry
from kmt.testing import MockClientFactory
from kmt.timeouts import TimeoutPolicy


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def factory():
    """In-memory broker with fault injection."""
    return MockClientFactory()


@pytest.fixture
def policy():
    return TimeoutPolicy.from_ms(
        reachability=200,
        future_wait=300,
        describe_group=200,
        close=200,
        delete_topic=200,
        poll=5200,
        poll_grace_ms=200,
    )


@pytest.fixture
def sink():
    return EventSink()


@pytest_asyncio.fixture
async def executor(policy, sink):
    executor = AsyncOperationExecutor(policy, sink)
    yield executor
    await executor.shutdown()


@pytest_asyncio.fixture
async def registry(executor, factory):
    """Registry closing connections as soon as they are released."""
    registry = ConnectionRegistry(executor, factory, probe=factory.probe, idle_close_delay=0.0)
    yield registry
    factory.clear()
    await registry.close_all()


@pytest.fixture
def settings():
    return Settings(_env_file=None, idle_close_delay_ms=10000, listener_buffer_size=100)


@pytest_asyncio.fixture
async def coordinator(settings, policy, sink, factory):
    coordinator = BrokerOperationsCoordinator(
        settings,
        policy=policy,
        sink=sink,
        client_factory=factory,
        probe=factory.probe,
    )
    yield coordinator
    factory.clear()
    await coordinator.shutdown()


@pytest.fixture
def broker():
    return BrokerConfig(name="local", hostname="kafka.local", port=9092)


@pytest.fixture
def topic(broker):
    return TopicConfig(name="orders", topic_name="orders", broker=broker)


@pytest.fixture
def wait_until():
    """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""
    async def wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)
    return wait
