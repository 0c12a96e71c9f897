"""Shared fixtures for sync tests.

The in-memory adapters stand in for PostgreSQL and Firebase. They never
suspend, so a write on one engine reaches every subscriber before the
write call returns.
"""

import asyncio

import pytest

from src.arkive.sync.adapters.entity_codec import EntityCodec
from src.arkive.sync.adapters.memory import (
    InMemoryLocalStore,
    InMemoryRemoteStore,
    InMemoryStateStore,
)
from src.arkive.sync.connectivity import ConnectivityMonitor
from src.arkive.sync.engine import SyncEngine
from src.arkive.sync.identity import DeviceIdentityProvider
from src.arkive.sync.queue import OperationQueue

COLLECTIONS = ["clients", "receipts", "tasks"]


async def _go_online(monitor: ConnectivityMonitor) -> None:
    monitor.notify_online()
    await monitor.probe()


async def _settle(engine: SyncEngine) -> None:
    await engine.connectivity.probe()
    for _ in range(3):
        await engine.driver.drain_now()
        await asyncio.sleep(0)


@pytest.fixture
def go_online():
    """Report a network and wait for the probe to confirm it."""
    return _go_online


@pytest.fixture
def settle():
    """Confirm connectivity and let every triggered pass finish."""
    return _settle


@pytest.fixture
def codec():
    return EntityCodec()


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def local_store():
    return InMemoryLocalStore()


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def identity(state_store):
    return DeviceIdentityProvider(state_store)


@pytest.fixture
def queue(state_store, identity, codec):
    return OperationQueue(state_store, identity, codec)


@pytest.fixture
async def monitor(remote):
    monitor = ConnectivityMonitor(remote, probe_interval=3600, probe_timeout=1)
    yield monitor
    await monitor.stop()


@pytest.fixture
async def make_engine(remote):
    """Factory for engines sharing one remote store, one per device."""
    engines: list[SyncEngine] = []

    def factory(local_store=None, state_store=None, **kwargs) -> SyncEngine:
        kwargs.setdefault("collections", COLLECTIONS)
        kwargs.setdefault("sync_interval", 3600)
        kwargs.setdefault("probe_interval", 3600)
        kwargs.setdefault("probe_timeout", 1)
        engine = SyncEngine(
            local_store=local_store or InMemoryLocalStore(),
            state_store=state_store or InMemoryStateStore(),
            remote=remote,
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.close()


@pytest.fixture
async def engine(make_engine):
    engine = make_engine()
    await engine.start()
    yield engine
    await engine.close()
