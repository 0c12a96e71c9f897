"""Sync engine - the process-scoped context that owns every component.

The engine wires the identity provider, queue, connectivity monitor,
driver, listener and full-sync use case around three ports and gives
them one lifecycle:

    async with SyncEngine(local, state, remote) as engine:
        await engine.enqueue("create", "clients", {"id": "c1", "name": "Ali"})
        await engine.subscribe("clients", on_clients)
        status = await engine.get_status()

engine_from_config() builds the production adapters (PostgreSQL,
Firebase) from a SyncConfig and tears them down afterwards.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from ..api.auth import SessionManager
from ..api.client import RealtimeDatabaseClient
from ..api.database import close_pool, create_pool
from ..api.exceptions import ErrorCollector
from ..config import SyncConfig
from .adapters.entity_codec import EntityCodec
from .adapters.firebase_remote_store import FirebaseRemoteStore
from .adapters.memory import InMemoryLocalStore, InMemoryStateStore
from .adapters.postgres_local_store import PostgresLocalStore
from .adapters.postgres_state_store import PostgresStateStore
from .connectivity import ConnectivityMonitor
from .domain.collections import DEFAULT_COLLECTIONS, SYNC_METADATA_PATH
from .domain.entities import FullSyncResult, Operation, OperationKind, SyncStatus
from .domain.ports import IEntityCodec, ILocalStore, IRemoteStore, IStateStore
from .identity import DeviceIdentityProvider
from .listener import RecordsCallback, RemoteChangeListener
from .queue import OperationQueue
from .use_cases.full_sync import FullSyncUseCase
from .use_cases.transmit_queue import LAST_SYNC_KEY, SyncDriver, read_last_sync_time

logger = logging.getLogger(__name__)


class SyncEngine:
    """Offline-first sync engine for one device.

    Attributes:
        collections: Collections covered by full sync and wipe
        identity: DeviceIdentityProvider
        queue: OperationQueue
        connectivity: ConnectivityMonitor
        driver: SyncDriver
        listener: RemoteChangeListener
    """

    def __init__(
        self,
        local_store: ILocalStore,
        state_store: IStateStore,
        remote: IRemoteStore,
        collections: list[str] | tuple[str, ...] = DEFAULT_COLLECTIONS,
        codec: IEntityCodec | None = None,
        sync_interval: float = 5.0,
        probe_interval: float = 30.0,
        probe_timeout: float = 10.0,
        max_attempts: int = 3,
    ):
        self.local_store = local_store
        self.state_store = state_store
        self.remote = remote
        self.collections = list(collections)
        self.codec = codec or EntityCodec()

        self.identity = DeviceIdentityProvider(state_store)
        self.queue = OperationQueue(state_store, self.identity, self.codec)
        self.connectivity = ConnectivityMonitor(
            remote,
            probe_interval=probe_interval,
            probe_timeout=probe_timeout,
        )
        self.driver = SyncDriver(
            queue=self.queue,
            remote=remote,
            codec=self.codec,
            identity=self.identity,
            connectivity=self.connectivity,
            state_store=state_store,
            max_attempts=max_attempts,
            sync_interval=sync_interval,
        )
        self.listener = RemoteChangeListener(
            remote=remote,
            codec=self.codec,
            identity=self.identity,
            local_store=local_store,
            queue=self.queue,
        )
        self._full_sync = FullSyncUseCase(
            remote=remote,
            local_store=local_store,
            codec=self.codec,
            queue=self.queue,
            driver=self.driver,
            connectivity=self.connectivity,
            identity=self.identity,
            state_store=state_store,
            collections=self.collections,
        )
        # asyncpg pool backing the stores, when engine_from_config created one
        self.pool = None
        self._started = False

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    async def start(self) -> None:
        """Load persisted state and start background tasks.

        Raises:
            StorageError / IdentityError: Local state is unavailable
        """
        if self._started:
            return
        await self.queue.load()
        device_id = await self.identity.get_device_id()
        self.connectivity.start()
        self.driver.start()
        self._started = True
        logger.info(f"Sync engine started (device={device_id}, queued={len(self.queue)})")

    async def close(self) -> None:
        """Tear down subscriptions and background tasks. Idempotent."""
        await self.listener.unsubscribe()
        await self.driver.stop()
        await self.connectivity.stop()
        if self._started:
            logger.info(f"Sync engine stopped ({len(self.queue)} operation(s) still queued)")
        self._started = False

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ----------------------------------------
    # Business Layer API
    # ----------------------------------------

    async def enqueue(
        self,
        kind: OperationKind | str,
        collection: str,
        payload: dict[str, Any],
    ) -> Operation:
        """Queue a local mutation and request transmission in the background.

        Returns as soon as the operation is persisted; never waits on or
        fails because of the network.

        Raises:
            ValidationError: The operation is malformed
            StorageError: The queue could not be persisted
        """
        op = await self.queue.enqueue(kind, collection, payload)
        self.driver.trigger()
        return op

    async def subscribe(self, collection: str, callback: RecordsCallback) -> None:
        """Deliver remote changes from other devices for a collection."""
        await self.listener.subscribe(collection, callback)

    async def unsubscribe(self, collection: str | None = None) -> None:
        await self.listener.unsubscribe(collection)

    async def full_sync(self) -> FullSyncResult:
        """Pull remote snapshots, push local records, drain the queue."""
        return await self._full_sync.execute()

    async def get_status(self) -> SyncStatus:
        return SyncStatus(
            online=self.connectivity.is_online,
            connectivity=self.connectivity.state,
            queue_length=len(self.queue),
            last_sync_time=await read_last_sync_time(self.state_store),
            device_id=self.identity.cached or await self.identity.get_device_id(),
            sync_in_progress=self.driver.in_progress or self._full_sync.running,
        )

    async def wipe_all(self, include_local: bool = True) -> list[str]:
        """Erase synchronized data everywhere this engine can reach.

        Clears the queue, removes every collection and the sync metadata
        from the remote store, optionally clears the local collections,
        and forgets lastSyncTime and the device identity. A new identity
        is generated on next use.

        Returns:
            Messages for remote deletions that failed (logged, not raised)
        """
        logger.warning(f"Wiping all data (include_local={include_local})")
        await self.listener.unsubscribe()
        await self.queue.clear()

        errors = ErrorCollector()
        try:
            await self.remote.ensure_session()
        except Exception as e:
            logger.warning(f"No remote session for wipe: {e}")
            errors.add(e, context={"step": "session"})
        else:
            for path in [*self.collections, SYNC_METADATA_PATH]:
                try:
                    await self.remote.delete(path)
                except Exception as e:
                    logger.warning(f"Failed to delete remote {path}: {e}")
                    errors.add(e, context={"path": path})

        if include_local:
            for collection in self.collections:
                await self.local_store.clear(collection)

        await self.state_store.remove(LAST_SYNC_KEY)
        await self.identity.reset()
        logger.warning(f"Wipe complete with {errors.count()} remote error(s)")
        return errors.messages()

    def notify_online(self) -> None:
        self.connectivity.notify_online()

    def notify_offline(self) -> None:
        self.connectivity.notify_offline()


@asynccontextmanager
async def engine_from_config(config: SyncConfig) -> AsyncIterator[SyncEngine]:
    """Build, start and finally close an engine on the production adapters.

    Local state lives in PostgreSQL when DATABASE_URL is set and in
    memory otherwise.

    Raises:
        ConfigurationError: Required settings are missing
    """
    config.validate()

    sessions = SessionManager(config.firebase_api_key, timeout_seconds=config.request_timeout) \
        if config.firebase_api_key else None
    client = RealtimeDatabaseClient(
        config.firebase_database_url,
        session_manager=sessions,
        timeout_seconds=config.request_timeout,
    )

    pool = None
    codec = EntityCodec()
    try:
        if config.database_url:
            pool = await create_pool(config.database_url)
            local_store = PostgresLocalStore(pool, codec)
            state_store = PostgresStateStore(pool)
            await local_store.ensure_schema()
            await state_store.ensure_schema()
        else:
            logger.warning("DATABASE_URL not set, local state will not survive restarts")
            local_store = InMemoryLocalStore()
            state_store = InMemoryStateStore()

        await client.open()
        engine = SyncEngine(
            local_store=local_store,
            state_store=state_store,
            remote=FirebaseRemoteStore(client),
            collections=config.collections,
            codec=codec,
            sync_interval=config.sync_interval,
            probe_interval=config.probe_interval,
            probe_timeout=config.probe_timeout,
            max_attempts=config.max_attempts,
        )
        engine.pool = pool
        async with engine:
            yield engine
    finally:
        await client.close()
        await close_pool(pool)
