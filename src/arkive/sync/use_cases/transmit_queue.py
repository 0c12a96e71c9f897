"""Transmit Queue Use Case - Drives pending operations to the remote store.

The SyncDriver is the only component that sends local mutations to the
remote store. It runs passes over the operation queue whenever the
device is verifiably online and there is work to do.

Workflow (one pass):
1. Ensure a remote session (a failure ends the pass, nothing is counted)
2. Snapshot the queue
3. For each operation, in order:
   - create: read the remote record; if it exists, send as an update
   - create/update: encode, stamp lastModified and syncedBy, write
   - delete: remove the remote record
4. Remove transmitted operations; count a failed attempt on the rest;
   drop operations that reach the attempt ceiling
5. Record lastSyncTime if anything was transmitted

Triggers:
- trigger() after every enqueue
- connectivity becoming ONLINE
- a periodic ticker while ONLINE and the queue is non-empty

Only one pass runs at a time. A trigger that arrives while a pass is in
flight is dropped; whatever it wanted sent is picked up by the next pass.
"""

import asyncio
import logging
from datetime import UTC, datetime

from ...api.exceptions import StorageError
from ..connectivity import ConnectivityMonitor
from ..domain.entities import ConnectivityState, Operation, OperationKind, PassResult
from ..domain.ports import IEntityCodec, IRemoteStore, IStateStore
from ..identity import DeviceIdentityProvider
from ..queue import OperationQueue

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "lastSyncTime"


async def read_last_sync_time(state_store: IStateStore) -> datetime | None:
    """Read the persisted last successful sync time, if any."""
    value = await state_store.get(LAST_SYNC_KEY)
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unreadable {LAST_SYNC_KEY}: {value!r}")
        return None


async def record_last_sync_time(state_store: IStateStore, when: datetime) -> None:
    await state_store.set(LAST_SYNC_KEY, when.isoformat().replace("+00:00", "Z"))


class SyncDriver:
    """Transmits queued operations while the device is online.

    Example:
        driver = SyncDriver(queue, remote, codec, identity, monitor, state)
        driver.start()
        driver.trigger()          # fire-and-forget
        result = await driver.drain_now()
        await driver.stop()
    """

    def __init__(
        self,
        queue: OperationQueue,
        remote: IRemoteStore,
        codec: IEntityCodec,
        identity: DeviceIdentityProvider,
        connectivity: ConnectivityMonitor,
        state_store: IStateStore,
        max_attempts: int = 3,
        sync_interval: float = 5.0,
    ):
        """Initialize the driver with its dependencies.

        Args:
            queue: Pending operations
            remote: Port for the shared remote tree
            codec: Port for wire encoding
            identity: Supplies the syncedBy stamp
            connectivity: Gates transmission on ONLINE
            state_store: Receives lastSyncTime
            max_attempts: Failed attempts after which an operation is dropped
            sync_interval: Seconds between ticker checks
        """
        self.queue = queue
        self.remote = remote
        self.codec = codec
        self.identity = identity
        self.connectivity = connectivity
        self.state_store = state_store
        self.max_attempts = max_attempts
        self.sync_interval = sync_interval

        self._in_flight = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._ticker: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self.last_result: PassResult | None = None

        connectivity.add_listener(self._on_connectivity)

    @property
    def in_progress(self) -> bool:
        return self._in_flight

    # ----------------------------------------
    # Passes
    # ----------------------------------------

    async def run_pass(self) -> PassResult | None:
        """Run one transmission pass.

        Returns:
            PassResult, or None if the pass did not start because another
            pass is in flight, the device is not ONLINE, or the queue is empty

        Raises:
            StorageError: The queue could not be persisted
            IdentityError: No device identity is available
        """
        if self._in_flight:
            logger.debug("Sync pass already in flight, trigger dropped")
            return None
        if not self.connectivity.is_online or len(self.queue) == 0:
            return None

        self._in_flight = True
        self._idle.clear()
        try:
            result = await self._transmit()
        finally:
            self._in_flight = False
            self._idle.set()

        self.last_result = result
        return result

    async def _transmit(self) -> PassResult:
        result = PassResult()

        try:
            await self.remote.ensure_session()
        except Exception as e:
            logger.warning(f"Could not establish remote session, pass skipped: {e}")
            result.interrupted = True
            result.error_details.append(f"session: {e}")
            result.completed_at = datetime.now(UTC)
            return result

        device_id = await self.identity.get_device_id()
        operations = self.queue.drain()
        logger.info(f"Sync pass starting with {len(operations)} operation(s)")

        remove_ids: list[str] = []
        attempts: dict[str, int] = {}

        for op in operations:
            if not self.connectivity.is_online:
                logger.info("Connectivity lost mid-pass, leaving remaining operations queued")
                result.interrupted = True
                break

            result.attempted += 1
            try:
                await self._transmit_one(op, device_id)
            except StorageError:
                raise
            except Exception as e:
                op.attempts += 1
                result.error_details.append(f"{op.kind.value} {op.path}: {e}")
                if op.attempts >= self.max_attempts:
                    logger.warning(
                        f"Dropping {op.kind.value} {op.path} after "
                        f"{op.attempts} failed attempt(s): {e}"
                    )
                    remove_ids.append(op.id)
                    result.dropped.append(op)
                else:
                    logger.warning(
                        f"Failed {op.kind.value} {op.path} "
                        f"(attempt {op.attempts}/{self.max_attempts}): {e}"
                    )
                    attempts[op.id] = op.attempts
                    result.failed += 1
                continue

            remove_ids.append(op.id)
            result.transmitted += 1

        await self.queue.settle(remove_ids, attempts)

        result.completed_at = datetime.now(UTC)
        if result.transmitted:
            await record_last_sync_time(self.state_store, result.completed_at)

        logger.info(
            f"Sync pass completed in {result.duration_seconds:.2f}s: "
            f"{result.transmitted} sent, {result.failed} failed, "
            f"{len(result.dropped)} dropped"
        )
        return result

    async def _transmit_one(self, op: Operation, device_id: str) -> None:
        if op.kind == OperationKind.DELETE:
            await self.remote.delete(op.path)
            return

        if op.kind == OperationKind.CREATE:
            existing = await self.remote.read(op.path)
            if existing is not None:
                logger.debug(f"{op.path} already exists remotely, sending create as update")

        record = dict(op.payload)
        record["lastModified"] = datetime.now(UTC)
        record["syncedBy"] = device_id
        await self.remote.write(op.path, self.codec.encode(record, op.collection))

    # ----------------------------------------
    # Triggers
    # ----------------------------------------

    def trigger(self) -> asyncio.Task | None:
        """Request a pass without waiting for it.

        Returns:
            The background task, or None if nothing was scheduled
        """
        if self._in_flight or not self.connectivity.is_online or len(self.queue) == 0:
            return None
        task = asyncio.create_task(self.run_pass())
        self._background.add(task)
        task.add_done_callback(self._pass_done)
        return task

    async def drain_now(self) -> PassResult | None:
        """Wait for any in-flight pass, then run one."""
        while self._in_flight:
            await self._idle.wait()
        return await self.run_pass()

    def _on_connectivity(self, old: ConnectivityState, new: ConnectivityState) -> None:
        if new == ConnectivityState.ONLINE:
            self.trigger()

    def _pass_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception():
            logger.error(f"Background sync pass failed: {task.exception()}")

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    def start(self) -> None:
        """Start the periodic ticker."""
        if self._ticker and not self._ticker.done():
            return
        self._ticker = asyncio.create_task(self._tick())

    async def stop(self) -> None:
        """Stop the ticker and cancel any background pass."""
        tasks = [t for t in (self._ticker, *self._background) if t and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Sync task ended with error during shutdown: {e}")
        self._ticker = None
        self._background.clear()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            if not self.connectivity.is_online or len(self.queue) == 0:
                continue
            try:
                await self.run_pass()
            except Exception as e:
                logger.error(f"Sync pass failed: {e}")
