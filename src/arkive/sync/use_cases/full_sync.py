"""Full Sync Use Case - Bootstrap and on-demand resynchronization.

Establishes consistency between the local data set and the remote tree
after login, reconnect, or on request.

Workflow:
1. Pull: for each collection, read the remote snapshot. A non-empty
   snapshot is authoritative: the local collection is replaced by it.
   Records with a pending local operation keep their local version.
2. Push: enqueue a create for every local record that has no pending
   operation. The driver downgrades creates of existing remote records
   to overwrites, so this is idempotent.
3. Drain the queue.
4. Record the sync time remotely (sync_metadata/<device>/lastSync) and
   locally (lastSyncTime).

Per-collection failures are collected and reported in the result rather
than raised. Local persistence failures are fatal and propagate.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from ...api.exceptions import ErrorCollector, StorageError
from ..connectivity import ConnectivityMonitor
from ..domain.collections import SYNC_METADATA_PATH
from ..domain.entities import FullSyncResult, OperationKind
from ..domain.ports import IEntityCodec, ILocalStore, IRemoteStore, IStateStore
from ..identity import DeviceIdentityProvider
from ..listener import ENGINE_FIELDS, snapshot_records
from ..queue import OperationQueue
from .transmit_queue import SyncDriver, record_last_sync_time

logger = logging.getLogger(__name__)


class FullSyncUseCase:
    """Orchestrates the bootstrap / full resynchronization.

    Never runs concurrently with itself: a call made while another is in
    progress returns a skipped result immediately.

    Example:
        use_case = FullSyncUseCase(
            remote=remote,
            local_store=local,
            codec=EntityCodec(),
            queue=queue,
            driver=driver,
            connectivity=monitor,
            identity=identity,
            state_store=state,
            collections=["clients", "receipts"],
        )
        result = await use_case.execute()
    """

    def __init__(
        self,
        remote: IRemoteStore,
        local_store: ILocalStore,
        codec: IEntityCodec,
        queue: OperationQueue,
        driver: SyncDriver,
        connectivity: ConnectivityMonitor,
        identity: DeviceIdentityProvider,
        state_store: IStateStore,
        collections: list[str] | tuple[str, ...],
    ):
        self.remote = remote
        self.local_store = local_store
        self.codec = codec
        self.queue = queue
        self.driver = driver
        self.connectivity = connectivity
        self.identity = identity
        self.state_store = state_store
        self.collections = list(collections)
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def execute(self) -> FullSyncResult:
        """Run the full sync.

        Returns:
            FullSyncResult; skipped=True when offline, already running, or
            the remote session could not be established

        Raises:
            StorageError: Local persistence failed
            IdentityError: No device identity is available
        """
        if self._lock.locked():
            logger.info("Full sync already running, skipping")
            return FullSyncResult(skipped=True, reason="already running")

        async with self._lock:
            if not self.connectivity.is_online:
                logger.info("Full sync skipped: remote store not reachable")
                return FullSyncResult(skipped=True, reason="offline")

            try:
                await self.remote.ensure_session()
            except Exception as e:
                logger.warning(f"Full sync skipped, no remote session: {e}")
                return FullSyncResult(skipped=True, reason=f"session unavailable: {e}")

            return await self._run()

    async def _run(self) -> FullSyncResult:
        started_at = datetime.now(UTC)
        device_id = await self.identity.get_device_id()
        result = FullSyncResult()
        errors = ErrorCollector()

        logger.info(f"Starting full sync of {len(self.collections)} collection(s)")

        # Step 1: Pull remote snapshots
        for collection in self.collections:
            try:
                pulled = await self._pull(collection)
            except StorageError:
                raise
            except Exception as e:
                logger.error(f"Failed to pull {collection}: {e}")
                errors.add(e, context={"collection": collection, "step": "pull"})
                continue
            if pulled:
                result.pulled[collection] = pulled

        # Step 2: Push local records
        for collection in self.collections:
            result.requeued += await self._requeue(collection)

        # Step 3: Drain
        result.pass_result = await self.driver.drain_now()

        # Step 4: Record sync time
        synced_at = datetime.now(UTC)
        stamp = synced_at.isoformat().replace("+00:00", "Z")
        try:
            await self.remote.write(f"{SYNC_METADATA_PATH}/{device_id}/lastSync", stamp)
        except Exception as e:
            logger.warning(f"Could not record sync metadata remotely: {e}")
            errors.add(e, context={"step": "metadata"})
        await record_last_sync_time(self.state_store, synced_at)

        result.synced_at = synced_at
        result.error_details = errors.messages()
        if errors.has_errors():
            transmitted = result.pass_result.transmitted if result.pass_result else 0
            result.error = errors.to_exception(succeeded=result.total_pulled + transmitted)

        duration = (synced_at - started_at).total_seconds()
        logger.info(
            f"Full sync completed in {duration:.2f}s: "
            f"{result.total_pulled} pulled, {result.requeued} requeued, "
            f"{errors.count()} error(s)"
        )
        return result

    async def _pull(self, collection: str) -> int:
        snapshot = await self.remote.read(collection)
        records = [
            {k: v for k, v in self.codec.decode(r, collection).items() if k not in ENGINE_FIELDS}
            for r in snapshot_records(snapshot)
        ]
        if not records:
            return 0

        await self.local_store.replace_all(collection, self._overlay_pending(collection, records))
        logger.info(f"Pulled {len(records)} {collection} record(s) from remote")
        return len(records)

    def _overlay_pending(
        self, collection: str, records: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        by_id = {str(r["id"]): r for r in records}
        for op in self.queue.drain():
            if op.collection != collection:
                continue
            if op.kind == OperationKind.DELETE:
                by_id.pop(op.record_id, None)
            else:
                by_id[op.record_id] = op.payload
        return list(by_id.values())

    async def _requeue(self, collection: str) -> int:
        count = 0
        for record in await self.local_store.get_all(collection):
            if record.get("id") in (None, ""):
                logger.warning(f"Skipping {collection} record without id during full sync")
                continue
            if self.queue.pending_for(collection, str(record["id"])):
                continue
            await self.queue.enqueue(OperationKind.CREATE, collection, record)
            count += 1
        return count
