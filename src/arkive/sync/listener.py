"""Remote change listener.

Subscribes to remote collections and turns every change notification into
local state:

1. Decode each record in the collection snapshot
2. Discard echoes (records whose syncedBy is this device)
3. Mirror the rest into local storage, except records that still have a
   pending local operation: local intent stands until it is transmitted
4. Delete local copies of records that vanished from the snapshot
5. Hand the non-echo records to the caller's callback

Callback and mirroring errors are logged and never break the stream.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .domain.ports import IEntityCodec, ILocalStore, IRemoteStore, ISubscription
from .identity import DeviceIdentityProvider
from .queue import OperationQueue

logger = logging.getLogger(__name__)

RecordsCallback = Callable[[list[dict[str, Any]]], Awaitable[None] | None]

ENGINE_FIELDS = ("syncedBy",)


def snapshot_records(value: Any) -> list[dict[str, Any]]:
    """Flatten a collection snapshot into a list of records.

    The database returns a collection either as a mapping of id to record
    or, when the ids are small integers, as a list with gaps set to null.
    Records missing an ``id`` field take it from their key.
    """
    if value is None:
        return []

    if isinstance(value, list):
        items = [(str(i), v) for i, v in enumerate(value)]
    elif isinstance(value, dict):
        items = [(str(k), v) for k, v in value.items()]
    else:
        return []

    records = []
    for key, record in items:
        if not isinstance(record, dict):
            continue
        if "id" not in record:
            record = {**record, "id": key}
        records.append(record)
    return records


class RemoteChangeListener:
    """Manages live subscriptions, one per collection.

    Example:
        listener = RemoteChangeListener(remote, codec, identity, local, queue)
        await listener.subscribe("clients", on_clients)
        ...
        await listener.unsubscribe()  # all collections
    """

    def __init__(
        self,
        remote: IRemoteStore,
        codec: IEntityCodec,
        identity: DeviceIdentityProvider,
        local_store: ILocalStore,
        queue: OperationQueue,
        mirror_to_local: bool = True,
    ):
        self.remote = remote
        self.codec = codec
        self.identity = identity
        self.local_store = local_store
        self.queue = queue
        self.mirror_to_local = mirror_to_local

        self._subscriptions: dict[str, ISubscription] = {}
        self._known: dict[str, dict[str, dict[str, Any]]] = {}

    @property
    def collections(self) -> list[str]:
        """Collections with an active subscription."""
        return list(self._subscriptions)

    async def subscribe(self, collection: str, callback: RecordsCallback) -> None:
        """Start delivering remote changes for a collection.

        An existing subscription for the same collection is torn down first.

        Raises:
            IdentityError: No device identity is available
        """
        await self.unsubscribe(collection)
        device_id = await self.identity.get_device_id()

        async def on_change(value: Any) -> None:
            await self._handle_change(collection, device_id, value, callback)

        self._subscriptions[collection] = await self.remote.subscribe(collection, on_change)
        logger.info(f"Subscribed to remote changes for {collection}")

    async def unsubscribe(self, collection: str | None = None) -> None:
        """Tear down one subscription, or all of them when collection is None."""
        targets = [collection] if collection is not None else list(self._subscriptions)
        for name in targets:
            subscription = self._subscriptions.pop(name, None)
            self._known.pop(name, None)
            if subscription is None:
                continue
            try:
                await subscription.close()
            except Exception as e:
                logger.warning(f"Error closing subscription for {name}: {e}")
            logger.info(f"Unsubscribed from {name}")

    async def _handle_change(
        self,
        collection: str,
        device_id: str,
        value: Any,
        callback: RecordsCallback,
    ) -> None:
        decoded = [self.codec.decode(r, collection) for r in snapshot_records(value)]
        current = {str(r["id"]): r for r in decoded}
        remote_changes = [r for r in decoded if r.get("syncedBy") != device_id]

        echoes = len(decoded) - len(remote_changes)
        if echoes:
            logger.debug(f"Ignored {echoes} echo(es) of own writes in {collection}")

        if self.mirror_to_local:
            previous = self._known.get(collection, {})
            changed = [r for r in remote_changes if previous.get(str(r["id"])) != r]
            removed_ids = set(previous) - set(current)
            try:
                await self._mirror(collection, changed, removed_ids)
            except Exception as e:
                logger.error(f"Failed to mirror {collection} changes locally: {e}")
            else:
                self._known[collection] = current

        try:
            result = callback(remote_changes)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Change callback for {collection} failed: {e}")

    async def _mirror(
        self,
        collection: str,
        records: list[dict[str, Any]],
        removed_ids: set[str],
    ) -> None:
        for record in records:
            record_id = str(record["id"])
            if self.queue.pending_for(collection, record_id):
                logger.debug(f"Keeping local {collection}/{record_id}, local change pending")
                continue
            local = {k: v for k, v in record.items() if k not in ENGINE_FIELDS}
            await self.local_store.put(collection, local)

        for record_id in removed_ids:
            if self.queue.pending_for(collection, record_id):
                continue
            await self.local_store.delete(collection, record_id)
