"""Durable queue of pending local operations.

The queue is the engine's write-ahead log: every local mutation lands here
first and leaves only when the remote store has accepted it or it has
failed too many times. It is persisted to the state store after every
change so pending work survives restarts.

De-duplication:
    At most one operation per (collection, record id) is queued. A later
    enqueue for the same record replaces the earlier one in its original
    position with a fresh id and a zero attempt count. Because a pass
    settles operations by id, a replacement made while a pass is in
    flight is never removed by that pass.
"""

import asyncio
import copy
import logging
from datetime import UTC, datetime
from typing import Any, Iterable

from ..api.exceptions import StorageError, ValidationError
from .domain.entities import Operation, OperationKind
from .domain.ports import IEntityCodec, IStateStore
from .identity import DeviceIdentityProvider

logger = logging.getLogger(__name__)

QUEUE_KEY = "arkive-sync-queue"


class OperationQueue:
    """Ordered, persisted, de-duplicated operation queue."""

    def __init__(
        self,
        state_store: IStateStore,
        identity: DeviceIdentityProvider,
        codec: IEntityCodec,
    ):
        self.state_store = state_store
        self.identity = identity
        self.codec = codec
        self._ops: list[Operation] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._ops)

    async def load(self) -> int:
        """Restore the persisted queue, replacing in-memory contents.

        Entries that cannot be parsed are discarded with a warning.

        Returns:
            Number of operations restored

        Raises:
            StorageError: The state store could not be read
        """
        async with self._lock:
            try:
                stored = await self.state_store.get(QUEUE_KEY)
            except StorageError:
                raise
            except Exception as e:
                raise StorageError(f"Failed to read sync queue: {e}", cause=e) from e

            ops: list[Operation] = []
            for entry in stored or []:
                try:
                    op = Operation.from_dict(entry)
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Discarding unreadable queue entry: {e}")
                    continue
                op.payload = self.codec.decode(op.payload, op.collection)
                ops.append(op)

            self._ops = self._collapse(ops)
            if ops:
                logger.info(f"Restored {len(self._ops)} pending operation(s)")
            return len(self._ops)

    async def enqueue(
        self,
        kind: OperationKind | str,
        collection: str,
        payload: dict[str, Any],
    ) -> Operation:
        """Record a local mutation for transmission.

        Args:
            kind: create, update or delete
            collection: Target collection
            payload: Full record; for delete at least {"id": ...}

        Returns:
            The queued operation

        Raises:
            ValidationError: Unknown kind, empty collection or payload without id
            StorageError: The queue could not be persisted
            IdentityError: No device identity is available
        """
        op_kind = self._validate(kind, collection, payload)
        device_id = await self.identity.get_device_id()

        op = Operation(
            kind=op_kind,
            collection=collection,
            payload=copy.deepcopy(payload),
            origin_device=device_id,
            enqueued_at=datetime.now(UTC),
        )

        async with self._lock:
            ops = list(self._ops)
            for index, existing in enumerate(ops):
                if existing.key == op.key:
                    logger.debug(
                        f"Replacing queued {existing.kind.value} for {existing.path} "
                        f"with {op.kind.value}"
                    )
                    ops[index] = op
                    break
            else:
                ops.append(op)

            await self._persist(ops)
            self._ops = ops

        return op

    def drain(self) -> list[Operation]:
        """Copies of the queued operations, in order."""
        return [op.copy() for op in self._ops]

    def pending_for(self, collection: str, record_id: str) -> Operation | None:
        """The queued operation for a record, if any."""
        key = (collection, str(record_id))
        for op in self._ops:
            if op.key == key:
                return op.copy()
        return None

    async def remove(self, ids: Iterable[str]) -> None:
        """Remove operations by id; unknown ids are ignored."""
        await self.settle(remove_ids=ids, attempts={})

    async def settle(
        self,
        remove_ids: Iterable[str],
        attempts: dict[str, int],
    ) -> None:
        """Apply the outcome of a pass in one persisted step.

        Args:
            remove_ids: Operations that were transmitted or dropped
            attempts: New attempt counts for operations that stay queued
        """
        remove = set(remove_ids)
        if not remove and not attempts:
            return

        async with self._lock:
            ops = []
            for op in self._ops:
                if op.id in remove:
                    continue
                if op.id in attempts:
                    op = op.copy()
                    op.attempts = attempts[op.id]
                ops.append(op)

            await self._persist(ops)
            self._ops = ops

    async def clear(self) -> None:
        """Drop every queued operation."""
        async with self._lock:
            await self._persist([])
            self._ops = []

    async def _persist(self, ops: list[Operation]) -> None:
        entries = []
        for op in ops:
            entry = op.to_dict()
            entry["data"] = self.codec.encode(op.payload, op.collection)
            entries.append(entry)
        try:
            await self.state_store.set(QUEUE_KEY, entries)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to persist sync queue: {e}", cause=e) from e

    @staticmethod
    def _collapse(ops: list[Operation]) -> list[Operation]:
        # Later entries win, keeping the earliest position
        positions: dict[tuple[str, str], int] = {}
        result: list[Operation] = []
        for op in ops:
            if op.key in positions:
                result[positions[op.key]] = op
            else:
                positions[op.key] = len(result)
                result.append(op)
        return result

    @staticmethod
    def _validate(
        kind: OperationKind | str,
        collection: str,
        payload: dict[str, Any],
    ) -> OperationKind:
        try:
            op_kind = OperationKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown operation kind: {kind!r}", field="kind")

        if not isinstance(collection, str) or not collection.strip("/"):
            raise ValidationError("Collection name is required", field="collection")
        if "/" in collection:
            raise ValidationError(
                f"Collection name may not contain '/': {collection!r}",
                field="collection",
            )
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a mapping", field="payload")

        record_id = payload.get("id")
        if record_id is None or str(record_id) == "":
            raise ValidationError("Payload must carry a non-empty 'id'", field="id")
        return op_kind
