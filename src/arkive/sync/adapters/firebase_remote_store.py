"""Firebase Realtime Database adapter for the shared remote tree.

This adapter implements IRemoteStore on top of RealtimeDatabaseClient.
Reads, writes and deletes map one-to-one onto REST calls. Subscriptions
run a background task per path that consumes the server-sent event
stream, keeps a local copy of the subscribed value up to date, and hands
the full value to the handler after every change. Dropped streams are
reopened with exponential backoff.
"""

import asyncio
import copy
import inspect
import logging
from typing import TYPE_CHECKING, Any

from ...api.client import StreamEvent
from ..domain.collections import SYNC_METADATA_PATH
from ..domain.ports import ChangeHandler, IRemoteStore, ISubscription

if TYPE_CHECKING:
    from ...api.client import RealtimeDatabaseClient

logger = logging.getLogger(__name__)


def _segments(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def _assign(node: Any, parts: list[str], value: Any) -> Any:
    """Return node with value placed at parts; None removes, empty dicts vanish."""
    if not parts:
        return copy.deepcopy(value)

    tree = dict(node) if isinstance(node, dict) else {}
    head, rest = parts[0], parts[1:]
    child = _assign(tree.get(head), rest, value)
    if child is None or child == {}:
        tree.pop(head, None)
    else:
        tree[head] = child
    return tree or None


def apply_stream_event(snapshot: Any, event: StreamEvent) -> Any:
    """Apply a put or patch event to the locally held value."""
    parts = _segments(event.path)
    if event.event == "put":
        return _assign(snapshot, parts, event.data)
    if event.event == "patch" and isinstance(event.data, dict):
        for key, child in event.data.items():
            snapshot = _assign(snapshot, parts + _segments(key), child)
    return snapshot


class FirebaseSubscription(ISubscription):
    """Handle for one streaming subscription task."""

    def __init__(self, path: str):
        self.path = path
        self.task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass


class FirebaseRemoteStore(IRemoteStore):
    """Firebase Realtime Database implementation of IRemoteStore.

    Wraps RealtimeDatabaseClient; the client must already be open.
    """

    def __init__(
        self,
        client: "RealtimeDatabaseClient",
        probe_path: str = SYNC_METADATA_PATH,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        """Initialize the adapter.

        Args:
            client: Open RealtimeDatabaseClient
            probe_path: Location read (shallow) by probe_connected
            reconnect_delay: First delay before reopening a dropped stream
            max_reconnect_delay: Upper bound for the reopen delay
        """
        self.client = client
        self.probe_path = probe_path
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay

    async def read(self, path: str) -> Any:
        return await self.client.get(path)

    async def write(self, path: str, value: Any) -> None:
        await self.client.put(path, value)

    async def delete(self, path: str) -> None:
        await self.client.delete(path)

    async def probe_connected(self) -> bool:
        """A shallow read of a small location proves a full round trip."""
        await self.client.get(self.probe_path, shallow=True)
        return True

    async def ensure_session(self) -> None:
        await self.client.ensure_session()

    async def subscribe(self, path: str, on_change: ChangeHandler) -> ISubscription:
        subscription = FirebaseSubscription(path)
        subscription.task = asyncio.create_task(self._run_stream(subscription, on_change))
        return subscription

    async def _run_stream(self, subscription: FirebaseSubscription, on_change: ChangeHandler) -> None:
        delay = self.reconnect_delay
        while not subscription.closed:
            snapshot: Any = None
            try:
                async for event in self.client.stream(subscription.path):
                    snapshot = apply_stream_event(snapshot, event)
                    delay = self.reconnect_delay
                    await self._deliver(on_change, snapshot, subscription.path)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    f"Stream for {subscription.path} failed: {e}. "
                    f"Reconnecting in {delay:.1f}s"
                )
            else:
                logger.info(f"Stream for {subscription.path} ended, reconnecting")

            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    @staticmethod
    async def _deliver(on_change: ChangeHandler, snapshot: Any, path: str) -> None:
        try:
            result = on_change(copy.deepcopy(snapshot))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Change handler for {path} failed: {e}")
