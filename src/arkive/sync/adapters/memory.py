"""In-memory adapters for development and tests.

InMemoryRemoteStore models the shared database as a nested dict with the
database's own rules (writing None deletes, empty branches vanish) and
delivers snapshots to subscribers synchronously on every write. Several
engines sharing one instance behave like several devices on one backend.

Every store can be told to fail, so offline and degraded paths can be
exercised without a network.
"""

import copy
import inspect
import json
from typing import Any

from ...api.exceptions import ConnectionError, StorageError
from ..domain.ports import ChangeHandler, ILocalStore, IRemoteStore, IStateStore, ISubscription


def _segments(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def _prune(value: Any) -> Any:
    # The database stores no nulls and no empty objects
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if v is not None and v != {}}
    if isinstance(value, list):
        return [_prune(v) for v in value]
    return value


class InMemoryLocalStore(ILocalStore):
    """Dict-backed ILocalStore. Set ``unavailable`` to simulate a dead disk."""

    def __init__(self, initial: dict[str, list[dict[str, Any]]] | None = None):
        self.collections: dict[str, dict[str, dict[str, Any]]] = {}
        self.unavailable = False
        for collection, records in (initial or {}).items():
            self.collections[collection] = {str(r["id"]): copy.deepcopy(r) for r in records}

    def _check(self) -> None:
        if self.unavailable:
            raise StorageError("Local store unavailable")

    async def get_all(self, collection: str) -> list[dict[str, Any]]:
        self._check()
        return [copy.deepcopy(r) for r in self.collections.get(collection, {}).values()]

    async def clear(self, collection: str) -> None:
        self._check()
        self.collections.pop(collection, None)

    async def put(self, collection: str, record: dict[str, Any]) -> None:
        self._check()
        self.collections.setdefault(collection, {})[str(record["id"])] = copy.deepcopy(record)

    async def delete(self, collection: str, record_id: str) -> None:
        self._check()
        self.collections.get(collection, {}).pop(str(record_id), None)

    def snapshot(self, collection: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self.collections.get(collection, {}))


class InMemoryStateStore(IStateStore):
    """Dict-backed IStateStore.

    Values go through a JSON round trip, as they would in a real store,
    so anything that is not JSON-serializable fails loudly here too.
    """

    def __init__(self):
        self.values: dict[str, str] = {}
        self.unavailable = False

    def _check(self) -> None:
        if self.unavailable:
            raise StorageError("State store unavailable")

    async def get(self, key: str) -> Any:
        self._check()
        raw = self.values.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._check()
        self.values[key] = json.dumps(value)

    async def remove(self, key: str) -> None:
        self._check()
        self.values.pop(key, None)


class InMemorySubscription(ISubscription):
    def __init__(self, store: "InMemoryRemoteStore", path: str, handler: ChangeHandler):
        self.store = store
        self.path = path
        self.handler = handler
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.store._subscriptions.remove(self)


class InMemoryRemoteStore(IRemoteStore):
    """Nested-dict IRemoteStore shared by any number of engines.

    Attributes:
        reachable: When False every call raises ConnectionError and probes fail
        session_error: If set, ensure_session raises it
        calls: Log of (method, path) for every data call
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self.tree: dict[str, Any] = copy.deepcopy(initial or {})
        self.reachable = True
        self.session_error: Exception | None = None
        self.session_count = 0
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list[Exception]] = {}
        self._subscriptions: list[InMemorySubscription] = []

    # ----------------------------------------
    # Failure Injection
    # ----------------------------------------

    def fail_next(
        self,
        method: str,
        path: str,
        times: int = 1,
        error: Exception | None = None,
    ) -> None:
        """Make the next ``times`` calls of method on path raise error."""
        err = error or ConnectionError(f"Injected failure for {method} {path}")
        self._failures.setdefault((method, path.strip("/")), []).extend([err] * times)

    def _before(self, method: str, path: str) -> None:
        self.calls.append((method, path.strip("/")))
        if not self.reachable:
            raise ConnectionError("Remote store unreachable", host="memory")
        pending = self._failures.get((method, path.strip("/")))
        if pending:
            raise pending.pop(0)

    # ----------------------------------------
    # IRemoteStore
    # ----------------------------------------

    async def read(self, path: str) -> Any:
        self._before("read", path)
        return copy.deepcopy(self.value_at(path))

    async def write(self, path: str, value: Any) -> None:
        self._before("write", path)
        self._set(_segments(path), _prune(copy.deepcopy(value)))
        await self._notify(path)

    async def delete(self, path: str) -> None:
        self._before("delete", path)
        self._set(_segments(path), None)
        await self._notify(path)

    async def subscribe(self, path: str, on_change: ChangeHandler) -> ISubscription:
        self._before("subscribe", path)
        subscription = InMemorySubscription(self, path.strip("/"), on_change)
        self._subscriptions.append(subscription)
        await self._deliver(subscription)
        return subscription

    async def probe_connected(self) -> bool:
        return self.reachable

    async def ensure_session(self) -> None:
        self.session_count += 1
        if self.session_error is not None:
            raise self.session_error
        if not self.reachable:
            raise ConnectionError("Remote store unreachable", host="memory")

    # ----------------------------------------
    # Tree Helpers
    # ----------------------------------------

    def value_at(self, path: str) -> Any:
        node: Any = self.tree
        for part in _segments(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _set(self, parts: list[str], value: Any) -> None:
        if not parts:
            self.tree = value if isinstance(value, dict) else {}
            return

        node = self.tree
        trail = []
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[part] = child
            trail.append((node, part))
            node = child

        if value is None or value == {}:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = value

        # Empty branches do not exist in the database
        for parent, key in reversed(trail):
            if parent[key] == {}:
                del parent[key]

    async def _notify(self, path: str) -> None:
        changed = _segments(path)
        for subscription in list(self._subscriptions):
            watched = _segments(subscription.path)
            depth = min(len(changed), len(watched))
            if changed[:depth] == watched[:depth]:
                await self._deliver(subscription)

    async def _deliver(self, subscription: InMemorySubscription) -> None:
        if subscription.closed:
            return
        result = subscription.handler(copy.deepcopy(self.value_at(subscription.path)))
        if inspect.isawaitable(result):
            await result
