"""Port interfaces for sync operations.

Ports define the contracts between the engine and its infrastructure.
These are abstract base classes that adapters must implement.

Following the Hexagonal Architecture (Ports and Adapters) pattern:
- Ports are interfaces defined in the domain layer
- Adapters implement these ports in the adapters layer
- The engine, driver, listener and use cases depend only on ports
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

# Receives the full current value at a subscribed path (None when empty)
ChangeHandler = Callable[[Any], Awaitable[None] | None]


class ILocalStore(ABC):
    """Port for the device's local data set.

    Records are plain dicts keyed by their ``id`` field within a
    collection. Failures must be raised as StorageError.
    """

    @abstractmethod
    async def get_all(self, collection: str) -> list[dict[str, Any]]:
        """Return every record stored in a collection.

        Args:
            collection: Collection name

        Returns:
            List of records (empty when the collection is empty)
        """
        ...

    @abstractmethod
    async def clear(self, collection: str) -> None:
        """Remove every record from a collection."""
        ...

    @abstractmethod
    async def put(self, collection: str, record: dict[str, Any]) -> None:
        """Insert or replace a record, keyed by record["id"]."""
        ...

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> None:
        """Remove a record if present."""
        ...

    async def replace_all(self, collection: str, records: list[dict[str, Any]]) -> None:
        """Clear a collection and store records in its place.

        Adapters with transactions should override this so readers never
        observe the empty intermediate state.
        """
        await self.clear(collection)
        for record in records:
            await self.put(collection, record)


class IStateStore(ABC):
    """Port for the engine's small key/value state.

    Holds the queue, the device identity and the last sync time. Values
    are JSON-compatible. Failures must be raised as StorageError.
    """

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the value stored under key, or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove key if present."""
        ...


class ISubscription(ABC):
    """Handle for a live remote subscription."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering changes. Idempotent."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class IRemoteStore(ABC):
    """Port for the shared remote tree.

    Paths are slash-separated, e.g. "clients/c1". Transport failures are
    raised as NetworkError or APIError subclasses; the sync driver turns
    them into retry decisions.
    """

    @abstractmethod
    async def read(self, path: str) -> Any:
        """Return the value at path, or None when nothing is stored there."""
        ...

    @abstractmethod
    async def write(self, path: str, value: Any) -> None:
        """Overwrite the value at path."""
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove the value at path. Succeeds when nothing is there."""
        ...

    @abstractmethod
    async def subscribe(self, path: str, on_change: ChangeHandler) -> ISubscription:
        """Start delivering the full value at path on every change.

        The current value is delivered first, then each subsequent
        change. Delivery continues until the returned handle is closed.

        Args:
            path: Location to watch (a collection name)
            on_change: Called with the full value at path

        Returns:
            Subscription handle
        """
        ...

    @abstractmethod
    async def probe_connected(self) -> bool:
        """Ask the remote store whether it is reachable right now.

        Returns:
            True if a round trip succeeded. Raise or return False otherwise.
        """
        ...

    @abstractmethod
    async def ensure_session(self) -> None:
        """Establish (or refresh) the session used for remote calls."""
        ...


class IEntityCodec(ABC):
    """Port for converting records between local and wire form."""

    @abstractmethod
    def encode(self, record: dict[str, Any], collection: str | None = None) -> dict[str, Any]:
        """Local record -> wire-safe dict. Must not mutate record."""
        ...

    @abstractmethod
    def decode(self, wire: dict[str, Any], collection: str | None = None) -> dict[str, Any]:
        """Wire dict -> local record with timestamps restored."""
        ...
