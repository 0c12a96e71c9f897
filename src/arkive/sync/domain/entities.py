"""Domain entities for sync operations.

These are pure data structures with no infrastructure dependencies.
They represent the queued operations, connectivity state and outcomes
the engine reasons about.
"""

import copy
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


class OperationKind(str, Enum):
    """What a queued operation does to its record."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConnectivityState(str, Enum):
    """Connectivity as seen by the engine.

    ONLINE_UNVERIFIED means the platform reports a network but the remote
    store has not yet answered a probe. Only ONLINE permits transmission.
    """

    OFFLINE = "offline"
    ONLINE_UNVERIFIED = "online_unverified"
    ONLINE = "online"


@dataclass
class Operation:
    """A pending local mutation awaiting transmission.

    Identity for de-duplication is (collection, record_id), not id:
    the queue holds at most one operation per record.
    """

    kind: OperationKind
    collection: str
    payload: dict[str, Any]
    origin_device: str
    id: str = field(default_factory=lambda: uuid4().hex)
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0

    @property
    def record_id(self) -> str:
        return str(self.payload["id"])

    @property
    def key(self) -> tuple[str, str]:
        return (self.collection, self.record_id)

    @property
    def path(self) -> str:
        """Remote location of the record this operation targets."""
        return f"{self.collection}/{self.record_id}"

    def copy(self) -> "Operation":
        return replace(self, payload=copy.deepcopy(self.payload))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the state store (payload must already be wire-safe)."""
        return {
            "id": self.id,
            "type": self.kind.value,
            "collection": self.collection,
            "data": self.payload,
            "timestamp": self.enqueued_at.isoformat().replace("+00:00", "Z"),
            "deviceId": self.origin_device,
            "retryCount": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Operation":
        """Rebuild an operation from its persisted form.

        Raises:
            KeyError: type or collection is missing
            ValueError: Unknown type, or data carries no record id
        """
        payload = dict(data.get("data") or {})
        if payload.get("id") in (None, ""):
            raise ValueError("Queue entry data has no id")
        timestamp = data.get("timestamp")
        enqueued_at = (
            datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
            if isinstance(timestamp, str)
            else datetime.now(UTC)
        )
        return cls(
            id=data.get("id") or uuid4().hex,
            kind=OperationKind(data["type"]),
            collection=data["collection"],
            payload=payload,
            origin_device=data.get("deviceId", ""),
            enqueued_at=enqueued_at,
            attempts=int(data.get("retryCount", 0)),
        )


@dataclass
class SyncStatus:
    """Snapshot of engine state for callers and the health endpoint."""

    online: bool
    connectivity: ConnectivityState
    queue_length: int
    last_sync_time: datetime | None
    device_id: str | None
    sync_in_progress: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "online": self.online,
            "connectivity": self.connectivity.value,
            "queue_length": self.queue_length,
            "last_sync_time": (
                self.last_sync_time.isoformat() if self.last_sync_time else None
            ),
            "device_id": self.device_id,
            "sync_in_progress": self.sync_in_progress,
        }


@dataclass
class PassResult:
    """Outcome of one transmission pass over the queue.

    Attributes:
        attempted: Operations the pass tried to transmit
        transmitted: Operations written remotely and removed from the queue
        failed: Operations that failed and stay queued for another pass
        dropped: Operations removed after reaching the attempt ceiling
        interrupted: True when connectivity was lost before the pass finished
    """

    attempted: int = 0
    transmitted: int = 0
    failed: int = 0
    dropped: list[Operation] = field(default_factory=list)
    interrupted: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    error_details: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.dropped and not self.interrupted

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class FullSyncResult:
    """Outcome of a bootstrap / full resynchronization."""

    skipped: bool = False
    reason: str | None = None
    pulled: dict[str, int] = field(default_factory=dict)
    requeued: int = 0
    pass_result: PassResult | None = None
    synced_at: datetime | None = None
    error_details: list[str] = field(default_factory=list)
    # PartialSyncError (or the fatal error) summarizing the failures
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return not self.skipped and not self.error_details

    @property
    def total_pulled(self) -> int:
        return sum(self.pulled.values())
