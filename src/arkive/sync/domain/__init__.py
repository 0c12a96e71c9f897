"""Domain layer - Pure domain entities and port interfaces.

This layer contains:
- Entities: operations, connectivity state and sync outcomes
- Collections: the known collections and their timestamp fields
- Ports: Abstract interfaces defining contracts for adapters

No infrastructure dependencies allowed in this layer.
"""

from .collections import (
    BASE_TIMESTAMP_FIELDS,
    DEFAULT_COLLECTIONS,
    KNOWN_COLLECTIONS,
    SYNC_METADATA_PATH,
    CollectionSchema,
    get_schema,
)
from .entities import (
    ConnectivityState,
    FullSyncResult,
    Operation,
    OperationKind,
    PassResult,
    SyncStatus,
)
from .ports import (
    ChangeHandler,
    IEntityCodec,
    ILocalStore,
    IRemoteStore,
    IStateStore,
    ISubscription,
)

__all__ = [
    # Collections
    "BASE_TIMESTAMP_FIELDS",
    "DEFAULT_COLLECTIONS",
    "KNOWN_COLLECTIONS",
    "SYNC_METADATA_PATH",
    "CollectionSchema",
    "get_schema",
    # Entities
    "ConnectivityState",
    "FullSyncResult",
    "Operation",
    "OperationKind",
    "PassResult",
    "SyncStatus",
    # Ports
    "ChangeHandler",
    "IEntityCodec",
    "ILocalStore",
    "IRemoteStore",
    "IStateStore",
    "ISubscription",
]
