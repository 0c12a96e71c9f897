"""Sync module - Offline-first synchronization between local storage and Firebase.

Local mutations are queued durably and transmitted when the remote store
is verifiably reachable; remote changes from other devices are mirrored
back into local storage and handed to subscribers.

Architecture:
    domain/     - Pure domain entities and port interfaces
    use_cases/  - Queue transmission and full resynchronization
    adapters/   - Infrastructure implementations (PostgreSQL, Firebase, in-memory)
    engine.py   - SyncEngine, the process-scoped context that wires it together
"""

from .connectivity import ConnectivityMonitor
from .domain.entities import (
    ConnectivityState,
    FullSyncResult,
    Operation,
    OperationKind,
    PassResult,
    SyncStatus,
)
from .domain.ports import (
    IEntityCodec,
    ILocalStore,
    IRemoteStore,
    IStateStore,
    ISubscription,
)
from .engine import SyncEngine, engine_from_config
from .identity import DeviceIdentityProvider
from .listener import RemoteChangeListener
from .queue import OperationQueue

__all__ = [
    # Engine
    "SyncEngine",
    "engine_from_config",
    # Components
    "ConnectivityMonitor",
    "DeviceIdentityProvider",
    "OperationQueue",
    "RemoteChangeListener",
    # Entities
    "ConnectivityState",
    "FullSyncResult",
    "Operation",
    "OperationKind",
    "PassResult",
    "SyncStatus",
    # Ports
    "IEntityCodec",
    "ILocalStore",
    "IRemoteStore",
    "IStateStore",
    "ISubscription",
]
