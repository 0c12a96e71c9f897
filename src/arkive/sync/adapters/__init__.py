"""Adapters layer - Infrastructure implementations of the sync ports.

This layer contains concrete implementations of the ports defined in the domain layer:
- EntityCodec: IEntityCodec for the known collections
- FirebaseRemoteStore: Firebase Realtime Database implementation of IRemoteStore
- PostgresLocalStore: PostgreSQL implementation of ILocalStore
- PostgresStateStore: PostgreSQL implementation of IStateStore
- InMemoryLocalStore / InMemoryStateStore / InMemoryRemoteStore: in-process stores
"""

from .entity_codec import MISSING, EntityCodec
from .firebase_remote_store import FirebaseRemoteStore, FirebaseSubscription, apply_stream_event
from .memory import InMemoryLocalStore, InMemoryRemoteStore, InMemoryStateStore
from .postgres_local_store import PostgresLocalStore
from .postgres_state_store import PostgresStateStore

__all__ = [
    # Codec
    "MISSING",
    "EntityCodec",
    # Remote
    "FirebaseRemoteStore",
    "FirebaseSubscription",
    "apply_stream_event",
    # PostgreSQL
    "PostgresLocalStore",
    "PostgresStateStore",
    # In-memory
    "InMemoryLocalStore",
    "InMemoryRemoteStore",
    "InMemoryStateStore",
]
