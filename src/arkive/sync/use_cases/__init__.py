"""Use cases layer - Orchestration of the sync workflows.

This layer contains:
- SyncDriver: transmits queued operations while online
- FullSyncUseCase: bootstrap / full resynchronization

Use cases depend only on ports and the engine's own components,
not on concrete adapters.
"""

from .full_sync import FullSyncUseCase
from .transmit_queue import (
    LAST_SYNC_KEY,
    SyncDriver,
    read_last_sync_time,
    record_last_sync_time,
)

__all__ = [
    "FullSyncUseCase",
    "LAST_SYNC_KEY",
    "SyncDriver",
    "read_last_sync_time",
    "record_last_sync_time",
]
