"""PostgreSQL adapter for the engine's key/value state.

This adapter implements IStateStore on a small JSONB key/value table that
holds the operation queue, the device identity and the last sync time.
"""

import json
from typing import TYPE_CHECKING, Any

from ...api.database import database_connection
from ..domain.ports import IStateStore

if TYPE_CHECKING:
    import asyncpg

STATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS arkive_state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""


class PostgresStateStore(IStateStore):
    """PostgreSQL implementation of IStateStore."""

    def __init__(self, pool: "asyncpg.Pool"):
        self.pool = pool

    async def ensure_schema(self) -> None:
        """Create the state table if it does not exist."""
        async with database_connection(self.pool) as conn:
            await conn.execute(STATE_SCHEMA)

    async def get(self, key: str) -> Any:
        async with database_connection(self.pool) as conn:
            raw = await conn.fetchval("SELECT value FROM arkive_state WHERE key = $1", key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute(
                """
                INSERT INTO arkive_state (key, value, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = NOW()
                """,
                key,
                json.dumps(value),
            )

    async def remove(self, key: str) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute("DELETE FROM arkive_state WHERE key = $1", key)
