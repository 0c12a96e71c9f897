"""PostgreSQL adapter for the device's local data set.

This adapter implements ILocalStore on a single table of JSONB documents
keyed by (collection, id). Records are written through the entity codec
so timestamps survive as text and come back as datetimes.
"""

import json
import logging
from typing import TYPE_CHECKING, Any

from ...api.database import database_connection, database_transaction
from ..domain.ports import IEntityCodec, ILocalStore
from .entity_codec import EntityCodec

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

RECORDS_SCHEMA = """
CREATE TABLE IF NOT EXISTS arkive_records (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (collection, id)
)
"""

UPSERT_RECORD = """
INSERT INTO arkive_records (collection, id, data, updated_at)
VALUES ($1, $2, $3::jsonb, NOW())
ON CONFLICT (collection, id) DO UPDATE SET
    data = EXCLUDED.data,
    updated_at = NOW()
"""


class PostgresLocalStore(ILocalStore):
    """PostgreSQL implementation of ILocalStore.

    Driver errors surface as StorageError via the database helpers.
    """

    def __init__(self, pool: "asyncpg.Pool", codec: IEntityCodec | None = None):
        """Initialize the store.

        Args:
            pool: asyncpg connection pool
            codec: Codec for JSONB conversion (defaults to EntityCodec)
        """
        self.pool = pool
        self.codec = codec or EntityCodec()

    async def ensure_schema(self) -> None:
        """Create the records table if it does not exist."""
        async with database_connection(self.pool) as conn:
            await conn.execute(RECORDS_SCHEMA)

    async def get_all(self, collection: str) -> list[dict[str, Any]]:
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                "SELECT data FROM arkive_records WHERE collection = $1 ORDER BY id",
                collection,
            )
        return [self.codec.decode(json.loads(row["data"]), collection) for row in rows]

    async def clear(self, collection: str) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute("DELETE FROM arkive_records WHERE collection = $1", collection)

    async def put(self, collection: str, record: dict[str, Any]) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute(UPSERT_RECORD, *self._to_row(collection, record))

    async def delete(self, collection: str, record_id: str) -> None:
        async with database_connection(self.pool) as conn:
            await conn.execute(
                "DELETE FROM arkive_records WHERE collection = $1 AND id = $2",
                collection,
                str(record_id),
            )

    async def replace_all(self, collection: str, records: list[dict[str, Any]]) -> None:
        """Swap a collection's contents in one transaction."""
        rows = [self._to_row(collection, r) for r in records]
        async with database_transaction(self.pool) as conn:
            await conn.execute("DELETE FROM arkive_records WHERE collection = $1", collection)
            if rows:
                await conn.executemany(UPSERT_RECORD, rows)
        logger.debug(f"Replaced {collection} with {len(rows)} record(s)")

    def _to_row(self, collection: str, record: dict[str, Any]) -> tuple[str, str, str]:
        return (
            collection,
            str(record["id"]),
            json.dumps(self.codec.encode(record, collection)),  # JSONB requires JSON string
        )
