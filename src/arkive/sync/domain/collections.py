"""Known collections and the timestamp fields each one carries.

Records are stored schemaless, but the codec needs to know which fields
hold timestamps so it can convert them between datetime and ISO text.
Every collection shares BASE_TIMESTAMP_FIELDS; a few add their own, and
documents carry an access log whose entries are timestamped.

Unknown collection names are allowed everywhere. They get the base
fields only.
"""

from dataclasses import dataclass


BASE_TIMESTAMP_FIELDS: frozenset[str] = frozenset({
    "date",
    "createdAt",
    "updatedAt",
    "lastLogin",
    "uploadedAt",
    "joinDate",
    "timestamp",
    "lastModified",
    "lastAccessed",
    "checkIn",
    "checkOut",
})

# Remote location holding per-device sync bookkeeping
SYNC_METADATA_PATH = "sync_metadata"


@dataclass(frozen=True)
class CollectionSchema:
    """Timestamp layout of one collection.

    Attributes:
        name: Collection name, also its top-level remote path
        timestamp_fields: Top-level fields holding timestamps
        nested_log_fields: Array fields whose entries each have a
            ``timestamp`` (e.g. documents.accessLog)
    """

    name: str
    timestamp_fields: frozenset[str] = BASE_TIMESTAMP_FIELDS
    nested_log_fields: frozenset[str] = frozenset()


def _schema(name: str, extra: tuple[str, ...] = (), logs: tuple[str, ...] = ()) -> CollectionSchema:
    return CollectionSchema(
        name=name,
        timestamp_fields=BASE_TIMESTAMP_FIELDS | frozenset(extra),
        nested_log_fields=frozenset(logs),
    )


KNOWN_COLLECTIONS: dict[str, CollectionSchema] = {
    schema.name: schema
    for schema in (
        _schema("users"),
        _schema("clients"),
        _schema("receipts"),
        _schema("expenses"),
        _schema("activities"),
        _schema("employees"),
        _schema("attendance"),
        _schema("notifications"),
        _schema("documents", logs=("accessLog",)),
        _schema("tasks", extra=("dueDate", "completedAt")),
        _schema("clientAccessRequests", extra=("requestedAt", "respondedAt", "expiresAt")),
        _schema("clientTasks", extra=("deadline", "completedAt")),
        _schema("employeePermissions"),
    )
}

DEFAULT_COLLECTIONS: tuple[str, ...] = tuple(KNOWN_COLLECTIONS)


def get_schema(collection: str | None) -> CollectionSchema:
    """Schema for a collection; unknown or unspecified names get the base fields."""
    if collection is None:
        return CollectionSchema(name="*")
    return KNOWN_COLLECTIONS.get(collection) or CollectionSchema(name=collection)
