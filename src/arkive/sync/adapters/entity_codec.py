"""Entity codec adapter for converting records between local and wire form.

This adapter implements IEntityCodec. The remote store speaks JSON, so:
- Absent values (None or MISSING) become JSON null at any depth
- datetime values become ISO 8601 UTC strings with a 'Z' suffix;
  plain dates stay dates and are written as YYYY-MM-DD
- On the way back, recognized timestamp fields are parsed into aware
  datetimes (or dates, for date-only text); everything else passes
  through untouched
"""

import copy
import logging
from datetime import UTC, date, datetime
from typing import Any

from ..domain.collections import get_schema
from ..domain.ports import IEntityCodec

logger = logging.getLogger(__name__)


class _Missing:
    """Marker for a field that is present but has no value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __deepcopy__(self, memo):
        return self


MISSING = _Missing()


class EntityCodec(IEntityCodec):
    """Converts records for the collections in domain.collections.

    encode() is total: any datetime anywhere in the record is rendered as
    text so the result is always JSON-serializable. decode() only restores
    fields the collection schema names as timestamps, plus the
    ``timestamp`` of each entry in its nested log arrays.
    """

    def encode(self, record: dict[str, Any], collection: str | None = None) -> dict[str, Any]:
        """Transform a local record into its wire form.

        Args:
            record: Local record; never mutated
            collection: Collection name; encoding does not depend on it

        Returns:
            New dict safe to JSON-serialize
        """
        return self._encode_value(record)

    def decode(self, wire: dict[str, Any], collection: str | None = None) -> dict[str, Any]:
        """Transform a wire record back into a local record.

        Args:
            wire: Record as read from the remote store or state store
            collection: Collection name (selects timestamp fields)

        Returns:
            New dict with recognized timestamp fields as aware datetimes
        """
        schema = get_schema(collection)
        record = copy.deepcopy(wire)

        for field_name in schema.timestamp_fields:
            if field_name in record:
                record[field_name] = self._parse_timestamp(record[field_name], field_name)

        for log_field in schema.nested_log_fields:
            entries = record.get(log_field)
            if isinstance(entries, list):
                for entry in entries:
                    if isinstance(entry, dict) and "timestamp" in entry:
                        entry["timestamp"] = self._parse_timestamp(
                            entry["timestamp"], f"{log_field}[].timestamp"
                        )

        return record

    def _encode_value(self, value: Any) -> Any:
        if value is None or value is MISSING:
            return None
        if isinstance(value, datetime):
            return self.format_timestamp(value)
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, dict):
            return {str(k): self._encode_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._encode_value(v) for v in value]
        return value

    @staticmethod
    def format_timestamp(value: datetime) -> str:
        """Render a datetime as ISO 8601 UTC with a 'Z' suffix.

        Naive datetimes are taken to be UTC already.
        """
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat().replace("+00:00", "Z")

    @staticmethod
    def _parse_timestamp(value: Any, field_name: str) -> Any:
        if not isinstance(value, str):
            return value
        # Date-only values round-trip as dates
        if len(value) == 10:
            try:
                return date.fromisoformat(value)
            except ValueError:
                pass
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Leaving unparseable timestamp in {field_name}: {value!r}")
            return value
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
