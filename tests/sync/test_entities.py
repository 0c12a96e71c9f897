"""Tests for sync domain entities."""

from datetime import UTC, datetime, timedelta

import pytest

from src.arkive.sync.domain.collections import (
    BASE_TIMESTAMP_FIELDS,
    DEFAULT_COLLECTIONS,
    get_schema,
)
from src.arkive.sync.domain.entities import (
    ConnectivityState,
    FullSyncResult,
    Operation,
    OperationKind,
    PassResult,
    SyncStatus,
)


class TestOperation:
    """Tests for Operation entity."""

    def test_operation_creation_minimal(self):
        """Test creating an operation with only the required fields."""
        op = Operation(
            kind=OperationKind.CREATE,
            collection="clients",
            payload={"id": "c1"},
            origin_device="device_abc",
        )

        assert op.attempts == 0
        assert len(op.id) == 32
        assert op.enqueued_at.tzinfo is not None

    def test_record_identity(self):
        """Test key, record_id and path derive from collection and payload id."""
        op = Operation(OperationKind.UPDATE, "receipts", {"id": 42}, "device_abc")

        assert op.record_id == "42"
        assert op.key == ("receipts", "42")
        assert op.path == "receipts/42"

    def test_copy_does_not_share_payload(self):
        """Test copy() can be mutated without touching the original."""
        op = Operation(OperationKind.UPDATE, "clients", {"id": "c1", "name": "Ali"}, "d")

        clone = op.copy()
        clone.payload["name"] = "Sara"
        clone.attempts = 2

        assert op.payload["name"] == "Ali"
        assert op.attempts == 0
        assert clone.id == op.id

    def test_to_dict(self):
        """Test the persisted layout."""
        op = Operation(
            kind=OperationKind.DELETE,
            collection="tasks",
            payload={"id": "t1"},
            origin_device="device_abc",
            id="op1",
            enqueued_at=datetime(2024, 3, 1, 9, 30, tzinfo=UTC),
            attempts=2,
        )

        assert op.to_dict() == {
            "id": "op1",
            "type": "delete",
            "collection": "tasks",
            "data": {"id": "t1"},
            "timestamp": "2024-03-01T09:30:00Z",
            "deviceId": "device_abc",
            "retryCount": 2,
        }

    def test_from_dict(self):
        """Test restoring a persisted operation."""
        op = Operation.from_dict({
            "id": "op1",
            "type": "update",
            "collection": "clients",
            "data": {"id": "c1", "name": "Ali"},
            "timestamp": "2024-03-01T09:30:00Z",
            "deviceId": "device_abc",
            "retryCount": 1,
        })

        assert op.kind == OperationKind.UPDATE
        assert op.payload == {"id": "c1", "name": "Ali"}
        assert op.enqueued_at == datetime(2024, 3, 1, 9, 30, tzinfo=UTC)
        assert op.origin_device == "device_abc"
        assert op.attempts == 1

    def test_from_dict_fills_missing_fields(self):
        """Test entries written before id and retryCount existed still load."""
        op = Operation.from_dict({"type": "create", "collection": "clients", "data": {"id": "c1"}})

        assert op.id
        assert op.attempts == 0
        assert op.origin_device == ""

    def test_from_dict_rejects_unknown_kind(self):
        """Test an unknown operation type is an error."""
        with pytest.raises(ValueError):
            Operation.from_dict({"type": "upsert", "collection": "clients", "data": {"id": "c1"}})

    def test_from_dict_rejects_data_without_id(self):
        """Test an entry whose record has no id is an error."""
        with pytest.raises(ValueError):
            Operation.from_dict({"type": "create", "collection": "clients", "data": {"name": "x"}})


class TestSyncStatus:
    """Tests for SyncStatus entity."""

    def test_to_dict(self):
        status = SyncStatus(
            online=True,
            connectivity=ConnectivityState.ONLINE,
            queue_length=3,
            last_sync_time=datetime(2024, 3, 1, tzinfo=UTC),
            device_id="device_abc",
        )

        assert status.to_dict() == {
            "online": True,
            "connectivity": "online",
            "queue_length": 3,
            "last_sync_time": "2024-03-01T00:00:00+00:00",
            "device_id": "device_abc",
            "sync_in_progress": False,
        }

    def test_to_dict_never_synced(self):
        status = SyncStatus(False, ConnectivityState.OFFLINE, 0, None, None)

        assert status.to_dict()["last_sync_time"] is None


class TestPassResult:
    """Tests for PassResult entity."""

    def test_empty_pass_is_successful(self):
        assert PassResult().success

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"failed": 1},
            {"interrupted": True},
            {"dropped": [Operation(OperationKind.UPDATE, "clients", {"id": "c1"}, "d")]},
        ],
    )
    def test_unsuccessful_pass(self, kwargs):
        assert not PassResult(**kwargs).success

    def test_duration(self):
        started = datetime(2024, 1, 1, tzinfo=UTC)
        result = PassResult(started_at=started)

        assert result.duration_seconds is None

        result.completed_at = started + timedelta(seconds=2.5)
        assert result.duration_seconds == 2.5


class TestFullSyncResult:
    """Tests for FullSyncResult entity."""

    def test_success(self):
        result = FullSyncResult(pulled={"clients": 2, "receipts": 3})

        assert result.success
        assert result.total_pulled == 5

    def test_skipped_is_not_success(self):
        assert not FullSyncResult(skipped=True, reason="offline").success

    def test_errors_are_not_success(self):
        assert not FullSyncResult(error_details=["collection=clients: boom"]).success


class TestCollections:
    """Tests for the collection schema registry."""

    def test_every_schema_has_base_fields(self):
        for name in DEFAULT_COLLECTIONS:
            assert BASE_TIMESTAMP_FIELDS <= get_schema(name).timestamp_fields

    def test_collection_specific_fields(self):
        assert {"dueDate", "completedAt"} <= get_schema("tasks").timestamp_fields
        assert "deadline" in get_schema("clientTasks").timestamp_fields
        assert "expiresAt" in get_schema("clientAccessRequests").timestamp_fields
        assert get_schema("documents").nested_log_fields == frozenset({"accessLog"})

    def test_unknown_collection_gets_base_fields(self):
        schema = get_schema("invoices")

        assert schema.name == "invoices"
        assert schema.timestamp_fields == BASE_TIMESTAMP_FIELDS
        assert schema.nested_log_fields == frozenset()

    def test_unspecified_collection(self):
        assert get_schema(None).timestamp_fields == BASE_TIMESTAMP_FIELDS
