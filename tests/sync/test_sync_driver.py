"""Tests for the SyncDriver.

These tests use the in-memory remote store with failure injection to
exercise transmission, retry and drop decisions without a network.
"""

import asyncio
import logging
from datetime import UTC, datetime

import pytest

from src.arkive.api.exceptions import ServerError, StorageError
from src.arkive.sync.domain.entities import OperationKind
from src.arkive.sync.use_cases.transmit_queue import (
    LAST_SYNC_KEY,
    SyncDriver,
    read_last_sync_time,
)


@pytest.fixture
async def driver(queue, remote, codec, identity, monitor, state_store):
    driver = SyncDriver(
        queue=queue,
        remote=remote,
        codec=codec,
        identity=identity,
        connectivity=monitor,
        state_store=state_store,
        max_attempts=3,
        sync_interval=3600,
    )
    yield driver
    await driver.stop()


class TestRunPass:
    """Test a single transmission pass."""

    @pytest.mark.asyncio
    async def test_transmits_create_and_stamps_record(self, driver, queue, remote, monitor, identity, go_online):
        await go_online(monitor)
        created = datetime(2024, 3, 1, 9, 30, tzinfo=UTC)
        await queue.enqueue("create", "clients", {"id": "c1", "name": "Ali", "createdAt": created})

        result = await driver.run_pass()

        assert result.transmitted == 1
        assert result.success
        assert len(queue) == 0

        stored = remote.value_at("clients/c1")
        assert stored["name"] == "Ali"
        assert stored["createdAt"] == "2024-03-01T09:30:00Z"
        assert stored["syncedBy"] == await identity.get_device_id()
        assert stored["lastModified"].endswith("Z")

    @pytest.mark.asyncio
    async def test_delete_removes_remote_path(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        remote.tree = {"receipts": {"r9": {"id": "r9"}, "r1": {"id": "r1"}}}
        await queue.enqueue("delete", "receipts", {"id": "r9"})

        await driver.run_pass()

        assert remote.value_at("receipts/r9") is None
        assert remote.value_at("receipts/r1") == {"id": "r1"}

    @pytest.mark.asyncio
    async def test_create_of_existing_record_overwrites(self, driver, queue, remote, monitor, go_online, caplog):
        await go_online(monitor)
        remote.tree = {"clients": {"c1": {"id": "c1", "name": "Old", "phone": "123"}}}
        await queue.enqueue("create", "clients", {"id": "c1", "name": "New"})

        with caplog.at_level(logging.DEBUG):
            result = await driver.run_pass()

        assert result.transmitted == 1
        assert result.failed == 0
        stored = remote.value_at("clients/c1")
        assert stored["name"] == "New"
        assert "phone" not in stored
        assert ("read", "clients/c1") in remote.calls
        assert "sending create as update" in caplog.text

    @pytest.mark.asyncio
    async def test_update_does_not_read_first(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})

        await driver.run_pass()

        assert ("read", "clients/c1") not in remote.calls

    @pytest.mark.asyncio
    async def test_queue_order_is_transmission_order(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        for record_id in ("a", "b", "c"):
            await queue.enqueue("update", "clients", {"id": record_id})

        await driver.run_pass()

        writes = [path for method, path in remote.calls if method == "write"]
        assert writes == ["clients/a", "clients/b", "clients/c"]

    @pytest.mark.asyncio
    async def test_does_not_run_offline(self, driver, queue, remote):
        await queue.enqueue("create", "clients", {"id": "c1"})

        assert await driver.run_pass() is None
        assert len(queue) == 1
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_does_not_run_while_unverified(self, driver, queue, monitor, remote):
        await queue.enqueue("create", "clients", {"id": "c1"})
        remote.reachable = False
        monitor.notify_online()
        await monitor.probe()

        assert await driver.run_pass() is None

    @pytest.mark.asyncio
    async def test_empty_queue_is_a_no_op(self, driver, monitor, go_online):
        await go_online(monitor)

        assert await driver.run_pass() is None

    @pytest.mark.asyncio
    async def test_records_last_sync_time(self, driver, queue, monitor, state_store, go_online):
        await go_online(monitor)
        await queue.enqueue("create", "clients", {"id": "c1"})

        result = await driver.run_pass()

        assert await read_last_sync_time(state_store) == result.completed_at


class TestFailures:
    """Test retry and drop decisions."""

    @pytest.mark.asyncio
    async def test_failure_increments_attempts_and_keeps_op(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})
        remote.fail_next("write", "clients/c1")

        result = await driver.run_pass()

        assert result.failed == 1
        assert not result.success
        assert queue.drain()[0].attempts == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_block_other_operations(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})
        await queue.enqueue("update", "clients", {"id": "c2"})
        remote.fail_next("write", "clients/c1", error=ServerError("boom", status_code=503))

        result = await driver.run_pass()

        assert result.transmitted == 1
        assert result.failed == 1
        assert remote.value_at("clients/c2") is not None
        assert [op.record_id for op in queue.drain()] == ["c1"]

    @pytest.mark.asyncio
    async def test_dropped_after_ceiling_and_never_retried_again(self, driver, queue, remote, monitor, go_online, caplog):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})
        remote.fail_next("write", "clients/c1", times=10)

        with caplog.at_level(logging.WARNING):
            first = await driver.run_pass()
            second = await driver.run_pass()
            third = await driver.run_pass()
            fourth = await driver.run_pass()

        assert first.failed == 1 and second.failed == 1
        assert len(third.dropped) == 1
        assert third.dropped[0].attempts == 3
        assert fourth is None
        assert len(queue) == 0
        assert remote.calls.count(("write", "clients/c1")) == 3
        assert "Dropping update clients/c1" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_create_read_counts_as_attempt(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("create", "clients", {"id": "c1"})
        remote.fail_next("read", "clients/c1")

        result = await driver.run_pass()

        assert result.failed == 1
        assert ("write", "clients/c1") not in remote.calls

    @pytest.mark.asyncio
    async def test_session_failure_ends_pass_without_counting(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})
        remote.session_error = ServerError("auth down", status_code=503)

        result = await driver.run_pass()

        assert result.interrupted
        assert result.attempted == 0
        assert queue.drain()[0].attempts == 0

    @pytest.mark.asyncio
    async def test_connectivity_loss_mid_pass_leaves_rest_untouched(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})
        await queue.enqueue("update", "clients", {"id": "c2"})

        original_write = remote.write

        async def write_then_drop(path, value):
            await original_write(path, value)
            monitor.notify_offline()

        remote.write = write_then_drop

        result = await driver.run_pass()

        assert result.interrupted
        assert result.transmitted == 1
        ops = queue.drain()
        assert [op.record_id for op in ops] == ["c2"]
        assert ops[0].attempts == 0

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, driver, queue, monitor, state_store, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})
        state_store.unavailable = True

        with pytest.raises(StorageError):
            await driver.run_pass()
        assert not driver.in_progress

    @pytest.mark.asyncio
    async def test_replacement_during_pass_survives(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1", "v": 1})

        original_write = remote.write

        async def write_then_edit(path, value):
            await original_write(path, value)
            await queue.enqueue("update", "clients", {"id": "c1", "v": 2})

        remote.write = write_then_edit

        await driver.run_pass()

        ops = queue.drain()
        assert len(ops) == 1
        assert ops[0].payload["v"] == 2


class TestTriggers:
    """Test the in-flight guard and trigger paths."""

    @pytest.mark.asyncio
    async def test_trigger_during_pass_is_dropped(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})

        release = asyncio.Event()
        original_write = remote.write

        async def slow_write(path, value):
            await release.wait()
            await original_write(path, value)

        remote.write = slow_write

        pass_task = asyncio.create_task(driver.run_pass())
        await asyncio.sleep(0)
        assert driver.in_progress

        assert driver.trigger() is None
        assert await driver.run_pass() is None

        release.set()
        result = await pass_task
        assert result.transmitted == 1
        assert not driver.in_progress

    @pytest.mark.asyncio
    async def test_trigger_runs_in_background(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})

        task = driver.trigger()
        assert task is not None
        await task

        assert remote.value_at("clients/c1") is not None

    @pytest.mark.asyncio
    async def test_trigger_is_a_no_op_offline(self, driver, queue):
        await queue.enqueue("update", "clients", {"id": "c1"})

        assert driver.trigger() is None

    @pytest.mark.asyncio
    async def test_transition_to_online_triggers_pass(self, driver, queue, remote, monitor):
        await queue.enqueue("update", "clients", {"id": "c1"})

        monitor.notify_online()
        await monitor.probe()
        for _ in range(10):
            await asyncio.sleep(0)

        assert remote.value_at("clients/c1") is not None
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_drain_now_waits_for_in_flight_pass(self, driver, queue, remote, monitor, go_online):
        await go_online(monitor)
        await queue.enqueue("update", "clients", {"id": "c1"})

        release = asyncio.Event()
        original_write = remote.write

        async def slow_write(path, value):
            await release.wait()
            await original_write(path, value)

        remote.write = slow_write
        first = asyncio.create_task(driver.run_pass())
        await asyncio.sleep(0)

        await queue.enqueue("update", "clients", {"id": "c2"})
        drain = asyncio.create_task(driver.drain_now())
        await asyncio.sleep(0)
        assert not drain.done()

        release.set()
        await first
        await drain

        assert len(queue) == 0
        assert remote.value_at("clients/c2") is not None

    @pytest.mark.asyncio
    async def test_ticker_retries_failed_operations(self, queue, remote, codec, identity, monitor, state_store, go_online):
        await go_online(monitor)
        driver = SyncDriver(queue, remote, codec, identity, monitor, state_store, sync_interval=0.01)
        await queue.enqueue("update", "clients", {"id": "c1"})
        remote.fail_next("write", "clients/c1")
        driver.start()
        try:
            await asyncio.sleep(0.1)
        finally:
            await driver.stop()

        assert len(queue) == 0
        assert remote.value_at("clients/c1") is not None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, driver):
        await driver.stop()


class TestLastSyncTime:

    @pytest.mark.asyncio
    async def test_unreadable_value_is_ignored(self, state_store):
        await state_store.set(LAST_SYNC_KEY, "yesterday-ish")

        assert await read_last_sync_time(state_store) is None

    @pytest.mark.asyncio
    async def test_missing_value(self, state_store):
        assert await read_last_sync_time(state_store) is None


def test_operation_kind_values():
    assert [k.value for k in OperationKind] == ["create", "update", "delete"]
