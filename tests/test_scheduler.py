#!/usr/bin/env python3
"""Tests for the sync daemon.

Tests cover:
    - Health state bookkeeping and the health snapshot
    - Full sync error handling
    - Startup sync, subscriptions and shutdown in the scheduler loop
"""
import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from scheduler import HealthState, run_full_sync, scheduler_loop
from src.arkive.api.exceptions import PartialSyncError, StorageError
from src.arkive.sync.domain.entities import (
    ConnectivityState,
    FullSyncResult,
    SyncStatus,
)


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def config():
    """Create a minimal daemon config for testing."""
    cfg = MagicMock()
    cfg.collections = ["clients", "receipts"]
    cfg.sync_on_startup = True
    cfg.full_sync_interval_minutes = 0
    return cfg


@pytest.fixture
def mock_engine():
    """Create a mock SyncEngine."""
    engine = MagicMock()
    engine.pool = None
    engine.subscribe = AsyncMock()
    engine.connectivity.probe = AsyncMock(return_value=True)
    engine.full_sync = AsyncMock(
        return_value=FullSyncResult(pulled={"clients": 2}, synced_at=datetime.now(UTC))
    )
    engine.get_status = AsyncMock(return_value=SyncStatus(
        online=True,
        connectivity=ConnectivityState.ONLINE,
        queue_length=0,
        last_sync_time=None,
        device_id="device_abc",
    ))
    return engine


# ============================================
# Health State Tests
# ============================================

class TestHealthState:

    def test_skipped_sync_is_not_recorded(self):
        state = HealthState()

        state.record(FullSyncResult(skipped=True, reason="offline"))

        assert state.total_full_syncs == 0
        assert state.last_full_sync_at is None

    def test_failed_sync_marks_unhealthy(self):
        state = HealthState()

        state.record(FullSyncResult(error_details=["collection=clients: boom"]))

        assert state.total_full_syncs == 1
        assert state.failed_full_syncs == 1
        assert not state.last_full_sync_success

    @pytest.mark.asyncio
    async def test_snapshot_reports_last_full_sync_error(self):
        state = HealthState()
        error = PartialSyncError("1 error(s) occurred during operation", succeeded=4, failed=1)

        state.record(FullSyncResult(error_details=["collection=clients: boom"], error=error))
        body = await state.snapshot()

        assert body["status"] == "unhealthy"
        assert body["last_full_sync_error"]["code"] == "PARTIAL_SYNC_ERROR"
        assert body["last_full_sync_error"]["details"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_successful_sync_clears_last_error(self):
        state = HealthState()
        state.record(FullSyncResult(error_details=["boom"], error=PartialSyncError("boom")))

        state.record(FullSyncResult())

        assert "last_full_sync_error" not in await state.snapshot()

    @pytest.mark.asyncio
    async def test_snapshot_includes_engine_status(self, mock_engine):
        state = HealthState()
        state.engine = mock_engine

        body = await state.snapshot()

        assert body["status"] == "healthy"
        assert body["last_full_sync_at"] == "never"
        assert body["engine"]["device_id"] == "device_abc"
        assert "database" not in body

    @pytest.mark.asyncio
    async def test_engine_error_is_unhealthy(self, mock_engine):
        mock_engine.get_status.side_effect = StorageError("state store down")
        state = HealthState()
        state.engine = mock_engine

        body = await state.snapshot()

        assert body["status"] == "unhealthy"
        assert "state store down" in body["engine_error"]

    @pytest.mark.asyncio
    async def test_database_health_reported(self, mock_engine):
        mock_engine.pool = MagicMock()
        state = HealthState()
        state.engine = mock_engine

        with patch(
            "scheduler.check_database_health",
            AsyncMock(return_value={"healthy": False, "error": "refused"}),
        ):
            body = await state.snapshot()

        assert body["status"] == "unhealthy"
        assert body["database"]["error"] == "refused"


# ============================================
# Full Sync Tests
# ============================================

class TestRunFullSync:

    @pytest.mark.asyncio
    async def test_success_is_recorded(self, mock_engine):
        state = HealthState()

        result = await run_full_sync(mock_engine, state)

        assert result.success
        assert state.total_full_syncs == 1

    @pytest.mark.asyncio
    async def test_storage_failure_is_recorded_not_raised(self, mock_engine):
        mock_engine.full_sync.side_effect = StorageError("disk full")
        state = HealthState()

        result = await run_full_sync(mock_engine, state)

        assert not result.success
        assert "disk full" in result.error_details[0]
        assert state.last_full_sync_error["code"] == "STORAGE_ERROR"
        assert not state.last_full_sync_success


# ============================================
# Scheduler Loop Tests
# ============================================

class TestSchedulerLoop:

    @pytest.mark.asyncio
    async def test_startup_subscribes_and_syncs(self, config, mock_engine):
        shutdown = asyncio.Event()
        shutdown.set()

        await scheduler_loop(config, mock_engine, HealthState(), shutdown)

        subscribed = [c.args[0] for c in mock_engine.subscribe.call_args_list]
        assert subscribed == ["clients", "receipts"]
        mock_engine.connectivity.probe.assert_awaited_once()
        mock_engine.full_sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_startup_sync_can_be_disabled(self, config, mock_engine):
        config.sync_on_startup = False
        shutdown = asyncio.Event()
        shutdown.set()

        await scheduler_loop(config, mock_engine, HealthState(), shutdown)

        mock_engine.full_sync.assert_not_called()

    @pytest.mark.asyncio
    async def test_periodic_full_sync(self, config, mock_engine):
        config.sync_on_startup = False
        config.full_sync_interval_minutes = 0.02 / 60
        shutdown = asyncio.Event()

        loop_task = asyncio.create_task(
            scheduler_loop(config, mock_engine, HealthState(), shutdown)
        )
        await asyncio.sleep(0.07)
        shutdown.set()
        await asyncio.wait_for(loop_task, timeout=1)

        assert mock_engine.full_sync.await_count >= 2
