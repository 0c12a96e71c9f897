#!/usr/bin/env python3
"""Long-running Sync Daemon.

Keeps a sync engine open for the lifetime of the process: queued
operations are transmitted as soon as Firebase is verifiably reachable,
subscribed collections are mirrored into local storage as other devices
change them, and a full sync runs on startup and at a fixed interval.
Designed to run as the main process in a container.

Architecture:
    - Engine tickers handle queue passes and connectivity probes
    - Simple asyncio loop with wait_for for periodic full syncs
    - Graceful shutdown on SIGTERM/SIGINT
    - Health check endpoint via optional HTTP server

Environment Variables:
    FULL_SYNC_INTERVAL_MINUTES: Minutes between full syncs (default: 60, 0 to disable)
    SYNC_ON_STARTUP: Run a full sync immediately on startup (default: true)
    HEALTH_CHECK_PORT: Port for health check endpoint (default: 8080, 0 to disable)
    LOG_LEVEL: Logging level (default: INFO)

    See src/arkive/config.py for the Firebase and database settings.

Example:
    # Full sync every 15 minutes
    FULL_SYNC_INTERVAL_MINUTES=15 python scheduler.py

    # Live mirroring only, no periodic full sync
    FULL_SYNC_INTERVAL_MINUTES=0 python scheduler.py
"""
import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from src.arkive.api.database import check_database_health
from src.arkive.api.exceptions import ArkiveError, ConfigurationError
from src.arkive.config import SyncConfig
from src.arkive.sync import FullSyncResult, SyncEngine, engine_from_config

# Initialize logger
logger = logging.getLogger(__name__)


# ============================================
# Health Check Server
# ============================================

class HealthState:
    """Shared state for health checks."""

    def __init__(self):
        self.engine: Optional[SyncEngine] = None
        self.last_full_sync_at: Optional[datetime] = None
        self.last_full_sync_success: bool = True
        self.total_full_syncs: int = 0
        self.failed_full_syncs: int = 0
        self.last_full_sync_error: Optional[dict[str, Any]] = None
        self.started_at: datetime = datetime.now(UTC)

    def record(self, result: FullSyncResult) -> None:
        if result.skipped:
            return
        self.total_full_syncs += 1
        self.last_full_sync_at = result.synced_at or datetime.now(UTC)
        self.last_full_sync_success = result.success
        self.last_full_sync_error = (
            result.error.to_dict() if isinstance(result.error, ArkiveError) else None
        )
        if not result.success:
            self.failed_full_syncs += 1

    async def snapshot(self) -> dict[str, Any]:
        uptime = (datetime.now(UTC) - self.started_at).total_seconds()
        body: dict[str, Any] = {
            "status": "healthy" if self.last_full_sync_success else "unhealthy",
            "uptime_seconds": round(uptime),
            "total_full_syncs": self.total_full_syncs,
            "failed_full_syncs": self.failed_full_syncs,
            "last_full_sync_at": (
                self.last_full_sync_at.isoformat() if self.last_full_sync_at else "never"
            ),
        }
        if self.last_full_sync_error:
            body["last_full_sync_error"] = self.last_full_sync_error
        if self.engine is not None:
            try:
                body["engine"] = (await self.engine.get_status()).to_dict()
            except ArkiveError as e:
                body["status"] = "unhealthy"
                body["engine_error"] = str(e)
            if self.engine.pool is not None:
                body["database"] = await check_database_health(self.engine.pool)
                if not body["database"]["healthy"]:
                    body["status"] = "unhealthy"
        return body


async def health_check_handler(reader, writer, state: HealthState):
    """Handle HTTP health check requests."""
    # Read request (we don't care about the content)
    await reader.read(1024)

    snapshot = await state.snapshot()
    body = json.dumps(snapshot)

    http_status = 200 if snapshot["status"] == "healthy" else 503
    response = (
        f"HTTP/1.1 {http_status} {'OK' if http_status == 200 else 'Service Unavailable'}\r\n"
        f"Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
        f"{body}"
    )

    writer.write(response.encode())
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def start_health_server(port: int, state: HealthState):
    """Start the health check HTTP server."""
    if port <= 0:
        return None

    async def handler(reader, writer):
        await health_check_handler(reader, writer, state)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    print(f"[Scheduler] Health check server listening on port {port}")
    return server


# ============================================
# Full Sync
# ============================================

async def run_full_sync(engine: SyncEngine, health_state: HealthState) -> FullSyncResult:
    """Run one full sync and record the outcome."""
    try:
        result = await engine.full_sync()
    except ArkiveError as e:
        logger.error(f"Full sync failed: {e}", exc_info=True)
        print(f"[Scheduler] ERROR: Full sync failed: {e}")
        result = FullSyncResult(error_details=[str(e)], error=e, synced_at=datetime.now(UTC))

    health_state.record(result)
    if result.skipped:
        print(f"[Scheduler] Full sync skipped: {result.reason}")
    else:
        print(
            f"[Scheduler] Full sync complete: success={result.success}, "
            f"pulled={result.total_pulled}, requeued={result.requeued}"
        )
        for detail in result.error_details:
            print(f"[Scheduler]   ! {detail}")
    return result


# ============================================
# Main Scheduler Loop
# ============================================

async def scheduler_loop(
    config: SyncConfig,
    engine: SyncEngine,
    health_state: HealthState,
    shutdown_event: asyncio.Event,
):
    """Main scheduling loop.

    Args:
        config: Engine configuration
        engine: Started sync engine
        health_state: Shared health state
        shutdown_event: Event to signal shutdown
    """
    # Mirror every collection into local storage
    for collection in config.collections:
        await engine.subscribe(collection, lambda records: None)

    if config.sync_on_startup:
        print("[Scheduler] Running initial full sync on startup...")
        # Let the first connectivity probe land before deciding we are offline
        await engine.connectivity.probe()
        await run_full_sync(engine, health_state)

    interval_seconds = config.full_sync_interval_minutes * 60
    if interval_seconds <= 0:
        print("[Scheduler] Periodic full sync disabled, running until shutdown")
        await shutdown_event.wait()
        print("[Scheduler] Shutdown requested, exiting loop")
        return

    next_run = datetime.now(UTC) + timedelta(seconds=interval_seconds)
    print(f"[Scheduler] Next full sync at {next_run.isoformat()}")

    while not shutdown_event.is_set():
        try:
            # Wait for either the interval or shutdown
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=interval_seconds,
            )
            # If we get here, shutdown was requested
            break
        except asyncio.TimeoutError:
            # Timeout means it's time to sync
            pass

        print("\n[Scheduler] ========== SCHEDULED FULL SYNC ==========")
        await run_full_sync(engine, health_state)

        next_run = datetime.now(UTC) + timedelta(seconds=interval_seconds)
        print(f"[Scheduler] Next full sync at {next_run.isoformat()}")

    print("[Scheduler] Shutdown requested, exiting loop")


# ============================================
# Main Entry Point
# ============================================

async def main():
    """Main entry point for the scheduler."""
    config = SyncConfig()

    # Configure logging
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    print("=" * 60)
    print("Arkive Sync Daemon")
    print("=" * 60)
    print(f"[Scheduler] Config: {config}")

    health_state = HealthState()
    shutdown_event = asyncio.Event()

    # Signal handlers
    def handle_shutdown(signum, frame):
        print(f"\n[Scheduler] Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    health_server = await start_health_server(config.health_check_port, health_state)

    try:
        async with engine_from_config(config) as engine:
            health_state.engine = engine
            await scheduler_loop(
                config=config,
                engine=engine,
                health_state=health_state,
                shutdown_event=shutdown_event,
            )
    except ConfigurationError as e:
        print(f"[Scheduler] ERROR: {e}")
        sys.exit(1)
    finally:
        print("[Scheduler] Cleaning up...")
        health_state.engine = None

        if health_server:
            health_server.close()
            await health_server.wait_closed()

        print("[Scheduler] Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
