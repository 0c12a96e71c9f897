#!/usr/bin/env python3
"""Arkive Sync CLI.

One-shot command-line interface to the offline-first sync engine. Each
invocation opens the engine on the configured stores, verifies the
connection to Firebase, does its job and exits. Anything that could not
be transmitted stays in the persisted queue for the next run or for the
scheduler daemon.

Environment Variables:
    - FIREBASE_DATABASE_URL: Realtime Database root URL (required)
    - FIREBASE_API_KEY: Web API key for anonymous sign-in (optional)
    - DATABASE_URL: PostgreSQL connection string (optional; memory otherwise)
    - SYNC_COLLECTIONS: Comma-separated collections (optional)

Example Usage:
    $ python main.py                                   # Full sync
    $ python main.py --status                          # Show queue and sync state
    $ python main.py --enqueue create clients '{"id": "c1", "name": "Ali"}'
    $ python main.py --dump clients                    # Print local records
    $ python main.py --wipe --yes                      # Erase remote + local data
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import UTC, datetime

from src.arkive.api.exceptions import ArkiveError, ConfigurationError
from src.arkive.config import SyncConfig
from src.arkive.sync import SyncEngine, engine_from_config


async def connect(engine: SyncEngine) -> bool:
    """Probe the remote store once so the engine knows it is online."""
    online = await engine.connectivity.probe()
    if online:
        print("[Main] Firebase reachable")
    else:
        print("[Main] Firebase not reachable, working offline")
    return online


async def show_status(engine: SyncEngine) -> None:
    status = await engine.get_status()
    print("\n" + "=" * 60)
    print("SYNC STATUS")
    print("=" * 60)
    for key, value in status.to_dict().items():
        print(f"{key:<18} {value}")

    pending = engine.queue.drain()
    if pending:
        print(f"\n{'Kind':<8} {'Path':<40} {'Attempts':<8}")
        print("-" * 60)
        for op in pending:
            print(f"{op.kind.value:<8} {op.path:<40} {op.attempts:<8}")


async def run_full_sync(engine: SyncEngine) -> int:
    await connect(engine)
    result = await engine.full_sync()

    print("\n" + "=" * 60)
    print("FULL SYNC")
    print("=" * 60)
    if result.skipped:
        print(f"Skipped: {result.reason}")
        return 1

    for collection, count in sorted(result.pulled.items()):
        print(f"  pulled {count:>5} {collection}")
    print(f"Requeued: {result.requeued}")
    if result.pass_result:
        print(
            f"Transmitted: {result.pass_result.transmitted}, "
            f"failed: {result.pass_result.failed}, "
            f"dropped: {len(result.pass_result.dropped)}"
        )
    for detail in result.error_details:
        print(f"  ! {detail}")
    return 0 if result.success else 1


async def run_enqueue(engine: SyncEngine, kind: str, collection: str, raw: str) -> int:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"[Main] Payload is not valid JSON: {e}")
        return 2

    op = await engine.enqueue(kind, collection, payload)
    print(f"[Main] Queued {op.kind.value} {op.path}")

    if await connect(engine):
        # Going online may already have started a pass in the background
        result = await engine.driver.drain_now() or engine.driver.last_result
        if result:
            print(f"[Main] Transmitted {result.transmitted}, failed {result.failed}")
    print(f"[Main] {len(engine.queue)} operation(s) still queued")
    return 0


async def run_dump(engine: SyncEngine, collection: str) -> int:
    records = await engine.local_store.get_all(collection)
    encoded = [engine.codec.encode(r, collection) for r in records]
    print(json.dumps(encoded, indent=2, sort_keys=True))
    return 0


async def run_wipe(engine: SyncEngine, include_local: bool) -> int:
    await connect(engine)
    failures = await engine.wipe_all(include_local=include_local)
    for failure in failures:
        print(f"  ! {failure}")
    print(f"[Main] Wipe finished with {len(failures)} remote error(s)")
    return 1 if failures else 0


async def run(args: argparse.Namespace) -> int:
    start_time = datetime.now(UTC)
    print(f"[Main] Starting at {start_time.isoformat()}")

    try:
        config = SyncConfig()
        async with engine_from_config(config) as engine:
            if args.status:
                await show_status(engine)
                code = 0
            elif args.enqueue:
                code = await run_enqueue(engine, *args.enqueue)
            elif args.dump:
                code = await run_dump(engine, args.dump)
            elif args.wipe:
                code = await run_wipe(engine, include_local=not args.keep_local)
            else:
                code = await run_full_sync(engine)
    except ConfigurationError as e:
        print(f"[Main] Configuration error: {e}")
        return 2
    except ArkiveError as e:
        print(f"[Main] Sync failed: {e}")
        return 1

    duration = (datetime.now(UTC) - start_time).total_seconds()
    print(f"\n[Main] Completed in {duration:.1f} seconds")
    return code


def main():
    parser = argparse.ArgumentParser(
        description="Offline-first sync between local storage and Firebase",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                    # Full sync
  python main.py --full-sync                        # Same, explicitly
  python main.py --status                           # Show queue and sync state
  python main.py --enqueue update tasks '{"id": "t1", "done": true}'
  python main.py --dump receipts                    # Print local receipts
  python main.py --wipe --yes --keep-local          # Erase remote data only
        """
    )

    action_group = parser.add_mutually_exclusive_group()
    action_group.add_argument(
        "--full-sync",
        action="store_true",
        help="Pull remote data, push local data and drain the queue (default)"
    )
    action_group.add_argument(
        "--status",
        action="store_true",
        help="Show connectivity, queue length and last sync time"
    )
    action_group.add_argument(
        "--enqueue",
        nargs=3,
        metavar=("KIND", "COLLECTION", "JSON"),
        help="Queue a create/update/delete and try to transmit it"
    )
    action_group.add_argument(
        "--dump",
        metavar="COLLECTION",
        help="Print the local records of COLLECTION as JSON"
    )
    action_group.add_argument(
        "--wipe",
        action="store_true",
        help="Erase all synchronized data (requires --yes)"
    )

    wipe_group = parser.add_argument_group("Wipe Options")
    wipe_group.add_argument(
        "--yes",
        action="store_true",
        help="Confirm a destructive operation"
    )
    wipe_group.add_argument(
        "--keep-local",
        action="store_true",
        help="With --wipe, leave local records in place"
    )

    args = parser.parse_args()
    if args.wipe and not args.yes:
        parser.error("--wipe erases remote data for every device; add --yes to confirm")

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
