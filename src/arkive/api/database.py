#!/usr/bin/env python3
"""Local Database Utilities for the Arkive sync engine.

The device's local data set and the engine's own state (queue, device
identity, last sync time) live in PostgreSQL. This module provides:
    - Transaction context managers with automatic commit/rollback
    - Connection pool management
    - Conversion of driver errors into StorageError subtypes

Every failure surfaces as a StorageError: the engine cannot make progress
without durable local state, so none of these are retried.

Example:
    pool = await create_pool(config.database_url)
    async with database_transaction(pool) as conn:
        await conn.execute("DELETE FROM arkive_records WHERE collection = $1", "tasks")
        await conn.executemany("INSERT INTO arkive_records ...", rows)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from .exceptions import (
    ConnectionPoolError,
    StorageError,
    TransactionError,
)

logger = logging.getLogger(__name__)

ACQUIRE_TIMEOUT_SECONDS = 30.0


# ============================================
# Transaction Context Managers
# ============================================

async def _acquire(pool):
    if pool is None:
        raise ConnectionPoolError("Database connection pool is not initialized")
    try:
        return await asyncio.wait_for(pool.acquire(), timeout=ACQUIRE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        raise ConnectionPoolError(
            "Timeout acquiring database connection",
            details={"timeout_seconds": ACQUIRE_TIMEOUT_SECONDS},
        )
    except Exception as e:
        raise ConnectionPoolError(
            f"Failed to acquire database connection: {e}",
            cause=e,
        )


@asynccontextmanager
async def database_transaction(
    pool,
    isolation: str = "read_committed",
) -> AsyncIterator[Any]:
    """Run the enclosed statements in one transaction.

    Commits on clean exit; rolls back and raises a StorageError subtype on
    any exception.

    Args:
        pool: asyncpg connection pool
        isolation: "serializable", "repeatable_read" or "read_committed"

    Raises:
        ConnectionPoolError: If a connection cannot be acquired
        TransactionError: If the transaction fails
    """
    conn = await _acquire(pool)
    try:
        transaction = conn.transaction(isolation=isolation)
        try:
            await transaction.start()
        except Exception as e:
            raise TransactionError(f"Failed to start transaction: {e}", cause=e)

        try:
            yield conn
            await transaction.commit()
        except Exception as e:
            try:
                await transaction.rollback()
                logger.debug("Transaction rolled back due to exception")
            except Exception as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            raise _convert_db_exception(e) from e
    finally:
        await pool.release(conn)


@asynccontextmanager
async def database_connection(pool) -> AsyncIterator[Any]:
    """Plain connection for single statements and reads.

    Example:
        async with database_connection(pool) as conn:
            rows = await conn.fetch("SELECT data FROM arkive_records WHERE collection = $1", "users")
    """
    conn = await _acquire(pool)
    try:
        yield conn
    except (asyncpg.PostgresError, OSError) as e:
        raise _convert_db_exception(e) from e
    finally:
        await pool.release(conn)


# ============================================
# Error Conversion
# ============================================

def _convert_db_exception(e: Exception) -> Exception:
    """Convert a driver exception to a StorageError subtype."""
    if isinstance(e, StorageError):
        return e

    error_str = str(e).lower()

    if "deadlock" in error_str:
        return TransactionError(f"Deadlock detected: {e}", operation="transaction", cause=e)

    if "timeout" in error_str or "timed out" in error_str:
        return TransactionError(f"Database operation timed out: {e}", operation="query", cause=e)

    if isinstance(e, (asyncpg.PostgresError, OSError)):
        return StorageError(f"Database operation failed: {e}", cause=e)

    # Errors raised by the caller's own code inside the block pass through
    return e


# ============================================
# Connection Pool Helpers
# ============================================

async def create_pool(
    database_url: str,
    min_size: int = 1,
    max_size: int = 5,
    command_timeout: float = 30.0,
    **kwargs,
):
    """Create an asyncpg connection pool.

    Raises:
        ConnectionPoolError: If pool creation fails
    """
    try:
        pool = await asyncpg.create_pool(
            database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
            **kwargs,
        )
    except Exception as e:
        raise ConnectionPoolError(f"Failed to create database pool: {e}", cause=e)

    logger.info(f"Database pool created (min={min_size}, max={max_size})")
    return pool


async def close_pool(pool, timeout: float = 10.0):
    """Close the pool, terminating it if connections do not drain in time."""
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=timeout)
        logger.info("Database pool closed")
    except asyncio.TimeoutError:
        logger.warning(f"Pool close timed out after {timeout}s, terminating")
        pool.terminate()


async def check_database_health(pool) -> dict[str, Any]:
    """Report whether the local database answers, for the health endpoint."""
    if pool is None:
        return {"healthy": False, "error": "Pool not initialized"}

    try:
        async with database_connection(pool) as conn:
            result = await conn.fetchval("SELECT 1")
    except StorageError as e:
        return {"healthy": False, "error": str(e)}

    pool_size = pool.get_size()
    pool_free = pool.get_idle_size()
    return {
        "healthy": result == 1,
        "pool_size": pool_size,
        "pool_free": pool_free,
        "pool_used": pool_size - pool_free,
    }


__all__ = [
    "database_transaction",
    "database_connection",
    "create_pool",
    "close_pool",
    "check_database_health",
]
