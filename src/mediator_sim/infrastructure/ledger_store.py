"""
Redis wrapper used as the simulation ledger.

Holds run records, message records, the thread-id side index and the
per-run statistics hashes. Every mutation is either additive (HINCRBY)
or last-writer-wins on a disjoint key, so no optimistic-concurrency
retries are needed.
"""

import os
from typing import Any, AsyncIterator, Optional, Union

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

RUN_PREFIX = "test:"
STATS_SUFFIX = ":stats"
MESSAGE_PREFIX = "message:"
THREAD_PREFIX = "thread:"
DELIVERED_PREFIX = "delivered:"


def run_key(run_id: str) -> str:
    return f"{RUN_PREFIX}{run_id}"


def stats_key(run_id: str) -> str:
    return f"{RUN_PREFIX}{run_id}{STATS_SUFFIX}"


def message_key(run_id: str, thread_id: str) -> str:
    return f"{MESSAGE_PREFIX}{run_id}:{thread_id}"


def message_pattern(run_id: str) -> str:
    return f"{MESSAGE_PREFIX}{run_id}:*"


def thread_key(thread_id: str) -> str:
    return f"{THREAD_PREFIX}{thread_id}"


def delivered_key(thread_id: str) -> str:
    return f"{DELIVERED_PREFIX}{thread_id}"


class LedgerStore:
    """
    Async Redis ledger.

    Supports:
    - String get/set of JSON records
    - Hash counters for run statistics
    - Paged key scans with pipelined multi-get
    - Pipelined writes for send and delivery bookkeeping
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialize ledger store.

        Args:
            url: Redis connection URL (default: from REDIS_URL env var)
            client: Pre-built client, used as-is (tests, shared pools)
        """
        self.url = url or os.getenv("REDIS_URL", "redis://localhost:6379")
        self._client: Optional[redis.Redis] = client

    @property
    def client(self) -> redis.Redis:
        """Get Redis client, raising if not connected."""
        if self._client is None:
            raise RuntimeError("LedgerStore not connected. Call connect() first.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> "LedgerStore":
        """
        Connect to Redis and verify the connection.

        Returns:
            Self for chaining
        """
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        await self._client.ping()
        logger.info("ledger_store.connected", url=self.url.split("@")[-1])
        return self

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("ledger_store.disconnected")

    async def __aenter__(self) -> "LedgerStore":
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Strings
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """
        Set a string value.

        Args:
            key: Key to write
            value: Serialized value
            ex: Optional expiry in seconds
            nx: Only set if the key does not exist

        Returns:
            True if the value was written
        """
        result = await self.client.set(key, value, ex=ex, nx=nx)
        return bool(result)

    # -------------------------------------------------------------------------
    # Hashes
    # -------------------------------------------------------------------------

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self.client.hincrby(key, field, amount)

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self.client.hgetall(key)

    # -------------------------------------------------------------------------
    # Scanning
    # -------------------------------------------------------------------------

    async def scan_pages(self, pattern: str, count: int = 1000) -> AsyncIterator[list[str]]:
        """
        Iterate matching keys one SCAN page at a time.

        Args:
            pattern: Glob-style key pattern
            count: SCAN COUNT hint per round-trip

        Yields:
            Non-empty lists of keys
        """
        cursor = 0
        while True:
            cursor, keys = await self.client.scan(cursor=cursor, match=pattern, count=count)
            if keys:
                yield list(keys)
            if cursor == 0:
                break

    async def multi_get(self, keys: list[str]) -> list[tuple[str, Union[Optional[str], Exception]]]:
        """
        Fetch many string values in one pipelined round-trip.

        Per-key errors (e.g. WRONGTYPE) are returned in place of the value
        instead of failing the whole batch.

        Returns:
            List of (key, value-or-error) tuples in input order
        """
        if not keys:
            return []
        pipe = self.client.pipeline(transaction=False)
        for key in keys:
            pipe.get(key)
        values = await pipe.execute(raise_on_error=False)
        return list(zip(keys, values))

    # -------------------------------------------------------------------------
    # Bookkeeping writes
    # -------------------------------------------------------------------------

    async def write_sent_message(
        self,
        record_key: str,
        record_json: str,
        index_key: str,
        run_id: str,
        index_ttl_seconds: int,
    ) -> None:
        """Write a message record together with its thread-id side index."""
        pipe = self.client.pipeline(transaction=False)
        pipe.set(record_key, record_json)
        pipe.set(index_key, run_id, ex=index_ttl_seconds)
        await pipe.execute()

    async def write_delivery(
        self,
        record_key: str,
        record_json: str,
        statistics_key: str,
        processing_time_ms: int,
    ) -> None:
        """Patch a delivered message record and bump run statistics atomically."""
        pipe = self.client.pipeline(transaction=True)
        pipe.set(record_key, record_json)
        pipe.hincrby(statistics_key, "totalMessages", 1)
        pipe.hincrby(statistics_key, "totalProcessingTimeMs", processing_time_ms)
        await pipe.execute()

    # -------------------------------------------------------------------------
    # Utilities
    # -------------------------------------------------------------------------

    async def flush_all(self) -> Any:
        """Wipe the whole database. Destructive and unscoped."""
        result = await self.client.flushall()
        logger.warning("ledger_store.flushed", url=self.url.split("@")[-1])
        return result


# -------------------------------------------------------------------------
# Convenience factory
# -------------------------------------------------------------------------

async def create_ledger_store(url: Optional[str] = None) -> LedgerStore:
    """
    Create and connect a ledger store.

    Args:
        url: Redis URL (default: from REDIS_URL env)

    Returns:
        Connected LedgerStore instance
    """
    store = LedgerStore(url=url)
    await store.connect()
    return store
