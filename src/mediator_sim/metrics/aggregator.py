"""
Read-side views over the simulation ledger.

Message queries page through ``message:{testId}:*`` with SCAN and fetch
each page with one pipelined multi-get. Totals come from the
precomputed statistics hash, never from a scan.
"""

from collections import defaultdict
from typing import Optional

import structlog
from pydantic import ValidationError

from ..infrastructure.ledger_store import (
    RUN_PREFIX,
    STATS_SUFFIX,
    LedgerStore,
    message_pattern,
    stats_key,
)
from ..infrastructure.records import MessageRecord, RunRecord, RunStatistics

logger = structlog.get_logger()


class MetricsAggregator:
    """Queries message records, run statistics and run records."""

    def __init__(self, store: LedgerStore, scan_batch_size: int = 1000):
        self.store = store
        self.scan_batch_size = scan_batch_size

    async def get_messages_by_test_id(self, run_id: str) -> list[MessageRecord]:
        """
        Collect every message record of a run.

        Corrupt or unreadable entries are logged and skipped. Order
        follows store scan order.
        """
        messages: list[MessageRecord] = []
        skipped = 0

        async for keys in self.store.scan_pages(message_pattern(run_id), count=self.scan_batch_size):
            for key, raw in await self.store.multi_get(keys):
                if raw is None:
                    # Expired or deleted between SCAN and GET.
                    continue
                if isinstance(raw, Exception):
                    skipped += 1
                    logger.warning("metrics.unreadable_message", key=key, error=str(raw))
                    continue
                try:
                    messages.append(MessageRecord.model_validate_json(raw))
                except ValidationError as e:
                    skipped += 1
                    logger.warning("metrics.corrupt_message", key=key, error=str(e))

        logger.debug("metrics.messages_loaded", test_id=run_id, count=len(messages), skipped=skipped)
        return messages

    async def calculate_metrics_by_agent(self, run_id: str) -> dict[str, list[dict]]:
        """Group a run's messages by sender."""
        grouped: dict[str, list[dict]] = defaultdict(list)
        for record in await self.get_messages_by_test_id(run_id):
            grouped[record.from_tenant_id].append(
                {
                    "toTenantId": record.to_tenant_id,
                    "message": record.message,
                    "processingTimeMs": record.processing_time_ms,
                }
            )
        return dict(grouped)

    async def get_statistics(self, run_id: str) -> Optional[RunStatistics]:
        data = await self.store.hgetall(stats_key(run_id))
        if not data:
            return None
        return RunStatistics.from_hash(data)

    async def calculate_totals(self, run_id: str) -> dict:
        """
        Totals from the run statistics hash.

        Returns:
            {} when nothing was delivered yet, otherwise totalMessages,
            totalProcessingTimeMs and the rounded averageProcessingTimeMs
        """
        stats = await self.get_statistics(run_id)
        if stats is None:
            return {}
        return {
            "totalMessages": stats.total_messages,
            "totalProcessingTimeMs": stats.total_processing_time_ms,
            "averageProcessingTimeMs": stats.average_processing_time_ms,
        }

    async def get_tests(self) -> list[RunRecord]:
        """All run records, newest first."""
        tests: list[RunRecord] = []
        async for keys in self.store.scan_pages(f"{RUN_PREFIX}*", count=self.scan_batch_size):
            record_keys = [k for k in keys if not k.endswith(STATS_SUFFIX)]
            for key, raw in await self.store.multi_get(record_keys):
                if raw is None or isinstance(raw, Exception):
                    continue
                try:
                    tests.append(RunRecord.model_validate_json(raw))
                except ValidationError as e:
                    logger.warning("metrics.corrupt_run_record", key=key, error=str(e))

        tests.sort(key=lambda r: r.start_time, reverse=True)
        return tests

    async def clear_database(self) -> None:
        """Wipe the entire ledger, across all runs."""
        await self.store.flush_all()
        logger.warning("metrics.database_cleared")
