"""
Delivery tracking between sends and their completion events.

The identity provider reports delivery with nothing but a thread id,
so every recorded send also writes a ``thread:{threadId} -> runId``
side index. The completion handler resolves the run through it, claims
the thread once, then patches the message record and bumps the run
statistics in a single transaction.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import structlog
from pydantic import ValidationError

from ..infrastructure.ledger_store import (
    LedgerStore,
    delivered_key,
    message_key,
    stats_key,
    thread_key,
)
from ..infrastructure.records import MessageRecord

logger = structlog.get_logger()


class DeliveryTracker:
    """Writes message records and applies delivery confirmations."""

    def __init__(
        self,
        store: LedgerStore,
        index_ttl_seconds: int = 86_400,
        lookup_attempts: int = 3,
        lookup_delay_ms: int = 50,
    ):
        self.store = store
        self.index_ttl_seconds = index_ttl_seconds
        self.lookup_attempts = max(1, lookup_attempts)
        self.lookup_delay_ms = lookup_delay_ms

    async def record_sent(self, run_id: str, thread_id: str, record: MessageRecord) -> None:
        """Persist a send-only message record and its side index."""
        await self.store.write_sent_message(
            message_key(run_id, thread_id),
            record.to_json(),
            thread_key(thread_id),
            run_id,
            self.index_ttl_seconds,
        )
        logger.debug(
            "delivery.recorded",
            test_id=run_id,
            thread_id=thread_id,
            from_tenant=record.from_tenant_id,
            to_tenant=record.to_tenant_id,
        )

    async def _lookup(self, thread_id: str) -> tuple[Optional[str], Optional[str]]:
        """Resolve (run_id, raw record), tolerating a send still being recorded."""
        for attempt in range(self.lookup_attempts):
            run_id = await self.store.get(thread_key(thread_id))
            if run_id:
                raw = await self.store.get(message_key(run_id, thread_id))
                if raw:
                    return run_id, raw
            if attempt + 1 < self.lookup_attempts:
                await asyncio.sleep(self.lookup_delay_ms / 1000)
        return None, None

    async def on_delivered(self, thread_id: str, processed_at: datetime) -> bool:
        """
        Apply one delivery-completion event.

        Never raises: the provider's event loop must not be disturbed by
        ledger problems.

        Returns:
            True if the record was patched by this call
        """
        if processed_at.tzinfo is None:
            processed_at = processed_at.replace(tzinfo=timezone.utc)

        try:
            run_id, raw = await self._lookup(thread_id)
            if run_id is None:
                # Sends outside a simulation run (manual traffic) land here too.
                logger.warning("delivery.record_not_found", thread_id=thread_id)
                return False

            record = MessageRecord.model_validate_json(raw)
            if record.is_processed:
                logger.debug("delivery.already_processed", test_id=run_id, thread_id=thread_id)
                return False

            claimed = await self.store.set(
                delivered_key(thread_id), run_id, ex=self.index_ttl_seconds, nx=True
            )
            if not claimed:
                logger.debug("delivery.duplicate_event", test_id=run_id, thread_id=thread_id)
                return False

            patched = record.mark_processed(processed_at)
            await self.store.write_delivery(
                message_key(run_id, thread_id),
                patched.to_json(),
                stats_key(run_id),
                patched.processing_time_ms,
            )
            logger.info(
                "delivery.processed",
                test_id=run_id,
                thread_id=thread_id,
                processing_time_ms=patched.processing_time_ms,
            )
            return True

        except ValidationError as e:
            logger.error("delivery.corrupt_record", thread_id=thread_id, error=str(e))
        except Exception as e:
            logger.error(
                "delivery.update_failed",
                thread_id=thread_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        return False
