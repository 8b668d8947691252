"""Tests for the metrics aggregator."""

from datetime import datetime, timedelta, timezone

import pytest

from mediator_sim.infrastructure.records import (
    MessageRecord,
    RunConfig,
    RunRecord,
    RunStatus,
)
from mediator_sim.metrics.aggregator import MetricsAggregator

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _message(sender, receiver, n, processing_ms=None) -> MessageRecord:
    record = MessageRecord(
        from_tenant_id=sender,
        to_tenant_id=receiver,
        message=f"Message #{n} from {sender} to {receiver}",
        timestamp=T0,
    )
    if processing_ms is not None:
        record = record.mark_processed(T0 + timedelta(milliseconds=processing_ms))
    return record


def _run(run_id, started, status=RunStatus.COMPLETED) -> RunRecord:
    return RunRecord(
        test_id=run_id,
        test_name=f"run {run_id}",
        config=RunConfig(messages_per_batch=1, duration_ms=1000, agent_count=2, agent_prefix="Agent"),
        start_time=started,
        estimated_end_time=started + timedelta(seconds=1),
        status=status,
    )


@pytest.fixture
def aggregator(store):
    # Small pages so multi-page scans are exercised
    return MetricsAggregator(store, scan_batch_size=2)


class TestMessages:
    """Tests for message record queries."""

    @pytest.mark.asyncio
    async def test_collects_run_messages_only(self, aggregator, redis_client):
        for i in range(5):
            await redis_client.set(f"message:t1:th{i}", _message("Agent-1", "Agent-2", i).to_json())
        await redis_client.set("message:t2:other", _message("Agent-9", "Agent-8", 1).to_json())

        messages = await aggregator.get_messages_by_test_id("t1")

        assert len(messages) == 5
        assert {m.from_tenant_id for m in messages} == {"Agent-1"}

    @pytest.mark.asyncio
    async def test_corrupt_entries_are_skipped(self, aggregator, redis_client):
        await redis_client.set("message:t1:good", _message("Agent-1", "Agent-2", 1).to_json())
        await redis_client.set("message:t1:bad", "{not json")
        await redis_client.set("message:t1:partial", '{"fromTenantId": "Agent-1"}')
        await redis_client.hset("message:t1:wrongtype", "f", "v")

        messages = await aggregator.get_messages_by_test_id("t1")

        assert [m.message for m in messages] == ["Message #1 from Agent-1 to Agent-2"]

    @pytest.mark.asyncio
    async def test_unknown_run_is_empty(self, aggregator):
        assert await aggregator.get_messages_by_test_id("nothing") == []
        assert await aggregator.calculate_metrics_by_agent("nothing") == {}

    @pytest.mark.asyncio
    async def test_metrics_grouped_by_sender(self, aggregator, redis_client):
        await redis_client.set("message:t1:a", _message("Agent-1", "Agent-2", 1, processing_ms=40).to_json())
        await redis_client.set("message:t1:b", _message("Agent-1", "Agent-3", 2).to_json())
        await redis_client.set("message:t1:c", _message("Agent-2", "Agent-1", 1, processing_ms=15).to_json())

        metrics = await aggregator.calculate_metrics_by_agent("t1")

        assert set(metrics) == {"Agent-1", "Agent-2"}
        assert sorted(metrics["Agent-1"], key=lambda m: m["toTenantId"]) == [
            {"toTenantId": "Agent-2", "message": "Message #1 from Agent-1 to Agent-2", "processingTimeMs": 40},
            {"toTenantId": "Agent-3", "message": "Message #2 from Agent-1 to Agent-3", "processingTimeMs": None},
        ]
        assert metrics["Agent-2"] == [
            {"toTenantId": "Agent-1", "message": "Message #1 from Agent-2 to Agent-1", "processingTimeMs": 15},
        ]


class TestTotals:
    """Tests for totals read from run statistics."""

    @pytest.mark.asyncio
    async def test_no_statistics(self, aggregator):
        assert await aggregator.calculate_totals("t1") == {}

    @pytest.mark.asyncio
    async def test_average(self, aggregator, store):
        await store.write_delivery("message:t1:a", "{}", "test:t1:stats", 50)
        await store.write_delivery("message:t1:b", "{}", "test:t1:stats", 30)

        assert await aggregator.calculate_totals("t1") == {
            "totalMessages": 2,
            "totalProcessingTimeMs": 80,
            "averageProcessingTimeMs": 40,
        }

    @pytest.mark.asyncio
    async def test_average_rounds_half_up(self, aggregator, redis_client):
        await redis_client.hset("test:t1:stats", mapping={"totalMessages": 2, "totalProcessingTimeMs": 5})

        totals = await aggregator.calculate_totals("t1")

        assert totals["averageProcessingTimeMs"] == 3


class TestRuns:
    """Tests for run listing and database reset."""

    @pytest.mark.asyncio
    async def test_get_tests_newest_first(self, aggregator, redis_client):
        await redis_client.set("test:old", _run("old", T0).to_json())
        await redis_client.set("test:new", _run("new", T0 + timedelta(hours=1)).to_json())
        await redis_client.set("test:mid", _run("mid", T0 + timedelta(minutes=30), RunStatus.FAILED).to_json())
        await redis_client.hset("test:new:stats", mapping={"totalMessages": 1, "totalProcessingTimeMs": 3})
        await redis_client.set("test:corrupt", "garbage")

        tests = await aggregator.get_tests()

        assert [t.test_id for t in tests] == ["new", "mid", "old"]
        assert tests[1].status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_get_tests_empty(self, aggregator):
        assert await aggregator.get_tests() == []

    @pytest.mark.asyncio
    async def test_get_statistics(self, aggregator, store):
        assert await aggregator.get_statistics("t1") is None
        await store.write_delivery("message:t1:a", "{}", "test:t1:stats", 12)

        stats = await aggregator.get_statistics("t1")

        assert stats.total_messages == 1
        assert stats.total_processing_time_ms == 12

    @pytest.mark.asyncio
    async def test_clear_database(self, aggregator, redis_client):
        await redis_client.set("test:old", _run("old", T0).to_json())
        await redis_client.set("message:old:x", "{}")

        await aggregator.clear_database()

        assert await redis_client.dbsize() == 0
