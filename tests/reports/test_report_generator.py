"""Tests for JSON report generation."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from mediator_sim.errors import RunNotFound
from mediator_sim.infrastructure.records import MessageRecord, RunConfig, RunRecord
from mediator_sim.metrics.aggregator import MetricsAggregator
from mediator_sim.reports.generator import ReportGenerator, ReportKind

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def generator(store, tmp_path):
    return ReportGenerator(MetricsAggregator(store), reports_dir=tmp_path / "out" / "reports")


@pytest.fixture
async def seeded(redis_client, store):
    record = RunRecord(
        test_id="t1",
        test_name="Baseline",
        test_description="mediator v1",
        config=RunConfig(messages_per_batch=1, duration_ms=1000, agent_count=2, agent_prefix="Agent"),
        start_time=T0,
        estimated_end_time=T0 + timedelta(seconds=1),
    )
    await redis_client.set("test:t1", record.to_json())

    sent = MessageRecord(from_tenant_id="Agent-1", to_tenant_id="Agent-2", message="m1", timestamp=T0)
    delivered = sent.mark_processed(T0 + timedelta(milliseconds=42))
    await redis_client.set("message:t1:a", delivered.to_json())
    await redis_client.set(
        "message:t1:b",
        MessageRecord(from_tenant_id="Agent-2", to_tenant_id="Agent-1", message="m2", timestamp=T0).to_json(),
    )
    await store.write_delivery("message:t1:a", delivered.to_json(), "test:t1:stats", 42)
    return record


class TestReportGenerator:
    """Tests for report files."""

    def test_deterministic_paths(self, generator):
        assert generator.report_path("t1").name == "report-t1.json"
        assert generator.report_path("t1", ReportKind.CONSOLIDATED).name == "consolidated-report-t1.json"

    @pytest.mark.asyncio
    async def test_unknown_run(self, generator):
        with pytest.raises(RunNotFound):
            await generator.generate_report("ghost")
        with pytest.raises(RunNotFound):
            await generator.generate_consolidated_report("ghost")

    @pytest.mark.asyncio
    async def test_report(self, generator, seeded):
        result = await generator.generate_report("t1")

        path = Path(result["reportPath"])
        assert path == generator.reports_dir / "report-t1.json"
        document = json.loads(path.read_text())
        assert document["test"]["testId"] == "t1"
        assert document["test"]["testDescription"] == "mediator v1"
        assert document["totals"] == {
            "totalMessages": 1,
            "totalProcessingTimeMs": 42,
            "averageProcessingTimeMs": 42,
        }
        assert document["metricsByAgent"]["Agent-1"] == [
            {"toTenantId": "Agent-2", "message": "m1", "processingTimeMs": 42}
        ]
        assert document["metricsByAgent"]["Agent-2"][0]["processingTimeMs"] is None

    @pytest.mark.asyncio
    async def test_consolidated_report(self, generator, seeded):
        result = await generator.generate_consolidated_report("t1")

        document = json.loads(Path(result["reportPath"]).read_text())
        assert Path(result["reportPath"]).name == "consolidated-report-t1.json"
        assert document["config"]["agentCount"] == 2
        assert document["messageCount"] == 2
        assert sorted(m["message"] for m in document["messages"]) == ["m1", "m2"]
        assert document["totals"]["totalMessages"] == 1

    @pytest.mark.asyncio
    async def test_report_without_deliveries(self, generator, redis_client, seeded):
        await redis_client.delete("test:t1:stats")

        result = await generator.generate_report("t1")

        document = json.loads(Path(result["reportPath"]).read_text())
        assert document["totals"] == {}
