"""
Report Generator for mediator load simulations.

Writes one JSON document per run into the reports directory:
- report-{testId}.json: run metadata, per-agent metrics and totals
- consolidated-report-{testId}.json: run metadata, totals and raw messages

Usage:
    generator = ReportGenerator(aggregator, reports_dir="reports")
    result = await generator.generate_report(test_id)
    print(result["reportPath"])
"""

import json
from enum import Enum
from pathlib import Path
from typing import Union

import structlog

from ..errors import RunNotFound
from ..infrastructure.ledger_store import run_key
from ..infrastructure.records import RunRecord, utcnow
from ..metrics.aggregator import MetricsAggregator

logger = structlog.get_logger()


class ReportKind(str, Enum):
    """Supported report documents."""
    STANDARD = "report"
    CONSOLIDATED = "consolidated-report"


class ReportGenerator:
    """Assembles run reports from the ledger and saves them as JSON files."""

    def __init__(self, aggregator: MetricsAggregator, reports_dir: Union[str, Path] = "reports"):
        self.aggregator = aggregator
        self.reports_dir = Path(reports_dir)

    def report_path(self, run_id: str, kind: ReportKind = ReportKind.STANDARD) -> Path:
        return self.reports_dir / f"{kind.value}-{run_id}.json"

    async def _load_run(self, run_id: str) -> RunRecord:
        raw = await self.aggregator.store.get(run_key(run_id))
        if raw is None:
            raise RunNotFound(run_id)
        return RunRecord.model_validate_json(raw)

    async def generate_report(self, run_id: str) -> dict:
        """
        Write the per-agent report for a run.

        Raises:
            RunNotFound: no record for ``run_id``
        """
        record = await self._load_run(run_id)
        document = {
            "generatedAt": utcnow().isoformat(),
            "test": record.to_dict(),
            "metricsByAgent": await self.aggregator.calculate_metrics_by_agent(run_id),
            "totals": await self.aggregator.calculate_totals(run_id),
        }
        return self._save(run_id, ReportKind.STANDARD, document)

    async def generate_consolidated_report(self, run_id: str) -> dict:
        """
        Write the consolidated report (config, totals, every message) for a run.

        Raises:
            RunNotFound: no record for ``run_id``
        """
        record = await self._load_run(run_id)
        messages = await self.aggregator.get_messages_by_test_id(run_id)
        document = {
            "generatedAt": utcnow().isoformat(),
            "test": record.to_dict(),
            "config": record.config.to_dict(),
            "totals": await self.aggregator.calculate_totals(run_id),
            "messageCount": len(messages),
            "messages": [m.to_dict() for m in messages],
        }
        return self._save(run_id, ReportKind.CONSOLIDATED, document)

    def _save(self, run_id: str, kind: ReportKind, document: dict) -> dict:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        path = self.report_path(run_id, kind)
        path.write_text(json.dumps(document, indent=2, default=str))
        logger.info("reports.generated", test_id=run_id, kind=kind.value, path=str(path))
        return {"reportPath": str(path)}
