"""
Service facade for the mediator load simulation.

Wires the ledger store, identity provider, agent pool, delivery tracker,
orchestrator, metrics aggregator and report generator together and
exposes the public operations in one place.

Usage:
    async with SimulationTestService.from_settings() as service:
        result = await service.simulate_test(config)
        record = await service.wait_for_run(result["testId"])
        totals = await service.calculate_totals(result["testId"])
"""

from typing import Optional

import structlog

from .agents.delivery import DeliveryTracker
from .agents.identity import IdentityProvider, load_identity_provider
from .agents.pool import AgentPool
from .config import Settings, get_settings
from .infrastructure.ledger_store import LedgerStore
from .infrastructure.records import MessageRecord, RunRecord, SimulationConfig
from .metrics.aggregator import MetricsAggregator
from .orchestration.orchestrator import SimulationOrchestrator
from .reports.generator import ReportGenerator
from .sim_logging.agent_log import build_agent_log_writer

logger = structlog.get_logger()


class SimulationTestService:
    """Entry point for running and inspecting simulations."""

    def __init__(
        self,
        store: LedgerStore,
        provider: IdentityProvider,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.provider = provider

        self.tracker = DeliveryTracker(
            store,
            index_ttl_seconds=self.settings.thread_index_ttl_seconds,
            lookup_attempts=self.settings.delivery_lookup_attempts,
            lookup_delay_ms=self.settings.delivery_lookup_delay_ms,
        )
        self.pool = AgentPool(
            provider,
            tracker=self.tracker,
            agent_log=build_agent_log_writer(self.settings.agent_log_dir),
        )
        self.orchestrator = SimulationOrchestrator(store, self.pool, settings=self.settings)
        self.aggregator = MetricsAggregator(store, scan_batch_size=self.settings.scan_batch_size)
        self.reports = ReportGenerator(self.aggregator, reports_dir=self.settings.reports_dir)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SimulationTestService":
        """Build the full graph from settings. The store connects on enter."""
        settings = settings or get_settings()
        store = LedgerStore(url=settings.redis_url)
        provider = load_identity_provider(settings.identity_provider)
        return cls(store, provider, settings=settings)

    async def __aenter__(self) -> "SimulationTestService":
        if not self.store.is_connected:
            await self.store.connect()
        else:
            await self.store.client.ping()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop active runs, finish cleanups, then release the provider and store."""
        try:
            await self.orchestrator.shutdown()
            await self.provider.close()
        finally:
            await self.store.disconnect()

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def simulate_test(self, config: SimulationConfig) -> dict:
        return await self.orchestrator.simulate_test(config)

    async def stop_simulation(self, run_id: str) -> dict:
        return await self.orchestrator.stop_simulation(run_id)

    async def get_test(self, run_id: str) -> RunRecord:
        return await self.orchestrator.get_test(run_id)

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> RunRecord:
        return await self.orchestrator.wait_for_run(run_id, timeout=timeout)

    async def activate_tenants_for_test(self, run_id: str, cleanup_delay_ms: Optional[int] = None) -> dict:
        return await self.orchestrator.activate_tenants_for_test(run_id, cleanup_delay_ms)

    async def recover_interrupted_runs(self, grace_ms: Optional[int] = None) -> list[str]:
        return await self.orchestrator.recover_interrupted_runs(grace_ms)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_messages_by_test_id(self, run_id: str) -> list[MessageRecord]:
        return await self.aggregator.get_messages_by_test_id(run_id)

    async def calculate_metrics_by_agent(self, run_id: str) -> dict[str, list[dict]]:
        return await self.aggregator.calculate_metrics_by_agent(run_id)

    async def calculate_totals(self, run_id: str) -> dict:
        return await self.aggregator.calculate_totals(run_id)

    async def get_tests(self) -> list[RunRecord]:
        return await self.aggregator.get_tests()

    async def generate_report(self, run_id: str) -> dict:
        return await self.reports.generate_report(run_id)

    async def generate_consolidated_report(self, run_id: str) -> dict:
        return await self.reports.generate_consolidated_report(run_id)

    async def clear_database(self) -> None:
        await self.aggregator.clear_database()
