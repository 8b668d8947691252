"""
Simulation run orchestrator.

Each run is one background task moving through:
    create agents -> build mesh -> drive messages -> settle -> clean up

Status transitions follow RunStatus.can_transition_to and are written
under a per-run lock, so a stop request racing the run's own settlement
can never move a record backwards. Agents created by a run are always
torn down, whatever happened before.

Usage:
    orchestrator = SimulationOrchestrator(store, pool, settings=settings)
    result = await orchestrator.simulate_test(config)
    record = await orchestrator.wait_for_run(result["testId"])
"""

import asyncio
import functools
import uuid
from datetime import timedelta
from typing import Iterable, Optional

import structlog
from pydantic import ValidationError

from ..agents.pool import AgentPool
from ..config import Settings, get_settings
from ..errors import AlreadyExists, RunNotFound
from ..infrastructure.ledger_store import RUN_PREFIX, STATS_SUFFIX, LedgerStore, run_key
from ..infrastructure.records import (
    RunConfig,
    RunRecord,
    RunStatus,
    RunSummary,
    SimulationConfig,
    utcnow,
)
from .cancellation import StopSignal
from .driver import DriverStats, MessageDriver
from .mesh import ConnectionMeshBuilder, RetryPolicy

logger = structlog.get_logger()

INTERRUPTED = "interrupted"


class SimulationOrchestrator:
    """
    Owns every run started in this process.

    Registries (stop signals, run tasks, deferred deletions) are
    instance state; runs started by another process are only visible
    through the ledger.
    """

    def __init__(
        self,
        store: LedgerStore,
        pool: AgentPool,
        mesh_builder: Optional[ConnectionMeshBuilder] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            store: Connected ledger store
            pool: Agent pool shared by all runs
            mesh_builder: Mesh builder (default: built from settings)
            settings: Runtime settings (default: get_settings())
        """
        self.store = store
        self.pool = pool
        self.settings = settings or get_settings()
        self.mesh_builder = mesh_builder or ConnectionMeshBuilder(
            pool,
            retry_policy=RetryPolicy(
                max_attempts=self.settings.connection_max_attempts,
                delay_seconds=self.settings.connection_retry_delay_ms / 1000,
            ),
            timeout_ms=self.settings.connection_timeout_ms,
        )

        self._stop_signals: dict[str, StopSignal] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._settling: dict[str, asyncio.Task] = {}
        self._record_locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()
        self._closing = StopSignal()

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    async def simulate_test(self, config: SimulationConfig) -> dict:
        """
        Start a run in the background and return immediately.

        Returns:
            {"status": "running", "testId": run_id}
        """
        run_id = str(uuid.uuid4())
        run_config = config.run_config()
        started = utcnow()
        record = RunRecord(
            test_id=run_id,
            test_name=config.test_name,
            test_description=config.test_description,
            config=run_config,
            start_time=started,
            estimated_end_time=started + timedelta(milliseconds=run_config.duration_ms),
        )
        await self.store.set(run_key(run_id), record.to_json())

        stop_signal = StopSignal()
        self._stop_signals[run_id] = stop_signal
        task = asyncio.create_task(
            self._run(run_id, run_config, stop_signal),
            name=f"simulation-{run_id}",
        )
        self._tasks[run_id] = task
        task.add_done_callback(functools.partial(self._on_run_done, run_id))

        logger.info(
            "simulation.started",
            test_id=run_id,
            test_name=config.test_name,
            agents=run_config.agent_count,
            messages_per_batch=run_config.messages_per_batch,
            duration_ms=run_config.duration_ms,
            rate_ms=run_config.message_rate_ms,
        )
        return {"status": RunStatus.RUNNING.value, "testId": run_id}

    async def _run(self, run_id: str, config: RunConfig, stop_signal: StopSignal) -> None:
        created: list[str] = []
        try:
            await self._create_agents(config.agent_ids(), created)
            logger.info("simulation.agents_created", test_id=run_id, agents=len(created))
            await stop_signal.wait(config.agent_count * self.settings.agent_ready_delay_ms / 1000)

            if not stop_signal.is_set():
                await self.mesh_builder.build(created, stop_signal)
                await stop_signal.wait(self.settings.mesh_settle_delay_ms / 1000)

            summary = None
            if not stop_signal.is_set():
                stats = await self._drive(run_id, config, created, stop_signal)
                summary = self._summarize(run_id, config, stats)

            status = RunStatus.STOPPED if stop_signal.is_set() else RunStatus.COMPLETED
            await self._update_run(run_id, status, summary=summary)
            logger.info("simulation.finished", test_id=run_id, status=status.value)

        except Exception as e:
            logger.error(
                "simulation.run_error",
                test_id=run_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._update_run(run_id, RunStatus.FAILED, error=str(e))

        finally:
            # Settled: later stop requests report the run as not running
            self._stop_signals.pop(run_id, None)
            try:
                await self._closing.wait(self.settings.cleanup_delay_ms / 1000)
            finally:
                await self._delete_agents(created, run_id=run_id)

    async def _create_agents(
        self,
        tenant_ids: Iterable[str],
        created: list[str],
        skip_existing: bool = False,
    ) -> None:
        """
        Create tenants under the agent-creation ceiling.

        Every creation runs to completion; ``created`` lists the ones that
        succeeded, in input order, and the first failure is raised afterwards.
        """
        tenant_ids = list(tenant_ids)
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_agent_creation)

        async def create(tenant_id: str) -> None:
            async with semaphore:
                try:
                    await self.pool.create_tenant(tenant_id)
                except AlreadyExists:
                    if not skip_existing:
                        raise
                    logger.info("simulation.agent_already_active", tenant_id=tenant_id)
                    return
                created.append(tenant_id)

        results = await asyncio.gather(
            *(create(tenant_id) for tenant_id in tenant_ids),
            return_exceptions=True,
        )
        succeeded = set(created)
        created[:] = [tenant_id for tenant_id in tenant_ids if tenant_id in succeeded]

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]

    async def _drive(
        self,
        run_id: str,
        config: RunConfig,
        tenant_ids: list[str],
        stop_signal: StopSignal,
    ) -> list[DriverStats]:
        deadline = asyncio.get_running_loop().time() + config.duration_ms / 1000
        drivers = [
            MessageDriver(
                self.pool,
                tenant_id,
                run_id,
                messages_per_batch=config.messages_per_batch,
                message_rate_ms=config.message_rate_ms,
                deadline=deadline,
                stop_signal=stop_signal,
                max_concurrent=self.settings.max_concurrent_messages,
            )
            for tenant_id in tenant_ids
        ]
        results = await asyncio.gather(*(d.run() for d in drivers), return_exceptions=True)

        stats = []
        for driver, result in zip(drivers, results):
            if isinstance(result, BaseException):
                logger.error(
                    "simulation.driver_error",
                    test_id=run_id,
                    tenant_id=driver.tenant_id,
                    error_type=type(result).__name__,
                    error=str(result),
                )
                stats.append(driver.stats)
            else:
                stats.append(result)
        return stats

    def _summarize(self, run_id: str, config: RunConfig, stats: list[DriverStats]) -> RunSummary:
        summary = RunSummary(
            messages_attempted=sum(s.attempted for s in stats),
            messages_sent=sum(s.sent for s in stats),
            send_failures=sum(s.failed for s in stats),
            peer_unavailable=sum(s.peer_unavailable for s in stats),
            expected_messages=config.expected_messages,
        )
        threshold = summary.expected_messages * self.settings.under_delivery_warning_ratio
        if summary.messages_sent < threshold:
            logger.warning(
                "simulation.under_delivery",
                test_id=run_id,
                messages_sent=summary.messages_sent,
                expected_messages=summary.expected_messages,
            )
        return summary

    async def _delete_agents(self, tenant_ids: list[str], run_id: Optional[str] = None) -> None:
        for tenant_id in tenant_ids:
            try:
                await self.pool.delete_tenant(tenant_id)
            except Exception as e:
                logger.error(
                    "simulation.cleanup_failed",
                    test_id=run_id,
                    tenant_id=tenant_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
        if tenant_ids:
            logger.info("simulation.cleaned_up", test_id=run_id, agents=len(tenant_ids))

    def _on_run_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        self._stop_signals.pop(run_id, None)

        if task.cancelled():
            reason = "cancelled"
        else:
            error = task.exception()
            if error is None:
                self._record_locks.pop(run_id, None)
                return
            reason = str(error) or type(error).__name__

        logger.error("simulation.task_died", test_id=run_id, error=reason)
        settle = asyncio.get_running_loop().create_task(self._mark_failed(run_id, reason))
        self._settling[run_id] = settle
        settle.add_done_callback(lambda _: self._settling.pop(run_id, None))

    async def _mark_failed(self, run_id: str, reason: str) -> None:
        try:
            await self._update_run(run_id, RunStatus.FAILED, error=reason)
        except Exception as e:
            logger.error("simulation.mark_failed_error", test_id=run_id, error=str(e))
        finally:
            self._record_locks.pop(run_id, None)

    # -------------------------------------------------------------------------
    # Run record
    # -------------------------------------------------------------------------

    async def _update_run(self, run_id: str, status: RunStatus, **fields) -> Optional[RunRecord]:
        """
        Move a run record to ``status``.

        Illegal transitions (anything out of a terminal state) are logged
        and skipped. Returns the record as stored afterwards.
        """
        lock = self._record_locks.setdefault(run_id, asyncio.Lock())
        async with lock:
            raw = await self.store.get(run_key(run_id))
            if raw is None:
                logger.warning("simulation.record_missing", test_id=run_id, status=status.value)
                return None

            record = RunRecord.model_validate_json(raw)
            if record.status == status:
                return record
            if not record.status.can_transition_to(status):
                logger.warning(
                    "simulation.illegal_transition",
                    test_id=run_id,
                    current=record.status.value,
                    requested=status.value,
                )
                return record

            updates = {"status": status}
            updates.update({k: v for k, v in fields.items() if v is not None})
            if status.is_terminal:
                updates["end_time"] = utcnow()
            updated = record.model_copy(update=updates)
            await self.store.set(run_key(run_id), updated.to_json())
            return updated

    async def get_test(self, run_id: str) -> RunRecord:
        """
        Read a run record.

        Raises:
            RunNotFound: no record for ``run_id``
        """
        raw = await self.store.get(run_key(run_id))
        if raw is None:
            raise RunNotFound(run_id)
        return RunRecord.model_validate_json(raw)

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> RunRecord:
        """
        Wait until a run started here has settled and return its record.

        Raises:
            asyncio.TimeoutError: the run did not settle within ``timeout``
            RunNotFound: no record for ``run_id``
        """
        task = self._tasks.get(run_id)
        if task is not None:
            done, _ = await asyncio.wait([task], timeout=timeout)
            if not done:
                raise asyncio.TimeoutError(f"Test {run_id} still running after {timeout}s")
        settle = self._settling.get(run_id)
        if settle is not None:
            await settle
        return await self.get_test(run_id)

    def active_runs(self) -> list[str]:
        return [run_id for run_id, task in self._tasks.items() if not task.done()]

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def stop_simulation(self, run_id: str) -> dict:
        """
        Request a cooperative stop.

        Unknown or already finished runs are reported, not raised.
        """
        stop_signal = self._stop_signals.get(run_id)
        task = self._tasks.get(run_id)
        if stop_signal is None or task is None or task.done():
            return {
                "status": "not_running",
                "testId": run_id,
                "message": f"Test {run_id} is not running",
            }

        stop_signal.set()
        updated = await self._update_run(run_id, RunStatus.STOPPING)
        if updated is not None and updated.status.is_terminal:
            return {
                "status": "not_running",
                "testId": run_id,
                "message": f"Test {run_id} already {updated.status.value}",
            }
        logger.info("simulation.stop_requested", test_id=run_id)
        return {
            "status": RunStatus.STOPPING.value,
            "testId": run_id,
            "message": f"Stopping test {run_id}",
        }

    async def activate_tenants_for_test(self, run_id: str, cleanup_delay_ms: Optional[int] = None) -> dict:
        """
        Recreate a run's agents for manual traffic, then delete them later.

        Already-registered tenants are left alone and not scheduled for
        deletion.

        Raises:
            RunNotFound: no record for ``run_id``
            ProvisioningError: an identity could not be created
        """
        record = await self.get_test(run_id)
        delay_ms = self.settings.cleanup_delay_ms if cleanup_delay_ms is None else cleanup_delay_ms

        activated: list[str] = []
        try:
            await self._create_agents(record.config.agent_ids(), activated, skip_existing=True)
        except Exception:
            await self._delete_agents(activated, run_id=run_id)
            raise

        task = asyncio.create_task(self._deferred_delete(run_id, activated, delay_ms))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        logger.info("simulation.tenants_activated", test_id=run_id, tenants=activated, cleanup_delay_ms=delay_ms)
        return {"tenantIds": activated, "cleanupDelayMs": delay_ms}

    async def _deferred_delete(self, run_id: str, tenant_ids: list[str], delay_ms: int) -> None:
        await self._closing.wait(delay_ms / 1000)
        await self._delete_agents(tenant_ids, run_id=run_id)

    async def recover_interrupted_runs(self, grace_ms: Optional[int] = None) -> list[str]:
        """
        Fail runs a dead process left ``running`` or ``stopping``.

        A run is considered interrupted when it is not active in this
        process and its estimated end plus ``grace_ms`` has passed.

        Returns:
            Run ids marked failed
        """
        grace = timedelta(
            milliseconds=self.settings.interrupted_run_grace_ms if grace_ms is None else grace_ms
        )
        now = utcnow()
        recovered = []

        async for keys in self.store.scan_pages(f"{RUN_PREFIX}*", count=self.settings.scan_batch_size):
            record_keys = [k for k in keys if not k.endswith(STATS_SUFFIX)]
            for key, raw in await self.store.multi_get(record_keys):
                if raw is None or isinstance(raw, Exception):
                    continue
                try:
                    record = RunRecord.model_validate_json(raw)
                except ValidationError as e:
                    logger.warning("simulation.corrupt_run_record", key=key, error=str(e))
                    continue

                if record.status.is_terminal or record.test_id in self._tasks:
                    continue
                if record.estimated_end_time + grace > now:
                    continue

                updated = await self._update_run(record.test_id, RunStatus.FAILED, error=INTERRUPTED)
                self._record_locks.pop(record.test_id, None)
                if updated is not None and updated.status == RunStatus.FAILED:
                    recovered.append(record.test_id)

        if recovered:
            logger.warning("simulation.recovered_interrupted", runs=recovered)
        return recovered

    async def shutdown(self) -> None:
        """Stop every run, finish pending cleanups and wait for all of it."""
        self._closing.set()
        for stop_signal in list(self._stop_signals.values()):
            stop_signal.set()

        pending = list(self._tasks.values()) + list(self._background)
        if pending:
            logger.info("simulation.shutting_down", runs=len(self._tasks), background=len(self._background))
            await asyncio.gather(*pending, return_exceptions=True)
        settling = list(self._settling.values())
        if settling:
            await asyncio.gather(*settling, return_exceptions=True)
