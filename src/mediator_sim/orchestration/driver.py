"""
Message driver for one sending tenant.

Every rate interval a batch of sends is enqueued; a per-driver semaphore
bounds how many are in flight. Each send picks a random currently
connected peer. A batch is dropped while the backlog of unfinished sends
is already full. The driver stops enqueueing at the deadline or on stop,
skips queued sends that have not started yet, and returns only after
every in-flight send has finished.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Callable, Optional

import structlog

from ..agents.pool import AgentPool
from ..errors import NotFound, PeerUnavailable
from .cancellation import StopSignal

logger = structlog.get_logger()


@dataclass
class DriverStats:
    """Per-driver sending outcome."""

    tenant_id: str
    batches: int = 0
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    peer_unavailable: int = 0
    skipped: int = 0
    throttled: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class MessageDriver:
    """Drives randomized message traffic from one tenant until deadline or stop."""

    def __init__(
        self,
        pool: AgentPool,
        tenant_id: str,
        run_id: str,
        messages_per_batch: int,
        message_rate_ms: int,
        deadline: float,
        stop_signal: StopSignal,
        max_concurrent: int = 5,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize message driver.

        Args:
            pool: Agent pool used for peer selection and sends
            tenant_id: Sending tenant
            run_id: Run the sends are recorded under
            messages_per_batch: Sends enqueued per rate interval
            message_rate_ms: Interval between batches
            deadline: Soft deadline on ``clock`` (event-loop time by default)
            stop_signal: Cooperative stop flag for the run
            max_concurrent: Ceiling on in-flight sends
            clock: Monotonic clock in seconds
        """
        self.pool = pool
        self.tenant_id = tenant_id
        self.run_id = run_id
        self.messages_per_batch = messages_per_batch
        self.rate_seconds = message_rate_ms / 1000
        self.deadline = deadline
        self.stop_signal = stop_signal
        self.max_concurrent = max_concurrent
        # Batches are dropped while this many sends are still queued or running
        self.backlog_limit = max_concurrent * messages_per_batch
        self._clock = clock or asyncio.get_running_loop().time
        self.stats = DriverStats(tenant_id=tenant_id)
        self._sequence = 0

    def _should_stop(self) -> bool:
        return self.stop_signal.is_set() or self._clock() >= self.deadline

    async def run(self) -> DriverStats:
        semaphore = asyncio.Semaphore(self.max_concurrent)
        in_flight: set[asyncio.Task] = set()

        logger.info(
            "driver.started",
            test_id=self.run_id,
            tenant_id=self.tenant_id,
            messages_per_batch=self.messages_per_batch,
            rate_ms=int(self.rate_seconds * 1000),
        )

        try:
            while not self._should_stop():
                if len(in_flight) >= self.backlog_limit:
                    self.stats.throttled += 1
                    logger.debug(
                        "driver.backlog_full",
                        test_id=self.run_id,
                        tenant_id=self.tenant_id,
                        in_flight=len(in_flight),
                    )
                else:
                    self.stats.batches += 1
                    for _ in range(self.messages_per_batch):
                        self._sequence += 1
                        task = asyncio.create_task(self._send_one(self._sequence, semaphore))
                        in_flight.add(task)
                        task.add_done_callback(in_flight.discard)

                remaining = self.deadline - self._clock()
                await self.stop_signal.wait(min(self.rate_seconds, max(0.0, remaining)))

            while in_flight:
                await asyncio.gather(*list(in_flight), return_exceptions=True)

        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            raise

        logger.info("driver.finished", test_id=self.run_id, **self.stats.to_dict())
        return self.stats

    async def _send_one(self, sequence: int, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            if self._should_stop():
                self.stats.skipped += 1
                return

            self.stats.attempted += 1
            to_tenant = None
            try:
                connection = await self.pool.choose_peer(self.tenant_id)
                if connection is None:
                    self.stats.peer_unavailable += 1
                    logger.debug("driver.no_peer", test_id=self.run_id, tenant_id=self.tenant_id)
                    return

                to_tenant = connection.peer_label
                payload = f"Message #{sequence} from {self.tenant_id} to {to_tenant}"
                await self.pool.send_on_connection(self.tenant_id, connection, payload, run_id=self.run_id)
                self.stats.sent += 1
                logger.debug(
                    "driver.sent",
                    test_id=self.run_id,
                    from_tenant=self.tenant_id,
                    to_tenant=to_tenant,
                    sequence=sequence,
                )

            except (PeerUnavailable, NotFound) as e:
                self.stats.peer_unavailable += 1
                logger.info(
                    "driver.peer_unavailable",
                    test_id=self.run_id,
                    from_tenant=self.tenant_id,
                    to_tenant=to_tenant,
                    error=str(e),
                )
            except Exception as e:
                self.stats.failed += 1
                logger.error(
                    "driver.send_failed",
                    test_id=self.run_id,
                    from_tenant=self.tenant_id,
                    to_tenant=to_tenant,
                    sequence=sequence,
                    error_type=type(e).__name__,
                    error=str(e),
                )
