"""
Connection mesh builder.

Connects every unordered pair of a run's tenants. Pairs are attempted
concurrently and independently; a pair that exhausts its attempts does
not cancel the others, and the first failure (in pair order) is raised
only after every pair has finished.
"""

import asyncio
from dataclasses import dataclass
from itertools import combinations
from typing import Optional, Sequence

import structlog

from ..agents.pool import AgentPool
from ..errors import ConnectionSetupFailed
from .cancellation import StopSignal

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-attempt, fixed-delay retry policy for one pair."""

    max_attempts: int = 3
    delay_seconds: float = 2.0


@dataclass
class PairOutcome:
    """Result of connecting one pair."""

    from_tenant: str
    to_tenant: str
    attempts: int
    connected: bool
    error: Optional[ConnectionSetupFailed] = None


class ConnectionMeshBuilder:
    """Builds the full connection mesh among a set of tenants."""

    def __init__(
        self,
        pool: AgentPool,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_ms: int = 5000,
    ):
        self.pool = pool
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_ms = timeout_ms

    async def build(
        self,
        tenant_ids: Sequence[str],
        stop_signal: Optional[StopSignal] = None,
    ) -> list[PairOutcome]:
        """
        Connect all pairs of ``tenant_ids``.

        Args:
            tenant_ids: Ordered tenant ids; for pair (i, j), i accepts j's invitation
            stop_signal: Polled between attempts; a stopped build returns quietly

        Returns:
            One PairOutcome per pair

        Raises:
            ConnectionSetupFailed: first pair that exhausted its attempts
        """
        pairs = list(combinations(tenant_ids, 2))
        logger.info("mesh.building", tenants=len(tenant_ids), pairs=len(pairs))

        outcomes = await asyncio.gather(
            *(self._connect_pair(a, b, stop_signal) for a, b in pairs)
        )

        failures = [o for o in outcomes if o.error is not None]
        logger.info(
            "mesh.built",
            pairs=len(pairs),
            connected=sum(1 for o in outcomes if o.connected),
            failed=len(failures),
        )
        if failures:
            raise failures[0].error
        return list(outcomes)

    async def _connect_pair(
        self,
        from_tenant: str,
        to_tenant: str,
        stop_signal: Optional[StopSignal],
    ) -> PairOutcome:
        policy = self.retry_policy
        last_error: Optional[BaseException] = None
        attempt = 0

        while attempt < policy.max_attempts:
            if stop_signal is not None and stop_signal.is_set():
                logger.info("mesh.pair_skipped_on_stop", from_tenant=from_tenant, to_tenant=to_tenant)
                return PairOutcome(from_tenant, to_tenant, attempt, connected=False)

            attempt += 1
            try:
                result = await self.pool.create_connection(from_tenant, to_tenant, timeout_ms=self.timeout_ms)
                logger.info(
                    "mesh.pair_connected",
                    from_tenant=from_tenant,
                    to_tenant=to_tenant,
                    attempt=attempt,
                    status=result["status"],
                )
                return PairOutcome(from_tenant, to_tenant, attempt, connected=True)
            except Exception as e:
                last_error = e
                logger.warning(
                    "mesh.pair_attempt_failed",
                    from_tenant=from_tenant,
                    to_tenant=to_tenant,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    error=str(e),
                )

            if attempt < policy.max_attempts:
                if stop_signal is not None:
                    await stop_signal.wait(policy.delay_seconds)
                else:
                    await asyncio.sleep(policy.delay_seconds)

        logger.error(
            "mesh.pair_failed",
            from_tenant=from_tenant,
            to_tenant=to_tenant,
            attempts=attempt,
            error=str(last_error),
        )
        return PairOutcome(
            from_tenant,
            to_tenant,
            attempt,
            connected=False,
            error=ConnectionSetupFailed(from_tenant, to_tenant, attempt, last_error),
        )
