"""
In-process identity provider for dry runs and tests.

Simulates a mediator with configurable latency and failure injection so
the orchestrator can be exercised without a live agent framework.
Delivery-completion events fire from background tasks, independent of
the send call that caused them, the way a real mediator's pickup does.
"""

import asyncio
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog

from ..errors import ProviderConnectionError, ProvisioningError, SendError, TeardownError
from .identity import (
    CONNECTION_COMPLETED,
    AgentHandle,
    ConnectionInfo,
    DeliveryCallback,
    IdentityProvider,
)

logger = structlog.get_logger()


@dataclass
class SimulatedIdentity:
    """Provider-side state of one simulated identity."""

    tenant_id: str
    connections: dict[str, ConnectionInfo] = field(default_factory=dict)
    callbacks: list[DeliveryCallback] = field(default_factory=list)


class SimulatedIdentityProvider(IdentityProvider):
    """
    Simulated mediator.

    Latencies are (min_ms, max_ms) ranges. Failure injection:
    - fail_create: tenant ids whose creation always fails
    - fail_destroy: tenant ids whose teardown always fails
    - fail_pairs: unordered tenant pairs whose handshake always fails
    - send_failure_rate: probability that a send raises SendError
    - delivery_drop_rate: probability a sent message is never confirmed
    """

    def __init__(
        self,
        create_latency_ms: tuple[int, int] = (5, 20),
        connect_latency_ms: tuple[int, int] = (5, 20),
        send_latency_ms: tuple[int, int] = (1, 5),
        delivery_latency_ms: tuple[int, int] = (5, 50),
        fail_create: Optional[set[str]] = None,
        fail_destroy: Optional[set[str]] = None,
        fail_pairs: Optional[set[frozenset[str]]] = None,
        send_failure_rate: float = 0.0,
        delivery_drop_rate: float = 0.0,
        seed: Optional[int] = None,
    ):
        self.create_latency_ms = create_latency_ms
        self.connect_latency_ms = connect_latency_ms
        self.send_latency_ms = send_latency_ms
        self.delivery_latency_ms = delivery_latency_ms
        self.fail_create = fail_create or set()
        self.fail_destroy = fail_destroy or set()
        self.fail_pairs = fail_pairs or set()
        self.send_failure_rate = send_failure_rate
        self.delivery_drop_rate = delivery_drop_rate
        self._random = random.Random(seed)

        self._identities: dict[str, SimulatedIdentity] = {}
        self._pending_deliveries: set[asyncio.Task] = set()

        # Observability for tests and dry-run summaries
        self.created_log: list[str] = []
        self.destroyed_log: list[str] = []
        self.connect_attempts: dict[frozenset[str], int] = {}
        self.sent_count = 0
        self.delivered_count = 0

    async def _latency(self, bounds: tuple[int, int]) -> None:
        low, high = bounds
        await asyncio.sleep(self._random.uniform(low, high) / 1000)

    def _identity(self, handle: AgentHandle) -> SimulatedIdentity:
        identity = self._identities.get(handle.tenant_id)
        if identity is None or handle.ref is not identity:
            raise KeyError(handle.tenant_id)
        return identity

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create(self, tenant_id: str) -> AgentHandle:
        await self._latency(self.create_latency_ms)
        if tenant_id in self.fail_create:
            raise ProvisioningError(f"Simulated provisioning failure for {tenant_id}")
        if tenant_id in self._identities:
            raise ProvisioningError(f"Wallet for {tenant_id} already exists")

        identity = SimulatedIdentity(tenant_id=tenant_id)
        self._identities[tenant_id] = identity
        self.created_log.append(tenant_id)
        logger.debug("simulated_provider.created", tenant_id=tenant_id)
        return AgentHandle(tenant_id=tenant_id, label=tenant_id, ref=identity)

    async def destroy(self, handle: AgentHandle) -> None:
        await self._latency(self.create_latency_ms)
        if handle.tenant_id in self.fail_destroy:
            raise TeardownError(f"Simulated teardown failure for {handle.tenant_id}")
        try:
            self._identity(handle)
        except KeyError:
            raise TeardownError(f"Unknown identity {handle.tenant_id}") from None

        del self._identities[handle.tenant_id]
        self.destroyed_log.append(handle.tenant_id)
        logger.debug("simulated_provider.destroyed", tenant_id=handle.tenant_id)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def list_connections(self, handle: AgentHandle) -> list[ConnectionInfo]:
        await asyncio.sleep(0)
        try:
            return list(self._identity(handle).connections.values())
        except KeyError:
            return []

    async def connect(
        self,
        from_handle: AgentHandle,
        to_handle: AgentHandle,
        timeout_ms: int = 5000,
    ) -> None:
        pair = frozenset({from_handle.tenant_id, to_handle.tenant_id})
        self.connect_attempts[pair] = self.connect_attempts.get(pair, 0) + 1

        try:
            await asyncio.wait_for(self._latency(self.connect_latency_ms), timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise ProviderConnectionError(
                f"Handshake between {from_handle.label} and {to_handle.label} timed out"
            ) from None

        if pair in self.fail_pairs:
            raise ProviderConnectionError(
                f"Simulated handshake failure between {from_handle.label} and {to_handle.label}"
            )
        try:
            inviter = self._identity(to_handle)
            invitee = self._identity(from_handle)
        except KeyError as e:
            raise ProviderConnectionError(f"Unknown identity {e.args[0]}") from None

        if any(c.peer_label == inviter.tenant_id for c in invitee.connections.values()):
            return

        invitee_conn = ConnectionInfo(str(uuid.uuid4()), inviter.tenant_id, CONNECTION_COMPLETED)
        inviter_conn = ConnectionInfo(str(uuid.uuid4()), invitee.tenant_id, CONNECTION_COMPLETED)
        invitee.connections[invitee_conn.connection_id] = invitee_conn
        inviter.connections[inviter_conn.connection_id] = inviter_conn

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def send(self, handle: AgentHandle, connection_id: str, payload: str) -> str:
        await self._latency(self.send_latency_ms)
        try:
            sender = self._identity(handle)
        except KeyError:
            raise SendError(f"Sender {handle.tenant_id} no longer exists") from None

        connection = sender.connections.get(connection_id)
        if connection is None:
            raise SendError(f"Unknown connection {connection_id} for {handle.tenant_id}")
        receiver = self._identities.get(connection.peer_label)
        if receiver is None:
            raise SendError(f"Receiver {connection.peer_label} no longer exists")
        if self._random.random() < self.send_failure_rate:
            raise SendError(f"Simulated send failure from {handle.tenant_id}")

        thread_id = str(uuid.uuid4())
        self.sent_count += 1
        if self._random.random() >= self.delivery_drop_rate:
            task = asyncio.create_task(self._deliver(receiver, thread_id))
            self._pending_deliveries.add(task)
            task.add_done_callback(self._pending_deliveries.discard)
        return thread_id

    async def _deliver(self, receiver: SimulatedIdentity, thread_id: str) -> None:
        await self._latency(self.delivery_latency_ms)
        processed_at = datetime.now(timezone.utc)
        self.delivered_count += 1
        for callback in list(receiver.callbacks):
            try:
                await callback(thread_id, processed_at)
            except Exception as e:
                logger.error(
                    "simulated_provider.callback_error",
                    tenant_id=receiver.tenant_id,
                    thread_id=thread_id,
                    error=str(e),
                )

    def subscribe(self, handle: AgentHandle, callback: DeliveryCallback) -> None:
        self._identity(handle).callbacks.append(callback)

    async def drain(self) -> None:
        """Wait for every scheduled delivery event to fire."""
        while self._pending_deliveries:
            await asyncio.gather(*list(self._pending_deliveries), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._pending_deliveries):
            task.cancel()
        await asyncio.gather(*list(self._pending_deliveries), return_exceptions=True)
        self._pending_deliveries.clear()

    @property
    def live_identities(self) -> list[str]:
        return list(self._identities)
