"""
Agent pool: the in-memory registry of live identities.

Tenant ids are reserved synchronously, before the first suspension
point, so two concurrent creates for the same id can never both reach
the identity provider.
"""

import random
from typing import Optional

import structlog

from ..errors import AlreadyExists, NotFound, PeerUnavailable, ProvisioningError
from ..infrastructure.records import MessageRecord, utcnow
from ..sim_logging.agent_log import AgentLogWriter
from .delivery import DeliveryTracker
from .identity import AgentHandle, ConnectionInfo, IdentityProvider

logger = structlog.get_logger()

# Registry placeholder for a tenant whose identity is still provisioning.
_PROVISIONING = None


class AgentPool:
    """
    Registry of live tenants and the operations performed through them.

    Usage:
        pool = AgentPool(provider, tracker)
        await pool.create_tenant("Agent-1")
        await pool.create_tenant("Agent-2")
        await pool.create_connection("Agent-1", "Agent-2")
        thread_id = await pool.send_message("Agent-1", "Agent-2", "hello")
        await pool.delete_tenant("Agent-1")
    """

    def __init__(
        self,
        provider: IdentityProvider,
        tracker: Optional[DeliveryTracker] = None,
        agent_log: Optional[AgentLogWriter] = None,
        rng: Optional[random.Random] = None,
    ):
        self.provider = provider
        self.tracker = tracker
        self.agent_log = agent_log
        self._random = rng or random.Random()
        self._tenants: dict[str, Optional[AgentHandle]] = {}

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    async def create_tenant(self, tenant_id: str) -> dict:
        """
        Create and register a tenant identity.

        Raises:
            AlreadyExists: tenant id is registered or provisioning
            ProvisioningError: the provider failed to create the identity
        """
        if tenant_id in self._tenants:
            raise AlreadyExists(tenant_id)
        self._tenants[tenant_id] = _PROVISIONING

        try:
            if self.agent_log:
                self.agent_log.start(tenant_id)
                self.agent_log.write(tenant_id, "creating")
            handle = await self.provider.create(tenant_id)
        except BaseException as e:
            del self._tenants[tenant_id]
            logger.warning("agent_pool.create_failed", tenant_id=tenant_id, error=str(e))
            if self.agent_log and isinstance(e, ProvisioningError):
                self.agent_log.write(tenant_id, "create_failed", error=str(e))
            raise

        if self.tracker is not None:
            self.provider.subscribe(handle, self.tracker.on_delivered)
        self._tenants[tenant_id] = handle

        if self.agent_log:
            self.agent_log.write(tenant_id, "created")
        logger.info("agent_pool.tenant_created", tenant_id=tenant_id)
        return {"status": f"Tenant {tenant_id} created successfully"}

    async def delete_tenant(self, tenant_id: str) -> dict:
        """
        Tear down and unregister a tenant.

        The tenant leaves the registry before teardown starts, so drivers
        still holding it observe the peer as gone rather than half-deleted.

        Raises:
            NotFound: tenant id is not registered
            TeardownError: the provider failed to destroy the identity
        """
        handle = self._tenants.get(tenant_id)
        if handle is None:
            raise NotFound(tenant_id)
        del self._tenants[tenant_id]

        try:
            await self.provider.destroy(handle)
        except Exception as e:
            if self.agent_log:
                self.agent_log.write(tenant_id, "delete_failed", error=str(e))
            raise

        if self.agent_log:
            self.agent_log.write(tenant_id, "deleted")
        logger.info("agent_pool.tenant_deleted", tenant_id=tenant_id)
        return {"status": f"Tenant {tenant_id} has been successfully deleted"}

    def get_agent(self, tenant_id: str) -> AgentHandle:
        handle = self._tenants.get(tenant_id)
        if handle is None:
            raise NotFound(tenant_id)
        return handle

    def has_tenant(self, tenant_id: str) -> bool:
        return self._tenants.get(tenant_id) is not None

    def list_tenants(self) -> list[str]:
        return [tenant_id for tenant_id, handle in self._tenants.items() if handle is not None]

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def get_connections(self, tenant_id: str) -> list[ConnectionInfo]:
        return await self.provider.list_connections(self.get_agent(tenant_id))

    async def has_established_connection(self, from_tenant: str, to_tenant: str) -> bool:
        connections = await self.get_connections(from_tenant)
        return any(c.is_established and c.peer_label == to_tenant for c in connections)

    async def create_connection(self, from_tenant: str, to_tenant: str, timeout_ms: int = 5000) -> dict:
        """
        Connect two tenants, skipping pairs that are already connected.

        Raises:
            NotFound: either tenant is not registered
            ProviderConnectionError: the handshake failed
        """
        from_handle = self.get_agent(from_tenant)
        to_handle = self.get_agent(to_tenant)

        if await self.has_established_connection(from_tenant, to_tenant):
            return {"status": f"Connection between {from_tenant} and {to_tenant} already exists."}

        await self.provider.connect(from_handle, to_handle, timeout_ms=timeout_ms)
        if self.agent_log:
            self.agent_log.write(from_tenant, "connected", peer=to_tenant)
            self.agent_log.write(to_tenant, "connected", peer=from_tenant)
        return {"status": f"Connection established between {from_tenant} and {to_tenant}"}

    async def connected_peers(self, tenant_id: str) -> list[ConnectionInfo]:
        """Established connections whose peer is still registered."""
        connections = await self.get_connections(tenant_id)
        return [
            c for c in connections
            if c.is_established and c.peer_label != tenant_id and self.has_tenant(c.peer_label)
        ]

    async def choose_peer(self, tenant_id: str) -> Optional[ConnectionInfo]:
        """Pick a uniformly random live peer connection, or None."""
        peers = await self.connected_peers(tenant_id)
        if not peers:
            return None
        return self._random.choice(peers)

    async def find_active_connection(self, from_tenant: str, to_tenant: str) -> ConnectionInfo:
        for connection in await self.connected_peers(from_tenant):
            if connection.peer_label == to_tenant:
                return connection
        raise PeerUnavailable(f"No active connection between {from_tenant} and {to_tenant}")

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def send_on_connection(
        self,
        from_tenant: str,
        connection: ConnectionInfo,
        payload: str,
        run_id: Optional[str] = None,
    ) -> str:
        """
        Send over a known connection and record it under ``run_id``.

        Raises:
            PeerUnavailable: sender or receiver left the pool
            SendError: the provider rejected the send
        """
        if not self.has_tenant(from_tenant):
            raise PeerUnavailable(f"Sender {from_tenant} is no longer registered")
        if not self.has_tenant(connection.peer_label):
            raise PeerUnavailable(f"Receiver {connection.peer_label} is no longer registered")

        sent_at = utcnow()
        thread_id = await self.provider.send(self.get_agent(from_tenant), connection.connection_id, payload)

        if run_id is not None and self.tracker is not None:
            record = MessageRecord(
                from_tenant_id=from_tenant,
                to_tenant_id=connection.peer_label,
                message=payload,
                timestamp=sent_at,
            )
            await self.tracker.record_sent(run_id, thread_id, record)
        return thread_id

    async def send_message(
        self,
        from_tenant: str,
        to_tenant: str,
        payload: str,
        run_id: Optional[str] = None,
    ) -> str:
        """Send to a named peer over its active connection."""
        connection = await self.find_active_connection(from_tenant, to_tenant)
        return await self.send_on_connection(from_tenant, connection, payload, run_id=run_id)
