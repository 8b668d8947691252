"""Tests for the agent pool registry."""

import asyncio
import json

import pytest

from mediator_sim.agents.pool import AgentPool
from mediator_sim.agents.simulated import SimulatedIdentityProvider
from mediator_sim.errors import (
    AlreadyExists,
    NotFound,
    PeerUnavailable,
    ProvisioningError,
    TeardownError,
)
from mediator_sim.sim_logging.agent_log import AgentLogWriter


class TestAgentPoolRegistry:
    """Tests for create-once/delete-once semantics."""

    @pytest.mark.asyncio
    async def test_create_tenant(self, pool):
        result = await pool.create_tenant("Agent-1")

        assert result == {"status": "Tenant Agent-1 created successfully"}
        assert pool.list_tenants() == ["Agent-1"]
        assert pool.get_agent("Agent-1").tenant_id == "Agent-1"

    @pytest.mark.asyncio
    async def test_create_twice_raises(self, pool):
        await pool.create_tenant("Agent-1")
        with pytest.raises(AlreadyExists):
            await pool.create_tenant("Agent-1")

    @pytest.mark.asyncio
    async def test_concurrent_creates_reach_provider_once(self, pool, provider):
        results = await asyncio.gather(
            pool.create_tenant("Agent-1"),
            pool.create_tenant("Agent-1"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AlreadyExists) for r in results) == 1
        assert provider.created_log == ["Agent-1"]

    @pytest.mark.asyncio
    async def test_provisioning_failure_releases_id(self, tracker):
        provider = SimulatedIdentityProvider(create_latency_ms=(0, 0), fail_create={"Agent-1"})
        pool = AgentPool(provider, tracker=tracker)

        with pytest.raises(ProvisioningError):
            await pool.create_tenant("Agent-1")
        assert not pool.has_tenant("Agent-1")

        provider.fail_create.clear()
        await pool.create_tenant("Agent-1")
        assert pool.has_tenant("Agent-1")

    @pytest.mark.asyncio
    async def test_tenant_invisible_while_provisioning(self, pool):
        task = asyncio.create_task(pool.create_tenant("Agent-1"))
        await asyncio.sleep(0)

        assert not pool.has_tenant("Agent-1")
        assert pool.list_tenants() == []
        with pytest.raises(AlreadyExists):
            await pool.create_tenant("Agent-1")

        await task
        assert pool.has_tenant("Agent-1")

    @pytest.mark.asyncio
    async def test_delete_tenant(self, pool, provider):
        await pool.create_tenant("Agent-1")
        result = await pool.delete_tenant("Agent-1")

        assert result == {"status": "Tenant Agent-1 has been successfully deleted"}
        assert pool.list_tenants() == []
        assert provider.live_identities == []

    @pytest.mark.asyncio
    async def test_delete_unknown(self, pool):
        with pytest.raises(NotFound, match="Tenant ghost not found"):
            await pool.delete_tenant("ghost")

    @pytest.mark.asyncio
    async def test_teardown_failure_still_unregisters(self, tracker):
        provider = SimulatedIdentityProvider(create_latency_ms=(0, 0), fail_destroy={"Agent-1"})
        pool = AgentPool(provider, tracker=tracker)
        await pool.create_tenant("Agent-1")

        with pytest.raises(TeardownError):
            await pool.delete_tenant("Agent-1")
        assert not pool.has_tenant("Agent-1")

    def test_get_unknown_agent(self, pool):
        with pytest.raises(NotFound):
            pool.get_agent("ghost")


class TestAgentPoolMessaging:
    """Tests for connections and sends through the pool."""

    @pytest.fixture
    async def connected(self, pool):
        await pool.create_tenant("Agent-1")
        await pool.create_tenant("Agent-2")
        await pool.create_connection("Agent-1", "Agent-2")
        return pool

    @pytest.mark.asyncio
    async def test_create_connection_is_idempotent(self, connected, provider):
        result = await connected.create_connection("Agent-1", "Agent-2")

        assert result["status"] == "Connection between Agent-1 and Agent-2 already exists."
        assert provider.connect_attempts[frozenset({"Agent-1", "Agent-2"})] == 1
        assert len(await connected.get_connections("Agent-1")) == 1

    @pytest.mark.asyncio
    async def test_connection_requires_registered_tenants(self, pool):
        await pool.create_tenant("Agent-1")
        with pytest.raises(NotFound):
            await pool.create_connection("Agent-1", "ghost")

    @pytest.mark.asyncio
    async def test_choose_peer(self, connected):
        peer = await connected.choose_peer("Agent-1")
        assert peer.peer_label == "Agent-2"

    @pytest.mark.asyncio
    async def test_choose_peer_without_connections(self, pool):
        await pool.create_tenant("Agent-1")
        assert await pool.choose_peer("Agent-1") is None

    @pytest.mark.asyncio
    async def test_deleted_peer_is_not_chosen(self, connected):
        await connected.delete_tenant("Agent-2")
        assert await connected.choose_peer("Agent-1") is None

    @pytest.mark.asyncio
    async def test_send_message_records_under_run(self, connected, redis_client, provider):
        thread_id = await connected.send_message("Agent-1", "Agent-2", "hello", run_id="t1")
        await provider.drain()

        record = json.loads(await redis_client.get(f"message:t1:{thread_id}"))
        assert record["fromTenantId"] == "Agent-1"
        assert record["toTenantId"] == "Agent-2"
        assert record["message"] == "hello"
        assert record["processingTimeMs"] >= 0

    @pytest.mark.asyncio
    async def test_send_without_run_is_not_recorded(self, connected, redis_client, provider):
        await connected.send_message("Agent-1", "Agent-2", "manual")
        await provider.drain()
        assert await redis_client.keys("message:*") == []

    @pytest.mark.asyncio
    async def test_send_without_connection(self, pool):
        await pool.create_tenant("Agent-1")
        await pool.create_tenant("Agent-2")

        with pytest.raises(PeerUnavailable):
            await pool.send_message("Agent-1", "Agent-2", "hello")

    @pytest.mark.asyncio
    async def test_send_to_departed_receiver(self, connected):
        connection = await connected.find_active_connection("Agent-1", "Agent-2")
        await connected.delete_tenant("Agent-2")

        with pytest.raises(PeerUnavailable):
            await connected.send_on_connection("Agent-1", connection, "late")


class TestAgentLog:
    """Tests for per-tenant log files."""

    @pytest.mark.asyncio
    async def test_lifecycle_lines(self, provider, tmp_path):
        pool = AgentPool(provider, agent_log=AgentLogWriter(tmp_path))
        await pool.create_tenant("Agent-1")
        await pool.create_tenant("Agent-2")
        await pool.create_connection("Agent-1", "Agent-2")
        await pool.delete_tenant("Agent-1")

        lines = (tmp_path / "agent_log_Agent-1.txt").read_text().splitlines()
        events = [line.split(" ")[1] for line in lines]
        assert events == ["creating", "created", "connected", "deleted"]

    @pytest.mark.asyncio
    async def test_failed_create_is_logged(self, tmp_path):
        provider = SimulatedIdentityProvider(create_latency_ms=(0, 0), fail_create={"Agent-1"})
        pool = AgentPool(provider, agent_log=AgentLogWriter(tmp_path))

        with pytest.raises(ProvisioningError):
            await pool.create_tenant("Agent-1")

        lines = (tmp_path / "agent_log_Agent-1.txt").read_text().splitlines()
        assert [line.split(" ")[1] for line in lines] == ["creating", "create_failed"]

    @pytest.mark.asyncio
    async def test_log_error_releases_reservation(self, provider, tmp_path):
        class FlakyLog(AgentLogWriter):
            failures = 1

            def start(self, tenant_id):
                if self.failures:
                    self.failures -= 1
                    raise OSError("disk full")
                super().start(tenant_id)

        pool = AgentPool(provider, agent_log=FlakyLog(tmp_path))

        with pytest.raises(OSError):
            await pool.create_tenant("Agent-1")
        assert pool.list_tenants() == []

        await pool.create_tenant("Agent-1")

        assert pool.list_tenants() == ["Agent-1"]
        assert "created" in (tmp_path / "agent_log_Agent-1.txt").read_text()
