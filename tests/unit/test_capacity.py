"""Unit tests for agent capacity tracking."""

import pytest

from inbox_routing.base import (
    AgentFilter,
    AgentNotFoundError,
    AgentStatus,
    CapacityRaceLost,
    InvalidStateTransition,
)
from inbox_routing.capacity import AgentCapacityStore
from inbox_routing.store import InMemoryRoutingStore


TENANT = "org_acme"


@pytest.fixture
def capacity():
    return AgentCapacityStore(InMemoryRoutingStore(), default_max_concurrent=3)


class TestRegistration:
    """Tests for agent registration."""

    @pytest.mark.asyncio
    async def test_register_uses_default_max(self, capacity):
        """Test the configured default applies when no max is given."""
        agent = await capacity.register_agent(TENANT, "agent_a")

        assert agent.max_concurrent_conversations == 3
        assert agent.status == AgentStatus.OFFLINE
        assert agent.current_conversation_count == 0

    @pytest.mark.asyncio
    async def test_register_uses_tenant_setting(self):
        """Test tenant settings override the process default."""
        from inbox_routing.rules import RoutingRuleRegistry

        store = InMemoryRoutingStore()
        await RoutingRuleRegistry(store).update_settings(TENANT, default_max_concurrent_conversations=8)

        agent = await AgentCapacityStore(store).register_agent(TENANT, "agent_a")

        assert agent.max_concurrent_conversations == 8

    @pytest.mark.asyncio
    async def test_reregister_keeps_load(self, capacity):
        """Test replacing a profile keeps the live conversation count."""
        await capacity.register_agent(TENANT, "agent_a", status=AgentStatus.AVAILABLE)
        await capacity.increment_load(TENANT, "agent_a")

        agent = await capacity.register_agent(TENANT, "agent_a", skills=["billing"], max_concurrent_conversations=4)

        assert agent.current_conversation_count == 1
        assert agent.skills == {"billing"}

    @pytest.mark.asyncio
    async def test_get_unknown_agent(self, capacity):
        """Test missing agents raise."""
        with pytest.raises(AgentNotFoundError):
            await capacity.get_agent(TENANT, "ghost")

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, capacity):
        """Test agents are scoped to their tenant."""
        await capacity.register_agent(TENANT, "agent_a", status=AgentStatus.AVAILABLE)

        assert await capacity.list_agents("org_other") == []
        with pytest.raises(AgentNotFoundError):
            await capacity.get_agent("org_other", "agent_a")


class TestUpdates:
    """Tests for agent updates."""

    @pytest.mark.asyncio
    async def test_update_fields(self, capacity):
        """Test profile fields update."""
        await capacity.register_agent(TENANT, "agent_a")

        agent = await capacity.update_agent(
            TENANT, "agent_a", skills=["billing", "vip"], satisfaction_score=4.9
        )

        assert agent.skills == {"billing", "vip"}
        assert agent.satisfaction_score == 4.9

    @pytest.mark.asyncio
    async def test_count_is_not_updatable(self, capacity):
        """Test the conversation count cannot be set directly."""
        await capacity.register_agent(TENANT, "agent_a")

        with pytest.raises(ValueError):
            await capacity.update_agent(TENANT, "agent_a", current_conversation_count=0)

    @pytest.mark.asyncio
    async def test_max_cannot_drop_below_load(self, capacity):
        """Test lowering the max under the live count is rejected."""
        await capacity.register_agent(TENANT, "agent_a", status=AgentStatus.AVAILABLE)
        await capacity.increment_load(TENANT, "agent_a")
        await capacity.increment_load(TENANT, "agent_a")

        with pytest.raises(InvalidStateTransition):
            await capacity.update_agent(TENANT, "agent_a", max_concurrent_conversations=1)

    @pytest.mark.asyncio
    async def test_status_callbacks(self, capacity):
        """Test async and sync callbacks fire on status changes only."""
        seen = []

        async def on_async(agent, old_status):
            seen.append(("async", old_status, agent.status))

        def on_sync(agent, old_status):
            seen.append(("sync", old_status, agent.status))

        capacity.add_status_callback(on_async)
        capacity.add_status_callback(on_sync)
        await capacity.register_agent(TENANT, "agent_a")

        await capacity.set_status(TENANT, "agent_a", AgentStatus.AVAILABLE)
        await capacity.update_agent(TENANT, "agent_a", display_name="Ana")

        assert seen == [
            ("async", AgentStatus.OFFLINE, AgentStatus.AVAILABLE),
            ("sync", AgentStatus.OFFLINE, AgentStatus.AVAILABLE),
        ]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_update(self, capacity):
        """Test a broken callback is logged, not raised."""
        def broken(agent, old_status):
            raise RuntimeError("listener down")

        capacity.add_status_callback(broken)
        await capacity.register_agent(TENANT, "agent_a")

        agent = await capacity.set_status(TENANT, "agent_a", AgentStatus.AWAY)

        assert agent.status == AgentStatus.AWAY

    @pytest.mark.asyncio
    async def test_disable_agent(self, capacity):
        """Test disabling is soft and removes the agent from routing."""
        await capacity.register_agent(TENANT, "agent_a", status=AgentStatus.AVAILABLE)

        agent = await capacity.disable_agent(TENANT, "agent_a")

        assert agent.status == AgentStatus.OFFLINE
        assert agent.auto_assign_enabled is False
        assert await capacity.get_agent(TENANT, "agent_a")
        assert await capacity.get_available_agents(TENANT) == []


class TestAvailability:
    """Tests for candidate lookup."""

    @pytest.mark.asyncio
    async def test_only_routable_agents(self, capacity):
        """Test status, auto-assign and capacity all gate routing."""
        await capacity.register_agent(TENANT, "agent_a", status=AgentStatus.AVAILABLE)
        await capacity.register_agent(TENANT, "agent_b", status=AgentStatus.BUSY)
        await capacity.register_agent(TENANT, "agent_c", status=AgentStatus.AVAILABLE, auto_assign_enabled=False)
        await capacity.register_agent(
            TENANT, "agent_d", status=AgentStatus.AVAILABLE, max_concurrent_conversations=1
        )
        await capacity.increment_load(TENANT, "agent_d")

        available = await capacity.get_available_agents(TENANT)

        assert [a.agent_id for a in available] == ["agent_a"]

    @pytest.mark.asyncio
    async def test_sorted_by_agent_id(self, capacity):
        """Test candidates come back in a stable order."""
        for agent_id in ("agent_c", "agent_a", "agent_b"):
            await capacity.register_agent(TENANT, agent_id, status=AgentStatus.AVAILABLE)

        available = await capacity.get_available_agents(TENANT)

        assert [a.agent_id for a in available] == ["agent_a", "agent_b", "agent_c"]

    @pytest.mark.asyncio
    async def test_filter(self, capacity):
        """Test skill and language filtering."""
        await capacity.register_agent(
            TENANT, "agent_a", status=AgentStatus.AVAILABLE, skills=["billing"], languages=["en"]
        )
        await capacity.register_agent(
            TENANT, "agent_b", status=AgentStatus.AVAILABLE, skills=["billing", "sales"], languages=["es"]
        )

        available = await capacity.get_available_agents(
            TENANT, AgentFilter(required_skills={"billing"}, required_language="es")
        )

        assert [a.agent_id for a in available] == ["agent_b"]


class TestLoad:
    """Tests for conditional load changes."""

    @pytest.mark.asyncio
    async def test_increment_to_max_then_race_lost(self, capacity):
        """Test the increment refuses to pass the maximum."""
        await capacity.register_agent(TENANT, "agent_a", max_concurrent_conversations=2)

        await capacity.increment_load(TENANT, "agent_a")
        agent = await capacity.increment_load(TENANT, "agent_a")
        assert agent.current_conversation_count == 2

        with pytest.raises(CapacityRaceLost) as exc_info:
            await capacity.increment_load(TENANT, "agent_a")
        assert exc_info.value.agent_id == "agent_a"
        assert (await capacity.get_agent(TENANT, "agent_a")).current_conversation_count == 2

    @pytest.mark.asyncio
    async def test_decrement_below_zero(self, capacity):
        """Test the decrement never clamps silently."""
        await capacity.register_agent(TENANT, "agent_a")

        with pytest.raises(InvalidStateTransition):
            await capacity.decrement_load(TENANT, "agent_a")

    @pytest.mark.asyncio
    async def test_unknown_agent_load(self, capacity):
        """Test load changes on a missing agent."""
        with pytest.raises(AgentNotFoundError):
            await capacity.increment_load(TENANT, "ghost")

    @pytest.mark.asyncio
    async def test_workload_snapshot_and_summary(self, capacity):
        """Test aggregate views."""
        await capacity.register_agent(TENANT, "agent_a", status=AgentStatus.AVAILABLE, max_concurrent_conversations=4)
        await capacity.register_agent(TENANT, "agent_b", status=AgentStatus.OFFLINE, max_concurrent_conversations=2)
        await capacity.increment_load(TENANT, "agent_a")

        snapshot = await capacity.get_workload_snapshot(TENANT)
        summary = await capacity.get_capacity_summary(TENANT)

        assert snapshot == {"agent_a": 0.25, "agent_b": 0.0}
        assert summary["total_agents"] == 2
        assert summary["available_agents"] == 1
        assert summary["active_conversations"] == 1
        assert summary["total_capacity"] == 4
