"""Integration tests for the routing HTTP API."""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from inbox_routing import QueueEntry
from inbox_routing.base import utcnow


API = "/api/v1/routing"
TENANT = "org_acme"


async def register(client: AsyncClient, agent_id: str, **fields):
    payload = {"status": "available", "max_concurrent_conversations": 1}
    payload.update(fields)
    response = await client.put(f"{API}/agents/{agent_id}", json=payload)
    assert response.status_code == 200
    return response.json()


async def assign(client: AsyncClient, conversation_id: str, **fields):
    payload = {"conversation_id": conversation_id}
    payload.update(fields)
    return await client.post(f"{API}/conversations/assign", json=payload)


class TestHealth:
    """Tests for the health endpoint."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"] == "memory"
        assert data["checks"]["sweeper"] == "stopped"

    @pytest.mark.asyncio
    async def test_tenant_header_required(self, app):
        """Test routing calls without a tenant are rejected."""
        from httpx import ASGITransport

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
            response = await anonymous.get(f"{API}/queue")

        assert response.status_code == 422


class TestConversationRoutes:
    """Tests for assignment, queueing and release."""

    @pytest.mark.asyncio
    async def test_assign_then_queue(self, client):
        """Test a full agent sends the next conversation to the queue."""
        await register(client, "agent_a")

        first = await assign(client, "conv_1")
        second = await assign(client, "conv_2", priority_label="urgent")

        assert first.status_code == 200
        assert first.json()["status"] == "assigned"
        assert first.json()["agent_id"] == "agent_a"
        assert second.json()["status"] == "queued"
        assert second.json()["queue_position"] == 1

        position = await client.get(f"{API}/queue/conv_2/position")
        assert position.json()["queue_position"] == 1

        queue = await client.get(f"{API}/queue")
        assert [e["conversation_id"] for e in queue.json()] == ["conv_2"]
        assert queue.json()[0]["priority"] == 1

    @pytest.mark.asyncio
    async def test_get_assignment(self, client):
        """Test the current assignee is returned, or 404."""
        await register(client, "agent_a")
        await assign(client, "conv_1")

        found = await client.get(f"{API}/conversations/conv_1/assignment")
        missing = await client.get(f"{API}/conversations/conv_9/assignment")

        assert found.json()["agent_id"] == "agent_a"
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_release_drains_queue(self, client):
        """Test releasing frees the slot for the waiting conversation."""
        await register(client, "agent_a")
        await assign(client, "conv_1")
        await assign(client, "conv_2")

        response = await client.post(
            f"{API}/conversations/conv_1/release",
            json={"agent_id": "agent_a"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["assignment"]["conversation_id"] == "conv_1"
        assert [r["conversation_id"] for r in data["drained"]] == ["conv_2"]

        position = await client.get(f"{API}/queue/conv_2/position")
        assert position.json()["queue_position"] is None

    @pytest.mark.asyncio
    async def test_double_assign_conflicts(self, client):
        """Test assigning an assigned conversation returns 409."""
        await register(client, "agent_a")
        await assign(client, "conv_1")

        response = await assign(client, "conv_1")

        assert response.status_code == 409
        error = response.json()
        assert error["success"] is False
        assert error["error"]["code"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_release_by_wrong_agent(self, client):
        """Test only the assignee can release."""
        await register(client, "agent_a")
        await register(client, "agent_b")
        await assign(client, "conv_1")

        response = await client.post(
            f"{API}/conversations/conv_1/release",
            json={"agent_id": "agent_b"},
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_reject_routes_elsewhere(self, client):
        """Test a declined conversation goes to another agent."""
        await register(client, "agent_a")
        await register(client, "agent_b")
        await assign(client, "conv_1")

        response = await client.post(
            f"{API}/conversations/conv_1/reject",
            json={"agent_id": "agent_a", "reason": "wrong language"},
        )

        assert response.status_code == 200
        assert response.json()["agent_id"] == "agent_b"

    @pytest.mark.asyncio
    async def test_reassign_to_full_agent(self, client):
        """Test moving a conversation onto a full agent returns 409."""
        await register(client, "agent_a")
        await register(client, "agent_b")
        await assign(client, "conv_1")
        await assign(client, "conv_2")

        response = await client.post(
            f"{API}/conversations/conv_1/reassign",
            json={"to_agent_id": "agent_b"},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CAPACITY_RACE_LOST"

    @pytest.mark.asyncio
    async def test_message_activity(self, client):
        """Test activity is tracked only for assigned conversations."""
        await register(client, "agent_a")
        await assign(client, "conv_1")

        tracked = await client.post(f"{API}/conversations/conv_1/customer-message", json={})
        untracked = await client.post(f"{API}/conversations/conv_9/agent-reply", json={})

        assert tracked.json() == {"tracked": True}
        assert untracked.json() == {"tracked": False}

    @pytest.mark.asyncio
    async def test_abandon(self, client):
        """Test a waiting conversation can leave the queue."""
        await assign(client, "conv_1")

        response = await client.delete(f"{API}/queue/conv_1")
        missing = await client.delete(f"{API}/queue/conv_1")

        assert response.status_code == 200
        assert response.json()["status"] == "abandoned"
        assert missing.status_code == 404


class TestQueueAndHistoryRoutes:
    """Tests for queue statistics and routing history."""

    @pytest.mark.asyncio
    async def test_queue_stats(self, client):
        await assign(client, "conv_1", priority=2)
        await assign(client, "conv_2", priority=2)

        response = await client.get(f"{API}/queue/stats")

        assert response.json()["waiting"] == 2
        assert response.json()["by_priority"] == {"2": 2}

    @pytest.mark.asyncio
    async def test_history(self, client):
        """Test decisions are listed in order and filterable."""
        await register(client, "agent_a")
        await assign(client, "conv_1")
        await assign(client, "conv_2")

        everything = await client.get(f"{API}/history")
        queued = await client.get(f"{API}/history", params={"outcome": "queued"})
        stats = await client.get(f"{API}/history/statistics")

        assert [e["outcome"] for e in everything.json()] == ["assigned", "queued"]
        assert [e["conversation_id"] for e in queued.json()] == ["conv_2"]
        assert stats.json()["total_decisions"] == 2


class TestAgentRoutes:
    """Tests for agent capacity management."""

    @pytest.mark.asyncio
    async def test_register_and_update(self, client):
        """Test registration, field updates and validation errors."""
        agent = await register(client, "agent_a", skills=["billing"], max_concurrent_conversations=3)

        assert agent["max_concurrent_conversations"] == 3
        assert agent["skills"] == ["billing"]

        updated = await client.patch(f"{API}/agents/agent_a", json={"languages": ["es"]})
        assert updated.json()["languages"] == ["es"]

        invalid = await client.patch(f"{API}/agents/agent_a", json={"max_concurrent_conversations": 0})
        assert invalid.status_code == 422

        missing = await client.get(f"{API}/agents/agent_9")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_coming_online_drains(self, client):
        """Test an agent becoming available picks up waiting work."""
        await register(client, "agent_a", status="offline")
        await assign(client, "conv_1")

        response = await client.post(f"{API}/agents/agent_a/status", json={"status": "available"})

        assert response.json()["status"] == "available"
        assignment = await client.get(f"{API}/conversations/conv_1/assignment")
        assert assignment.json()["agent_id"] == "agent_a"

    @pytest.mark.asyncio
    async def test_summary_and_disable(self, client):
        await register(client, "agent_a", max_concurrent_conversations=4)
        await register(client, "agent_b", max_concurrent_conversations=2)

        await client.delete(f"{API}/agents/agent_b")
        summary = await client.get(f"{API}/agents/summary")

        assert summary.json()["total_agents"] == 2
        assert summary.json()["routable_agents"] == 1

    @pytest.mark.asyncio
    async def test_rebalance_endpoint(self, client):
        await register(client, "agent_a")

        response = await client.post(f"{API}/rebalance")

        assert response.status_code == 200
        assert response.json()["moved"] == []


class TestRuleRoutes:
    """Tests for routing rule and settings management."""

    @pytest.mark.asyncio
    async def test_rule_crud(self, client):
        created = await client.post(
            f"{API}/rules",
            json={"name": "Least loaded", "strategy": "least_loaded", "priority": 2},
        )
        assert created.status_code == 201
        rule_id = created.json()["rule_id"]

        updated = await client.put(f"{API}/rules/{rule_id}", json={"name": "Balance"})
        assert updated.json()["name"] == "Balance"

        deactivated = await client.delete(f"{API}/rules/{rule_id}")
        assert deactivated.json()["is_active"] is False

        active = await client.get(f"{API}/rules", params={"active_only": True})
        assert active.json() == []

    @pytest.mark.asyncio
    async def test_invalid_rule(self, client):
        """Test bad strategy parameters are a 400."""
        response = await client.post(
            f"{API}/rules",
            json={
                "name": "Priority",
                "strategy": "priority_based",
                "strategy_config": {"soft_limit_ratio": 2.0},
            },
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_rule(self, client):
        response = await client.get(f"{API}/rules/rule_missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RULE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_settings(self, client):
        """Test tenant defaults drive routing when no rule matches."""
        response = await client.put(
            f"{API}/settings",
            json={"default_strategy": "least_loaded", "default_max_concurrent_conversations": 7},
        )

        assert response.json()["default_strategy"] == "least_loaded"
        fetched = await client.get(f"{API}/settings")
        assert fetched.json()["default_max_concurrent_conversations"] == 7

        await register(client, "agent_a")
        result = await assign(client, "conv_1")
        assert result.json()["strategy"] == "least_loaded"


class TestEscalationRoutes:
    """Tests for escalation rules and breach checks."""

    @pytest.mark.asyncio
    async def test_escalation_rule_crud(self, client):
        created = await client.post(
            f"{API}/escalation-rules",
            json={"name": "Queue wait", "sla_threshold_minutes": 10, "applies_to": "queued"},
        )
        assert created.status_code == 201
        rule_id = created.json()["rule_id"]

        updated = await client.patch(
            f"{API}/escalation-rules/{rule_id}",
            json={"sla_threshold_minutes": 15},
        )
        assert updated.json()["sla_threshold_minutes"] == 15

        await client.delete(f"{API}/escalation-rules/{rule_id}")
        fetched = await client.get(f"{API}/escalation-rules/{rule_id}")
        assert fetched.json()["is_active"] is False

        missing = await client.get(f"{API}/escalation-rules/esc_missing")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_custom_target_requires_id(self, client):
        response = await client.post(
            f"{API}/escalation-rules",
            json={"name": "Lead", "sla_threshold_minutes": 5, "escalation_target": "custom"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_breaches_listed(self, app, client):
        """Test a long queue wait shows up as a breach."""
        await client.post(
            f"{API}/escalation-rules",
            json={"name": "Queue wait", "sla_threshold_minutes": 5},
        )
        await app.state.balancer.queue.enqueue(QueueEntry(
            conversation_id="conv_1",
            tenant_id=TENANT,
            enqueued_at=utcnow() - timedelta(minutes=20),
        ))

        response = await client.get(f"{API}/escalations")

        assert [c["conversation_id"] for c in response.json()] == ["conv_1"]
        assert response.json()[0]["state"] == "queued"
