"""Unit tests for the routing audit trail."""

from datetime import timedelta

import pytest

from inbox_routing.base import (
    HistoryFilter,
    RoutingHistoryEntry,
    RoutingOutcome,
    RoutingStrategy,
    utcnow,
)
from inbox_routing.history import RoutingHistory
from inbox_routing.store import InMemoryRoutingStore


TENANT = "org_acme"


@pytest.fixture
def history():
    return RoutingHistory(InMemoryRoutingStore())


def decision(conversation_id: str, outcome=RoutingOutcome.ASSIGNED, agent_id="agent_a", **kwargs):
    return RoutingHistoryEntry(
        conversation_id=conversation_id,
        tenant_id=kwargs.pop("tenant_id", TENANT),
        outcome=outcome,
        strategy_used=kwargs.pop("strategy_used", RoutingStrategy.ROUND_ROBIN),
        selected_agent_id=agent_id if outcome == RoutingOutcome.ASSIGNED else None,
        **kwargs,
    )


class TestRecording:
    """Tests for appending entries."""

    @pytest.mark.asyncio
    async def test_sequence_per_tenant(self, history):
        """Test each tenant gets its own gapless sequence."""
        first = await history.record(decision("conv_1"))
        second = await history.record(decision("conv_2"))
        other = await history.record(decision("conv_9", tenant_id="org_other"))

        assert (first.sequence, second.sequence) == (1, 2)
        assert other.sequence == 1

    @pytest.mark.asyncio
    async def test_returned_entries_are_copies(self, history):
        """Test callers cannot mutate the stored trail."""
        stored = await history.record(decision("conv_1"))
        stored.reason = "tampered"

        entries = await history.query(TENANT)

        assert entries[0].reason == ""

    @pytest.mark.asyncio
    async def test_correction_references_original(self, history):
        """Test corrections are new entries pointing at the original."""
        original = await history.record(decision("conv_1", rule_id="rule_1"))

        correction = await history.append_correction(
            original,
            RoutingOutcome.REJECTED_BY_AGENT,
            reason="agent declined",
            metadata={"agent_id": "agent_a"},
        )

        entries = await history.query(TENANT)
        assert len(entries) == 2
        assert entries[0].outcome == RoutingOutcome.ASSIGNED
        assert correction.references_entry_id == original.entry_id
        assert correction.rule_id == "rule_1"
        assert correction.strategy_used == RoutingStrategy.ROUND_ROBIN


class TestQuery:
    """Tests for reading the trail."""

    @pytest.mark.asyncio
    async def test_filters(self, history):
        """Test conversation, agent, outcome and strategy filters."""
        await history.record(decision("conv_1", agent_id="agent_a"))
        await history.record(decision("conv_2", agent_id="agent_b", strategy_used=RoutingStrategy.LEAST_LOADED))
        await history.record(decision("conv_3", outcome=RoutingOutcome.QUEUED))

        by_conversation = await history.query(TENANT, HistoryFilter(conversation_id="conv_2"))
        by_agent = await history.query(TENANT, HistoryFilter(agent_id="agent_a"))
        by_outcome = await history.query(TENANT, HistoryFilter(outcome=RoutingOutcome.QUEUED))
        by_strategy = await history.query(TENANT, HistoryFilter(strategy=RoutingStrategy.LEAST_LOADED))

        assert [e.conversation_id for e in by_conversation] == ["conv_2"]
        assert [e.conversation_id for e in by_agent] == ["conv_1"]
        assert [e.conversation_id for e in by_outcome] == ["conv_3"]
        assert [e.conversation_id for e in by_strategy] == ["conv_2"]

    @pytest.mark.asyncio
    async def test_time_window(self, history):
        """Test since and until bounds."""
        await history.record(decision("conv_old", timestamp=utcnow() - timedelta(hours=3)))
        await history.record(decision("conv_new"))

        recent = await history.query(TENANT, HistoryFilter(since=utcnow() - timedelta(hours=1)))
        older = await history.query(TENANT, HistoryFilter(until=utcnow() - timedelta(hours=1)))

        assert [e.conversation_id for e in recent] == ["conv_new"]
        assert [e.conversation_id for e in older] == ["conv_old"]

    @pytest.mark.asyncio
    async def test_pagination(self, history):
        """Test limit and offset page in sequence order."""
        for i in range(5):
            await history.record(decision(f"conv_{i}"))

        page = await history.query(TENANT, HistoryFilter(limit=2, offset=2))

        assert [e.sequence for e in page] == [3, 4]


class TestStatistics:
    """Tests for history statistics."""

    @pytest.mark.asyncio
    async def test_empty(self, history):
        """Test statistics with no decisions."""
        stats = await history.get_statistics(TENANT)

        assert stats["total_decisions"] == 0
        assert stats["outcomes"] == {}

    @pytest.mark.asyncio
    async def test_counts(self, history):
        """Test outcome and strategy counts."""
        await history.record(decision("conv_1"))
        await history.record(decision("conv_2", strategy_used=RoutingStrategy.LEAST_LOADED))
        await history.record(decision("conv_3", outcome=RoutingOutcome.QUEUED))
        await history.record(decision("conv_1", outcome=RoutingOutcome.RELEASED))

        stats = await history.get_statistics(TENANT)

        assert stats["total_decisions"] == 4
        assert stats["assigned"] == 2
        assert stats["queued"] == 1
        assert stats["assignment_rate"] == pytest.approx(2 / 3)
        assert stats["outcomes"]["released"] == 1
        assert stats["strategies"] == {"round_robin": 1, "least_loaded": 1}
