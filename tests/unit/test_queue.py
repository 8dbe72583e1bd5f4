"""Unit tests for the conversation queue."""

from datetime import timedelta

import pytest

from inbox_routing.base import (
    Conversation,
    InvalidStateTransition,
    QueueEntry,
    QueueEntryNotFound,
    QueueEntryStatus,
    utcnow,
)
from inbox_routing.queue import ConversationQueue


TENANT = "org_acme"


@pytest.fixture
def queue(store):
    return ConversationQueue(store, minutes_per_queue_position=4)


def entry(conversation_id: str, priority: int = 5, seconds_ago: float = 0.0, **kwargs) -> QueueEntry:
    return QueueEntry(
        conversation_id=conversation_id,
        tenant_id=kwargs.pop("tenant_id", TENANT),
        priority=priority,
        enqueued_at=utcnow() - timedelta(seconds=seconds_ago),
        **kwargs,
    )


class TestOrdering:
    """Tests for queue ordering."""

    @pytest.mark.asyncio
    async def test_priority_before_arrival(self, queue):
        """Test an urgent later arrival is dequeued before an older normal one."""
        await queue.enqueue(entry("conv_2", priority=5, seconds_ago=60))
        await queue.enqueue(entry("conv_1", priority=1, seconds_ago=59))

        first = await queue.dequeue_next(TENANT)
        second = await queue.dequeue_next(TENANT)

        assert first.conversation_id == "conv_1"
        assert second.conversation_id == "conv_2"
        assert await queue.dequeue_next(TENANT) is None

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, queue):
        """Test equal priorities leave in arrival order."""
        await queue.enqueue(entry("conv_old", seconds_ago=30))
        await queue.enqueue(entry("conv_new", seconds_ago=10))

        assert (await queue.dequeue_next(TENANT)).conversation_id == "conv_old"

    @pytest.mark.asyncio
    async def test_sequence_breaks_identical_times(self, queue):
        """Test insertion order breaks exact timestamp ties."""
        now = utcnow()
        await queue.enqueue(QueueEntry(conversation_id="conv_a", tenant_id=TENANT, enqueued_at=now))
        await queue.enqueue(QueueEntry(conversation_id="conv_b", tenant_id=TENANT, enqueued_at=now))

        waiting = await queue.list_waiting(TENANT)

        assert [e.conversation_id for e in waiting] == ["conv_a", "conv_b"]
        assert waiting[0].sequence < waiting[1].sequence

    @pytest.mark.asyncio
    async def test_predicate_skips_without_removing(self, queue):
        """Test non-matching entries stay queued."""
        await queue.enqueue(entry("conv_1", priority=1, required_skills=["billing"]))
        await queue.enqueue(entry("conv_2", priority=5))

        claimed = await queue.dequeue_next(TENANT, lambda e: not e.required_skills)

        assert claimed.conversation_id == "conv_2"
        assert await queue.get_position(TENANT, "conv_1") == 1


class TestLifecycle:
    """Tests for enqueue, claim and abandon."""

    @pytest.mark.asyncio
    async def test_enqueue_conversation(self, queue):
        """Test a conversation is copied into a waiting entry."""
        conversation = Conversation(
            conversation_id="conv_1",
            tenant_id=TENANT,
            priority=3,
            required_skills=["billing"],
            required_language="es",
        )

        stored = await queue.enqueue_conversation(conversation, reason="no_eligible_agents")

        assert stored.status == QueueEntryStatus.WAITING
        assert stored.reason == "no_eligible_agents"
        assert stored.to_conversation().required_language == "es"

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_rejected(self, queue):
        """Test a conversation can only wait once."""
        await queue.enqueue(entry("conv_1"))

        with pytest.raises(InvalidStateTransition):
            await queue.enqueue(entry("conv_1"))

    @pytest.mark.asyncio
    async def test_non_waiting_entry_rejected(self, queue):
        """Test only fresh waiting entries are accepted."""
        with pytest.raises(InvalidStateTransition):
            await queue.enqueue(entry("conv_1", status=QueueEntryStatus.ASSIGNED))

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, queue, store):
        """Test a claimed entry cannot be claimed again."""
        queued = await queue.enqueue(entry("conv_1"))

        first = await queue.dequeue_next(TENANT)
        second = await store.claim_queue_entry(TENANT, queued.entry_id)

        assert first.status == QueueEntryStatus.CLAIMED
        assert second is None
        assert await queue.dequeue_next(TENANT) is None

    @pytest.mark.asyncio
    async def test_release_claim_keeps_position(self, queue):
        """Test a released claim returns to its original place."""
        await queue.enqueue(entry("conv_1", seconds_ago=20))
        await queue.enqueue(entry("conv_2", seconds_ago=10))

        claimed = await queue.dequeue_next(TENANT)
        assert await queue.get_position(TENANT, "conv_2") == 1

        await queue.release_claim(claimed)

        assert await queue.get_position(TENANT, "conv_1") == 1
        assert await queue.get_position(TENANT, "conv_2") == 2

    @pytest.mark.asyncio
    async def test_abandon(self, queue):
        """Test abandoning removes the entry and allows re-queueing."""
        await queue.enqueue(entry("conv_1"))

        abandoned = await queue.abandon(TENANT, "conv_1")

        assert abandoned.status == QueueEntryStatus.ABANDONED
        assert await queue.get_position(TENANT, "conv_1") is None
        await queue.enqueue(entry("conv_1"))

    @pytest.mark.asyncio
    async def test_abandon_unknown(self, queue):
        """Test abandoning something that is not queued."""
        with pytest.raises(QueueEntryNotFound):
            await queue.abandon(TENANT, "conv_missing")


class TestPosition:
    """Tests for position and wait estimates."""

    @pytest.mark.asyncio
    async def test_position_is_one_based(self, queue):
        """Test positions follow queue order."""
        await queue.enqueue(entry("conv_1", priority=5, seconds_ago=5))
        await queue.enqueue(entry("conv_2", priority=2))

        assert await queue.get_position(TENANT, "conv_2") == 1
        assert await queue.get_position(TENANT, "conv_1") == 2
        assert await queue.get_position(TENANT, "conv_missing") is None

    @pytest.mark.asyncio
    async def test_tenants_do_not_share_positions(self, queue):
        """Test each tenant has its own queue."""
        await queue.enqueue(entry("conv_1"))
        await queue.enqueue(entry("conv_9", tenant_id="org_other"))

        assert await queue.get_position("org_other", "conv_9") == 1
        assert await queue.dequeue_next("org_other", lambda e: e.conversation_id == "conv_1") is None

    def test_estimate(self, queue):
        """Test the wait estimate scales with position."""
        assert queue.estimate_wait_minutes(3) == 12
        assert queue.estimate_wait_minutes(None) is None

    @pytest.mark.asyncio
    async def test_stats(self, queue):
        """Test queue statistics."""
        await queue.enqueue(entry("conv_1", priority=1, seconds_ago=90))
        await queue.enqueue(entry("conv_2", priority=5))
        await queue.enqueue(entry("conv_3", priority=5))

        stats = await queue.get_queue_stats(TENANT)

        assert stats["waiting"] == 3
        assert stats["by_priority"] == {1: 1, 5: 2}
        assert stats["longest_wait_seconds"] >= 90
        assert stats["estimated_wait_minutes_last"] == 12
