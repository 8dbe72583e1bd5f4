"""
Conversation Queue Module

Fallback queue for conversations that could not be assigned. Waiting
entries are ordered by priority (1 = urgent first), then enqueue time, then
insertion sequence. Taking an entry off the queue is a conditional claim,
so two drains never route the same entry.
"""

from typing import Any, Callable, Dict, List, Optional

import structlog

from .base import (
    Conversation,
    InvalidStateTransition,
    QueueEntry,
    QueueEntryNotFound,
    QueueEntryStatus,
    utcnow,
)
from .store import RoutingStore


logger = structlog.get_logger(__name__)

EntryPredicate = Callable[[QueueEntry], bool]


class ConversationQueue:
    """
    Per-tenant priority queue of unassigned conversations.

    Features:
    - Priority then FIFO ordering
    - Conditional claim for draining
    - Position and estimated wait lookup
    """

    def __init__(self, store: RoutingStore, minutes_per_queue_position: int = 5):
        self._store = store
        self._minutes_per_position = minutes_per_queue_position

    async def enqueue(self, entry: QueueEntry) -> QueueEntry:
        """
        Add a waiting entry.

        Raises InvalidStateTransition when the conversation is already
        assigned or already waiting.
        """
        if entry.status != QueueEntryStatus.WAITING or entry.assigned_agent_id is not None:
            raise InvalidStateTransition("Only unassigned waiting entries can be enqueued")

        stored = await self._store.add_queue_entry(entry)
        logger.info(
            "conversation_enqueued",
            tenant_id=stored.tenant_id,
            conversation_id=stored.conversation_id,
            entry_id=stored.entry_id,
            priority=stored.priority,
            reason=stored.reason,
        )
        return stored

    async def enqueue_conversation(self, conversation: Conversation, reason: str = "") -> QueueEntry:
        return await self.enqueue(QueueEntry.from_conversation(conversation, reason=reason))

    async def dequeue_next(
        self,
        tenant_id: str,
        predicate: Optional[EntryPredicate] = None,
    ) -> Optional[QueueEntry]:
        """
        Claim the first waiting entry that satisfies ``predicate``.

        Entries that do not match stay in the queue untouched. Returns None
        when nothing matches.
        """
        for entry in await self._store.list_waiting_entries(tenant_id):
            if predicate is not None and not predicate(entry):
                continue
            claimed = await self._store.claim_queue_entry(tenant_id, entry.entry_id)
            if claimed is not None:
                return claimed
            # Another worker claimed it between the read and the claim
        return None

    async def release_claim(self, entry: QueueEntry) -> QueueEntry:
        """Put a claimed entry back; it keeps its original position."""
        return await self._store.release_queue_claim(entry.tenant_id, entry.entry_id)

    async def abandon(self, tenant_id: str, conversation_id: str) -> QueueEntry:
        """Drop a conversation from the queue, e.g. when the customer leaves."""
        entry = await self._store.get_open_queue_entry(tenant_id, conversation_id)
        if entry is None:
            raise QueueEntryNotFound(f"Conversation {conversation_id} is not queued")

        abandoned = await self._store.abandon_queue_entry(tenant_id, entry.entry_id)
        logger.info(
            "conversation_abandoned",
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            waited_seconds=round(abandoned.wait_seconds(), 1),
        )
        return abandoned

    async def get_open_entry(self, tenant_id: str, conversation_id: str) -> Optional[QueueEntry]:
        return await self._store.get_open_queue_entry(tenant_id, conversation_id)

    async def list_waiting(self, tenant_id: str) -> List[QueueEntry]:
        return await self._store.list_waiting_entries(tenant_id)

    async def get_position(self, tenant_id: str, conversation_id: str) -> Optional[int]:
        """1-based rank among waiting entries; None if the conversation is not waiting."""
        for position, entry in enumerate(await self._store.list_waiting_entries(tenant_id), 1):
            if entry.conversation_id == conversation_id:
                return position
        return None

    def estimate_wait_minutes(self, position: Optional[int]) -> Optional[int]:
        if position is None:
            return None
        return position * self._minutes_per_position

    async def get_queue_stats(self, tenant_id: str) -> Dict[str, Any]:
        waiting = await self._store.list_waiting_entries(tenant_id)
        now = utcnow()
        by_priority: Dict[int, int] = {}
        for entry in waiting:
            by_priority[entry.priority] = by_priority.get(entry.priority, 0) + 1

        return {
            "waiting": len(waiting),
            "by_priority": by_priority,
            "longest_wait_seconds": max((e.wait_seconds(now) for e in waiting), default=0.0),
            "estimated_wait_minutes_last": self.estimate_wait_minutes(len(waiting) or None),
        }


__all__ = ["ConversationQueue", "EntryPredicate"]
