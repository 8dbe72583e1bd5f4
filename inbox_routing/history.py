"""
Routing History Module

Append-only audit trail of routing decisions. There is no update or delete
path: a mistaken entry is corrected by appending a new entry that
references it.
"""

from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog

from .base import (
    HistoryFilter,
    RoutingHistoryEntry,
    RoutingOutcome,
    utcnow,
)
from .store import RoutingStore


logger = structlog.get_logger(__name__)

_STATISTICS_PAGE = 500


class RoutingHistory:
    """Records and reads routing decisions."""

    def __init__(self, store: RoutingStore):
        self._store = store

    async def record(self, entry: RoutingHistoryEntry) -> RoutingHistoryEntry:
        """Append an entry; the store assigns its tenant sequence number."""
        stored = await self._store.append_history(entry)
        logger.debug(
            "routing_decision_recorded",
            tenant_id=stored.tenant_id,
            conversation_id=stored.conversation_id,
            outcome=stored.outcome.value,
            selected_agent_id=stored.selected_agent_id,
            sequence=stored.sequence,
        )
        return stored

    async def query(
        self,
        tenant_id: str,
        history_filter: Optional[HistoryFilter] = None,
    ) -> List[RoutingHistoryEntry]:
        """Entries in sequence order, or newest first when the filter asks; read-only."""
        return await self._store.query_history(tenant_id, history_filter or HistoryFilter())

    async def append_correction(
        self,
        original: RoutingHistoryEntry,
        outcome: RoutingOutcome,
        reason: str,
        selected_agent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RoutingHistoryEntry:
        """Append an entry that supersedes ``original`` without modifying it."""
        correction = RoutingHistoryEntry(
            conversation_id=original.conversation_id,
            tenant_id=original.tenant_id,
            outcome=outcome,
            strategy_used=original.strategy_used,
            selected_agent_id=selected_agent_id,
            rule_id=original.rule_id,
            reason=reason,
            references_entry_id=original.entry_id,
            metadata=dict(metadata or {}),
        )
        return await self.record(correction)

    async def get_statistics(self, tenant_id: str, hours: int = 24) -> Dict[str, Any]:
        """Decision counts per outcome and strategy over a trailing window."""
        history_filter = HistoryFilter(
            since=utcnow() - timedelta(hours=hours),
            limit=_STATISTICS_PAGE,
        )
        entries: List[RoutingHistoryEntry] = []
        while True:
            page = await self._store.query_history(tenant_id, history_filter)
            entries.extend(page)
            if len(page) < _STATISTICS_PAGE:
                break
            history_filter.offset += _STATISTICS_PAGE

        if not entries:
            return {
                "total_decisions": 0,
                "assigned": 0,
                "queued": 0,
                "outcomes": {},
                "strategies": {},
            }

        outcome_counts: Dict[str, int] = defaultdict(int)
        strategy_counts: Dict[str, int] = defaultdict(int)
        for entry in entries:
            outcome_counts[entry.outcome.value] += 1
            if entry.outcome == RoutingOutcome.ASSIGNED and entry.strategy_used:
                strategy_counts[entry.strategy_used.value] += 1

        assigned = outcome_counts.get(RoutingOutcome.ASSIGNED.value, 0)
        queued = outcome_counts.get(RoutingOutcome.QUEUED.value, 0)
        return {
            "total_decisions": len(entries),
            "assigned": assigned,
            "queued": queued,
            "assignment_rate": assigned / (assigned + queued) if assigned + queued else 0,
            "outcomes": dict(outcome_counts),
            "strategies": dict(strategy_counts),
        }


__all__ = ["RoutingHistory"]
