"""
In-Memory Routing Store

Process-local backend used by tests and single-instance deployments. One
asyncio.Lock serializes every mutation, so each conditional write is atomic
with respect to all other coroutines. Records are copied on the way in and
out so callers never share state with the store.
"""

import asyncio
import copy
import dataclasses
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..base import (
    AgentCapacity,
    AgentNotFoundError,
    Assignment,
    CapacityRaceLost,
    EscalationRule,
    HistoryFilter,
    InvalidStateTransition,
    QueueEntry,
    QueueEntryNotFound,
    QueueEntryStatus,
    RotationPointer,
    RoutingHistoryEntry,
    RoutingRule,
    RoutingStrategy,
    TenantRoutingSettings,
    utcnow,
)
from .base import RoutingStore


_OPEN_STATUSES = (QueueEntryStatus.WAITING, QueueEntryStatus.CLAIMED)


class InMemoryRoutingStore(RoutingStore):
    """Routing state held in dictionaries keyed by tenant."""

    def __init__(self):
        self._lock = asyncio.Lock()

        self._agents: Dict[Tuple[str, str], AgentCapacity] = {}
        self._rules: Dict[Tuple[str, str], RoutingRule] = {}
        self._settings: Dict[str, TenantRoutingSettings] = {}
        self._pointers: Dict[str, RotationPointer] = {}
        self._queue: Dict[Tuple[str, str], QueueEntry] = {}
        self._assignments: Dict[Tuple[str, str], Assignment] = {}
        self._history: Dict[str, List[RoutingHistoryEntry]] = defaultdict(list)
        self._escalation_rules: Dict[Tuple[str, str], EscalationRule] = {}

        self._queue_sequence: Dict[str, int] = defaultdict(int)

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    async def get_agent(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        agent = self._agents.get((tenant_id, agent_id))
        return copy.deepcopy(agent) if agent else None

    async def list_agents(self, tenant_id: str) -> List[AgentCapacity]:
        agents = [a for (t, _), a in self._agents.items() if t == tenant_id]
        return [copy.deepcopy(a) for a in sorted(agents, key=lambda a: a.agent_id)]

    async def save_agent(self, agent: AgentCapacity) -> AgentCapacity:
        async with self._lock:
            key = (agent.tenant_id, agent.agent_id)
            stored = copy.deepcopy(agent)
            existing = self._agents.get(key)
            if existing:
                if agent.max_concurrent_conversations < existing.current_conversation_count:
                    raise InvalidStateTransition(
                        f"Agent {agent.agent_id} holds {existing.current_conversation_count} "
                        f"conversations; max cannot drop to {agent.max_concurrent_conversations}"
                    )
                stored.current_conversation_count = existing.current_conversation_count
                stored.total_conversations_handled = existing.total_conversations_handled
                stored.last_assigned_at = existing.last_assigned_at
                stored.created_at = existing.created_at
            stored.updated_at = utcnow()
            self._agents[key] = stored
            return copy.deepcopy(stored)

    async def try_increment_load(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        async with self._lock:
            agent = self._require_agent(tenant_id, agent_id)
            if not agent.has_capacity:
                return None
            agent.current_conversation_count += 1
            agent.updated_at = utcnow()
            return copy.deepcopy(agent)

    async def try_decrement_load(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        async with self._lock:
            agent = self._require_agent(tenant_id, agent_id)
            if agent.current_conversation_count <= 0:
                return None
            agent.current_conversation_count -= 1
            agent.updated_at = utcnow()
            return copy.deepcopy(agent)

    def _require_agent(self, tenant_id: str, agent_id: str) -> AgentCapacity:
        agent = self._agents.get((tenant_id, agent_id))
        if agent is None:
            raise AgentNotFoundError(f"Agent not found: {agent_id}")
        return agent

    # -------------------------------------------------------------------------
    # Rules, settings, rotation pointer
    # -------------------------------------------------------------------------

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[RoutingRule]:
        rule = self._rules.get((tenant_id, rule_id))
        return copy.deepcopy(rule) if rule else None

    async def list_rules(self, tenant_id: str) -> List[RoutingRule]:
        rules = [r for (t, _), r in self._rules.items() if t == tenant_id]
        return [copy.deepcopy(r) for r in sorted(rules, key=lambda r: (r.priority, r.rule_id))]

    async def save_rule(self, rule: RoutingRule) -> RoutingRule:
        async with self._lock:
            self._rules[(rule.tenant_id, rule.rule_id)] = copy.deepcopy(rule)
            return copy.deepcopy(rule)

    async def get_settings(self, tenant_id: str) -> Optional[TenantRoutingSettings]:
        settings = self._settings.get(tenant_id)
        return copy.deepcopy(settings) if settings else None

    async def save_settings(self, settings: TenantRoutingSettings) -> TenantRoutingSettings:
        async with self._lock:
            self._settings[settings.tenant_id] = copy.deepcopy(settings)
            return copy.deepcopy(settings)

    async def get_rotation_pointer(self, tenant_id: str) -> RotationPointer:
        pointer = self._pointers.get(tenant_id)
        return copy.deepcopy(pointer) if pointer else RotationPointer(tenant_id=tenant_id)

    async def compare_and_set_rotation_pointer(
        self,
        tenant_id: str,
        expected_version: int,
        last_agent_id: str,
    ) -> bool:
        async with self._lock:
            current = self._pointers.get(tenant_id) or RotationPointer(tenant_id=tenant_id)
            if current.version != expected_version:
                return False
            self._pointers[tenant_id] = RotationPointer(
                tenant_id=tenant_id,
                last_agent_id=last_agent_id,
                version=expected_version + 1,
            )
            return True

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    async def add_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        async with self._lock:
            if (entry.tenant_id, entry.conversation_id) in self._assignments:
                raise InvalidStateTransition(
                    f"Conversation {entry.conversation_id} is already assigned"
                )
            if self._find_open_entry(entry.tenant_id, entry.conversation_id):
                raise InvalidStateTransition(
                    f"Conversation {entry.conversation_id} is already queued"
                )

            self._queue_sequence[entry.tenant_id] += 1
            stored = copy.deepcopy(entry)
            stored.status = QueueEntryStatus.WAITING
            stored.assigned_agent_id = None
            stored.assigned_at = None
            stored.sequence = self._queue_sequence[entry.tenant_id]
            self._queue[(entry.tenant_id, entry.entry_id)] = stored
            return copy.deepcopy(stored)

    async def get_queue_entry(self, tenant_id: str, entry_id: str) -> Optional[QueueEntry]:
        entry = self._queue.get((tenant_id, entry_id))
        return copy.deepcopy(entry) if entry else None

    async def get_open_queue_entry(
        self,
        tenant_id: str,
        conversation_id: str,
    ) -> Optional[QueueEntry]:
        entry = self._find_open_entry(tenant_id, conversation_id)
        return copy.deepcopy(entry) if entry else None

    async def list_waiting_entries(self, tenant_id: str) -> List[QueueEntry]:
        waiting = [
            e for (t, _), e in self._queue.items()
            if t == tenant_id and e.status == QueueEntryStatus.WAITING
        ]
        return [copy.deepcopy(e) for e in sorted(waiting, key=lambda e: e.sort_key)]

    async def list_open_tenants(self) -> List[str]:
        tenants = {
            t for (t, _), e in self._queue.items() if e.status in _OPEN_STATUSES
        }
        tenants.update(t for (t, _) in self._assignments)
        return sorted(tenants)

    async def claim_queue_entry(self, tenant_id: str, entry_id: str) -> Optional[QueueEntry]:
        async with self._lock:
            entry = self._queue.get((tenant_id, entry_id))
            if entry is None or entry.status != QueueEntryStatus.WAITING:
                return None
            entry.status = QueueEntryStatus.CLAIMED
            return copy.deepcopy(entry)

    async def release_queue_claim(self, tenant_id: str, entry_id: str) -> QueueEntry:
        async with self._lock:
            entry = self._require_entry(tenant_id, entry_id)
            if entry.status != QueueEntryStatus.CLAIMED:
                raise InvalidStateTransition(
                    f"Queue entry {entry_id} is {entry.status.value}, not claimed"
                )
            entry.status = QueueEntryStatus.WAITING
            return copy.deepcopy(entry)

    async def abandon_queue_entry(self, tenant_id: str, entry_id: str) -> QueueEntry:
        async with self._lock:
            entry = self._require_entry(tenant_id, entry_id)
            if entry.status not in _OPEN_STATUSES:
                raise InvalidStateTransition(
                    f"Queue entry {entry_id} is already {entry.status.value}"
                )
            entry.status = QueueEntryStatus.ABANDONED
            return copy.deepcopy(entry)

    def _find_open_entry(self, tenant_id: str, conversation_id: str) -> Optional[QueueEntry]:
        for (t, _), entry in self._queue.items():
            if (
                t == tenant_id
                and entry.conversation_id == conversation_id
                and entry.status in _OPEN_STATUSES
            ):
                return entry
        return None

    def _require_entry(self, tenant_id: str, entry_id: str) -> QueueEntry:
        entry = self._queue.get((tenant_id, entry_id))
        if entry is None:
            raise QueueEntryNotFound(f"Queue entry not found: {entry_id}")
        return entry

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    async def get_assignment(self, tenant_id: str, conversation_id: str) -> Optional[Assignment]:
        assignment = self._assignments.get((tenant_id, conversation_id))
        return copy.deepcopy(assignment) if assignment else None

    async def list_assignments(
        self,
        tenant_id: str,
        agent_id: Optional[str] = None,
    ) -> List[Assignment]:
        assignments = [
            a for (t, _), a in self._assignments.items()
            if t == tenant_id and (agent_id is None or a.agent_id == agent_id)
        ]
        assignments.sort(key=lambda a: (a.assigned_at, a.conversation_id))
        return [copy.deepcopy(a) for a in assignments]

    async def commit_assignment(
        self,
        assignment: Assignment,
        queue_entry_id: Optional[str] = None,
    ) -> AgentCapacity:
        async with self._lock:
            tenant_id = assignment.tenant_id
            if (tenant_id, assignment.conversation_id) in self._assignments:
                raise InvalidStateTransition(
                    f"Conversation {assignment.conversation_id} is already assigned"
                )

            entry = None
            if queue_entry_id:
                entry = self._require_entry(tenant_id, queue_entry_id)
                if entry.status not in _OPEN_STATUSES:
                    raise InvalidStateTransition(
                        f"Queue entry {queue_entry_id} is {entry.status.value}"
                    )

            agent = self._require_agent(tenant_id, assignment.agent_id)
            if not agent.has_capacity:
                raise CapacityRaceLost(agent.agent_id)

            # All checks passed: apply every part of the write together
            now = utcnow()
            agent.current_conversation_count += 1
            agent.total_conversations_handled += 1
            agent.last_assigned_at = now
            agent.updated_at = now
            self._assignments[(tenant_id, assignment.conversation_id)] = copy.deepcopy(assignment)

            if entry is not None:
                entry.status = QueueEntryStatus.ASSIGNED
                entry.assigned_agent_id = assignment.agent_id
                entry.assigned_at = assignment.assigned_at

            return copy.deepcopy(agent)

    async def release_assignment(
        self,
        tenant_id: str,
        conversation_id: str,
        agent_id: str,
    ) -> Assignment:
        async with self._lock:
            assignment = self._assignments.get((tenant_id, conversation_id))
            if assignment is None or assignment.agent_id != agent_id:
                raise InvalidStateTransition(
                    f"Conversation {conversation_id} is not assigned to {agent_id}"
                )
            agent = self._require_agent(tenant_id, agent_id)
            if agent.current_conversation_count <= 0:
                raise InvalidStateTransition(f"Agent {agent_id} has no conversations to release")

            agent.current_conversation_count -= 1
            agent.updated_at = utcnow()
            del self._assignments[(tenant_id, conversation_id)]
            return copy.deepcopy(assignment)

    async def transfer_assignment(
        self,
        tenant_id: str,
        conversation_id: str,
        from_agent_id: str,
        to_agent_id: str,
        strategy: Optional[RoutingStrategy] = None,
    ) -> Assignment:
        async with self._lock:
            assignment = self._assignments.get((tenant_id, conversation_id))
            if assignment is None or assignment.agent_id != from_agent_id:
                raise InvalidStateTransition(
                    f"Conversation {conversation_id} is not assigned to {from_agent_id}"
                )
            if from_agent_id == to_agent_id:
                raise InvalidStateTransition(
                    f"Conversation {conversation_id} is already with {to_agent_id}"
                )
            source = self._require_agent(tenant_id, from_agent_id)
            target = self._require_agent(tenant_id, to_agent_id)
            if not target.has_capacity:
                raise CapacityRaceLost(to_agent_id)

            now = utcnow()
            source.current_conversation_count -= 1
            source.updated_at = now
            target.current_conversation_count += 1
            target.total_conversations_handled += 1
            target.last_assigned_at = now
            target.updated_at = now

            assignment.agent_id = to_agent_id
            assignment.assigned_at = now
            assignment.strategy = strategy
            return copy.deepcopy(assignment)

    async def update_assignment_activity(
        self,
        tenant_id: str,
        conversation_id: str,
        customer_message_at: Optional[datetime] = None,
        agent_reply_at: Optional[datetime] = None,
    ) -> Assignment:
        async with self._lock:
            assignment = self._assignments.get((tenant_id, conversation_id))
            if assignment is None:
                raise InvalidStateTransition(f"Conversation {conversation_id} is not assigned")
            if customer_message_at:
                assignment.last_customer_message_at = customer_message_at
            if agent_reply_at:
                assignment.last_agent_reply_at = agent_reply_at
            return copy.deepcopy(assignment)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def append_history(self, entry: RoutingHistoryEntry) -> RoutingHistoryEntry:
        async with self._lock:
            entries = self._history[entry.tenant_id]
            stored = dataclasses.replace(copy.deepcopy(entry), sequence=len(entries) + 1)
            entries.append(stored)
            return copy.deepcopy(stored)

    async def query_history(
        self,
        tenant_id: str,
        history_filter: HistoryFilter,
    ) -> List[RoutingHistoryEntry]:
        matched = [e for e in self._history.get(tenant_id, []) if history_filter.matches(e)]
        if history_filter.newest_first:
            matched.reverse()
        start = history_filter.offset
        return [copy.deepcopy(e) for e in matched[start:start + history_filter.limit]]

    # -------------------------------------------------------------------------
    # Escalation rules
    # -------------------------------------------------------------------------

    async def get_escalation_rule(self, tenant_id: str, rule_id: str) -> Optional[EscalationRule]:
        rule = self._escalation_rules.get((tenant_id, rule_id))
        return copy.deepcopy(rule) if rule else None

    async def list_escalation_rules(self, tenant_id: str) -> List[EscalationRule]:
        rules = [r for (t, _), r in self._escalation_rules.items() if t == tenant_id]
        return [copy.deepcopy(r) for r in sorted(rules, key=lambda r: (r.priority, r.rule_id))]

    async def save_escalation_rule(self, rule: EscalationRule) -> EscalationRule:
        async with self._lock:
            self._escalation_rules[(rule.tenant_id, rule.rule_id)] = copy.deepcopy(rule)
            return copy.deepcopy(rule)


__all__ = ["InMemoryRoutingStore"]
