"""
Routing Store Interface

Persistence collaborator for the routing core. Every mutating method that
guards an invariant (capacity, single assignee, queue claim) is a single
conditional write in the backend: either the whole write happens or nothing
does.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..base import (
    AgentCapacity,
    Assignment,
    EscalationRule,
    HistoryFilter,
    QueueEntry,
    RotationPointer,
    RoutingHistoryEntry,
    RoutingRule,
    RoutingStrategy,
    TenantRoutingSettings,
)


class RoutingStore(ABC):
    """Abstract persistence backend for routing state."""

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_agent(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        pass

    @abstractmethod
    async def list_agents(self, tenant_id: str) -> List[AgentCapacity]:
        """All agents of a tenant sorted by agent_id."""
        pass

    @abstractmethod
    async def save_agent(self, agent: AgentCapacity) -> AgentCapacity:
        """
        Insert or update an agent's profile.

        The stored ``current_conversation_count`` is owned by the routing core
        and is kept on update. Lowering the maximum below the live count
        raises InvalidStateTransition.
        """
        pass

    @abstractmethod
    async def try_increment_load(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        """Increment the count only if it is below the maximum; None otherwise."""
        pass

    @abstractmethod
    async def try_decrement_load(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        """Decrement the count only if it is above zero; None otherwise."""
        pass

    # -------------------------------------------------------------------------
    # Rules, settings, rotation pointer
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[RoutingRule]:
        pass

    @abstractmethod
    async def list_rules(self, tenant_id: str) -> List[RoutingRule]:
        pass

    @abstractmethod
    async def save_rule(self, rule: RoutingRule) -> RoutingRule:
        pass

    @abstractmethod
    async def get_settings(self, tenant_id: str) -> Optional[TenantRoutingSettings]:
        pass

    @abstractmethod
    async def save_settings(self, settings: TenantRoutingSettings) -> TenantRoutingSettings:
        pass

    @abstractmethod
    async def get_rotation_pointer(self, tenant_id: str) -> RotationPointer:
        """Current pointer; version 0 with no agent when never advanced."""
        pass

    @abstractmethod
    async def compare_and_set_rotation_pointer(
        self,
        tenant_id: str,
        expected_version: int,
        last_agent_id: str,
    ) -> bool:
        """Advance the pointer if its version is still ``expected_version``."""
        pass

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        """
        Store a waiting entry and assign its sequence number.

        Raises InvalidStateTransition when the conversation is assigned or
        already has an open (waiting or claimed) entry.
        """
        pass

    @abstractmethod
    async def get_queue_entry(self, tenant_id: str, entry_id: str) -> Optional[QueueEntry]:
        pass

    @abstractmethod
    async def get_open_queue_entry(
        self,
        tenant_id: str,
        conversation_id: str,
    ) -> Optional[QueueEntry]:
        """The waiting or claimed entry for a conversation, if any."""
        pass

    @abstractmethod
    async def list_waiting_entries(self, tenant_id: str) -> List[QueueEntry]:
        """Waiting entries ordered by priority, enqueued_at, sequence."""
        pass

    @abstractmethod
    async def list_open_tenants(self) -> List[str]:
        """Tenants that currently have waiting entries or assignments."""
        pass

    @abstractmethod
    async def claim_queue_entry(self, tenant_id: str, entry_id: str) -> Optional[QueueEntry]:
        """Move a waiting entry to claimed; None if it is no longer waiting."""
        pass

    @abstractmethod
    async def release_queue_claim(self, tenant_id: str, entry_id: str) -> QueueEntry:
        """Return a claimed entry to waiting, keeping its position."""
        pass

    @abstractmethod
    async def abandon_queue_entry(self, tenant_id: str, entry_id: str) -> QueueEntry:
        pass

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_assignment(self, tenant_id: str, conversation_id: str) -> Optional[Assignment]:
        pass

    @abstractmethod
    async def list_assignments(
        self,
        tenant_id: str,
        agent_id: Optional[str] = None,
    ) -> List[Assignment]:
        """Assignments ordered by assigned_at, newest last."""
        pass

    @abstractmethod
    async def commit_assignment(
        self,
        assignment: Assignment,
        queue_entry_id: Optional[str] = None,
    ) -> AgentCapacity:
        """
        Assign a conversation in one atomic write.

        Increments the agent's count only while it is below the maximum,
        records the assignment and, when ``queue_entry_id`` is given, marks
        that entry assigned. Raises CapacityRaceLost when the agent is full,
        InvalidStateTransition when the conversation is already assigned or
        the entry is not open, AgentNotFoundError for an unknown agent.
        """
        pass

    @abstractmethod
    async def release_assignment(
        self,
        tenant_id: str,
        conversation_id: str,
        agent_id: str,
    ) -> Assignment:
        """Remove the assignment and decrement the agent's count atomically."""
        pass

    @abstractmethod
    async def transfer_assignment(
        self,
        tenant_id: str,
        conversation_id: str,
        from_agent_id: str,
        to_agent_id: str,
        strategy: Optional[RoutingStrategy] = None,
    ) -> Assignment:
        """Move an assignment between agents in one atomic write."""
        pass

    @abstractmethod
    async def update_assignment_activity(
        self,
        tenant_id: str,
        conversation_id: str,
        customer_message_at: Optional[datetime] = None,
        agent_reply_at: Optional[datetime] = None,
    ) -> Assignment:
        pass

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    @abstractmethod
    async def append_history(self, entry: RoutingHistoryEntry) -> RoutingHistoryEntry:
        """Append an entry and return it with its tenant sequence number."""
        pass

    @abstractmethod
    async def query_history(
        self,
        tenant_id: str,
        history_filter: HistoryFilter,
    ) -> List[RoutingHistoryEntry]:
        """Matching entries ordered by sequence."""
        pass

    # -------------------------------------------------------------------------
    # Escalation rules
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_escalation_rule(self, tenant_id: str, rule_id: str) -> Optional[EscalationRule]:
        pass

    @abstractmethod
    async def list_escalation_rules(self, tenant_id: str) -> List[EscalationRule]:
        pass

    @abstractmethod
    async def save_escalation_rule(self, rule: EscalationRule) -> EscalationRule:
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


__all__ = ["RoutingStore"]
