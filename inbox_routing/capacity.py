"""
Agent Capacity Module

Tracks each agent's availability and live conversation load. The
conversation count is only ever changed through conditional store writes;
nothing here clamps a count into range.
"""

import asyncio
import dataclasses
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import structlog

from .base import (
    AgentCapacity,
    AgentFilter,
    AgentNotFoundError,
    AgentStatus,
    CapacityRaceLost,
    InvalidStateTransition,
    utcnow,
)
from .store import RoutingStore


logger = structlog.get_logger(__name__)

StatusCallback = Callable[[AgentCapacity, AgentStatus], Union[None, Awaitable[None]]]

# Fields an admin or a metrics collaborator may change through update_agent
_UPDATABLE_FIELDS = {
    "display_name",
    "status",
    "status_message",
    "auto_assign_enabled",
    "max_concurrent_conversations",
    "skills",
    "languages",
    "avg_response_time_seconds",
    "satisfaction_score",
}


class AgentCapacityStore:
    """
    Agent availability and load.

    Features:
    - Agent registration and soft disable
    - Status changes with callbacks
    - Candidate lookup with skill and language filters
    - Conditional load increment and decrement
    """

    def __init__(self, store: RoutingStore, default_max_concurrent: int = 5):
        self._store = store
        self._default_max_concurrent = default_max_concurrent
        self._status_callbacks: List[StatusCallback] = []

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def register_agent(
        self,
        tenant_id: str,
        agent_id: str,
        skills: Optional[Iterable[str]] = None,
        languages: Optional[Iterable[str]] = None,
        max_concurrent_conversations: Optional[int] = None,
        status: AgentStatus = AgentStatus.OFFLINE,
        auto_assign_enabled: bool = True,
        display_name: str = "",
        avg_response_time_seconds: float = 60.0,
        satisfaction_score: float = 4.5,
    ) -> AgentCapacity:
        """Create an agent's routing profile, or replace it while keeping its load."""
        if max_concurrent_conversations is None:
            settings = await self._store.get_settings(tenant_id)
            max_concurrent_conversations = (
                settings.default_max_concurrent_conversations
                if settings
                else self._default_max_concurrent
            )

        agent = await self._store.save_agent(AgentCapacity(
            agent_id=agent_id,
            tenant_id=tenant_id,
            status=status,
            auto_assign_enabled=auto_assign_enabled,
            max_concurrent_conversations=max_concurrent_conversations,
            skills=set(skills or []),
            languages=set(languages or []),
            avg_response_time_seconds=avg_response_time_seconds,
            satisfaction_score=satisfaction_score,
            display_name=display_name,
        ))

        logger.info(
            "agent_registered",
            tenant_id=tenant_id,
            agent_id=agent_id,
            status=agent.status.value,
            max_concurrent=agent.max_concurrent_conversations,
        )
        return agent

    async def get_agent(self, tenant_id: str, agent_id: str) -> AgentCapacity:
        agent = await self._store.get_agent(tenant_id, agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return agent

    async def list_agents(
        self,
        tenant_id: str,
        status: Optional[AgentStatus] = None,
    ) -> List[AgentCapacity]:
        agents = await self._store.list_agents(tenant_id)
        if status:
            agents = [a for a in agents if a.status == status]
        return agents

    async def update_agent(self, tenant_id: str, agent_id: str, **changes: Any) -> AgentCapacity:
        """
        Update profile fields or rolling metrics.

        The conversation count is not updatable here; lowering the maximum
        below the live count raises InvalidStateTransition.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update agent fields: {', '.join(sorted(unknown))}")

        agent = await self.get_agent(tenant_id, agent_id)
        old_status = agent.status
        if "skills" in changes:
            changes["skills"] = set(changes["skills"])
        if "languages" in changes:
            changes["languages"] = set(changes["languages"])
        if "status" in changes:
            changes["status"] = AgentStatus(changes["status"])

        updated = await self._store.save_agent(dataclasses.replace(agent, **changes))

        logger.info(
            "agent_updated",
            tenant_id=tenant_id,
            agent_id=agent_id,
            fields=sorted(changes),
        )
        if updated.status != old_status:
            await self._notify_status_change(updated, old_status)
        return updated

    async def set_status(
        self,
        tenant_id: str,
        agent_id: str,
        status: AgentStatus,
        message: str = "",
    ) -> AgentCapacity:
        """Agent-controlled availability change."""
        return await self.update_agent(
            tenant_id,
            agent_id,
            status=status,
            status_message=message,
        )

    async def disable_agent(self, tenant_id: str, agent_id: str) -> AgentCapacity:
        """Take an agent out of routing without deleting its record."""
        return await self.update_agent(
            tenant_id,
            agent_id,
            status=AgentStatus.OFFLINE,
            auto_assign_enabled=False,
        )

    # -------------------------------------------------------------------------
    # Status callbacks
    # -------------------------------------------------------------------------

    def add_status_callback(self, callback: StatusCallback) -> None:
        """Register a callback invoked as callback(agent, old_status)."""
        self._status_callbacks.append(callback)

    async def _notify_status_change(self, agent: AgentCapacity, old_status: AgentStatus) -> None:
        for callback in self._status_callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(agent, old_status)
                else:
                    callback(agent, old_status)
            except Exception as e:
                logger.error(
                    "status_callback_failed",
                    tenant_id=agent.tenant_id,
                    agent_id=agent.agent_id,
                    error=str(e),
                )

        logger.info(
            "agent_status_changed",
            tenant_id=agent.tenant_id,
            agent_id=agent.agent_id,
            old_status=old_status.value,
            new_status=agent.status.value,
        )

    # -------------------------------------------------------------------------
    # Candidates and load
    # -------------------------------------------------------------------------

    async def get_available_agents(
        self,
        tenant_id: str,
        agent_filter: Optional[AgentFilter] = None,
    ) -> List[AgentCapacity]:
        """
        Agents eligible for automatic routing right now, sorted by agent_id.

        An empty list is a normal result, not an error.
        """
        agents = await self._store.list_agents(tenant_id)
        return [
            agent for agent in agents
            if agent.is_routable and (agent_filter is None or agent_filter.matches(agent))
        ]

    async def increment_load(self, tenant_id: str, agent_id: str) -> AgentCapacity:
        agent = await self._store.try_increment_load(tenant_id, agent_id)
        if agent is None:
            raise CapacityRaceLost(agent_id)
        return agent

    async def decrement_load(self, tenant_id: str, agent_id: str) -> AgentCapacity:
        agent = await self._store.try_decrement_load(tenant_id, agent_id)
        if agent is None:
            raise InvalidStateTransition(f"Agent {agent_id} has no conversations to release")
        return agent

    @staticmethod
    def get_workload_score(agent: AgentCapacity) -> float:
        """Normalized load in [0, 1]."""
        return agent.workload_score

    async def get_workload_snapshot(self, tenant_id: str) -> Dict[str, float]:
        """Workload score per agent for every agent of the tenant."""
        return {a.agent_id: a.workload_score for a in await self._store.list_agents(tenant_id)}

    async def get_capacity_summary(self, tenant_id: str) -> Dict[str, Any]:
        agents = await self._store.list_agents(tenant_id)
        available = [a for a in agents if a.status == AgentStatus.AVAILABLE]
        return {
            "total_agents": len(agents),
            "available_agents": len(available),
            "routable_agents": len([a for a in agents if a.is_routable]),
            "active_conversations": sum(a.current_conversation_count for a in agents),
            "total_capacity": sum(a.max_concurrent_conversations for a in available),
            "generated_at": utcnow().isoformat(),
        }


__all__ = ["AgentCapacityStore", "StatusCallback"]
