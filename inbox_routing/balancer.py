"""
Load Balancer Module

Orchestrates a routing decision: resolve the strategy, fetch candidates,
evaluate, then either commit the assignment in one conditional store write
or put the conversation in the queue. Every decision lands in the routing
history.

Read-path failures (rules, candidates, rotation pointer) degrade to queuing
the conversation. Write-path failures propagate to the caller.
"""

import asyncio
from collections import defaultdict
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from .base import (
    AgentCapacity,
    AgentStatus,
    Assignment,
    CapacityRaceLost,
    Conversation,
    HistoryFilter,
    InvalidStateTransition,
    QueueEntry,
    RotationPointer,
    RoutingHistoryEntry,
    RoutingOutcome,
    RoutingResult,
    RoutingStatus,
    RoutingStrategy,
    StrategyConfig,
    default_strategy_config,
    utcnow,
)
from .capacity import AgentCapacityStore
from .config import RoutingConfig
from .history import RoutingHistory
from .queue import ConversationQueue
from .rules import ResolvedStrategy, RoutingRuleRegistry
from .store import RoutingStore
from .strategies import (
    SelectionContext,
    build_agent_filter,
    least_loaded_key,
    select_agent,
)


logger = structlog.get_logger(__name__)

_MAX_ALTERNATIVES = 3
_HISTORY_PAGE = 200


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class RoutingDecision:
    """Outcome of the read path for one routing attempt."""

    strategy: RoutingStrategy
    config: StrategyConfig
    rule_id: Optional[str] = None
    candidates: List[AgentCapacity] = field(default_factory=list)
    agent: Optional[AgentCapacity] = None
    pointer: Optional[RotationPointer] = None
    reason: str = ""
    preferred_agent_honored: bool = False

    @property
    def workload_scores(self) -> Dict[str, float]:
        return {a.agent_id: a.workload_score for a in self.candidates}

    @property
    def candidate_ids(self) -> List[str]:
        return [a.agent_id for a in self.candidates]

    def alternatives(self) -> List[str]:
        others = [a for a in self.candidates if not self.agent or a.agent_id != self.agent.agent_id]
        return [a.agent_id for a in sorted(others, key=least_loaded_key)[:_MAX_ALTERNATIVES]]


@dataclass
class ReleaseResult:
    """A released assignment and whatever the freed slot picked up."""

    assignment: Assignment
    history_entry_id: str
    drained: List[RoutingResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignment": self.assignment.to_dict(),
            "history_entry_id": self.history_entry_id,
            "drained": [r.to_dict() for r in self.drained],
        }


@dataclass
class RebalanceResult:
    """Conversations moved by a rebalancing pass."""

    moved: List[RoutingResult] = field(default_factory=list)
    details: List[str] = field(default_factory=list)

    @property
    def rebalanced(self) -> int:
        return len(self.moved)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rebalanced": self.rebalanced,
            "moved": [r.to_dict() for r in self.moved],
            "details": list(self.details),
        }


# =============================================================================
# Load Balancer
# =============================================================================


class LoadBalancer:
    """
    Conversation routing orchestrator.

    Features:
    - Strategy resolution and candidate evaluation
    - Conditional commit with race retry
    - Fallback queue with draining on freed capacity
    - Rejection, reassignment and rebalancing
    - Append-only decision history
    """

    def __init__(
        self,
        store: RoutingStore,
        config: Optional[RoutingConfig] = None,
        capacity: Optional[AgentCapacityStore] = None,
        rules: Optional[RoutingRuleRegistry] = None,
        queue: Optional[ConversationQueue] = None,
        history: Optional[RoutingHistory] = None,
    ):
        self.config = config or RoutingConfig()
        self._store = store
        self.capacity = capacity or AgentCapacityStore(
            store,
            default_max_concurrent=self.config.default_max_concurrent_conversations,
        )
        self.rules = rules or RoutingRuleRegistry(
            store,
            default_strategy=self.config.default_strategy,
            default_max_concurrent=self.config.default_max_concurrent_conversations,
        )
        self.queue = queue or ConversationQueue(
            store,
            minutes_per_queue_position=self.config.minutes_per_queue_position,
        )
        self.history = history or RoutingHistory(store)

        # In-process serialization of round robin per tenant; the persisted
        # pointer's compare-and-swap covers other processes
        self._rotation_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        self.capacity.add_status_callback(self._on_agent_status_changed)

    @property
    def store(self) -> RoutingStore:
        return self._store

    # -------------------------------------------------------------------------
    # Assignment
    # -------------------------------------------------------------------------

    async def assign_conversation(self, conversation: Conversation) -> RoutingResult:
        """
        Route a new conversation to an agent or to the queue.

        Never raises for "nobody available"; that is a queued result.
        Raises InvalidStateTransition if the conversation is already assigned.
        """
        tenant_id = conversation.tenant_id
        existing = await self._store.get_assignment(tenant_id, conversation.conversation_id)
        if existing is not None:
            raise InvalidStateTransition(
                f"Conversation {conversation.conversation_id} is already assigned "
                f"to {existing.agent_id}"
            )

        open_entry = await self.queue.get_open_entry(tenant_id, conversation.conversation_id)
        if open_entry is not None:
            return await self._queued_result(
                conversation,
                reason="already_queued",
                strategy=None,
            )

        return await self._route(conversation, trigger="assign")

    async def _route(
        self,
        conversation: Conversation,
        entry: Optional[QueueEntry] = None,
        exclude_agent_ids: Optional[Set[str]] = None,
        trigger: str = "assign",
    ) -> RoutingResult:
        """
        Decide and commit, retrying a lost capacity race.

        ``entry`` is a claimed queue entry when draining; it is either
        committed as assigned or released back to waiting.
        """
        exclude = set(exclude_agent_ids or ())
        attempts = self.config.race_retries + 1
        decision: Optional[RoutingDecision] = None

        for attempt in range(1, attempts + 1):
            try:
                resolved = await asyncio.wait_for(
                    self.rules.get_active_strategy(conversation.tenant_id, conversation),
                    timeout=self.config.decision_timeout_seconds,
                )
            except Exception as e:
                return await self._routing_read_failed(conversation, entry, e)

            async with AsyncExitStack() as stack:
                if self._uses_rotation(resolved):
                    await stack.enter_async_context(
                        self._rotation_locks[conversation.tenant_id]
                    )

                try:
                    decision = await asyncio.wait_for(
                        self._decide(conversation, resolved, exclude),
                        timeout=self.config.decision_timeout_seconds,
                    )
                except Exception as e:
                    return await self._routing_read_failed(conversation, entry, e)

                if decision.agent is None:
                    return await self._queue_conversation(conversation, entry, decision)

                try:
                    await self._store.commit_assignment(
                        Assignment.for_conversation(
                            conversation,
                            decision.agent.agent_id,
                            strategy=decision.strategy,
                        ),
                        queue_entry_id=entry.entry_id if entry else None,
                    )
                except CapacityRaceLost as e:
                    logger.info(
                        "capacity_race_lost",
                        tenant_id=conversation.tenant_id,
                        conversation_id=conversation.conversation_id,
                        agent_id=e.agent_id,
                        attempt=attempt,
                    )
                    decision.reason = "capacity_race_lost"
                    continue
                except Exception:
                    if entry is not None:
                        await self._release_claim_quietly(entry)
                    raise

                if decision.strategy == RoutingStrategy.ROUND_ROBIN and not decision.preferred_agent_honored:
                    await self._advance_rotation(conversation.tenant_id, decision)

            return await self._assigned_result(conversation, decision, entry, trigger, attempt)

        return await self._queue_conversation(conversation, entry, decision)

    @staticmethod
    def _uses_rotation(resolved: ResolvedStrategy) -> bool:
        return RoutingStrategy.ROUND_ROBIN in (resolved.strategy, resolved.fallback_strategy)

    async def _decide(
        self,
        conversation: Conversation,
        resolved: ResolvedStrategy,
        exclude: Set[str],
    ) -> RoutingDecision:
        """Read path: candidates, rotation pointer, evaluation, fallback."""
        tenant_id = conversation.tenant_id
        decision = RoutingDecision(
            strategy=resolved.strategy,
            config=resolved.config,
            rule_id=resolved.rule_id,
        )

        decision.candidates = await self.capacity.get_available_agents(
            tenant_id,
            build_agent_filter(conversation, resolved.config, exclude),
        )
        if decision.candidates:
            if resolved.strategy == RoutingStrategy.ROUND_ROBIN:
                decision.pointer = await self._store.get_rotation_pointer(tenant_id)
            decision.agent, decision.preferred_agent_honored = self._evaluate(
                resolved.strategy,
                decision.candidates,
                conversation,
                resolved.config,
                decision.pointer,
            )
            if decision.agent is not None:
                decision.reason = (
                    "preferred_agent" if decision.preferred_agent_honored
                    else f"selected_by_{resolved.strategy.value}"
                )
                return decision

        fallback = resolved.fallback_strategy
        if fallback is not None and fallback != resolved.strategy:
            # The fallback ignores the rule's own skill configuration
            fallback_config = default_strategy_config(fallback)
            candidates = await self.capacity.get_available_agents(
                tenant_id,
                build_agent_filter(conversation, None, exclude),
            )
            pointer = None
            if candidates and fallback == RoutingStrategy.ROUND_ROBIN:
                pointer = await self._store.get_rotation_pointer(tenant_id)
            agent, honored = self._evaluate(fallback, candidates, conversation, fallback_config, pointer)
            if agent is not None:
                return RoutingDecision(
                    strategy=fallback,
                    config=fallback_config,
                    rule_id=resolved.rule_id,
                    candidates=candidates,
                    agent=agent,
                    pointer=pointer,
                    reason=f"fallback_{fallback.value}",
                    preferred_agent_honored=honored,
                )

        decision.reason = (
            "no_candidate_selected" if decision.candidates else "no_eligible_agents"
        )
        return decision

    def _evaluate(
        self,
        strategy: RoutingStrategy,
        candidates: List[AgentCapacity],
        conversation: Conversation,
        config: StrategyConfig,
        pointer: Optional[RotationPointer],
    ) -> Tuple[Optional[AgentCapacity], bool]:
        context = SelectionContext(rotation_pointer=pointer)

        if self.config.honor_preferred_agent and conversation.preferred_agent_id:
            preferred = [a for a in candidates if a.agent_id == conversation.preferred_agent_id]
            if preferred:
                # The strategy still has to accept the preferred agent
                agent = select_agent(strategy, preferred, conversation, config, context)
                if agent is not None:
                    return agent, True

        return select_agent(strategy, candidates, conversation, config, context), False

    async def _advance_rotation(self, tenant_id: str, decision: RoutingDecision) -> None:
        pointer = decision.pointer or RotationPointer(tenant_id=tenant_id)
        advanced = await self._store.compare_and_set_rotation_pointer(
            tenant_id,
            expected_version=pointer.version,
            last_agent_id=decision.agent.agent_id,
        )
        if not advanced:
            logger.warning(
                "rotation_pointer_conflict",
                tenant_id=tenant_id,
                expected_version=pointer.version,
                agent_id=decision.agent.agent_id,
            )

    async def _routing_read_failed(
        self,
        conversation: Conversation,
        entry: Optional[QueueEntry],
        error: Exception,
    ) -> RoutingResult:
        logger.warning(
            "routing_read_failed",
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.conversation_id,
            error=repr(error),
        )
        return await self._queue_conversation(conversation, entry, None, reason="routing_unavailable")

    async def _release_claim_quietly(self, entry: QueueEntry) -> None:
        """Return a claimed entry to waiting after a failed commit; the commit error wins."""
        try:
            await self.queue.release_claim(entry)
        except Exception as e:
            logger.error(
                "drain_claim_release_failed",
                tenant_id=entry.tenant_id,
                conversation_id=entry.conversation_id,
                entry_id=entry.entry_id,
                error=repr(e),
            )

    # -------------------------------------------------------------------------
    # Results and history
    # -------------------------------------------------------------------------

    async def _assigned_result(
        self,
        conversation: Conversation,
        decision: RoutingDecision,
        entry: Optional[QueueEntry],
        trigger: str,
        attempt: int,
    ) -> RoutingResult:
        metadata: Dict[str, Any] = {"trigger": trigger, "attempt": attempt}
        if entry is not None:
            metadata["queue_entry_id"] = entry.entry_id
            metadata["waited_seconds"] = round(entry.wait_seconds(), 1)

        recorded = await self.history.record(RoutingHistoryEntry(
            conversation_id=conversation.conversation_id,
            tenant_id=conversation.tenant_id,
            outcome=RoutingOutcome.ASSIGNED,
            strategy_used=decision.strategy,
            candidate_agent_ids=decision.candidate_ids,
            workload_scores=decision.workload_scores,
            selected_agent_id=decision.agent.agent_id,
            rule_id=decision.rule_id,
            reason=decision.reason,
            metadata=metadata,
        ))

        logger.info(
            "conversation_assigned",
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.conversation_id,
            agent_id=decision.agent.agent_id,
            strategy=decision.strategy.value,
            reason=decision.reason,
            trigger=trigger,
        )

        return RoutingResult(
            status=RoutingStatus.ASSIGNED,
            conversation_id=conversation.conversation_id,
            tenant_id=conversation.tenant_id,
            agent_id=decision.agent.agent_id,
            strategy=decision.strategy,
            reason=decision.reason,
            history_entry_id=recorded.entry_id,
            alternative_agent_ids=decision.alternatives(),
        )

    async def _queue_conversation(
        self,
        conversation: Conversation,
        entry: Optional[QueueEntry],
        decision: Optional[RoutingDecision],
        reason: Optional[str] = None,
    ) -> RoutingResult:
        """
        Leave the conversation waiting.

        A claimed entry from a drain goes back to waiting at its old position
        without a new history entry, so repeated drains with no capacity
        change leave no trace.
        """
        reason = reason or (decision.reason if decision else "") or "no_eligible_agents"
        strategy = decision.strategy if decision else None

        if entry is not None:
            await self.queue.release_claim(entry)
            return await self._queued_result(conversation, reason=reason, strategy=strategy)

        queued = await self.queue.enqueue_conversation(conversation, reason=reason)
        position = await self.queue.get_position(queued.tenant_id, queued.conversation_id)

        recorded = await self.history.record(RoutingHistoryEntry(
            conversation_id=conversation.conversation_id,
            tenant_id=conversation.tenant_id,
            outcome=RoutingOutcome.QUEUED,
            strategy_used=strategy,
            candidate_agent_ids=decision.candidate_ids if decision else [],
            workload_scores=decision.workload_scores if decision else {},
            rule_id=decision.rule_id if decision else None,
            reason=reason,
            queue_position=position,
            metadata={"queue_entry_id": queued.entry_id},
        ))

        logger.info(
            "conversation_queued",
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.conversation_id,
            position=position,
            reason=reason,
        )

        return RoutingResult(
            status=RoutingStatus.QUEUED,
            conversation_id=conversation.conversation_id,
            tenant_id=conversation.tenant_id,
            strategy=strategy,
            reason=reason,
            queue_position=position,
            estimated_wait_minutes=self.queue.estimate_wait_minutes(position),
            history_entry_id=recorded.entry_id,
        )

    async def _queued_result(
        self,
        conversation: Conversation,
        reason: str,
        strategy: Optional[RoutingStrategy],
    ) -> RoutingResult:
        position = await self.queue.get_position(conversation.tenant_id, conversation.conversation_id)
        return RoutingResult(
            status=RoutingStatus.QUEUED,
            conversation_id=conversation.conversation_id,
            tenant_id=conversation.tenant_id,
            strategy=strategy,
            reason=reason,
            queue_position=position,
            estimated_wait_minutes=self.queue.estimate_wait_minutes(position),
        )

    async def _latest_assignment_entry(
        self,
        tenant_id: str,
        conversation_id: str,
    ) -> Optional[RoutingHistoryEntry]:
        history_filter = HistoryFilter(
            conversation_id=conversation_id,
            limit=_HISTORY_PAGE,
            newest_first=True,
        )
        while True:
            page = await self.history.query(tenant_id, history_filter)
            for entry in page:
                if entry.outcome in (RoutingOutcome.ASSIGNED, RoutingOutcome.REASSIGNED):
                    return entry
            if len(page) < _HISTORY_PAGE:
                return None
            history_filter.offset += _HISTORY_PAGE

    # -------------------------------------------------------------------------
    # Release, rejection, reassignment
    # -------------------------------------------------------------------------

    async def release_conversation(
        self,
        tenant_id: str,
        conversation_id: str,
        agent_id: str,
        reason: str = "resolved",
        drain: bool = True,
    ) -> ReleaseResult:
        """
        Free the agent's slot when a conversation closes or is handed off.

        Raises InvalidStateTransition if the conversation is not assigned to
        ``agent_id``. The freed slot immediately drains the queue.
        """
        released = await self._store.release_assignment(tenant_id, conversation_id, agent_id)

        recorded = await self.history.record(RoutingHistoryEntry(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            outcome=RoutingOutcome.RELEASED,
            strategy_used=released.strategy,
            selected_agent_id=agent_id,
            reason=reason,
            metadata={"handled_seconds": round((utcnow() - released.assigned_at).total_seconds(), 1)},
        ))

        logger.info(
            "conversation_released",
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            agent_id=agent_id,
            reason=reason,
        )

        drained = await self.drain_queue(tenant_id) if drain else []
        return ReleaseResult(
            assignment=released,
            history_entry_id=recorded.entry_id,
            drained=drained,
        )

    async def reject_assignment(
        self,
        tenant_id: str,
        conversation_id: str,
        agent_id: str,
        reason: str = "",
    ) -> RoutingResult:
        """Agent declines a conversation; route it again without that agent."""
        assignment = await self._store.get_assignment(tenant_id, conversation_id)
        if assignment is None or assignment.agent_id != agent_id:
            raise InvalidStateTransition(
                f"Conversation {conversation_id} is not assigned to {agent_id}"
            )

        original = await self._latest_assignment_entry(tenant_id, conversation_id)
        await self._store.release_assignment(tenant_id, conversation_id, agent_id)

        await self.history.record(RoutingHistoryEntry(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            outcome=RoutingOutcome.REJECTED_BY_AGENT,
            strategy_used=assignment.strategy,
            selected_agent_id=agent_id,
            rule_id=original.rule_id if original else None,
            reason=reason or "rejected_by_agent",
            references_entry_id=original.entry_id if original else None,
        ))

        logger.info(
            "assignment_rejected",
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            agent_id=agent_id,
            reason=reason,
        )

        result = await self._route(
            assignment.to_conversation(),
            exclude_agent_ids={agent_id},
            trigger="rejected",
        )
        await self.drain_queue(tenant_id, skip_conversation_ids={conversation_id})
        return result

    async def reassign_conversation(
        self,
        tenant_id: str,
        conversation_id: str,
        to_agent_id: Optional[str] = None,
        reason: str = "",
    ) -> RoutingResult:
        """
        Move an assigned conversation to another agent.

        With ``to_agent_id`` the move is explicit and CapacityRaceLost
        propagates if that agent is full. Without it the tenant's strategy
        picks among agents other than the current one; if none qualifies the
        conversation stays where it is.
        """
        assignment = await self._store.get_assignment(tenant_id, conversation_id)
        if assignment is None:
            raise InvalidStateTransition(f"Conversation {conversation_id} is not assigned")
        from_agent_id = assignment.agent_id
        conversation = assignment.to_conversation()

        if to_agent_id is not None:
            target = await self.capacity.get_agent(tenant_id, to_agent_id)
            decision = RoutingDecision(
                strategy=assignment.strategy or self.config.default_strategy,
                config=default_strategy_config(assignment.strategy or self.config.default_strategy),
                candidates=[target],
                agent=target,
                reason=reason or "manual_reassignment",
            )
            moved = await self._store.transfer_assignment(
                tenant_id,
                conversation_id,
                from_agent_id,
                to_agent_id,
                strategy=assignment.strategy,
            )
            return await self._reassigned_result(conversation, decision, from_agent_id, moved)

        resolved = await self.rules.get_active_strategy(tenant_id, conversation)
        for attempt in range(1, self.config.race_retries + 2):
            decision = await self._decide(conversation, resolved, {from_agent_id})
            if decision.agent is None:
                return RoutingResult(
                    status=RoutingStatus.ASSIGNED,
                    conversation_id=conversation_id,
                    tenant_id=tenant_id,
                    agent_id=from_agent_id,
                    strategy=assignment.strategy,
                    reason="no_alternative_agent",
                )
            try:
                moved = await self._store.transfer_assignment(
                    tenant_id,
                    conversation_id,
                    from_agent_id,
                    decision.agent.agent_id,
                    strategy=decision.strategy,
                )
            except CapacityRaceLost:
                logger.info(
                    "capacity_race_lost",
                    tenant_id=tenant_id,
                    conversation_id=conversation_id,
                    agent_id=decision.agent.agent_id,
                    attempt=attempt,
                )
                continue

            if decision.strategy == RoutingStrategy.ROUND_ROBIN:
                await self._advance_rotation(tenant_id, decision)
            if reason:
                decision.reason = reason
            return await self._reassigned_result(conversation, decision, from_agent_id, moved)

        return RoutingResult(
            status=RoutingStatus.ASSIGNED,
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            agent_id=from_agent_id,
            strategy=assignment.strategy,
            reason="capacity_race_lost",
        )

    async def _reassigned_result(
        self,
        conversation: Conversation,
        decision: RoutingDecision,
        from_agent_id: str,
        moved: Assignment,
    ) -> RoutingResult:
        tenant_id = conversation.tenant_id
        original = await self._latest_assignment_entry(tenant_id, conversation.conversation_id)
        recorded = await self.history.record(RoutingHistoryEntry(
            conversation_id=conversation.conversation_id,
            tenant_id=tenant_id,
            outcome=RoutingOutcome.REASSIGNED,
            strategy_used=moved.strategy,
            candidate_agent_ids=decision.candidate_ids,
            workload_scores=decision.workload_scores,
            selected_agent_id=moved.agent_id,
            rule_id=decision.rule_id,
            reason=decision.reason,
            references_entry_id=original.entry_id if original else None,
            metadata={"from_agent_id": from_agent_id},
        ))

        logger.info(
            "conversation_reassigned",
            tenant_id=tenant_id,
            conversation_id=conversation.conversation_id,
            from_agent_id=from_agent_id,
            to_agent_id=moved.agent_id,
            reason=decision.reason,
        )

        await self.drain_queue(tenant_id)
        return RoutingResult(
            status=RoutingStatus.ASSIGNED,
            conversation_id=conversation.conversation_id,
            tenant_id=tenant_id,
            agent_id=moved.agent_id,
            strategy=moved.strategy,
            reason=decision.reason,
            history_entry_id=recorded.entry_id,
            alternative_agent_ids=decision.alternatives(),
        )

    # -------------------------------------------------------------------------
    # Queue draining
    # -------------------------------------------------------------------------

    async def drain_queue(
        self,
        tenant_id: str,
        skip_conversation_ids: Optional[Set[str]] = None,
    ) -> List[RoutingResult]:
        """
        Route waiting conversations in queue order while capacity lasts.

        Each waiting entry is tried at most once per drain. Entries that still
        find no agent return to waiting at their original position, so a
        drain with no capacity change changes nothing.
        """
        skip_conversations = set(skip_conversation_ids or ())
        tried: Set[str] = set()
        assigned: List[RoutingResult] = []

        while await self.capacity.get_available_agents(tenant_id):
            entry = await self.queue.dequeue_next(
                tenant_id,
                predicate=lambda e: (
                    e.entry_id not in tried and e.conversation_id not in skip_conversations
                ),
            )
            if entry is None:
                break
            tried.add(entry.entry_id)

            result = await self._route(entry.to_conversation(), entry=entry, trigger="drain")
            if result.assigned:
                assigned.append(result)

        if assigned:
            logger.info("queue_drained", tenant_id=tenant_id, assigned=len(assigned))
        return assigned

    async def _on_agent_status_changed(self, agent: AgentCapacity, old_status: AgentStatus) -> None:
        if agent.status == AgentStatus.AVAILABLE and old_status != AgentStatus.AVAILABLE:
            await self.drain_queue(agent.tenant_id)

    async def abandon_conversation(self, tenant_id: str, conversation_id: str) -> QueueEntry:
        """Remove a waiting conversation from the queue."""
        return await self.queue.abandon(tenant_id, conversation_id)

    async def get_queue_position(self, tenant_id: str, conversation_id: str) -> Optional[int]:
        return await self.queue.get_position(tenant_id, conversation_id)

    # -------------------------------------------------------------------------
    # Rebalancing
    # -------------------------------------------------------------------------

    async def rebalance_load(self, tenant_id: str) -> RebalanceResult:
        """
        Move recent conversations off agents well above the tenant average.

        An agent is overloaded when its workload exceeds the average of the
        available agents by ``rebalance_threshold``, and underloaded when it
        is that far below. Each overloaded agent gives up at most
        ``rebalance_max_moves_per_agent`` of its most recent conversations.
        """
        agents = [
            a for a in await self.capacity.list_agents(tenant_id, status=AgentStatus.AVAILABLE)
            if a.auto_assign_enabled
        ]
        result = RebalanceResult()
        if len(agents) < 2:
            result.details.append("not_enough_agents")
            return result

        average = sum(a.workload_score for a in agents) / len(agents)
        threshold = self.config.rebalance_threshold
        overloaded = [a for a in agents if a.workload_score > average + threshold]
        underloaded = [a for a in agents if a.workload_score < average - threshold]
        if not overloaded or not underloaded:
            result.details.append("load_is_balanced")
            return result

        underloaded.sort(key=least_loaded_key)
        turn = 0
        for over in sorted(overloaded, key=lambda a: a.agent_id):
            recent = await self._store.list_assignments(tenant_id, agent_id=over.agent_id)
            recent = list(reversed(recent))[: self.config.rebalance_max_moves_per_agent]

            for assignment in recent:
                conversation = assignment.to_conversation()
                agent_filter = build_agent_filter(conversation)
                targets = [u for u in underloaded if agent_filter.matches(u)]
                if not targets:
                    result.details.append(
                        f"no_target_for:{assignment.conversation_id}"
                    )
                    continue
                target = targets[turn % len(targets)]
                turn += 1
                try:
                    moved = await self.reassign_conversation(
                        tenant_id,
                        assignment.conversation_id,
                        to_agent_id=target.agent_id,
                        reason="rebalance",
                    )
                except (CapacityRaceLost, InvalidStateTransition) as e:
                    result.details.append(f"skipped:{assignment.conversation_id}:{e}")
                    continue
                result.moved.append(moved)
                result.details.append(
                    f"moved:{assignment.conversation_id}:{over.agent_id}->{target.agent_id}"
                )

        logger.info(
            "load_rebalanced",
            tenant_id=tenant_id,
            moved=result.rebalanced,
            average_workload=round(average, 3),
        )
        return result

    # -------------------------------------------------------------------------
    # Activity and history
    # -------------------------------------------------------------------------

    async def record_customer_message(
        self,
        tenant_id: str,
        conversation_id: str,
        at: Optional[datetime] = None,
    ) -> Optional[Assignment]:
        """Note an inbound customer message; no-op unless the conversation is assigned."""
        if await self._store.get_assignment(tenant_id, conversation_id) is None:
            return None
        return await self._store.update_assignment_activity(
            tenant_id,
            conversation_id,
            customer_message_at=at or utcnow(),
        )

    async def record_agent_reply(
        self,
        tenant_id: str,
        conversation_id: str,
        at: Optional[datetime] = None,
    ) -> Optional[Assignment]:
        """Note an agent reply; no-op unless the conversation is assigned."""
        if await self._store.get_assignment(tenant_id, conversation_id) is None:
            return None
        return await self._store.update_assignment_activity(
            tenant_id,
            conversation_id,
            agent_reply_at=at or utcnow(),
        )

    async def query_routing_history(
        self,
        tenant_id: str,
        history_filter: Optional[HistoryFilter] = None,
    ) -> List[RoutingHistoryEntry]:
        return await self.history.query(tenant_id, history_filter)

    async def get_assignment(self, tenant_id: str, conversation_id: str) -> Optional[Assignment]:
        return await self._store.get_assignment(tenant_id, conversation_id)


__all__ = [
    "LoadBalancer",
    "RoutingDecision",
    "ReleaseResult",
    "RebalanceResult",
]
