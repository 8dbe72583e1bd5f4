"""
Routing Strategy Evaluators

Each evaluator picks one agent out of a candidate list. Candidates arrive
already filtered to agents that are available, auto-assignable and below
their maximum. Evaluators are deterministic: no clock, no randomness.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from .base import (
    AgentCapacity,
    AgentFilter,
    Conversation,
    CustomConfig,
    PriorityBasedConfig,
    RotationPointer,
    RoutingStrategy,
    SkillBasedConfig,
    StrategyConfig,
)
from .predicates import evaluate


@dataclass
class SelectionContext:
    """Tenant state an evaluator may read."""

    rotation_pointer: Optional[RotationPointer] = None


def least_loaded_key(agent: AgentCapacity):
    """Lowest workload, then fastest responder, then agent_id."""
    return (agent.workload_score, agent.avg_response_time_seconds, agent.agent_id)


def build_agent_filter(
    conversation: Conversation,
    config: Optional[StrategyConfig] = None,
    exclude_agent_ids: Optional[Set[str]] = None,
) -> AgentFilter:
    """Candidate filter for a conversation under a strategy configuration."""
    skills = set(conversation.required_skills)
    language = conversation.required_language
    if isinstance(config, SkillBasedConfig):
        skills |= set(config.required_skills)
        if not config.match_language:
            language = None
    return AgentFilter(
        required_skills=skills,
        required_language=language,
        exclude_agent_ids=set(exclude_agent_ids or ()),
    )


class StrategyEvaluator(ABC):
    """Abstract base class for routing strategies."""

    strategy: RoutingStrategy

    @abstractmethod
    def select(
        self,
        candidates: List[AgentCapacity],
        conversation: Conversation,
        config: StrategyConfig,
        context: SelectionContext,
    ) -> Optional[AgentCapacity]:
        """
        Select an agent for the conversation.

        Returns:
            The chosen candidate, or None when no candidate qualifies
        """
        pass


class RoundRobinEvaluator(StrategyEvaluator):
    """Rotate through candidates in agent_id order."""

    strategy = RoutingStrategy.ROUND_ROBIN

    def select(self, candidates, conversation, config, context):
        if not candidates:
            return None

        ordered = sorted(candidates, key=lambda a: a.agent_id)
        last = context.rotation_pointer.last_agent_id if context.rotation_pointer else None
        if last is None:
            return ordered[0]

        for agent in ordered:
            if agent.agent_id > last:
                return agent
        return ordered[0]


class LeastLoadedEvaluator(StrategyEvaluator):
    """Route to the candidate with the lowest workload score."""

    strategy = RoutingStrategy.LEAST_LOADED

    def select(self, candidates, conversation, config, context):
        if not candidates:
            return None
        return min(candidates, key=least_loaded_key)


class SkillBasedEvaluator(StrategyEvaluator):
    """Keep candidates holding every required skill, then least loaded."""

    strategy = RoutingStrategy.SKILL_BASED

    def select(self, candidates, conversation, config, context):
        agent_filter = build_agent_filter(conversation, config)
        matching = [a for a in candidates if agent_filter.matches(a)]
        if not matching:
            return None
        return min(matching, key=least_loaded_key)


class PriorityBasedEvaluator(StrategyEvaluator):
    """
    Urgent conversations go to the best agent with any free slot.

    Urgent candidates are ranked by satisfaction (desc), response time,
    load, then agent_id. Non-urgent conversations only reach agents below
    the soft limit and are routed least loaded.
    """

    strategy = RoutingStrategy.PRIORITY_BASED

    def select(self, candidates, conversation, config, context):
        if not isinstance(config, PriorityBasedConfig):
            config = PriorityBasedConfig()

        eligible = [a for a in candidates if a.has_capacity]
        if not eligible:
            return None

        if conversation.priority <= config.urgent_threshold:
            return min(
                eligible,
                key=lambda a: (
                    -a.satisfaction_score,
                    a.avg_response_time_seconds,
                    a.workload_score,
                    a.agent_id,
                ),
            )

        below_soft_limit = [a for a in eligible if a.workload_score < config.soft_limit_ratio]
        if not below_soft_limit:
            return None
        return min(below_soft_limit, key=least_loaded_key)


class CustomEvaluator(StrategyEvaluator):
    """Tenant predicate over conversation and agent fields, then least loaded."""

    strategy = RoutingStrategy.CUSTOM

    def select(self, candidates, conversation, config, context):
        agent_filter = config.agent_filter if isinstance(config, CustomConfig) else None
        if agent_filter is None:
            matching = list(candidates)
        else:
            conversation_fields = conversation.to_context()
            matching = [
                a for a in candidates
                if evaluate(agent_filter, {"conversation": conversation_fields, "agent": a.to_context()})
            ]
        if not matching:
            return None
        return min(matching, key=least_loaded_key)


# =============================================================================
# Evaluator Registry
# =============================================================================


STRATEGY_EVALUATORS: Dict[RoutingStrategy, StrategyEvaluator] = {
    evaluator.strategy: evaluator
    for evaluator in (
        RoundRobinEvaluator(),
        LeastLoadedEvaluator(),
        SkillBasedEvaluator(),
        PriorityBasedEvaluator(),
        CustomEvaluator(),
    )
}

_unregistered = set(RoutingStrategy) - set(STRATEGY_EVALUATORS)
if _unregistered:
    raise RuntimeError(
        "No evaluator registered for: "
        + ", ".join(sorted(s.value for s in _unregistered))
    )


def get_evaluator(strategy: RoutingStrategy) -> StrategyEvaluator:
    return STRATEGY_EVALUATORS[RoutingStrategy(strategy)]


def select_agent(
    strategy: RoutingStrategy,
    candidates: List[AgentCapacity],
    conversation: Conversation,
    config: StrategyConfig,
    context: Optional[SelectionContext] = None,
) -> Optional[AgentCapacity]:
    """Dispatch to the evaluator registered for ``strategy``."""
    return get_evaluator(strategy).select(
        candidates,
        conversation,
        config,
        context or SelectionContext(),
    )


__all__ = [
    "SelectionContext",
    "StrategyEvaluator",
    "RoundRobinEvaluator",
    "LeastLoadedEvaluator",
    "SkillBasedEvaluator",
    "PriorityBasedEvaluator",
    "CustomEvaluator",
    "STRATEGY_EVALUATORS",
    "build_agent_filter",
    "get_evaluator",
    "least_loaded_key",
    "select_agent",
]
