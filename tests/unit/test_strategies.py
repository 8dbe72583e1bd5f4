"""Unit tests for strategy evaluators."""

import itertools

import pytest

from inbox_routing.base import (
    AgentCapacity,
    AgentStatus,
    Conversation,
    CustomConfig,
    LeastLoadedConfig,
    PriorityBasedConfig,
    RotationPointer,
    RoundRobinConfig,
    RoutingStrategy,
    SkillBasedConfig,
)
from inbox_routing.predicates import parse_predicate
from inbox_routing.strategies import (
    STRATEGY_EVALUATORS,
    SelectionContext,
    build_agent_filter,
    select_agent,
)


TENANT = "org_acme"


def make_agent(agent_id, count=0, max_count=5, **kwargs):
    return AgentCapacity(
        agent_id=agent_id,
        tenant_id=TENANT,
        status=AgentStatus.AVAILABLE,
        current_conversation_count=count,
        max_concurrent_conversations=max_count,
        **kwargs,
    )


def make_conversation(**kwargs):
    kwargs.setdefault("conversation_id", "conv_1")
    return Conversation(tenant_id=TENANT, **kwargs)


class TestRegistry:
    """Tests for the evaluator registry."""

    def test_every_strategy_has_an_evaluator(self):
        """Test the registry covers the whole enum."""
        assert set(STRATEGY_EVALUATORS) == set(RoutingStrategy)

    def test_evaluator_keys_match(self):
        """Test each evaluator is registered under its own strategy."""
        for strategy, evaluator in STRATEGY_EVALUATORS.items():
            assert evaluator.strategy == strategy

    def test_no_candidates_returns_none(self):
        """Test every strategy tolerates an empty candidate list."""
        conversation = make_conversation(required_skills=["billing"])
        for strategy in RoutingStrategy:
            config = SkillBasedConfig() if strategy == RoutingStrategy.SKILL_BASED else None
            assert select_agent(strategy, [], conversation, config) is None


class TestRoundRobin:
    """Tests for round robin selection."""

    def test_first_agent_without_pointer(self):
        """Test an unset pointer starts at the lowest agent_id."""
        agents = [make_agent("agent_b"), make_agent("agent_a")]

        chosen = select_agent(RoutingStrategy.ROUND_ROBIN, agents, make_conversation(), RoundRobinConfig())

        assert chosen.agent_id == "agent_a"

    def test_next_after_pointer(self):
        """Test selection moves past the last assigned agent."""
        agents = [make_agent("agent_a"), make_agent("agent_b"), make_agent("agent_c")]
        context = SelectionContext(rotation_pointer=RotationPointer(TENANT, "agent_a", 1))

        chosen = select_agent(RoutingStrategy.ROUND_ROBIN, agents, make_conversation(), RoundRobinConfig(), context)

        assert chosen.agent_id == "agent_b"

    def test_wraps_around(self):
        """Test the rotation wraps past the highest agent_id."""
        agents = [make_agent("agent_a"), make_agent("agent_b")]
        context = SelectionContext(rotation_pointer=RotationPointer(TENANT, "agent_b", 2))

        chosen = select_agent(RoutingStrategy.ROUND_ROBIN, agents, make_conversation(), RoundRobinConfig(), context)

        assert chosen.agent_id == "agent_a"

    def test_pointer_agent_no_longer_candidate(self):
        """Test a departed pointer agent still orders the rotation."""
        agents = [make_agent("agent_a"), make_agent("agent_c")]
        context = SelectionContext(rotation_pointer=RotationPointer(TENANT, "agent_b", 3))

        chosen = select_agent(RoutingStrategy.ROUND_ROBIN, agents, make_conversation(), RoundRobinConfig(), context)

        assert chosen.agent_id == "agent_c"


class TestLeastLoaded:
    """Tests for least loaded selection."""

    def test_scenario_lower_workload_wins(self):
        """Test 3/5 versus 2/5 picks the 2/5 agent."""
        agents = [make_agent("agent_a", count=3), make_agent("agent_b", count=2)]

        chosen = select_agent(RoutingStrategy.LEAST_LOADED, agents, make_conversation(), LeastLoadedConfig())

        assert chosen.agent_id == "agent_b"

    def test_independent_of_order(self):
        """Test the idle agent wins in every input permutation."""
        agents = [
            make_agent("agent_a", count=1),  # 0.2
            make_agent("agent_b", count=4),  # 0.8
            make_agent("agent_c", count=0),  # 0.0
        ]
        for ordering in itertools.permutations(agents):
            chosen = select_agent(
                RoutingStrategy.LEAST_LOADED, list(ordering), make_conversation(), LeastLoadedConfig()
            )
            assert chosen.agent_id == "agent_c"

    def test_workload_is_normalized(self):
        """Test scores compare fractions, not raw counts."""
        agents = [
            make_agent("agent_a", count=2, max_count=10),  # 0.2
            make_agent("agent_b", count=1, max_count=2),  # 0.5
        ]

        chosen = select_agent(RoutingStrategy.LEAST_LOADED, agents, make_conversation(), LeastLoadedConfig())

        assert chosen.agent_id == "agent_a"

    def test_tie_breaks_on_response_time_then_id(self):
        """Test equal workloads fall back to response time, then agent_id."""
        agents = [
            make_agent("agent_c", avg_response_time_seconds=30.0),
            make_agent("agent_b", avg_response_time_seconds=30.0),
            make_agent("agent_a", avg_response_time_seconds=90.0),
        ]

        chosen = select_agent(RoutingStrategy.LEAST_LOADED, agents, make_conversation(), LeastLoadedConfig())

        assert chosen.agent_id == "agent_b"


class TestSkillBased:
    """Tests for skill based selection."""

    def test_scenario_agent_with_skill_wins(self):
        """Test only the agent holding the skill is chosen."""
        agents = [
            make_agent("agent_a", skills={"sales"}),
            make_agent("agent_b", count=4, skills={"billing", "sales"}),
        ]
        conversation = make_conversation(required_skills=["billing"])

        chosen = select_agent(RoutingStrategy.SKILL_BASED, agents, conversation, SkillBasedConfig())

        assert chosen.agent_id == "agent_b"

    def test_never_selects_agent_missing_skill(self):
        """Test an idle agent without the skill is never chosen."""
        agents = [make_agent("agent_a", skills={"sales"})]
        conversation = make_conversation(required_skills=["billing"])

        assert select_agent(RoutingStrategy.SKILL_BASED, agents, conversation, SkillBasedConfig()) is None

    def test_config_skills_are_added(self):
        """Test rule-level skills combine with the conversation's."""
        agents = [
            make_agent("agent_a", skills={"billing"}),
            make_agent("agent_b", count=3, skills={"billing", "vip"}),
        ]
        conversation = make_conversation(required_skills=["billing"])

        chosen = select_agent(
            RoutingStrategy.SKILL_BASED, agents, conversation, SkillBasedConfig(required_skills=["vip"])
        )

        assert chosen.agent_id == "agent_b"

    def test_language_must_match(self):
        """Test the conversation language filters candidates."""
        agents = [
            make_agent("agent_a", skills={"billing"}, languages={"en"}),
            make_agent("agent_b", count=2, skills={"billing"}, languages={"es", "en"}),
        ]
        conversation = make_conversation(required_skills=["billing"], required_language="es")

        chosen = select_agent(RoutingStrategy.SKILL_BASED, agents, conversation, SkillBasedConfig())

        assert chosen.agent_id == "agent_b"

    def test_language_can_be_ignored(self):
        """Test match_language=False drops the language filter."""
        agents = [make_agent("agent_a", skills={"billing"}, languages={"en"})]
        conversation = make_conversation(required_skills=["billing"], required_language="es")

        chosen = select_agent(
            RoutingStrategy.SKILL_BASED, agents, conversation, SkillBasedConfig(match_language=False)
        )

        assert chosen.agent_id == "agent_a"


class TestPriorityBased:
    """Tests for priority based selection."""

    def test_urgent_prefers_best_agent(self):
        """Test urgent conversations go to the highest rated agent."""
        agents = [
            make_agent("agent_a", count=0, satisfaction_score=4.1),
            make_agent("agent_b", count=4, satisfaction_score=4.9),
        ]

        chosen = select_agent(
            RoutingStrategy.PRIORITY_BASED, agents, make_conversation(priority=1), PriorityBasedConfig()
        )

        assert chosen.agent_id == "agent_b"

    def test_urgent_tie_breaks_on_response_time(self):
        """Test equal satisfaction falls back to response time."""
        agents = [
            make_agent("agent_a", satisfaction_score=4.8, avg_response_time_seconds=90.0),
            make_agent("agent_b", satisfaction_score=4.8, avg_response_time_seconds=20.0),
        ]

        chosen = select_agent(
            RoutingStrategy.PRIORITY_BASED, agents, make_conversation(priority=2), PriorityBasedConfig()
        )

        assert chosen.agent_id == "agent_b"

    def test_normal_priority_is_least_loaded(self):
        """Test non-urgent conversations balance load."""
        agents = [
            make_agent("agent_a", count=0, satisfaction_score=4.1),
            make_agent("agent_b", count=4, satisfaction_score=4.9),
        ]

        chosen = select_agent(
            RoutingStrategy.PRIORITY_BASED, agents, make_conversation(priority=5), PriorityBasedConfig()
        )

        assert chosen.agent_id == "agent_a"

    def test_soft_limit_reserves_capacity(self):
        """Test agents at the soft limit only take urgent work."""
        agents = [make_agent("agent_a", count=4, max_count=5)]  # 0.8
        config = PriorityBasedConfig(soft_limit_ratio=0.8)

        assert select_agent(RoutingStrategy.PRIORITY_BASED, agents, make_conversation(priority=5), config) is None
        chosen = select_agent(RoutingStrategy.PRIORITY_BASED, agents, make_conversation(priority=1), config)
        assert chosen.agent_id == "agent_a"

    def test_full_agent_never_selected(self):
        """Test the hard ceiling applies even to urgent work."""
        agents = [make_agent("agent_a", count=5, max_count=5)]

        assert select_agent(
            RoutingStrategy.PRIORITY_BASED, agents, make_conversation(priority=1), PriorityBasedConfig()
        ) is None

    def test_invalid_soft_limit(self):
        """Test the soft limit must be a fraction."""
        with pytest.raises(ValueError):
            PriorityBasedConfig(soft_limit_ratio=1.5)


class TestCustom:
    """Tests for predicate based selection."""

    def test_predicate_filters_agents(self):
        """Test only agents matching the predicate are considered."""
        config = CustomConfig(agent_filter=parse_predicate({
            "field": "agent.satisfaction_score", "op": "gte", "value": 4.7,
        }))
        agents = [
            make_agent("agent_a", satisfaction_score=4.2),
            make_agent("agent_b", count=2, satisfaction_score=4.8),
        ]

        chosen = select_agent(RoutingStrategy.CUSTOM, agents, make_conversation(), config)

        assert chosen.agent_id == "agent_b"

    def test_predicate_can_compare_conversation(self):
        """Test predicates see both conversation and agent fields."""
        config = CustomConfig(agent_filter=parse_predicate({
            "any": [
                {"field": "conversation.tags", "op": "contains", "value": "vip"},
                {"field": "agent.workload", "op": "lt", "value": 0.5},
            ]
        }))
        agents = [make_agent("agent_a", count=4)]

        assert select_agent(RoutingStrategy.CUSTOM, agents, make_conversation(), config) is None
        chosen = select_agent(RoutingStrategy.CUSTOM, agents, make_conversation(tags=["vip"]), config)
        assert chosen.agent_id == "agent_a"

    def test_unknown_field_excludes_everyone(self):
        """Test a predicate on a missing field fails closed."""
        config = CustomConfig(agent_filter=parse_predicate({
            "field": "agent.team", "op": "eq", "value": "tier2",
        }))

        assert select_agent(RoutingStrategy.CUSTOM, [make_agent("agent_a")], make_conversation(), config) is None

    def test_negated_misspelled_field_excludes_everyone(self):
        """Test not() over a misspelled agent field does not match every agent."""
        config = CustomConfig(agent_filter=parse_predicate({
            "not": {"field": "agent.teem", "op": "eq", "value": "tier1"},
        }))
        agents = [make_agent("agent_a"), make_agent("agent_b", count=1)]

        assert select_agent(RoutingStrategy.CUSTOM, agents, make_conversation(), config) is None

    def test_without_predicate_is_least_loaded(self):
        """Test an empty custom config behaves like least loaded."""
        agents = [make_agent("agent_a", count=2), make_agent("agent_b", count=1)]

        chosen = select_agent(RoutingStrategy.CUSTOM, agents, make_conversation(), CustomConfig())

        assert chosen.agent_id == "agent_b"


class TestDeterminism:
    """Tests for repeatable selection."""

    @pytest.mark.parametrize("strategy,config", [
        (RoutingStrategy.ROUND_ROBIN, RoundRobinConfig()),
        (RoutingStrategy.LEAST_LOADED, LeastLoadedConfig()),
        (RoutingStrategy.SKILL_BASED, SkillBasedConfig(required_skills=["billing"])),
        (RoutingStrategy.PRIORITY_BASED, PriorityBasedConfig()),
        (RoutingStrategy.CUSTOM, CustomConfig()),
    ])
    def test_same_input_same_choice(self, strategy, config):
        """Test repeated evaluation returns the same agent."""
        agents = [
            make_agent("agent_a", count=1, skills={"billing"}),
            make_agent("agent_b", count=1, skills={"billing"}),
            make_agent("agent_c", count=2, skills={"billing"}),
        ]
        context = SelectionContext(rotation_pointer=RotationPointer(TENANT, "agent_a", 4))
        conversation = make_conversation(priority=3)

        choices = {
            select_agent(strategy, agents, conversation, config, context).agent_id
            for _ in range(20)
        }

        assert len(choices) == 1


class TestAgentFilter:
    """Tests for candidate filtering."""

    def test_filter_excludes_agents(self):
        """Test excluded agents never match."""
        agent_filter = build_agent_filter(make_conversation(), exclude_agent_ids={"agent_a"})

        assert not agent_filter.matches(make_agent("agent_a"))
        assert agent_filter.matches(make_agent("agent_b"))

    def test_filter_requires_all_skills(self):
        """Test skills must be a superset."""
        agent_filter = build_agent_filter(make_conversation(required_skills=["billing", "vip"]))

        assert not agent_filter.matches(make_agent("agent_a", skills={"billing"}))
        assert agent_filter.matches(make_agent("agent_b", skills={"billing", "vip", "sales"}))
