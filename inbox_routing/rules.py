"""
Routing Rule Registry

Tenant-configured routing rules and the tenant default strategy. Resolving
the active strategy for a conversation is a pure read of the current rule
set.
"""

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Union

import structlog

from .base import (
    Conversation,
    RoutingRule,
    RoutingStrategy,
    RuleNotFoundError,
    SkillBasedConfig,
    StrategyConfig,
    TenantRoutingSettings,
    default_strategy_config,
    strategy_config_from_dict,
    utcnow,
)
from .predicates import Predicate, parse_predicate
from .store import RoutingStore


logger = structlog.get_logger(__name__)


@dataclass
class ResolvedStrategy:
    """The strategy that won for one routing decision."""

    strategy: RoutingStrategy
    config: StrategyConfig
    rule: Optional[RoutingRule] = None

    @property
    def rule_id(self) -> Optional[str]:
        return self.rule.rule_id if self.rule else None

    @property
    def fallback_strategy(self) -> Optional[RoutingStrategy]:
        return self.rule.fallback_strategy if self.rule else None


def _coerce_config(
    strategy: RoutingStrategy,
    config: Union[StrategyConfig, Mapping[str, Any], None],
) -> StrategyConfig:
    if config is None or isinstance(config, Mapping):
        return strategy_config_from_dict(strategy, dict(config or {}))
    return config


def _coerce_predicate(value: Union[Predicate, Mapping[str, Any], None]) -> Optional[Predicate]:
    if value is None or not isinstance(value, Mapping):
        return value
    return parse_predicate(value)


def rule_preconditions_met(rule: RoutingRule, conversation: Conversation) -> bool:
    """Check a rule's conditions and its strategy's own preconditions."""
    if not rule.applies_to(conversation):
        return False
    if isinstance(rule.strategy_config, SkillBasedConfig):
        # Skill routing needs something to match on
        wanted = set(conversation.required_skills) | set(rule.strategy_config.required_skills)
        return bool(wanted)
    return True


class RoutingRuleRegistry:
    """
    Manages routing rules per tenant.

    Features:
    - Rule CRUD with soft deactivation
    - Tenant default strategy settings
    - Active strategy resolution for a conversation
    """

    def __init__(
        self,
        store: RoutingStore,
        default_strategy: RoutingStrategy = RoutingStrategy.ROUND_ROBIN,
        default_max_concurrent: int = 5,
    ):
        self._store = store
        self._default_strategy = default_strategy
        self._default_max_concurrent = default_max_concurrent

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def get_active_strategy(
        self,
        tenant_id: str,
        conversation: Conversation,
    ) -> ResolvedStrategy:
        """
        Resolve which strategy routes this conversation.

        Active rules are scanned by priority (ties by rule_id); the first whose
        preconditions match wins. Otherwise the tenant default applies.
        """
        for rule in await self.list_rules(tenant_id, active_only=True):
            if rule_preconditions_met(rule, conversation):
                return ResolvedStrategy(
                    strategy=rule.strategy,
                    config=rule.strategy_config,
                    rule=rule,
                )

        settings = await self.get_settings(tenant_id)
        return ResolvedStrategy(
            strategy=settings.default_strategy,
            config=default_strategy_config(settings.default_strategy),
        )

    # -------------------------------------------------------------------------
    # Rule CRUD
    # -------------------------------------------------------------------------

    async def create_rule(
        self,
        tenant_id: str,
        name: str,
        strategy: RoutingStrategy,
        priority: int = 5,
        strategy_config: Union[StrategyConfig, Mapping[str, Any], None] = None,
        conditions: Union[Predicate, Mapping[str, Any], None] = None,
        fallback_strategy: Optional[RoutingStrategy] = None,
        description: str = "",
        is_active: bool = True,
    ) -> RoutingRule:
        """Create a new routing rule."""
        strategy = RoutingStrategy(strategy)
        rule = RoutingRule(
            tenant_id=tenant_id,
            name=name,
            strategy=strategy,
            priority=priority,
            is_active=is_active,
            strategy_config=_coerce_config(strategy, strategy_config),
            conditions=_coerce_predicate(conditions),
            fallback_strategy=RoutingStrategy(fallback_strategy) if fallback_strategy else None,
            description=description,
        )
        rule = await self._store.save_rule(rule)

        logger.info(
            "routing_rule_created",
            tenant_id=tenant_id,
            rule_id=rule.rule_id,
            strategy=rule.strategy.value,
            priority=rule.priority,
        )
        return rule

    async def get_rule(self, tenant_id: str, rule_id: str) -> RoutingRule:
        rule = await self._store.get_rule(tenant_id, rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Routing rule {rule_id} not found")
        return rule

    async def list_rules(self, tenant_id: str, active_only: bool = False) -> List[RoutingRule]:
        """Rules ordered by priority then rule_id."""
        rules = await self._store.list_rules(tenant_id)
        if active_only:
            rules = [r for r in rules if r.is_active]
        return sorted(rules, key=lambda r: (r.priority, r.rule_id))

    async def update_rule(self, tenant_id: str, rule_id: str, **updates: Any) -> RoutingRule:
        """Update rule fields. Changing the strategy resets an omitted config."""
        rule = await self.get_rule(tenant_id, rule_id)
        data = rule.to_dict()

        if "strategy" in updates and "strategy_config" not in updates:
            updates["strategy_config"] = None
        for key, value in updates.items():
            if key not in data or key in ("rule_id", "tenant_id", "created_at", "updated_at"):
                raise ValueError(f"Cannot update rule field: {key}")
            data[key] = value

        strategy = RoutingStrategy(data["strategy"])
        config = data["strategy_config"]
        conditions = data["conditions"]
        fallback = data["fallback_strategy"]
        updated = RoutingRule(
            rule_id=rule.rule_id,
            tenant_id=tenant_id,
            name=data["name"],
            description=data["description"],
            strategy=strategy,
            priority=data["priority"],
            is_active=data["is_active"],
            strategy_config=_coerce_config(strategy, config),
            conditions=_coerce_predicate(conditions),
            fallback_strategy=RoutingStrategy(fallback) if fallback else None,
            created_at=rule.created_at,
            updated_at=utcnow(),
        )
        updated = await self._store.save_rule(updated)

        logger.info(
            "routing_rule_updated",
            tenant_id=tenant_id,
            rule_id=rule_id,
            fields=sorted(updates),
        )
        return updated

    async def deactivate_rule(self, tenant_id: str, rule_id: str) -> RoutingRule:
        return await self.update_rule(tenant_id, rule_id, is_active=False)

    # -------------------------------------------------------------------------
    # Tenant settings
    # -------------------------------------------------------------------------

    async def get_settings(self, tenant_id: str) -> TenantRoutingSettings:
        settings = await self._store.get_settings(tenant_id)
        if settings is None:
            return TenantRoutingSettings(
                tenant_id=tenant_id,
                default_strategy=self._default_strategy,
                default_max_concurrent_conversations=self._default_max_concurrent,
            )
        return settings

    async def update_settings(
        self,
        tenant_id: str,
        default_strategy: Optional[RoutingStrategy] = None,
        default_max_concurrent_conversations: Optional[int] = None,
    ) -> TenantRoutingSettings:
        settings = await self.get_settings(tenant_id)
        if default_strategy is not None:
            settings.default_strategy = RoutingStrategy(default_strategy)
        if default_max_concurrent_conversations is not None:
            if default_max_concurrent_conversations < 1:
                raise ValueError("default_max_concurrent_conversations must be at least 1")
            settings.default_max_concurrent_conversations = default_max_concurrent_conversations
        settings.updated_at = utcnow()

        settings = await self._store.save_settings(settings)
        logger.info(
            "routing_settings_updated",
            tenant_id=tenant_id,
            default_strategy=settings.default_strategy.value,
            default_max=settings.default_max_concurrent_conversations,
        )
        return settings


__all__ = [
    "ResolvedStrategy",
    "RoutingRuleRegistry",
    "rule_preconditions_met",
]
