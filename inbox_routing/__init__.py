"""
Inbox Routing

Conversation routing and load balancing for multi-tenant support inboxes:
capacity tracking, routing rules and strategies, a fallback queue, an
append-only decision history and SLA escalation.
"""

from .base import (
    AgentCapacity,
    AgentFilter,
    AgentNotFoundError,
    AgentStatus,
    Assignment,
    CapacityRaceLost,
    Conversation,
    CustomConfig,
    EscalationCandidate,
    EscalationRule,
    EscalationScope,
    EscalationTarget,
    HistoryFilter,
    InvalidStateTransition,
    LeastLoadedConfig,
    NotificationChannel,
    PriorityBasedConfig,
    QueueEntry,
    QueueEntryNotFound,
    QueueEntryStatus,
    RotationPointer,
    RoundRobinConfig,
    RoutingError,
    RoutingHistoryEntry,
    RoutingOutcome,
    RoutingResult,
    RoutingRule,
    RoutingStatus,
    RoutingStrategy,
    RuleNotFoundError,
    SkillBasedConfig,
    StoreUnavailable,
    TenantRoutingSettings,
)
from .balancer import LoadBalancer, RebalanceResult, ReleaseResult
from .capacity import AgentCapacityStore
from .config import RoutingConfig, configure_logging
from .escalation import (
    EscalationChannel,
    EscalationEvaluator,
    EscalationNotifier,
    LoggingEscalationChannel,
)
from .history import RoutingHistory
from .predicates import PredicateError, evaluate, parse_predicate
from .queue import ConversationQueue
from .rules import ResolvedStrategy, RoutingRuleRegistry
from .store import DatabaseManager, InMemoryRoutingStore, RoutingStore, SqlRoutingStore
from .strategies import STRATEGY_EVALUATORS, StrategyEvaluator, select_agent
from .sweeper import RoutingSweeper, SweepReport

__version__ = "1.0.0"

__all__ = [
    # Types
    "AgentCapacity",
    "AgentFilter",
    "AgentStatus",
    "Assignment",
    "Conversation",
    "EscalationCandidate",
    "EscalationRule",
    "EscalationScope",
    "EscalationTarget",
    "HistoryFilter",
    "NotificationChannel",
    "QueueEntry",
    "QueueEntryStatus",
    "RotationPointer",
    "RoutingHistoryEntry",
    "RoutingOutcome",
    "RoutingResult",
    "RoutingRule",
    "RoutingStatus",
    "RoutingStrategy",
    "TenantRoutingSettings",
    # Strategy configs
    "RoundRobinConfig",
    "LeastLoadedConfig",
    "SkillBasedConfig",
    "PriorityBasedConfig",
    "CustomConfig",
    # Errors
    "RoutingError",
    "CapacityRaceLost",
    "InvalidStateTransition",
    "StoreUnavailable",
    "AgentNotFoundError",
    "RuleNotFoundError",
    "QueueEntryNotFound",
    "PredicateError",
    # Services
    "LoadBalancer",
    "ReleaseResult",
    "RebalanceResult",
    "AgentCapacityStore",
    "RoutingRuleRegistry",
    "ResolvedStrategy",
    "ConversationQueue",
    "RoutingHistory",
    "EscalationEvaluator",
    "EscalationNotifier",
    "EscalationChannel",
    "LoggingEscalationChannel",
    "RoutingSweeper",
    "SweepReport",
    "StrategyEvaluator",
    "STRATEGY_EVALUATORS",
    "select_agent",
    "parse_predicate",
    "evaluate",
    # Storage
    "RoutingStore",
    "InMemoryRoutingStore",
    "SqlRoutingStore",
    "DatabaseManager",
    # Config
    "RoutingConfig",
    "configure_logging",
]
