"""
Inbox Routing Base Types Module

This module defines core types for conversation routing: agent capacity
records, routing rules and their per-strategy configuration, queue entries,
assignments, the routing audit trail, escalation rules, and the exception
hierarchy shared by every routing component.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Union,
)

from .predicates import Predicate, evaluate, parse_predicate, predicate_to_dict


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# =============================================================================
# Enums
# =============================================================================


class AgentStatus(str, Enum):
    """Agent availability status."""

    AVAILABLE = "available"
    BUSY = "busy"
    AWAY = "away"
    OFFLINE = "offline"


class RoutingStrategy(str, Enum):
    """Conversation routing strategies."""

    ROUND_ROBIN = "round_robin"  # Rotate through available agents
    LEAST_LOADED = "least_loaded"  # Lowest workload score first
    SKILL_BASED = "skill_based"  # Match required skills, then least loaded
    PRIORITY_BASED = "priority_based"  # Urgent conversations bypass the soft limit
    CUSTOM = "custom"  # Tenant-defined predicate filter


class RoutingOutcome(str, Enum):
    """Outcome recorded for a routing decision."""

    ASSIGNED = "assigned"
    QUEUED = "queued"
    REJECTED_BY_AGENT = "rejected_by_agent"
    REASSIGNED = "reassigned"
    RELEASED = "released"


class RoutingStatus(str, Enum):
    """Where a conversation ended up after a routing attempt."""

    ASSIGNED = "assigned"
    QUEUED = "queued"


class QueueEntryStatus(str, Enum):
    """Lifecycle of a queue entry."""

    WAITING = "waiting"
    CLAIMED = "claimed"  # Taken by a drain attempt, not yet committed
    ASSIGNED = "assigned"
    ABANDONED = "abandoned"


class EscalationTarget(str, Enum):
    """Who receives an escalation."""

    MANAGER = "manager"
    TEAM_LEAD = "team_lead"
    SENIOR_AGENT = "senior_agent"
    CUSTOM = "custom"


class NotificationChannel(str, Enum):
    """Channels an escalation notification may be delivered on."""

    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class EscalationScope(str, Enum):
    """Which conversations an escalation rule watches."""

    QUEUED = "queued"
    ASSIGNED = "assigned"
    ALL = "all"


# Conversation priority: 1 = urgent ... 10 = low
PRIORITY_URGENT = 1
PRIORITY_LOWEST = 10
DEFAULT_PRIORITY = 5

PRIORITY_LABELS: Dict[str, int] = {
    "urgent": 1,
    "high": 3,
    "medium": 5,
    "low": 7,
}


def priority_from_label(label: Optional[str]) -> int:
    """Map a named priority onto the 1-10 scale."""
    if not label:
        return DEFAULT_PRIORITY
    return PRIORITY_LABELS.get(label.lower(), DEFAULT_PRIORITY)


def _check_priority(value: int, what: str) -> None:
    if not PRIORITY_URGENT <= value <= PRIORITY_LOWEST:
        raise ValueError(f"{what} priority must be between 1 and 10, got {value}")


# =============================================================================
# Agent Types
# =============================================================================


@dataclass
class AgentCapacity:
    """Live routing state of one agent within one tenant."""

    agent_id: str
    tenant_id: str

    # Status
    status: AgentStatus = AgentStatus.OFFLINE
    status_message: str = ""
    auto_assign_enabled: bool = True

    # Capacity
    max_concurrent_conversations: int = 5
    current_conversation_count: int = 0

    # Matching
    skills: Set[str] = field(default_factory=set)
    languages: Set[str] = field(default_factory=set)

    # Rolling metrics, written by collaborators outside the routing core
    avg_response_time_seconds: float = 60.0
    satisfaction_score: float = 4.5

    # Tracking
    display_name: str = ""
    total_conversations_handled: int = 0
    last_assigned_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.max_concurrent_conversations < 1:
            raise ValueError("max_concurrent_conversations must be at least 1")
        if self.current_conversation_count < 0:
            raise ValueError("current_conversation_count cannot be negative")
        self.skills = set(self.skills)
        self.languages = set(self.languages)

    @property
    def workload_score(self) -> float:
        """Normalized load: 0.0 idle, 1.0 at capacity."""
        return self.current_conversation_count / self.max_concurrent_conversations

    @property
    def has_capacity(self) -> bool:
        return self.current_conversation_count < self.max_concurrent_conversations

    @property
    def available_capacity(self) -> int:
        return self.max_concurrent_conversations - self.current_conversation_count

    @property
    def is_routable(self) -> bool:
        """Eligible for automatic routing right now."""
        return (
            self.status == AgentStatus.AVAILABLE
            and self.auto_assign_enabled
            and self.has_capacity
        )

    def has_skills(self, required: Iterable[str]) -> bool:
        return set(required).issubset(self.skills)

    def speaks(self, language: Optional[str]) -> bool:
        return not language or language in self.languages

    def to_context(self) -> Dict[str, Any]:
        """Field view used by routing predicates."""
        return {
            "agent_id": self.agent_id,
            "status": self.status.value,
            "skills": sorted(self.skills),
            "languages": sorted(self.languages),
            "workload": self.workload_score,
            "current_conversation_count": self.current_conversation_count,
            "max_concurrent_conversations": self.max_concurrent_conversations,
            "avg_response_time_seconds": self.avg_response_time_seconds,
            "satisfaction_score": self.satisfaction_score,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "agent_id": self.agent_id,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "status_message": self.status_message,
            "auto_assign_enabled": self.auto_assign_enabled,
            "max_concurrent_conversations": self.max_concurrent_conversations,
            "current_conversation_count": self.current_conversation_count,
            "workload_score": self.workload_score,
            "skills": sorted(self.skills),
            "languages": sorted(self.languages),
            "avg_response_time_seconds": self.avg_response_time_seconds,
            "satisfaction_score": self.satisfaction_score,
            "display_name": self.display_name,
            "total_conversations_handled": self.total_conversations_handled,
            "last_assigned_at": _iso(self.last_assigned_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentCapacity":
        """Create from dictionary."""
        return cls(
            agent_id=data["agent_id"],
            tenant_id=data["tenant_id"],
            status=AgentStatus(data.get("status", "offline")),
            status_message=data.get("status_message", ""),
            auto_assign_enabled=data.get("auto_assign_enabled", True),
            max_concurrent_conversations=data.get("max_concurrent_conversations", 5),
            current_conversation_count=data.get("current_conversation_count", 0),
            skills=set(data.get("skills", [])),
            languages=set(data.get("languages", [])),
            avg_response_time_seconds=data.get("avg_response_time_seconds", 60.0),
            satisfaction_score=data.get("satisfaction_score", 4.5),
            display_name=data.get("display_name", ""),
            total_conversations_handled=data.get("total_conversations_handled", 0),
            last_assigned_at=_parse_dt(data.get("last_assigned_at")),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class AgentFilter:
    """Optional constraints applied when fetching candidate agents."""

    required_skills: Set[str] = field(default_factory=set)
    required_language: Optional[str] = None
    exclude_agent_ids: Set[str] = field(default_factory=set)

    def matches(self, agent: AgentCapacity) -> bool:
        if agent.agent_id in self.exclude_agent_ids:
            return False
        if not agent.has_skills(self.required_skills):
            return False
        return agent.speaks(self.required_language)


# =============================================================================
# Conversation Types
# =============================================================================


@dataclass
class Conversation:
    """The routing-relevant view of an inbound conversation."""

    conversation_id: str
    tenant_id: str
    priority: int = DEFAULT_PRIORITY
    required_skills: List[str] = field(default_factory=list)
    required_language: Optional[str] = None
    preferred_agent_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    channel: str = "whatsapp"
    contact_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        _check_priority(self.priority, "Conversation")

    def to_context(self) -> Dict[str, Any]:
        """Field view used by routing predicates."""
        return {
            "conversation_id": self.conversation_id,
            "priority": self.priority,
            "required_skills": list(self.required_skills),
            "required_language": self.required_language,
            "preferred_agent_id": self.preferred_agent_id,
            "tags": list(self.tags),
            "channel": self.channel,
            "contact_id": self.contact_id,
            "attributes": dict(self.attributes),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = self.to_context()
        data["tenant_id"] = self.tenant_id
        return data


# =============================================================================
# Strategy Configuration Types
# =============================================================================


@dataclass
class RoundRobinConfig:
    """Round robin takes no parameters."""

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass
class LeastLoadedConfig:
    """Least loaded takes no parameters."""

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass
class SkillBasedConfig:
    """Skills every selected agent must have, on top of the conversation's own."""

    required_skills: List[str] = field(default_factory=list)
    match_language: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required_skills": list(self.required_skills),
            "match_language": self.match_language,
        }


@dataclass
class PriorityBasedConfig:
    """
    Urgent conversations (priority <= urgent_threshold) may use any free slot.

    Everything else only goes to agents whose workload is below
    ``soft_limit_ratio``; ``max_concurrent_conversations`` stays the hard
    ceiling in both cases.
    """

    urgent_threshold: int = 2
    soft_limit_ratio: float = 1.0

    def __post_init__(self):
        _check_priority(self.urgent_threshold, "Urgent threshold")
        if not 0.0 < self.soft_limit_ratio <= 1.0:
            raise ValueError("soft_limit_ratio must be in (0, 1]")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "urgent_threshold": self.urgent_threshold,
            "soft_limit_ratio": self.soft_limit_ratio,
        }


@dataclass
class CustomConfig:
    """Tenant-supplied predicate over conversation and agent fields."""

    agent_filter: Optional[Predicate] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_filter": predicate_to_dict(self.agent_filter) if self.agent_filter else None,
        }


StrategyConfig = Union[
    RoundRobinConfig,
    LeastLoadedConfig,
    SkillBasedConfig,
    PriorityBasedConfig,
    CustomConfig,
]

STRATEGY_CONFIG_TYPES: Dict[RoutingStrategy, type] = {
    RoutingStrategy.ROUND_ROBIN: RoundRobinConfig,
    RoutingStrategy.LEAST_LOADED: LeastLoadedConfig,
    RoutingStrategy.SKILL_BASED: SkillBasedConfig,
    RoutingStrategy.PRIORITY_BASED: PriorityBasedConfig,
    RoutingStrategy.CUSTOM: CustomConfig,
}


def default_strategy_config(strategy: RoutingStrategy) -> StrategyConfig:
    """Parameterless configuration for a strategy."""
    return STRATEGY_CONFIG_TYPES[strategy]()


def strategy_config_from_dict(
    strategy: RoutingStrategy,
    data: Optional[Dict[str, Any]],
) -> StrategyConfig:
    """Build the typed configuration record for a strategy."""
    data = data or {}
    if strategy == RoutingStrategy.SKILL_BASED:
        return SkillBasedConfig(
            required_skills=list(data.get("required_skills", [])),
            match_language=data.get("match_language", True),
        )
    if strategy == RoutingStrategy.PRIORITY_BASED:
        return PriorityBasedConfig(
            urgent_threshold=data.get("urgent_threshold", 2),
            soft_limit_ratio=data.get("soft_limit_ratio", 1.0),
        )
    if strategy == RoutingStrategy.CUSTOM:
        agent_filter = data.get("agent_filter")
        return CustomConfig(
            agent_filter=parse_predicate(agent_filter) if agent_filter else None,
        )
    return default_strategy_config(strategy)


# =============================================================================
# Rule Types
# =============================================================================


@dataclass
class RoutingRule:
    """A tenant-configured routing rule."""

    tenant_id: str
    name: str
    strategy: RoutingStrategy
    rule_id: str = ""
    priority: int = 5  # 1 = evaluated first
    is_active: bool = True
    strategy_config: Optional[StrategyConfig] = None

    # When the rule applies; None = always
    conditions: Optional[Predicate] = None

    # Tried without this rule's skill filter when the rule's strategy finds nobody
    fallback_strategy: Optional[RoutingStrategy] = None

    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.rule_id:
            self.rule_id = f"rule_{uuid.uuid4().hex[:16]}"
        _check_priority(self.priority, "Rule")
        if self.strategy_config is None:
            self.strategy_config = default_strategy_config(self.strategy)
        expected = STRATEGY_CONFIG_TYPES[self.strategy]
        if not isinstance(self.strategy_config, expected):
            raise ValueError(
                f"Rule {self.rule_id} uses {self.strategy.value} but got "
                f"{type(self.strategy_config).__name__}"
            )

    def applies_to(self, conversation: Conversation) -> bool:
        """Check whether the rule's conditions match the conversation."""
        if self.conditions is None:
            return True
        return evaluate(self.conditions, {"conversation": conversation.to_context()})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "rule_id": self.rule_id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "strategy": self.strategy.value,
            "priority": self.priority,
            "is_active": self.is_active,
            "strategy_config": self.strategy_config.to_dict(),
            "conditions": predicate_to_dict(self.conditions) if self.conditions else None,
            "fallback_strategy": self.fallback_strategy.value if self.fallback_strategy else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutingRule":
        """Create from dictionary."""
        strategy = RoutingStrategy(data["strategy"])
        conditions = data.get("conditions")
        fallback = data.get("fallback_strategy")
        return cls(
            rule_id=data.get("rule_id", ""),
            tenant_id=data["tenant_id"],
            name=data["name"],
            description=data.get("description", ""),
            strategy=strategy,
            priority=data.get("priority", 5),
            is_active=data.get("is_active", True),
            strategy_config=strategy_config_from_dict(strategy, data.get("strategy_config")),
            conditions=parse_predicate(conditions) if conditions else None,
            fallback_strategy=RoutingStrategy(fallback) if fallback else None,
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class TenantRoutingSettings:
    """Tenant-level routing defaults."""

    tenant_id: str
    default_strategy: RoutingStrategy = RoutingStrategy.ROUND_ROBIN
    default_max_concurrent_conversations: int = 5
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "default_strategy": self.default_strategy.value,
            "default_max_concurrent_conversations": self.default_max_concurrent_conversations,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TenantRoutingSettings":
        return cls(
            tenant_id=data["tenant_id"],
            default_strategy=RoutingStrategy(data.get("default_strategy", "round_robin")),
            default_max_concurrent_conversations=data.get(
                "default_max_concurrent_conversations", 5
            ),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class RotationPointer:
    """Per-tenant round robin position, updated by compare-and-swap on version."""

    tenant_id: str
    last_agent_id: Optional[str] = None
    version: int = 0


# =============================================================================
# Queue Types
# =============================================================================


@dataclass
class QueueEntry:
    """A conversation waiting for an eligible agent."""

    conversation_id: str
    tenant_id: str
    priority: int = DEFAULT_PRIORITY
    required_skills: List[str] = field(default_factory=list)
    required_language: Optional[str] = None
    preferred_agent_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    channel: str = "whatsapp"
    contact_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    entry_id: str = ""
    status: QueueEntryStatus = QueueEntryStatus.WAITING
    sequence: int = 0  # Insertion order, final tie-break
    enqueued_at: datetime = field(default_factory=utcnow)
    assigned_at: Optional[datetime] = None
    assigned_agent_id: Optional[str] = None
    reason: str = ""

    def __post_init__(self):
        if not self.entry_id:
            self.entry_id = f"qentry_{uuid.uuid4().hex[:18]}"
        _check_priority(self.priority, "Queue entry")

    @classmethod
    def from_conversation(cls, conversation: Conversation, reason: str = "") -> "QueueEntry":
        return cls(
            conversation_id=conversation.conversation_id,
            tenant_id=conversation.tenant_id,
            priority=conversation.priority,
            required_skills=list(conversation.required_skills),
            required_language=conversation.required_language,
            preferred_agent_id=conversation.preferred_agent_id,
            tags=list(conversation.tags),
            channel=conversation.channel,
            contact_id=conversation.contact_id,
            attributes=dict(conversation.attributes),
            reason=reason,
        )

    def to_conversation(self) -> Conversation:
        """Rebuild the routing view of the queued conversation."""
        return Conversation(
            conversation_id=self.conversation_id,
            tenant_id=self.tenant_id,
            priority=self.priority,
            required_skills=list(self.required_skills),
            required_language=self.required_language,
            preferred_agent_id=self.preferred_agent_id,
            tags=list(self.tags),
            channel=self.channel,
            contact_id=self.contact_id,
            attributes=dict(self.attributes),
        )

    @property
    def sort_key(self):
        return (self.priority, self.enqueued_at, self.sequence)

    @property
    def is_waiting(self) -> bool:
        return self.status == QueueEntryStatus.WAITING

    def wait_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.enqueued_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entry_id": self.entry_id,
            "conversation_id": self.conversation_id,
            "tenant_id": self.tenant_id,
            "priority": self.priority,
            "required_skills": list(self.required_skills),
            "required_language": self.required_language,
            "preferred_agent_id": self.preferred_agent_id,
            "tags": list(self.tags),
            "channel": self.channel,
            "contact_id": self.contact_id,
            "attributes": dict(self.attributes),
            "status": self.status.value,
            "sequence": self.sequence,
            "enqueued_at": self.enqueued_at.isoformat(),
            "assigned_at": _iso(self.assigned_at),
            "assigned_agent_id": self.assigned_agent_id,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        """Create from dictionary."""
        return cls(
            entry_id=data.get("entry_id", ""),
            conversation_id=data["conversation_id"],
            tenant_id=data["tenant_id"],
            priority=data.get("priority", DEFAULT_PRIORITY),
            required_skills=list(data.get("required_skills") or []),
            required_language=data.get("required_language"),
            preferred_agent_id=data.get("preferred_agent_id"),
            tags=list(data.get("tags") or []),
            channel=data.get("channel") or "whatsapp",
            contact_id=data.get("contact_id"),
            attributes=dict(data.get("attributes") or {}),
            status=QueueEntryStatus(data.get("status", "waiting")),
            sequence=data.get("sequence", 0),
            enqueued_at=_parse_dt(data.get("enqueued_at")) or utcnow(),
            assigned_at=_parse_dt(data.get("assigned_at")),
            assigned_agent_id=data.get("assigned_agent_id"),
            reason=data.get("reason") or "",
        )


# =============================================================================
# Assignment Types
# =============================================================================


@dataclass
class Assignment:
    """The current assignee of a conversation; at most one per conversation."""

    conversation_id: str
    tenant_id: str
    agent_id: str
    strategy: Optional[RoutingStrategy] = None
    priority: int = DEFAULT_PRIORITY
    required_skills: List[str] = field(default_factory=list)
    required_language: Optional[str] = None
    preferred_agent_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    channel: str = "whatsapp"
    contact_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    assigned_at: datetime = field(default_factory=utcnow)
    last_customer_message_at: Optional[datetime] = None
    last_agent_reply_at: Optional[datetime] = None

    @property
    def awaiting_reply(self) -> bool:
        """The customer spoke last and the agent has not answered."""
        if self.last_customer_message_at is None:
            return False
        if self.last_agent_reply_at is None:
            return True
        return self.last_agent_reply_at < self.last_customer_message_at

    @classmethod
    def for_conversation(
        cls,
        conversation: Conversation,
        agent_id: str,
        strategy: Optional[RoutingStrategy] = None,
    ) -> "Assignment":
        return cls(
            conversation_id=conversation.conversation_id,
            tenant_id=conversation.tenant_id,
            agent_id=agent_id,
            strategy=strategy,
            priority=conversation.priority,
            required_skills=list(conversation.required_skills),
            required_language=conversation.required_language,
            preferred_agent_id=conversation.preferred_agent_id,
            tags=list(conversation.tags),
            channel=conversation.channel,
            contact_id=conversation.contact_id,
            attributes=dict(conversation.attributes),
        )

    def to_conversation(self) -> Conversation:
        """Rebuild the routing view of the assigned conversation."""
        return Conversation(
            conversation_id=self.conversation_id,
            tenant_id=self.tenant_id,
            priority=self.priority,
            required_skills=list(self.required_skills),
            required_language=self.required_language,
            preferred_agent_id=self.preferred_agent_id,
            tags=list(self.tags),
            channel=self.channel,
            contact_id=self.contact_id,
            attributes=dict(self.attributes),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "conversation_id": self.conversation_id,
            "tenant_id": self.tenant_id,
            "agent_id": self.agent_id,
            "strategy": self.strategy.value if self.strategy else None,
            "priority": self.priority,
            "required_skills": list(self.required_skills),
            "required_language": self.required_language,
            "preferred_agent_id": self.preferred_agent_id,
            "tags": list(self.tags),
            "channel": self.channel,
            "contact_id": self.contact_id,
            "attributes": dict(self.attributes),
            "assigned_at": self.assigned_at.isoformat(),
            "last_customer_message_at": _iso(self.last_customer_message_at),
            "last_agent_reply_at": _iso(self.last_agent_reply_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Assignment":
        """Create from dictionary."""
        strategy = data.get("strategy")
        return cls(
            conversation_id=data["conversation_id"],
            tenant_id=data["tenant_id"],
            agent_id=data["agent_id"],
            strategy=RoutingStrategy(strategy) if strategy else None,
            priority=data.get("priority", DEFAULT_PRIORITY),
            required_skills=list(data.get("required_skills") or []),
            required_language=data.get("required_language"),
            preferred_agent_id=data.get("preferred_agent_id"),
            tags=list(data.get("tags") or []),
            channel=data.get("channel") or "whatsapp",
            contact_id=data.get("contact_id"),
            attributes=dict(data.get("attributes") or {}),
            assigned_at=_parse_dt(data.get("assigned_at")) or utcnow(),
            last_customer_message_at=_parse_dt(data.get("last_customer_message_at")),
            last_agent_reply_at=_parse_dt(data.get("last_agent_reply_at")),
        )


# =============================================================================
# Routing History Types
# =============================================================================


@dataclass(frozen=True)
class RoutingHistoryEntry:
    """One routing decision. Never modified once recorded."""

    conversation_id: str
    tenant_id: str
    outcome: RoutingOutcome
    strategy_used: Optional[RoutingStrategy] = None
    candidate_agent_ids: List[str] = field(default_factory=list)
    workload_scores: Dict[str, float] = field(default_factory=dict)
    selected_agent_id: Optional[str] = None
    rule_id: Optional[str] = None
    reason: str = ""
    queue_position: Optional[int] = None
    references_entry_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    entry_id: str = field(default_factory=lambda: f"rhist_{uuid.uuid4().hex[:18]}")
    sequence: int = 0  # Assigned by the store on append

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entry_id": self.entry_id,
            "sequence": self.sequence,
            "conversation_id": self.conversation_id,
            "tenant_id": self.tenant_id,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome.value,
            "strategy_used": self.strategy_used.value if self.strategy_used else None,
            "rule_id": self.rule_id,
            "candidate_agent_ids": list(self.candidate_agent_ids),
            "workload_scores": dict(self.workload_scores),
            "selected_agent_id": self.selected_agent_id,
            "reason": self.reason,
            "queue_position": self.queue_position,
            "references_entry_id": self.references_entry_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutingHistoryEntry":
        """Create from dictionary."""
        strategy = data.get("strategy_used")
        return cls(
            entry_id=data["entry_id"],
            sequence=data.get("sequence", 0),
            conversation_id=data["conversation_id"],
            tenant_id=data["tenant_id"],
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
            outcome=RoutingOutcome(data["outcome"]),
            strategy_used=RoutingStrategy(strategy) if strategy else None,
            rule_id=data.get("rule_id"),
            candidate_agent_ids=list(data.get("candidate_agent_ids") or []),
            workload_scores=dict(data.get("workload_scores") or {}),
            selected_agent_id=data.get("selected_agent_id"),
            reason=data.get("reason") or "",
            queue_position=data.get("queue_position"),
            references_entry_id=data.get("references_entry_id"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class HistoryFilter:
    """Read filters for the routing audit trail."""

    conversation_id: Optional[str] = None
    agent_id: Optional[str] = None
    outcome: Optional[RoutingOutcome] = None
    strategy: Optional[RoutingStrategy] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 100
    offset: int = 0
    newest_first: bool = False

    def matches(self, entry: RoutingHistoryEntry) -> bool:
        if self.conversation_id and entry.conversation_id != self.conversation_id:
            return False
        if self.agent_id and entry.selected_agent_id != self.agent_id:
            return False
        if self.outcome and entry.outcome != self.outcome:
            return False
        if self.strategy and entry.strategy_used != self.strategy:
            return False
        if self.since and entry.timestamp < self.since:
            return False
        if self.until and entry.timestamp > self.until:
            return False
        return True


# =============================================================================
# Routing Result Types
# =============================================================================


@dataclass
class RoutingResult:
    """Result of a routing attempt handed back to the caller."""

    status: RoutingStatus
    conversation_id: str
    tenant_id: str
    agent_id: Optional[str] = None
    strategy: Optional[RoutingStrategy] = None
    reason: str = ""
    queue_position: Optional[int] = None
    estimated_wait_minutes: Optional[int] = None
    history_entry_id: Optional[str] = None
    alternative_agent_ids: List[str] = field(default_factory=list)

    @property
    def assigned(self) -> bool:
        return self.status == RoutingStatus.ASSIGNED

    @property
    def queued(self) -> bool:
        return self.status == RoutingStatus.QUEUED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "conversation_id": self.conversation_id,
            "tenant_id": self.tenant_id,
            "agent_id": self.agent_id,
            "strategy": self.strategy.value if self.strategy else None,
            "reason": self.reason,
            "queue_position": self.queue_position,
            "estimated_wait_minutes": self.estimated_wait_minutes,
            "history_entry_id": self.history_entry_id,
            "alternative_agent_ids": list(self.alternative_agent_ids),
        }


# =============================================================================
# Escalation Types
# =============================================================================


@dataclass
class EscalationRule:
    """SLA threshold and who to notify when it is exceeded."""

    tenant_id: str
    name: str
    sla_threshold_minutes: int
    rule_id: str = ""
    is_active: bool = True
    priority: int = 5  # 1 = checked first
    escalation_target: EscalationTarget = EscalationTarget.MANAGER
    custom_target_id: Optional[str] = None
    notification_channels: List[NotificationChannel] = field(
        default_factory=lambda: [NotificationChannel.EMAIL]
    )
    applies_to: EscalationScope = EscalationScope.ALL

    # Conditions
    min_priority: Optional[int] = None  # Only conversations at least this urgent
    required_tags: List[str] = field(default_factory=list)

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.rule_id:
            self.rule_id = f"esc_{uuid.uuid4().hex[:16]}"
        if self.sla_threshold_minutes < 1:
            raise ValueError("sla_threshold_minutes must be at least 1")
        _check_priority(self.priority, "Escalation rule")
        if self.escalation_target == EscalationTarget.CUSTOM and not self.custom_target_id:
            raise ValueError("Custom escalation target requires custom_target_id")

    def matches(self, scope: EscalationScope, priority: int, tags: Iterable[str]) -> bool:
        """Check whether the rule watches a conversation in the given state."""
        if not self.is_active:
            return False
        if self.applies_to != EscalationScope.ALL and self.applies_to != scope:
            return False
        if self.min_priority is not None and priority > self.min_priority:
            return False
        return set(self.required_tags).issubset(set(tags))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "rule_id": self.rule_id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "is_active": self.is_active,
            "priority": self.priority,
            "sla_threshold_minutes": self.sla_threshold_minutes,
            "escalation_target": self.escalation_target.value,
            "custom_target_id": self.custom_target_id,
            "notification_channels": [c.value for c in self.notification_channels],
            "applies_to": self.applies_to.value,
            "min_priority": self.min_priority,
            "required_tags": list(self.required_tags),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscalationRule":
        """Create from dictionary."""
        return cls(
            rule_id=data.get("rule_id", ""),
            tenant_id=data["tenant_id"],
            name=data["name"],
            is_active=data.get("is_active", True),
            priority=data.get("priority", 5),
            sla_threshold_minutes=data["sla_threshold_minutes"],
            escalation_target=EscalationTarget(data.get("escalation_target", "manager")),
            custom_target_id=data.get("custom_target_id"),
            notification_channels=[
                NotificationChannel(c) for c in data.get("notification_channels") or ["email"]
            ],
            applies_to=EscalationScope(data.get("applies_to", "all")),
            min_priority=data.get("min_priority"),
            required_tags=list(data.get("required_tags") or []),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class EscalationCandidate:
    """A conversation that exceeded its SLA threshold."""

    conversation_id: str
    tenant_id: str
    rule_id: str
    state: EscalationScope
    elapsed_minutes: float
    threshold_minutes: int
    escalation_target: EscalationTarget
    notification_channels: List[NotificationChannel]
    priority: int = DEFAULT_PRIORITY
    custom_target_id: Optional[str] = None
    assigned_agent_id: Optional[str] = None

    @property
    def breach_minutes(self) -> float:
        return self.elapsed_minutes - self.threshold_minutes

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "conversation_id": self.conversation_id,
            "tenant_id": self.tenant_id,
            "rule_id": self.rule_id,
            "state": self.state.value,
            "priority": self.priority,
            "elapsed_minutes": round(self.elapsed_minutes, 2),
            "threshold_minutes": self.threshold_minutes,
            "breach_minutes": round(self.breach_minutes, 2),
            "escalation_target": self.escalation_target.value,
            "custom_target_id": self.custom_target_id,
            "notification_channels": [c.value for c in self.notification_channels],
            "assigned_agent_id": self.assigned_agent_id,
        }


# =============================================================================
# Exceptions
# =============================================================================


class RoutingError(Exception):
    """Base exception for conversation routing errors."""
    pass


class CapacityRaceLost(RoutingError):
    """A conditional load increment found the agent already at capacity."""

    def __init__(self, agent_id: str, message: Optional[str] = None):
        super().__init__(message or f"Agent {agent_id} has no free conversation slot")
        self.agent_id = agent_id


class InvalidStateTransition(RoutingError):
    """An operation does not fit the current state of a conversation or agent."""
    pass


class StoreUnavailable(RoutingError):
    """The persistence layer could not be reached."""
    pass


class AgentNotFoundError(RoutingError):
    """Agent not found."""
    pass


class RuleNotFoundError(RoutingError):
    """Routing or escalation rule not found."""
    pass


class QueueEntryNotFound(RoutingError):
    """No open queue entry for the conversation."""
    pass


# =============================================================================
# Exports
# =============================================================================


__all__ = [
    "utcnow",
    # Enums
    "AgentStatus",
    "RoutingStrategy",
    "RoutingOutcome",
    "RoutingStatus",
    "QueueEntryStatus",
    "EscalationTarget",
    "NotificationChannel",
    "EscalationScope",
    # Priority helpers
    "PRIORITY_LABELS",
    "DEFAULT_PRIORITY",
    "priority_from_label",
    # Agent types
    "AgentCapacity",
    "AgentFilter",
    # Conversation types
    "Conversation",
    # Strategy configuration
    "RoundRobinConfig",
    "LeastLoadedConfig",
    "SkillBasedConfig",
    "PriorityBasedConfig",
    "CustomConfig",
    "StrategyConfig",
    "STRATEGY_CONFIG_TYPES",
    "default_strategy_config",
    "strategy_config_from_dict",
    # Rule types
    "RoutingRule",
    "TenantRoutingSettings",
    "RotationPointer",
    # Queue and assignment types
    "QueueEntry",
    "Assignment",
    # History types
    "RoutingHistoryEntry",
    "HistoryFilter",
    "RoutingResult",
    # Escalation types
    "EscalationRule",
    "EscalationCandidate",
    # Exceptions
    "RoutingError",
    "CapacityRaceLost",
    "InvalidStateTransition",
    "StoreUnavailable",
    "AgentNotFoundError",
    "RuleNotFoundError",
    "QueueEntryNotFound",
]
