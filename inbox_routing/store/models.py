"""
Database Models

SQLAlchemy ORM models for routing state.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON as _JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ..base import utcnow
from .database import Base, TimestampMixin

# JSONB on PostgreSQL, plain JSON elsewhere
JSON = _JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# Agent Models
# =============================================================================


class AgentCapacityModel(Base, TimestampMixin):
    """Per-tenant agent routing state."""

    __tablename__ = "agent_capacity"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), default="")

    # Status
    status: Mapped[str] = mapped_column(String(20), default="offline")
    status_message: Mapped[str] = mapped_column(Text, default="")
    auto_assign_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Capacity
    max_concurrent_conversations: Mapped[int] = mapped_column(Integer, default=5)
    current_conversation_count: Mapped[int] = mapped_column(Integer, default=0)

    # Matching
    skills: Mapped[List[str]] = mapped_column(JSON, default=list)
    languages: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Metrics
    avg_response_time_seconds: Mapped[float] = mapped_column(Float, default=60.0)
    satisfaction_score: Mapped[float] = mapped_column(Float, default=4.5)
    total_conversations_handled: Mapped[int] = mapped_column(Integer, default=0)
    last_assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "agent_id", name="uq_agent_capacity_tenant_agent"),
        Index("ix_agent_capacity_tenant_status", "tenant_id", "status"),
    )


# =============================================================================
# Rule Models
# =============================================================================


class RoutingRuleModel(Base, TimestampMixin):
    """Tenant routing rule."""

    __tablename__ = "routing_rules"

    rule_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    strategy_config: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    conditions: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    fallback_strategy: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_routing_rules_tenant_active", "tenant_id", "is_active", "priority"),
    )


class TenantRoutingSettingsModel(Base):
    """Tenant routing defaults."""

    __tablename__ = "tenant_routing_settings"

    tenant_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    default_strategy: Mapped[str] = mapped_column(String(32), default="round_robin")
    default_max_concurrent_conversations: Mapped[int] = mapped_column(Integer, default=5)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class RotationPointerModel(Base):
    """Round robin position per tenant."""

    __tablename__ = "routing_rotation_pointers"

    tenant_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    last_agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# =============================================================================
# Queue and Assignment Models
# =============================================================================


class QueueEntryModel(Base):
    """Conversation waiting for an agent."""

    __tablename__ = "routing_queue_entries"

    entry_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)

    priority: Mapped[int] = mapped_column(Integer, default=5)
    required_skills: Mapped[List[str]] = mapped_column(JSON, default=list)
    required_language: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    preferred_agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    channel: Mapped[str] = mapped_column(String(32), default="whatsapp")
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attributes: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(20), default="waiting")
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    assigned_agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reason: Mapped[str] = mapped_column(Text, default="")

    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence", name="uq_queue_tenant_sequence"),
        Index("ix_queue_tenant_status_order", "tenant_id", "status", "priority", "enqueued_at"),
        Index("ix_queue_tenant_conversation", "tenant_id", "conversation_id"),
    )


class AssignmentModel(Base):
    """Current assignee of a conversation."""

    __tablename__ = "conversation_assignments"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    strategy: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    required_skills: Mapped[List[str]] = mapped_column(JSON, default=list)
    required_language: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    preferred_agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    channel: Mapped[str] = mapped_column(String(32), default="whatsapp")
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attributes: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_customer_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_agent_reply_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "conversation_id", name="uq_assignment_conversation"),
        Index("ix_assignments_tenant_agent", "tenant_id", "agent_id"),
    )


# =============================================================================
# History Models
# =============================================================================


class RoutingHistoryModel(Base):
    """Append-only routing decision log."""

    __tablename__ = "routing_history"

    entry_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    strategy_used: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    rule_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    candidate_agent_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    workload_scores: Mapped[Dict[str, float]] = mapped_column(JSON, default=dict)
    selected_agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    queue_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    references_entry_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence", name="uq_history_tenant_sequence"),
        Index("ix_history_tenant_conversation", "tenant_id", "conversation_id"),
        Index("ix_history_tenant_timestamp", "tenant_id", "timestamp"),
    )


# =============================================================================
# Escalation Models
# =============================================================================


class EscalationRuleModel(Base, TimestampMixin):
    """SLA escalation rule."""

    __tablename__ = "escalation_rules"

    rule_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)

    sla_threshold_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    escalation_target: Mapped[str] = mapped_column(String(32), default="manager")
    custom_target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notification_channels: Mapped[List[str]] = mapped_column(JSON, default=list)
    applies_to: Mapped[str] = mapped_column(String(16), default="all")

    # Conditions
    min_priority: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    required_tags: Mapped[List[str]] = mapped_column(JSON, default=list)

    __table_args__ = (
        Index("ix_escalation_rules_tenant", "tenant_id", "is_active", "priority"),
    )


__all__ = [
    "AgentCapacityModel",
    "RoutingRuleModel",
    "TenantRoutingSettingsModel",
    "RotationPointerModel",
    "QueueEntryModel",
    "AssignmentModel",
    "RoutingHistoryModel",
    "EscalationRuleModel",
]
