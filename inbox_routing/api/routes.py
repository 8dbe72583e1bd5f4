"""API routes for conversation routing."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from ..balancer import LoadBalancer
from ..base import (
    AgentStatus,
    Conversation,
    EscalationScope,
    EscalationTarget,
    HistoryFilter,
    NotificationChannel,
    RoutingOutcome,
    RoutingResult,
    RoutingStrategy,
    priority_from_label,
)
from ..escalation import EscalationEvaluator


router = APIRouter(prefix="/routing", tags=["Conversation Routing"])

# Dependency injection placeholders
_balancer: Optional[LoadBalancer] = None
_escalation: Optional[EscalationEvaluator] = None


def get_balancer() -> LoadBalancer:
    if not _balancer:
        raise HTTPException(status_code=503, detail="Load balancer not initialized")
    return _balancer


def get_escalation() -> EscalationEvaluator:
    if not _escalation:
        raise HTTPException(status_code=503, detail="Escalation evaluator not initialized")
    return _escalation


def get_tenant_id(
    x_organization_id: str = Header(..., alias="X-Organization-ID", min_length=1),
) -> str:
    """Tenant of the caller, set by the authentication layer."""
    return x_organization_id


def init_routes(balancer: LoadBalancer, escalation: EscalationEvaluator) -> None:
    """Initialize route dependencies."""
    global _balancer, _escalation
    _balancer = balancer
    _escalation = escalation


# Request/Response Models

class ConversationAssignRequest(BaseModel):
    """Request model for routing a new conversation."""
    conversation_id: str = Field(..., min_length=1, max_length=64)
    priority: Optional[int] = Field(None, ge=1, le=10)
    priority_label: Optional[str] = Field(None, description="urgent, high, medium or low")
    required_skills: List[str] = Field(default_factory=list)
    required_language: Optional[str] = None
    preferred_agent_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    channel: str = "whatsapp"
    contact_id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def to_conversation(self, tenant_id: str) -> Conversation:
        priority = self.priority if self.priority is not None else priority_from_label(self.priority_label)
        return Conversation(
            conversation_id=self.conversation_id,
            tenant_id=tenant_id,
            priority=priority,
            required_skills=self.required_skills,
            required_language=self.required_language,
            preferred_agent_id=self.preferred_agent_id,
            tags=self.tags,
            channel=self.channel,
            contact_id=self.contact_id,
            attributes=self.attributes,
        )


class ReleaseRequest(BaseModel):
    """Request model for releasing an assignment."""
    agent_id: str
    reason: str = "resolved"


class RejectRequest(BaseModel):
    """Request model for an agent declining a conversation."""
    agent_id: str
    reason: str = ""


class ReassignRequest(BaseModel):
    """Request model for moving a conversation."""
    to_agent_id: Optional[str] = None
    reason: str = ""


class ActivityRequest(BaseModel):
    """Request model for message activity."""
    at: Optional[datetime] = None


class AgentRegisterRequest(BaseModel):
    """Request model for registering an agent."""
    display_name: str = ""
    skills: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    max_concurrent_conversations: Optional[int] = Field(None, ge=1)
    status: AgentStatus = AgentStatus.OFFLINE
    auto_assign_enabled: bool = True
    avg_response_time_seconds: float = Field(60.0, ge=0)
    satisfaction_score: float = Field(4.5, ge=0, le=5)


class AgentUpdateRequest(BaseModel):
    """Request model for updating an agent."""
    display_name: Optional[str] = None
    skills: Optional[List[str]] = None
    languages: Optional[List[str]] = None
    max_concurrent_conversations: Optional[int] = Field(None, ge=1)
    auto_assign_enabled: Optional[bool] = None
    avg_response_time_seconds: Optional[float] = Field(None, ge=0)
    satisfaction_score: Optional[float] = Field(None, ge=0, le=5)


class AgentStatusRequest(BaseModel):
    """Request model for an availability change."""
    status: AgentStatus
    message: str = ""


class RuleCreate(BaseModel):
    """Request model for creating a routing rule."""
    name: str = Field(..., min_length=1, max_length=255)
    strategy: RoutingStrategy
    priority: int = Field(5, ge=1, le=10)
    strategy_config: Dict[str, Any] = Field(default_factory=dict)
    conditions: Optional[Dict[str, Any]] = None
    fallback_strategy: Optional[RoutingStrategy] = None
    description: str = ""
    is_active: bool = True


class RuleUpdate(BaseModel):
    """Request model for updating a routing rule."""
    name: Optional[str] = None
    strategy: Optional[RoutingStrategy] = None
    priority: Optional[int] = Field(None, ge=1, le=10)
    strategy_config: Optional[Dict[str, Any]] = None
    conditions: Optional[Dict[str, Any]] = None
    fallback_strategy: Optional[RoutingStrategy] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class SettingsUpdate(BaseModel):
    """Request model for tenant routing defaults."""
    default_strategy: Optional[RoutingStrategy] = None
    default_max_concurrent_conversations: Optional[int] = Field(None, ge=1)


class EscalationRuleCreate(BaseModel):
    """Request model for creating an escalation rule."""
    name: str = Field(..., min_length=1, max_length=255)
    sla_threshold_minutes: int = Field(..., ge=1)
    escalation_target: EscalationTarget = EscalationTarget.MANAGER
    custom_target_id: Optional[str] = None
    notification_channels: List[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.EMAIL]
    )
    applies_to: EscalationScope = EscalationScope.ALL
    priority: int = Field(5, ge=1, le=10)
    min_priority: Optional[int] = Field(None, ge=1, le=10)
    required_tags: List[str] = Field(default_factory=list)


class EscalationRuleUpdate(BaseModel):
    """Request model for updating an escalation rule."""
    name: Optional[str] = None
    sla_threshold_minutes: Optional[int] = Field(None, ge=1)
    escalation_target: Optional[EscalationTarget] = None
    custom_target_id: Optional[str] = None
    notification_channels: Optional[List[NotificationChannel]] = None
    applies_to: Optional[EscalationScope] = None
    priority: Optional[int] = Field(None, ge=1, le=10)
    min_priority: Optional[int] = Field(None, ge=1, le=10)
    required_tags: Optional[List[str]] = None
    is_active: Optional[bool] = None


class RoutingResultResponse(BaseModel):
    """Response model for a routing decision."""
    status: str
    conversation_id: str
    tenant_id: str
    agent_id: Optional[str] = None
    strategy: Optional[str] = None
    reason: str = ""
    queue_position: Optional[int] = None
    estimated_wait_minutes: Optional[int] = None
    history_entry_id: Optional[str] = None
    alternative_agent_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: RoutingResult) -> "RoutingResultResponse":
        return cls(**result.to_dict())


class QueuePositionResponse(BaseModel):
    """Response model for a queue position lookup."""
    conversation_id: str
    queue_position: Optional[int]
    estimated_wait_minutes: Optional[int]


def _updates(request: BaseModel) -> Dict[str, Any]:
    return {k: v for k, v in request.model_dump(exclude_unset=True).items() if v is not None}


# Conversation Routes

@router.post("/conversations/assign", response_model=RoutingResultResponse)
async def assign_conversation(
    request: ConversationAssignRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> RoutingResultResponse:
    """Route a new conversation to an agent or to the queue."""
    try:
        conversation = request.to_conversation(tenant_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = await balancer.assign_conversation(conversation)
    return RoutingResultResponse.from_result(result)


@router.get("/conversations/{conversation_id}/assignment")
async def get_assignment(
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Current assignee of a conversation."""
    assignment = await balancer.get_assignment(tenant_id, conversation_id)
    if not assignment:
        raise HTTPException(status_code=404, detail="Conversation is not assigned")
    return assignment.to_dict()


@router.post("/conversations/{conversation_id}/release")
async def release_conversation(
    conversation_id: str,
    request: ReleaseRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Free an agent's slot when a conversation closes or is handed off."""
    released = await balancer.release_conversation(
        tenant_id,
        conversation_id,
        request.agent_id,
        reason=request.reason,
    )
    return released.to_dict()


@router.post("/conversations/{conversation_id}/reject", response_model=RoutingResultResponse)
async def reject_assignment(
    conversation_id: str,
    request: RejectRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> RoutingResultResponse:
    """Agent declines a conversation; it is routed again without them."""
    result = await balancer.reject_assignment(
        tenant_id,
        conversation_id,
        request.agent_id,
        reason=request.reason,
    )
    return RoutingResultResponse.from_result(result)


@router.post("/conversations/{conversation_id}/reassign", response_model=RoutingResultResponse)
async def reassign_conversation(
    conversation_id: str,
    request: ReassignRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> RoutingResultResponse:
    """Move an assigned conversation to another agent."""
    result = await balancer.reassign_conversation(
        tenant_id,
        conversation_id,
        to_agent_id=request.to_agent_id,
        reason=request.reason,
    )
    return RoutingResultResponse.from_result(result)


@router.post("/conversations/{conversation_id}/customer-message")
async def record_customer_message(
    conversation_id: str,
    request: ActivityRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Note an inbound customer message for SLA tracking."""
    assignment = await balancer.record_customer_message(tenant_id, conversation_id, at=request.at)
    return {"tracked": assignment is not None}


@router.post("/conversations/{conversation_id}/agent-reply")
async def record_agent_reply(
    conversation_id: str,
    request: ActivityRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Note an agent reply for SLA tracking."""
    assignment = await balancer.record_agent_reply(tenant_id, conversation_id, at=request.at)
    return {"tracked": assignment is not None}


# Queue Routes

@router.get("/queue", response_model=List[Dict[str, Any]])
async def list_queue(
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> List[Dict[str, Any]]:
    """Waiting conversations in routing order."""
    return [e.to_dict() for e in await balancer.queue.list_waiting(tenant_id)]


@router.get("/queue/stats")
async def get_queue_stats(
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    return await balancer.queue.get_queue_stats(tenant_id)


@router.get("/queue/{conversation_id}/position", response_model=QueuePositionResponse)
async def get_queue_position(
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> QueuePositionResponse:
    """1-based queue position, or null when the conversation is not waiting."""
    position = await balancer.get_queue_position(tenant_id, conversation_id)
    return QueuePositionResponse(
        conversation_id=conversation_id,
        queue_position=position,
        estimated_wait_minutes=balancer.queue.estimate_wait_minutes(position),
    )


@router.post("/queue/drain", response_model=List[RoutingResultResponse])
async def drain_queue(
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> List[RoutingResultResponse]:
    """Route waiting conversations while capacity lasts."""
    results = await balancer.drain_queue(tenant_id)
    return [RoutingResultResponse.from_result(r) for r in results]


@router.delete("/queue/{conversation_id}")
async def abandon_conversation(
    conversation_id: str,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Remove a waiting conversation from the queue."""
    entry = await balancer.abandon_conversation(tenant_id, conversation_id)
    return entry.to_dict()


# History Routes

@router.get("/history", response_model=List[Dict[str, Any]])
async def query_history(
    conversation_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    outcome: Optional[RoutingOutcome] = None,
    strategy: Optional[RoutingStrategy] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    newest_first: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> List[Dict[str, Any]]:
    """Routing decisions in sequence order, or newest first."""
    entries = await balancer.query_routing_history(
        tenant_id,
        HistoryFilter(
            conversation_id=conversation_id,
            agent_id=agent_id,
            outcome=outcome,
            strategy=strategy,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
            newest_first=newest_first,
        ),
    )
    return [e.to_dict() for e in entries]


@router.get("/history/statistics")
async def get_history_statistics(
    hours: int = Query(24, ge=1, le=24 * 90),
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    return await balancer.history.get_statistics(tenant_id, hours=hours)


# Agent Routes

@router.get("/agents", response_model=List[Dict[str, Any]])
async def list_agents(
    status: Optional[AgentStatus] = None,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> List[Dict[str, Any]]:
    agents = await balancer.capacity.list_agents(tenant_id, status=status)
    return [a.to_dict() for a in agents]


@router.get("/agents/summary")
async def get_capacity_summary(
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    return await balancer.capacity.get_capacity_summary(tenant_id)


@router.put("/agents/{agent_id}")
async def register_agent(
    agent_id: str,
    request: AgentRegisterRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Create or replace an agent's routing profile."""
    agent = await balancer.capacity.register_agent(
        tenant_id,
        agent_id,
        skills=request.skills,
        languages=request.languages,
        max_concurrent_conversations=request.max_concurrent_conversations,
        status=request.status,
        auto_assign_enabled=request.auto_assign_enabled,
        display_name=request.display_name,
        avg_response_time_seconds=request.avg_response_time_seconds,
        satisfaction_score=request.satisfaction_score,
    )
    return agent.to_dict()


@router.get("/agents/{agent_id}")
async def get_agent(
    agent_id: str,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    agent = await balancer.capacity.get_agent(tenant_id, agent_id)
    return agent.to_dict()


@router.patch("/agents/{agent_id}")
async def update_agent(
    agent_id: str,
    request: AgentUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    try:
        agent = await balancer.capacity.update_agent(tenant_id, agent_id, **_updates(request))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return agent.to_dict()


@router.post("/agents/{agent_id}/status")
async def set_agent_status(
    agent_id: str,
    request: AgentStatusRequest,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Change availability; becoming available drains the queue."""
    agent = await balancer.capacity.set_status(
        tenant_id,
        agent_id,
        request.status,
        message=request.message,
    )
    return agent.to_dict()


@router.delete("/agents/{agent_id}")
async def disable_agent(
    agent_id: str,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Take an agent out of routing; the record is kept."""
    agent = await balancer.capacity.disable_agent(tenant_id, agent_id)
    return agent.to_dict()


@router.post("/rebalance")
async def rebalance_load(
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Move recent conversations off overloaded agents."""
    result = await balancer.rebalance_load(tenant_id)
    return result.to_dict()


# Routing Rule Routes

@router.get("/rules", response_model=List[Dict[str, Any]])
async def list_rules(
    active_only: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> List[Dict[str, Any]]:
    rules = await balancer.rules.list_rules(tenant_id, active_only=active_only)
    return [r.to_dict() for r in rules]


@router.post("/rules", status_code=201)
async def create_rule(
    request: RuleCreate,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Create a routing rule."""
    try:
        rule = await balancer.rules.create_rule(
            tenant_id,
            name=request.name,
            strategy=request.strategy,
            priority=request.priority,
            strategy_config=request.strategy_config,
            conditions=request.conditions,
            fallback_strategy=request.fallback_strategy,
            description=request.description,
            is_active=request.is_active,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule.to_dict()


@router.get("/rules/{rule_id}")
async def get_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    rule = await balancer.rules.get_rule(tenant_id, rule_id)
    return rule.to_dict()


@router.put("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    request: RuleUpdate,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    updates = request.model_dump(exclude_unset=True)
    for key in ("strategy", "fallback_strategy"):
        if updates.get(key) is not None:
            updates[key] = RoutingStrategy(updates[key]).value
    try:
        rule = await balancer.rules.update_rule(tenant_id, rule_id, **updates)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule.to_dict()


@router.delete("/rules/{rule_id}")
async def deactivate_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    """Deactivate a rule; rules are never hard-deleted."""
    rule = await balancer.rules.deactivate_rule(tenant_id, rule_id)
    return rule.to_dict()


@router.get("/settings")
async def get_settings(
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    settings = await balancer.rules.get_settings(tenant_id)
    return settings.to_dict()


@router.put("/settings")
async def update_settings(
    request: SettingsUpdate,
    tenant_id: str = Depends(get_tenant_id),
    balancer: LoadBalancer = Depends(get_balancer),
) -> Dict[str, Any]:
    settings = await balancer.rules.update_settings(
        tenant_id,
        default_strategy=request.default_strategy,
        default_max_concurrent_conversations=request.default_max_concurrent_conversations,
    )
    return settings.to_dict()


# Escalation Routes

@router.get("/escalations", response_model=List[Dict[str, Any]])
async def check_escalations(
    tenant_id: str = Depends(get_tenant_id),
    escalation: EscalationEvaluator = Depends(get_escalation),
) -> List[Dict[str, Any]]:
    """Conversations currently past their SLA threshold."""
    candidates = await escalation.check_breaches(tenant_id)
    return [c.to_dict() for c in candidates]


@router.get("/escalation-rules", response_model=List[Dict[str, Any]])
async def list_escalation_rules(
    active_only: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    escalation: EscalationEvaluator = Depends(get_escalation),
) -> List[Dict[str, Any]]:
    rules = await escalation.list_rules(tenant_id, active_only=active_only)
    return [r.to_dict() for r in rules]


@router.post("/escalation-rules", status_code=201)
async def create_escalation_rule(
    request: EscalationRuleCreate,
    tenant_id: str = Depends(get_tenant_id),
    escalation: EscalationEvaluator = Depends(get_escalation),
) -> Dict[str, Any]:
    try:
        rule = await escalation.create_rule(tenant_id, **request.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule.to_dict()


@router.get("/escalation-rules/{rule_id}")
async def get_escalation_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    escalation: EscalationEvaluator = Depends(get_escalation),
) -> Dict[str, Any]:
    rule = await escalation.get_rule(tenant_id, rule_id)
    return rule.to_dict()


@router.patch("/escalation-rules/{rule_id}")
async def update_escalation_rule(
    rule_id: str,
    request: EscalationRuleUpdate,
    tenant_id: str = Depends(get_tenant_id),
    escalation: EscalationEvaluator = Depends(get_escalation),
) -> Dict[str, Any]:
    try:
        rule = await escalation.update_rule(tenant_id, rule_id, **_updates(request))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule.to_dict()


@router.delete("/escalation-rules/{rule_id}")
async def deactivate_escalation_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    escalation: EscalationEvaluator = Depends(get_escalation),
) -> Dict[str, Any]:
    rule = await escalation.deactivate_rule(tenant_id, rule_id)
    return rule.to_dict()
