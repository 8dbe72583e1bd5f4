"""
SLA Escalation Module

Escalation rules, breach detection and notification dispatch.

Breach detection is read-only: it never changes routing state. A queued
conversation is measured from when it entered the queue; an assigned one
from the customer's last unanswered message.
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from .base import (
    EscalationCandidate,
    EscalationRule,
    EscalationScope,
    EscalationTarget,
    NotificationChannel,
    RuleNotFoundError,
    utcnow,
)
from .store import RoutingStore


logger = structlog.get_logger(__name__)


# =============================================================================
# Breach Detection
# =============================================================================


class EscalationEvaluator:
    """
    Manages escalation rules and finds SLA breaches.

    Features:
    - Rule CRUD with soft deactivation
    - Queue wait and first-reply breach checks
    - First matching rule by priority wins per conversation
    """

    _UPDATABLE = {
        "name",
        "is_active",
        "priority",
        "sla_threshold_minutes",
        "escalation_target",
        "custom_target_id",
        "notification_channels",
        "applies_to",
        "min_priority",
        "required_tags",
    }

    def __init__(self, store: RoutingStore):
        self._store = store

    # -------------------------------------------------------------------------
    # Rule CRUD
    # -------------------------------------------------------------------------

    async def create_rule(
        self,
        tenant_id: str,
        name: str,
        sla_threshold_minutes: int,
        escalation_target: EscalationTarget = EscalationTarget.MANAGER,
        custom_target_id: Optional[str] = None,
        notification_channels: Optional[Iterable[NotificationChannel]] = None,
        applies_to: EscalationScope = EscalationScope.ALL,
        priority: int = 5,
        min_priority: Optional[int] = None,
        required_tags: Optional[Iterable[str]] = None,
    ) -> EscalationRule:
        rule = EscalationRule(
            tenant_id=tenant_id,
            name=name,
            sla_threshold_minutes=sla_threshold_minutes,
            escalation_target=EscalationTarget(escalation_target),
            custom_target_id=custom_target_id,
            notification_channels=[
                NotificationChannel(c) for c in (notification_channels or [NotificationChannel.EMAIL])
            ],
            applies_to=EscalationScope(applies_to),
            priority=priority,
            min_priority=min_priority,
            required_tags=list(required_tags or []),
        )
        rule = await self._store.save_escalation_rule(rule)

        logger.info(
            "escalation_rule_created",
            tenant_id=tenant_id,
            rule_id=rule.rule_id,
            sla_threshold_minutes=rule.sla_threshold_minutes,
        )
        return rule

    async def get_rule(self, tenant_id: str, rule_id: str) -> EscalationRule:
        rule = await self._store.get_escalation_rule(tenant_id, rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Escalation rule {rule_id} not found")
        return rule

    async def list_rules(self, tenant_id: str, active_only: bool = False) -> List[EscalationRule]:
        rules = await self._store.list_escalation_rules(tenant_id)
        if active_only:
            rules = [r for r in rules if r.is_active]
        return sorted(rules, key=lambda r: (r.priority, r.rule_id))

    async def update_rule(self, tenant_id: str, rule_id: str, **updates: Any) -> EscalationRule:
        rule = await self.get_rule(tenant_id, rule_id)

        unknown = set(updates) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update escalation rule fields: {sorted(unknown)}")

        if "escalation_target" in updates:
            updates["escalation_target"] = EscalationTarget(updates["escalation_target"])
        if "applies_to" in updates:
            updates["applies_to"] = EscalationScope(updates["applies_to"])
        if "notification_channels" in updates:
            updates["notification_channels"] = [
                NotificationChannel(c) for c in updates["notification_channels"] or []
            ]
        if "required_tags" in updates:
            updates["required_tags"] = list(updates["required_tags"] or [])

        # replace() re-runs validation
        updated = replace(rule, updated_at=utcnow(), **updates)
        updated = await self._store.save_escalation_rule(updated)

        logger.info(
            "escalation_rule_updated",
            tenant_id=tenant_id,
            rule_id=rule_id,
            fields=sorted(updates),
        )
        return updated

    async def deactivate_rule(self, tenant_id: str, rule_id: str) -> EscalationRule:
        return await self.update_rule(tenant_id, rule_id, is_active=False)

    # -------------------------------------------------------------------------
    # Breach checks
    # -------------------------------------------------------------------------

    async def check_breaches(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> List[EscalationCandidate]:
        """
        Conversations whose elapsed time exceeds their rule's threshold.

        Strictly greater than: a conversation exactly at the threshold is not
        a breach. Conversations with no matching active rule are ignored.
        """
        now = now or utcnow()
        rules = await self.list_rules(tenant_id, active_only=True)
        if not rules:
            return []

        candidates: List[EscalationCandidate] = []

        for entry in await self._store.list_waiting_entries(tenant_id):
            candidate = self._evaluate(
                rules,
                tenant_id=tenant_id,
                conversation_id=entry.conversation_id,
                state=EscalationScope.QUEUED,
                priority=entry.priority,
                tags=entry.tags,
                started_at=entry.enqueued_at,
                now=now,
            )
            if candidate is not None:
                candidates.append(candidate)

        for assignment in await self._store.list_assignments(tenant_id):
            if not assignment.awaiting_reply:
                continue
            candidate = self._evaluate(
                rules,
                tenant_id=tenant_id,
                conversation_id=assignment.conversation_id,
                state=EscalationScope.ASSIGNED,
                priority=assignment.priority,
                tags=assignment.tags,
                started_at=assignment.last_customer_message_at,
                now=now,
                assigned_agent_id=assignment.agent_id,
            )
            if candidate is not None:
                candidates.append(candidate)

        if candidates:
            logger.info(
                "sla_breaches_detected",
                tenant_id=tenant_id,
                count=len(candidates),
            )
        return candidates

    @staticmethod
    def _evaluate(
        rules: List[EscalationRule],
        tenant_id: str,
        conversation_id: str,
        state: EscalationScope,
        priority: int,
        tags: Iterable[str],
        started_at: datetime,
        now: datetime,
        assigned_agent_id: Optional[str] = None,
    ) -> Optional[EscalationCandidate]:
        tags = list(tags)
        rule = next((r for r in rules if r.matches(state, priority, tags)), None)
        if rule is None:
            return None

        elapsed = (now - started_at).total_seconds() / 60
        if elapsed <= rule.sla_threshold_minutes:
            return None

        return EscalationCandidate(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            rule_id=rule.rule_id,
            state=state,
            elapsed_minutes=elapsed,
            threshold_minutes=rule.sla_threshold_minutes,
            escalation_target=rule.escalation_target,
            notification_channels=list(rule.notification_channels),
            priority=priority,
            custom_target_id=rule.custom_target_id,
            assigned_agent_id=assigned_agent_id,
        )


# =============================================================================
# Notification Delivery
# =============================================================================


class EscalationChannel(ABC):
    """Base class for escalation delivery channels."""

    @abstractmethod
    async def send(self, candidate: EscalationCandidate) -> bool:
        """Deliver an escalation; returns False on failure."""
        pass


class LoggingEscalationChannel(EscalationChannel):
    """Writes escalations to the structured log."""

    def __init__(self, channel: NotificationChannel):
        self.channel = channel

    async def send(self, candidate: EscalationCandidate) -> bool:
        logger.warning(
            "sla_escalation",
            channel=self.channel.value,
            **candidate.to_dict(),
        )
        return True


class EscalationNotifier:
    """
    Routes escalation candidates to delivery channels.

    The same conversation and rule is notified at most once per cooldown
    window, so a periodic sweep does not repeat itself every cycle.
    """

    def __init__(self, cooldown_minutes: int = 30):
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self._channels: Dict[NotificationChannel, EscalationChannel] = {}
        self._last_sent: Dict[Tuple[str, str, str], datetime] = {}

    def register_channel(self, channel: NotificationChannel, sender: EscalationChannel) -> None:
        self._channels[NotificationChannel(channel)] = sender

    @classmethod
    def with_logging_channels(cls, cooldown_minutes: int = 30) -> "EscalationNotifier":
        """A notifier that logs on every channel."""
        notifier = cls(cooldown_minutes=cooldown_minutes)
        for channel in NotificationChannel:
            notifier.register_channel(channel, LoggingEscalationChannel(channel))
        return notifier

    async def notify(
        self,
        candidates: Iterable[EscalationCandidate],
        now: Optional[datetime] = None,
    ) -> List[EscalationCandidate]:
        """Deliver candidates outside their cooldown; returns those delivered."""
        now = now or utcnow()
        delivered: List[EscalationCandidate] = []

        for candidate in candidates:
            key = (candidate.tenant_id, candidate.conversation_id, candidate.rule_id)
            last = self._last_sent.get(key)
            if last is not None and now - last < self.cooldown:
                continue

            sent_any = False
            for channel in candidate.notification_channels:
                sender = self._channels.get(channel)
                if sender is None:
                    logger.debug(
                        "escalation_channel_not_registered",
                        channel=channel.value,
                        rule_id=candidate.rule_id,
                    )
                    continue
                try:
                    sent = await sender.send(candidate)
                except Exception as e:
                    logger.error(
                        "escalation_delivery_failed",
                        channel=channel.value,
                        tenant_id=candidate.tenant_id,
                        conversation_id=candidate.conversation_id,
                        error=repr(e),
                    )
                    continue
                if sent:
                    sent_any = True
                else:
                    logger.warning(
                        "escalation_delivery_failed",
                        channel=channel.value,
                        tenant_id=candidate.tenant_id,
                        conversation_id=candidate.conversation_id,
                    )

            if sent_any:
                self._last_sent[key] = now
                delivered.append(candidate)

        return delivered

    def clear_cooldowns(self, before: Optional[datetime] = None) -> int:
        """Forget expired cooldown keys; returns how many were dropped."""
        cutoff = (before or utcnow()) - self.cooldown
        expired = [k for k, sent in self._last_sent.items() if sent < cutoff]
        for key in expired:
            del self._last_sent[key]
        return len(expired)


__all__ = [
    "EscalationEvaluator",
    "EscalationChannel",
    "LoggingEscalationChannel",
    "EscalationNotifier",
]
