"""
SQL Routing Store

SQLAlchemy async backend. Each guarded mutation runs in one transaction and
uses conditional UPDATE statements (``WHERE count < max``,
``WHERE status = 'waiting'``, ``WHERE version = :expected``) so concurrent
writers across processes cannot break the capacity or single-assignee
invariants.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, List, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..base import (
    AgentCapacity,
    AgentNotFoundError,
    Assignment,
    CapacityRaceLost,
    EscalationRule,
    HistoryFilter,
    InvalidStateTransition,
    QueueEntry,
    QueueEntryNotFound,
    QueueEntryStatus,
    RotationPointer,
    RoutingError,
    RoutingHistoryEntry,
    RoutingRule,
    RoutingStrategy,
    StoreUnavailable,
    TenantRoutingSettings,
    utcnow,
)
from .base import RoutingStore
from .database import DatabaseManager
from .models import (
    AgentCapacityModel,
    AssignmentModel,
    EscalationRuleModel,
    QueueEntryModel,
    RotationPointerModel,
    RoutingHistoryModel,
    RoutingRuleModel,
    TenantRoutingSettingsModel,
)


logger = structlog.get_logger(__name__)

_OPEN_STATUSES = (QueueEntryStatus.WAITING.value, QueueEntryStatus.CLAIMED.value)

# Attempts for appends that race on a per-tenant sequence number
_SEQUENCE_ATTEMPTS = 3


class _SequenceTaken(RoutingError):
    """Another writer took the sequence number computed in this transaction."""
    pass


async def _flush_sequenced(session: AsyncSession) -> None:
    try:
        await session.flush()
    except IntegrityError as e:
        raise _SequenceTaken(str(e.orig)) from e


# =============================================================================
# Row Conversion
# =============================================================================


def _agent_from_row(row: AgentCapacityModel) -> AgentCapacity:
    return AgentCapacity.from_dict(row.to_dict())


def _rule_from_row(row: RoutingRuleModel) -> RoutingRule:
    return RoutingRule.from_dict(row.to_dict())


def _entry_from_row(row: QueueEntryModel) -> QueueEntry:
    return QueueEntry.from_dict(row.to_dict())


def _assignment_from_row(row: AssignmentModel) -> Assignment:
    return Assignment.from_dict(row.to_dict())


def _history_from_row(row: RoutingHistoryModel) -> RoutingHistoryEntry:
    data = row.to_dict()
    data["metadata"] = data.pop("details", None)
    return RoutingHistoryEntry.from_dict(data)


def _escalation_rule_from_row(row: EscalationRuleModel) -> EscalationRule:
    return EscalationRule.from_dict(row.to_dict())


# =============================================================================
# SQL Routing Store
# =============================================================================


class SqlRoutingStore(RoutingStore):
    """Routing state persisted through SQLAlchemy."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session whose driver failures surface as StoreUnavailable."""
        try:
            async with self._db.session() as session:
                yield session
        except RoutingError:
            raise
        except IntegrityError as e:
            raise InvalidStateTransition(f"Conflicting routing write: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.error("routing_store_error", error=str(e))
            raise StoreUnavailable(str(e)) from e

    async def close(self) -> None:
        await self._db.close()

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    async def _agent_row(
        self,
        session: AsyncSession,
        tenant_id: str,
        agent_id: str,
    ) -> Optional[AgentCapacityModel]:
        result = await session.execute(
            select(AgentCapacityModel)
            .where(
                AgentCapacityModel.tenant_id == tenant_id,
                AgentCapacityModel.agent_id == agent_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_agent(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        async with self._session() as session:
            row = await self._agent_row(session, tenant_id, agent_id)
            return _agent_from_row(row) if row else None

    async def list_agents(self, tenant_id: str) -> List[AgentCapacity]:
        async with self._session() as session:
            result = await session.execute(
                select(AgentCapacityModel)
                .where(AgentCapacityModel.tenant_id == tenant_id)
                .order_by(AgentCapacityModel.agent_id)
            )
            return [_agent_from_row(row) for row in result.scalars().all()]

    async def save_agent(self, agent: AgentCapacity) -> AgentCapacity:
        async with self._session() as session:
            row = await self._agent_row(session, agent.tenant_id, agent.agent_id)
            if row is None:
                row = AgentCapacityModel(
                    tenant_id=agent.tenant_id,
                    agent_id=agent.agent_id,
                    current_conversation_count=agent.current_conversation_count,
                    total_conversations_handled=agent.total_conversations_handled,
                    last_assigned_at=agent.last_assigned_at,
                    created_at=agent.created_at,
                )
                session.add(row)
            elif agent.max_concurrent_conversations < row.current_conversation_count:
                raise InvalidStateTransition(
                    f"Agent {agent.agent_id} holds {row.current_conversation_count} "
                    f"conversations; max cannot drop to {agent.max_concurrent_conversations}"
                )

            row.display_name = agent.display_name
            row.status = agent.status.value
            row.status_message = agent.status_message
            row.auto_assign_enabled = agent.auto_assign_enabled
            row.max_concurrent_conversations = agent.max_concurrent_conversations
            row.skills = sorted(agent.skills)
            row.languages = sorted(agent.languages)
            row.avg_response_time_seconds = agent.avg_response_time_seconds
            row.satisfaction_score = agent.satisfaction_score
            row.updated_at = utcnow()
            await session.flush()
            return _agent_from_row(row)

    async def _conditional_load_update(
        self,
        session: AsyncSession,
        tenant_id: str,
        agent_id: str,
        delta: int,
        record_assignment: bool = False,
    ) -> bool:
        model = AgentCapacityModel
        guard = (
            model.current_conversation_count < model.max_concurrent_conversations
            if delta > 0
            else model.current_conversation_count > 0
        )
        values = {
            "current_conversation_count": model.current_conversation_count + delta,
            "updated_at": utcnow(),
        }
        if record_assignment:
            values["total_conversations_handled"] = model.total_conversations_handled + 1
            values["last_assigned_at"] = utcnow()
        result = await session.execute(
            update(model)
            .where(model.tenant_id == tenant_id, model.agent_id == agent_id, guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def try_increment_load(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        async with self._session() as session:
            changed = await self._conditional_load_update(session, tenant_id, agent_id, 1)
            row = await self._agent_row(session, tenant_id, agent_id)
            if row is None:
                raise AgentNotFoundError(f"Agent not found: {agent_id}")
            return _agent_from_row(row) if changed else None

    async def try_decrement_load(self, tenant_id: str, agent_id: str) -> Optional[AgentCapacity]:
        async with self._session() as session:
            changed = await self._conditional_load_update(session, tenant_id, agent_id, -1)
            row = await self._agent_row(session, tenant_id, agent_id)
            if row is None:
                raise AgentNotFoundError(f"Agent not found: {agent_id}")
            return _agent_from_row(row) if changed else None

    # -------------------------------------------------------------------------
    # Rules, settings, rotation pointer
    # -------------------------------------------------------------------------

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[RoutingRule]:
        async with self._session() as session:
            result = await session.execute(
                select(RoutingRuleModel).where(
                    RoutingRuleModel.tenant_id == tenant_id,
                    RoutingRuleModel.rule_id == rule_id,
                )
            )
            row = result.scalar_one_or_none()
            return _rule_from_row(row) if row else None

    async def list_rules(self, tenant_id: str) -> List[RoutingRule]:
        async with self._session() as session:
            result = await session.execute(
                select(RoutingRuleModel)
                .where(RoutingRuleModel.tenant_id == tenant_id)
                .order_by(RoutingRuleModel.priority, RoutingRuleModel.rule_id)
            )
            return [_rule_from_row(row) for row in result.scalars().all()]

    async def save_rule(self, rule: RoutingRule) -> RoutingRule:
        data = rule.to_dict()
        async with self._session() as session:
            result = await session.execute(
                select(RoutingRuleModel).where(
                    RoutingRuleModel.tenant_id == rule.tenant_id,
                    RoutingRuleModel.rule_id == rule.rule_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = RoutingRuleModel(
                    rule_id=rule.rule_id,
                    tenant_id=rule.tenant_id,
                    created_at=rule.created_at,
                )
                session.add(row)

            row.name = rule.name
            row.description = rule.description
            row.strategy = data["strategy"]
            row.priority = rule.priority
            row.is_active = rule.is_active
            row.strategy_config = data["strategy_config"]
            row.conditions = data["conditions"]
            row.fallback_strategy = data["fallback_strategy"]
            row.updated_at = rule.updated_at
            await session.flush()
            return _rule_from_row(row)

    async def get_settings(self, tenant_id: str) -> Optional[TenantRoutingSettings]:
        async with self._session() as session:
            result = await session.execute(
                select(TenantRoutingSettingsModel).where(
                    TenantRoutingSettingsModel.tenant_id == tenant_id
                )
            )
            row = result.scalar_one_or_none()
            return TenantRoutingSettings.from_dict(row.to_dict()) if row else None

    async def save_settings(self, settings: TenantRoutingSettings) -> TenantRoutingSettings:
        async with self._session() as session:
            result = await session.execute(
                select(TenantRoutingSettingsModel).where(
                    TenantRoutingSettingsModel.tenant_id == settings.tenant_id
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = TenantRoutingSettingsModel(tenant_id=settings.tenant_id)
                session.add(row)
            row.default_strategy = settings.default_strategy.value
            row.default_max_concurrent_conversations = settings.default_max_concurrent_conversations
            row.updated_at = settings.updated_at
            await session.flush()
            return TenantRoutingSettings.from_dict(row.to_dict())

    async def get_rotation_pointer(self, tenant_id: str) -> RotationPointer:
        async with self._session() as session:
            result = await session.execute(
                select(RotationPointerModel).where(RotationPointerModel.tenant_id == tenant_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return RotationPointer(tenant_id=tenant_id)
            return RotationPointer(
                tenant_id=tenant_id,
                last_agent_id=row.last_agent_id,
                version=row.version,
            )

    async def compare_and_set_rotation_pointer(
        self,
        tenant_id: str,
        expected_version: int,
        last_agent_id: str,
    ) -> bool:
        try:
            async with self._session() as session:
                if expected_version == 0:
                    existing = await session.execute(
                        select(RotationPointerModel.id).where(
                            RotationPointerModel.tenant_id == tenant_id
                        )
                    )
                    if existing.scalar_one_or_none() is None:
                        session.add(RotationPointerModel(
                            tenant_id=tenant_id,
                            last_agent_id=last_agent_id,
                            version=1,
                        ))
                        await session.flush()
                        return True

                result = await session.execute(
                    update(RotationPointerModel)
                    .where(
                        RotationPointerModel.tenant_id == tenant_id,
                        RotationPointerModel.version == expected_version,
                    )
                    .values(last_agent_id=last_agent_id, version=expected_version + 1)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except InvalidStateTransition:
            # Another writer created the pointer first
            return False

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    async def _queue_row(
        self,
        session: AsyncSession,
        tenant_id: str,
        entry_id: str,
    ) -> Optional[QueueEntryModel]:
        result = await session.execute(
            select(QueueEntryModel)
            .where(QueueEntryModel.tenant_id == tenant_id, QueueEntryModel.entry_id == entry_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _open_queue_row(
        self,
        session: AsyncSession,
        tenant_id: str,
        conversation_id: str,
    ) -> Optional[QueueEntryModel]:
        result = await session.execute(
            select(QueueEntryModel).where(
                QueueEntryModel.tenant_id == tenant_id,
                QueueEntryModel.conversation_id == conversation_id,
                QueueEntryModel.status.in_(_OPEN_STATUSES),
            )
        )
        return result.scalars().first()

    async def _assignment_row(
        self,
        session: AsyncSession,
        tenant_id: str,
        conversation_id: str,
    ) -> Optional[AssignmentModel]:
        result = await session.execute(
            select(AssignmentModel).where(
                AssignmentModel.tenant_id == tenant_id,
                AssignmentModel.conversation_id == conversation_id,
            )
        )
        return result.scalar_one_or_none()

    async def add_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        for attempt in range(1, _SEQUENCE_ATTEMPTS + 1):
            try:
                return await self._insert_queue_entry(entry)
            except _SequenceTaken:
                if attempt == _SEQUENCE_ATTEMPTS:
                    raise InvalidStateTransition(
                        f"Could not enqueue {entry.conversation_id}: sequence contention"
                    )
        raise InvalidStateTransition(f"Could not enqueue {entry.conversation_id}")

    async def _insert_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        async with self._session() as session:
            if await self._assignment_row(session, entry.tenant_id, entry.conversation_id):
                raise InvalidStateTransition(
                    f"Conversation {entry.conversation_id} is already assigned"
                )
            if await self._open_queue_row(session, entry.tenant_id, entry.conversation_id):
                raise InvalidStateTransition(
                    f"Conversation {entry.conversation_id} is already queued"
                )

            result = await session.execute(
                select(func.coalesce(func.max(QueueEntryModel.sequence), 0)).where(
                    QueueEntryModel.tenant_id == entry.tenant_id
                )
            )
            row = QueueEntryModel(
                entry_id=entry.entry_id,
                tenant_id=entry.tenant_id,
                conversation_id=entry.conversation_id,
                priority=entry.priority,
                required_skills=list(entry.required_skills),
                required_language=entry.required_language,
                preferred_agent_id=entry.preferred_agent_id,
                tags=list(entry.tags),
                channel=entry.channel,
                contact_id=entry.contact_id,
                attributes=dict(entry.attributes),
                status=QueueEntryStatus.WAITING.value,
                sequence=result.scalar_one() + 1,
                enqueued_at=entry.enqueued_at,
                reason=entry.reason,
            )
            session.add(row)
            await _flush_sequenced(session)
            return _entry_from_row(row)

    async def get_queue_entry(self, tenant_id: str, entry_id: str) -> Optional[QueueEntry]:
        async with self._session() as session:
            row = await self._queue_row(session, tenant_id, entry_id)
            return _entry_from_row(row) if row else None

    async def get_open_queue_entry(
        self,
        tenant_id: str,
        conversation_id: str,
    ) -> Optional[QueueEntry]:
        async with self._session() as session:
            row = await self._open_queue_row(session, tenant_id, conversation_id)
            return _entry_from_row(row) if row else None

    async def list_waiting_entries(self, tenant_id: str) -> List[QueueEntry]:
        async with self._session() as session:
            result = await session.execute(
                select(QueueEntryModel)
                .where(
                    QueueEntryModel.tenant_id == tenant_id,
                    QueueEntryModel.status == QueueEntryStatus.WAITING.value,
                )
                .order_by(
                    QueueEntryModel.priority,
                    QueueEntryModel.enqueued_at,
                    QueueEntryModel.sequence,
                )
            )
            return [_entry_from_row(row) for row in result.scalars().all()]

    async def list_open_tenants(self) -> List[str]:
        async with self._session() as session:
            queued = await session.execute(
                select(QueueEntryModel.tenant_id)
                .where(QueueEntryModel.status.in_(_OPEN_STATUSES))
                .distinct()
            )
            assigned = await session.execute(select(AssignmentModel.tenant_id).distinct())
            tenants = set(queued.scalars().all()) | set(assigned.scalars().all())
            return sorted(tenants)

    async def _set_entry_status(
        self,
        tenant_id: str,
        entry_id: str,
        from_statuses: tuple,
        to_status: QueueEntryStatus,
    ) -> Optional[QueueEntry]:
        async with self._session() as session:
            result = await session.execute(
                update(QueueEntryModel)
                .where(
                    QueueEntryModel.tenant_id == tenant_id,
                    QueueEntryModel.entry_id == entry_id,
                    QueueEntryModel.status.in_(from_statuses),
                )
                .values(status=to_status.value)
                .execution_options(synchronize_session=False)
            )
            row = await self._queue_row(session, tenant_id, entry_id)
            if row is None:
                raise QueueEntryNotFound(f"Queue entry not found: {entry_id}")
            if result.rowcount != 1:
                return None
            return _entry_from_row(row)

    async def claim_queue_entry(self, tenant_id: str, entry_id: str) -> Optional[QueueEntry]:
        try:
            return await self._set_entry_status(
                tenant_id,
                entry_id,
                (QueueEntryStatus.WAITING.value,),
                QueueEntryStatus.CLAIMED,
            )
        except QueueEntryNotFound:
            return None

    async def release_queue_claim(self, tenant_id: str, entry_id: str) -> QueueEntry:
        entry = await self._set_entry_status(
            tenant_id,
            entry_id,
            (QueueEntryStatus.CLAIMED.value,),
            QueueEntryStatus.WAITING,
        )
        if entry is None:
            raise InvalidStateTransition(f"Queue entry {entry_id} is not claimed")
        return entry

    async def abandon_queue_entry(self, tenant_id: str, entry_id: str) -> QueueEntry:
        entry = await self._set_entry_status(
            tenant_id,
            entry_id,
            _OPEN_STATUSES,
            QueueEntryStatus.ABANDONED,
        )
        if entry is None:
            raise InvalidStateTransition(f"Queue entry {entry_id} is no longer open")
        return entry

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    async def get_assignment(self, tenant_id: str, conversation_id: str) -> Optional[Assignment]:
        async with self._session() as session:
            row = await self._assignment_row(session, tenant_id, conversation_id)
            return _assignment_from_row(row) if row else None

    async def list_assignments(
        self,
        tenant_id: str,
        agent_id: Optional[str] = None,
    ) -> List[Assignment]:
        async with self._session() as session:
            query = select(AssignmentModel).where(AssignmentModel.tenant_id == tenant_id)
            if agent_id is not None:
                query = query.where(AssignmentModel.agent_id == agent_id)
            result = await session.execute(
                query.order_by(AssignmentModel.assigned_at, AssignmentModel.conversation_id)
            )
            return [_assignment_from_row(row) for row in result.scalars().all()]

    async def commit_assignment(
        self,
        assignment: Assignment,
        queue_entry_id: Optional[str] = None,
    ) -> AgentCapacity:
        tenant_id = assignment.tenant_id
        async with self._session() as session:
            if await self._assignment_row(session, tenant_id, assignment.conversation_id):
                raise InvalidStateTransition(
                    f"Conversation {assignment.conversation_id} is already assigned"
                )

            if queue_entry_id:
                result = await session.execute(
                    update(QueueEntryModel)
                    .where(
                        QueueEntryModel.tenant_id == tenant_id,
                        QueueEntryModel.entry_id == queue_entry_id,
                        QueueEntryModel.status.in_(_OPEN_STATUSES),
                    )
                    .values(
                        status=QueueEntryStatus.ASSIGNED.value,
                        assigned_agent_id=assignment.agent_id,
                        assigned_at=assignment.assigned_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    if await self._queue_row(session, tenant_id, queue_entry_id) is None:
                        raise QueueEntryNotFound(f"Queue entry not found: {queue_entry_id}")
                    raise InvalidStateTransition(f"Queue entry {queue_entry_id} is not open")

            if not await self._conditional_load_update(
                session, tenant_id, assignment.agent_id, 1, record_assignment=True
            ):
                # Raising rolls back the queue update above
                if await self._agent_row(session, tenant_id, assignment.agent_id) is None:
                    raise AgentNotFoundError(f"Agent not found: {assignment.agent_id}")
                raise CapacityRaceLost(assignment.agent_id)

            session.add(AssignmentModel(
                tenant_id=tenant_id,
                conversation_id=assignment.conversation_id,
                agent_id=assignment.agent_id,
                strategy=assignment.strategy.value if assignment.strategy else None,
                priority=assignment.priority,
                required_skills=list(assignment.required_skills),
                required_language=assignment.required_language,
                preferred_agent_id=assignment.preferred_agent_id,
                tags=list(assignment.tags),
                channel=assignment.channel,
                contact_id=assignment.contact_id,
                attributes=dict(assignment.attributes),
                assigned_at=assignment.assigned_at,
                last_customer_message_at=assignment.last_customer_message_at,
                last_agent_reply_at=assignment.last_agent_reply_at,
            ))
            await session.flush()

            row = await self._agent_row(session, tenant_id, assignment.agent_id)
            return _agent_from_row(row)

    async def release_assignment(
        self,
        tenant_id: str,
        conversation_id: str,
        agent_id: str,
    ) -> Assignment:
        async with self._session() as session:
            row = await self._assignment_row(session, tenant_id, conversation_id)
            if row is None or row.agent_id != agent_id:
                raise InvalidStateTransition(
                    f"Conversation {conversation_id} is not assigned to {agent_id}"
                )
            released = _assignment_from_row(row)

            if not await self._conditional_load_update(session, tenant_id, agent_id, -1):
                raise InvalidStateTransition(f"Agent {agent_id} has no conversations to release")

            await session.execute(
                delete(AssignmentModel).where(
                    AssignmentModel.tenant_id == tenant_id,
                    AssignmentModel.conversation_id == conversation_id,
                    AssignmentModel.agent_id == agent_id,
                )
            )
            return released

    async def transfer_assignment(
        self,
        tenant_id: str,
        conversation_id: str,
        from_agent_id: str,
        to_agent_id: str,
        strategy: Optional[RoutingStrategy] = None,
    ) -> Assignment:
        async with self._session() as session:
            row = await self._assignment_row(session, tenant_id, conversation_id)
            if row is None or row.agent_id != from_agent_id:
                raise InvalidStateTransition(
                    f"Conversation {conversation_id} is not assigned to {from_agent_id}"
                )
            if from_agent_id == to_agent_id:
                raise InvalidStateTransition(
                    f"Conversation {conversation_id} is already with {to_agent_id}"
                )

            if not await self._conditional_load_update(
                session, tenant_id, to_agent_id, 1, record_assignment=True
            ):
                if await self._agent_row(session, tenant_id, to_agent_id) is None:
                    raise AgentNotFoundError(f"Agent not found: {to_agent_id}")
                raise CapacityRaceLost(to_agent_id)
            if not await self._conditional_load_update(session, tenant_id, from_agent_id, -1):
                raise InvalidStateTransition(
                    f"Agent {from_agent_id} has no conversations to release"
                )

            row.agent_id = to_agent_id
            row.assigned_at = utcnow()
            row.strategy = strategy.value if strategy else None
            await session.flush()
            return _assignment_from_row(row)

    async def update_assignment_activity(
        self,
        tenant_id: str,
        conversation_id: str,
        customer_message_at: Optional[datetime] = None,
        agent_reply_at: Optional[datetime] = None,
    ) -> Assignment:
        async with self._session() as session:
            row = await self._assignment_row(session, tenant_id, conversation_id)
            if row is None:
                raise InvalidStateTransition(f"Conversation {conversation_id} is not assigned")
            if customer_message_at:
                row.last_customer_message_at = customer_message_at
            if agent_reply_at:
                row.last_agent_reply_at = agent_reply_at
            await session.flush()
            return _assignment_from_row(row)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    async def append_history(self, entry: RoutingHistoryEntry) -> RoutingHistoryEntry:
        for attempt in range(1, _SEQUENCE_ATTEMPTS + 1):
            try:
                return await self._insert_history(entry)
            except _SequenceTaken:
                if attempt == _SEQUENCE_ATTEMPTS:
                    raise InvalidStateTransition(
                        f"Could not append history entry {entry.entry_id}: sequence contention"
                    )
                logger.debug(
                    "history_sequence_conflict",
                    tenant_id=entry.tenant_id,
                    attempt=attempt,
                )
        raise InvalidStateTransition(f"Could not append history entry {entry.entry_id}")

    async def _insert_history(self, entry: RoutingHistoryEntry) -> RoutingHistoryEntry:
        async with self._session() as session:
            result = await session.execute(
                select(func.coalesce(func.max(RoutingHistoryModel.sequence), 0)).where(
                    RoutingHistoryModel.tenant_id == entry.tenant_id
                )
            )
            row = RoutingHistoryModel(
                entry_id=entry.entry_id,
                tenant_id=entry.tenant_id,
                sequence=result.scalar_one() + 1,
                conversation_id=entry.conversation_id,
                timestamp=entry.timestamp,
                outcome=entry.outcome.value,
                strategy_used=entry.strategy_used.value if entry.strategy_used else None,
                rule_id=entry.rule_id,
                candidate_agent_ids=list(entry.candidate_agent_ids),
                workload_scores=dict(entry.workload_scores),
                selected_agent_id=entry.selected_agent_id,
                reason=entry.reason,
                queue_position=entry.queue_position,
                references_entry_id=entry.references_entry_id,
                details=dict(entry.metadata),
            )
            session.add(row)
            await _flush_sequenced(session)
            return _history_from_row(row)

    async def query_history(
        self,
        tenant_id: str,
        history_filter: HistoryFilter,
    ) -> List[RoutingHistoryEntry]:
        model = RoutingHistoryModel
        query = select(model).where(model.tenant_id == tenant_id)
        if history_filter.conversation_id:
            query = query.where(model.conversation_id == history_filter.conversation_id)
        if history_filter.agent_id:
            query = query.where(model.selected_agent_id == history_filter.agent_id)
        if history_filter.outcome:
            query = query.where(model.outcome == history_filter.outcome.value)
        if history_filter.strategy:
            query = query.where(model.strategy_used == history_filter.strategy.value)
        if history_filter.since:
            query = query.where(model.timestamp >= history_filter.since)
        if history_filter.until:
            query = query.where(model.timestamp <= history_filter.until)

        query = (
            query.order_by(
                model.sequence.desc() if history_filter.newest_first else model.sequence
            )
            .offset(history_filter.offset)
            .limit(history_filter.limit)
        )
        async with self._session() as session:
            result = await session.execute(query)
            return [_history_from_row(row) for row in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Escalation rules
    # -------------------------------------------------------------------------

    async def get_escalation_rule(self, tenant_id: str, rule_id: str) -> Optional[EscalationRule]:
        async with self._session() as session:
            result = await session.execute(
                select(EscalationRuleModel).where(
                    EscalationRuleModel.tenant_id == tenant_id,
                    EscalationRuleModel.rule_id == rule_id,
                )
            )
            row = result.scalar_one_or_none()
            return _escalation_rule_from_row(row) if row else None

    async def list_escalation_rules(self, tenant_id: str) -> List[EscalationRule]:
        async with self._session() as session:
            result = await session.execute(
                select(EscalationRuleModel)
                .where(EscalationRuleModel.tenant_id == tenant_id)
                .order_by(EscalationRuleModel.priority, EscalationRuleModel.rule_id)
            )
            return [_escalation_rule_from_row(row) for row in result.scalars().all()]

    async def save_escalation_rule(self, rule: EscalationRule) -> EscalationRule:
        data = rule.to_dict()
        async with self._session() as session:
            result = await session.execute(
                select(EscalationRuleModel).where(
                    EscalationRuleModel.tenant_id == rule.tenant_id,
                    EscalationRuleModel.rule_id == rule.rule_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = EscalationRuleModel(
                    rule_id=rule.rule_id,
                    tenant_id=rule.tenant_id,
                    created_at=rule.created_at,
                )
                session.add(row)

            row.name = rule.name
            row.is_active = rule.is_active
            row.priority = rule.priority
            row.sla_threshold_minutes = rule.sla_threshold_minutes
            row.escalation_target = data["escalation_target"]
            row.custom_target_id = rule.custom_target_id
            row.notification_channels = data["notification_channels"]
            row.applies_to = data["applies_to"]
            row.min_priority = rule.min_priority
            row.required_tags = list(rule.required_tags)
            row.updated_at = rule.updated_at
            await session.flush()
            return _escalation_rule_from_row(row)


__all__ = ["SqlRoutingStore"]
