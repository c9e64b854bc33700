"""SQL implementation of the automation repository (SQLite or PostgreSQL)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import func, or_, update
from sqlmodel import select

from ..clock import ensure_utc
from ..contracts import (
    NON_VISIT_OUTCOMES,
    Enrollment,
    EnrollmentStatus,
    StepExecution,
    Workflow,
    WorkflowStatus,
)
from ..db import (
    Database,
    EnrollmentRecord,
    ScoreHistoryRecord,
    ScoringRuleRecord,
    StepExecutionRecord,
    WorkflowRecord,
)
from ..scoring.models import ScoreHistory, ScoringRule
from .repository import AutomationRepository


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    # Columns are timezone aware; values are always written in UTC.
    if value is None:
        return None
    return ensure_utc(value)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without an offset.
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else ensure_utc(value)


class SQLRepository(AutomationRepository):
    """Persist automation state through SQLModel/SQLAlchemy async engines."""

    def __init__(self, database_url: str) -> None:
        self._db = Database(database_url)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def database(self) -> Database:
        return self._db

    async def _ready(self) -> Database:
        if not self._initialized:
            async with self._init_lock:
                if not self._initialized:
                    await self._db.init_db()
                    self._initialized = True
        return self._db

    # ------------------------------------------------------------------
    # Conversion helpers
    @staticmethod
    def _enrollment_values(enrollment: Enrollment) -> dict:
        return {
            "workflow_id": enrollment.workflow_id,
            "contact_id": enrollment.contact_id,
            "current_step_id": enrollment.current_step_id,
            "status": enrollment.status.value,
            "entered_at": _to_db(enrollment.entered_at),
            "completed_at": _to_db(enrollment.completed_at),
            "exited_at": _to_db(enrollment.exited_at),
            "paused_at": _to_db(enrollment.paused_at),
            "exit_reason": enrollment.exit_reason,
            "data": enrollment.metadata,
            "wake_at": _to_db(enrollment.wake_at),
            "retry_count": enrollment.retry_count,
            "guard_since": enrollment.guard_since,
            "updated_at": _to_db(enrollment.updated_at),
        }

    @staticmethod
    def _enrollment_from_row(row: EnrollmentRecord) -> Enrollment:
        return Enrollment(
            id=row.id,
            workflow_id=row.workflow_id,
            contact_id=row.contact_id,
            current_step_id=row.current_step_id,
            status=EnrollmentStatus(row.status),
            entered_at=_from_db(row.entered_at),
            completed_at=_from_db(row.completed_at),
            exited_at=_from_db(row.exited_at),
            paused_at=_from_db(row.paused_at),
            exit_reason=row.exit_reason,
            metadata=dict(row.data or {}),
            wake_at=_from_db(row.wake_at),
            retry_count=row.retry_count,
            guard_since=row.guard_since,
            updated_at=_from_db(row.updated_at),
        )

    @staticmethod
    def _execution_from_row(row: StepExecutionRecord) -> StepExecution:
        return StepExecution(
            id=row.id,
            enrollment_id=row.enrollment_id,
            workflow_id=row.workflow_id,
            step_id=row.step_id,
            step_type=row.step_type,
            cascade_id=row.cascade_id,
            outcome=row.outcome,
            branch=row.branch,
            output=dict(row.output or {}),
            error=row.error,
            attempt=row.attempt,
            created_at=_from_db(row.created_at),
        )

    @staticmethod
    def _score_from_row(row: ScoreHistoryRecord) -> ScoreHistory:
        return ScoreHistory(
            id=row.id,
            contact_id=row.contact_id,
            rule_id=row.rule_id,
            event_type=row.event_type,
            points=row.points,
            reason=row.reason,
            created_at=_from_db(row.created_at),
            expires_at=_from_db(row.expires_at),
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        db = await self._ready()
        record = WorkflowRecord(
            id=workflow.id,
            name=workflow.name,
            status=workflow.status.value,
            trigger_type=workflow.trigger_type,
            version=workflow.version,
            definition=workflow.model_dump(mode="json"),
            updated_at=_to_db(workflow.updated_at),
        )
        async with db.session() as session:
            await session.merge(record)
            await session.commit()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        db = await self._ready()
        async with db.session() as session:
            row = await session.get(WorkflowRecord, workflow_id)
            if row is None:
                return None
            return Workflow.model_validate(row.definition)

    async def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[Workflow]:
        db = await self._ready()
        stmt = select(WorkflowRecord)
        if status is not None:
            stmt = stmt.where(WorkflowRecord.status == status.value)
        if trigger_type is not None:
            stmt = stmt.where(WorkflowRecord.trigger_type == trigger_type)
        async with db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [Workflow.model_validate(r.definition) for r in rows]

    # ------------------------------------------------------------------
    # Enrollments
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        db = await self._ready()
        record = EnrollmentRecord(id=enrollment.id, **self._enrollment_values(enrollment))
        async with db.session() as session:
            session.add(record)
            await session.commit()

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        db = await self._ready()
        async with db.session() as session:
            row = await session.get(EnrollmentRecord, enrollment_id)
            return self._enrollment_from_row(row) if row else None

    async def update_enrollment(
        self,
        enrollment: Enrollment,
        expected_status: Optional[EnrollmentStatus] = None,
    ) -> bool:
        db = await self._ready()
        stmt = update(EnrollmentRecord).where(EnrollmentRecord.id == enrollment.id)
        if expected_status is not None:
            stmt = stmt.where(EnrollmentRecord.status == expected_status.value)
        stmt = stmt.values(**self._enrollment_values(enrollment))
        async with db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def claim_enrollment(
        self, enrollment_id: str, owner: str, now: datetime, until: datetime
    ) -> bool:
        db = await self._ready()
        stmt = (
            update(EnrollmentRecord)
            .where(EnrollmentRecord.id == enrollment_id)
            .where(
                or_(
                    EnrollmentRecord.lease_owner == None,  # noqa: E711
                    EnrollmentRecord.lease_owner == owner,
                    EnrollmentRecord.lease_until <= _to_db(now),
                )
            )
            .values(lease_owner=owner, lease_until=_to_db(until))
        )
        async with db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def release_enrollment(self, enrollment_id: str, owner: str) -> None:
        db = await self._ready()
        stmt = (
            update(EnrollmentRecord)
            .where(EnrollmentRecord.id == enrollment_id)
            .where(EnrollmentRecord.lease_owner == owner)
            .values(lease_owner=None, lease_until=None)
        )
        async with db.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        statuses: Optional[Iterable[EnrollmentStatus]] = None,
    ) -> list[Enrollment]:
        db = await self._ready()
        stmt = select(EnrollmentRecord)
        if workflow_id is not None:
            stmt = stmt.where(EnrollmentRecord.workflow_id == workflow_id)
        if contact_id is not None:
            stmt = stmt.where(EnrollmentRecord.contact_id == contact_id)
        if statuses is not None:
            stmt = stmt.where(EnrollmentRecord.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(EnrollmentRecord.entered_at)
        async with db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._enrollment_from_row(r) for r in rows]

    async def list_due_enrollments(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[Enrollment]:
        db = await self._ready()
        stmt = (
            select(EnrollmentRecord)
            .where(EnrollmentRecord.status == EnrollmentStatus.ACTIVE.value)
            .where(
                (EnrollmentRecord.wake_at == None)  # noqa: E711
                | (EnrollmentRecord.wake_at <= _to_db(now))
            )
            .order_by(EnrollmentRecord.entered_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._enrollment_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Execution log
    async def append_execution(self, execution: StepExecution) -> StepExecution:
        db = await self._ready()
        record = StepExecutionRecord(
            enrollment_id=execution.enrollment_id,
            workflow_id=execution.workflow_id,
            step_id=execution.step_id,
            step_type=execution.step_type.value,
            cascade_id=execution.cascade_id,
            outcome=execution.outcome.value,
            branch=execution.branch,
            output=execution.output,
            error=execution.error,
            attempt=execution.attempt,
            created_at=_to_db(execution.created_at),
        )
        async with db.session() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return self._execution_from_row(record)

    async def list_executions(self, enrollment_id: str) -> list[StepExecution]:
        db = await self._ready()
        stmt = (
            select(StepExecutionRecord)
            .where(StepExecutionRecord.enrollment_id == enrollment_id)
            .order_by(StepExecutionRecord.id)
        )
        async with db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._execution_from_row(r) for r in rows]

    async def count_visits(
        self, enrollment_id: str, step_id: str, since_id: int = 0
    ) -> int:
        db = await self._ready()
        stmt = (
            select(func.count())
            .select_from(StepExecutionRecord)
            .where(StepExecutionRecord.enrollment_id == enrollment_id)
            .where(StepExecutionRecord.step_id == step_id)
            .where(StepExecutionRecord.id > since_id)
            .where(StepExecutionRecord.outcome.notin_([o.value for o in NON_VISIT_OUTCOMES]))
        )
        async with db.session() as session:
            return (await session.execute(stmt)).scalar_one()

    # ------------------------------------------------------------------
    # Scoring
    async def save_rule(self, rule: ScoringRule) -> None:
        db = await self._ready()
        record = ScoringRuleRecord(**rule.model_dump())
        async with db.session() as session:
            await session.merge(record)
            await session.commit()

    async def list_rules(
        self, event_type: Optional[str] = None, active_only: bool = True
    ) -> list[ScoringRule]:
        db = await self._ready()
        stmt = select(ScoringRuleRecord)
        if event_type is not None:
            stmt = stmt.where(ScoringRuleRecord.event_type == event_type)
        if active_only:
            stmt = stmt.where(ScoringRuleRecord.is_active == True)  # noqa: E712
        async with db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [ScoringRule.model_validate(r.model_dump()) for r in rows]

    async def append_score(self, entry: ScoreHistory) -> ScoreHistory:
        db = await self._ready()
        record = ScoreHistoryRecord(
            contact_id=entry.contact_id,
            rule_id=entry.rule_id,
            event_type=entry.event_type,
            points=entry.points,
            reason=entry.reason,
            created_at=_to_db(entry.created_at),
            expires_at=_to_db(entry.expires_at),
        )
        async with db.session() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return self._score_from_row(record)

    async def list_scores(
        self, contact_id: str, rule_id: Optional[str] = None
    ) -> list[ScoreHistory]:
        db = await self._ready()
        stmt = select(ScoreHistoryRecord).where(ScoreHistoryRecord.contact_id == contact_id)
        if rule_id is not None:
            stmt = stmt.where(ScoreHistoryRecord.rule_id == rule_id)
        stmt = stmt.order_by(ScoreHistoryRecord.id)
        async with db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._score_from_row(r) for r in rows]

    async def close(self) -> None:
        await self._db.dispose()
