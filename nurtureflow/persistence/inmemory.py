"""In-memory implementation of the automation repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ..contracts import (
    Enrollment,
    EnrollmentStatus,
    StepExecution,
    Workflow,
    WorkflowStatus,
)
from ..scoring.models import ScoreHistory, ScoringRule
from .repository import AutomationRepository


class InMemoryRepository(AutomationRepository):
    """Store automation state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._leases: Dict[str, Tuple[str, datetime]] = {}
        self._executions: List[StepExecution] = []
        self._rules: Dict[str, ScoringRule] = {}
        self._scores: List[ScoreHistory] = []
        self._execution_id = 0
        self._score_id = 0

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (status is None or wf.status == status)
            and (trigger_type is None or wf.trigger_type == trigger_type)
        ]

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        if enrollment.id in self._enrollments:
            raise ValueError(f"Enrollment {enrollment.id} already exists")
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def update_enrollment(
        self,
        enrollment: Enrollment,
        expected_status: Optional[EnrollmentStatus] = None,
    ) -> bool:
        stored = self._enrollments.get(enrollment.id)
        if stored is None:
            return False
        if expected_status is not None and stored.status != expected_status:
            return False
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return True

    async def claim_enrollment(
        self, enrollment_id: str, owner: str, now: datetime, until: datetime
    ) -> bool:
        if enrollment_id not in self._enrollments:
            return False
        held = self._leases.get(enrollment_id)
        if held is not None and held[0] != owner and held[1] > now:
            return False
        self._leases[enrollment_id] = (owner, until)
        return True

    async def release_enrollment(self, enrollment_id: str, owner: str) -> None:
        held = self._leases.get(enrollment_id)
        if held is not None and held[0] == owner:
            del self._leases[enrollment_id]

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        statuses: Optional[Iterable[EnrollmentStatus]] = None,
    ) -> list[Enrollment]:
        wanted = set(statuses) if statuses is not None else None
        matches = [
            e
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (contact_id is None or e.contact_id == contact_id)
            and (wanted is None or e.status in wanted)
        ]
        matches.sort(key=lambda e: e.entered_at)
        return [e.model_copy(deep=True) for e in matches]

    async def list_due_enrollments(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[Enrollment]:
        due = [
            e
            for e in self._enrollments.values()
            if e.status == EnrollmentStatus.ACTIVE
            and (e.wake_at is None or e.wake_at <= now)
        ]
        due.sort(key=lambda e: e.wake_at or e.entered_at)
        if limit is not None:
            due = due[:limit]
        return [e.model_copy(deep=True) for e in due]

    # ------------------------------------------------------------------
    async def append_execution(self, execution: StepExecution) -> StepExecution:
        self._execution_id += 1
        stored = execution.model_copy(deep=True, update={"id": self._execution_id})
        self._executions.append(stored)
        return stored.model_copy(deep=True)

    async def list_executions(self, enrollment_id: str) -> list[StepExecution]:
        return [
            x.model_copy(deep=True)
            for x in self._executions
            if x.enrollment_id == enrollment_id
        ]

    async def count_visits(
        self, enrollment_id: str, step_id: str, since_id: int = 0
    ) -> int:
        return sum(
            1
            for x in self._executions
            if x.enrollment_id == enrollment_id
            and x.step_id == step_id
            and x.id > since_id
            and x.counts_as_visit
        )

    # ------------------------------------------------------------------
    async def save_rule(self, rule: ScoringRule) -> None:
        self._rules[rule.id] = rule.model_copy(deep=True)

    async def list_rules(
        self, event_type: Optional[str] = None, active_only: bool = True
    ) -> list[ScoringRule]:
        return [
            r.model_copy(deep=True)
            for r in self._rules.values()
            if (event_type is None or r.event_type == event_type)
            and (not active_only or r.is_active)
        ]

    async def append_score(self, entry: ScoreHistory) -> ScoreHistory:
        self._score_id += 1
        stored = entry.model_copy(deep=True, update={"id": self._score_id})
        self._scores.append(stored)
        return stored.model_copy(deep=True)

    async def list_scores(
        self, contact_id: str, rule_id: Optional[str] = None
    ) -> list[ScoreHistory]:
        return [
            s.model_copy(deep=True)
            for s in self._scores
            if s.contact_id == contact_id and (rule_id is None or s.rule_id == rule_id)
        ]
