"""Repository abstraction for automation state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..contracts import Enrollment, EnrollmentStatus, StepExecution, Workflow, WorkflowStatus
from ..scoring.models import ScoreHistory, ScoringRule


class AutomationRepository(Protocol):
    """Protocol for persistence backends.

    Implementations must hand out copies: mutating a returned model never
    changes stored state until it is written back.
    """

    # Workflows ---------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[Workflow]:
        """Return workflows, optionally filtered."""

    # Enrollments -------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        """Persist a new enrollment."""

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        """Retrieve an enrollment by id."""

    async def update_enrollment(
        self,
        enrollment: Enrollment,
        expected_status: Optional[EnrollmentStatus] = None,
    ) -> bool:
        """Write ``enrollment`` back.

        When ``expected_status`` is given the write only happens if the
        stored status still equals it. Returns whether the write happened.
        """

    async def claim_enrollment(
        self, enrollment_id: str, owner: str, now: datetime, until: datetime
    ) -> bool:
        """Take the tick lease on an enrollment until ``until``.

        Succeeds when nobody holds the lease, ``owner`` already holds it, or
        the current lease ran out at or before ``now``. Returns ``False``
        for unknown enrollments.
        """

    async def release_enrollment(self, enrollment_id: str, owner: str) -> None:
        """Drop the tick lease if ``owner`` holds it."""

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        statuses: Optional[Iterable[EnrollmentStatus]] = None,
    ) -> list[Enrollment]:
        """Return enrollments ordered by ``entered_at``."""

    async def list_due_enrollments(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[Enrollment]:
        """Active enrollments with no ``wake_at`` or one at or before ``now``."""

    # Execution log -----------------------------------------------------
    async def append_execution(self, execution: StepExecution) -> StepExecution:
        """Append a log entry and return it with its id assigned."""

    async def list_executions(self, enrollment_id: str) -> list[StepExecution]:
        """Entries for an enrollment, ordered by id."""

    async def count_visits(
        self, enrollment_id: str, step_id: str, since_id: int = 0
    ) -> int:
        """Count visiting entries for a step with an id greater than ``since_id``."""

    # Scoring -----------------------------------------------------------
    async def save_rule(self, rule: ScoringRule) -> None:
        """Insert or replace a scoring rule."""

    async def list_rules(
        self, event_type: Optional[str] = None, active_only: bool = True
    ) -> list[ScoringRule]:
        """Return scoring rules, optionally filtered by event type."""

    async def append_score(self, entry: ScoreHistory) -> ScoreHistory:
        """Append a point grant and return it with its id assigned."""

    async def list_scores(
        self, contact_id: str, rule_id: Optional[str] = None
    ) -> list[ScoreHistory]:
        """Point grants for a contact, ordered by id."""
