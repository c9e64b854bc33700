"""Append-only record of step transitions."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .clock import Clock, SystemClock
from .contracts import Enrollment, Step, StepExecution, StepOutcome
from .persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)


class ExecutionLog:
    """Write-once audit trail of step attempts.

    Appending is the only mutation; entries are never updated or deleted
    here. The loop guard reads it through ``count_visits``.
    """

    def __init__(
        self, repository: AutomationRepository, clock: Optional[Clock] = None
    ) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()

    async def record(
        self,
        enrollment: Enrollment,
        step: Step,
        outcome: StepOutcome,
        *,
        cascade_id: Optional[str] = None,
        branch: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        attempt: int = 1,
    ) -> StepExecution:
        entry = await self._repository.append_execution(
            StepExecution(
                enrollment_id=enrollment.id,
                workflow_id=enrollment.workflow_id,
                step_id=step.id,
                step_type=step.type,
                cascade_id=cascade_id,
                outcome=outcome,
                branch=branch,
                output=output or {},
                error=error,
                attempt=attempt,
                created_at=self._clock.now(),
            )
        )
        logger.debug(
            f"Enrollment {enrollment.id}: step {step.id} ({step.type.value}) -> {outcome.value}"
        )
        return entry

    async def count_visits(
        self, enrollment_id: str, step_id: str, since_id: int = 0
    ) -> int:
        """Visits of ``step_id`` logged after entry ``since_id``.

        Failed attempts, scheduled delays and skips are not visits.
        """
        return await self._repository.count_visits(enrollment_id, step_id, since_id)

    async def history(self, enrollment_id: str) -> list[StepExecution]:
        return await self._repository.list_executions(enrollment_id)
