"""Enrollment lifecycle: one contact's participation in one workflow."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from .clock import Clock, SystemClock
from .contracts import (
    OPEN_STATUSES,
    Enrollment,
    EnrollmentStatus,
    ExitReason,
    ReentryPolicy,
    Workflow,
)
from .errors import (
    AlreadyEnrolled,
    EnrollmentNotFound,
    GraphIntegrityError,
    InvalidTransition,
    WorkflowInactive,
)
from .persistence.repository import AutomationRepository
from .utils.locks import KeyedLock

logger = logging.getLogger(__name__)


class EnrollmentTracker:
    """Owns enrollment creation and status transitions.

    State machine::

        active <-> paused
        active  -> completed
        active  -> exited
        paused  -> exited

    Every status write is a compare-and-set on the previous status, so a
    concurrent exit can never be overwritten by an in-flight tick.
    """

    def __init__(
        self, repository: AutomationRepository, clock: Optional[Clock] = None
    ) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()
        self._pair_locks = KeyedLock()

    async def enroll(
        self,
        workflow: Workflow,
        contact_id: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Enrollment:
        """Start ``contact_id`` at the workflow's entry step."""
        if not workflow.is_active:
            raise WorkflowInactive(workflow.id, workflow.status.value)
        entry = workflow.entry_step()
        if entry is None:
            raise GraphIntegrityError(workflow.id, "no entry step")

        async with self._pair_locks.hold((workflow.id, contact_id)):
            previous = await self._repository.list_enrollments(
                workflow_id=workflow.id, contact_id=contact_id
            )
            open_ = [e for e in previous if e.status in OPEN_STATUSES]
            if workflow.reentry == ReentryPolicy.REJECT and previous:
                raise AlreadyEnrolled(workflow.id, contact_id, previous[-1].id)
            if open_:
                if workflow.reentry != ReentryPolicy.RESTART:
                    raise AlreadyEnrolled(workflow.id, contact_id, open_[-1].id)
                for stale in open_:
                    await self.exit(stale.id, ExitReason.RESTARTED)

            now = self._clock.now()
            enrollment = Enrollment(
                workflow_id=workflow.id,
                contact_id=contact_id,
                current_step_id=entry.id,
                status=EnrollmentStatus.ACTIVE,
                entered_at=now,
                updated_at=now,
                metadata=dict(context or {}),
            )
            await self._repository.create_enrollment(enrollment)

        logger.info(
            f"Enrolled contact {contact_id} in workflow {workflow.id} "
            f"(enrollment {enrollment.id})"
        )
        return enrollment

    async def get(self, enrollment_id: str) -> Enrollment:
        enrollment = await self._repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(enrollment_id)
        return enrollment

    async def list(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        statuses: Optional[Iterable[EnrollmentStatus]] = None,
    ) -> list[Enrollment]:
        return await self._repository.list_enrollments(
            workflow_id=workflow_id, contact_id=contact_id, statuses=statuses
        )

    async def due(self, limit: Optional[int] = None) -> list[Enrollment]:
        """Active enrollments whose ``wake_at`` is unset or has passed."""
        return await self._repository.list_due_enrollments(self._clock.now(), limit=limit)

    async def pause(self, enrollment_id: str) -> Enrollment:
        enrollment = await self.get(enrollment_id)
        if enrollment.status != EnrollmentStatus.ACTIVE:
            raise InvalidTransition(enrollment_id, enrollment.status.value, "paused")
        now = self._clock.now()
        updated = enrollment.model_copy(
            update={"status": EnrollmentStatus.PAUSED, "paused_at": now, "updated_at": now}
        )
        await self._write(updated, EnrollmentStatus.ACTIVE, "paused")
        logger.info(f"Paused enrollment {enrollment_id} at step {enrollment.current_step_id}")
        return updated

    async def resume(self, enrollment_id: str) -> Enrollment:
        enrollment = await self.get(enrollment_id)
        if enrollment.status != EnrollmentStatus.PAUSED:
            raise InvalidTransition(enrollment_id, enrollment.status.value, "active")
        updated = enrollment.model_copy(
            update={
                "status": EnrollmentStatus.ACTIVE,
                "paused_at": None,
                "updated_at": self._clock.now(),
            }
        )
        await self._write(updated, EnrollmentStatus.PAUSED, "active")
        logger.info(f"Resumed enrollment {enrollment_id} at step {enrollment.current_step_id}")
        return updated

    async def complete(self, enrollment_id: str) -> Enrollment:
        """Mark an active enrollment completed; no-op when already terminal."""
        enrollment = await self.get(enrollment_id)
        if enrollment.is_terminal:
            return enrollment
        if enrollment.status != EnrollmentStatus.ACTIVE:
            raise InvalidTransition(enrollment_id, enrollment.status.value, "completed")
        now = self._clock.now()
        updated = enrollment.model_copy(
            update={
                "status": EnrollmentStatus.COMPLETED,
                "completed_at": now,
                "wake_at": None,
                "updated_at": now,
            }
        )
        if not await self._repository.update_enrollment(updated, EnrollmentStatus.ACTIVE):
            return await self.get(enrollment_id)
        logger.info(f"Workflow enrollment {enrollment_id} completed")
        return updated

    async def exit(
        self, enrollment_id: str, reason: Union[ExitReason, str] = ExitReason.MANUAL
    ) -> Enrollment:
        """Remove the contact from the workflow; no-op when already terminal."""
        code = reason.value if isinstance(reason, ExitReason) else str(reason)
        enrollment = await self.get(enrollment_id)
        while not enrollment.is_terminal:
            now = self._clock.now()
            updated = enrollment.model_copy(
                update={
                    "status": EnrollmentStatus.EXITED,
                    "exited_at": now,
                    "exit_reason": code,
                    "wake_at": None,
                    "updated_at": now,
                }
            )
            if await self._repository.update_enrollment(updated, enrollment.status):
                logger.info(f"Workflow enrollment {enrollment_id} exited", extra={"reason": code})
                return updated
            # Status moved underneath us (pause/resume/tick); retry on fresh state.
            enrollment = await self.get(enrollment_id)
        return enrollment

    async def save_progress(self, enrollment: Enrollment) -> bool:
        """Persist cursor/metadata changes of an active enrollment.

        Returns False when the stored enrollment is no longer active.
        """
        return await self._repository.update_enrollment(enrollment, EnrollmentStatus.ACTIVE)

    async def claim(self, enrollment_id: str, owner: str, until: datetime) -> bool:
        """Take the tick lease so no other process advances the enrollment."""
        return await self._repository.claim_enrollment(
            enrollment_id, owner, self._clock.now(), until
        )

    async def release(self, enrollment_id: str, owner: str) -> None:
        await self._repository.release_enrollment(enrollment_id, owner)

    async def exit_all(
        self, workflow_id: str, reason: Union[ExitReason, str]
    ) -> list[Enrollment]:
        """Exit every open enrollment of a workflow."""
        open_ = await self.list(workflow_id=workflow_id, statuses=OPEN_STATUSES)
        return [await self.exit(e.id, reason) for e in open_]

    async def stats(self, workflow_id: str) -> Dict[str, int]:
        """Enrollment counts per status, plus ``total``."""
        enrollments = await self.list(workflow_id=workflow_id)
        counts = Counter(e.status.value for e in enrollments)
        stats = {status.value: counts.get(status.value, 0) for status in EnrollmentStatus}
        stats["total"] = len(enrollments)
        return stats

    async def _write(
        self, enrollment: Enrollment, expected: EnrollmentStatus, target: str
    ) -> None:
        if not await self._repository.update_enrollment(enrollment, expected):
            current = await self.get(enrollment.id)
            raise InvalidTransition(enrollment.id, current.status.value, target)
