"""Map external events onto workflow enrollments."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Mapping, Optional

from pydantic import BaseModel, Field

from .contracts import Enrollment, TriggerType
from .enrollment import EnrollmentTracker
from .errors import AlreadyEnrolled, GraphIntegrityError, WorkflowInactive
from .graph import GraphStore
from .scoring import ScoreChange, ScoreSignal, ScoringEngine, ThresholdCrossed

logger = logging.getLogger(__name__)

EnrolledCallback = Callable[[Enrollment], Awaitable[None]]


class TriggerMatcher:
    """Enrolls a contact into every active workflow an event triggers."""

    def __init__(
        self,
        graph: GraphStore,
        tracker: EnrollmentTracker,
        on_enrolled: Optional[EnrolledCallback] = None,
    ) -> None:
        self._graph = graph
        self._tracker = tracker
        self._on_enrolled = on_enrolled

    async def dispatch(
        self,
        event_type: str,
        contact_id: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> list[Enrollment]:
        """Return the enrollments created for this event.

        The event payload seeds the enrollment metadata, with the event type
        stored under ``trigger_event``. Contacts already enrolled are left
        where they are.
        """
        payload = dict(payload or {})
        workflows = await self._graph.find_by_trigger(event_type, payload)
        if not workflows:
            logger.debug(f"No workflows triggered by {event_type}")
            return []

        created: List[Enrollment] = []
        for workflow in workflows:
            try:
                enrollment = await self._tracker.enroll(
                    workflow, contact_id, {**payload, "trigger_event": event_type}
                )
            except AlreadyEnrolled as exc:
                logger.debug(str(exc))
                continue
            except WorkflowInactive as exc:
                logger.info(f"Skipping trigger {event_type}: {exc}")
                continue
            except GraphIntegrityError as exc:
                logger.error(f"Cannot enroll contact {contact_id}: {exc}")
                continue
            created.append(enrollment)
            if self._on_enrolled is not None:
                await self._on_enrolled(enrollment)
        return created


class RoutedEvent(BaseModel):
    event_type: str
    contact_id: str
    score_change: Optional[ScoreChange] = None
    enrollments: List[Enrollment] = Field(default_factory=list)


class EventRouter:
    """Feeds events to lead scoring, then to workflow triggers.

    Score movements are re-dispatched as ``score_changed`` events and
    threshold crossings as ``score_threshold`` events, so workflows can be
    triggered by a contact's score.
    """

    def __init__(self, scoring: ScoringEngine, matcher: TriggerMatcher) -> None:
        self._scoring = scoring
        self._matcher = matcher
        scoring.subscribe(self._on_score_signal)

    async def handle(
        self,
        event_type: str,
        contact_id: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> RoutedEvent:
        change = await self._scoring.apply_event(contact_id, event_type, payload)
        enrollments = await self._matcher.dispatch(event_type, contact_id, payload)
        return RoutedEvent(
            event_type=event_type,
            contact_id=contact_id,
            score_change=change,
            enrollments=enrollments,
        )

    async def _on_score_signal(self, signal: ScoreSignal) -> None:
        if isinstance(signal, ScoreChange):
            await self._matcher.dispatch(
                TriggerType.SCORE_CHANGED.value,
                signal.contact_id,
                {
                    "score": signal.score,
                    "previous_score": signal.previous_score,
                    "delta": signal.delta,
                },
            )
        elif isinstance(signal, ThresholdCrossed):
            await self._matcher.dispatch(
                TriggerType.SCORE_THRESHOLD.value,
                signal.contact_id,
                {
                    "threshold": signal.threshold,
                    "direction": signal.direction,
                    "score": signal.score,
                },
            )
