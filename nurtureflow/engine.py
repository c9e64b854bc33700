"""Wires the automation components together."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from .actions import (
    ActionRegistry,
    AddScoreHandler,
    ContactAttributeProvider,
    UpdateFieldHandler,
    WebhookHandler,
    WorkflowMembershipHandler,
)
from .clock import Clock, SystemClock
from .config import NurtureFlowConfig, load_config
from .contracts import (
    ActionType,
    Enrollment,
    ExitReason,
    InactivePolicy,
    StepExecution,
    Workflow,
)
from .enrollment import EnrollmentTracker
from .execute import AlertHandler, StepExecutor, TickResult
from .execution_log import ExecutionLog
from .graph import GraphStore, workflow_from_canvas
from .persistence import AutomationRepository, get_repository
from .scheduler import BatchReport, Scheduler
from .scoring import ScoringEngine
from .triggers import EventRouter, RoutedEvent, TriggerMatcher

logger = logging.getLogger(__name__)


class AutomationEngine:
    """Single entry point for embedding the workflow and scoring engines.

    Host applications register handlers for the action types they provide
    (email, messaging, tags, tasks); ``update_field``, ``add_score``,
    ``add_to_workflow``, ``remove_from_workflow`` and ``webhook`` are
    registered here unless the registry already has them.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        *,
        actions: Optional[ActionRegistry] = None,
        attributes: Optional[ContactAttributeProvider] = None,
        clock: Optional[Clock] = None,
        config: Optional[NurtureFlowConfig] = None,
        alert_handler: Optional[AlertHandler] = None,
        tick_on_enroll: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or NurtureFlowConfig()
        self.clock = clock or SystemClock()
        self.repository = repository
        self.graph = GraphStore(repository, self.clock)
        self.tracker = EnrollmentTracker(repository, self.clock)
        self.log = ExecutionLog(repository, self.clock)
        self.scoring = ScoringEngine(
            repository, self.clock, thresholds=self.config.scoring.thresholds
        )
        self.actions = actions or ActionRegistry()
        self._register_builtin_actions(http_client)
        self.executor = StepExecutor(
            self.graph,
            self.tracker,
            self.log,
            self.actions,
            attributes=attributes,
            clock=self.clock,
            config=self.config.engine,
            alert_handler=alert_handler,
        )
        self.scheduler = Scheduler(self.executor, self.tracker, self.config.scheduler)
        self.matcher = TriggerMatcher(
            self.graph, self.tracker, on_enrolled=self._start if tick_on_enroll else None
        )
        self.router = EventRouter(self.scoring, self.matcher)

    @classmethod
    def from_config(
        cls, config: Optional[NurtureFlowConfig] = None, **kwargs: Any
    ) -> "AutomationEngine":
        """Build an engine on the repository the configuration points at."""
        config = config or load_config()
        return cls(get_repository(config=config), config=config, **kwargs)

    def _register_builtin_actions(self, http_client: Optional[httpx.AsyncClient]) -> None:
        membership = WorkflowMembershipHandler(self.graph, self.tracker)
        builtin = {
            ActionType.UPDATE_FIELD: UpdateFieldHandler(),
            ActionType.ADD_SCORE: AddScoreHandler(self.scoring),
            ActionType.ADD_TO_WORKFLOW: membership,
            ActionType.REMOVE_FROM_WORKFLOW: membership,
            ActionType.WEBHOOK: WebhookHandler(http_client),
        }
        for action_type, handler in builtin.items():
            if action_type not in self.actions:
                self.actions.register(action_type, handler)

    async def _start(self, enrollment: Enrollment) -> None:
        await self.executor.tick(enrollment.id)

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        return await self.graph.save_workflow(workflow)

    async def import_canvas(
        self, canvas: Mapping[str, Any], name: str, **fields: Any
    ) -> Workflow:
        return await self.graph.save_workflow(workflow_from_canvas(canvas, name, **fields))

    async def publish_workflow(self, workflow_id: str) -> Workflow:
        return await self.graph.publish(workflow_id, self.actions.registered())

    async def pause_workflow(self, workflow_id: str) -> Workflow:
        return await self.graph.pause(workflow_id)

    async def archive_workflow(self, workflow_id: str) -> Workflow:
        """Archive the workflow; with the ``exit`` policy its enrollments exit now."""
        archived = await self.graph.archive(workflow_id)
        policy = archived.inactive_policy or InactivePolicy(self.config.engine.inactive_policy)
        if policy == InactivePolicy.EXIT:
            exited = await self.tracker.exit_all(workflow_id, ExitReason.WORKFLOW_INACTIVE)
            logger.info(f"Exited {len(exited)} enrollments of archived workflow {workflow_id}")
        return archived

    async def workflow_stats(self, workflow_id: str) -> dict[str, int]:
        await self.graph.load_workflow(workflow_id)
        return await self.tracker.stats(workflow_id)

    # ------------------------------------------------------------------
    # Enrollments
    async def enroll(
        self,
        workflow_id: str,
        contact_id: str,
        context: Optional[Mapping[str, Any]] = None,
        start: bool = False,
    ) -> Enrollment:
        """Enroll a contact explicitly; ``start`` runs the first tick right away."""
        workflow = await self.graph.load_workflow(workflow_id, refresh=True)
        enrollment = await self.tracker.enroll(workflow, contact_id, context)
        if start:
            await self.executor.tick(enrollment.id)
            return await self.tracker.get(enrollment.id)
        return enrollment

    async def pause(self, enrollment_id: str) -> Enrollment:
        return await self.tracker.pause(enrollment_id)

    async def resume(self, enrollment_id: str) -> Enrollment:
        return await self.tracker.resume(enrollment_id)

    async def exit(
        self, enrollment_id: str, reason: ExitReason = ExitReason.MANUAL
    ) -> Enrollment:
        return await self.tracker.exit(enrollment_id, reason)

    async def tick(self, enrollment_id: str) -> TickResult:
        return await self.executor.tick(enrollment_id)

    async def run_due(self) -> BatchReport:
        return await self.scheduler.run_due()

    async def history(self, enrollment_id: str) -> list[StepExecution]:
        return await self.log.history(enrollment_id)

    # ------------------------------------------------------------------
    # Events
    async def handle_event(
        self,
        event_type: str,
        contact_id: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> RoutedEvent:
        """Score the event, then enroll the contact into triggered workflows."""
        return await self.router.handle(event_type, contact_id, payload)

    async def close(self) -> None:
        close = getattr(self.repository, "close", None)
        if close is not None:
            await close()
