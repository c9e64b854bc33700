"""Step execution engine for nurtureflow workflows."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from pydantic import BaseModel

from .actions.base import ActionExecutor, ContactAttributeProvider, StaticAttributeProvider
from .clock import Clock, SystemClock
from .conditions import Lookup, safe_evaluate, scoped_lookup
from .config import EngineConfig
from .contracts import (
    Enrollment,
    EnrollmentStatus,
    ExitReason,
    InactivePolicy,
    Step,
    StepOutcome,
    StepType,
    Workflow,
    normalize_handle,
)
from .enrollment import EnrollmentTracker
from .errors import (
    ActionExecutionError,
    EnrollmentNotFound,
    GraphIntegrityError,
    LoopDetected,
    NurtureFlowError,
    WorkflowNotFound,
)
from .execution_log import ExecutionLog
from .graph import GraphStore, parse_delay
from .utils.locks import KeyedLock
from .utils.retry import backoff_delta

logger = logging.getLogger(__name__)


class TickState(str, Enum):
    """How a tick ended."""

    MISSING = "missing"
    NOT_ACTIVE = "not_active"
    NOT_DUE = "not_due"
    FROZEN = "frozen"
    ADVANCED = "advanced"
    WAITING = "waiting"
    RETRYING = "retrying"
    COMPLETED = "completed"
    EXITED = "exited"
    INTERRUPTED = "interrupted"
    BUSY = "busy"


class TickResult(BaseModel):
    enrollment_id: str
    state: TickState
    steps_executed: int = 0
    status: Optional[EnrollmentStatus] = None
    current_step_id: Optional[str] = None
    exit_reason: Optional[str] = None
    wake_at: Optional[datetime] = None


class OperatorAlert(BaseModel):
    """An enrollment was stopped by a failure someone should look at."""

    enrollment_id: str
    workflow_id: str
    contact_id: str
    step_id: Optional[str] = None
    reason: str
    message: str
    created_at: datetime


AlertHandler = Callable[[OperatorAlert], Awaitable[None]]


@dataclass
class StepContext:
    workflow: Workflow
    enrollment: Enrollment
    step: Step
    lookup: Lookup
    now: datetime


@dataclass
class StepResult:
    outcome: StepOutcome = StepOutcome.SUCCEEDED
    branch: Optional[str] = None
    patch: Dict[str, Any] = field(default_factory=dict)
    wake_at: Optional[datetime] = None


class StepHandler(Protocol):
    async def handle(self, ctx: StepContext) -> StepResult:
        ...


class TriggerStepHandler:
    """Entry steps only mark the start of the path."""

    async def handle(self, ctx: StepContext) -> StepResult:
        return StepResult()


class ActionStepHandler:
    def __init__(self, actions: ActionExecutor) -> None:
        self._actions = actions

    async def handle(self, ctx: StepContext) -> StepResult:
        step = ctx.step
        if step.action_type is None:
            raise ActionExecutionError(f"Action step {step.id} has no action_type", retryable=False)
        try:
            patch = await self._actions.execute(
                step.action_type, step.config, ctx.enrollment.contact_id
            )
        except (ActionExecutionError, GraphIntegrityError):
            raise
        except NurtureFlowError as exc:
            raise ActionExecutionError(str(exc), retryable=False) from exc
        except Exception as exc:
            # Unexpected failures from host handlers are treated as transient.
            logger.warning(
                f"Action {step.action_type.value} on step {step.id} raised "
                f"{type(exc).__name__}: {exc}"
            )
            raise ActionExecutionError(str(exc) or type(exc).__name__) from exc
        return StepResult(patch=dict(patch or {}))


class ConditionStepHandler:
    """Evaluate the step predicate and name the branch to follow.

    A plain predicate config produces ``"true"`` or ``"false"``. A config
    with ``branches`` picks the first branch whose ``when`` holds, else
    ``default``. Malformed predicates count as not matching.
    """

    async def handle(self, ctx: StepContext) -> StepResult:
        config = ctx.step.config
        branches = config.get("branches")
        if isinstance(branches, list):
            for branch in branches:
                if not isinstance(branch, Mapping):
                    continue
                matched, error = safe_evaluate(branch.get("when"), ctx.lookup)
                if error:
                    self._warn(ctx, error)
                elif matched:
                    handle = normalize_handle(branch.get("handle"))
                    return StepResult(outcome=StepOutcome.CONDITION_EVALUATED, branch=handle)
            default = normalize_handle(config.get("default", "default"))
            return StepResult(outcome=StepOutcome.CONDITION_EVALUATED, branch=default)

        predicate = config.get("predicate", config)
        matched, error = safe_evaluate(predicate, ctx.lookup)
        if error:
            self._warn(ctx, error)
        return StepResult(
            outcome=StepOutcome.CONDITION_EVALUATED, branch="true" if matched else "false"
        )

    @staticmethod
    def _warn(ctx: StepContext, error: str) -> None:
        logger.warning(
            f"Workflow {ctx.workflow.id}: condition step {ctx.step.id} is malformed ({error})"
        )


class DelayStepHandler:
    """Schedule the wake-up on arrival; pass through once it has elapsed."""

    async def handle(self, ctx: StepContext) -> StepResult:
        if ctx.enrollment.wake_at is not None and ctx.enrollment.wake_at <= ctx.now:
            return StepResult()
        try:
            delay = parse_delay(ctx.step.config)
        except ValueError as exc:
            raise GraphIntegrityError(ctx.workflow.id, f"delay step {ctx.step.id}: {exc}") from exc
        wake_at = delay if isinstance(delay, datetime) else ctx.now + timedelta(seconds=delay)
        if wake_at <= ctx.now:
            return StepResult()
        return StepResult(outcome=StepOutcome.DELAY_SCHEDULED, wake_at=wake_at)


class StepExecutor:
    """Advances enrollments through their workflow graph.

    ``tick`` is the only entry point. Ticks for the same enrollment are
    serialized, within the process by a lock and across processes by a
    lease taken in the repository. Every enrollment write is a compare-and-set on ``active``,
    so a tick that loses a race with ``exit`` or ``pause`` simply stops.
    """

    def __init__(
        self,
        graph: GraphStore,
        tracker: EnrollmentTracker,
        log: ExecutionLog,
        actions: ActionExecutor,
        attributes: Optional[ContactAttributeProvider] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
        alert_handler: Optional[AlertHandler] = None,
        handlers: Optional[Mapping[StepType, StepHandler]] = None,
    ) -> None:
        self._graph = graph
        self._tracker = tracker
        self._log = log
        self._attributes = attributes or StaticAttributeProvider()
        self._clock = clock or SystemClock()
        self._config = config or EngineConfig()
        self._alert_handler = alert_handler
        self._locks = KeyedLock()
        self._owner = uuid.uuid4().hex
        self._handlers: Dict[StepType, StepHandler] = {
            StepType.TRIGGER: TriggerStepHandler(),
            StepType.ACTION: ActionStepHandler(actions),
            StepType.CONDITION: ConditionStepHandler(),
            StepType.DELAY: DelayStepHandler(),
        }
        self._handlers.update(handlers or {})

    async def tick(self, enrollment_id: str) -> TickResult:
        """Run the enrollment's current step and, in cascade mode, the ones after it."""
        async with self._locks.hold(enrollment_id):
            lease = timedelta(seconds=self._config.tick_lease_seconds)
            if not await self._tracker.claim(
                enrollment_id, self._owner, self._clock.now() + lease
            ):
                return await self._busy(enrollment_id)
            try:
                return await self._tick(enrollment_id)
            finally:
                await self._tracker.release(enrollment_id, self._owner)

    async def _busy(self, enrollment_id: str) -> TickResult:
        try:
            enrollment = await self._tracker.get(enrollment_id)
        except EnrollmentNotFound:
            logger.debug(f"Tick for unknown enrollment {enrollment_id}")
            return TickResult(enrollment_id=enrollment_id, state=TickState.MISSING)
        logger.debug(f"Enrollment {enrollment_id} is being ticked elsewhere")
        return _result(enrollment, TickState.BUSY)

    async def _tick(self, enrollment_id: str) -> TickResult:
        try:
            enrollment = await self._tracker.get(enrollment_id)
        except EnrollmentNotFound:
            logger.debug(f"Tick for unknown enrollment {enrollment_id}")
            return TickResult(enrollment_id=enrollment_id, state=TickState.MISSING)
        if enrollment.status != EnrollmentStatus.ACTIVE:
            return _result(enrollment, TickState.NOT_ACTIVE)
        if enrollment.wake_at is not None and enrollment.wake_at > self._clock.now():
            return _result(enrollment, TickState.NOT_DUE)

        try:
            workflow = await self._graph.load_workflow(enrollment.workflow_id, refresh=True)
        except WorkflowNotFound as exc:
            return await self._abort(enrollment, ExitReason.GRAPH_ERROR, str(exc), 0)

        if not workflow.is_active:
            policy = workflow.inactive_policy or InactivePolicy(self._config.inactive_policy)
            if policy == InactivePolicy.FREEZE:
                logger.debug(f"Workflow {workflow.id} is {workflow.status.value}; holding {enrollment.id}")
                return _result(enrollment, TickState.FROZEN)
            if policy == InactivePolicy.EXIT:
                exited = await self._tracker.exit(enrollment.id, ExitReason.WORKFLOW_INACTIVE)
                return _result(exited, TickState.EXITED)

        return await self._cascade(workflow, enrollment)

    async def _cascade(self, workflow: Workflow, enrollment: Enrollment) -> TickResult:
        cascade_id = uuid.uuid4().hex
        attributes: Optional[Dict[str, Any]] = None
        executed = 0

        while True:
            if executed >= self._config.max_cascade_steps:
                logger.debug(
                    f"Enrollment {enrollment.id} hit max_cascade_steps; continuing next tick"
                )
                return _result(enrollment, TickState.ADVANCED, executed)

            step = workflow.get_step(enrollment.current_step_id)
            if step is None:
                error = GraphIntegrityError(
                    workflow.id, f"current step {enrollment.current_step_id} does not exist"
                )
                return await self._abort(enrollment, ExitReason.GRAPH_ERROR, str(error), executed)

            visits = await self._log.count_visits(enrollment.id, step.id, enrollment.guard_since)
            if visits >= self._config.loop_guard_threshold:
                loop = LoopDetected(enrollment.id, step.id, visits)
                await self._log.record(
                    enrollment, step, StepOutcome.SKIPPED, cascade_id=cascade_id, error=str(loop)
                )
                return await self._abort(
                    enrollment, ExitReason.LOOP_DETECTED, str(loop), executed, step.id
                )

            current = await self._tracker.get(enrollment.id)
            if current.status != EnrollmentStatus.ACTIVE:
                return _result(current, TickState.INTERRUPTED, executed)
            enrollment = current

            if attributes is None:
                attributes = await self._attributes.get_attributes(enrollment.contact_id)
            now = self._clock.now()
            ctx = StepContext(
                workflow=workflow,
                enrollment=enrollment,
                step=step,
                lookup=scoped_lookup(enrollment.metadata, attributes),
                now=now,
            )
            attempt = enrollment.retry_count + 1

            try:
                result = await self._handlers[step.type].handle(ctx)
            except ActionExecutionError as exc:
                await self._log.record(
                    enrollment, step, StepOutcome.FAILED,
                    cascade_id=cascade_id, error=str(exc), attempt=attempt,
                )
                return await self._action_failed(enrollment, step, exc, executed + 1)
            except GraphIntegrityError as exc:
                return await self._abort(
                    enrollment, ExitReason.GRAPH_ERROR, str(exc), executed, step.id
                )

            entry = await self._log.record(
                enrollment, step, result.outcome,
                cascade_id=cascade_id, branch=result.branch,
                output=result.patch, attempt=attempt,
            )
            executed += 1
            metadata = {**enrollment.metadata, **result.patch}

            if result.outcome == StepOutcome.DELAY_SCHEDULED:
                waiting = enrollment.model_copy(
                    update={
                        "metadata": metadata,
                        "wake_at": result.wake_at,
                        "guard_since": entry.id or enrollment.guard_since,
                        "retry_count": 0,
                        "updated_at": now,
                    }
                )
                if not await self._save(waiting):
                    return await self._interrupted(enrollment.id, executed)
                logger.debug(f"Enrollment {enrollment.id} waiting at {step.id} until {result.wake_at}")
                return _result(waiting, TickState.WAITING, executed)

            moved = enrollment.model_copy(
                update={"metadata": metadata, "wake_at": None, "retry_count": 0, "updated_at": now}
            )

            if self._graph.is_terminal(workflow, step):
                if not await self._save(moved):
                    return await self._interrupted(enrollment.id, executed)
                completed = await self._tracker.complete(enrollment.id)
                return _result(completed, TickState.COMPLETED, executed)

            lookup = scoped_lookup(metadata, attributes)
            connection = self._graph.resolve_next(workflow, step, lookup, result.branch)
            if connection is None:
                if not await self._save(moved):
                    return await self._interrupted(enrollment.id, executed)
                logger.warning(
                    f"Enrollment {enrollment.id}: no route from step {step.id} "
                    f"(branch {result.branch!r}) in workflow {workflow.id}"
                )
                exited = await self._tracker.exit(enrollment.id, ExitReason.DEAD_END)
                return _result(exited, TickState.EXITED, executed)

            target = workflow.get_step(connection.target_step_id)
            if target is None:
                if not await self._save(moved):
                    return await self._interrupted(enrollment.id, executed)
                error = GraphIntegrityError(
                    workflow.id,
                    f"connection {connection.id} targets missing step {connection.target_step_id}",
                )
                return await self._abort(moved, ExitReason.GRAPH_ERROR, str(error), executed, step.id)

            moved = moved.model_copy(update={"current_step_id": target.id})
            if not await self._save(moved):
                return await self._interrupted(enrollment.id, executed)
            enrollment = moved

            if not self._config.cascade:
                return _result(enrollment, TickState.ADVANCED, executed)

    async def _action_failed(
        self, enrollment: Enrollment, step: Step, exc: ActionExecutionError, executed: int
    ) -> TickResult:
        if exc.retryable and enrollment.retry_count < self._config.max_action_retries:
            attempt = enrollment.retry_count + 1
            now = self._clock.now()
            retry = enrollment.model_copy(
                update={
                    "retry_count": attempt,
                    "wake_at": now
                    + backoff_delta(
                        attempt,
                        base=self._config.retry_backoff_base,
                        jitter=self._config.retry_backoff_jitter,
                        maximum=self._config.retry_backoff_max,
                    ),
                    "updated_at": now,
                }
            )
            if not await self._save(retry):
                return await self._interrupted(enrollment.id, executed)
            logger.warning(
                f"Action {step.action_type.value if step.action_type else '?'} failed for "
                f"enrollment {enrollment.id} (attempt {attempt}); retrying at {retry.wake_at}: {exc}"
            )
            return _result(retry, TickState.RETRYING, executed)
        return await self._abort(enrollment, ExitReason.ACTION_FAILED, str(exc), executed, step.id)

    async def _abort(
        self,
        enrollment: Enrollment,
        reason: ExitReason,
        message: str,
        executed: int,
        step_id: Optional[str] = None,
    ) -> TickResult:
        """Exit the enrollment and raise an operator alert."""
        exited = await self._tracker.exit(enrollment.id, reason)
        await self._alert(
            OperatorAlert(
                enrollment_id=enrollment.id,
                workflow_id=enrollment.workflow_id,
                contact_id=enrollment.contact_id,
                step_id=step_id or enrollment.current_step_id,
                reason=reason.value,
                message=message,
                created_at=self._clock.now(),
            )
        )
        return _result(exited, TickState.EXITED, executed)

    async def _alert(self, alert: OperatorAlert) -> None:
        logger.error(
            f"Enrollment {alert.enrollment_id} exited ({alert.reason}) at step "
            f"{alert.step_id}: {alert.message}"
        )
        if self._alert_handler is None:
            return
        try:
            await self._alert_handler(alert)
        except Exception:
            logger.exception(f"Alert handler failed for enrollment {alert.enrollment_id}")

    async def _save(self, enrollment: Enrollment) -> bool:
        saved = await self._tracker.save_progress(enrollment)
        if not saved:
            logger.info(f"Enrollment {enrollment.id} changed during tick; stopping")
        return saved

    async def _interrupted(self, enrollment_id: str, executed: int) -> TickResult:
        current = await self._tracker.get(enrollment_id)
        return _result(current, TickState.INTERRUPTED, executed)


def _result(enrollment: Enrollment, state: TickState, executed: int = 0) -> TickResult:
    return TickResult(
        enrollment_id=enrollment.id,
        state=state,
        steps_executed=executed,
        status=enrollment.status,
        current_step_id=enrollment.current_step_id,
        exit_reason=enrollment.exit_reason,
        wake_at=enrollment.wake_at,
    )
