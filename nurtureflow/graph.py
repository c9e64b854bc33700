"""Workflow graph storage, routing and validation."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Collection, Dict, List, Mapping, Optional, Union

from .clock import Clock, SystemClock, ensure_utc
from .conditions import Lookup, safe_evaluate
from .constants import DELAY_UNIT_SECONDS
from .contracts import (
    ActionType,
    Connection,
    Position,
    Step,
    StepType,
    Workflow,
    WorkflowStatus,
    normalize_handle,
)
from .errors import WorkflowNotFound, WorkflowValidationError
from .persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)


class GraphStore:
    """Holds workflow definitions and answers routing questions.

    Loaded workflows are cached as snapshots. Saving replaces the cached
    object instead of mutating it, so a tick holding an older snapshot keeps
    a consistent view of the graph until it finishes.
    """

    def __init__(
        self, repository: AutomationRepository, clock: Optional[Clock] = None
    ) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()
        self._snapshots: Dict[str, Workflow] = {}

    # ------------------------------------------------------------------
    # Storage
    async def load_workflow(self, workflow_id: str, refresh: bool = False) -> Workflow:
        """Return the snapshot for ``workflow_id``.

        ``refresh`` re-reads the repository, picking up edits made by other
        processes; the previous snapshot object is left untouched.
        """
        snapshot = None if refresh else self._snapshots.get(workflow_id)
        if snapshot is not None:
            return snapshot
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        self._snapshots[workflow_id] = workflow
        return workflow

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Persist ``workflow`` as a new version and return the stored snapshot."""
        stored = workflow.model_copy(
            deep=True,
            update={"version": workflow.version + 1, "updated_at": self._clock.now()},
        )
        await self._repository.save_workflow(stored)
        self._snapshots[stored.id] = stored
        logger.debug(f"Saved workflow {stored.id} version {stored.version}")
        return stored

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[Workflow]:
        return await self._repository.list_workflows(status=status)

    def invalidate(self, workflow_id: Optional[str] = None) -> None:
        """Drop cached snapshots so the next load reads the repository."""
        if workflow_id is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(workflow_id, None)

    # ------------------------------------------------------------------
    # Lifecycle
    async def publish(
        self, workflow_id: str, action_types: Optional[Collection[ActionType]] = None
    ) -> Workflow:
        """Validate and activate a workflow."""
        workflow = await self.load_workflow(workflow_id)
        errors = self.validate(workflow, action_types)
        if errors:
            raise WorkflowValidationError(workflow_id, errors)
        published = await self._set_status(workflow, WorkflowStatus.ACTIVE)
        logger.info(f"Published workflow {workflow_id} ({workflow.name})")
        return published

    async def pause(self, workflow_id: str) -> Workflow:
        workflow = await self.load_workflow(workflow_id)
        paused = await self._set_status(workflow, WorkflowStatus.PAUSED)
        logger.info(f"Paused workflow {workflow_id}")
        return paused

    async def archive(self, workflow_id: str) -> Workflow:
        workflow = await self.load_workflow(workflow_id)
        archived = await self._set_status(workflow, WorkflowStatus.ARCHIVED)
        logger.info(f"Archived workflow {workflow_id}")
        return archived

    async def _set_status(self, workflow: Workflow, status: WorkflowStatus) -> Workflow:
        return await self.save_workflow(workflow.model_copy(update={"status": status}))

    async def find_by_trigger(
        self, trigger_type: str, payload: Optional[Mapping[str, Any]] = None
    ) -> list[Workflow]:
        """Active workflows listening for ``trigger_type`` whose config matches ``payload``."""
        candidates = await self._repository.list_workflows(
            status=WorkflowStatus.ACTIVE, trigger_type=trigger_type
        )
        return [wf for wf in candidates if matches_trigger_config(wf.trigger_config, payload or {})]

    # ------------------------------------------------------------------
    # Routing
    def resolve_next(
        self,
        workflow: Workflow,
        step: Step,
        lookup: Lookup,
        produced_handle: Optional[str] = None,
    ) -> Optional[Connection]:
        """Pick the outgoing connection to follow, or ``None`` for no route.

        Connections whose handle equals the produced branch are tried first,
        in definition order, then handle-less connections. A connection is
        taken when its guard (if any) evaluates true.
        """
        handle = normalize_handle(produced_handle)
        outgoing = workflow.outgoing(step.id)
        exact = [c for c in outgoing if c.source_handle is not None and c.source_handle == handle]
        fallback = [c for c in outgoing if c.source_handle is None]
        for connection in exact + fallback:
            if connection.condition_config is None:
                return connection
            passed, error = safe_evaluate(connection.condition_config, lookup)
            if error:
                logger.warning(
                    f"Ignoring connection {connection.id} in workflow {workflow.id}: "
                    f"malformed guard ({error})"
                )
                continue
            if passed:
                return connection
        return None

    def is_terminal(self, workflow: Workflow, step: Step) -> bool:
        """A non-condition step without outgoing connections ends the workflow."""
        return step.type != StepType.CONDITION and not workflow.outgoing(step.id)

    # ------------------------------------------------------------------
    # Validation
    def validate(
        self, workflow: Workflow, action_types: Optional[Collection[ActionType]] = None
    ) -> list[str]:
        """Return publish-blocking problems; an empty list means valid."""
        errors: List[str] = []
        step_ids = {s.id for s in workflow.steps}

        if len(step_ids) != len(workflow.steps):
            errors.append("Step ids must be unique")

        triggers = workflow.trigger_steps()
        if workflow.entry_step_id:
            if workflow.entry_step_id not in step_ids:
                errors.append(f"Entry step {workflow.entry_step_id} does not exist")
        elif not triggers:
            errors.append("Workflow must have at least one trigger")
        elif len(triggers) > 1:
            errors.append("Workflow has several triggers; set entry_step_id")

        if not any(s.type == StepType.ACTION for s in workflow.steps):
            errors.append("Workflow must have at least one action")

        for connection in workflow.connections:
            for end in (connection.source_step_id, connection.target_step_id):
                if end not in step_ids:
                    errors.append(f"Connection {connection.id} references missing step {end}")

        for step in workflow.steps:
            if step.type == StepType.ACTION:
                if step.action_type is None:
                    errors.append(f"Action step {step.id} has no action_type")
                elif action_types is not None and step.action_type not in action_types:
                    errors.append(
                        f"Action step {step.id} uses unregistered action {step.action_type.value}"
                    )
            elif step.type == StepType.DELAY:
                try:
                    parse_delay(step.config)
                except ValueError as exc:
                    errors.append(f"Delay step {step.id}: {exc}")
            elif step.type == StepType.CONDITION:
                for handle in condition_handles(step.config):
                    if not any(
                        c.source_handle in (handle, None) for c in workflow.outgoing(step.id)
                    ):
                        logger.warning(
                            f"Workflow {workflow.id}: condition {step.id} has no connection "
                            f"for branch '{handle}'; enrollments taking it will exit as dead_end"
                        )

        entry = workflow.entry_step()
        if entry is not None and not errors and len(reachable_steps(workflow, entry.id)) < 2:
            errors.append("No steps are reachable from the entry step")
        return errors


def reachable_steps(workflow: Workflow, start_id: str) -> set[str]:
    """Ids of steps reachable from ``start_id``, including itself."""
    seen = {start_id}
    frontier = [start_id]
    while frontier:
        current = frontier.pop()
        for connection in workflow.outgoing(current):
            if connection.target_step_id not in seen:
                seen.add(connection.target_step_id)
                frontier.append(connection.target_step_id)
    return seen


def condition_handles(config: Mapping[str, Any]) -> list[str]:
    """Branch handles a condition step can produce."""
    branches = config.get("branches")
    if isinstance(branches, list):
        handles = [normalize_handle(b.get("handle")) for b in branches if isinstance(b, Mapping)]
        handles.append(normalize_handle(config.get("default", "default")))
        return [h for h in handles if h]
    return ["true", "false"]


def parse_delay(config: Mapping[str, Any]) -> Union[datetime, float]:
    """Interpret a delay step config.

    Returns a ``datetime`` for ``{"until": ...}`` configs and a number of
    seconds for ``{"duration"|"delay": n, "unit": ...}`` configs. A config
    naming neither waits one ``unit`` (an hour by default). Raises
    ``ValueError`` when the config cannot be interpreted.
    """
    until = config.get("until")
    if until is not None:
        if isinstance(until, datetime):
            return ensure_utc(until)
        try:
            return ensure_utc(datetime.fromisoformat(str(until)))
        except ValueError as exc:
            raise ValueError(f"invalid 'until' timestamp {until!r}") from exc

    amount = config.get("duration", config.get("delay"))
    if amount is None:
        amount = 1
    try:
        amount = float(amount)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid delay duration {amount!r}") from exc
    if amount < 0:
        raise ValueError("delay duration cannot be negative")
    unit = str(config.get("unit", "hours")).lower()
    if unit not in DELAY_UNIT_SECONDS:
        raise ValueError(f"unknown delay unit {unit!r}")
    return amount * DELAY_UNIT_SECONDS[unit]


def matches_trigger_config(trigger_config: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    """Reject only payload values that contradict the trigger config.

    A configured key the payload does not carry, or one configured as
    ``None``, does not constrain the match.
    """
    for key, expected in trigger_config.items():
        if expected is None or key not in payload:
            continue
        if payload[key] != expected:
            return False
    return True


def workflow_from_canvas(
    canvas: Mapping[str, Any], name: str, **fields: Any
) -> Workflow:
    """Build a workflow from the visual builder's ``{"nodes", "edges"}`` document.

    Node ids become step ids. ``data.actionType`` (or ``data.triggerType``
    for trigger nodes) selects the action type, ``data.config`` holds the
    step config and ``data.label`` its name. Edges whose ends are unknown
    nodes are dropped.
    """
    steps: List[Step] = []
    trigger_type: Optional[str] = None
    for node in canvas.get("nodes", []):
        data = node.get("data") or {}
        step_type = StepType(node.get("type") or "action")
        action_type = data.get("actionType") if step_type == StepType.ACTION else None
        if step_type == StepType.TRIGGER and data.get("triggerType"):
            trigger_type = trigger_type or data["triggerType"]
        position = node.get("position") or {}
        steps.append(
            Step(
                id=str(node["id"]),
                type=step_type,
                action_type=action_type,
                name=data.get("label"),
                config=data.get("config") or {},
                position=Position(x=position.get("x", 0), y=position.get("y", 0)),
            )
        )

    known = {s.id for s in steps}
    connections: List[Connection] = []
    for edge in canvas.get("edges", []):
        source, target = str(edge.get("source")), str(edge.get("target"))
        if source not in known or target not in known:
            logger.warning(f"Dropping canvas edge {edge.get('id')}: unknown endpoint")
            continue
        kwargs: Dict[str, Any] = {}
        if edge.get("id"):
            kwargs["id"] = str(edge["id"])
        connections.append(
            Connection(
                source_step_id=source,
                target_step_id=target,
                source_handle=edge.get("sourceHandle"),
                condition_config=(edge.get("data") or {}).get("condition"),
                label=edge.get("label"),
                **kwargs,
            )
        )

    if trigger_type and "trigger_type" not in fields:
        fields["trigger_type"] = trigger_type
    return Workflow(name=name, steps=steps, connections=connections, **fields)

