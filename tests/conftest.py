"""Shared fixtures: a manual clock, recording action handlers and a graph builder."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import pytest

import nurtureflow.persistence as persistence
from nurtureflow.actions import ActionHandler, ActionRegistry, StaticAttributeProvider
from nurtureflow.clock import ManualClock
from nurtureflow.contracts import (
    ActionType,
    Connection,
    Step,
    StepType,
    Workflow,
    WorkflowStatus,
)
from nurtureflow.engine import AutomationEngine
from nurtureflow.persistence import InMemoryRepository

START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class RecordingHandler(ActionHandler):
    """Records every call; raises queued exceptions first."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.failures: List[Exception] = []

    async def execute(self, action_type, config, contact_id):
        self.calls.append((action_type, dict(config), contact_id))
        if self.failures:
            raise self.failures.pop(0)
        return {}


class TagHandler(ActionHandler):
    """Keeps the last applied tag in the enrollment metadata."""

    async def execute(self, action_type, config, contact_id):
        if action_type == ActionType.ADD_TAG:
            return {"tag": config["tag"]}
        return {"tag": None}


class WorkflowBuilder:
    def __init__(self, name: str = "Test workflow", **fields: Any) -> None:
        self.name = name
        self.fields = fields
        self.steps: List[Step] = []
        self.connections: List[Connection] = []

    def trigger(self, step_id: str = "start") -> "WorkflowBuilder":
        self.steps.append(Step(id=step_id, type=StepType.TRIGGER))
        return self

    def action(self, step_id: str, action_type: str, **config: Any) -> "WorkflowBuilder":
        self.steps.append(
            Step(id=step_id, type=StepType.ACTION, action_type=action_type, config=config)
        )
        return self

    def condition(self, step_id: str, **config: Any) -> "WorkflowBuilder":
        self.steps.append(Step(id=step_id, type=StepType.CONDITION, config=config))
        return self

    def delay(self, step_id: str, **config: Any) -> "WorkflowBuilder":
        self.steps.append(Step(id=step_id, type=StepType.DELAY, config=config))
        return self

    def connect(
        self,
        source: str,
        target: str,
        handle: Optional[str] = None,
        guard: Any = None,
    ) -> "WorkflowBuilder":
        self.connections.append(
            Connection(
                id=f"{source}->{target}:{handle}",
                source_step_id=source,
                target_step_id=target,
                source_handle=handle,
                condition_config=guard,
            )
        )
        return self

    def chain(self, *step_ids: str) -> "WorkflowBuilder":
        for source, target in zip(step_ids, step_ids[1:]):
            self.connect(source, target)
        return self

    def build(self, status: WorkflowStatus = WorkflowStatus.ACTIVE) -> Workflow:
        return Workflow(
            name=self.name,
            status=status,
            steps=list(self.steps),
            connections=list(self.connections),
            **self.fields,
        )


@pytest.fixture
def builder():
    return WorkflowBuilder


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def emails() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def attributes() -> StaticAttributeProvider:
    return StaticAttributeProvider()


@pytest.fixture
def alerts() -> list:
    return []


@pytest.fixture
def engine(repo, clock, emails, attributes, alerts) -> AutomationEngine:
    async def collect(alert):
        alerts.append(alert)

    registry = ActionRegistry(
        {
            ActionType.SEND_EMAIL: emails,
            ActionType.ADD_TAG: TagHandler(),
            ActionType.REMOVE_TAG: TagHandler(),
        }
    )
    return AutomationEngine(
        repo,
        actions=registry,
        attributes=attributes,
        clock=clock,
        alert_handler=collect,
    )


@pytest.fixture(autouse=True)
def _reset_repository():
    persistence.set_repository(None)
    yield
    persistence.set_repository(None)
