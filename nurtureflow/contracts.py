"""Core data contracts for nurtureflow workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepType(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    DELAY = "delay"


class ActionType(str, Enum):
    """Closed set of side effects an action step can request."""

    SEND_EMAIL = "send_email"
    SEND_WHATSAPP = "send_whatsapp"
    SEND_SMS = "send_sms"
    SEND_NOTIFICATION = "send_notification"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    ADD_SCORE = "add_score"
    ADD_TO_WORKFLOW = "add_to_workflow"
    REMOVE_FROM_WORKFLOW = "remove_from_workflow"
    WEBHOOK = "webhook"
    CREATE_TASK = "create_task"
    SEND_INTERNAL_NOTIFICATION = "send_internal_notification"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ActionType"]:
        alias = ACTION_ALIASES.get(value) if isinstance(value, str) else None
        return cls(alias) if alias else None


ACTION_ALIASES = {"tag_contact": "add_tag", "untag_contact": "remove_tag"}


class TriggerType(str, Enum):
    """Events that can enroll a contact into a workflow."""

    MANUAL = "manual"
    STUDENT_CREATED = "student_created"
    STUDENT_UPDATED = "student_updated"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    ORDER_CREATED = "order_created"
    ORDER_PAID = "order_paid"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ENROLLMENT_CREATED = "enrollment_created"
    ENROLLMENT_COMPLETED = "enrollment_completed"
    ENROLLMENT_CANCELLED = "enrollment_cancelled"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    ATTENDANCE_MARKED = "attendance_marked"
    ATTENDANCE_PRESENT = "attendance_present"
    ATTENDANCE_ABSENT = "attendance_absent"
    EMAIL_OPENED = "email_opened"
    EMAIL_CLICKED = "email_clicked"
    WHATSAPP_REPLIED = "whatsapp_replied"
    SCORE_CHANGED = "score_changed"
    SCORE_THRESHOLD = "score_threshold"
    DATE_TRIGGER = "date_trigger"
    RECURRING = "recurring"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ReentryPolicy(str, Enum):
    """What ``enroll`` does when the contact has been enrolled before."""

    REJECT = "reject"
    AFTER_TERMINAL = "after_terminal"
    RESTART = "restart"


class InactivePolicy(str, Enum):
    """What a tick does when the enrollment's workflow is no longer active."""

    CONTINUE = "continue"
    FREEZE = "freeze"
    EXIT = "exit"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXITED = "exited"


TERMINAL_STATUSES = frozenset({EnrollmentStatus.COMPLETED, EnrollmentStatus.EXITED})
OPEN_STATUSES = frozenset({EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED})


class ExitReason(str, Enum):
    MANUAL = "manual"
    DEAD_END = "dead_end"
    GRAPH_ERROR = "graph_error"
    LOOP_DETECTED = "loop_detected"
    ACTION_FAILED = "action_failed"
    RESTARTED = "restarted"
    WORKFLOW_INACTIVE = "workflow_inactive"


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    CONDITION_EVALUATED = "condition_evaluated"
    DELAY_SCHEDULED = "delay_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


# Outcomes that do not count as a visit for the loop guard.
NON_VISIT_OUTCOMES = frozenset(
    {StepOutcome.FAILED, StepOutcome.DELAY_SCHEDULED, StepOutcome.SKIPPED}
)

BRANCH_ALIASES = {"yes": "true", "no": "false"}


def normalize_handle(handle: Optional[Any]) -> Optional[str]:
    """Map builder handle spellings onto the canonical branch names."""
    if handle is None:
        return None
    if isinstance(handle, bool):
        return "true" if handle else "false"
    value = str(handle)
    return BRANCH_ALIASES.get(value.lower(), value)


class Position(BaseModel):
    """Canvas coordinates; presentation only."""

    x: float = 0
    y: float = 0


class Step(BaseModel):
    """A node in a workflow graph."""

    id: str = Field(default_factory=_new_id)
    type: StepType
    action_type: Optional[ActionType] = None
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    position: Position = Field(default_factory=Position)

    @field_validator("action_type", mode="before")
    @classmethod
    def _resolve_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ACTION_ALIASES.get(value, value)
        return value


class Connection(BaseModel):
    """Directed, optionally guarded edge between two steps."""

    id: str = Field(default_factory=_new_id)
    source_step_id: str
    target_step_id: str
    source_handle: Optional[str] = None
    condition_config: Optional[Any] = None
    label: Optional[str] = None

    @field_validator("source_handle", mode="before")
    @classmethod
    def _normalize_handle(cls, value: Any) -> Optional[str]:
        return normalize_handle(value)


class Workflow(BaseModel):
    """Automation definition: a directed graph of steps.

    Instances handed out by the graph store are shared snapshots and must
    be treated as read-only; edits go through ``GraphStore.save_workflow``.
    """

    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger_type: str = TriggerType.MANUAL.value
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    entry_step_id: Optional[str] = None
    reentry: ReentryPolicy = ReentryPolicy.AFTER_TERMINAL
    inactive_policy: Optional[InactivePolicy] = None
    version: int = 0
    steps: List[Step] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("trigger_type", mode="before")
    @classmethod
    def _trigger_value(cls, value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None:
            return None
        return next((s for s in self.steps if s.id == step_id), None)

    def outgoing(self, step_id: str) -> List[Connection]:
        """Connections leaving ``step_id`` in definition order."""
        return [c for c in self.connections if c.source_step_id == step_id]

    def trigger_steps(self) -> List[Step]:
        return [s for s in self.steps if s.type == StepType.TRIGGER]

    def entry_step(self) -> Optional[Step]:
        """Return the explicit entry step, else the single trigger step."""
        if self.entry_step_id:
            return self.get_step(self.entry_step_id)
        triggers = self.trigger_steps()
        return triggers[0] if len(triggers) == 1 else None

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE


class Enrollment(BaseModel):
    """Execution cursor of one contact inside one workflow."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    contact_id: str
    current_step_id: Optional[str] = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    entered_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    wake_at: Optional[datetime] = None
    retry_count: int = 0
    guard_since: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_terminal_timestamps(self) -> "Enrollment":
        if self.completed_at is not None and self.exited_at is not None:
            raise ValueError("completed_at and exited_at are mutually exclusive")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StepExecution(BaseModel):
    """Immutable record of one step attempt."""

    id: Optional[int] = None
    enrollment_id: str
    workflow_id: str
    step_id: str
    step_type: StepType
    cascade_id: Optional[str] = None
    outcome: StepOutcome
    branch: Optional[str] = None
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    attempt: int = 1
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def counts_as_visit(self) -> bool:
        return self.outcome not in NON_VISIT_OUTCOMES
