"""nurtureflow: workflow automation and lead scoring for contacts."""

from .actions import ActionHandler, ActionRegistry, StaticAttributeProvider
from .clock import ManualClock, SystemClock
from .contracts import (
    ActionType,
    Connection,
    Enrollment,
    EnrollmentStatus,
    ExitReason,
    Step,
    StepExecution,
    StepType,
    TriggerType,
    Workflow,
    WorkflowStatus,
)
from .engine import AutomationEngine
from .execute import OperatorAlert, StepExecutor, TickResult, TickState
from .persistence import get_repository
from .scoring import ScoringEngine, ScoringRule

__version__ = "0.1.0"
__all__ = [
    "ActionHandler",
    "ActionRegistry",
    "ActionType",
    "AutomationEngine",
    "Connection",
    "Enrollment",
    "EnrollmentStatus",
    "ExitReason",
    "ManualClock",
    "OperatorAlert",
    "ScoringEngine",
    "ScoringRule",
    "StaticAttributeProvider",
    "Step",
    "StepExecution",
    "StepExecutor",
    "StepType",
    "SystemClock",
    "TickResult",
    "TickState",
    "TriggerType",
    "Workflow",
    "WorkflowStatus",
    "get_repository",
]
