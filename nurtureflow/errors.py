"""Exception taxonomy for the automation engine."""

from __future__ import annotations

from typing import Optional


class NurtureFlowError(Exception):
    """Base class for all engine errors.

    ``code`` is a stable machine-readable identifier, suitable for API
    responses and for the ``exit_reason`` of an enrollment.
    """

    code = "error"


class WorkflowNotFound(NurtureFlowError):
    code = "workflow_not_found"

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class EnrollmentNotFound(NurtureFlowError):
    code = "enrollment_not_found"

    def __init__(self, enrollment_id: str) -> None:
        super().__init__(f"Enrollment {enrollment_id} not found")
        self.enrollment_id = enrollment_id


class WorkflowInactive(NurtureFlowError):
    """Raised when enrolling into a workflow that is not accepting contacts."""

    code = "workflow_inactive"

    def __init__(self, workflow_id: str, status: str) -> None:
        super().__init__(f"Workflow {workflow_id} is {status}, not active")
        self.workflow_id = workflow_id
        self.status = status


class WorkflowValidationError(NurtureFlowError):
    code = "workflow_invalid"

    def __init__(self, workflow_id: str, errors: list[str]) -> None:
        super().__init__(f"Workflow {workflow_id} failed validation: {'; '.join(errors)}")
        self.workflow_id = workflow_id
        self.errors = errors


class AlreadyEnrolled(NurtureFlowError):
    code = "already_enrolled"

    def __init__(self, workflow_id: str, contact_id: str, enrollment_id: str) -> None:
        super().__init__(
            f"Contact {contact_id} is already enrolled in workflow {workflow_id} "
            f"(enrollment {enrollment_id})"
        )
        self.workflow_id = workflow_id
        self.contact_id = contact_id
        self.enrollment_id = enrollment_id


class InvalidTransition(NurtureFlowError):
    code = "invalid_transition"

    def __init__(self, enrollment_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Enrollment {enrollment_id} cannot move from {current} to {target}"
        )
        self.enrollment_id = enrollment_id
        self.current = current
        self.target = target


class GraphIntegrityError(NurtureFlowError):
    """A connection or the enrollment cursor points at a step that does not exist."""

    code = "graph_error"

    def __init__(self, workflow_id: str, message: str) -> None:
        super().__init__(f"Workflow {workflow_id}: {message}")
        self.workflow_id = workflow_id


class ActionExecutionError(NurtureFlowError):
    """An action side effect failed.

    ``retryable`` is False for failures that another attempt cannot fix,
    such as an unknown action type or a missing required parameter.
    """

    code = "action_failed"

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class LoopDetected(NurtureFlowError):
    code = "loop_detected"

    def __init__(self, enrollment_id: str, step_id: str, visits: int) -> None:
        super().__init__(
            f"Enrollment {enrollment_id} visited step {step_id} {visits} times "
            "without an intervening delay"
        )
        self.enrollment_id = enrollment_id
        self.step_id = step_id
        self.visits = visits


class ConditionEvaluationError(NurtureFlowError):
    """A predicate is malformed or cannot be evaluated against its input."""

    code = "condition_error"

    def __init__(self, message: str, predicate: Optional[object] = None) -> None:
        super().__init__(message)
        self.predicate = predicate
