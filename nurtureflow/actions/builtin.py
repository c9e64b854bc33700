"""Action handlers that only need the engine itself (or plain HTTP)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping, Optional

import httpx

from ..contracts import ActionType, EnrollmentStatus, ExitReason
from ..errors import ActionExecutionError, AlreadyEnrolled, NurtureFlowError
from .base import ActionHandler, MetadataPatch

if TYPE_CHECKING:
    from ..enrollment import EnrollmentTracker
    from ..graph import GraphStore
    from ..scoring import ScoringEngine

logger = logging.getLogger(__name__)


def _require(config: Mapping[str, Any], key: str, action_type: ActionType) -> Any:
    value = config.get(key)
    if value in (None, ""):
        raise ActionExecutionError(
            f"{action_type.value} requires '{key}' in its config", retryable=False
        )
    return value


class UpdateFieldHandler(ActionHandler):
    """Write values into the enrollment metadata.

    Config: ``{"field": "name", "value": ...}`` or ``{"fields": {...}}``.
    """

    async def execute(
        self, action_type: ActionType, config: Mapping[str, Any], contact_id: str
    ) -> MetadataPatch:
        fields = config.get("fields")
        if isinstance(fields, Mapping):
            return dict(fields)
        return {_require(config, "field", action_type): config.get("value")}


class AddScoreHandler(ActionHandler):
    """Grant points through the scoring engine.

    Config: ``{"points": 10, "reason": "...", "expires_after_days": 30}``.
    """

    def __init__(self, scoring: "ScoringEngine") -> None:
        self._scoring = scoring

    async def execute(
        self, action_type: ActionType, config: Mapping[str, Any], contact_id: str
    ) -> MetadataPatch:
        try:
            points = int(_require(config, "points", action_type))
        except (TypeError, ValueError) as exc:
            raise ActionExecutionError(f"add_score points must be an integer: {exc}", retryable=False) from exc
        change = await self._scoring.grant(
            contact_id,
            points,
            reason=config.get("reason") or "workflow action",
            expires_after_days=config.get("expires_after_days"),
        )
        return {"score": change.score}


class WorkflowMembershipHandler(ActionHandler):
    """Enroll the contact into, or remove it from, another workflow.

    Config: ``{"workflow_id": "..."}``.
    """

    def __init__(self, graph: "GraphStore", tracker: "EnrollmentTracker") -> None:
        self._graph = graph
        self._tracker = tracker

    async def execute(
        self, action_type: ActionType, config: Mapping[str, Any], contact_id: str
    ) -> MetadataPatch:
        workflow_id = str(_require(config, "workflow_id", action_type))
        if action_type == ActionType.ADD_TO_WORKFLOW:
            try:
                workflow = await self._graph.load_workflow(workflow_id)
                enrollment = await self._tracker.enroll(workflow, contact_id)
            except AlreadyEnrolled as exc:
                logger.info(f"Contact {contact_id} already in workflow {workflow_id}")
                return {"added_to_workflow": workflow_id, "enrollment_id": exc.enrollment_id}
            except NurtureFlowError as exc:
                raise ActionExecutionError(str(exc), retryable=False) from exc
            return {"added_to_workflow": workflow_id, "enrollment_id": enrollment.id}

        open_ = await self._tracker.list(
            workflow_id=workflow_id,
            contact_id=contact_id,
            statuses=[EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED],
        )
        for enrollment in open_:
            await self._tracker.exit(enrollment.id, ExitReason.MANUAL)
        return {"removed_from_workflow": workflow_id}


class WebhookHandler(ActionHandler):
    """POST the contact and configured payload to an external URL.

    Config: ``{"url": "...", "method": "POST", "headers": {...}, "payload": {...}}``.
    Server errors and transport failures are retryable; client errors are not.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self._client = client
        self._timeout = timeout

    async def execute(
        self, action_type: ActionType, config: Mapping[str, Any], contact_id: str
    ) -> MetadataPatch:
        url = _require(config, "url", action_type)
        method = str(config.get("method", "POST")).upper()
        body = {"contact_id": contact_id, **dict(config.get("payload") or {})}
        headers = dict(config.get("headers") or {})
        try:
            if self._client is not None:
                response = await self._client.request(method, url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ActionExecutionError(f"Webhook {url} failed: {exc}") from exc

        if response.status_code >= 500:
            raise ActionExecutionError(f"Webhook {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise ActionExecutionError(
                f"Webhook {url} returned {response.status_code}", retryable=False
            )
        logger.info(f"Webhook {url} delivered for contact {contact_id}")
        return {"webhook_status": response.status_code}
