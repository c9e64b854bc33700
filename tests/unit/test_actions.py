import json

import httpx
import pytest

from nurtureflow.actions import (
    ActionRegistry,
    AddScoreHandler,
    UpdateFieldHandler,
    WebhookHandler,
)
from nurtureflow.contracts import ActionType, EnrollmentStatus, ExitReason
from nurtureflow.errors import ActionExecutionError
from nurtureflow.scoring import ScoringEngine


@pytest.mark.asyncio
async def test_registry_dispatches_by_action_type():
    registry = ActionRegistry({"update_field": UpdateFieldHandler()})

    patch = await registry.execute(ActionType.UPDATE_FIELD, {"field": "stage", "value": "mql"}, "c1")

    assert patch == {"stage": "mql"}
    assert ActionType.UPDATE_FIELD in registry
    assert registry.registered() == frozenset({ActionType.UPDATE_FIELD})


@pytest.mark.asyncio
async def test_registry_rejects_unknown_action_without_retry():
    with pytest.raises(ActionExecutionError) as exc_info:
        await ActionRegistry().execute(ActionType.SEND_SMS, {}, "c1")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_update_field_accepts_several_fields():
    handler = UpdateFieldHandler()
    patch = await handler.execute(ActionType.UPDATE_FIELD, {"fields": {"a": 1, "b": 2}}, "c1")
    assert patch == {"a": 1, "b": 2}

    with pytest.raises(ActionExecutionError) as exc_info:
        await handler.execute(ActionType.UPDATE_FIELD, {"value": 1}, "c1")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_add_score_grants_points(repo, clock):
    scoring = ScoringEngine(repo, clock)
    handler = AddScoreHandler(scoring)

    patch = await handler.execute(ActionType.ADD_SCORE, {"points": "15", "reason": "webinar"}, "c1")

    assert patch == {"score": 15}
    history = await scoring.history("c1")
    assert history[0].reason == "webinar"

    with pytest.raises(ActionExecutionError):
        await handler.execute(ActionType.ADD_SCORE, {"points": "lots"}, "c1")


def _client(status_code, seen):
    def respond(request):
        seen.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.AsyncClient(transport=httpx.MockTransport(respond))


@pytest.mark.asyncio
async def test_webhook_posts_contact_and_payload():
    seen = []
    handler = WebhookHandler(_client(200, seen))

    patch = await handler.execute(
        ActionType.WEBHOOK,
        {"url": "https://hooks.example.com/lead", "payload": {"source": "workflow"}},
        "c1",
    )

    assert patch == {"webhook_status": 200}
    assert seen[0].method == "POST"
    assert seen[0].url == "https://hooks.example.com/lead"
    assert json.loads(seen[0].read()) == {"contact_id": "c1", "source": "workflow"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, retryable", [(503, True), (404, False)])
async def test_webhook_error_statuses(status_code, retryable):
    handler = WebhookHandler(_client(status_code, []))

    with pytest.raises(ActionExecutionError) as exc_info:
        await handler.execute(ActionType.WEBHOOK, {"url": "https://hooks.example.com"}, "c1")

    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_webhook_transport_errors_are_retryable():
    def fail(request):
        raise httpx.ConnectError("connection refused", request=request)

    handler = WebhookHandler(httpx.AsyncClient(transport=httpx.MockTransport(fail)))

    with pytest.raises(ActionExecutionError) as exc_info:
        await handler.execute(ActionType.WEBHOOK, {"url": "https://hooks.example.com"}, "c1")
    assert exc_info.value.retryable is True

    with pytest.raises(ActionExecutionError) as exc_info:
        await handler.execute(ActionType.WEBHOOK, {}, "c1")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_workflow_membership_actions(engine, builder):
    follow_up = await engine.save_workflow(
        builder("Follow up").trigger().action("mail", "send_email").chain("start", "mail").build()
    )
    main = await engine.save_workflow(
        builder("Main")
        .trigger()
        .action("move", "add_to_workflow", workflow_id=follow_up.id)
        .chain("start", "move")
        .build()
    )
    enrollment = await engine.enroll(main.id, "c1")

    await engine.tick(enrollment.id)

    stored = await engine.tracker.get(enrollment.id)
    assert stored.status == EnrollmentStatus.COMPLETED
    moved = await engine.tracker.list(workflow_id=follow_up.id, contact_id="c1")
    assert len(moved) == 1
    assert stored.metadata["enrollment_id"] == moved[0].id

    remover = await engine.save_workflow(
        builder("Remove")
        .trigger()
        .action("remove", "remove_from_workflow", workflow_id=follow_up.id)
        .chain("start", "remove")
        .build()
    )
    await engine.tick((await engine.enroll(remover.id, "c1")).id)

    removed = await engine.tracker.get(moved[0].id)
    assert removed.status == EnrollmentStatus.EXITED
    assert removed.exit_reason == ExitReason.MANUAL.value
