import pytest

from nurtureflow.config import NurtureFlowConfig, ScoringConfig
from nurtureflow.contracts import EnrollmentStatus, WorkflowStatus
from nurtureflow.engine import AutomationEngine
from nurtureflow.scoring import ScoringRule
from nurtureflow.triggers import TriggerMatcher


def _listener(builder, trigger_type, **trigger_config):
    return (
        builder(f"On {trigger_type}", trigger_type=trigger_type, trigger_config=trigger_config)
        .trigger()
        .action("mail", "send_email")
        .chain("start", "mail")
        .build()
    )


@pytest.mark.asyncio
async def test_dispatch_enrolls_matching_workflows(engine, builder):
    vip = await engine.save_workflow(_listener(builder, "tag_added", tag="vip"))
    any_tag = await engine.save_workflow(_listener(builder, "tag_added"))
    await engine.save_workflow(_listener(builder, "order_paid"))

    enrollments = await engine.matcher.dispatch("tag_added", "c1", {"tag": "vip"})

    assert {e.workflow_id for e in enrollments} == {vip.id, any_tag.id}
    assert enrollments[0].metadata == {"tag": "vip", "trigger_event": "tag_added"}
    assert enrollments[0].current_step_id == "start"


@pytest.mark.asyncio
async def test_dispatch_leaves_enrolled_contacts_alone(engine, builder):
    wf = await engine.save_workflow(_listener(builder, "tag_added"))

    first = await engine.matcher.dispatch("tag_added", "c1", {"tag": "a"})
    again = await engine.matcher.dispatch("tag_added", "c1", {"tag": "b"})

    assert len(first) == 1
    assert again == []
    assert len(await engine.tracker.list(workflow_id=wf.id)) == 1


@pytest.mark.asyncio
async def test_dispatch_without_listeners(engine):
    assert await engine.matcher.dispatch("order_paid", "c1") == []


@pytest.mark.asyncio
async def test_dispatch_skips_workflow_without_entry(engine, builder, caplog):
    broken = builder("Broken", trigger_type="order_paid").action("mail", "send_email").build()
    await engine.save_workflow(broken)

    assert await engine.matcher.dispatch("order_paid", "c1") == []
    assert "Cannot enroll contact c1" in caplog.text


@pytest.mark.asyncio
async def test_on_enrolled_callback(engine, builder):
    await engine.save_workflow(_listener(builder, "tag_added"))
    seen = []

    async def record(enrollment):
        seen.append(enrollment.contact_id)

    matcher = TriggerMatcher(engine.graph, engine.tracker, on_enrolled=record)
    await matcher.dispatch("tag_added", "c1")

    assert seen == ["c1"]


@pytest.mark.asyncio
async def test_tick_on_enroll_runs_first_tick(repo, clock, builder):
    engine = AutomationEngine(repo, clock=clock, tick_on_enroll=True)
    wf = await engine.save_workflow(
        builder("Tagger", trigger_type="order_paid")
        .trigger()
        .action("stage", "update_field", field="stage", value="customer")
        .chain("start", "stage")
        .build()
    )

    routed = await engine.handle_event("order_paid", "c1")

    stored = await engine.tracker.get(routed.enrollments[0].id)
    assert stored.workflow_id == wf.id
    assert stored.status == EnrollmentStatus.COMPLETED
    assert stored.metadata["stage"] == "customer"


@pytest.mark.asyncio
async def test_score_signals_trigger_workflows(repo, clock, builder):
    config = NurtureFlowConfig(scoring=ScoringConfig(thresholds=[50]))
    engine = AutomationEngine(repo, clock=clock, config=config)
    await engine.scoring.add_rule(ScoringRule(name="Demo", event_type="demo_requested", points=30))
    hot = await engine.save_workflow(
        _listener(builder, "score_threshold", threshold=50, direction="up")
    )
    changed = await engine.save_workflow(_listener(builder, "score_changed"))

    first = await engine.handle_event("demo_requested", "c1")

    assert first.score_change.score == 30
    assert first.enrollments == []
    assert [e.workflow_id for e in await engine.tracker.list(contact_id="c1")] == [changed.id]
    assert await engine.tracker.list(workflow_id=hot.id) == []

    await engine.handle_event("demo_requested", "c1")

    hot_enrollments = await engine.tracker.list(workflow_id=hot.id)
    assert len(hot_enrollments) == 1
    assert hot_enrollments[0].metadata == {
        "threshold": 50,
        "direction": "up",
        "score": 60,
        "trigger_event": "score_threshold",
    }


@pytest.mark.asyncio
async def test_inactive_workflows_are_not_triggered(engine, builder):
    await engine.save_workflow(
        _listener(builder, "tag_added").model_copy(update={"status": WorkflowStatus.PAUSED})
    )
    assert await engine.matcher.dispatch("tag_added", "c1") == []
