import pytest

from nurtureflow.actions import ActionRegistry
from nurtureflow.contracts import ActionType, EnrollmentStatus, StepOutcome
from nurtureflow.engine import AutomationEngine
from nurtureflow.execute import TickState
from nurtureflow.persistence import SQLRepository
from nurtureflow.scoring import ScoringRule


@pytest.mark.asyncio
async def test_engine_on_sqlite_survives_restart(tmp_path, clock, builder, emails):
    url = f"sqlite:///{tmp_path / 'automation.db'}"
    actions = ActionRegistry({ActionType.SEND_EMAIL: emails})

    engine = AutomationEngine(SQLRepository(url), actions=actions, clock=clock)
    wf = (
        builder("Drip", trigger_type="tag_added", trigger_config={"tag": "trial"})
        .trigger()
        .action("mark", "update_field", field="stage", value="trial")
        .delay("wait", duration=2, unit="days")
        .action("mail", "send_email", template="trial_ending")
        .chain("start", "mark", "wait", "mail")
        .build()
    )
    wf = await engine.save_workflow(wf)
    await engine.scoring.add_rule(ScoringRule(name="Trial", event_type="tag_added", points=10))

    routed = await engine.handle_event("tag_added", "c1", {"tag": "trial"})
    assert routed.score_change.score == 10
    enrollment_id = routed.enrollments[0].id

    report = await engine.run_due()
    assert report.count(TickState.WAITING) == 1
    await engine.close()

    # a fresh engine on the same database picks up where the first left off
    clock.advance(days=2)
    engine = AutomationEngine(SQLRepository(url), actions=actions, clock=clock)
    try:
        report = await engine.run_due()

        assert report.count(TickState.COMPLETED) == 1
        enrollment = await engine.tracker.get(enrollment_id)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert enrollment.metadata["stage"] == "trial"
        assert enrollment.wake_at is None
        assert emails.calls == [("send_email", {"template": "trial_ending"}, "c1")]

        history = await engine.history(enrollment_id)
        assert [h.outcome for h in history].count(StepOutcome.DELAY_SCHEDULED) == 1
        assert await engine.scoring.live_score("c1") == 10
        assert (await engine.graph.load_workflow(wf.id)).name == "Drip"
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_loop_guard_on_sqlite(tmp_path, clock, builder, alerts):
    async def collect(alert):
        alerts.append(alert)

    engine = AutomationEngine(
        SQLRepository(f"sqlite:///{tmp_path / 'loop.db'}"),
        actions=ActionRegistry(),
        clock=clock,
        alert_handler=collect,
    )
    try:
        wf = await engine.save_workflow(
            builder("Loop")
            .trigger()
            .action("bump", "update_field", field="seen", value=True)
            .condition("check", field="never", operator="is_true")
            .connect("start", "bump")
            .connect("bump", "check")
            .connect("check", "bump", handle="false")
            .build()
        )
        enrollment = await engine.enroll(wf.id, "c1")

        result = await engine.tick(enrollment.id)

        assert result.state == TickState.EXITED
        assert result.exit_reason == "loop_detected"
        assert [a.reason for a in alerts] == ["loop_detected"]
    finally:
        await engine.close()
