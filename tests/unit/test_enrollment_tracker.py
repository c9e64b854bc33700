import asyncio

import pytest

from nurtureflow.contracts import EnrollmentStatus, ExitReason, ReentryPolicy, WorkflowStatus
from nurtureflow.enrollment import EnrollmentTracker
from nurtureflow.errors import (
    AlreadyEnrolled,
    EnrollmentNotFound,
    GraphIntegrityError,
    InvalidTransition,
    WorkflowInactive,
)


def _workflow(builder, **fields):
    return (
        builder(**fields)
        .trigger()
        .action("mail", "send_email")
        .chain("start", "mail")
        .build()
    )


@pytest.mark.asyncio
async def test_enroll_starts_at_entry_step(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)

    enrollment = await tracker.enroll(_workflow(builder), "c1", {"source": "form"})

    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.current_step_id == "start"
    assert enrollment.entered_at == clock.now()
    assert enrollment.metadata == {"source": "form"}
    assert (await tracker.get(enrollment.id)).id == enrollment.id


@pytest.mark.asyncio
async def test_enroll_requires_active_workflow(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    draft = (
        builder().trigger().action("mail", "send_email").chain("start", "mail")
        .build(status=WorkflowStatus.DRAFT)
    )

    with pytest.raises(WorkflowInactive):
        await tracker.enroll(draft, "c1")


@pytest.mark.asyncio
async def test_enroll_without_entry_step_is_a_graph_error(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    no_trigger = builder().action("mail", "send_email").build()

    with pytest.raises(GraphIntegrityError):
        await tracker.enroll(no_trigger, "c1")


@pytest.mark.asyncio
async def test_default_policy_allows_reentry_only_after_terminal(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    wf = _workflow(builder)
    first = await tracker.enroll(wf, "c1")

    with pytest.raises(AlreadyEnrolled) as exc_info:
        await tracker.enroll(wf, "c1")
    assert exc_info.value.enrollment_id == first.id

    await tracker.pause(first.id)
    with pytest.raises(AlreadyEnrolled):
        await tracker.enroll(wf, "c1")

    await tracker.exit(first.id)
    second = await tracker.enroll(wf, "c1")
    assert second.id != first.id


@pytest.mark.asyncio
async def test_reject_policy_refuses_any_reentry(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    wf = _workflow(builder, reentry=ReentryPolicy.REJECT)
    first = await tracker.enroll(wf, "c1")
    await tracker.exit(first.id)

    with pytest.raises(AlreadyEnrolled):
        await tracker.enroll(wf, "c1")


@pytest.mark.asyncio
async def test_restart_policy_exits_the_open_enrollment(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    wf = _workflow(builder, reentry=ReentryPolicy.RESTART)
    first = await tracker.enroll(wf, "c1")

    second = await tracker.enroll(wf, "c1")

    old = await tracker.get(first.id)
    assert old.status == EnrollmentStatus.EXITED
    assert old.exit_reason == ExitReason.RESTARTED.value
    active = await tracker.list(workflow_id=wf.id, statuses=[EnrollmentStatus.ACTIVE])
    assert [e.id for e in active] == [second.id]


@pytest.mark.asyncio
async def test_concurrent_enrollments_create_one_active(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    wf = _workflow(builder)

    results = await asyncio.gather(
        *(tracker.enroll(wf, "c1") for _ in range(5)), return_exceptions=True
    )

    created = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(created) == 1
    assert len(rejected) == 4
    assert all(isinstance(r, AlreadyEnrolled) for r in rejected)


@pytest.mark.asyncio
async def test_state_machine_transitions(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    enrollment = await tracker.enroll(_workflow(builder), "c1")

    with pytest.raises(InvalidTransition):
        await tracker.resume(enrollment.id)

    paused = await tracker.pause(enrollment.id)
    assert paused.paused_at == clock.now()
    with pytest.raises(InvalidTransition):
        await tracker.pause(enrollment.id)
    with pytest.raises(InvalidTransition):
        await tracker.complete(enrollment.id)

    resumed = await tracker.resume(enrollment.id)
    assert resumed.status == EnrollmentStatus.ACTIVE
    assert resumed.paused_at is None

    completed = await tracker.complete(enrollment.id)
    assert completed.status == EnrollmentStatus.COMPLETED
    assert completed.completed_at == clock.now()

    # terminal operations are idempotent
    assert (await tracker.complete(enrollment.id)).status == EnrollmentStatus.COMPLETED
    after_exit = await tracker.exit(enrollment.id)
    assert after_exit.status == EnrollmentStatus.COMPLETED
    assert after_exit.exited_at is None
    with pytest.raises(InvalidTransition):
        await tracker.pause(enrollment.id)


@pytest.mark.asyncio
async def test_exit_from_paused(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    enrollment = await tracker.enroll(_workflow(builder), "c1")
    await tracker.pause(enrollment.id)

    exited = await tracker.exit(enrollment.id, "unsubscribed")

    assert exited.status == EnrollmentStatus.EXITED
    assert exited.exit_reason == "unsubscribed"
    assert exited.completed_at is None


@pytest.mark.asyncio
async def test_get_unknown_enrollment(repo, clock):
    tracker = EnrollmentTracker(repo, clock)
    with pytest.raises(EnrollmentNotFound):
        await tracker.get("nope")


@pytest.mark.asyncio
async def test_stats_and_exit_all(repo, clock, builder):
    tracker = EnrollmentTracker(repo, clock)
    wf = _workflow(builder)
    a = await tracker.enroll(wf, "a")
    b = await tracker.enroll(wf, "b")
    c = await tracker.enroll(wf, "c")
    await tracker.pause(b.id)
    await tracker.complete(c.id)

    stats = await tracker.stats(wf.id)
    assert stats == {"active": 1, "paused": 1, "completed": 1, "exited": 0, "total": 3}

    exited = await tracker.exit_all(wf.id, ExitReason.WORKFLOW_INACTIVE)
    assert {e.id for e in exited} == {a.id, b.id}
    stats = await tracker.stats(wf.id)
    assert stats["exited"] == 2
    assert stats["completed"] == 1
