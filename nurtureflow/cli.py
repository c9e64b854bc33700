"""Command line interface for nurtureflow automations."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer
import yaml

from .config import NurtureFlowConfig, load_config
from .contracts import EnrollmentStatus, Workflow, WorkflowStatus
from .engine import AutomationEngine
from .errors import NurtureFlowError, WorkflowValidationError
from .persistence import get_repository
from .scoring import ScoringRule

T = TypeVar("T")

app = typer.Typer(help="CLI for nurtureflow workflow automations")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
enrollment_app = typer.Typer(help="Commands for managing enrollments")
scheduler_app = typer.Typer(help="Commands for running the scheduler")
score_app = typer.Typer(help="Commands for lead scoring")

app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(score_app, name="score")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to a nurtureflow YAML config file"
    ),
) -> None:
    """nurtureflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    logging.basicConfig(level=settings.log_level.upper())
    ctx.obj = {"config": settings, "explicit": config is not None}


def _run(ctx: typer.Context, func: Callable[[AutomationEngine], Awaitable[T]]) -> T:
    """Run ``func`` against an engine on the configured repository."""
    settings: NurtureFlowConfig = ctx.obj["config"]
    repository = get_repository(config=settings) if ctx.obj["explicit"] else get_repository()

    async def runner() -> T:
        engine = AutomationEngine(repository, config=settings)
        try:
            return await func(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except NurtureFlowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _read_document(path: Path) -> Dict[str, Any]:
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        typer.secho(f"{path} does not contain a mapping", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


# ----------------------------------------------------------------------
# workflow
@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context,
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only show this status"),
) -> None:
    """
    List workflows with their status and trigger.

    Example:
        nurtureflow workflow list --status active
        # Output: 3f2a...    Welcome series    active    student_created
    """
    workflows = _run(ctx, lambda engine: engine.graph.list_workflows(status=status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.status.value}\t{wf.trigger_type}")


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a workflow's steps and connections."""
    wf = _run(ctx, lambda engine: engine.graph.load_workflow(workflow_id))
    typer.echo(f"Workflow {wf.id}: {wf.name} ({wf.status.value}, version {wf.version})")
    typer.echo(f"Trigger: {wf.trigger_type} {wf.trigger_config or ''}".rstrip())
    for step in wf.steps:
        kind = step.type.value
        if step.action_type is not None:
            kind = f"{kind}:{step.action_type.value}"
        typer.echo(f"- {step.id} [{kind}] {step.name or ''}".rstrip())
    for conn in wf.connections:
        handle = f" ({conn.source_handle})" if conn.source_handle else ""
        typer.echo(f"  {conn.source_step_id} -> {conn.target_step_id}{handle}")


@workflow_app.command("import")
def workflow_import(
    ctx: typer.Context,
    path: Path,
    name: Optional[str] = typer.Option(None, help="Workflow name (canvas documents)"),
    trigger_type: Optional[str] = typer.Option(None, help="Event type that enrolls contacts"),
    publish: bool = typer.Option(False, help="Publish right after importing"),
) -> None:
    """
    Import a workflow from a YAML/JSON file.

    The file is either a workflow document (``steps``/``connections``) or a
    visual builder canvas (``nodes``/``edges``).

    Example:
        nurtureflow workflow import ./welcome.json --name "Welcome" --publish
    """
    document = _read_document(path)

    async def do_import(engine: AutomationEngine) -> Workflow:
        fields: Dict[str, Any] = {}
        if trigger_type:
            fields["trigger_type"] = trigger_type
        if "nodes" in document:
            wf = await engine.import_canvas(document, name or path.stem, **fields)
        else:
            data = {**document, **fields}
            if name:
                data["name"] = name
            data.setdefault("name", path.stem)
            wf = await engine.save_workflow(Workflow.model_validate(data))
        if publish:
            wf = await engine.publish_workflow(wf.id)
        return wf

    try:
        wf = _run(ctx, do_import)
    except ValueError as exc:
        typer.secho(f"Invalid workflow document: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Imported workflow {wf.id} ({wf.status.value})")


@workflow_app.command("publish")
def workflow_publish(ctx: typer.Context, workflow_id: str) -> None:
    """Validate and activate a workflow."""

    async def do_publish(engine: AutomationEngine) -> Optional[List[str]]:
        try:
            await engine.publish_workflow(workflow_id)
        except WorkflowValidationError as exc:
            return exc.errors
        return None

    errors = _run(ctx, do_publish)
    if errors:
        typer.secho(f"Workflow {workflow_id} is not valid:", fg=typer.colors.RED)
        for error in errors:
            typer.echo(f"- {error}")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} published")


@workflow_app.command("pause")
def workflow_pause(ctx: typer.Context, workflow_id: str) -> None:
    """Stop enrolling new contacts into a workflow."""
    _run(ctx, lambda engine: engine.pause_workflow(workflow_id))
    typer.echo(f"Workflow {workflow_id} paused")


@workflow_app.command("archive")
def workflow_archive(ctx: typer.Context, workflow_id: str) -> None:
    """Archive a workflow."""
    _run(ctx, lambda engine: engine.archive_workflow(workflow_id))
    typer.echo(f"Workflow {workflow_id} archived")


@workflow_app.command("stats")
def workflow_stats(ctx: typer.Context, workflow_id: str) -> None:
    """Show enrollment counts per status."""
    stats = _run(ctx, lambda engine: engine.workflow_stats(workflow_id))
    for status, count in stats.items():
        typer.echo(f"{status}\t{count}")


# ----------------------------------------------------------------------
# enrollment
@enrollment_app.command("list")
def enrollment_list(
    ctx: typer.Context,
    workflow_id: Optional[str] = typer.Option(None, "--workflow", help="Filter by workflow"),
    contact_id: Optional[str] = typer.Option(None, "--contact", help="Filter by contact"),
    status: Optional[EnrollmentStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List enrollments."""
    enrollments = _run(
        ctx,
        lambda engine: engine.tracker.list(
            workflow_id=workflow_id,
            contact_id=contact_id,
            statuses=[status] if status else None,
        ),
    )
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(f"{e.id}\t{e.workflow_id}\t{e.contact_id}\t{e.status.value}\t{e.current_step_id}")


@enrollment_app.command("show")
def enrollment_show(ctx: typer.Context, enrollment_id: str) -> None:
    """
    Show an enrollment and its step history.

    Example:
        nurtureflow enrollment show 5b1c...
        # Output: Enrollment 5b1c...: active at step delay-1
        #         Waiting until: 2024-01-02 10:00:00+00:00
        #         - trigger-1: succeeded (2024-01-01 10:00)
    """

    async def load(engine: AutomationEngine):
        return await engine.tracker.get(enrollment_id), await engine.history(enrollment_id)

    enrollment, history = _run(ctx, load)
    typer.echo(
        f"Enrollment {enrollment.id}: {enrollment.status.value} at step {enrollment.current_step_id}"
    )
    typer.echo(f"Workflow: {enrollment.workflow_id}  Contact: {enrollment.contact_id}")
    if enrollment.exit_reason:
        typer.echo(f"Exit reason: {enrollment.exit_reason}")
    if enrollment.wake_at:
        typer.echo(f"Waiting until: {enrollment.wake_at}")
    if enrollment.metadata:
        typer.echo(f"Metadata: {json.dumps(enrollment.metadata, default=str)}")
    for entry in history:
        branch = f" -> {entry.branch}" if entry.branch else ""
        error = f" [{entry.error}]" if entry.error else ""
        typer.echo(f"- {entry.step_id}: {entry.outcome.value}{branch} ({entry.created_at}){error}")


@enrollment_app.command("enroll")
def enrollment_enroll(
    ctx: typer.Context,
    workflow_id: str,
    contact_id: str,
    context: Optional[str] = typer.Option(None, help="JSON object seeding the metadata"),
    start: bool = typer.Option(False, help="Run the first tick immediately"),
) -> None:
    """Enroll a contact into a workflow."""
    seed = _parse_json(context, "--context")
    enrollment = _run(
        ctx, lambda engine: engine.enroll(workflow_id, contact_id, seed, start=start)
    )
    typer.echo(f"Enrolled {contact_id}: {enrollment.id} ({enrollment.status.value})")


@enrollment_app.command("pause")
def enrollment_pause(ctx: typer.Context, enrollment_id: str) -> None:
    """Pause an active enrollment."""
    _run(ctx, lambda engine: engine.pause(enrollment_id))
    typer.echo(f"Enrollment {enrollment_id} paused")


@enrollment_app.command("resume")
def enrollment_resume(ctx: typer.Context, enrollment_id: str) -> None:
    """Resume a paused enrollment at the step it stopped on."""
    _run(ctx, lambda engine: engine.resume(enrollment_id))
    typer.echo(f"Enrollment {enrollment_id} resumed")


@enrollment_app.command("exit")
def enrollment_exit(ctx: typer.Context, enrollment_id: str) -> None:
    """Remove the contact from the workflow."""
    enrollment = _run(ctx, lambda engine: engine.exit(enrollment_id))
    typer.echo(f"Enrollment {enrollment_id} {enrollment.status.value}")


@app.command("tick")
def tick(ctx: typer.Context, enrollment_id: str) -> None:
    """Advance one enrollment now."""
    result = _run(ctx, lambda engine: engine.tick(enrollment_id))
    typer.echo(
        f"Enrollment {enrollment_id}: {result.state.value}, "
        f"{result.steps_executed} steps, now at {result.current_step_id}"
    )


# ----------------------------------------------------------------------
# scheduler
@scheduler_app.command("run")
def scheduler_run(
    ctx: typer.Context,
    poll_interval: Optional[float] = None,
    lifespan: Optional[float] = None,
    once: bool = typer.Option(False, help="Process due enrollments once and exit"),
) -> None:
    """
    Tick due enrollments until stopped or lifespan expires.

    Example:
        nurtureflow scheduler run --poll-interval 10 --lifespan 300
        nurtureflow scheduler run --once
    """
    if once:
        report = _run(ctx, lambda engine: engine.run_due())
        typer.echo(f"Processed {len(report.results)} of {report.due} due enrollments")
        for enrollment_id, error in report.errors.items():
            typer.secho(f"- {enrollment_id}: {error}", fg=typer.colors.RED)
        return
    typer.echo("Starting scheduler")
    _run(ctx, lambda engine: engine.scheduler.run(poll_interval=poll_interval, lifespan=lifespan))


# ----------------------------------------------------------------------
# score
@score_app.command("show")
def score_show(ctx: typer.Context, contact_id: str) -> None:
    """Show a contact's live score and grant history."""

    async def load(engine: AutomationEngine):
        return await engine.scoring.live_score(contact_id), await engine.scoring.history(contact_id)

    score, history = _run(ctx, load)
    typer.echo(f"Contact {contact_id}: {score} points")
    for entry in history:
        expiry = f" (expires {entry.expires_at})" if entry.expires_at else ""
        typer.echo(f"- {entry.points:+d} {entry.reason or entry.event_type or ''}{expiry}")


@score_app.command("event")
def score_event(
    ctx: typer.Context,
    contact_id: str,
    event_type: str,
    payload: Optional[str] = typer.Option(None, help="JSON object with event data"),
) -> None:
    """Record a behavioral event: apply scoring rules and workflow triggers."""
    data = _parse_json(payload, "--payload")
    routed = _run(ctx, lambda engine: engine.handle_event(event_type, contact_id, data))
    if routed.score_change is not None:
        change = routed.score_change
        typer.echo(f"Score {change.previous_score} -> {change.score} ({change.delta:+d})")
    else:
        typer.echo("No scoring rules fired")
    for enrollment in routed.enrollments:
        typer.echo(f"Enrolled in workflow {enrollment.workflow_id}: {enrollment.id}")


@score_app.command("add-rule")
def score_add_rule(ctx: typer.Context, path: Path) -> None:
    """Create a scoring rule from a YAML/JSON file."""
    document = _read_document(path)
    try:
        rule = ScoringRule.model_validate(document)
    except ValueError as exc:
        typer.secho(f"Invalid scoring rule: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _run(ctx, lambda engine: engine.scoring.add_rule(rule))
    typer.echo(f"Added scoring rule {rule.id} ({rule.event_type}, {rule.points:+d})")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
