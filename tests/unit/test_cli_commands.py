import asyncio
import json

import pytest
from typer.testing import CliRunner

import nurtureflow.persistence as persistence
from nurtureflow.cli import app
from nurtureflow.contracts import EnrollmentStatus, Workflow, WorkflowStatus
from nurtureflow.persistence import InMemoryRepository

runner = CliRunner()

CANVAS = {
    "nodes": [
        {"id": "t1", "type": "trigger", "data": {"label": "Signed up", "triggerType": "student_created"}},
        {
            "id": "a1",
            "type": "action",
            "data": {"actionType": "update_field", "config": {"field": "stage", "value": "lead"}},
        },
    ],
    "edges": [{"id": "e1", "source": "t1", "target": "a1"}],
}


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    monkeypatch.delenv("NURTUREFLOW_CONFIG", raising=False)
    monkeypatch.delenv("NURTUREFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.chdir(tmp_path)


def _setup_repo() -> InMemoryRepository:
    repo = InMemoryRepository()
    persistence.set_repository(repo)
    return repo


def _import_canvas(repo, tmp_path) -> str:
    path = tmp_path / "signup.json"
    path.write_text(json.dumps(CANVAS))
    result = runner.invoke(app, ["workflow", "import", str(path), "--name", "Signup", "--publish"])
    assert result.exit_code == 0, result.output
    assert "(active)" in result.output
    return asyncio.run(repo.list_workflows())[0].id


def test_workflow_list_and_show(tmp_path):
    repo = _setup_repo()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.output
    assert "No workflows found" in result.output

    workflow_id = _import_canvas(repo, tmp_path)

    result = runner.invoke(app, ["workflow", "list", "--status", "active"])
    assert workflow_id in result.output
    assert "Signup" in result.output
    assert "student_created" in result.output

    result = runner.invoke(app, ["workflow", "show", workflow_id])
    assert result.exit_code == 0, result.output
    assert "- a1 [action:update_field]" in result.output
    assert "t1 -> a1" in result.output


def test_missing_workflow_exits_with_error():
    _setup_repo()
    result = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Workflow missing-id not found" in result.output


def test_publish_reports_validation_errors():
    repo = _setup_repo()
    draft = Workflow(name="Empty", steps=[{"id": "t", "type": "trigger"}])
    asyncio.run(repo.save_workflow(draft))

    result = runner.invoke(app, ["workflow", "publish", draft.id])

    assert result.exit_code == 1
    assert "Workflow must have at least one action" in result.output
    assert asyncio.run(repo.get_workflow(draft.id)).status == WorkflowStatus.DRAFT


def test_import_rejects_invalid_document(tmp_path):
    _setup_repo()
    path = tmp_path / "broken.yaml"
    path.write_text("steps:\n  - type: teleport\n")

    result = runner.invoke(app, ["workflow", "import", str(path)])

    assert result.exit_code == 1
    assert "Invalid workflow document" in result.output


def test_enroll_tick_and_show(tmp_path):
    repo = _setup_repo()
    workflow_id = _import_canvas(repo, tmp_path)

    result = runner.invoke(
        app, ["enrollment", "enroll", workflow_id, "c1", "--context", '{"source": "cli"}']
    )
    assert result.exit_code == 0, result.output
    assert "Enrolled c1:" in result.output
    enrollment_id = asyncio.run(repo.list_enrollments(workflow_id=workflow_id))[0].id

    result = runner.invoke(app, ["tick", enrollment_id])
    assert result.exit_code == 0, result.output
    assert f"Enrollment {enrollment_id}: completed, 2 steps" in result.output

    result = runner.invoke(app, ["enrollment", "show", enrollment_id])
    assert result.exit_code == 0, result.output
    assert "completed at step a1" in result.output
    assert '"stage": "lead"' in result.output
    assert "- t1: succeeded" in result.output

    result = runner.invoke(app, ["enrollment", "list", "--contact", "c1"])
    assert enrollment_id in result.output


def test_enrollment_lifecycle_commands(tmp_path):
    repo = _setup_repo()
    workflow_id = _import_canvas(repo, tmp_path)
    runner.invoke(app, ["enrollment", "enroll", workflow_id, "c1"])
    enrollment_id = asyncio.run(repo.list_enrollments())[0].id

    result = runner.invoke(app, ["enrollment", "pause", enrollment_id])
    assert result.exit_code == 0, result.output
    result = runner.invoke(app, ["enrollment", "pause", enrollment_id])
    assert result.exit_code == 1
    assert "cannot move from paused to paused" in result.output

    assert runner.invoke(app, ["enrollment", "resume", enrollment_id]).exit_code == 0
    result = runner.invoke(app, ["enrollment", "exit", enrollment_id])
    assert f"Enrollment {enrollment_id} exited" in result.output
    stored = asyncio.run(repo.get_enrollment(enrollment_id))
    assert stored.status == EnrollmentStatus.EXITED
    assert stored.exit_reason == "manual"


def test_enroll_rejects_bad_context(tmp_path):
    repo = _setup_repo()
    workflow_id = _import_canvas(repo, tmp_path)
    result = runner.invoke(app, ["enrollment", "enroll", workflow_id, "c1", "--context", "[1]"])
    assert result.exit_code == 1
    assert "--context must be a JSON object" in result.output


def test_scoring_commands(tmp_path):
    _setup_repo()
    rule = tmp_path / "rule.yaml"
    rule.write_text("name: Webinar\nevent_type: webinar_attended\npoints: 20\n")

    result = runner.invoke(app, ["score", "add-rule", str(rule)])
    assert result.exit_code == 0, result.output
    assert "webinar_attended, +20" in result.output

    result = runner.invoke(app, ["score", "event", "c1", "webinar_attended"])
    assert "Score 0 -> 20 (+20)" in result.output

    result = runner.invoke(app, ["score", "event", "c1", "page_viewed"])
    assert "No scoring rules fired" in result.output

    result = runner.invoke(app, ["score", "show", "c1"])
    assert "Contact c1: 20 points" in result.output


def test_event_enrolls_triggered_workflow(tmp_path):
    repo = _setup_repo()
    workflow_id = _import_canvas(repo, tmp_path)

    result = runner.invoke(app, ["score", "event", "c1", "student_created", "--payload", "{}"])

    assert result.exit_code == 0, result.output
    assert f"Enrolled in workflow {workflow_id}" in result.output


def test_scheduler_run_once(tmp_path):
    repo = _setup_repo()
    workflow_id = _import_canvas(repo, tmp_path)
    runner.invoke(app, ["enrollment", "enroll", workflow_id, "c1"])
    runner.invoke(app, ["enrollment", "enroll", workflow_id, "c2"])

    result = runner.invoke(app, ["scheduler", "run", "--once"])

    assert result.exit_code == 0, result.output
    assert "Processed 2 of 2 due enrollments" in result.output
    statuses = {e.status for e in asyncio.run(repo.list_enrollments())}
    assert statuses == {EnrollmentStatus.COMPLETED}
