import json
import socket
from pathlib import Path

from taskrun.artifacts import (
    ARTIFACT_ERRORS_LOG,
    DEFAULT_VERIFICATION_MD,
    RunArtifacts,
    local_artifact_key,
    persist_iteration_artifacts,
)
from taskrun.storage import TaskStore
from taskrun.verification import GitSummary, VerifyCommand, VerifyResult


def _runs(tmp_path: Path):
    store = TaskStore(tmp_path / "home")
    store.write_project_state("demo", {"label": "demo"})
    slug = store.create_task("demo", user_request="Write docs")["task_slug"]
    execute = store.create_run("demo", slug, "execute", engine="claude")
    verify = store.create_run("demo", slug, "verify", engine="claude", run_id=execute.run_id)
    return store, execute, verify


def test_flush_renders_sections(tmp_path: Path) -> None:
    store, execute, _ = _runs(tmp_path)
    artifacts = RunArtifacts(store, execute)
    artifacts.record_prompt("Initial Task Context", "Task: Write docs")
    artifacts.record_prompt("Skipped", "")
    artifacts.record_output("Agent Output (claude)", "wrote README\n")

    artifacts.flush()

    assert execute.paths.prompt.read_text() == (
        "# Initial Task Context\n\nTask: Write docs\n\n---\n"
    )
    assert execute.paths.output.read_text().startswith("# Agent Output (claude)\n\nwrote README")


def test_flush_on_finalized_run_goes_to_error_log(tmp_path: Path) -> None:
    store, execute, _ = _runs(tmp_path)
    store.finalize_run(execute, status="done")
    artifacts = RunArtifacts(store, execute)
    artifacts.record_output("Late Output", "too late")

    artifacts.flush()

    error_log = (execute.container / ARTIFACT_ERRORS_LOG).read_text()
    assert "execute artifact flush failed" in error_log
    assert not execute.paths.output.exists()


def test_persist_iteration_artifacts_without_decision(tmp_path: Path) -> None:
    store, execute, verify = _runs(tmp_path)
    command = VerifyCommand(id="npm test", label="npm test", cmd="npm", args=["test"])
    result = VerifyResult(
        id="npm test",
        label="npm test",
        cmd="npm",
        args=["test"],
        cwd=".",
        exit_code=1,
        duration_ms=40,
        stdout="1 failing",
        stderr="",
    )

    persist_iteration_artifacts(
        store,
        execute_run=execute,
        verify_run=verify,
        decision=None,
        commands=[command],
        results=[result],
        git=GitSummary(is_git=True, status_porcelain=" M README.md\n"),
    )

    assert (verify.paths.artifacts / "verification.md").read_text() == DEFAULT_VERIFICATION_MD
    summary = json.loads((verify.paths.artifacts / "verify_commands.json").read_text())
    assert summary["results"][0]["exit_code"] == 1
    assert summary["git"]["is_git"] is True
    stdout_log = verify.paths.artifacts / "verify_results" / "01-npm_test.stdout.txt"
    assert stdout_log.read_text() == "1 failing"
    assert (verify.paths.artifacts / "git_status.txt").exists()
    assert not (verify.paths.artifacts / "git_diffstat.txt").exists()
    assert not (verify.paths.artifacts / "decision.json").exists()
    assert (execute.container / "plan" / "plan.md").exists()


def test_local_artifact_key() -> None:
    host = socket.gethostname()

    assert local_artifact_key("/tmp/run") == f"local://{host}/tmp/run"
    assert local_artifact_key("relative/run") == f"local://{host}/relative/run"
    assert local_artifact_key(None) == f"local://{host}/"
