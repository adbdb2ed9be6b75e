from pathlib import Path

from taskrun.prompts import (
    DEFAULT_INSTRUCTION,
    build_aggregator_prompt,
    build_execute_prompt,
    build_task_context,
    build_verify_prompt,
    format_command_lines,
    task_request,
    truncate_for_prompt,
)
from taskrun.verification import GitSummary, VerifyResult

TASK = {"title": "Add CSV export", "content": "Export invoices as CSV from the billing page."}


def _result(exit_code: int) -> VerifyResult:
    return VerifyResult(
        id="pytest",
        label="python -m pytest -q",
        cmd="python",
        args=["-m", "pytest", "-q"],
        cwd=".",
        exit_code=exit_code,
        duration_ms=1250,
    )


def test_task_context_lists_request_and_markers() -> None:
    context = build_task_context(
        TASK,
        stage="execute",
        stage_prompt="Ship the export",
        stage_requirement="Export works",
        working_set="## Learnings\n- invoices live in billing/",
    )

    assert "Task: Add CSV export" in context
    assert "Export invoices as CSV" in context
    assert "Stage Objective: Ship the export" in context
    assert "- invoices live in billing/" in context
    assert "[learn: insight]" in context
    assert "(empty)" in build_task_context(
        TASK, stage="execute", stage_prompt="x", stage_requirement="y"
    )


def test_task_request_avoids_duplicate_title() -> None:
    assert task_request({"title": "Fix bug"}) == "Fix bug"
    assert task_request({"title": "Fix bug", "content": "Fix bug"}) == "Fix bug"
    assert task_request({"user_request": "Fix bug", "goal": "Crash on save"}) == (
        "Fix bug\nCrash on save"
    )


def test_execute_prompt_uses_instruction_or_default() -> None:
    assert DEFAULT_INSTRUCTION in build_execute_prompt(None, 1)
    prompt = build_execute_prompt("Rename the helper and rerun tests.", 3)
    assert "Iteration: 3" in prompt
    assert "Task for this iteration: Rename the helper and rerun tests." in prompt


def test_command_lines() -> None:
    assert format_command_lines([]) == "- (no verification commands detected)"
    assert format_command_lines([_result(1)]) == "- python -m pytest -q => exit=1 1250ms"


def test_verify_prompt_keeps_output_contract_under_cap(tmp_path: Path) -> None:
    prompt = build_verify_prompt(
        task_id="task-1",
        task=TASK,
        stage="execute",
        stage_prompt="Ship the export",
        stage_requirement="Export works",
        iteration=2,
        git=GitSummary(is_git=True, status_porcelain=" M billing/export.py\n", diff_stat=""),
        results=[_result(0)],
        agent_output="A" * 10000 + "FINAL LINE",
        run_root=tmp_path,
        max_chars=4000,
    )

    assert len(prompt) <= 4000
    assert "Output contract (strict)" in prompt
    assert "FINAL LINE" in prompt
    assert "M billing/export.py" in prompt
    assert str(tmp_path) in prompt


def test_aggregator_prompt_includes_thread_and_refs() -> None:
    prompt = build_aggregator_prompt(
        role="swarm",
        task_id="task-2",
        task={**TASK, "comments": [{"author": "ana", "content": "Use semicolons"}]},
        stage="execute",
        stage_prompt="Ship the export",
        stage_requirement="Export works",
        git=None,
        results=[],
        agent_output="[claude]\ndone\n\n[gemini]\nalso done",
        file_refs=["billing/export.py", ""],
    )

    assert "aggregator for a swarm run" in prompt
    assert "ana: Use semicolons" in prompt
    assert "- billing/export.py" in prompt
    assert "[gemini]\nalso done" in prompt
    assert "Output contract (strict)" in prompt


def test_truncate_for_prompt() -> None:
    assert truncate_for_prompt("abc", 10) == "abc"
    assert truncate_for_prompt("abcdef", 3) == "abc\n[truncated]"
    assert truncate_for_prompt(None) == ""
