from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from string import Template
from typing import Any

from taskrun.verification import GitSummary, VerifyResult

DEFAULT_INSTRUCTION = "Pick the next concrete step and implement it."
REQUEST_MAX_CHARS = 2500
AGENT_OUTPUT_MAX_CHARS = 3000
GIT_STATUS_MAX_LINES = 80
DIFF_STAT_MAX_LINES = 60
VERIFY_PROMPT_MAX_CHARS = 6000
FILE_REFS_MAX = 20

TASK_CONTEXT_TEMPLATE = Template(
    """Task: $title
Stage: $stage

User Request:
\"\"\"
$request
\"\"\"

Stage Objective: $stage_prompt
Stage Completion Requirement: $stage_requirement

Working set (notes carried between runs):
$working_set

Markers you can emit while working:
- [checkpoint: message] save a progress checkpoint
- [learn: insight] record a learning
- [progress: N%] report progress
- [blocked: reason] report a blocker
- [plan: text] / [todo: text] update the plan or todo list
- [log: message] add a log entry
- [complete: message] / [done] mark the stage complete
"""
)

EXECUTE_ITERATION_TEMPLATE = Template(
    """WORK PHASE
Iteration: $iteration

Keep output concise and avoid dumping full file contents or long logs.
If you need to reference code, cite paths and describe changes instead of pasting whole files.

Output contract:
- Start with "PLAN:" then 2-5 bullets.
- Do the work.
- End with "IMPLEMENTATION SUMMARY:" bullets:
  - Changed: (paths only, 10 max)
  - Commands: (what you ran)
  - Notes:

Task for this iteration: $instruction

Do not output JSON in this phase.
"""
)

VERIFY_TEMPLATE = Template(
    """You are the validator for a taskrun iteration.

Task ID: $task_id
Title: $title
Stage: $stage
Iteration: $iteration

Stage Objective: $stage_prompt
Stage Completion Requirement: $stage_requirement

Local run artifacts folder: $run_root

User Request:
\"\"\"
$request
\"\"\"

Determine whether the user request is actually satisfied in the codebase.
Read the source files that should contain the implementation first; use the
validation command results as supporting evidence and git status/diff as
secondary context. Absence of a diff does not mean the work is incomplete.

Repo summary (git):
Status (porcelain):
$status_short

Diff (stat):
$diff_short

Validation commands:
$command_lines

Agent output (last iteration):
$agent_output

Decide if the stage is complete. Ignore unrelated working tree changes.
If not complete, provide the next smallest instruction for another iteration.

Output contract (strict): your response MUST be exactly one raw JSON object with this shape:
{
  "done": false,
  "decision": "done|blocked|not_done|failed",
  "explanation": "clear explanation of the decision",
  "final_result": "final result if done, empty string otherwise",
  "next_prompt": "specific actionable instruction for next iteration",
  "summary": "brief summary of current state",
  "plan_md": "PLAN markdown for this iteration (newlines escaped)",
  "implementation_summary_md": "IMPLEMENTATION SUMMARY markdown (newlines escaped)",
  "verification_md": "VALIDATION markdown (newlines escaped)"
}

Rules:
- Use double-quoted keys and strings.
- Keep newlines escaped inside strings.
- Keep the markdown fields short and checklist-style.
"""
)

AGGREGATOR_TEMPLATE = Template(
    """You are the decision aggregator for a $role run.

Task ID: $task_id
Title: $title
Stage: $stage

User Request:
\"\"\"
$request
---
Task Thread:
$comments
\"\"\"

Stage Objective: $stage_prompt
Stage Completion Requirement: $stage_requirement

Local run artifacts folder: $run_root
Key run files:
$run_files

Relevant files referenced during recent runs (detected from output/logs):
$refs_block

Repo summary (git):
$status_short

Validation commands:
$command_lines

Agent outputs:
$agent_output

Decide if the task is done. If not, provide the next instruction for another iteration.
Only set "done": true when the Stage Completion Requirement is satisfied.

Output contract (strict):
- Respond with exactly one raw JSON object
- Do not use markdown/code fences/backticks around the JSON
- Use double-quoted keys and strings
- Keep newlines escaped inside strings
- If "done" is false, "next_prompt" must be a non-empty actionable instruction

The JSON must have this exact shape:
{
  "done": false,
  "decision": "done|blocked|not_done|failed",
  "explanation": "clear explanation of the decision",
  "final_result": "final result if done, empty string otherwise",
  "next_prompt": "specific actionable instruction for next iteration",
  "summary": "brief summary of current state"
}

If uncertain, still return valid JSON with decision "failed" and explain why in "explanation".
"""
)

RUN_FILES = (
    ("output.md", "agent output"),
    ("prompt.md", "prompts captured during the run"),
    ("decision.json", "final decision payload"),
    ("events.ndjson", "engine trace + run events"),
    ("artifacts", "additional artifacts, if any"),
)


def truncate_for_prompt(text: str | None, max_chars: int = VERIFY_PROMPT_MAX_CHARS) -> str:
    value = text or ""
    cap = max_chars if max_chars > 0 else VERIFY_PROMPT_MAX_CHARS
    if len(value) <= cap:
        return value
    return f"{value[:cap]}\n[truncated]"


def _head(text: str, max_chars: int) -> str:
    value = text.strip()
    if len(value) <= max_chars:
        return value
    return f"{value[:max_chars]}\n[truncated]"


def _tail(text: str, max_chars: int) -> str:
    value = text.strip()
    if max_chars <= 0:
        return ""
    if len(value) <= max_chars:
        return value
    return f"{value[-max_chars:]}\n[truncated to last {max_chars} chars]"


def _fit_prompt(render: Callable[[int], str], max_chars: int) -> str:
    """Render, shrinking the agent output budget so the output contract survives the cap."""

    budget = AGENT_OUTPUT_MAX_CHARS
    prompt = render(budget)
    if len(prompt) > max_chars:
        budget = max(0, budget - (len(prompt) - max_chars))
        prompt = render(budget)
    return truncate_for_prompt(prompt, max_chars)


def _first_lines(text: str, max_lines: int) -> str:
    value = text.strip()
    return "\n".join(value.splitlines()[:max_lines]) if value else ""


def task_title(task: Mapping[str, Any], fallback: str = "") -> str:
    return str(task.get("title") or task.get("user_request") or fallback).strip()


def task_request(task: Mapping[str, Any]) -> str:
    content = str(task.get("content") or task.get("goal") or "").strip()
    title = task_title(task)
    return f"{title}\n{content}".strip() if content and content != title else title


def format_command_lines(results: Sequence[VerifyResult]) -> str:
    if not results:
        return "- (no verification commands detected)"
    lines = []
    for result in results:
        label = result.label or " ".join([result.cmd, *result.args]).strip()
        lines.append(f"- {label} => exit={result.exit_code} {result.duration_ms}ms".strip())
    return "\n".join(lines)


def build_task_context(
    task: Mapping[str, Any],
    *,
    stage: str,
    stage_prompt: str,
    stage_requirement: str,
    working_set: str = "",
) -> str:
    return TASK_CONTEXT_TEMPLATE.substitute(
        title=task_title(task, "untitled"),
        stage=stage,
        request=_head(task_request(task), REQUEST_MAX_CHARS),
        stage_prompt=stage_prompt,
        stage_requirement=stage_requirement,
        working_set=working_set.strip() or "(empty)",
    )


def build_execute_prompt(next_prompt: str | None, iteration: int) -> str:
    instruction = (next_prompt or "").strip() or DEFAULT_INSTRUCTION
    return EXECUTE_ITERATION_TEMPLATE.substitute(iteration=iteration, instruction=instruction)


def build_verify_prompt(
    *,
    task_id: str,
    task: Mapping[str, Any],
    stage: str,
    stage_prompt: str,
    stage_requirement: str,
    iteration: int,
    git: GitSummary | None,
    results: Sequence[VerifyResult],
    agent_output: str,
    run_root: Path | None = None,
    max_chars: int = VERIFY_PROMPT_MAX_CHARS,
) -> str:
    def _render(output_budget: int) -> str:
        return VERIFY_TEMPLATE.substitute(
            task_id=task_id,
            title=task_title(task, task_id),
            stage=stage,
            iteration=iteration,
            stage_prompt=stage_prompt,
            stage_requirement=stage_requirement,
            run_root=str(run_root) if run_root else "(not available)",
            request=_head(task_request(task), REQUEST_MAX_CHARS),
            status_short=_first_lines(git.status_porcelain if git else "", GIT_STATUS_MAX_LINES)
            or "(none)",
            diff_short=_first_lines(git.diff_stat if git else "", DIFF_STAT_MAX_LINES) or "(none)",
            command_lines=format_command_lines(results),
            agent_output=_tail(agent_output or "", output_budget) or "(not available)",
        )

    return _fit_prompt(_render, max_chars)


def _run_files_block(run_root: Path | None) -> str:
    if run_root is None:
        return "\n".join(f"- {name} ({description})" for name, description in RUN_FILES)
    return "\n".join(f"- {run_root / name} ({description})" for name, description in RUN_FILES)


def build_aggregator_prompt(
    *,
    role: str,
    task_id: str,
    task: Mapping[str, Any],
    stage: str,
    stage_prompt: str,
    stage_requirement: str,
    git: GitSummary | None,
    results: Sequence[VerifyResult],
    agent_output: str,
    run_root: Path | None = None,
    file_refs: Iterable[str] = (),
    max_chars: int = VERIFY_PROMPT_MAX_CHARS,
) -> str:
    comments = task.get("comments") or []
    comment_lines = "\n".join(
        f"{comment.get('author', 'unknown')}: {comment.get('content', '')}"
        for comment in comments
        if isinstance(comment, Mapping)
    )
    refs = [ref for ref in file_refs if ref][:FILE_REFS_MAX]

    def _render(output_budget: int) -> str:
        return AGGREGATOR_TEMPLATE.substitute(
            role=role,
            task_id=task_id,
            title=task_title(task, task_id),
            stage=stage,
            request=_head(task_request(task), REQUEST_MAX_CHARS),
            comments=comment_lines or "(none)",
            stage_prompt=stage_prompt,
            stage_requirement=stage_requirement,
            run_root=str(run_root) if run_root else "(not available)",
            run_files=_run_files_block(run_root),
            refs_block="\n".join(f"- {ref}" for ref in refs) or "- (none detected)",
            status_short=_first_lines(git.status_porcelain if git else "", GIT_STATUS_MAX_LINES)
            or "(none)",
            command_lines=format_command_lines(results),
            agent_output=_tail(agent_output or "", output_budget) or "(not available)",
        )

    return _fit_prompt(_render, max_chars)
