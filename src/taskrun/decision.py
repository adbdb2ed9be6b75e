"""Structured decisions extracted from free-form agent output.

Parsing and normalization are separate steps: ``parse_decision`` only finds a
JSON object in the text, ``fill_defaults`` coerces it into a ``Decision`` and
the ``ensure_*`` helpers backfill the invariants the loop relies on.
"""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, replace
from enum import StrEnum
from typing import Any, Literal

from taskrun.stages import get_stage_requirement, has_required_artifact

DecisionValue = Literal["done", "blocked", "not_done", "failed"]
DECISION_VALUES: tuple[str, ...] = ("done", "blocked", "not_done", "failed")
TERMINAL_DECISIONS = frozenset({"done", "blocked", "failed"})

DECISION_TO_RUN_STATUS = {
    "done": "done",
    "blocked": "blocked",
    "not_done": "continue",
    "failed": "failed",
}
DECISION_TO_TASK_STATUS = {
    "done": "done",
    "blocked": "blocked",
    "not_done": "running",
    "failed": "failed",
}

VERIFIER_INVALID_JSON = "Verifier returned invalid JSON."
AGGREGATOR_INVALID_JSON = "Aggregator response was not valid JSON."
CONTINUE_INSTRUCTION = "Continue the task: pick the next concrete step and implement it."

_FENCE_PATTERN = re.compile(r"```json\s*", re.IGNORECASE)
_BARE_FENCE_PATTERN = re.compile(r"```\s*")
_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")


class ParseStrategy(StrEnum):
    FIRST_MATCH = "first_match"
    LAST_MATCH = "last_match"


@dataclass(slots=True)
class DecisionParseError:
    strategy: ParseStrategy
    message: str


@dataclass(slots=True)
class DecisionParse:
    payload: dict[str, Any] | None = None
    error: DecisionParseError | None = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


@dataclass(slots=True)
class Decision:
    done: bool = False
    decision: DecisionValue = "not_done"
    explanation: str = ""
    final_result: str = ""
    next_prompt: str = ""
    summary: str = ""
    plan_md: str = ""
    implementation_summary_md: str = ""
    verification_md: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.decision in TERMINAL_DECISIONS

    @property
    def run_status(self) -> str:
        return DECISION_TO_RUN_STATUS.get(self.decision, "failed")

    @property
    def task_status(self) -> str:
        return DECISION_TO_TASK_STATUS.get(self.decision, "failed")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _clean(text: str) -> str:
    cleaned = _FENCE_PATTERN.sub("", text)
    cleaned = _BARE_FENCE_PATTERN.sub("", cleaned)
    return _ANSI_PATTERN.sub("", cleaned)


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_first(text: str | None) -> dict[str, Any] | None:
    """First JSON object in the text, for prompts told to emit JSON only."""

    if not text:
        return None
    cleaned = _clean(str(text))
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first == -1 or last <= first:
        return None

    whole = _loads_object(cleaned[first : last + 1])
    if whole is not None:
        return whole

    for start, char in enumerate(cleaned):
        if char != "{":
            continue
        depth = 0
        for end in range(start, len(cleaned)):
            if cleaned[end] == "{":
                depth += 1
            elif cleaned[end] == "}":
                depth -= 1
                if depth == 0:
                    payload = _loads_object(cleaned[start : end + 1])
                    if payload is not None:
                        return payload
                    break
    return None


def extract_json_last(text: str | None) -> dict[str, Any] | None:
    """Last balanced JSON object in the text, for output that reasons before answering."""

    if not text:
        return None
    cleaned = _clean(str(text))
    for end in range(len(cleaned) - 1, -1, -1):
        if cleaned[end] != "}":
            continue
        depth = 0
        for start in range(end, -1, -1):
            if cleaned[start] == "}":
                depth += 1
            elif cleaned[start] == "{":
                depth -= 1
                if depth == 0:
                    payload = _loads_object(cleaned[start : end + 1])
                    if payload is not None:
                        return payload
                    break
    return None


_EXTRACTORS = {
    ParseStrategy.FIRST_MATCH: extract_json_first,
    ParseStrategy.LAST_MATCH: extract_json_last,
}


def parse_decision(text: str | None, strategy: ParseStrategy) -> DecisionParse:
    payload = _EXTRACTORS[ParseStrategy(strategy)](text)
    if payload is None:
        return DecisionParse(
            error=DecisionParseError(
                strategy=ParseStrategy(strategy),
                message="No parseable JSON object found in output.",
            )
        )
    return DecisionParse(payload=payload)


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def fill_defaults(payload: dict[str, Any]) -> Decision:
    raw_decision = _as_text(payload.get("decision")).strip().lower()
    done_flag = payload.get("done") is True
    if raw_decision not in DECISION_VALUES:
        raw_decision = "done" if done_flag else "not_done"
    return Decision(
        done=raw_decision == "done",
        decision=raw_decision,  # type: ignore[arg-type]
        explanation=_as_text(payload.get("explanation")).strip(),
        final_result=_as_text(payload.get("final_result")),
        next_prompt=_as_text(payload.get("next_prompt")).strip(),
        summary=_as_text(payload.get("summary")).strip(),
        plan_md=_as_text(payload.get("plan_md")),
        implementation_summary_md=_as_text(payload.get("implementation_summary_md")),
        verification_md=_as_text(payload.get("verification_md"))
        or _as_text(payload.get("validation_md")),
    )


def invalid_json_decision(message: str) -> Decision:
    return Decision(
        done=False,
        decision="failed",
        explanation=message,
        final_result=message,
        next_prompt="",
        summary=message,
    )


def failed_decision(message: str) -> Decision:
    return invalid_json_decision(message)


def ensure_explanation(decision: Decision) -> Decision:
    if decision.explanation.strip():
        return decision
    for candidate in (decision.summary, decision.final_result, decision.next_prompt):
        if candidate.strip():
            return replace(decision, explanation=candidate.strip())
    return replace(
        decision,
        explanation=f"Decision '{decision.decision}' was returned without an explanation.",
    )


def ensure_next_prompt(decision: Decision) -> Decision:
    if decision.done or decision.next_prompt.strip():
        return decision
    basis = decision.explanation.strip() or decision.summary.strip()
    if basis:
        return replace(decision, next_prompt=f"{CONTINUE_INSTRUCTION}\nAddress this first: {basis}")
    return replace(decision, next_prompt=CONTINUE_INSTRUCTION)


def enforce_stage_requirement(
    decision: Decision, *, stage: str | None, stage_prompt: str | None = None
) -> Decision:
    """Downgrade a completion claim that lacks the stage's required artifact."""

    if not decision.done:
        return decision
    requirement = get_stage_requirement(stage)
    if requirement is None:
        return decision
    if has_required_artifact(stage, decision.to_dict(), stage_prompt):
        return decision

    message = f"Stage '{stage}' requires a concrete {requirement.artifact} before completion."
    explanation = f"{decision.explanation} {message}".strip()
    next_prompt = decision.next_prompt.strip() or (
        f"Produce a clear {requirement.artifact} for the {stage} stage. {requirement.guidance}"
    )
    return replace(
        decision,
        done=False,
        decision="blocked" if decision.decision == "blocked" else "not_done",
        explanation=explanation,
        summary=decision.summary or message,
        next_prompt=next_prompt,
    )


def normalize_decision(
    decision: Decision, *, stage: str | None = None, stage_prompt: str | None = None
) -> Decision:
    enforced = enforce_stage_requirement(decision, stage=stage, stage_prompt=stage_prompt)
    return ensure_explanation(ensure_next_prompt(enforced))


def decide(
    text: str | None,
    strategy: ParseStrategy,
    *,
    invalid_message: str = VERIFIER_INVALID_JSON,
    fallback_text: str | None = None,
    stage: str | None = None,
    stage_prompt: str | None = None,
) -> Decision:
    """Parse, fall back to the sentinel, then normalize."""

    parsed = parse_decision(text, strategy)
    if not parsed.ok and fallback_text:
        parsed = parse_decision(fallback_text, strategy)
    if parsed.payload is None:
        base = invalid_json_decision(invalid_message)
    else:
        base = fill_defaults(parsed.payload)
    return normalize_decision(base, stage=stage, stage_prompt=stage_prompt)


def build_next_prompt_with_context(decision: Decision) -> str:
    """Guidance for the next iteration that carries the previous next_prompt forward."""

    instruction = decision.next_prompt.strip() or CONTINUE_INSTRUCTION
    lines = [instruction]
    context: list[str] = []
    if decision.explanation.strip() and decision.explanation.strip() not in instruction:
        context.append(f"- Verifier decision ({decision.decision}): {decision.explanation.strip()}")
    if decision.summary.strip() and decision.summary.strip() != decision.explanation.strip():
        context.append(f"- Current state: {decision.summary.strip()}")
    if context:
        lines.append("")
        lines.append("Context from the previous iteration:")
        lines.extend(context)
    return "\n".join(lines)
