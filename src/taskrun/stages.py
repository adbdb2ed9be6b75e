from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True, frozen=True)
class StageRequirement:
    artifact: str
    guidance: str
    evidence: re.Pattern[str]


STAGE_REQUIREMENTS: dict[str, StageRequirement] = {
    "intake": StageRequirement(
        artifact="idea",
        guidance="A concrete idea with scope, approach, and key unknowns.",
        evidence=re.compile(r"\bidea\b|\bapproach\b|\bscope\b|\bresearch\b|\bunknowns?\b"),
    ),
    "planning": StageRequirement(
        artifact="plan",
        guidance="A concrete execution plan with tasks/milestones and dependencies.",
        evidence=re.compile(r"\bplan\b|\bmilestone\b|\bdependency\b|\btasks?\b|\bstep\s*\d+\b"),
    ),
}

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "into", "is",
        "it", "of", "on", "or", "that", "the", "this", "to", "with", "your", "you", "use",
        "create", "build", "ensure", "verify", "work", "stage", "task", "complete",
    }
)

NO_STAGE_OBJECTIVE = "No stage objective defined."

# Remote workflow stages that are planning work; everything else executes.
PLANNING_STAGES = frozenset({"intake", "ideation", "planning", "plan", "design"})


def get_stage_requirement(stage: str | None) -> StageRequirement | None:
    return STAGE_REQUIREMENTS.get(str(stage or "").lower())


def map_remote_stage(stage: str | None) -> str:
    return "plan" if str(stage or "").strip().lower() in PLANNING_STAGES else "execute"


def resolve_stage_objective(task: dict[str, Any] | None, stage: str | None, fallback: str = "") -> str:
    """Look up the stage prompt a task defines, by dict key or list entry."""

    stage_key = str(stage or "").lower()
    prompts = (task or {}).get("stage_prompts")

    if isinstance(prompts, dict):
        direct = prompts.get(stage_key) or prompts.get(stage or "")
        if isinstance(direct, str) and direct.strip():
            return direct.strip()
        for key, value in prompts.items():
            if str(key).lower() == stage_key and isinstance(value, str) and value.strip():
                return value.strip()

    if isinstance(prompts, list):
        for entry in prompts:
            if not isinstance(entry, dict):
                continue
            key = str(entry.get("stage") or entry.get("name") or "").lower()
            if key != stage_key:
                continue
            text = entry.get("prompt") or entry.get("objective") or entry.get("requirement")
            if isinstance(text, str) and text.strip():
                return text.strip()

    if fallback and fallback.strip():
        return fallback.strip()
    return NO_STAGE_OBJECTIVE


def _objective_text(stage_prompt: str | None) -> str:
    text = (stage_prompt or "").strip()
    return "" if text == NO_STAGE_OBJECTIVE else text


def extract_prompt_keywords(stage_prompt: str | None) -> list[str]:
    stage_prompt = _objective_text(stage_prompt)
    if not stage_prompt:
        return []
    words = re.findall(r"[a-z][a-z0-9_-]{3,}", stage_prompt.lower())
    unique: list[str] = []
    for word in words:
        if word in STOP_WORDS or word in unique:
            continue
        unique.append(word)
    return unique[:8]


def build_stage_requirement_prompt(stage: str | None, stage_prompt: str | None = None) -> str:
    requirement = get_stage_requirement(stage)
    if requirement:
        return (
            f"This stage is only complete when a clear {requirement.artifact} is provided. "
            f"{requirement.guidance}"
        )
    objective = _objective_text(stage_prompt)
    if objective:
        return (
            "This stage is only complete when the result clearly satisfies this objective: "
            f"{objective}"
        )
    return "No additional stage artifact requirement."


def decision_evidence_text(decision: dict[str, Any]) -> str:
    parts = [
        decision.get(key)
        for key in ("final_result", "summary", "explanation", "plan_md")
    ]
    return "\n".join(part for part in parts if isinstance(part, str)).lower()


def has_required_artifact(
    stage: str | None, decision: dict[str, Any], stage_prompt: str | None = None
) -> bool:
    text = decision_evidence_text(decision)
    if not text.strip():
        return False
    requirement = get_stage_requirement(stage)
    if requirement is None:
        keywords = extract_prompt_keywords(stage_prompt)
        return not keywords or any(keyword in text for keyword in keywords)
    return bool(requirement.evidence.search(text))
