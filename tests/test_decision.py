from taskrun.decision import (
    AGGREGATOR_INVALID_JSON,
    CONTINUE_INSTRUCTION,
    VERIFIER_INVALID_JSON,
    Decision,
    ParseStrategy,
    build_next_prompt_with_context,
    decide,
    enforce_stage_requirement,
    ensure_explanation,
    ensure_next_prompt,
    extract_json_first,
    extract_json_last,
    fill_defaults,
    parse_decision,
)


def test_extract_first_handles_fences_and_ansi() -> None:
    fenced = 'Result:\n```json\n{"done": true, "decision": "done"}\n```\n'
    colored = '\x1b[32m{"decision": "blocked"}\x1b[0m'

    assert extract_json_first(fenced) == {"done": True, "decision": "done"}
    assert extract_json_first(colored) == {"decision": "blocked"}


def test_extract_first_falls_back_to_first_balanced_object() -> None:
    text = 'first {"a": 1} then prose, then {"b": {"c": 2}}'

    assert extract_json_first(text) == {"a": 1}
    assert extract_json_first("[1, 2, 3]") is None
    assert extract_json_first("") is None


def test_extract_last_prefers_trailing_object() -> None:
    text = (
        'Thinking about {"draft": true} for a while.\n'
        'Final answer: {"decision": "done", "meta": {"checks": 3}}\n'
    )

    assert extract_json_last(text) == {"decision": "done", "meta": {"checks": 3}}
    assert extract_json_last("no braces here") is None
    assert extract_json_last('{"broken": } and {"ok": 1}') == {"ok": 1}


def test_parse_decision_reports_strategy_on_failure() -> None:
    parsed = parse_decision("plain text", ParseStrategy.LAST_MATCH)

    assert parsed.ok is False
    assert parsed.error is not None
    assert parsed.error.strategy is ParseStrategy.LAST_MATCH
    assert parse_decision('{"done": false}', "first_match").payload == {"done": False}


def test_fill_defaults_coerces_fields() -> None:
    assert fill_defaults({"done": True}).decision == "done"
    assert fill_defaults({"decision": " DONE "}).done is True
    assert fill_defaults({"decision": "maybe"}).decision == "not_done"

    decision = fill_defaults(
        {
            "decision": "not_done",
            "explanation": 42,
            "next_prompt": "  fix tests  ",
            "validation_md": "- pytest: fail",
        }
    )
    assert decision.explanation == ""
    assert decision.next_prompt == "fix tests"
    assert decision.verification_md == "- pytest: fail"


def test_status_mappings() -> None:
    decision = Decision(decision="not_done")

    assert decision.run_status == "continue"
    assert decision.task_status == "running"
    assert decision.is_terminal is False
    assert Decision(done=True, decision="done").run_status == "done"
    assert Decision(decision="failed").is_terminal is True


def test_ensure_helpers_backfill_invariants() -> None:
    bare = Decision(decision="not_done")
    with_prompt = ensure_next_prompt(Decision(decision="not_done", explanation="tests fail"))

    assert ensure_explanation(bare).explanation
    assert ensure_next_prompt(bare).next_prompt == CONTINUE_INSTRUCTION
    assert with_prompt.next_prompt.startswith(CONTINUE_INSTRUCTION)
    assert "tests fail" in with_prompt.next_prompt
    assert ensure_next_prompt(Decision(done=True, decision="done")).next_prompt == ""
    assert ensure_explanation(Decision(summary="half way")).explanation == "half way"


def test_decide_uses_invalid_json_sentinels() -> None:
    verifier = decide("I could not decide.", ParseStrategy.LAST_MATCH)
    aggregator = decide(
        "nothing", ParseStrategy.FIRST_MATCH, invalid_message=AGGREGATOR_INVALID_JSON
    )

    assert verifier.decision == "failed"
    assert verifier.done is False
    assert verifier.explanation == VERIFIER_INVALID_JSON
    assert aggregator.explanation == AGGREGATOR_INVALID_JSON


def test_decide_reads_fallback_text() -> None:
    decision = decide(
        "",
        ParseStrategy.LAST_MATCH,
        fallback_text='log line\n{"done": true, "explanation": "All checks pass."}',
    )

    assert decision.decision == "done"
    assert decision.explanation == "All checks pass."


def test_planning_stage_requires_a_plan() -> None:
    claimed = Decision(done=True, decision="done", explanation="All finished.")
    downgraded = enforce_stage_requirement(claimed, stage="planning")

    assert downgraded.done is False
    assert downgraded.decision == "not_done"
    assert "requires a concrete plan" in downgraded.explanation
    assert downgraded.next_prompt

    planned = Decision(
        done=True, decision="done", explanation="Ready.", plan_md="Step 1: add schema"
    )
    assert enforce_stage_requirement(planned, stage="planning").done is True
    assert enforce_stage_requirement(claimed, stage="execute").done is True


def test_next_prompt_with_context_carries_prompt_verbatim() -> None:
    decision = Decision(
        decision="not_done",
        explanation="Login form posts to the wrong route.",
        next_prompt="Point the form at /api/login and rerun the tests.",
        summary="Form renders.",
    )

    prompt = build_next_prompt_with_context(decision)

    assert prompt.startswith("Point the form at /api/login and rerun the tests.")
    assert "Login form posts to the wrong route." in prompt
    assert "Current state: Form renders." in prompt
