"""Execute/verify iteration loop.

Each iteration runs the agent(s) in an execute run, collects local verification
signals, asks a verifier for a structured decision in a verify run sharing the
same run id, and either stops on a terminal decision or feeds the decision's
next prompt into the following iteration.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskrun.artifacts import RunArtifacts, persist_iteration_artifacts
from taskrun.backends import (
    AgentBackend,
    BackendExecutionError,
    EngineCall,
    EngineResult,
    ResilientRunner,
    build_backend,
)
from taskrun.cancellation import (
    CANCELLED_ERROR_CODE,
    CancellationRequested,
    CancellationWatcher,
    abort_if_cancelled,
)
from taskrun.config import TaskrunConfig
from taskrun.decision import (
    AGGREGATOR_INVALID_JSON,
    CONTINUE_INSTRUCTION,
    VERIFIER_INVALID_JSON,
    Decision,
    ParseStrategy,
    build_next_prompt_with_context,
    decide,
    ensure_explanation,
    ensure_next_prompt,
    failed_decision,
)
from taskrun.markers import Blocked, Checkpoint, Learn, Marker, MarkerDispatcher, Progress, parse_markers
from taskrun.prompts import build_aggregator_prompt, build_execute_prompt, build_verify_prompt
from taskrun.remote import QueueClient
from taskrun.stages import build_stage_requirement_prompt, resolve_stage_objective
from taskrun.storage import Run, StorageError, TaskStore
from taskrun.storage.events import marker_event
from taskrun.verification import (
    GitSummary,
    VerifyCommand,
    VerifyResult,
    detect_verify_commands,
    get_git_summary,
    run_verify_commands,
)

logger = logging.getLogger(__name__)

EXECUTE_FAILED = "EXECUTE_FAILED"
VERIFY_FAILED = "VERIFY_FAILED"
EXECUTE_FINISHED_REASON = "Execute phase completed; see verify stage for decision."
LEARNINGS_HEADING = "Learnings"

MARKER_LOG_TYPES: dict[type[Marker], str] = {
    Blocked: "error",
    Checkpoint: "checkpoint",
}


@dataclass(slots=True)
class LoopContext:
    project_slug: str
    task_slug: str
    task: dict[str, Any]
    task_id: str
    stage: str
    local_stage: str = "execute"
    provider: str = "claude"
    model: str = ""
    cwd: Path | None = None
    initial_context: str = ""
    initial_prompt: str = ""
    cancellation: CancellationWatcher | None = None


@dataclass(slots=True)
class LoopResult:
    decision: Decision
    last_run: Run | None = None
    iterations: int = 0
    cancelled: bool = False

    @property
    def code(self) -> int:
        return 0 if self.decision.decision == "done" else 1


@dataclass(slots=True)
class ExecuteOutcome:
    output: str
    title: str
    results: list[EngineResult] = field(default_factory=list)


ExecutePhase = Callable[[str, RunArtifacts, LoopContext], Awaitable[ExecuteOutcome]]
VerifyPromptBuilder = Callable[..., str]


@dataclass(slots=True)
class LoopMode:
    name: str
    max_iterations: int
    engine: str
    model: str
    verifier: AgentBackend
    verify_role: str
    verify_model: str
    strategy: ParseStrategy
    invalid_message: str
    execute: ExecutePhase
    build_verify_prompt: VerifyPromptBuilder


def _label(provider: str, model: str) -> str:
    return f"{provider}/{model}" if model else provider


class IterationLoop:
    def __init__(
        self,
        store: TaskStore,
        runner: ResilientRunner,
        config: TaskrunConfig,
        *,
        remote: QueueClient | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.config = config
        self.remote = remote

    # Entry points

    async def run_single(self, ctx: LoopContext) -> LoopResult:
        backend = build_backend(ctx.provider, self.config.engine.binaries)
        verifier_name = self.config.loop.verifier or ctx.provider
        verifier = build_backend(verifier_name, self.config.engine.binaries)

        async def _execute(prompt: str, artifacts: RunArtifacts, context: LoopContext) -> ExecuteOutcome:
            result = await self.runner.run(
                self._call(backend, prompt, context, role="execute", model=context.model),
                cancellation=context.cancellation,
                observers=[artifacts.observer()],
            )
            return ExecuteOutcome(
                output=result.stdout,
                title=f"Agent Output ({_label(backend.name, context.model)})",
                results=[result],
            )

        mode = LoopMode(
            name="single",
            max_iterations=self.config.loop.max_iterations,
            engine=backend.name,
            model=ctx.model,
            verifier=verifier,
            verify_role="single-verify",
            verify_model=ctx.model if verifier.name == backend.name else "",
            strategy=ParseStrategy.LAST_MATCH,
            invalid_message=VERIFIER_INVALID_JSON,
            execute=_execute,
            build_verify_prompt=build_verify_prompt,
        )
        return await self._run(ctx, mode)

    async def run_swarm(self, ctx: LoopContext, providers: list[str] | None = None) -> LoopResult:
        names = providers or list(self.config.loop.swarm_providers)
        if not names:
            raise ValueError("Swarm mode needs at least one provider.")
        backends = [build_backend(name, self.config.engine.binaries) for name in names]
        aggregator = build_backend(self.config.loop.aggregator or names[0], self.config.engine.binaries)

        async def _execute(prompt: str, artifacts: RunArtifacts, context: LoopContext) -> ExecuteOutcome:
            calls = [
                self.runner.run(
                    self._call(backend, prompt, context, role="swarm-execute", model=""),
                    cancellation=context.cancellation,
                    observers=[artifacts.observer(prefix=backend.name)],
                )
                for backend in backends
            ]
            outcomes = await asyncio.gather(*calls, return_exceptions=True)
            results: list[EngineResult] = []
            errors: list[str] = []
            for backend, outcome in zip(backends, outcomes, strict=True):
                if isinstance(outcome, CancellationRequested):
                    raise outcome
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, BackendExecutionError):
                        raise outcome
                    logger.warning("Swarm provider %s failed: %s", backend.name, outcome)
                    errors.append(f"{backend.name}: {outcome}")
                    continue
                results.append(outcome)
            if not results:
                raise BackendExecutionError(
                    "All swarm providers failed. " + "; ".join(errors), retriable=False
                )
            combined = "\n\n".join(f"[{result.provider}]\n{result.stdout}" for result in results)
            return ExecuteOutcome(output=combined, title="Swarm Output", results=results)

        def _aggregator_prompt(**kwargs: Any) -> str:
            kwargs.pop("iteration", None)
            return build_aggregator_prompt(role="swarm", **kwargs)

        mode = LoopMode(
            name="swarm",
            max_iterations=self.config.loop.swarm_max_iterations,
            engine=aggregator.name,
            model="",
            verifier=aggregator,
            verify_role="swarm-verify",
            verify_model="",
            strategy=ParseStrategy.FIRST_MATCH,
            invalid_message=AGGREGATOR_INVALID_JSON,
            execute=_execute,
            build_verify_prompt=_aggregator_prompt,
        )
        return await self._run(ctx, mode)

    # Shared skeleton

    def _call(
        self, backend: AgentBackend, prompt: str, ctx: LoopContext, *, role: str, model: str
    ) -> EngineCall:
        timeout = (
            self.config.engine.verify_timeout_seconds
            if role.endswith("verify")
            else self.config.engine.timeout_seconds
        )
        return EngineCall(
            backend=backend,
            prompt=prompt,
            model=model,
            role=role,
            label=f"{backend.name} {role}",
            timeout_seconds=timeout,
            cwd=ctx.cwd,
        )

    async def _run(self, ctx: LoopContext, mode: LoopMode) -> LoopResult:
        stage_prompt = resolve_stage_objective(ctx.task, ctx.stage, "")
        stage_requirement = build_stage_requirement_prompt(ctx.stage, stage_prompt)
        dispatcher = self._marker_dispatcher(ctx)

        next_prompt = ctx.initial_prompt
        last_decision: Decision | None = None
        last_run: Run | None = None
        open_runs: list[Run] = []
        iteration = 0

        try:
            for iteration in range(1, mode.max_iterations + 1):
                logger.info("[%s] task %s iteration %d start", mode.name, ctx.task_id, iteration)
                abort_if_cancelled(ctx.cancellation)

                execute_run = self.store.create_run(
                    ctx.project_slug,
                    ctx.task_slug,
                    ctx.local_stage,
                    engine=mode.engine,
                    model=mode.model or None,
                )
                open_runs = [execute_run]
                last_run = execute_run
                execute_artifacts = RunArtifacts(self.store, execute_run, task_id=ctx.task_id)

                execute_prompt = build_execute_prompt(next_prompt, iteration)
                if iteration == 1 and ctx.initial_context:
                    execute_artifacts.record_prompt("Initial Task Context", ctx.initial_context)
                execute_artifacts.record_prompt(f"Execute Prompt (iter {iteration})", execute_prompt)
                agent_prompt = (
                    f"{ctx.initial_context.strip()}\n\n{execute_prompt}"
                    if ctx.initial_context
                    else execute_prompt
                )

                try:
                    outcome = await mode.execute(agent_prompt, execute_artifacts, ctx)
                except BackendExecutionError as exc:
                    execute_artifacts.record_output("Execute Error", str(exc))
                    execute_artifacts.flush()
                    self._fail_run_safe(execute_run, str(exc), EXECUTE_FAILED)
                    open_runs = []
                    self._set_task_status(ctx, "failed")
                    decision = failed_decision(str(exc) or f"{mode.name} execute phase failed.")
                    return LoopResult(decision, execute_run, iteration)

                execute_artifacts.record_output(f"{outcome.title} (iter {iteration})", outcome.output)
                execute_artifacts.flush()
                await self._dispatch_markers(dispatcher, execute_run, outcome.output)

                commands, results, git = await self._collect_signals(ctx)

                verify_run = self.store.create_run(
                    ctx.project_slug,
                    ctx.task_slug,
                    "verify",
                    engine=mode.verifier.name,
                    model=mode.verify_model or None,
                    run_id=execute_run.run_id,
                )
                open_runs.append(verify_run)
                last_run = verify_run
                verify_artifacts = RunArtifacts(self.store, verify_run, task_id=ctx.task_id)
                verify_prompt = mode.build_verify_prompt(
                    task_id=ctx.task_id,
                    task=ctx.task,
                    stage=ctx.stage,
                    stage_prompt=stage_prompt,
                    stage_requirement=stage_requirement,
                    iteration=iteration,
                    git=git,
                    results=results,
                    agent_output=outcome.output,
                    run_root=execute_run.container,
                    max_chars=self.config.loop.verify_prompt_max_chars,
                )
                verifier_label = _label(mode.verifier.name, mode.verify_model)
                verify_artifacts.record_prompt(
                    f"Verification Prompt ({verifier_label}, iter {iteration})", verify_prompt
                )

                abort_if_cancelled(ctx.cancellation)
                try:
                    verify_result = await self.runner.run(
                        self._call(
                            mode.verifier,
                            verify_prompt,
                            ctx,
                            role=mode.verify_role,
                            model=mode.verify_model,
                        ),
                        cancellation=ctx.cancellation,
                        observers=[verify_artifacts.observer()],
                    )
                except BackendExecutionError as exc:
                    verify_artifacts.record_output("Verifier Error", str(exc))
                    persist_iteration_artifacts(
                        self.store,
                        execute_run=execute_run,
                        verify_run=verify_run,
                        decision=None,
                        commands=commands,
                        results=results,
                        git=git,
                    )
                    verify_artifacts.flush()
                    self._fail_run_safe(verify_run, str(exc), VERIFY_FAILED)
                    self._finalize_safe(execute_run, "failed", f"Verification failed: {exc}")
                    open_runs = []
                    self._set_task_status(ctx, "failed")
                    return LoopResult(failed_decision(str(exc) or "Verifier failed."), verify_run, iteration)

                verifier_text = verify_result.stdout or verify_result.stderr
                decision = decide(
                    verifier_text,
                    mode.strategy,
                    invalid_message=mode.invalid_message,
                    fallback_text=verify_result.stderr,
                    stage=ctx.stage,
                    stage_prompt=stage_prompt,
                )
                last_decision = decision

                persist_iteration_artifacts(
                    self.store,
                    execute_run=execute_run,
                    verify_run=verify_run,
                    decision=decision,
                    commands=commands,
                    results=results,
                    git=git,
                )
                verify_artifacts.record_output(
                    f"Verifier Output ({verifier_label}, iter {iteration})", verifier_text
                )
                verify_artifacts.record_output(
                    "Decision", json.dumps(decision.to_dict(), ensure_ascii=False, indent=2)
                )
                verify_artifacts.flush()

                self._finalize_safe(execute_run, decision.run_status, EXECUTE_FINISHED_REASON)
                self._finalize_safe(
                    verify_run, decision.run_status, decision.explanation or decision.summary
                )
                open_runs = []
                self._set_task_status(ctx, decision.task_status)
                await self._comment(ctx, decision.summary or decision.explanation)

                logger.info(
                    "[%s] task %s iteration %d decision: %s",
                    mode.name,
                    ctx.task_id,
                    iteration,
                    decision.decision,
                )
                if decision.is_terminal:
                    return LoopResult(decision, verify_run, iteration)
                next_prompt = build_next_prompt_with_context(decision)

        except CancellationRequested as exc:
            logger.info("Task %s cancelled: %s", ctx.task_id, exc.reason)
            for run in open_runs:
                self._fail_run_safe(run, exc.reason, CANCELLED_ERROR_CODE)
            self._set_task_status(ctx, "blocked")
            decision = ensure_explanation(
                ensure_next_prompt(
                    Decision(
                        done=False,
                        decision="blocked",
                        explanation=exc.reason,
                        final_result=exc.reason,
                        summary=exc.reason,
                    )
                )
            )
            return LoopResult(decision, last_run, iteration, cancelled=True)

        message = f"Reached max iterations ({mode.max_iterations}) without completion."
        carried = last_decision.next_prompt if last_decision else ""
        decision = Decision(
            done=False,
            decision="not_done",
            explanation=message,
            final_result=message,
            next_prompt=carried or CONTINUE_INSTRUCTION,
            summary=(last_decision.summary if last_decision else "") or message,
        )
        return LoopResult(decision, last_run, iteration)

    async def _collect_signals(
        self, ctx: LoopContext
    ) -> tuple[list[VerifyCommand], list[VerifyResult], GitSummary]:
        loop_config = self.config.loop
        commands = detect_verify_commands(
            ctx.cwd,
            max_commands=loop_config.verify_max_commands,
            timeout_seconds=loop_config.verify_command_timeout_seconds,
        )
        results = await run_verify_commands(
            commands,
            max_output_chars=loop_config.verify_max_output_chars,
            cancellation=ctx.cancellation,
            kill_grace_seconds=self.config.engine.kill_grace_seconds,
        )
        abort_if_cancelled(ctx.cancellation)
        git = await get_git_summary(ctx.cwd)
        return commands, results, git

    # Markers

    def _marker_dispatcher(self, ctx: LoopContext) -> MarkerDispatcher:
        dispatcher = MarkerDispatcher()

        def _learn(marker: Learn) -> None:
            self.store.append_working_set(
                ctx.project_slug, ctx.task_slug, LEARNINGS_HEADING, marker.insight
            )

        dispatcher.register(Learn, _learn)

        if self.remote is not None:
            remote = self.remote

            async def _post(marker: Marker) -> None:
                log_type = MARKER_LOG_TYPES.get(type(marker), "system")
                await remote.post_log_safe(ctx.task_id, marker.log_line, log_type)

            async def _progress(marker: Progress) -> None:
                await remote.patch_task_safe(ctx.task_id, {"progress": marker.percent})

            dispatcher.register(Marker, _post)
            dispatcher.register(Progress, _progress)
        return dispatcher

    async def _dispatch_markers(self, dispatcher: MarkerDispatcher, run: Run, output: str) -> None:
        markers = parse_markers(output)
        if not markers:
            return
        for marker in markers:
            try:
                self.store.append_run_event(run, marker_event(marker.kind, marker.text))
            except StorageError as exc:
                logger.warning("Unable to record marker event: %s", exc)
        await dispatcher.dispatch(markers)

    # Best-effort bookkeeping

    def _finalize_safe(self, run: Run, status: str, reason: str) -> None:
        if run.finalized:
            return
        try:
            self.store.finalize_run(run, status=status, reason=reason)
        except StorageError as exc:
            logger.warning("Unable to finalize run %s/%s: %s", run.run_id, run.stage, exc)

    def _fail_run_safe(self, run: Run, error: str, code: str) -> None:
        if run.finalized:
            return
        try:
            self.store.fail_run(run, error=error, code=code)
        except StorageError as exc:
            logger.warning("Unable to fail run %s/%s: %s", run.run_id, run.stage, exc)

    def _set_task_status(self, ctx: LoopContext, status: str) -> None:
        try:
            self.store.update_task_state(ctx.project_slug, ctx.task_slug, {"status": status})
        except StorageError as exc:
            logger.warning("Unable to update task %s status: %s", ctx.task_slug, exc)

    async def _comment(self, ctx: LoopContext, content: str) -> None:
        if self.remote is not None and content:
            await self.remote.post_comment_safe(ctx.task_id, content)
