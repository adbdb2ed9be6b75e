from __future__ import annotations

import logging
import os
import secrets
import shutil
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskrun.storage.atomic import (
    ensure_dir,
    read_json_safe,
    read_text_safe,
    write_json_atomic,
    write_text_atomic,
)
from taskrun.storage.errors import (
    LockHeld,
    RunFinalizedError,
    StorageError,
    StorageIOError,
    TaskExistsError,
    TaskNotFoundError,
)
from taskrun.storage.events import (
    append_event,
    prompt_built_event,
    recovery_detected_event,
    run_failed_event,
    run_finished_event,
    run_started_event,
)
from taskrun.storage.layout import (
    RUN_ID_PATTERN,
    VALID_STAGES,
    RunPaths,
    StorageLayout,
    generate_run_id,
    slugify,
    validate_run_id,
    validate_slug,
    validate_stage,
    with_hash_suffix,
)
from taskrun.storage.locks import (
    DEFAULT_LEASE_SECONDS,
    LockHandle,
    acquire_task_lock,
    check_task_lock,
    release_task_lock,
)

logger = logging.getLogger(__name__)

WORKING_SET_MAX_CHARS = 4000
TASK_STATUSES = ("pending", "running", "done", "blocked", "failed")
RUN_STATUSES = ("done", "blocked", "continue", "failed")
CRASHED_REASON = "Run crashed or was interrupted before completion"
IMMUTABLE_TASK_FIELDS = ("task_slug", "user_request", "created_at")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Run:
    run_id: str
    project_slug: str
    task_slug: str
    stage: str
    engine: str
    model: str | None
    paths: RunPaths
    finalized: bool = False

    @property
    def container(self) -> Path:
        return self.paths.root.parent

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "project_slug": self.project_slug,
            "task_slug": self.task_slug,
            "stage": self.stage,
            "engine": self.engine,
            "model": self.model,
            "root": str(self.paths.root),
            "finalized": self.finalized,
        }


@dataclass(slots=True)
class RunRecord:
    run_id: str
    stage: str
    meta: dict[str, Any] | None
    has_decision: bool


@dataclass(slots=True)
class GcResult:
    deleted: int = 0
    preserved: int = 0
    protected: list[str] = field(default_factory=list)
    busy: list[str] = field(default_factory=list)

    def merge(self, other: GcResult) -> None:
        self.deleted += other.deleted
        self.preserved += other.preserved
        self.protected.extend(other.protected)
        self.busy.extend(other.busy)


@dataclass(slots=True)
class WorkingSetWrite:
    written: str
    rewritten: bool
    original_bytes: int
    new_bytes: int


class TaskStore:
    """Durable project/task/run storage rooted at a single home directory."""

    def __init__(
        self,
        home: Path,
        *,
        lock_lease_seconds: float | None = DEFAULT_LEASE_SECONDS,
    ) -> None:
        self.layout = StorageLayout(home)
        self.lock_lease_seconds = lock_lease_seconds

    @property
    def projects_root(self) -> Path:
        return self.layout.projects_root

    def task_root(self, project_slug: str, task_slug: str) -> Path:
        return self.layout.task_root(project_slug, task_slug)

    # Locks

    def acquire_task_lock(self, project_slug: str, task_slug: str) -> LockHandle:
        return acquire_task_lock(
            self.task_root(project_slug, task_slug), lease_seconds=self.lock_lease_seconds
        )

    @staticmethod
    def release_task_lock(handle: LockHandle) -> bool:
        return release_task_lock(handle)

    def is_task_locked(self, project_slug: str, task_slug: str) -> bool:
        return check_task_lock(self.task_root(project_slug, task_slug)) is not None

    # Project state

    def read_project_state(self, project_slug: str) -> dict[str, Any] | None:
        state = read_json_safe(self.layout.project_file(project_slug))
        return state if isinstance(state, dict) else None

    def resolve_project_slug(self, label: str) -> str:
        """Slug for a project label; a clash with another label gets a hash suffix."""

        slug = slugify(label, max_length=64)
        existing = self.read_project_state(slug)
        if existing is None:
            return slug
        owner = existing.get("label")
        if not owner or owner == label:
            return slug
        return with_hash_suffix(slug, label)

    def write_project_state(self, project_slug: str, updates: dict[str, Any]) -> dict[str, Any]:
        validate_slug(project_slug)
        existing = self.read_project_state(project_slug) or {}
        merged: dict[str, Any] = {"created_at": _utcnow_iso()}
        merged.update(existing)
        merged.update(updates)
        merged["project_slug"] = project_slug
        merged["updated_at"] = _utcnow_iso()
        ensure_dir(self.layout.project_root(project_slug))
        write_json_atomic(self.layout.project_file(project_slug), merged)
        return merged

    def list_projects(self) -> list[str]:
        if not self.projects_root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.projects_root.iterdir()
            if entry.is_dir() and (entry / "project.json").exists()
        )

    # Project index

    def read_project_index(self, project_slug: str) -> dict[str, Any]:
        index = read_json_safe(self.layout.index_file(project_slug))
        if not isinstance(index, dict) or not isinstance(index.get("tasks"), list):
            return {"project_slug": project_slug, "tasks": []}
        return index

    def _write_project_index(self, project_slug: str, index: dict[str, Any]) -> None:
        ensure_dir(self.layout.project_root(project_slug))
        payload = dict(index)
        payload["project_slug"] = project_slug
        write_json_atomic(self.layout.index_file(project_slug), payload)

    def update_project_index_entry(
        self, project_slug: str, task_slug: str, updates: dict[str, Any]
    ) -> dict[str, Any]:
        index = self.read_project_index(project_slug)
        tasks = [item for item in index["tasks"] if isinstance(item, dict)]
        position = next(
            (idx for idx, item in enumerate(tasks) if item.get("task_slug") == task_slug), None
        )
        entry: dict[str, Any] = {"task_slug": task_slug, "status": "pending"}
        if position is not None:
            entry.update(tasks[position])
        entry.update(updates)
        entry["task_slug"] = task_slug
        entry["updated_at"] = _utcnow_iso()
        if position is None:
            tasks.append(entry)
        else:
            tasks[position] = entry
        index["tasks"] = tasks
        self._write_project_index(project_slug, index)
        return entry

    def remove_project_index_entry(self, project_slug: str, task_slug: str) -> None:
        index = self.read_project_index(project_slug)
        index["tasks"] = [
            item
            for item in index["tasks"]
            if isinstance(item, dict) and item.get("task_slug") != task_slug
        ]
        self._write_project_index(project_slug, index)

    def list_task_slugs(self, project_slug: str) -> list[str]:
        slugs = {
            str(item.get("task_slug"))
            for item in self.read_project_index(project_slug)["tasks"]
            if isinstance(item, dict) and item.get("task_slug")
        }
        project_root = self.layout.project_root(project_slug)
        if project_root.is_dir():
            for entry in project_root.iterdir():
                if entry.is_dir() and (entry / "task.json").exists():
                    slugs.add(entry.name)
        return sorted(slugs)

    # Task state

    def read_task_state(self, project_slug: str, task_slug: str) -> dict[str, Any] | None:
        state = read_json_safe(self.layout.task_file(project_slug, task_slug))
        return state if isinstance(state, dict) else None

    def generate_task_slug(self, project_slug: str, user_request: str) -> str:
        base = slugify(user_request[:50], max_length=40)
        candidate = base
        for suffix in range(1, 101):
            if not self.layout.task_file(project_slug, candidate).exists():
                return candidate
            candidate = f"{base}-{suffix}"
        return f"{base}-{secrets.token_hex(2)}"

    def create_task(
        self,
        project_slug: str,
        *,
        user_request: str,
        goal: str | None = None,
        criteria: list[str] | None = None,
        task_slug: str | None = None,
    ) -> dict[str, Any]:
        if not user_request or not user_request.strip():
            raise StorageError("user_request is required to create a task.")
        slug = validate_slug(task_slug) if task_slug else self.generate_task_slug(
            project_slug, user_request
        )
        task_file = self.layout.task_file(project_slug, slug)
        if read_json_safe(task_file) is not None:
            raise TaskExistsError(f"Task {slug} already exists in project {project_slug}.")

        now = _utcnow_iso()
        state = {
            "task_slug": slug,
            "user_request": user_request,
            "goal": goal or user_request,
            "criteria": list(criteria or []),
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        ensure_dir(self.task_root(project_slug, slug))
        write_json_atomic(task_file, state)
        self.update_project_index_entry(project_slug, slug, {"status": "pending"})
        self.write_working_set(project_slug, slug, "")
        write_json_atomic(self.layout.last_run_file(project_slug, slug), {})
        return state

    def update_task_state(
        self, project_slug: str, task_slug: str, updates: dict[str, Any]
    ) -> dict[str, Any]:
        existing = self.read_task_state(project_slug, task_slug)
        if existing is None:
            raise TaskNotFoundError(f"Task {task_slug} not found in project {project_slug}.")
        status = updates.get("status")
        if status is not None and status not in TASK_STATUSES:
            raise StorageError(f"Invalid task status: {status}")

        merged = dict(existing)
        merged.update(
            {key: value for key, value in updates.items() if key not in IMMUTABLE_TASK_FIELDS}
        )
        for key in IMMUTABLE_TASK_FIELDS:
            merged[key] = existing.get(key)
        merged["updated_at"] = _utcnow_iso()
        write_json_atomic(self.layout.task_file(project_slug, task_slug), merged)
        if status is not None:
            self.update_project_index_entry(project_slug, task_slug, {"status": status})
        return merged

    # Working set

    def read_working_set(self, project_slug: str, task_slug: str) -> str:
        return read_text_safe(self.layout.working_set_file(project_slug, task_slug)) or ""

    def write_working_set(
        self,
        project_slug: str,
        task_slug: str,
        content: str,
        *,
        max_chars: int = WORKING_SET_MAX_CHARS,
    ) -> WorkingSetWrite:
        final = content
        rewritten = False
        if len(content) > max_chars:
            final = content[: max_chars - 50] + "\n\n<!-- truncated: content exceeded cap -->"
            rewritten = True
        write_text_atomic(self.layout.working_set_file(project_slug, task_slug), final)
        return WorkingSetWrite(
            written=final,
            rewritten=rewritten,
            original_bytes=len(content.encode("utf-8")),
            new_bytes=len(final.encode("utf-8")),
        )

    def append_working_set(
        self, project_slug: str, task_slug: str, heading: str, line: str
    ) -> WorkingSetWrite:
        current = self.read_working_set(project_slug, task_slug).rstrip()
        header = f"## {heading}"
        if header not in current:
            current = f"{current}\n\n{header}" if current else header
        return self.write_working_set(project_slug, task_slug, f"{current}\n- {line.strip()}\n")

    # Last run

    def read_last_run(self, project_slug: str, task_slug: str) -> dict[str, Any]:
        payload = read_json_safe(self.layout.last_run_file(project_slug, task_slug))
        return payload if isinstance(payload, dict) else {}

    def update_last_run(self, project_slug: str, task_slug: str, stage: str, run_id: str) -> None:
        last_run = self.read_last_run(project_slug, task_slug)
        last_run["overall"] = {"stage": stage, "run_id": run_id}
        last_run[stage] = {"run_id": run_id}
        write_json_atomic(self.layout.last_run_file(project_slug, task_slug), last_run)

    # Runs

    def create_run(
        self,
        project_slug: str,
        task_slug: str,
        stage: str,
        *,
        engine: str,
        model: str | None = None,
        run_id: str | None = None,
    ) -> Run:
        validate_stage(stage)
        run_id = validate_run_id(run_id) if run_id else generate_run_id()
        paths = self.layout.run_paths(project_slug, task_slug, run_id, stage)
        if paths.root.exists():
            raise StorageError(f"Run {run_id}/{stage} already exists for {project_slug}/{task_slug}.")

        ensure_dir(paths.root.parent)
        staging_root = paths.root.with_name(f".{stage}.init.{secrets.token_hex(4)}")
        staging = RunPaths.under(staging_root)
        meta = {
            "run_id": run_id,
            "project_slug": project_slug,
            "task_slug": task_slug,
            "stage": stage,
            "engine": engine,
            "model": model,
            "created_at": _utcnow_iso(),
            "created_ns": time.time_ns(),
            "sizes": {},
        }
        try:
            ensure_dir(staging.artifacts)
            write_json_atomic(staging.meta, meta)
            append_event(staging.events, run_started_event(run_id, stage))
            os.rename(staging_root, paths.root)
        except (OSError, StorageIOError) as exc:
            shutil.rmtree(staging_root, ignore_errors=True)
            if isinstance(exc, StorageIOError):
                raise
            raise StorageIOError(f"Unable to create run {run_id}/{stage}: {exc}") from exc

        return Run(
            run_id=run_id,
            project_slug=project_slug,
            task_slug=task_slug,
            stage=stage,
            engine=engine,
            model=model,
            paths=paths,
        )

    def _ensure_writable(self, run: Run) -> None:
        if run.finalized or run.paths.decision.exists():
            run.finalized = True
            raise RunFinalizedError(f"Run {run.run_id}/{run.stage} is finalized.")

    def _record_size(self, run: Run, key: str, text: str) -> None:
        meta = read_json_safe(run.paths.meta)
        if not isinstance(meta, dict):
            return
        sizes = meta.get("sizes") if isinstance(meta.get("sizes"), dict) else {}
        sizes[key] = len(text.encode("utf-8"))
        meta["sizes"] = sizes
        write_json_atomic(run.paths.meta, meta)

    def write_prompt(self, run: Run, text: str, *, sections: list[str] | None = None) -> None:
        self._ensure_writable(run)
        write_text_atomic(run.paths.prompt, text)
        self._record_size(run, "prompt_bytes", text)
        if sections is not None:
            append_event(
                run.paths.events, prompt_built_event(sections, len(text.encode("utf-8")))
            )

    def write_output(self, run: Run, text: str) -> None:
        self._ensure_writable(run)
        write_text_atomic(run.paths.output, text)
        self._record_size(run, "output_bytes", text)

    def write_artifact(self, run: Run, relative_path: str, data: str) -> Path:
        self._ensure_writable(run)
        target = (run.paths.artifacts / relative_path).resolve()
        if run.paths.artifacts.resolve() not in target.parents:
            raise StorageError(f"Artifact path escapes the run directory: {relative_path}")
        write_text_atomic(target, data)
        return target

    def append_run_event(self, run: Run, event: dict[str, Any]) -> None:
        self._ensure_writable(run)
        append_event(run.paths.events, event)

    def finalize_run(self, run: Run, *, status: str, reason: str = "") -> dict[str, Any]:
        if status not in RUN_STATUSES:
            raise StorageError(f"Invalid run status: {status}")
        self._ensure_writable(run)
        append_event(run.paths.events, run_finished_event(status, reason))
        decision = {"status": status, "reason": reason, "finalized_at": _utcnow_iso()}
        write_json_atomic(run.paths.decision, decision)
        run.finalized = True
        self.update_last_run(run.project_slug, run.task_slug, run.stage, run.run_id)
        return decision

    def fail_run(self, run: Run, *, error: str, code: str) -> dict[str, Any]:
        self._ensure_writable(run)
        append_event(run.paths.events, run_failed_event(error, code))
        decision = {
            "status": "failed",
            "reason": error,
            "error_code": code,
            "finalized_at": _utcnow_iso(),
        }
        write_json_atomic(run.paths.decision, decision)
        run.finalized = True
        self.update_last_run(run.project_slug, run.task_slug, run.stage, run.run_id)
        return decision

    @staticmethod
    def _container_sort_key(container: Path) -> tuple[str, int, str]:
        # Run ids only resolve to the second; created_ns orders runs within one second.
        created_ns = 0
        for stage in VALID_STAGES:
            meta = read_json_safe(RunPaths.under(container / stage).meta)
            if isinstance(meta, dict) and isinstance(meta.get("created_ns"), int):
                value = meta["created_ns"]
                created_ns = value if not created_ns else min(created_ns, value)
        return container.name[:15], created_ns, container.name

    def list_run_ids(self, project_slug: str, task_slug: str) -> list[str]:
        """Run ids of a task, oldest first."""

        task_root = self.task_root(project_slug, task_slug)
        if not task_root.is_dir():
            return []
        containers = [
            entry
            for entry in task_root.iterdir()
            if entry.is_dir() and RUN_ID_PATTERN.match(entry.name)
        ]
        return [entry.name for entry in sorted(containers, key=self._container_sort_key)]

    def list_runs(
        self, project_slug: str, task_slug: str, *, stage: str | None = None
    ) -> list[RunRecord]:
        stages = (validate_stage(stage),) if stage else VALID_STAGES
        records: list[RunRecord] = []
        for run_id in self.list_run_ids(project_slug, task_slug):
            for stage_name in stages:
                paths = self.layout.run_paths(project_slug, task_slug, run_id, stage_name)
                if not paths.root.is_dir():
                    continue
                meta = read_json_safe(paths.meta)
                records.append(
                    RunRecord(
                        run_id=run_id,
                        stage=stage_name,
                        meta=meta if isinstance(meta, dict) else None,
                        has_decision=paths.decision.exists(),
                    )
                )
        return records

    def open_run(self, project_slug: str, task_slug: str, run_id: str, stage: str) -> Run:
        paths = self.layout.run_paths(project_slug, task_slug, run_id, stage)
        meta = read_json_safe(paths.meta)
        if not isinstance(meta, dict):
            raise StorageError(f"Run {run_id}/{stage} has no metadata.")
        return Run(
            run_id=run_id,
            project_slug=project_slug,
            task_slug=task_slug,
            stage=stage,
            engine=str(meta.get("engine") or ""),
            model=meta.get("model"),
            paths=paths,
            finalized=paths.decision.exists(),
        )

    def read_decision(
        self, project_slug: str, task_slug: str, run_id: str, stage: str
    ) -> dict[str, Any] | None:
        payload = read_json_safe(self.layout.run_paths(project_slug, task_slug, run_id, stage).decision)
        return payload if isinstance(payload, dict) else None

    def read_run_meta(
        self, project_slug: str, task_slug: str, run_id: str, stage: str
    ) -> dict[str, Any] | None:
        payload = read_json_safe(self.layout.run_paths(project_slug, task_slug, run_id, stage).meta)
        return payload if isinstance(payload, dict) else None

    # Recovery

    def find_incomplete_runs(self, project_slug: str, task_slug: str) -> list[RunRecord]:
        return [
            record
            for record in self.list_runs(project_slug, task_slug)
            if record.meta is not None and not record.has_decision
        ]

    def close_incomplete_run(self, project_slug: str, task_slug: str, record: RunRecord) -> bool:
        paths = self.layout.run_paths(project_slug, task_slug, record.run_id, record.stage)
        if paths.decision.exists():
            return False
        append_event(paths.events, run_failed_event("Run crashed or was interrupted", "CRASHED"))
        write_json_atomic(
            paths.decision,
            {
                "status": "failed",
                "reason": CRASHED_REASON,
                "error_code": "CRASHED",
                "finalized_at": _utcnow_iso(),
            },
        )
        return True

    def create_recovery_run(self, project_slug: str, task_slug: str, record: RunRecord) -> Run:
        """Close a crashed run and open a resume run that records the recovery."""

        self.close_incomplete_run(project_slug, task_slug, record)
        meta = record.meta or {}
        run = self.create_run(
            project_slug,
            task_slug,
            "resume",
            engine=str(meta.get("engine") or "unknown"),
            model=meta.get("model"),
        )
        append_event(
            run.paths.events, recovery_detected_event(record.run_id, record.stage)
        )
        # The resume run only records the recovery; left open it would be recovered again.
        self.finalize_run(
            run, status="continue", reason=f"Recovered {record.run_id}/{record.stage}"
        )
        logger.info(
            "Recovered incomplete run %s/%s for %s/%s as %s",
            record.run_id,
            record.stage,
            project_slug,
            task_slug,
            run.run_id,
        )
        return run

    def recover_incomplete_runs(self, project_slug: str, task_slug: str) -> list[Run]:
        return [
            self.create_recovery_run(project_slug, task_slug, record)
            for record in self.find_incomplete_runs(project_slug, task_slug)
        ]

    # Garbage collection

    def gc_runs(
        self,
        project_slug: str,
        task_slug: str,
        *,
        keep: int = 25,
        active_run_ids: Iterable[str] = (),
        preserve_blocked_failed: bool = True,
    ) -> GcResult:
        """Delete all but the newest ``keep`` runs. Call with the task lock held."""

        run_ids = self.list_run_ids(project_slug, task_slug)
        task = self.read_task_state(project_slug, task_slug)
        if preserve_blocked_failed and task and task.get("status") in {"blocked", "failed"}:
            return GcResult(deleted=0, preserved=len(run_ids))

        protected = set(active_run_ids)
        if self.is_task_locked(project_slug, task_slug):
            protected.update(
                record.run_id for record in self.find_incomplete_runs(project_slug, task_slug)
            )

        keep = max(0, int(keep))
        candidates = run_ids[: len(run_ids) - keep] if keep else list(run_ids)
        result = GcResult()
        for run_id in candidates:
            if run_id in protected:
                result.protected.append(run_id)
                continue
            container = self.layout.run_container(project_slug, task_slug, run_id)
            try:
                shutil.rmtree(container)
            except OSError as exc:
                logger.warning("Failed to delete run %s: %s", container, exc)
                continue
            result.deleted += 1
        result.preserved = len(run_ids) - result.deleted
        return result

    def gc_project(
        self,
        project_slug: str,
        *,
        keep: int = 25,
        active_run_ids: Iterable[str] = (),
        preserve_blocked_failed: bool = True,
    ) -> GcResult:
        """GC every task of a project, each under its task lock. Busy tasks are skipped."""

        active = set(active_run_ids)
        total = GcResult()
        for task_slug in self.list_task_slugs(project_slug):
            try:
                handle = self.acquire_task_lock(project_slug, task_slug)
            except LockHeld as exc:
                logger.info("Skipping GC for busy task %s/%s: %s", project_slug, task_slug, exc)
                total.busy.append(task_slug)
                continue
            try:
                total.merge(
                    self.gc_runs(
                        project_slug,
                        task_slug,
                        keep=keep,
                        active_run_ids=active,
                        preserve_blocked_failed=preserve_blocked_failed,
                    )
                )
            finally:
                self.release_task_lock(handle)
        return total
