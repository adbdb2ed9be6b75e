from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from taskrun.storage.errors import InvalidSlugError

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
SLUG_MAX_LENGTH = 128
RUN_ID_PATTERN = re.compile(r"^\d{8}-\d{6}-[a-f0-9]{4}(?:[a-f0-9]{4})?$")
VALID_STAGES: tuple[str, ...] = ("plan", "execute", "verify", "resume")

PROJECT_FILE = "project.json"
INDEX_FILE = "index.json"
TASK_FILE = "task.json"
WORKING_SET_FILE = "working_set.md"
LAST_RUN_FILE = "last_run.json"
LOCK_FILE = ".lock"


def validate_slug(slug: str) -> str:
    if not isinstance(slug, str) or not slug:
        raise InvalidSlugError("Slug must be a non-empty string.")
    if len(slug) > SLUG_MAX_LENGTH:
        raise InvalidSlugError(f"Slug exceeds {SLUG_MAX_LENGTH} characters: {slug[:40]}...")
    if not SLUG_PATTERN.match(slug):
        raise InvalidSlugError(
            f"Invalid slug '{slug}': use lowercase letters, digits and single hyphens."
        )
    return slug


def slugify(text: str, *, max_length: int = 64) -> str:
    value = str(text or "").lower().strip()
    value = re.sub(r"[\s_]+", "-", value)
    value = re.sub(r"[^a-z0-9-]", "", value)
    value = re.sub(r"-+", "-", value).strip("-")
    if len(value) > max_length:
        value = value[:max_length].rstrip("-")
    return value or "untitled"


def stable_suffix(label: str, length: int = 6) -> str:
    return hashlib.sha1(label.encode("utf-8")).hexdigest()[:length]


def with_hash_suffix(slug: str, label: str) -> str:
    suffix = stable_suffix(label)
    base = slug[: SLUG_MAX_LENGTH - len(suffix) - 1].rstrip("-")
    return f"{base}-{suffix}"


def generate_run_id(now: datetime | None = None) -> str:
    moment = now or datetime.now(UTC)
    return f"{moment.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(4)}"


def validate_run_id(run_id: str) -> str:
    if not isinstance(run_id, str) or not RUN_ID_PATTERN.match(run_id):
        raise InvalidSlugError(f"Invalid run id: {run_id!r}")
    return run_id


def validate_stage(stage: str) -> str:
    if stage not in VALID_STAGES:
        raise InvalidSlugError(
            f"Invalid stage '{stage}'. Expected one of: {', '.join(VALID_STAGES)}"
        )
    return stage


@dataclass(slots=True, frozen=True)
class RunPaths:
    root: Path
    meta: Path
    prompt: Path
    output: Path
    decision: Path
    events: Path
    artifacts: Path

    @classmethod
    def under(cls, root: Path) -> RunPaths:
        return cls(
            root=root,
            meta=root / "meta.json",
            prompt=root / "prompt.md",
            output=root / "output.md",
            decision=root / "decision.json",
            events=root / "events.ndjson",
            artifacts=root / "artifacts",
        )


class StorageLayout:
    """Maps project/task/run identities onto the on-disk directory tree."""

    def __init__(self, home: Path) -> None:
        self.home = Path(home).expanduser()
        self.projects_root = self.home / "projects"

    def project_root(self, project_slug: str) -> Path:
        return self.projects_root / validate_slug(project_slug)

    def project_file(self, project_slug: str) -> Path:
        return self.project_root(project_slug) / PROJECT_FILE

    def index_file(self, project_slug: str) -> Path:
        return self.project_root(project_slug) / INDEX_FILE

    def task_root(self, project_slug: str, task_slug: str) -> Path:
        return self.project_root(project_slug) / validate_slug(task_slug)

    def task_file(self, project_slug: str, task_slug: str) -> Path:
        return self.task_root(project_slug, task_slug) / TASK_FILE

    def working_set_file(self, project_slug: str, task_slug: str) -> Path:
        return self.task_root(project_slug, task_slug) / WORKING_SET_FILE

    def last_run_file(self, project_slug: str, task_slug: str) -> Path:
        return self.task_root(project_slug, task_slug) / LAST_RUN_FILE

    def lock_file(self, project_slug: str, task_slug: str) -> Path:
        return self.task_root(project_slug, task_slug) / LOCK_FILE

    def run_container(self, project_slug: str, task_slug: str, run_id: str) -> Path:
        return self.task_root(project_slug, task_slug) / validate_run_id(run_id)

    def run_paths(self, project_slug: str, task_slug: str, run_id: str, stage: str) -> RunPaths:
        container = self.run_container(project_slug, task_slug, run_id)
        return RunPaths.under(container / validate_stage(stage))
