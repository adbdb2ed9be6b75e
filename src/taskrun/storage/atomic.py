from __future__ import annotations

import json
import os
import secrets
from pathlib import Path
from typing import Any

from taskrun.storage.errors import StorageIOError


def ensure_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StorageIOError(f"Unable to create directory {path}: {exc}", path=path) from exc
    return path


def _fsync_dir(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def write_text_atomic(path: Path, content: str) -> None:
    """Write through a sibling temp file and rename it over the target."""

    ensure_dir(path.parent)
    temp_path = path.with_name(f"{path.name}.tmp.{secrets.token_hex(6)}")
    try:
        with open(temp_path, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except OSError as exc:
        try:
            temp_path.unlink()
        except OSError:
            pass
        raise StorageIOError(f"Unable to write {path}: {exc}", path=path) from exc
    _fsync_dir(path.parent)


def write_json_atomic(path: Path, payload: Any) -> None:
    write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def read_json_safe(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StorageIOError(f"Unable to read {path}: {exc}", path=path) from exc
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def read_text_safe(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StorageIOError(f"Unable to read {path}: {exc}", path=path) from exc
