"""Per-task persistent directories: memory notes and file storage."""

from __future__ import annotations

import base64
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote

from devman.storage.atomic import atomic_write_bytes, atomic_write_text

MEMORY_FILE = "memory.md"
STORAGE_DIR = "storage"
OFFLOAD_DIR = ".offload"
BINARY_PREFIX = "base64:"
_TASK_SLUG = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_task(task: str) -> str:
    if not _TASK_SLUG.match(task) or ".." in task:
        raise ValueError(f"invalid task name: {task!r}")
    return task


class TaskStore:
    """Files under ``<home>/tasks/<task>/``.

    Paths given by callers are relative to the task's ``storage`` directory
    and may not escape it.
    """

    def __init__(self, home: Path) -> None:
        self.root = home / "tasks"
        self._lock = threading.Lock()

    def task_dir(self, task: str) -> Path:
        return self.root / validate_task(task)

    def ensure(self, task: str) -> Path:
        directory = self.task_dir(task)
        (directory / STORAGE_DIR).mkdir(parents=True, exist_ok=True)
        return directory

    def list_tasks(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(path.name for path in self.root.iterdir() if path.is_dir() and _TASK_SLUG.match(path.name))

    def resolve(self, task: str, relative: str) -> Path:
        base = (self.ensure(task) / STORAGE_DIR).resolve()
        candidate = (base / relative).resolve()
        if candidate == base or not candidate.is_relative_to(base):
            raise ValueError(f"path escapes task storage: {relative!r}")
        return candidate

    def write(self, task: str, relative: str, content: str) -> Path:
        if not content.startswith(BINARY_PREFIX):
            return self.write_text(task, relative, content)
        path = self.resolve(task, relative)
        with self._lock:
            atomic_write_bytes(path, base64.b64decode(content.removeprefix(BINARY_PREFIX), validate=True))
        return path

    def write_text(self, task: str, relative: str, content: str) -> Path:
        """Write ``content`` verbatim as UTF-8, without the binary prefix convention."""
        path = self.resolve(task, relative)
        with self._lock:
            atomic_write_text(path, content)
        return path

    def read(self, task: str, relative: str) -> str:
        """Return text content, or ``base64:``-prefixed data for binary files."""
        path = self.resolve(task, relative)
        if not path.is_file():
            raise FileNotFoundError(f"no such file in task '{task}': {relative}")
        data = path.read_bytes()
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return BINARY_PREFIX + base64.b64encode(data).decode("ascii")

    def list(self, task: str, prefix: str = "") -> list[str]:
        base = (self.ensure(task) / STORAGE_DIR).resolve()
        entries = [path.relative_to(base).as_posix() for path in base.rglob("*") if path.is_file()]
        return sorted(entry for entry in entries if entry.startswith(prefix))

    def delete(self, task: str, relative: str) -> bool:
        path = self.resolve(task, relative)
        with self._lock:
            if not path.is_file():
                return False
            path.unlink()
        return True

    def memory_path(self, task: str) -> Path:
        return self.ensure(task) / MEMORY_FILE

    def read_memory(self, task: str) -> str:
        path = self.memory_path(task)
        if not path.is_file():
            return ""
        return path.read_text(encoding="utf-8")

    def write_memory(self, task: str, content: str, *, append: bool = True) -> str:
        path = self.memory_path(task)
        with self._lock:
            if append:
                existing = path.read_text(encoding="utf-8") if path.is_file() else ""
                stamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M")
                separator = "" if not existing or existing.endswith("\n") else "\n"
                content = f"{existing}{separator}\n## {stamp}\n{content.strip()}\n"
            atomic_write_text(path, content)
        return content

    def offload(self, task: str, session_id: str, call_id: str, payload: str) -> str:
        """Persist an oversized tool payload; return its storage-relative path."""
        relative = f"{OFFLOAD_DIR}/{quote(session_id, safe='')}/{quote(call_id, safe='')}.txt"
        path = self.resolve(task, relative)
        with self._lock:
            atomic_write_text(path, payload)
        return relative
