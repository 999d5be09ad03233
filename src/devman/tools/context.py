"""Per-call context handed to tool handlers."""

from __future__ import annotations

from dataclasses import dataclass

from devman.core.types import AccessScope
from devman.storage.tasks import TaskStore


@dataclass(frozen=True)
class ToolContext:
    scope: AccessScope
    task: str
    session_id: str
    store: TaskStore

    def task_or_default(self, task: str | None) -> str:
        return task or self.task
