"""Built-in tool definitions."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
from pathlib import Path
from urllib import parse as urllib_parse

import html2markdown
import httpx
from pydantic import BaseModel, Field
from rapidfuzz import fuzz, process

from devman.config import Settings
from devman.errors import ToolFailure
from devman.storage.tasks import STORAGE_DIR
from devman.tools.context import ToolContext
from devman.tools.router import ToolRegistry

MAX_FETCH_BYTES = 1_000_000
MAX_SHELL_OUTPUT_CHARS = 50_000
MIN_FUZZY_SCORE = 80
WEB_USER_AGENT = "devman-web-tools/1.0"


class StorageWriteInput(BaseModel):
    path: str = Field(..., description="Path relative to the task's storage directory")
    content: str = Field(..., description="File content; prefix with 'base64:' for binary data")
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class StoragePathInput(BaseModel):
    path: str = Field(..., description="Path relative to the task's storage directory")
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class StorageListInput(BaseModel):
    prefix: str = Field(default="", description="Only list paths starting with this prefix")
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class MemoryReadInput(BaseModel):
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class MemoryWriteInput(BaseModel):
    content: str = Field(..., description="Note to store")
    append: bool = Field(default=True, description="Append a dated entry instead of replacing the file")
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class MemorySearchInput(BaseModel):
    query: str = Field(..., min_length=1, description="Search query")
    limit: int = Field(default=10, ge=1, le=50)


class FileReadInput(BaseModel):
    path: str = Field(..., description="File path relative to the task's storage directory")
    offset: int = Field(default=0, ge=0, description="First line to return, zero-based")
    limit: int | None = Field(default=None, ge=1, description="Maximum number of lines")
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class FileWriteInput(BaseModel):
    path: str = Field(..., description="File path relative to the task's storage directory")
    content: str = Field(..., description="UTF-8 text content")
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class FileEditInput(BaseModel):
    path: str = Field(..., description="File path relative to the task's storage directory")
    old: str = Field(..., min_length=1, description="Text to replace; must match exactly once unless replace_all")
    new: str = Field(..., description="Replacement text")
    replace_all: bool = Field(default=False, description="Replace every occurrence")
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class GitStatusInput(BaseModel):
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class GitDiffInput(BaseModel):
    path: str | None = Field(default=None, description="Limit the diff to this path")
    staged: bool = Field(default=False, description="Show staged changes instead of the working tree")
    task: str | None = Field(default=None, description="Task name; defaults to the current task")


class ShellInput(BaseModel):
    cmd: str = Field(..., description="Shell command")
    timeout: float | None = Field(default=None, gt=0, description="Timeout in seconds")


class FetchInput(BaseModel):
    url: str = Field(..., description="URL")


def _task_target(params: BaseModel, context: ToolContext) -> list[str]:
    return [context.task_or_default(getattr(params, "task", None))]


def _current_task(_params: BaseModel, context: ToolContext) -> list[str]:
    return [context.task]


def _text_file(context: ToolContext, task: str, relative: str) -> Path:
    try:
        path = context.store.resolve(task, relative)
    except ValueError as exc:
        raise ToolFailure(str(exc)) from exc
    if not path.is_file():
        raise ToolFailure(f"no such file in task '{task}': {relative}")
    return path


def _read_text(path: Path, relative: str) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ToolFailure(f"not a text file: {relative}") from exc


async def _communicate(proc: asyncio.subprocess.Process, timeout: float) -> tuple[bytes, bytes]:
    """Wait for ``proc``; kill and reap it on timeout or cancellation."""
    try:
        async with asyncio.timeout(timeout):
            return await proc.communicate()
    except TimeoutError as exc:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise ToolFailure(f"command timed out after {timeout:g}s") from exc
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(ProcessLookupError, asyncio.CancelledError):
            await asyncio.shield(proc.wait())
        raise


def _normalize_url(raw_url: str) -> str | None:
    normalized = raw_url.strip()
    if not normalized:
        return None
    parsed = urllib_parse.urlparse(normalized)
    if parsed.scheme and parsed.netloc:
        if parsed.scheme not in {"http", "https"}:
            return None
        return normalized
    if parsed.scheme == "" and parsed.netloc == "" and parsed.path:
        with_scheme = f"https://{normalized}"
        if urllib_parse.urlparse(with_scheme).netloc:
            return with_scheme
    return None


def _html_to_markdown(content: str) -> str:
    rendered = html2markdown.convert(content)
    lines = [line.rstrip() for line in rendered.splitlines()]
    return "\n".join(line for line in lines if line.strip())


def _searchable_tasks(context: ToolContext) -> list[str]:
    existing = context.store.list_tasks()
    if context.scope.is_full:
        return existing
    return [task for task in existing if context.scope.allows(task)]


def register_builtin_tools(  # noqa: C901
    registry: ToolRegistry,
    *,
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    """Register the built-in storage, memory, file, git, shell and web tools."""

    register = registry.register

    @register(
        name="storage_write",
        description="Write a file into task storage",
        input_model=StorageWriteInput,
        targets=_task_target,
    )
    def storage_write(params: StorageWriteInput, context: ToolContext) -> str:
        task = context.task_or_default(params.task)
        try:
            context.store.write(task, params.path, params.content)
        except ValueError as exc:
            raise ToolFailure(str(exc)) from exc
        return f"wrote {params.path} in task {task}"

    @register(
        name="storage_read",
        description="Read a file from task storage",
        input_model=StoragePathInput,
        targets=_task_target,
    )
    def storage_read(params: StoragePathInput, context: ToolContext) -> str:
        try:
            return context.store.read(context.task_or_default(params.task), params.path)
        except (ValueError, FileNotFoundError) as exc:
            raise ToolFailure(str(exc)) from exc

    @register(
        name="storage_list",
        description="List files in task storage",
        input_model=StorageListInput,
        targets=_task_target,
    )
    def storage_list(params: StorageListInput, context: ToolContext) -> str:
        entries = context.store.list(context.task_or_default(params.task), params.prefix)
        return "\n".join(entries) if entries else "(empty)"

    @register(
        name="storage_delete",
        description="Delete a file from task storage",
        input_model=StoragePathInput,
        targets=_task_target,
    )
    def storage_delete(params: StoragePathInput, context: ToolContext) -> str:
        try:
            deleted = context.store.delete(context.task_or_default(params.task), params.path)
        except ValueError as exc:
            raise ToolFailure(str(exc)) from exc
        if not deleted:
            raise ToolFailure(f"no such file: {params.path}")
        return f"deleted {params.path}"

    @register(
        name="memory_read",
        description="Read the task's memory notes",
        input_model=MemoryReadInput,
        targets=_task_target,
    )
    def memory_read(params: MemoryReadInput, context: ToolContext) -> str:
        return context.store.read_memory(context.task_or_default(params.task)) or "(no memories stored)"

    @register(
        name="memory_write",
        description="Save a note to the task's memory",
        input_model=MemoryWriteInput,
        targets=_task_target,
    )
    def memory_write(params: MemoryWriteInput, context: ToolContext) -> str:
        task = context.task_or_default(params.task)
        context.store.write_memory(task, params.content, append=params.append)
        return f"{'appended to' if params.append else 'replaced'} memory of task {task}"

    @register(
        name="memory_search",
        description="Fuzzy search the memory notes of every task in scope",
        input_model=MemorySearchInput,
    )
    def memory_search(params: MemorySearchInput, context: ToolContext) -> str:
        query = params.query.strip().lower()
        candidates: list[tuple[str, str]] = []
        for task in _searchable_tasks(context):
            for line in context.store.read_memory(task).splitlines():
                if line.strip() and not line.startswith("## "):
                    candidates.append((task, line.strip()))

        exact = [(task, line, 100.0) for task, line in candidates if query in line.lower()]
        fuzzy = process.extract(
            query,
            [line.lower() for _, line in candidates],
            scorer=fuzz.WRatio,
            score_cutoff=MIN_FUZZY_SCORE,
            limit=params.limit,
        )
        seen = {(task, line) for task, line, _ in exact}
        hits = list(exact)
        for _, score, index in fuzzy:
            task, line = candidates[index]
            if (task, line) not in seen:
                seen.add((task, line))
                hits.append((task, line, float(score)))
        if not hits:
            return f"(no matches for '{params.query}')"
        hits.sort(key=lambda item: item[2], reverse=True)
        return "\n".join(f"[{task}] {line}" for task, line, _ in hits[: params.limit])

    @register(
        name="read_file",
        description="Read a text file from the task directory, optionally a line window",
        input_model=FileReadInput,
        targets=_task_target,
    )
    def read_file(params: FileReadInput, context: ToolContext) -> str:
        path = _text_file(context, context.task_or_default(params.task), params.path)
        lines = _read_text(path, params.path).splitlines()
        start = min(params.offset, len(lines))
        end = len(lines) if params.limit is None else min(len(lines), start + params.limit)
        return "\n".join(lines[start:end])

    @register(
        name="write_file",
        description="Create or overwrite a text file in the task directory",
        input_model=FileWriteInput,
        targets=_task_target,
    )
    def write_file(params: FileWriteInput, context: ToolContext) -> str:
        task = context.task_or_default(params.task)
        try:
            context.store.write_text(task, params.path, params.content)
        except ValueError as exc:
            raise ToolFailure(str(exc)) from exc
        return f"wrote {params.path} ({len(params.content)} chars)"

    @register(
        name="edit_file",
        description="Replace text in a file of the task directory",
        input_model=FileEditInput,
        targets=_task_target,
    )
    def edit_file(params: FileEditInput, context: ToolContext) -> str:
        """Replace ``old`` with ``new``; ``old`` must be unique unless ``replace_all`` is set."""
        task = context.task_or_default(params.task)
        text = _read_text(_text_file(context, task, params.path), params.path)
        count = text.count(params.old)
        if count == 0:
            raise ToolFailure(f"old text not found in {params.path}")
        if count > 1 and not params.replace_all:
            raise ToolFailure(f"old text matches {count} places in {params.path}; add context or set replace_all")
        replaced = count if params.replace_all else 1
        context.store.write_text(task, params.path, text.replace(params.old, params.new, replaced))
        return f"updated {params.path} occurrences={replaced}"

    async def run_git(task: str, context: ToolContext, *args: str) -> str:
        executable = shutil.which("git")
        if executable is None:
            raise ToolFailure("git is not installed")
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=context.store.ensure(task) / STORAGE_DIR,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await _communicate(proc, settings.shell_timeout_seconds)
        stdout = stdout_bytes.decode("utf-8", errors="replace").rstrip()
        if proc.returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise ToolFailure(f"git {args[0]} exit={proc.returncode}: {stderr or stdout or '(no output)'}")
        if len(stdout) > MAX_SHELL_OUTPUT_CHARS:
            stdout = stdout[:MAX_SHELL_OUTPUT_CHARS] + "\n[truncated]"
        return stdout

    @register(
        name="git_status",
        description="Show git status of the task directory",
        input_model=GitStatusInput,
        targets=_task_target,
    )
    async def git_status(params: GitStatusInput, context: ToolContext) -> str:
        output = await run_git(context.task_or_default(params.task), context, "status", "--short", "--branch")
        return output or "(clean)"

    @register(
        name="git_diff",
        description="Show git diff of the task directory",
        input_model=GitDiffInput,
        targets=_task_target,
    )
    async def git_diff(params: GitDiffInput, context: ToolContext) -> str:
        args = ["diff", "--no-color"]
        if params.staged:
            args.append("--cached")
        if params.path:
            args.extend(["--", params.path])
        output = await run_git(context.task_or_default(params.task), context, *args)
        return output or "(no changes)"

    @register(
        name="shell",
        description="Run a shell command in the task directory",
        input_model=ShellInput,
        targets=_current_task,
    )
    async def shell(params: ShellInput, context: ToolContext) -> str:
        """Trusted execution; the access scope is not a sandbox."""
        cwd = context.store.ensure(context.task) / STORAGE_DIR
        executable = shutil.which("bash") or "sh"
        proc = await asyncio.create_subprocess_exec(
            executable,
            "-c",
            params.cmd,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await _communicate(proc, params.timeout or settings.shell_timeout_seconds)
        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            message = stderr or stdout or "(no output)"
            raise ToolFailure(f"exit={proc.returncode}: {message[:MAX_SHELL_OUTPUT_CHARS]}")
        output = stdout or "(no output)"
        if len(output) > MAX_SHELL_OUTPUT_CHARS:
            output = output[:MAX_SHELL_OUTPUT_CHARS] + "\n[truncated]"
        return output

    @register(name="web_fetch", description="Fetch a URL as markdown", input_model=FetchInput)
    async def web_fetch(params: FetchInput, _context: ToolContext) -> str:
        url = _normalize_url(params.url)
        if not url:
            raise ToolFailure(f"invalid url: {params.url}")
        client = http_client or httpx.AsyncClient(timeout=settings.web_fetch_timeout_seconds)
        try:
            response = await client.get(
                url,
                headers={
                    "User-Agent": WEB_USER_AGENT,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                },
                follow_redirects=True,
            )
        except httpx.HTTPError as exc:
            raise ToolFailure(f"fetch failed: {exc}") from exc
        finally:
            if http_client is None:
                await client.aclose()
        if response.status_code >= 400:
            raise ToolFailure(f"HTTP {response.status_code} for {url}")
        body = response.content
        truncated = len(body) > MAX_FETCH_BYTES
        text = body[:MAX_FETCH_BYTES].decode(response.encoding or "utf-8", errors="replace")
        if "html" in response.headers.get("content-type", "html"):
            text = _html_to_markdown(text)
        text = text.strip()
        if not text:
            raise ToolFailure("empty response body")
        if truncated:
            return f"{text}\n\n[truncated: response exceeded byte limit]"
        return text
