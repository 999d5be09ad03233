"""devman command line."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from devman.app.runtime import AppRuntime
from devman.checkpoint.store import Checkpoint, CheckpointStore
from devman.cli.render import Renderer
from devman.config import Settings
from devman.core.types import CapabilityTier
from devman.errors import CheckpointError
from devman.logging_utils import configure_logging

app = typer.Typer(name="devman", help="Agent orchestration core", add_completion=False)

QUIT_COMMANDS = frozenset({",quit", ",exit", "exit", "quit"})


def _settings(home: Path | None) -> Settings:
    settings = Settings()
    if home is not None:
        settings = settings.model_copy(update={"home": home})
    return settings


@app.command()
def run(
    task: str = typer.Argument(..., help="Task name"),
    message: str = typer.Argument(..., help="Request for the task"),
    tier: CapabilityTier | None = typer.Option(None, "--tier", help="Force a capability tier"),  # noqa: B008
    home: Path | None = typer.Option(None, "--home", help="State directory"),  # noqa: B008
) -> None:
    """Run one request to completion."""
    settings = _settings(home)
    configure_logging(level=settings.log_level)
    renderer = Renderer()

    async def _run() -> bool:
        async with AppRuntime(settings) as runtime:
            result = await runtime.run_task(task, message, tier=tier)
        renderer.result(result)
        return result.ok

    if not asyncio.run(_run()):
        raise typer.Exit(1)


@app.command()
def chat(
    task: str = typer.Option("general", "--task", "-t", help="Task name"),
    tier: CapabilityTier | None = typer.Option(None, "--tier", help="Force a capability tier"),  # noqa: B008
    home: Path | None = typer.Option(None, "--home", help="State directory"),  # noqa: B008
) -> None:
    """Interactive session bound to one task."""
    settings = _settings(home)
    configure_logging(profile="chat", level=settings.log_level)
    renderer = Renderer()

    async def _chat() -> None:
        async with AppRuntime(settings) as runtime:
            renderer.welcome(task, tier.value if tier else "auto tier")
            while True:
                try:
                    text = (await renderer.get_user_input()).strip()
                except (EOFError, KeyboardInterrupt):
                    return
                if not text:
                    continue
                if text in QUIT_COMMANDS:
                    return
                result = await runtime.run_task(task, text, tier=tier, interactive=True, consumer="chat")
                renderer.result(result)

    asyncio.run(_chat())


@app.command()
def sessions(
    home: Path | None = typer.Option(None, "--home", help="State directory"),  # noqa: B008
) -> None:
    """List checkpointed sessions."""
    settings = _settings(home)
    configure_logging(level=settings.log_level)
    renderer = Renderer()
    store = CheckpointStore(settings.resolve_home())
    found: list[Checkpoint] = []
    for session_id in store.list_ids():
        try:
            checkpoint = store.load(session_id)
        except CheckpointError as exc:
            renderer.error(f"{session_id}: {exc}")
            continue
        if checkpoint is not None:
            found.append(checkpoint)
    renderer.checkpoints(found)
