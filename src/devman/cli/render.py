"""Terminal rendering for the devman CLI."""

from __future__ import annotations

import threading

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.table import Table

from devman.checkpoint.store import Checkpoint
from devman.orchestrator.cost import estimate_cost
from devman.orchestrator.orchestrator import RunResult


class Renderer:
    """CLI renderer using Rich for output and prompt_toolkit for input."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self._prompt_session: PromptSession[str] | None = None
        self._print_lock = threading.Lock()

    def error(self, message: str) -> None:
        self._print(f"[bold red]Error:[/bold red] {message}")

    def welcome(self, task: str, model_hint: str) -> None:
        self._print(f"[bold blue]devman[/bold blue] task [cyan]{task}[/cyan] ({model_hint})")
        self._print("[dim]Type ,quit to leave.[/dim]")

    def result(self, result: RunResult) -> None:
        if result.ok:
            self._print(f"[bold yellow]devman:[/bold yellow] {result.reply}")
        else:
            self.error(f"{result.error_kind}: {result.error}")
        self._print(
            f"[dim]session={result.session_id} tier={result.tier} turn={result.turn} "
            f"tokens={result.usage.input_tokens}/{result.usage.output_tokens} cost=${result.cost_usd:.4f}[/dim]"
        )

    def checkpoints(self, checkpoints: list[Checkpoint]) -> None:
        if not checkpoints:
            self._print("[dim](no sessions)[/dim]")
            return
        table = Table("session", "task", "tier", "status", "turn", "cost")
        for checkpoint in checkpoints:
            table.add_row(
                checkpoint.session_id,
                checkpoint.task,
                checkpoint.tier.value,
                checkpoint.status.value,
                str(checkpoint.turn),
                f"${estimate_cost(checkpoint.model, checkpoint.usage):.4f}",
            )
        with self._print_lock:
            self.console.print(table)

    async def get_user_input(self) -> str:
        if self._prompt_session is None:
            self._prompt_session = PromptSession()
        with patch_stdout(raw=True):
            return await self._prompt_session.prompt_async("> ")

    def _print(self, message: str) -> None:
        with self._print_lock:
            self.console.print(message)
