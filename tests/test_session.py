import asyncio
from pathlib import Path
from typing import Any

import pytest
from fakes import BlockingClient, ScriptedClient, make_settings, reply, tool_calls
from pydantic import BaseModel

from devman.client.events import TextDelta
from devman.core.types import AccessScope, CapabilityTier, Role, SessionStatus, ToolUseBlock
from devman.errors import AuthFailure, ContextOverflow, StreamInterrupted
from devman.session.session import Session
from devman.storage.tasks import TaskStore
from devman.tools.builtin import register_builtin_tools
from devman.tools.context import ToolContext
from devman.tools.router import ToolRegistry


def _session(
    tmp_path: Path,
    client: Any,
    *,
    tools: ToolRegistry | None = None,
    interactive: bool = False,
    statuses: list[SessionStatus] | None = None,
    **overrides: Any,
) -> Session:
    settings = make_settings(tmp_path, **overrides)
    if tools is None:
        tools = ToolRegistry()
        register_builtin_tools(tools, settings=settings)
    return Session(
        session_id="cli:alpha",
        task="alpha",
        tier=CapabilityTier.DEFAULT,
        model="claude-sonnet-4-5",
        settings=settings,
        client=client,
        tools=tools,
        store=TaskStore(tmp_path),
        scope=AccessScope.full(),
        interactive=interactive,
        on_status=(lambda session: statuses.append(session.status)) if statuses is not None else None,
    )


class _Echo(BaseModel):
    value: str
    delay: float = 0.0


@pytest.mark.asyncio
async def test_plain_reply_completes(tmp_path: Path) -> None:
    client = ScriptedClient([reply("hello there")])
    session = _session(tmp_path, client)

    outcome = await session.run("hi")

    assert outcome.ok
    assert outcome.status is SessionStatus.COMPLETED
    assert outcome.reply == "hello there"
    assert outcome.turn == 1
    assert outcome.usage.input_tokens == 10
    assert [message.role for message in session.context.messages] == [Role.USER, Role.ASSISTANT]
    assert client.requests[0].model == "claude-sonnet-4-5"


@pytest.mark.asyncio
async def test_status_transitions_are_reported(tmp_path: Path) -> None:
    statuses: list[SessionStatus] = []
    client = ScriptedClient([tool_calls(("t1", "storage_list", {})), reply("done")])
    session = _session(tmp_path, client, interactive=True, statuses=statuses)

    outcome = await session.run("list files")

    assert outcome.status is SessionStatus.IDLE
    assert statuses == [
        SessionStatus.REQUESTING,
        SessionStatus.STREAMING,
        SessionStatus.TOOL_EXECUTING,
        SessionStatus.REQUESTING,
        SessionStatus.STREAMING,
        SessionStatus.IDLE,
    ]


@pytest.mark.asyncio
async def test_tool_results_follow_call_order(tmp_path: Path) -> None:
    tools = ToolRegistry()

    @tools.register(name="echo", description="echo", input_model=_Echo)
    async def echo(params: _Echo, context: ToolContext) -> str:
        await asyncio.sleep(params.delay)
        return params.value

    client = ScriptedClient(
        [
            tool_calls(("slow", "echo", {"value": "first", "delay": 0.05}), ("fast", "echo", {"value": "second"})),
            reply("ok"),
        ]
    )
    session = _session(tmp_path, client, tools=tools)

    await session.run("go")

    results = session.context.messages[2].tool_results
    assert [(block.tool_use_id, block.content) for block in results] == [("slow", "first"), ("fast", "second")]
    second_request = client.requests[1].messages
    assert second_request[-1]["content"][0]["tool_use_id"] == "slow"


@pytest.mark.asyncio
async def test_unknown_tool_does_not_abort_the_loop(tmp_path: Path) -> None:
    client = ScriptedClient([tool_calls(("t1", "does_not_exist", {})), reply("recovered")])
    session = _session(tmp_path, client)

    outcome = await session.run("try it")

    assert outcome.reply == "recovered"
    result = session.context.messages[2].tool_results[0]
    assert result.is_error
    assert result.content.startswith("error (not_found)")


@pytest.mark.asyncio
async def test_turn_limit_fails_the_session(tmp_path: Path) -> None:
    client = ScriptedClient([tool_calls(("t1", "storage_list", {})), reply("never")])
    session = _session(tmp_path, client, max_turns=1)

    outcome = await session.run("loop")

    assert outcome.status is SessionStatus.FAILED
    assert outcome.error_kind == "turn_limit"
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_model_errors_fail_the_session(tmp_path: Path) -> None:
    session = _session(tmp_path, ScriptedClient([AuthFailure("bad key")]))

    outcome = await session.run("hi")

    assert outcome.status is SessionStatus.FAILED
    assert outcome.error_kind == "auth_failure"
    assert outcome.error == "bad key"


@pytest.mark.asyncio
async def test_unexpected_storage_error_fails_the_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    tools = ToolRegistry()

    @tools.register(name="echo", description="echo", input_model=_Echo)
    async def echo(params: _Echo, context: ToolContext) -> str:
        return params.value

    def full_disk(self: TaskStore, task: str, session_id: str, call_id: str, payload: str) -> str:
        raise OSError("No space left on device")

    monkeypatch.setattr(TaskStore, "offload", full_disk)
    client = ScriptedClient([tool_calls(("t1", "echo", {"value": "x" * 4000})), reply("never")])
    session = _session(tmp_path, client, tools=tools, tool_result_max_fraction=0.001)

    outcome = await session.run("dump it")

    assert outcome.status is SessionStatus.FAILED
    assert outcome.error_kind == "internal_error"
    assert "No space left" in (outcome.error or "")
    assert not session.running
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_client_bug_fails_the_session_instead_of_raising(tmp_path: Path) -> None:
    session = _session(tmp_path, ScriptedClient([RuntimeError("unexpected")]))

    outcome = await session.run("hi")

    assert outcome.status is SessionStatus.FAILED
    assert outcome.error_kind == "internal_error"
    assert outcome.error == "unexpected"


@pytest.mark.asyncio
async def test_context_overflow_compacts_and_retries(tmp_path: Path) -> None:
    client = ScriptedClient(
        [
            tool_calls(("t1", "storage_list", {})),
            ContextOverflow("prompt is too long"),
            reply("fits now"),
        ]
    )
    session = _session(tmp_path, client)

    outcome = await session.run("big job")

    assert outcome.reply == "fits now"
    assert len(client.requests) == 3
    assert session.context.window.orphans() == set()
    assert not any(message.tool_uses for message in session.context.messages)


@pytest.mark.asyncio
async def test_context_overflow_gives_up_after_bounded_recoveries(tmp_path: Path) -> None:
    client = ScriptedClient([ContextOverflow("too long")] * 3)
    session = _session(tmp_path, client, max_overflow_recoveries=2)

    outcome = await session.run("hi")

    assert outcome.error_kind == "context_overflow"
    assert len(client.requests) == 3


@pytest.mark.asyncio
async def test_interrupted_stream_discards_partial_message(tmp_path: Path) -> None:
    client = ScriptedClient([[TextDelta(text="half an ans"), StreamInterrupted("reset")], reply("whole answer")])
    session = _session(tmp_path, client)

    outcome = await session.run("hi")

    assert outcome.reply == "whole answer"
    assistant = [message.text for message in session.context.messages if message.role is Role.ASSISTANT]
    assert assistant == ["whole answer"]


@pytest.mark.asyncio
async def test_cancel_stops_streaming_without_partial_message(tmp_path: Path) -> None:
    client = BlockingClient()
    session = _session(tmp_path, client)

    running = asyncio.create_task(session.run("take your time"))
    await client.started.wait()
    session.cancel()
    outcome = await running

    assert outcome.status is SessionStatus.CANCELLED
    assert [message.role for message in session.context.messages] == [Role.USER]
    assert not session.running


@pytest.mark.asyncio
async def test_cancel_during_tool_execution_answers_pending_calls(tmp_path: Path) -> None:
    tools = ToolRegistry()
    started = asyncio.Event()

    @tools.register(name="wait", description="wait", input_model=_Echo)
    async def wait(params: _Echo, context: ToolContext) -> str:
        started.set()
        await asyncio.Event().wait()
        return params.value

    client = ScriptedClient([tool_calls(("t1", "wait", {"value": "x"}))])
    session = _session(tmp_path, client, tools=tools)

    running = asyncio.create_task(session.run("wait"))
    await started.wait()
    session.cancel()
    outcome = await running

    assert outcome.status is SessionStatus.CANCELLED
    assert session.context.window.orphans() == set()
    assert session.context.messages[-1].tool_results[0].is_error


@pytest.mark.asyncio
async def test_snapshot_and_restore_keep_the_window(tmp_path: Path) -> None:
    client = ScriptedClient([tool_calls(("t1", "storage_list", {})), reply("first answer")])
    session = _session(tmp_path, client, interactive=True)
    await session.run("hello")

    checkpoint = session.snapshot()
    restored = Session.restore(
        checkpoint,
        settings=make_settings(tmp_path),
        client=client,
        tools=ToolRegistry(),
        store=TaskStore(tmp_path),
        scope=AccessScope.full(),
    )

    assert checkpoint.sequence == 1
    assert restored.context.messages == session.context.messages
    assert restored.turn == 2
    assert restored.status is SessionStatus.IDLE
    assert restored.awaiting_input
    assert restored.last_reply == "first answer"

    client.extend([reply("second answer")])
    outcome = await restored.run("and then?")
    assert outcome.reply == "second answer"
    assert len(client.requests[-1].messages) == 5


@pytest.mark.asyncio
async def test_restore_answers_dangling_tool_calls(tmp_path: Path) -> None:
    session = _session(tmp_path, ScriptedClient())
    session.context.add_user_message("go")
    session.context.add_assistant_message([ToolUseBlock(id="t1", name="shell", input={"cmd": "ls"})])

    restored = Session.restore(
        session.snapshot(),
        settings=make_settings(tmp_path),
        client=ScriptedClient(),
        tools=ToolRegistry(),
        store=TaskStore(tmp_path),
        scope=AccessScope.full(),
    )

    assert restored.context.window.orphans() == set()
    assert not restored.awaiting_input
