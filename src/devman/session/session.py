"""One conversational task execution against the completion service."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Protocol

from loguru import logger

from devman.checkpoint.store import Checkpoint
from devman.client.events import EndOfTurn, TextDelta, ToolCallRequest, UsageMetadata
from devman.client.model_client import ModelRequest
from devman.config import Settings
from devman.context.manager import ContextManager
from devman.context.window import ContextWindow
from devman.core.types import (
    AccessScope,
    CapabilityTier,
    ContentBlock,
    Role,
    SessionStatus,
    TextBlock,
    ToolCall,
    ToolUseBlock,
    Usage,
)
from devman.errors import ContextOverflow, DevmanError, StreamInterrupted, TurnLimitExceeded
from devman.logging_utils import session_context
from devman.storage.tasks import TaskStore
from devman.tools.context import ToolContext
from devman.tools.router import ToolRegistry

EMPTY_REPLY = "(empty response)"


class StreamingClient(Protocol):
    def send(self, request: ModelRequest) -> AsyncIterator[object]: ...


type StatusCallback = Callable[[Session], None]
type TurnHook = Callable[[Session], Awaitable[None]]


@dataclass(frozen=True)
class SessionOutcome:
    """Result of one loop run."""

    session_id: str
    status: SessionStatus
    reply: str
    turn: int
    usage: Usage
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in {SessionStatus.COMPLETED, SessionStatus.IDLE}


@dataclass
class _StreamedResponse:
    text_parts: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    stop_reason: str | None = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class Session:
    """Drives the request, stream, tool loop for one task.

    Only the session's own loop mutates it; the orchestrator serialises
    loops for one session id.
    """

    def __init__(
        self,
        *,
        session_id: str,
        task: str,
        tier: CapabilityTier,
        model: str,
        settings: Settings,
        client: StreamingClient,
        tools: ToolRegistry,
        store: TaskStore,
        scope: AccessScope,
        context: ContextManager | None = None,
        consumer: str = "",
        interactive: bool = False,
        turn: int = 0,
        usage: Usage | None = None,
        status: SessionStatus = SessionStatus.IDLE,
        on_status: StatusCallback | None = None,
        turn_hook: TurnHook | None = None,
    ) -> None:
        self.id = session_id
        self.task = task
        self.tier = tier
        self.model = model
        self.consumer = consumer
        self.interactive = interactive
        self.scope = scope
        self.turn = turn
        self.usage = usage or Usage()
        self.context = context or ContextManager(settings, tools=tools.schemas())
        self.on_status = on_status
        self.turn_hook = turn_hook
        self.checkpoint_sequence = 0
        self.error: str | None = None
        self.error_kind: str | None = None
        self._status = status
        self._settings = settings
        self._client = client
        self._tools = tools
        self._store = store
        self._task: asyncio.Task[SessionOutcome] | None = None
        self._cancel_requested = False

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def awaiting_input(self) -> bool:
        """True when the conversation ends with a final reply (or is empty)."""
        messages = self.context.messages
        if not messages:
            return True
        last = messages[-1]
        return last.role is Role.ASSISTANT and not last.tool_uses

    @property
    def last_reply(self) -> str:
        for message in reversed(self.context.messages):
            if message.role is Role.ASSISTANT and not message.tool_uses:
                return message.text
        return ""

    def _set_status(self, status: SessionStatus) -> None:
        if status is self._status:
            return
        logger.debug("session.status session={} from={} to={}", self.id, self._status, status)
        self._status = status
        if self.on_status is not None:
            self.on_status(self)

    def _outcome(self, reply: str = "") -> SessionOutcome:
        return SessionOutcome(
            session_id=self.id,
            status=self._status,
            reply=reply,
            turn=self.turn,
            usage=self.usage,
            error=self.error,
            error_kind=self.error_kind,
        )

    def fail(self, exc: BaseException) -> SessionOutcome:
        """Mark the session failed with ``exc`` and return the outcome."""
        self.error = str(exc) or type(exc).__name__
        self.error_kind = getattr(exc, "kind", "internal_error")
        logger.error("session.failed session={} kind={} error={}", self.id, self.error_kind, self.error)
        self._set_status(SessionStatus.FAILED)
        return self._outcome()

    async def run(self, content: str, *, pinned: bool = False) -> SessionOutcome:
        """Append a user message and drive the loop until a final reply."""
        if self.running:
            raise RuntimeError(f"session {self.id} is already running")
        self.context.add_user_message(content, pinned=pinned)
        return await self._drive()

    async def resume(self) -> SessionOutcome:
        """Continue from the current window, e.g. after restoring a checkpoint."""
        if self.running:
            raise RuntimeError(f"session {self.id} is already running")
        if self.awaiting_input:
            self._set_status(SessionStatus.IDLE if self.interactive else SessionStatus.COMPLETED)
            return self._outcome(self.last_reply)
        return await self._drive()

    def cancel(self) -> None:
        self._cancel_requested = True
        if self.running and self._task is not None:
            self._task.cancel()
            return
        if not self._status.terminal:
            self._set_status(SessionStatus.CANCELLED)

    async def _drive(self) -> SessionOutcome:
        self._cancel_requested = False
        self.error = None
        self.error_kind = None
        self._task = asyncio.create_task(self._loop(), name=f"session:{self.id}")
        try:
            return await self._task
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            self.context.resolve_dangling("cancelled")
            logger.info("session.cancelled session={} turn={}", self.id, self.turn)
            self._set_status(SessionStatus.CANCELLED)
            return self._outcome()
        except Exception as exc:
            logger.exception("session.crashed session={} turn={}", self.id, self.turn)
            self.context.resolve_dangling("internal error")
            return self.fail(exc)
        finally:
            self._task = None

    async def _loop(self) -> SessionOutcome:  # noqa: C901
        settings = self._settings
        overflow_recoveries = 0
        stream_restarts = 0
        tool_context = ToolContext(scope=self.scope, task=self.task, session_id=self.id, store=self._store)

        with session_context(self.id):
            while True:
                if self.turn >= settings.max_turns:
                    return self.fail(TurnLimitExceeded(f"turn limit reached ({settings.max_turns})"))
                if self.context.needs_compaction():
                    self._set_status(SessionStatus.COMPACTING)
                    self.context.compact_pre_turn()

                self._set_status(SessionStatus.REQUESTING)
                request = self.context.build_request(model=self.model, max_tokens=settings.max_output_tokens)
                estimated = self.context.estimate()
                logger.info("session.turn.start session={} turn={} model={}", self.id, self.turn + 1, self.model)
                try:
                    response = await self._stream(request)
                except ContextOverflow as exc:
                    if overflow_recoveries >= settings.max_overflow_recoveries:
                        return self.fail(exc)
                    overflow_recoveries += 1
                    self._set_status(SessionStatus.COMPACTING)
                    self.context.compact_after_overflow()
                    continue
                except StreamInterrupted as exc:
                    if stream_restarts >= settings.max_stream_restarts:
                        return self.fail(exc)
                    stream_restarts += 1
                    logger.warning("session.stream.restart session={} attempt={}", self.id, stream_restarts)
                    continue
                except DevmanError as exc:
                    return self.fail(exc)

                self.usage = self.usage + response.usage
                self.context.record_usage(response.usage, estimated=estimated)
                blocks: list[ContentBlock] = []
                if response.text:
                    blocks.append(TextBlock(text=response.text))
                blocks.extend(
                    ToolUseBlock(id=call.id, name=call.name, input=call.arguments) for call in response.tool_calls
                )
                message = self.context.add_assistant_message(blocks or [TextBlock(text=EMPTY_REPLY)])

                if response.tool_calls:
                    self._set_status(SessionStatus.TOOL_EXECUTING)
                    calls = [
                        ToolCall(id=call.id, name=call.name, arguments=call.arguments, seq=message.seq)
                        for call in response.tool_calls
                    ]
                    results = await self._tools.execute_all(
                        calls, tool_context, parallel=settings.parallel_tool_calls
                    )
                    results = [
                        self.context.compact_tool_result(result, store=self._store, task=self.task, session_id=self.id)
                        for result in results
                    ]
                    self.context.add_tool_results(results)

                self.turn += 1
                logger.info(
                    "session.turn.end session={} turn={} tools={} stop_reason={}",
                    self.id,
                    self.turn,
                    len(response.tool_calls),
                    response.stop_reason,
                )
                if self.turn_hook is not None:
                    try:
                        await self.turn_hook(self)
                    except DevmanError as exc:
                        return self.fail(exc)

                if not response.tool_calls:
                    self._set_status(SessionStatus.IDLE if self.interactive else SessionStatus.COMPLETED)
                    return self._outcome(message.text)

    async def _stream(self, request: ModelRequest) -> _StreamedResponse:
        response = _StreamedResponse()
        self._set_status(SessionStatus.STREAMING)
        async with aclosing(self._client.send(request)) as events:
            async for event in events:
                match event:
                    case TextDelta(text=text):
                        response.text_parts.append(text)
                    case ToolCallRequest():
                        response.tool_calls.append(event)
                    case UsageMetadata(usage=usage):
                        response.usage = response.usage + usage
                    case EndOfTurn(stop_reason=stop_reason):
                        response.stop_reason = stop_reason
        return response

    def snapshot(self) -> Checkpoint:
        self.checkpoint_sequence += 1
        return Checkpoint(
            session_id=self.id,
            task=self.task,
            tier=self.tier,
            model=self.model,
            status=self._status,
            turn=self.turn,
            window=self.context.window.to_dict(),
            usage=self.usage,
            consumer=self.consumer,
            interactive=self.interactive,
            sequence=self.checkpoint_sequence,
        )

    @classmethod
    def restore(
        cls,
        checkpoint: Checkpoint,
        *,
        settings: Settings,
        client: StreamingClient,
        tools: ToolRegistry,
        store: TaskStore,
        scope: AccessScope,
        on_status: StatusCallback | None = None,
        turn_hook: TurnHook | None = None,
    ) -> Session:
        context = ContextManager(settings, tools=tools.schemas())
        context.window = ContextWindow.from_dict(checkpoint.window, context.estimator)
        session = cls(
            session_id=checkpoint.session_id,
            task=checkpoint.task,
            tier=checkpoint.tier,
            model=checkpoint.model,
            settings=settings,
            client=client,
            tools=tools,
            store=store,
            scope=scope,
            context=context,
            consumer=checkpoint.consumer,
            interactive=checkpoint.interactive,
            turn=checkpoint.turn,
            usage=checkpoint.usage,
            status=checkpoint.status,
            on_status=on_status,
            turn_hook=turn_hook,
        )
        session.checkpoint_sequence = checkpoint.sequence
        session.context.resolve_dangling("interrupted before results were recorded")
        return session
