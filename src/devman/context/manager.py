"""Context management for one session: appends, request assembly, compaction."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from loguru import logger

from devman.client.model_client import ModelRequest
from devman.config import Settings
from devman.context.compaction import compact_turns, drop_inflight_chain
from devman.context.estimator import TokenEstimator
from devman.context.window import ContextWindow
from devman.core.types import ContentBlock, Message, Role, TextBlock, ToolResult, Usage
from devman.storage.tasks import TaskStore


class ContextManager:
    def __init__(
        self,
        settings: Settings,
        *,
        window: ContextWindow | None = None,
        estimator: TokenEstimator | None = None,
        system_prompt: str | None = None,
        tools: Sequence[dict[str, Any]] = (),
    ) -> None:
        self._settings = settings
        self.estimator = estimator or TokenEstimator(settings.chars_per_token)
        self.window = window or ContextWindow(self.estimator)
        self.system_prompt = settings.system_prompt if system_prompt is None else system_prompt
        self.tools = list(tools)
        self.budget = settings.context_budget_tokens

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.window.messages

    def estimate(self) -> int:
        """Upper bound of the input tokens of the next request."""
        return self.window.estimate + self.estimator.request_overhead(self.system_prompt, self.tools)

    def add_user_message(self, text: str, *, pinned: bool = False) -> Message:
        return self.window.append(Role.USER, [TextBlock(text=text)], pinned=pinned)

    def add_assistant_message(self, content: Sequence[ContentBlock]) -> Message:
        return self.window.append(Role.ASSISTANT, content)

    def add_tool_results(self, results: Sequence[ToolResult]) -> Message:
        return self.window.append(Role.USER, [result.to_block() for result in results])

    def build_request(self, *, model: str, max_tokens: int) -> ModelRequest:
        merged: list[dict[str, Any]] = []
        for message in self.window.messages:
            blocks = [block.to_dict() for block in message.content]
            if merged and merged[-1]["role"] == message.role.value:
                merged[-1]["content"].extend(blocks)
            else:
                merged.append({"role": message.role.value, "content": blocks})
        return ModelRequest(
            model=model,
            system=self.system_prompt,
            messages=merged,
            tools=self.tools,
            max_tokens=max_tokens,
        )

    def needs_compaction(self) -> bool:
        return self.estimate() > self._settings.compaction_threshold * self.budget

    def compact_pre_turn(self, *, keep_recent_turns: int | None = None) -> bool:
        keep = keep_recent_turns or self._settings.keep_recent_turns
        before = self.estimate()
        result = compact_turns(
            self.window.messages,
            self.estimator,
            target_tokens=int(self._settings.compaction_target * self.budget),
            keep_recent_turns=keep,
            overhead=self.estimator.request_overhead(self.system_prompt, self.tools),
        )
        if not result.changed:
            return False
        self.window.replace(result.messages)
        logger.info(
            "context.compact.pre_turn dropped={} before={} after={} keep_recent={}",
            result.dropped,
            before,
            self.estimate(),
            keep,
        )
        return True

    def compact_tool_result(
        self,
        result: ToolResult,
        *,
        store: TaskStore,
        task: str,
        session_id: str,
    ) -> ToolResult:
        """Offload an oversized tool payload to task storage, keeping a preview."""
        if not result.success:
            return result
        size = self.estimator.text(result.payload)
        limit = self._settings.tool_result_max_fraction * self.budget
        if size <= limit and self.estimate() + size <= self.budget:
            return result
        reference = store.offload(task, session_id, result.call_id, result.payload)
        preview_chars = self._settings.offload_preview_chars
        preview = result.payload[:preview_chars]
        payload = (
            f"[Output of {len(result.payload)} chars offloaded to task storage at {reference}; "
            f"read it with storage_read. Preview of the first {len(preview)} chars follows.]\n{preview}"
        )
        logger.info(
            "context.compact.offload call_id={} tokens={} reference={}",
            result.call_id,
            size,
            reference,
        )
        return ToolResult(call_id=result.call_id, success=True, payload=payload, reference=reference)

    def compact_after_overflow(self) -> bool:
        result = drop_inflight_chain(self.window.messages)
        if result.changed:
            self.window.replace(result.messages)
            logger.warning("context.compact.overflow dropped={} after={}", result.dropped, self.estimate())
        trimmed = self.compact_pre_turn(keep_recent_turns=1)
        return result.changed or trimmed

    def record_usage(self, usage: Usage, *, estimated: int) -> None:
        reported = usage.input_tokens + usage.cache_read_tokens + usage.cache_creation_tokens
        self.estimator.calibrate(estimated, reported)

    def resolve_dangling(self, reason: str) -> int:
        """Answer tool calls left without results, e.g. after a cancel mid-execution."""
        pending = self.window.messages[-1].tool_uses if self.window.messages else []
        if not pending:
            return 0
        results = [
            ToolResult(call_id=block.id, success=False, error=reason, error_kind="cancelled") for block in pending
        ]
        self.add_tool_results(results)
        return len(results)
