"""Window compaction passes.

All passes are pure: they take a message list and return a new one. Cuts
happen only at turn boundaries, so a tool-use block and its result are
always dropped or kept together.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass

from devman.context.estimator import TokenEstimator
from devman.context.window import orphaned_ids
from devman.core.types import ContentBlock, Message, Role, TextBlock, ToolResultBlock, ToolUseBlock

SUMMARY_LINE_CHARS = 160
SUMMARY_MAX_CHARS = 1500


@dataclass(frozen=True)
class CompactionResult:
    messages: list[Message]
    dropped: int

    @property
    def changed(self) -> bool:
        return self.dropped > 0


def _shorten(text: str, limit: int = SUMMARY_LINE_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def summarize(messages: Sequence[Message], *, header: str) -> str:
    lines = [header]
    for message in messages:
        if message.synthetic:
            lines.append(_shorten(message.text, SUMMARY_MAX_CHARS // 2))
            continue
        for block in message.content:
            match block:
                case TextBlock(text=text) if text.strip():
                    lines.append(f"- {message.role.value}: {_shorten(text)}")
                case ToolUseBlock(name=name, input=arguments):
                    lines.append(f"- tool {name}({_shorten(json.dumps(arguments, ensure_ascii=False), 80)})")
                case ToolResultBlock(content=content, is_error=is_error):
                    label = "tool error" if is_error else "tool result"
                    lines.append(f"  {label}: {_shorten(content, 120)}")
    summary = "\n".join(lines)
    if len(summary) > SUMMARY_MAX_CHARS:
        summary = summary[: SUMMARY_MAX_CHARS - 3] + "..."
    return summary


def turn_boundaries(messages: Sequence[Message]) -> list[int]:
    return [index for index, message in enumerate(messages) if message.is_turn_boundary and not message.synthetic]


def _summary_message(dropped: Sequence[Message], header: str) -> Message:
    return Message(
        seq=dropped[0].seq,
        role=Role.USER,
        content=(TextBlock(text=summarize(dropped, header=header)),),
        synthetic=True,
    )


def _drop_prefix(messages: Sequence[Message], cut: int) -> tuple[list[Message], list[Message]]:
    """Replace non-pinned messages before ``cut`` with one summary."""
    head = messages[:cut]
    dropped = [message for message in head if not message.pinned]
    if not dropped:
        return list(messages), []
    kept = [message for message in head if message.pinned]
    summary = _summary_message(dropped, f"[Earlier conversation compacted: {len(dropped)} message(s)]")
    rebuilt = sorted([*kept, summary], key=lambda message: message.seq)
    return [*rebuilt, *messages[cut:]], dropped


def compact_turns(
    messages: Sequence[Message],
    estimator: TokenEstimator,
    *,
    target_tokens: int,
    keep_recent_turns: int,
    overhead: int = 0,
) -> CompactionResult:
    """Drop the oldest whole turns until the window fits ``target_tokens``.

    The last ``keep_recent_turns`` turns and pinned messages are never
    dropped. A prefix consisting only of an earlier summary is left as is,
    which makes repeated passes a no-op.
    """
    current = list(messages)
    if estimator.messages(current) + overhead <= target_tokens:
        return CompactionResult(current, 0)
    boundaries = turn_boundaries(current)
    if len(boundaries) <= keep_recent_turns:
        return CompactionResult(current, 0)
    protected = boundaries[-keep_recent_turns]
    cuts = [index for index in boundaries if 0 < index <= protected]

    best: CompactionResult | None = None
    for cut in cuts:
        candidate, dropped = _drop_prefix(current, cut)
        if not dropped or (len(dropped) == 1 and dropped[0].synthetic):
            continue
        best = CompactionResult(candidate, len(dropped))
        if estimator.messages(candidate) + overhead <= target_tokens:
            break
    return best or CompactionResult(current, 0)


def _strip_blocks(message: Message, ids: set[str]) -> tuple[ContentBlock, ...]:
    kept: list[ContentBlock] = []
    for block in message.content:
        if isinstance(block, ToolUseBlock) and block.id in ids:
            continue
        if isinstance(block, ToolResultBlock) and block.tool_use_id in ids:
            continue
        kept.append(block)
    return tuple(kept)


def drop_inflight_chain(messages: Sequence[Message]) -> CompactionResult:
    """Collapse unresolved tool activity into one text summary.

    Everything after the last turn boundary that carries tool blocks is the
    in-flight chain. Orphaned halves anywhere else are stripped too.
    """
    current = list(messages)
    boundaries = turn_boundaries(current)
    start = boundaries[-1] + 1 if boundaries else 0
    inflight = [message for message in current[start:] if message.tool_uses or message.tool_results]
    inflight_seqs = {message.seq for message in inflight}

    orphans = orphaned_ids(message for message in current if message.seq not in inflight_seqs)
    rebuilt: list[Message] = []
    removed = 0
    for message in current:
        if message.seq in inflight_seqs:
            continue
        if orphans and (message.tool_uses or message.tool_results):
            content = _strip_blocks(message, orphans)
            if len(content) != len(message.content):
                removed += 1
                if not content:
                    continue
                message = Message(
                    seq=message.seq,
                    role=message.role,
                    content=content,
                    pinned=message.pinned,
                    synthetic=message.synthetic,
                )
        rebuilt.append(message)

    if inflight:
        summary = _summary_message(inflight, "[Tool activity compacted after context overflow]")
        rebuilt.append(summary)
        rebuilt.sort(key=lambda message: message.seq)
    return CompactionResult(rebuilt, removed + len(inflight))
