"""Ordered message window of one session."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from devman.context.estimator import TokenEstimator
from devman.core.types import ContentBlock, Message, Role


def orphaned_ids(messages: Iterable[Message]) -> set[str]:
    """Tool-use ids without a result, and result ids without a use."""
    uses: set[str] = set()
    results: set[str] = set()
    for message in messages:
        uses.update(block.id for block in message.tool_uses)
        results.update(block.tool_use_id for block in message.tool_results)
    return uses ^ results


class ContextWindow:
    def __init__(
        self,
        estimator: TokenEstimator,
        messages: Sequence[Message] = (),
        *,
        next_seq: int | None = None,
    ) -> None:
        self._estimator = estimator
        self._messages: list[Message] = []
        self._next_seq = 1
        self.replace(messages)
        if next_seq is not None:
            self._next_seq = max(self._next_seq, next_seq)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def next_seq(self) -> int:
        return self._next_seq

    @property
    def estimate(self) -> int:
        return self._estimator.messages(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(
        self,
        role: Role,
        content: Sequence[ContentBlock],
        *,
        pinned: bool = False,
        synthetic: bool = False,
    ) -> Message:
        message = Message(
            seq=self._next_seq,
            role=role,
            content=tuple(content),
            pinned=pinned,
            synthetic=synthetic,
        )
        self._messages.append(message)
        self._next_seq += 1
        return message

    def replace(self, messages: Sequence[Message]) -> None:
        ordered = list(messages)
        for before, after in zip(ordered, ordered[1:], strict=False):
            if after.seq <= before.seq:
                raise ValueError(f"message seq must strictly increase ({before.seq} then {after.seq})")
        self._messages = ordered
        if ordered:
            self._next_seq = max(self._next_seq, ordered[-1].seq + 1)

    def orphans(self) -> set[str]:
        return orphaned_ids(self._messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "next_seq": self._next_seq,
            "messages": [message.to_dict() for message in self._messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], estimator: TokenEstimator) -> ContextWindow:
        messages = [Message.from_dict(item) for item in data.get("messages", [])]
        return cls(estimator, messages, next_seq=int(data.get("next_seq", 1)))
