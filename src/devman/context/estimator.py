"""Conservative token estimation."""

from __future__ import annotations

import json
import math

from loguru import logger

from devman.core.types import ContentBlock, Message, TextBlock, ToolResultBlock, ToolUseBlock

MESSAGE_OVERHEAD = 4
BLOCK_OVERHEAD = 8
REQUEST_OVERHEAD = 16


class TokenEstimator:
    """Estimate tokens from UTF-8 byte length.

    Tokens average more than ``chars_per_token`` bytes for typical text, so
    the estimate stays an upper bound. When the service
    reports more input tokens than were estimated, :meth:`calibrate` raises
    the multiplier accordingly.
    """

    def __init__(self, chars_per_token: float = 3.0) -> None:
        self.chars_per_token = chars_per_token
        self.multiplier = 1.0

    def text(self, value: str) -> int:
        if not value:
            return 0
        return math.ceil(len(value.encode("utf-8")) / self.chars_per_token * self.multiplier)

    def block(self, block: ContentBlock) -> int:
        match block:
            case TextBlock(text=text):
                body = self.text(text)
            case ToolUseBlock(id=block_id, name=name, input=arguments):
                body = self.text(block_id) + self.text(name) + self.text(json.dumps(arguments, ensure_ascii=False))
            case ToolResultBlock(tool_use_id=block_id, content=content):
                body = self.text(block_id) + self.text(content)
        return body + BLOCK_OVERHEAD

    def message(self, message: Message) -> int:
        return MESSAGE_OVERHEAD + sum(self.block(block) for block in message.content)

    def messages(self, messages: list[Message] | tuple[Message, ...]) -> int:
        return sum(self.message(message) for message in messages)

    def request_overhead(self, system: str, tools: list[dict]) -> int:
        tools_text = json.dumps(tools, ensure_ascii=False) if tools else ""
        return REQUEST_OVERHEAD + self.text(system) + self.text(tools_text)

    def calibrate(self, estimated: int, reported: int) -> None:
        if estimated <= 0 or reported <= estimated:
            return
        ratio = reported / estimated
        self.multiplier *= ratio
        logger.warning(
            "context.estimator.calibrate estimated={} reported={} multiplier={:.3f}",
            estimated,
            reported,
            self.multiplier,
        )
