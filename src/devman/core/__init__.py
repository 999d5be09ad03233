"""Core data model for devman."""

from .types import (
    AccessScope,
    Attachment,
    CapabilityTier,
    ContentBlock,
    InboundMessage,
    Message,
    Role,
    SessionStatus,
    StatusUpdate,
    TextBlock,
    ToolCall,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)

__all__ = [
    "AccessScope",
    "Attachment",
    "CapabilityTier",
    "ContentBlock",
    "InboundMessage",
    "Message",
    "Role",
    "SessionStatus",
    "StatusUpdate",
    "TextBlock",
    "ToolCall",
    "ToolResult",
    "ToolResultBlock",
    "ToolUseBlock",
    "Usage",
]
