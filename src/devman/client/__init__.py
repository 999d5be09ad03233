"""Completion service client."""

from .auth import Credential, CredentialResolver
from .events import EndOfTurn, StreamEvent, TextDelta, ToolCallRequest, UsageMetadata
from .model_client import ModelClient, ModelRequest

__all__ = [
    "Credential",
    "CredentialResolver",
    "EndOfTurn",
    "ModelClient",
    "ModelRequest",
    "StreamEvent",
    "TextDelta",
    "ToolCallRequest",
    "UsageMetadata",
]
