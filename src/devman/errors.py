"""Application-level exception types for devman."""

from __future__ import annotations


class DevmanError(Exception):
    """Base exception for devman."""


class ConfigurationError(DevmanError):
    """Base exception for configuration and startup validation errors."""

    kind = "configuration_error"


class CredentialsNotFoundError(ConfigurationError):
    """Raised when no credential source yields a usable key."""


class ModelError(DevmanError):
    """Base exception for completion service failures."""

    kind = "model_error"


class AuthFailure(ModelError):
    """Raised when the service rejects credentials even after one refresh."""

    kind = "auth_failure"


class RateLimited(ModelError):
    """Raised when a rate-limit wait cannot fit inside the call deadline."""

    kind = "rate_limited"

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientNetwork(ModelError):
    """Raised when network retries are exhausted by the call deadline."""

    kind = "transient_network"


class StreamInterrupted(TransientNetwork):
    """Raised when a stream breaks after events were already delivered."""

    kind = "stream_interrupted"


class ProtocolError(ModelError):
    """Raised when the event stream is malformed."""

    kind = "protocol_error"


class ContextOverflow(ModelError):
    """Raised when the service rejects a request as over the context budget."""

    kind = "context_overflow"


class RequestRejected(ModelError):
    """Raised for non-retryable 4xx responses."""

    kind = "request_rejected"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ToolFailure(DevmanError):
    """Raised by tool handlers; always converted into a failed ToolResult."""

    kind = "tool_failure"


class ToolNotFoundError(ToolFailure):
    """Raised when a tool name is not registered."""

    kind = "not_found"


class PermissionDenied(DevmanError):
    """Raised when an operation targets a task outside the access scope."""

    kind = "permission_denied"

    def __init__(self, task: str, message: str | None = None) -> None:
        super().__init__(message or f"access to task '{task}' is outside the current scope")
        self.task = task


class CheckpointError(DevmanError):
    """Base exception for checkpoint persistence."""


class CheckpointWriteFailure(CheckpointError):
    """Raised when a checkpoint could not be durably written."""

    kind = "checkpoint_write_failure"


class CheckpointVersionError(CheckpointError):
    """Raised when a checkpoint file carries an unrecognized version."""


class UnknownSenderError(DevmanError):
    """Raised when an inbound sender matches no configured consumer."""

    def __init__(self, sender_id: str) -> None:
        super().__init__(f"unknown sender: {sender_id}")
        self.sender_id = sender_id


class TurnLimitExceeded(DevmanError):
    """Raised when a session reaches its configured turn ceiling."""

    kind = "turn_limit"

