"""Runtime settings for devman."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from devman.core.types import CapabilityTier

DEFAULT_HOME = Path.home() / ".devman"
RecoveryPolicy = Literal["report", "restart"]


class ConsumerPolicy(BaseModel):
    """Access policy for one inbound consumer (a bot, a REPL, a scheduler)."""

    name: str
    senders: set[str] = Field(default_factory=set, description="Sender ids allowed to use this consumer")
    access: Literal["full", "scoped"] = "scoped"
    tasks: list[str] = Field(default_factory=list, description="Task slugs; ['*'] means all tasks")
    default_task: str | None = None
    tier: CapabilityTier | None = Field(default=None, description="Pin every request to one tier")
    interactive: bool = True


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="DEVMAN_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    home: Path | None = Field(default=None, description="State directory (checkpoints, tasks)")

    # Completion service
    api_base: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    api_key_env: str = Field(default="ANTHROPIC_API_KEY", description="Environment variable holding the API key")
    oauth_credentials_path: Path = Path.home() / ".claude" / ".credentials.json"
    credentials_file: Path = Path.home() / ".config" / "devman" / "credentials.toml"
    cheap_model: str = "claude-haiku-4-5"
    default_model: str = "claude-sonnet-4-5"
    heavy_model: str = "claude-opus-4-1"
    max_output_tokens: int = Field(default=16384, ge=1)
    system_prompt: str = "You are devman, a helpful engineering assistant. Be concise and use tools proactively."

    # Resilience
    call_timeout_seconds: float = Field(default=600.0, gt=0)
    backoff_initial_seconds: float = Field(default=1.0, gt=0)
    backoff_max_seconds: float = Field(default=60.0, gt=0)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    stream_idle_timeout_seconds: float = Field(default=60.0, gt=0)
    max_stream_restarts: int = Field(default=3, ge=0)

    # Context budget
    context_budget_tokens: int = Field(default=200_000, ge=1000)
    compaction_threshold: float = Field(default=0.8, gt=0, le=1)
    compaction_target: float = Field(default=0.6, gt=0, le=1)
    keep_recent_turns: int = Field(default=3, ge=1)
    tool_result_max_fraction: float = Field(default=0.25, gt=0, le=1)
    offload_preview_chars: int = Field(default=2000, ge=0)
    chars_per_token: float = Field(default=3.0, gt=0)
    max_overflow_recoveries: int = Field(default=2, ge=0)

    # Sessions and pool
    max_turns: int = Field(default=50, ge=1)
    max_concurrent_sessions: int = Field(default=5, ge=1)
    cheap_slots: int | None = Field(default=None, ge=0)
    default_slots: int | None = Field(default=None, ge=0)
    heavy_slots: int | None = Field(default=None, ge=0)
    checkpoint_interval: int = Field(default=1, ge=1)
    recovery_policy: RecoveryPolicy = "report"
    max_restarts: int = Field(default=3, ge=0)
    parallel_tool_calls: bool = True

    # Tools
    shell_timeout_seconds: float = Field(default=120.0, gt=0)
    web_fetch_timeout_seconds: float = Field(default=20.0, gt=0)

    # Routing
    consumers: list[ConsumerPolicy] = Field(default_factory=list)

    # Logging
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_budgets(self) -> Settings:
        if self.compaction_target > self.compaction_threshold:
            raise ValueError("compaction_target must not exceed compaction_threshold")
        explicit = (self.cheap_slots, self.default_slots, self.heavy_slots)
        if any(value is not None for value in explicit):
            if any(value is None for value in explicit):
                raise ValueError("cheap_slots, default_slots and heavy_slots must be set together")
            if sum(value or 0 for value in explicit) != self.max_concurrent_sessions:
                raise ValueError("tier slots must sum to max_concurrent_sessions")
            if not self.default_slots:
                raise ValueError("default_slots must be at least 1")
        return self

    def resolve_home(self) -> Path:
        home = (self.home or DEFAULT_HOME).expanduser()
        home.mkdir(parents=True, exist_ok=True)
        return home

    def model_for(self, tier: CapabilityTier) -> str:
        return {
            CapabilityTier.CHEAP: self.cheap_model,
            CapabilityTier.DEFAULT: self.default_model,
            CapabilityTier.HEAVY: self.heavy_model,
        }[tier]

    def tier_budgets(self) -> dict[CapabilityTier, int]:
        """Per-tier concurrency budgets summing to ``max_concurrent_sessions``."""
        if self.default_slots is not None:
            return {
                CapabilityTier.CHEAP: self.cheap_slots or 0,
                CapabilityTier.DEFAULT: self.default_slots,
                CapabilityTier.HEAVY: self.heavy_slots or 0,
            }
        total = self.max_concurrent_sessions
        # Heavy work gets its own slot whenever a default slot remains; cheap
        # work shares the default queue until the pool is large enough.
        heavy = max(1, total // 4) if total >= 2 else 0
        cheap = total // 4
        return {
            CapabilityTier.CHEAP: cheap,
            CapabilityTier.DEFAULT: total - heavy - cheap,
            CapabilityTier.HEAVY: heavy,
        }
