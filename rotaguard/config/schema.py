"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CooldownConfig(BaseModel):
    """Cooldown floors: all must be clear before another rotation."""
    model_config = ConfigDict(frozen=True)

    min_compactions: int = Field(default=3, ge=0)  # Compactions since last rotation
    min_minutes: int = Field(default=30, ge=0)  # Wall-clock minutes since last rotation


class CircuitBreakerConfig(BaseModel):
    """Stops automatic rotation when it fires too often."""
    model_config = ConfigDict(frozen=True)

    max_rotations: int = Field(default=3, ge=1)
    window_minutes: int = Field(default=30, ge=1)


class RotationConfig(BaseModel):
    """Rotation behaviour. Immutable once loaded."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    compaction_count_threshold: int = Field(default=3, ge=1)
    injection_budget_percent: float = Field(default=0.15, gt=0, le=1)  # Fraction of context_window
    recent_message_pairs: int = Field(default=5, ge=0)
    old_session_policy: Literal["archive", "delete"] = "archive"
    notify_on_rotation: bool = True
    context_window: int = Field(default=200_000, gt=0)  # The host doesn't report this
    cooldown: CooldownConfig = Field(default_factory=CooldownConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)


class AgentPathsConfig(BaseModel):
    """Where the tracked agent keeps its state, sessions and memory."""
    agent_dir: str = "~/.openclaw/agents/agent"
    workspace: str = "~/.openclaw/workspace"
    session_id: str = ""


class Config(BaseSettings):
    """Root configuration for rotaguard."""
    model_config = SettingsConfigDict(env_prefix="ROTAGUARD_", env_nested_delimiter="__")

    rotation: RotationConfig = Field(default_factory=RotationConfig)
    agent: AgentPathsConfig = Field(default_factory=AgentPathsConfig)

    @property
    def agent_dir_path(self) -> Path:
        """Get expanded agent directory path."""
        return Path(self.agent.agent_dir).expanduser()

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agent.workspace).expanduser()
