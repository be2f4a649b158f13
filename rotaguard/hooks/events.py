"""Validated event payloads received from the host gateway."""

from pathlib import Path
from typing import Any

from pydantic import BaseModel

from rotaguard.config.loader import convert_keys


class HookContext(BaseModel):
    """Second argument of gateway hook handlers. May arrive empty."""
    agent_id: str | None = None
    agent_dir: Path | None = None
    workspace_dir: Path | None = None
    session_id: str | None = None


class DegradationEvent(BaseModel):
    """Payload of ``after_compaction``."""
    session_file: Path | None = None
    session_id: str | None = None
    compaction_count: int | None = None  # Cumulative, when the host exposes it
    # Informational, logged only
    message_count: int | None = None
    token_count: int | None = None
    compacted_count: int | None = None  # Messages removed by this compaction only
    context: HookContext | None = None


class StartupEvent(BaseModel):
    """Payload of ``gateway:startup``. Carries nothing we rely on."""
    context: HookContext | None = None


def parse_event(model: type[BaseModel], raw: Any) -> Any:
    """Validate a loosely-typed host payload (camelCase keys) into *model*."""
    data = raw if isinstance(raw, dict) else {}
    return model.model_validate(convert_keys(data))
