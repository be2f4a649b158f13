"""Rotation state record and the transition table that guards it."""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

STATE_VERSION = 1
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Default clock for the rotation core."""
    return datetime.now(timezone.utc)


class StateName(str, Enum):
    IDLE = "IDLE"
    PENDING = "PENDING"
    ARCHIVING = "ARCHIVING"
    ARCHIVED = "ARCHIVED"
    INJECTED = "INJECTED"
    COOLDOWN = "COOLDOWN"


# Every edge the controller is allowed to take. Anything else is a logic defect.
VALID_TRANSITIONS: dict[StateName, tuple[StateName, ...]] = {
    StateName.IDLE: (StateName.PENDING,),
    StateName.PENDING: (StateName.IDLE, StateName.ARCHIVING),
    StateName.ARCHIVING: (StateName.ARCHIVED, StateName.PENDING),
    StateName.ARCHIVED: (StateName.INJECTED,),
    StateName.INJECTED: (StateName.COOLDOWN,),
    StateName.COOLDOWN: (StateName.IDLE,),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a write requests an edge missing from VALID_TRANSITIONS."""

    def __init__(self, current: StateName, target: StateName):
        super().__init__(f"Invalid state transition: {current.value} → {target.value}")
        self.current = current
        self.target = target


def check_transition(current: StateName, target: StateName) -> None:
    if target not in VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


class RotationHistoryEntry(BaseModel):
    """One completed rotation."""
    rotated_at: datetime
    old_session_id: str
    new_session_id: str
    trigger_compaction_count: int
    injected_tokens_estimate: int


class RotationState(BaseModel):
    """
    Durable progress record for the tracked session.

    Persisted as JSON next to the agent's sessions directory and only ever
    replaced through StateStore, one committed step at a time.
    """

    version: int = STATE_VERSION
    state: StateName = StateName.IDLE
    started_at: datetime | None = None
    old_session_id: str | None = None
    old_session_file: Path | None = None
    archive_path: Path | None = None
    new_session_id: str | None = None
    cooldown_until: datetime | None = None
    trigger_compaction_count: int | None = None  # Counter value that started this cycle
    cumulative_compaction_count: int = 0  # Self-tracked, never reset by rotation
    rotation_history: list[RotationHistoryEntry] = Field(default_factory=list)
    injected_tokens_estimate: int | None = None
    error: str | None = None
    updated_at: datetime = EPOCH

    @property
    def last_rotation(self) -> RotationHistoryEntry | None:
        return self.rotation_history[-1] if self.rotation_history else None
