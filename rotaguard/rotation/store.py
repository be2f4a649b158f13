"""Durable, atomically-committed rotation state."""

import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from rotaguard.rotation.state import (
    RotationState,
    StateName,
    check_transition,
    utcnow,
)

STATE_FILENAME = "rotation-state.json"


def atomic_write_text(path: Path, text: str) -> None:
    """Write *text* to *path* so readers see either the old or the new file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}-", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        try:
            dir_fd = os.open(str(path.parent), os.O_DIRECTORY)
        except (OSError, AttributeError):
            dir_fd = None  # Not supported on this platform
        if dir_fd is not None:
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
    finally:
        if os.path.exists(tmp_name):
            try:
                os.remove(tmp_name)
            except FileNotFoundError:
                pass


class StateStore:
    """
    Persists RotationState for one agent directory.

    Layout:
        {agent_dir}/
        └── rotation-state.json

    Every write goes through a temp file + os.replace, so a crash mid-write
    leaves the previous committed state intact.
    """

    def __init__(self, agent_dir: Path, now: Callable[[], datetime] = utcnow):
        self.agent_dir = agent_dir
        self._now = now

    @property
    def path(self) -> Path:
        return self.agent_dir / STATE_FILENAME

    def read(self) -> RotationState:
        """Return the last committed state, or a fresh IDLE state."""
        if not self.path.exists():
            return RotationState(updated_at=self._now())
        try:
            return RotationState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable rotation state at {self.path}, starting fresh: {e}")
            return RotationState(updated_at=self._now())

    def write(
        self, current: RotationState, next_state: StateName, **updates: Any
    ) -> RotationState:
        """
        Commit a state-machine transition.

        Args:
            current: The state the caller last observed.
            next_state: Target state; must be a legal successor of current.state.
            **updates: Field values merged into the new record.

        Returns:
            The committed state.

        Raises:
            InvalidTransitionError: If the edge is not in the transition table.
        """
        check_transition(current.state, next_state)
        new = current.model_copy(
            update={**updates, "state": next_state, "updated_at": self._now()}
        )
        self._commit(new)
        logger.info(f"Rotation state {current.state.value} → {next_state.value}")
        return new

    def patch(self, current: RotationState, **updates: Any) -> RotationState:
        """Commit field updates without a state transition."""
        if "state" in updates:
            raise ValueError("patch() cannot change state, use write()")
        new = current.model_copy(update={**updates, "updated_at": self._now()})
        self._commit(new)
        return new

    def _commit(self, state: RotationState) -> None:
        atomic_write_text(self.path, state.model_dump_json(indent=2))
