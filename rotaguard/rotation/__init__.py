"""Rotation core: state machine, guards, archivist and payload assembly."""

from rotaguard.rotation.controller import RotationController
from rotaguard.rotation.state import (
    InvalidTransitionError,
    RotationHistoryEntry,
    RotationState,
    StateName,
)
from rotaguard.rotation.store import StateStore

__all__ = [
    "InvalidTransitionError",
    "RotationController",
    "RotationHistoryEntry",
    "RotationState",
    "StateName",
    "StateStore",
]
