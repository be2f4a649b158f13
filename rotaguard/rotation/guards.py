"""Guards deciding whether an automatic rotation may start."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from loguru import logger

from rotaguard.config.schema import RotationConfig
from rotaguard.rotation.state import RotationState, StateName
from rotaguard.rotation.transcript import has_active_tasks

# Budget multipliers by number of rotations already inside the breaker window
BACKOFF_MULTIPLIERS = (1.0, 0.67, 0.33)


@dataclass
class GuardResult:
    """Outcome of guard evaluation. ``guard`` names the first blocker."""

    allowed: bool
    guard: str | None = None
    reason: str = ""


def count_recent_rotations(
    state: RotationState, config: RotationConfig, now: datetime
) -> int:
    """Rotations whose timestamp falls inside the trailing breaker window."""
    window_start = now - timedelta(minutes=config.circuit_breaker.window_minutes)
    return sum(1 for h in state.rotation_history if h.rotated_at > window_start)


def check_circuit_breaker(
    state: RotationState, config: RotationConfig, now: datetime
) -> bool:
    """True while the breaker is closed (rotation permitted)."""
    return count_recent_rotations(state, config, now) < config.circuit_breaker.max_rotations


def is_in_cooldown(
    state: RotationState,
    config: RotationConfig,
    now: datetime,
    compaction_count: int | None = None,
) -> bool:
    """True if any cooldown floor (timestamp, elapsed minutes, compactions) is unmet."""
    if state.cooldown_until and state.cooldown_until > now:
        return True

    last = state.last_rotation
    if last is None:
        return False

    if now - last.rotated_at < timedelta(minutes=config.cooldown.min_minutes):
        return True

    if compaction_count is None:
        compaction_count = state.cumulative_compaction_count
    return compaction_count - last.trigger_compaction_count < config.cooldown.min_compactions


def get_backoff_multiplier(
    state: RotationState, config: RotationConfig, now: datetime
) -> float:
    """Shrink the injection budget on consecutive rotations (15% → ~10% → ~5%)."""
    recent = count_recent_rotations(state, config, now)
    return BACKOFF_MULTIPLIERS[min(recent, len(BACKOFF_MULTIPLIERS) - 1)]


def evaluate_guards(
    state: RotationState,
    config: RotationConfig,
    now: datetime,
    session_file: Path | None,
) -> GuardResult:
    """
    Run every guard in order and stop at the first that blocks.

    In-memory checks come first; the transcript scan for active work is
    the only one that touches the filesystem.
    """
    if not config.enabled:
        return GuardResult(False, "enabled", "rotation disabled")

    if state.state != StateName.IDLE:
        return GuardResult(False, "idle", f"state is {state.state.value}")

    count = state.cumulative_compaction_count
    if count < config.compaction_count_threshold:
        return GuardResult(
            False, "threshold",
            f"compaction count {count} below threshold {config.compaction_count_threshold}",
        )

    if not check_circuit_breaker(state, config, now):
        recent = count_recent_rotations(state, config, now)
        logger.warning(
            f"Circuit breaker open: {recent} rotations in the last "
            f"{config.circuit_breaker.window_minutes} min, automatic rotation suspended"
        )
        return GuardResult(False, "circuit_breaker", f"{recent} recent rotations")

    if is_in_cooldown(state, config, now, count):
        return GuardResult(False, "cooldown", "cooldown active")

    if has_active_tasks(session_file):
        return GuardResult(False, "active_work", "tool call awaiting result")

    return GuardResult(True)
