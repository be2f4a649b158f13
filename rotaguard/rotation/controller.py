"""Rotation controller: the crash-safe archive → inject → cooldown loop."""

import random
import string
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from loguru import logger

from rotaguard.config.schema import RotationConfig
from rotaguard.rotation.archive import (
    ARCHIVE_DIRNAME,
    ArchiveError,
    archive,
    get_archive_path,
    remove_archive,
    validate_archive,
)
from rotaguard.rotation.guards import evaluate_guards
from rotaguard.rotation.payload import (
    InjectionPayload,
    MemoryFiles,
    build_injection_payload,
    format_injection_message,
)
from rotaguard.rotation.state import (
    RotationHistoryEntry,
    RotationState,
    StateName,
    utcnow,
)
from rotaguard.rotation.store import StateStore, atomic_write_text

INJECTION_FILENAME = "rotation-injection.md"
SESSIONS_DIRNAME = "sessions"

InjectionSink = Callable[[str, InjectionPayload], None]
Notifier = Callable[[RotationHistoryEntry], None]


def get_session_file(agent_dir: Path, session_id: str) -> Path:
    """Transcript path for a session under the agent directory."""
    return agent_dir / SESSIONS_DIRNAME / f"{session_id}.jsonl"


def generate_session_id(now: datetime) -> str:
    """Fresh id for the replacement session, e.g. ``rotation-1760862000000-k3x9qa``."""
    millis = int(now.timestamp() * 1000)
    suffix = "".join(random.choices(string.digits + string.ascii_lowercase, k=6))
    return f"rotation-{millis}-{suffix}"


class FileInjectionSink:
    """Writes the rendered payload where the host picks it up for the new session."""

    def __init__(self, path: Path):
        self.path = path

    def __call__(self, message: str, payload: InjectionPayload) -> None:
        atomic_write_text(self.path, message)
        logger.info(f"Injection payload written to {self.path} (~{payload.estimated_tokens} tokens)")


class RotationController:
    """
    Drives one tracked session through the rotation state machine.

    Entry points are on_degradation_event() and on_startup(); both run to
    completion synchronously. Each step commits its state before the next
    side effect, so on_startup() can always resume from the persisted state.
    """

    def __init__(
        self,
        config: RotationConfig,
        store: StateStore,
        memory: MemoryFiles,
        archive_dir: Path,
        sink: InjectionSink,
        notifier: Notifier | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.memory = memory
        self.archive_dir = archive_dir
        self.sink = sink
        self.notifier = notifier
        self._now = now

    @classmethod
    def for_agent(
        cls,
        config: RotationConfig,
        agent_dir: Path,
        workspace: Path,
        sink: InjectionSink | None = None,
        notifier: Notifier | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> "RotationController":
        """Build a controller using the standard agent directory layout."""
        return cls(
            config=config,
            store=StateStore(agent_dir, now=now),
            memory=MemoryFiles(workspace),
            archive_dir=agent_dir / SESSIONS_DIRNAME / ARCHIVE_DIRNAME,
            sink=sink or FileInjectionSink(agent_dir / INJECTION_FILENAME),
            notifier=notifier,
            now=now,
        )

    # ── entry points ────────────────────────────────────────────

    def on_degradation_event(
        self,
        session_id: str,
        session_file: Path,
        reported_count: int | None = None,
    ) -> RotationState:
        """
        Handle one compaction of the tracked session.

        Args:
            session_id: Id of the session that was compacted.
            session_file: Its JSONL transcript.
            reported_count: Host-reported compaction count, if any. Only
                ever raises the self-tracked counter.

        Returns:
            The state after handling the event.
        """
        state = self.store.read()
        count = state.cumulative_compaction_count + 1
        if reported_count is not None:
            count = max(count, reported_count)
        state = self.store.patch(state, cumulative_compaction_count=count)

        if state.state == StateName.COOLDOWN:
            if self._cooldown_expired(state):
                state = self.store.write(state, StateName.IDLE, cooldown_until=None)
            return state

        if state.state != StateName.IDLE:
            return state

        result = evaluate_guards(state, self.config, self._now(), session_file)
        if not result.allowed:
            logger.debug(f"Rotation deferred ({result.guard}): {result.reason}")
            return state

        return self._rotate(state, session_id, session_file)

    def on_startup(self) -> RotationState:
        """Resume or roll back whatever rotation step was interrupted."""
        state = self.store.read()
        logger.debug(f"Rotation startup recovery from {state.state.value}")

        if state.state == StateName.PENDING:
            # Nothing destructive happened yet; decide again from scratch
            return self.store.write(state, StateName.IDLE)

        if state.state == StateName.ARCHIVING:
            if (
                state.archive_path
                and state.old_session_file
                and validate_archive(state.archive_path, state.old_session_file)
            ):
                state = self.store.write(state, StateName.ARCHIVED)
                return self._inject(state)
            return self._rollback(state, "Archive incomplete after restart")

        if state.state == StateName.ARCHIVED:
            return self._inject(state)

        if state.state == StateName.INJECTED:
            return self._finish(state)

        if state.state == StateName.COOLDOWN and self._cooldown_expired(state):
            return self.store.write(state, StateName.IDLE, cooldown_until=None)

        return state

    def preview(self, session_id: str, session_file: Path) -> str:
        """Render the payload a rotation would inject now, without touching state."""
        state = self.store.read()
        hypothetical = state.model_copy(update={
            "old_session_id": session_id,
            "old_session_file": session_file,
            "archive_path": get_archive_path(self.archive_dir, session_id),
            "trigger_compaction_count": state.cumulative_compaction_count,
        })
        payload = build_injection_payload(self.config, self.memory, hypothetical, self._now())
        return format_injection_message(payload)

    # ── rotation phases ─────────────────────────────────────────

    def _rotate(self, state: RotationState, session_id: str, session_file: Path) -> RotationState:
        logger.info(
            f"Rotating session {session_id} after {state.cumulative_compaction_count} compactions"
        )
        state = self.store.write(
            state,
            StateName.PENDING,
            started_at=self._now(),
            old_session_id=session_id,
            old_session_file=session_file,
            archive_path=None,
            new_session_id=None,
            injected_tokens_estimate=None,
            trigger_compaction_count=state.cumulative_compaction_count,
        )

        # Record where the archive will go before creating it
        archive_path = get_archive_path(self.archive_dir, session_id)
        state = self.store.write(state, StateName.ARCHIVING, archive_path=archive_path)

        try:
            archive(session_file, self.archive_dir, session_id)
        except ArchiveError as e:
            logger.error(str(e))
            return self._rollback(state, str(e))

        if not validate_archive(archive_path, session_file):
            return self._rollback(state, "Archive validation failed")

        state = self.store.write(state, StateName.ARCHIVED)
        return self._inject(state)

    def _rollback(self, state: RotationState, reason: str) -> RotationState:
        """Discard a bad archive and fall back to IDLE; the next event retries."""
        logger.warning(f"Rotation rolled back: {reason}")
        remove_archive(state.archive_path)
        state = self.store.write(state, StateName.PENDING, archive_path=None)
        return self.store.write(state, StateName.IDLE, error=reason)

    def _inject(self, state: RotationState) -> RotationState:
        payload = build_injection_payload(self.config, self.memory, state, self._now())
        self.sink(format_injection_message(payload), payload)

        state = self.store.write(
            state,
            StateName.INJECTED,
            new_session_id=generate_session_id(self._now()),
            injected_tokens_estimate=payload.estimated_tokens,
        )
        return self._finish(state)

    def _finish(self, state: RotationState) -> RotationState:
        if self.config.old_session_policy == "delete" and state.old_session_file:
            state.old_session_file.unlink(missing_ok=True)

        now = self._now()
        history = list(state.rotation_history)
        last = state.last_rotation
        if last is None or last.new_session_id != state.new_session_id:
            history.append(RotationHistoryEntry(
                rotated_at=now,
                old_session_id=state.old_session_id or "unknown",
                new_session_id=state.new_session_id or "unknown",
                trigger_compaction_count=state.trigger_compaction_count or 0,
                injected_tokens_estimate=state.injected_tokens_estimate or 0,
            ))

        state = self.store.write(
            state,
            StateName.COOLDOWN,
            cooldown_until=now + timedelta(minutes=self.config.cooldown.min_minutes),
            rotation_history=history,
            error=None,
        )
        entry = history[-1]
        logger.info(
            f"Rotation #{len(history)} complete: {entry.old_session_id} → {entry.new_session_id} "
            f"(~{entry.injected_tokens_estimate} tokens injected)"
        )
        self._notify(entry)
        return state

    # ── helpers ─────────────────────────────────────────────────

    def _cooldown_expired(self, state: RotationState) -> bool:
        return state.cooldown_until is None or state.cooldown_until <= self._now()

    def _notify(self, entry: RotationHistoryEntry) -> None:
        if not (self.config.notify_on_rotation and self.notifier):
            return
        try:
            self.notifier(entry)
        except Exception as e:
            logger.warning(f"Rotation notifier failed: {e}")
