"""Tests for the rotation controller: full cycle, guards, rollback, recovery."""

import json
import math
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rotaguard.config.schema import CircuitBreakerConfig, CooldownConfig, RotationConfig
from rotaguard.rotation.controller import (
    INJECTION_FILENAME,
    RotationController,
    generate_session_id,
    get_session_file,
)
from rotaguard.rotation.state import (
    VALID_TRANSITIONS,
    RotationHistoryEntry,
    StateName,
)

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Controllable stand-in for utcnow."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def _write_transcript(path: Path, n_pairs: int = 4, pending_tool: bool = False) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    records = [{"_type": "metadata", "created_at": "2026-10-19T10:00:00"}]
    for i in range(n_pairs):
        records.append({"role": "user", "content": f"question {i}"})
        records.append({"role": "assistant", "content": f"answer {i}"})
    if pending_tool:
        records.append({
            "role": "assistant",
            "content": [{"type": "tool_use", "id": "tu_9", "name": "exec", "input": {}}],
        })
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n")
    return path


def _make(tmp_path, config=None, sink=None, notifier=None, session_id="s1", **transcript_kw):
    """Build a controller over a fresh agent dir. Returns (controller, session_file, sink, clock)."""
    clock = Clock()
    agent_dir = tmp_path / "agent"
    workspace = tmp_path / "workspace"
    (workspace / "memory").mkdir(parents=True)
    (workspace / "MEMORY.md").write_text("# Long-term\n- user likes tea\n")
    (workspace / "memory" / "2026-10-19.md").write_text("- deployed v2\n")

    session_file = _write_transcript(get_session_file(agent_dir, session_id), **transcript_kw)
    sink = sink if sink is not None else MagicMock()
    controller = RotationController.for_agent(
        config or RotationConfig(), agent_dir, workspace,
        sink=sink, notifier=notifier, now=clock,
    )
    return controller, session_file, sink, clock


def _record_writes(controller):
    """Wrap store.write and return the list of target states it was called with."""
    targets = []
    original = controller.store.write

    def recording(current, next_state, **updates):
        targets.append(next_state)
        return original(current, next_state, **updates)

    controller.store.write = recording
    return targets


def _drive(controller, *steps):
    """Push persisted state through legal edges. Each step is (StateName, updates)."""
    state = controller.store.read()
    for name, updates in steps:
        state = controller.store.write(state, name, **updates)
    return state


# ── full cycle ──────────────────────────────────────────────────


class TestRotationCycle:
    def test_below_threshold_only_counts(self, tmp_path):
        controller, session_file, sink, _ = _make(tmp_path)

        for expected in (1, 2):
            state = controller.on_degradation_event("s1", session_file)
            assert state.state == StateName.IDLE
            assert state.cumulative_compaction_count == expected

        sink.assert_not_called()
        assert controller.store.read().cumulative_compaction_count == 2

    def test_threshold_triggers_full_rotation_in_one_call(self, tmp_path):
        controller, session_file, sink, clock = _make(tmp_path)
        controller.on_degradation_event("s1", session_file)
        controller.on_degradation_event("s1", session_file)
        targets = _record_writes(controller)

        state = controller.on_degradation_event("s1", session_file)

        assert targets == [
            StateName.PENDING, StateName.ARCHIVING, StateName.ARCHIVED,
            StateName.INJECTED, StateName.COOLDOWN,
        ]
        assert state.state == StateName.COOLDOWN
        assert state.cooldown_until == clock() + timedelta(minutes=30)
        assert state.archive_path.read_bytes() == session_file.read_bytes()
        assert state.old_session_id == "s1"
        assert state.trigger_compaction_count == 3
        assert state.new_session_id.startswith("rotation-")
        assert state.error is None

        assert len(state.rotation_history) == 1
        entry = state.rotation_history[0]
        assert (entry.old_session_id, entry.new_session_id) == ("s1", state.new_session_id)
        assert entry.trigger_compaction_count == 3
        assert entry.injected_tokens_estimate == state.injected_tokens_estimate > 0

        sink.assert_called_once()
        message, payload = sink.call_args[0]
        assert message.startswith("[SYSTEM] This is a fresh session")
        assert "user likes tea" in message
        assert "- deployed v2" in message
        assert "**User:** question 3" in message
        assert payload.estimated_tokens == state.injected_tokens_estimate

        assert controller.store.read().model_dump() == state.model_dump()

    def test_default_sink_writes_injection_file(self, tmp_path):
        agent_dir = tmp_path / "agent"
        session_file = _write_transcript(get_session_file(agent_dir, "s1"))
        controller = RotationController.for_agent(
            RotationConfig(compaction_count_threshold=1), agent_dir, tmp_path / "ws", now=Clock(),
        )

        controller.on_degradation_event("s1", session_file)

        text = (agent_dir / INJECTION_FILENAME).read_text()
        assert "### Rotation Context" in text
        assert "- Previous session: s1" in text

    def test_reported_count_raises_counter(self, tmp_path):
        controller, session_file, _, _ = _make(tmp_path)
        state = controller.on_degradation_event("s1", session_file, reported_count=5)
        assert state.cumulative_compaction_count == 5
        assert state.state == StateName.COOLDOWN

    def test_reported_count_never_lowers_counter(self, tmp_path):
        controller, session_file, _, _ = _make(tmp_path)
        controller.store.patch(controller.store.read(), cumulative_compaction_count=1)
        state = controller.on_degradation_event("s1", session_file, reported_count=0)
        assert state.cumulative_compaction_count == 2

    def test_disabled_still_counts(self, tmp_path):
        controller, session_file, sink, _ = _make(tmp_path, config=RotationConfig(enabled=False))
        for _ in range(5):
            state = controller.on_degradation_event("s1", session_file)
        assert state.state == StateName.IDLE
        assert state.cumulative_compaction_count == 5
        sink.assert_not_called()

    def test_original_kept_with_archive_policy(self, tmp_path):
        controller, session_file, _, _ = _make(tmp_path)
        controller.on_degradation_event("s1", session_file, reported_count=3)
        assert session_file.exists()

    def test_original_removed_with_delete_policy(self, tmp_path):
        config = RotationConfig(old_session_policy="delete")
        controller, session_file, _, _ = _make(tmp_path, config=config)
        original = session_file.read_bytes()

        state = controller.on_degradation_event("s1", session_file, reported_count=3)

        assert not session_file.exists()
        assert state.archive_path.read_bytes() == original


# ── guards inside the controller ────────────────────────────────


class TestDeferrals:
    def test_active_work_defers(self, tmp_path):
        controller, session_file, sink, _ = _make(tmp_path, pending_tool=True)

        state = controller.on_degradation_event("s1", session_file, reported_count=3)

        assert state.state == StateName.IDLE
        assert state.cumulative_compaction_count == 3
        assert not controller.archive_dir.exists()
        sink.assert_not_called()

    def test_active_work_retried_on_next_event(self, tmp_path):
        controller, session_file, _, _ = _make(tmp_path, pending_tool=True)
        controller.on_degradation_event("s1", session_file, reported_count=3)

        _write_transcript(session_file, n_pairs=5)
        state = controller.on_degradation_event("s1", session_file)

        assert state.state == StateName.COOLDOWN
        assert state.trigger_compaction_count == 4

    def test_circuit_breaker_blocks_fourth_rotation(self, tmp_path):
        config = RotationConfig(
            cooldown=CooldownConfig(min_compactions=0, min_minutes=0),
            circuit_breaker=CircuitBreakerConfig(max_rotations=3, window_minutes=30),
        )
        controller, session_file, sink, clock = _make(tmp_path, config=config)
        history = [
            RotationHistoryEntry(
                rotated_at=clock() - timedelta(minutes=m), old_session_id=f"o{m}",
                new_session_id=f"n{m}", trigger_compaction_count=10, injected_tokens_estimate=100,
            )
            for m in (25, 15, 5)
        ]
        controller.store.patch(
            controller.store.read(), rotation_history=history, cumulative_compaction_count=10,
        )
        targets = _record_writes(controller)

        state = controller.on_degradation_event("s1", session_file)

        assert targets == []
        assert state.state == StateName.IDLE
        assert state.cumulative_compaction_count == 11
        assert controller.store.read().cumulative_compaction_count == 11
        sink.assert_not_called()

    def test_cooldown_then_second_rotation(self, tmp_path):
        controller, session_file, sink, clock = _make(tmp_path)
        first = controller.on_degradation_event("s1", session_file, reported_count=3)
        assert first.state == StateName.COOLDOWN

        # Still cooling down: counted, nothing else
        clock.advance(minutes=10)
        state = controller.on_degradation_event("s1", session_file)
        assert state.state == StateName.COOLDOWN
        assert state.cumulative_compaction_count == 4

        # Expiry is noticed lazily by the next event, which only transitions
        clock.advance(minutes=21)
        state = controller.on_degradation_event("s1", session_file)
        assert state.state == StateName.IDLE
        assert state.cooldown_until is None
        assert sink.call_count == 1

        s2 = _write_transcript(get_session_file(controller.store.agent_dir, "s2"))
        state = controller.on_degradation_event("s2", s2)
        assert state.state == StateName.COOLDOWN
        assert [h.old_session_id for h in state.rotation_history] == ["s1", "s2"]
        assert sink.call_count == 2

    def test_second_rotation_within_window_gets_smaller_budget(self, tmp_path):
        config = RotationConfig(cooldown=CooldownConfig(min_compactions=1, min_minutes=1))
        controller, session_file, sink, clock = _make(tmp_path, config=config)
        controller.on_degradation_event("s1", session_file, reported_count=3)

        clock.advance(minutes=2)
        controller.on_degradation_event("s1", session_file)  # COOLDOWN → IDLE
        controller.on_degradation_event("s1", session_file)

        budgets = [c.args[1].token_budget for c in sink.call_args_list]
        assert budgets == [math.floor(200_000 * 0.15), math.floor(200_000 * 0.15 * 0.67)]


# ── notifications ───────────────────────────────────────────────


class TestNotifier:
    def test_called_with_history_entry(self, tmp_path):
        notifier = MagicMock()
        controller, session_file, _, _ = _make(tmp_path, notifier=notifier)
        state = controller.on_degradation_event("s1", session_file, reported_count=3)
        notifier.assert_called_once_with(state.rotation_history[-1])

    def test_respects_notify_flag(self, tmp_path):
        notifier = MagicMock()
        controller, session_file, _, _ = _make(
            tmp_path, config=RotationConfig(notify_on_rotation=False), notifier=notifier,
        )
        controller.on_degradation_event("s1", session_file, reported_count=3)
        notifier.assert_not_called()

    def test_failure_does_not_affect_state(self, tmp_path):
        notifier = MagicMock(side_effect=RuntimeError("channel down"))
        controller, session_file, _, _ = _make(tmp_path, notifier=notifier)
        state = controller.on_degradation_event("s1", session_file, reported_count=3)
        assert state.state == StateName.COOLDOWN
        assert controller.store.read().state == StateName.COOLDOWN


# ── archive failures ────────────────────────────────────────────


class TestArchiveRollback:
    def test_copy_failure_rolls_back_to_idle(self, tmp_path):
        controller, session_file, sink, _ = _make(tmp_path)
        missing = session_file.with_name("gone.jsonl")
        targets = _record_writes(controller)

        state = controller.on_degradation_event("gone", missing, reported_count=3)

        assert targets == [StateName.PENDING, StateName.ARCHIVING, StateName.PENDING, StateName.IDLE]
        assert state.state == StateName.IDLE
        assert state.archive_path is None
        assert "Failed to archive" in state.error
        sink.assert_not_called()

    def test_validation_failure_deletes_partial_archive(self, tmp_path):
        controller, session_file, sink, _ = _make(tmp_path)

        with patch("rotaguard.rotation.controller.validate_archive", return_value=False):
            state = controller.on_degradation_event("s1", session_file, reported_count=3)

        assert state.state == StateName.IDLE
        assert state.error == "Archive validation failed"
        assert list(controller.archive_dir.iterdir()) == []
        sink.assert_not_called()

    def test_next_event_retries_and_clears_error(self, tmp_path):
        controller, session_file, _, _ = _make(tmp_path)
        with patch("rotaguard.rotation.controller.validate_archive", return_value=False):
            controller.on_degradation_event("s1", session_file, reported_count=3)

        state = controller.on_degradation_event("s1", session_file)

        assert state.state == StateName.COOLDOWN
        assert state.error is None

    def test_sink_failure_leaves_archived_for_recovery(self, tmp_path):
        sink = MagicMock(side_effect=[OSError("host unavailable"), None])
        controller, session_file, _, _ = _make(tmp_path, sink=sink)

        with pytest.raises(OSError):
            controller.on_degradation_event("s1", session_file, reported_count=3)
        assert controller.store.read().state == StateName.ARCHIVED

        state = controller.on_startup()
        assert state.state == StateName.COOLDOWN
        assert sink.call_count == 2


# ── startup recovery ────────────────────────────────────────────


class TestStartupRecovery:
    def _to_archiving(self, controller, session_file, archive_path):
        return _drive(
            controller,
            (StateName.PENDING, dict(
                started_at=T0, old_session_id="s1", old_session_file=session_file,
                trigger_compaction_count=3,
            )),
            (StateName.ARCHIVING, dict(archive_path=archive_path)),
        )

    def test_idle_is_noop(self, tmp_path):
        controller, _, sink, _ = _make(tmp_path)
        state = controller.on_startup()
        assert state.state == StateName.IDLE
        assert not controller.store.path.exists()
        sink.assert_not_called()

    def test_pending_reverts_to_idle(self, tmp_path):
        controller, session_file, sink, _ = _make(tmp_path)
        _drive(controller, (StateName.PENDING, dict(old_session_id="s1", old_session_file=session_file)))

        assert controller.on_startup().state == StateName.IDLE
        sink.assert_not_called()

    def test_archiving_with_valid_archive_completes(self, tmp_path):
        controller, session_file, sink, _ = _make(tmp_path)
        archive_path = controller.archive_dir / "s1.jsonl"
        archive_path.parent.mkdir(parents=True)
        archive_path.write_bytes(session_file.read_bytes())
        self._to_archiving(controller, session_file, archive_path)
        targets = _record_writes(controller)

        state = controller.on_startup()

        assert targets == [StateName.ARCHIVED, StateName.INJECTED, StateName.COOLDOWN]
        assert state.state == StateName.COOLDOWN
        sink.assert_called_once()

    def test_archiving_with_partial_archive_rolls_back(self, tmp_path):
        controller, session_file, sink, _ = _make(tmp_path)
        archive_path = controller.archive_dir / "s1.jsonl"
        archive_path.parent.mkdir(parents=True)
        archive_path.write_bytes(session_file.read_bytes()[:30])
        self._to_archiving(controller, session_file, archive_path)
        targets = _record_writes(controller)

        state = controller.on_startup()

        assert targets == [StateName.PENDING, StateName.IDLE]
        assert state.state == StateName.IDLE
        assert state.archive_path is None
        assert state.error
        assert not archive_path.exists()
        assert session_file.exists()
        sink.assert_not_called()

    def test_archiving_without_archive_file_rolls_back(self, tmp_path):
        controller, session_file, _, _ = _make(tmp_path)
        self._to_archiving(controller, session_file, controller.archive_dir / "s1.jsonl")
        assert controller.on_startup().state == StateName.IDLE

    def test_archived_reinjects_without_touching_archive(self, tmp_path):
        controller, session_file, sink, clock = _make(tmp_path)
        archive_path = controller.archive_dir / "s1.jsonl"
        archive_path.parent.mkdir(parents=True)
        archive_path.write_bytes(session_file.read_bytes())
        self._to_archiving(controller, session_file, archive_path)
        _drive(controller, (StateName.ARCHIVED, {}))
        snapshot = controller.store.path.read_text()

        new_ids = []
        with patch("rotaguard.rotation.controller.archive") as mock_archive, \
                patch("rotaguard.rotation.controller.validate_archive") as mock_validate:
            for _ in range(2):
                # Simulate a crash after ARCHIVED by restoring the snapshot
                controller.store.path.write_text(snapshot)
                state = controller.on_startup()
                assert state.state == StateName.COOLDOWN
                new_ids.append(state.new_session_id)
                clock.advance(milliseconds=5)

        mock_archive.assert_not_called()
        mock_validate.assert_not_called()
        assert new_ids[0] != new_ids[1]
        assert sink.call_count == 2

    def test_injected_finishes_cooldown(self, tmp_path):
        controller, session_file, sink, clock = _make(tmp_path)
        self._to_archiving(controller, session_file, controller.archive_dir / "s1.jsonl")
        _drive(
            controller,
            (StateName.ARCHIVED, {}),
            (StateName.INJECTED, dict(new_session_id="rotation-1-abcdef", injected_tokens_estimate=42)),
        )

        state = controller.on_startup()

        assert state.state == StateName.COOLDOWN
        assert state.cooldown_until == clock() + timedelta(minutes=30)
        assert len(state.rotation_history) == 1
        assert state.rotation_history[0].new_session_id == "rotation-1-abcdef"
        assert state.rotation_history[0].injected_tokens_estimate == 42
        sink.assert_not_called()

    def test_injected_does_not_duplicate_history(self, tmp_path):
        controller, session_file, _, clock = _make(tmp_path)
        entry = RotationHistoryEntry(
            rotated_at=clock(), old_session_id="s1", new_session_id="rotation-1-abcdef",
            trigger_compaction_count=3, injected_tokens_estimate=42,
        )
        self._to_archiving(controller, session_file, controller.archive_dir / "s1.jsonl")
        _drive(
            controller,
            (StateName.ARCHIVED, {}),
            (StateName.INJECTED, dict(new_session_id="rotation-1-abcdef", rotation_history=[entry])),
        )

        state = controller.on_startup()

        assert state.rotation_history == [entry]

    def test_cooldown_expired_goes_idle(self, tmp_path):
        controller, session_file, _, clock = _make(tmp_path)
        controller.on_degradation_event("s1", session_file, reported_count=3)
        clock.advance(minutes=31)

        state = controller.on_startup()

        assert state.state == StateName.IDLE
        assert state.cooldown_until is None

    def test_cooldown_active_is_kept(self, tmp_path):
        controller, session_file, _, clock = _make(tmp_path)
        controller.on_degradation_event("s1", session_file, reported_count=3)
        clock.advance(minutes=5)
        assert controller.on_startup().state == StateName.COOLDOWN


# ── invariants ──────────────────────────────────────────────────


class TestInvariants:
    def test_random_event_sequences_only_take_legal_edges(self, tmp_path):
        rng = random.Random(7)
        config = RotationConfig(cooldown=CooldownConfig(min_compactions=1, min_minutes=5))
        controller, session_file, _, clock = _make(tmp_path, config=config)

        edges = []
        original = controller.store.write

        def recording(current, next_state, **updates):
            edges.append((current.state, next_state))
            return original(current, next_state, **updates)

        controller.store.write = recording

        for _ in range(200):
            roll = rng.random()
            if roll < 0.1:
                _write_transcript(session_file, n_pairs=3, pending_tool=True)
            elif roll < 0.3:
                _write_transcript(session_file, n_pairs=rng.randint(0, 6))
            clock.advance(minutes=rng.randint(0, 20))

            if rng.random() < 0.1:
                state = controller.on_startup()
            else:
                state = controller.on_degradation_event("s1", session_file)
            assert state.state in (StateName.IDLE, StateName.COOLDOWN)
            assert controller.store.read().state == state.state

        assert edges
        for current, target in edges:
            assert target in VALID_TRANSITIONS[current]

        history = controller.store.read().rotation_history
        assert [h.rotated_at for h in history] == sorted(h.rotated_at for h in history)


class TestGenerateSessionId:
    def test_format(self):
        sid = generate_session_id(T0)
        prefix, millis, suffix = sid.split("-")
        assert prefix == "rotation"
        assert int(millis) == int(T0.timestamp() * 1000)
        assert len(suffix) == 6
        assert suffix.isalnum() and suffix == suffix.lower()
