"""Injection payload assembly, truncation and rendering."""

import json
import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path

from loguru import logger

from rotaguard.config.schema import RotationConfig
from rotaguard.rotation.guards import get_backoff_multiplier
from rotaguard.rotation.state import RotationState
from rotaguard.rotation.tokens import estimate_tokens
from rotaguard.rotation.transcript import MessagePair, extract_recent_pairs

MEMORY_HEAD_RATIO = 0.7
MEMORY_TAIL_START_RATIO = 0.8
TRUNCATION_MARKER = "\n[... truncated for token budget ...]\n"
REDUCED_PAIRS = 3
MINIMAL_PAIRS = 1


class MemoryFiles:
    """
    Read-only view of the agent's durable memory.

    Layout:
        {workspace}/
        ├── MEMORY.md             # Long-term memory
        └── memory/
            └── YYYY-MM-DD.md     # Daily logs
    """

    def __init__(self, workspace: Path):
        self.workspace = workspace

    @property
    def long_term_file(self) -> Path:
        return self.workspace / "MEMORY.md"

    def daily_file(self, day: date) -> Path:
        return self.workspace / "memory" / f"{day.isoformat()}.md"

    def read_long_term(self) -> str:
        return read_file_or_empty(self.long_term_file)

    def read_daily(self, day: date) -> str:
        return read_file_or_empty(self.daily_file(day))


def read_file_or_empty(path: Path) -> str:
    """Missing or unreadable files are empty content, not errors."""
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


@dataclass
class RotationMetadata:
    rotation_number: int
    reason: str
    previous_session_id: str
    archive_path: str
    compaction_count: int


@dataclass
class InjectionPayload:
    """Content seeded into the fresh session. Built per cycle, never persisted."""

    long_term_memory: str
    today_log: str
    yesterday_log: str
    recent_messages: list[MessagePair]
    metadata: RotationMetadata
    estimated_tokens: int
    token_budget: int = 0
    truncation_steps: list[int] = field(default_factory=list)  # Steps applied, in order


def estimate_payload_tokens(
    memory: str,
    today: str,
    yesterday: str,
    pairs: list[MessagePair],
    meta: RotationMetadata,
) -> int:
    """Estimate the size of everything that will be injected."""
    messages_text = "".join(p.user + p.assistant for p in pairs)
    meta_text = json.dumps(asdict(meta), ensure_ascii=False)
    return estimate_tokens(memory + today + yesterday + messages_text + meta_text)


def truncate_memory(text: str) -> str:
    """Keep the first 70% and last 20% of lines, dropping the middle."""
    lines = text.split("\n")
    # Under 4 lines nothing is dropped, but the marker is still inserted
    head_end = math.floor(len(lines) * MEMORY_HEAD_RATIO)
    tail_start = math.floor(len(lines) * MEMORY_TAIL_START_RATIO)
    return "\n".join([*lines[:head_end], TRUNCATION_MARKER, *lines[tail_start:]])


def compute_token_budget(
    config: RotationConfig, state: RotationState, now: datetime
) -> int:
    multiplier = get_backoff_multiplier(state, config, now)
    return math.floor(config.context_window * config.injection_budget_percent * multiplier)


def build_injection_payload(
    config: RotationConfig,
    memory: MemoryFiles,
    state: RotationState,
    now: datetime,
    session_file: Path | None = None,
) -> InjectionPayload:
    """
    Gather memory and recent conversation, then truncate to the budget.

    Truncation is a fixed escalation, re-estimated after each step and
    stopped as soon as the payload fits:

        1. drop yesterday's log
        2. keep at most 3 exchange pairs
        3. cut the middle of long-term memory
        4. drop today's log and keep at most 1 pair

    If the payload still exceeds the budget after step 4 it is used as is.
    """
    today = now.date()
    long_term_memory = memory.read_long_term()
    today_log = memory.read_daily(today)
    yesterday_log = memory.read_daily(today - timedelta(days=1))
    pairs = extract_recent_pairs(
        session_file or state.old_session_file, config.recent_message_pairs
    )

    budget = compute_token_budget(config, state, now)
    metadata = RotationMetadata(
        rotation_number=len(state.rotation_history) + 1,
        reason=f"compactionCount reached {state.trigger_compaction_count}",
        previous_session_id=state.old_session_id or "unknown",
        archive_path=str(state.archive_path) if state.archive_path else "unknown",
        compaction_count=state.trigger_compaction_count or 0,
    )
    steps: list[int] = []

    def estimate() -> int:
        return estimate_payload_tokens(long_term_memory, today_log, yesterday_log, pairs, metadata)

    total = estimate()

    if total > budget:
        steps.append(1)
        yesterday_log = ""
        total = estimate()

    if total > budget:
        steps.append(2)
        pairs = pairs[-REDUCED_PAIRS:]
        total = estimate()

    if total > budget:
        steps.append(3)
        if long_term_memory:
            long_term_memory = truncate_memory(long_term_memory)
        total = estimate()

    if total > budget:
        steps.append(4)
        today_log = ""
        pairs = pairs[-MINIMAL_PAIRS:]
        total = estimate()

    if total > budget:
        logger.warning(f"Injection payload still over budget after truncation ({total} > {budget} tokens)")
    elif steps:
        logger.debug(f"Injection payload truncated (steps {steps}) to {total}/{budget} tokens")

    return InjectionPayload(
        long_term_memory=long_term_memory,
        today_log=today_log,
        yesterday_log=yesterday_log,
        recent_messages=pairs,
        metadata=metadata,
        estimated_tokens=total,
        token_budget=budget,
        truncation_steps=steps,
    )


def format_injection_message(payload: InjectionPayload) -> str:
    """Render the payload as the markdown document the new session starts with."""
    meta = payload.metadata
    sections = [
        "[SYSTEM] This is a fresh session after automatic core rotation.",
        f"Previous session was archived after {meta.compaction_count} compactions.\n",
        "## Inherited Memory\n",
    ]

    # Empty subsections are omitted entirely; downstream parsers key on headers
    if payload.long_term_memory:
        sections.append(f"### Long-term Memory (MEMORY.md)\n{payload.long_term_memory}\n")

    if payload.today_log:
        sections.append(f"### Recent Daily Log\n{payload.today_log}\n")

    if payload.yesterday_log:
        sections.append(f"### Yesterday's Daily Log\n{payload.yesterday_log}\n")

    if payload.recent_messages:
        sections.append(
            f"### Recent Conversation (last {len(payload.recent_messages)} exchanges)"
        )
        for pair in payload.recent_messages:
            sections.append(f"\n**User:** {pair.user}\n**Assistant:** {pair.assistant}")
        sections.append("")

    sections.extend([
        "### Rotation Context",
        f"- Rotation #: {meta.rotation_number}",
        f"- Reason: {meta.reason}",
        f"- Previous session: {meta.previous_session_id}",
        f"- Archive: {meta.archive_path}",
        "",
        "Continue serving the user based on this context.",
    ])

    return "\n".join(sections)
