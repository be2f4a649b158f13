"""Adapter between gateway hook callbacks and the rotation controller."""

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from loguru import logger
from pydantic import ValidationError

from rotaguard.config.schema import Config
from rotaguard.hooks.events import (
    DegradationEvent,
    HookContext,
    StartupEvent,
    parse_event,
)
from rotaguard.rotation.controller import (
    InjectionSink,
    Notifier,
    RotationController,
    get_session_file,
)
from rotaguard.rotation.state import RotationState, utcnow

AFTER_COMPACTION = "after_compaction"
GATEWAY_STARTUP = "gateway:startup"


class HookAPI(Protocol):
    def on(self, event: str, handler: Callable[..., Any]) -> None: ...


class RotationHooks:
    """
    Registers rotation handlers on a gateway and translates its payloads.

    The gateway passes ``(event, ctx)`` dicts whose shape varies between
    versions; everything is validated here so the controller only ever sees
    typed values.
    """

    def __init__(
        self,
        config: Config,
        sink: InjectionSink | None = None,
        notifier: Notifier | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.sink = sink
        self.notifier = notifier
        self._now = now

    def register(self, api: HookAPI) -> None:
        api.on(AFTER_COMPACTION, self.handle_after_compaction)
        api.on(GATEWAY_STARTUP, self.handle_startup)

    def handle_after_compaction(
        self, event: dict | None = None, ctx: dict | None = None
    ) -> RotationState | None:
        try:
            parsed: DegradationEvent = parse_event(DegradationEvent, event)
            hook_ctx = self._resolve_context(parsed.context, ctx)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed {AFTER_COMPACTION} event: {e}")
            return None

        session_file = parsed.session_file
        session_id = (
            hook_ctx.session_id
            or parsed.session_id
            or (session_file.stem if session_file else None)
            or self.config.agent.session_id
        )
        if not session_id:
            logger.warning(f"{AFTER_COMPACTION} without a session id, skipping")
            return None
        if session_file is None:
            session_file = get_session_file(hook_ctx.agent_dir, session_id)
        logger.debug(
            f"Compaction of {session_id}: removed {parsed.compacted_count} messages, "
            f"{parsed.message_count} messages / {parsed.token_count} tokens remain"
        )

        return self.controller_for(hook_ctx).on_degradation_event(
            session_id, session_file, reported_count=parsed.compaction_count
        )

    def handle_startup(
        self, event: dict | None = None, ctx: dict | None = None
    ) -> RotationState | None:
        try:
            parsed: StartupEvent = parse_event(StartupEvent, event)
            hook_ctx = self._resolve_context(parsed.context, ctx)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed {GATEWAY_STARTUP} event: {e}")
            return None
        return self.controller_for(hook_ctx).on_startup()

    def controller_for(self, hook_ctx: HookContext) -> RotationController:
        return RotationController.for_agent(
            self.config.rotation,
            agent_dir=hook_ctx.agent_dir,
            workspace=hook_ctx.workspace_dir,
            sink=self.sink,
            notifier=self.notifier,
            now=self._now,
        )

    def _resolve_context(
        self, event_ctx: HookContext | None, raw_ctx: dict | None
    ) -> HookContext:
        """
        Merge handler ctx over event.context over configured paths.

        The configured session id is not merged here; it is the last resort
        in handle_after_compaction, after anything the event itself carries.
        """
        merged = HookContext(
            agent_dir=self.config.agent_dir_path,
            workspace_dir=self.config.workspace_path,
        )
        for layer in (event_ctx, parse_event(HookContext, raw_ctx)):
            if layer is None:
                continue
            updates = layer.model_dump(exclude_none=True)
            merged = merged.model_copy(update=updates)
        merged = merged.model_copy(update={
            "agent_dir": Path(merged.agent_dir).expanduser(),
            "workspace_dir": Path(merged.workspace_dir).expanduser(),
        })
        return merged
